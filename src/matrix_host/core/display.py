"""
Frame and display abstractions for matrix-host.

The display driver itself is an external collaborator; this module defines
the interface the scheduler hands frames to, plus a few hardware-free
implementations.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

log = logging.getLogger(__name__)

Pixel = Tuple[int, int, int, int]

CHANNELS = 4  # R, G, B, W


@dataclass(eq=False)
class FrameBuffer:
    """
    Fixed-shape grid of RGBW pixels.

    Rows are indexed by y, columns by x. Storage is a (height, width, 4)
    uint8 array. Frames are built fresh every tick and handed off to the
    display; they are never shared between ticks.
    """

    width: int
    height: int
    _data: Optional[np.ndarray] = None

    def __post_init__(self):
        if self._data is None:
            self._data = np.zeros((self.height, self.width, CHANNELS), dtype=np.uint8)
        elif self._data.shape != (self.height, self.width, CHANNELS):
            raise ValueError(
                f"Pixel data shape {self._data.shape} does not match "
                f"{self.height}x{self.width}x{CHANNELS}"
            )

    @classmethod
    def blank(cls, width: int, height: int) -> "FrameBuffer":
        return cls(width, height)

    @classmethod
    def from_rows(cls, rows: Sequence[Sequence[Sequence[int]]]) -> "FrameBuffer":
        """Build from already-validated nested rows (height x width x 4)."""
        height = len(rows)
        width = len(rows[0]) if height else 0
        data = np.array(rows, dtype=np.uint8).reshape(height, width, CHANNELS)
        return cls(width, height, data)

    @property
    def data(self) -> np.ndarray:
        """Read-only view of the pixel data (height, width, 4)."""
        view = self._data.view()
        view.flags.writeable = False
        return view

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.width, self.height)

    def get_pixel(self, x: int, y: int) -> Pixel:
        """Get a single pixel as (R, G, B, W)."""
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError(f"Pixel ({x}, {y}) outside {self.width}x{self.height} frame")
        return tuple(int(v) for v in self._data[y, x])

    def to_rows(self) -> List[List[List[int]]]:
        """Nested lists in wire order."""
        return self._data.tolist()

    def to_image(self) -> Image.Image:
        """Preview image; the W channel is carried in the fourth band untouched."""
        return Image.fromarray(self._data)

    def copy(self) -> "FrameBuffer":
        """Create a copy of this framebuffer."""
        return FrameBuffer(self.width, self.height, self._data.copy())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FrameBuffer):
            return NotImplemented
        return self.shape == other.shape and np.array_equal(self._data, other._data)

    def __repr__(self) -> str:
        return f"FrameBuffer({self.width}x{self.height})"


class Display(ABC):
    """
    Consumer of finished frames.

    Ownership of each frame passes to the display on ``show``.
    """

    @abstractmethod
    def show(self, frame: FrameBuffer) -> None:
        """Present one frame."""

    def clear(self) -> None:
        """Blank the display."""

    def shutdown(self) -> None:
        """Release the display."""


class MemoryDisplay(Display):
    """Records every frame it is shown, in order. Useful for previews and tests."""

    def __init__(self, max_frames: Optional[int] = None):
        self._frames: Deque[FrameBuffer] = deque(maxlen=max_frames)
        self._lock = threading.Lock()
        self.cleared = 0
        self.closed = False

    def show(self, frame: FrameBuffer) -> None:
        with self._lock:
            self._frames.append(frame)

    def clear(self) -> None:
        with self._lock:
            self.cleared += 1

    def shutdown(self) -> None:
        self.closed = True

    @property
    def frames(self) -> List[FrameBuffer]:
        with self._lock:
            return list(self._frames)


class SimulatedDisplay(Display):
    """
    Hardware-free display.

    Keeps only the most recent frame and a preview image of it.
    """

    def __init__(self, width: int, height: int):
        self.width = width
        self.height = height
        self.frame_count = 0
        self._last: Optional[FrameBuffer] = None
        self._lock = threading.Lock()

    def show(self, frame: FrameBuffer) -> None:
        if frame.shape != (self.width, self.height):
            raise ValueError(
                f"Frame {frame.width}x{frame.height} does not fit a "
                f"{self.width}x{self.height} display"
            )
        with self._lock:
            self._last = frame
            self.frame_count += 1
        log.debug(f"Simulated display frame {self.frame_count}")

    def clear(self) -> None:
        with self._lock:
            self._last = FrameBuffer.blank(self.width, self.height)

    def snapshot(self) -> Optional[Image.Image]:
        """Preview image of the last frame shown."""
        with self._lock:
            return self._last.to_image() if self._last is not None else None

    @property
    def last_frame(self) -> Optional[FrameBuffer]:
        with self._lock:
            return self._last


class MatrixMap:
    """Maps matrix coordinates to indices along a single LED strip."""

    def __init__(self, indices: np.ndarray):
        self._indices = indices

    @property
    def width(self) -> int:
        return self._indices.shape[1]

    @property
    def height(self) -> int:
        return self._indices.shape[0]

    def get(self, x: int, y: int) -> int:
        """Strip index of the LED at matrix coordinate (x, y)."""
        return int(self._indices[y, x])

    def to_strip(self, frame: FrameBuffer) -> np.ndarray:
        """Reorder a frame into strip order, shape (width * height, 4)."""
        if frame.shape != (self.width, self.height):
            raise ValueError(
                f"Frame {frame.width}x{frame.height} does not match map {self.width}x{self.height}"
            )
        strip = np.zeros((self.width * self.height, CHANNELS), dtype=np.uint8)
        strip[self._indices.reshape(-1)] = frame.data.reshape(-1, CHANNELS)
        return strip


class MatrixMapBuilder:
    """
    Builds a MatrixMap for the way a matrix is wired.

    Example:
        MatrixMapBuilder(16, 8).serpentine().mirror_vertically().build()
    """

    def __init__(self, width: int, height: int):
        self._width = width
        self._height = height
        self._serpentine = False
        self._vertical = False
        self._mirror_horizontal = False
        self._mirror_vertical = False

    def serpentine(self) -> "MatrixMapBuilder":
        """Data line reverses direction on every other row (or column)."""
        self._serpentine = True
        return self

    def vertical(self) -> "MatrixMapBuilder":
        """Strip runs along columns instead of rows."""
        self._vertical = True
        return self

    def mirror_horizontally(self) -> "MatrixMapBuilder":
        self._mirror_horizontal = True
        return self

    def mirror_vertically(self) -> "MatrixMapBuilder":
        self._mirror_vertical = True
        return self

    def build(self) -> MatrixMap:
        width, height = self._width, self._height
        if self._vertical:
            width, height = height, width

        indices = np.arange(width * height).reshape(height, width)

        # Strip starts at the far end of row 0 and snakes back
        if self._serpentine:
            indices[0::2] = indices[0::2, ::-1].copy()

        if self._vertical:
            indices = indices.T

        if self._mirror_vertical:
            indices = indices[::-1]

        if self._mirror_horizontal:
            indices = indices[:, ::-1]

        return MatrixMap(np.ascontiguousarray(indices))

    @classmethod
    def from_config(cls, config) -> "MatrixMapBuilder":
        """Builder preconfigured from a MatrixConfig."""
        builder = cls(config.width, config.height)
        if config.serpentine:
            builder.serpentine()
        if config.vertical:
            builder.vertical()
        if config.mirror_horizontal:
            builder.mirror_horizontally()
        if config.mirror_vertical:
            builder.mirror_vertically()
        return builder


class StripDisplay(Display):
    """
    Base class for displays driven as one addressable LED strip.

    Subclasses implement ``write_strip``; this class handles the coordinate
    mapping and global brightness scaling.
    """

    def __init__(self, matrix_map: MatrixMap, brightness: int = 255):
        self.matrix_map = matrix_map
        self.brightness = max(0, min(255, brightness))

    def set_brightness(self, brightness: int) -> None:
        """Set global brightness (0-255)."""
        self.brightness = max(0, min(255, brightness))

    def show(self, frame: FrameBuffer) -> None:
        strip = self.matrix_map.to_strip(frame)
        if self.brightness != 255:
            strip = (strip.astype(np.uint16) * self.brightness // 255).astype(np.uint8)
        self.write_strip(strip)

    def clear(self) -> None:
        count = self.matrix_map.width * self.matrix_map.height
        self.write_strip(np.zeros((count, CHANNELS), dtype=np.uint8))

    @abstractmethod
    def write_strip(self, pixels: np.ndarray) -> None:
        """Push (N, 4) RGBW values to the strip, index 0 first."""
