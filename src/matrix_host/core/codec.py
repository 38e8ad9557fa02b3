"""
Plugin protocol codec.

Translates between the plugin's textual payloads and typed outcomes. The
plugin side is untrusted: row/column counts and channel values are always
checked against the configured matrix, never clamped or coerced.

Update response shapes, tried in order:
    1. ``null``                                      -> Stop
    2. ``{"state": M, "done": bool, "log_message": [str] | null}``
                                                     -> Frame / Done
    3. bare ``M``                                    -> Frame (no log lines)
where M is an array of ``height`` rows of ``width`` [R, G, B, W] integer
arrays.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, StrictBool, StrictStr, ValidationError

from .display import CHANNELS, FrameBuffer
from .errors import DecodeError

log = logging.getLogger(__name__)

CHANNEL_MIN = 0
CHANNEL_MAX = 255


# Host-owned parser and serializer, bound at import. Plugins get read-only
# views of the json module and cannot reach these.
_decoder = json.JSONDecoder()
_encoder = json.JSONEncoder(allow_nan=False)


@dataclass(frozen=True)
class Frame:
    """Plugin produced a frame and wants to keep running."""

    state: FrameBuffer
    log_lines: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Done:
    """Plugin finished; ``final_state`` is shown last when present."""

    final_state: Optional[FrameBuffer]
    log_lines: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Stop:
    """Plugin requested termination without a frame."""


PluginOutcome = Union[Frame, Done, Stop]


class UpdateEnvelope(BaseModel):
    """Wrapped update response. ``state`` is validated separately against the matrix shape."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    state: Any
    done: StrictBool
    log_message: Optional[List[StrictStr]] = None


def _json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _summarize(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "<root>"
        problems.append(f"{location}: {error.get('msg')}")
    return "; ".join(problems)


class PluginCodec:
    """
    Encoder/decoder for one matrix geometry.

    Instances are immutable and may be shared across sessions with the same
    dimensions.
    """

    def __init__(self, width: int, height: int):
        if width < 1 or height < 1:
            raise ValueError(f"Matrix dimensions must be positive, got {width}x{height}")
        self.width = width
        self.height = height

    def encode_setup_input(self, value: Any) -> str:
        """Serialize the host-chosen setup document to the plugin's input string."""
        try:
            return _encoder.encode(value)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"Setup input is not serializable: {e}", payload=repr(value)) from e

    def decode_setup_input(self, raw: str) -> Any:
        """Inverse of ``encode_setup_input``; what a plugin sees after parsing its input."""
        return self._parse(raw)

    def decode_update_response(self, raw: str) -> PluginOutcome:
        """Decode one ``update`` reply into a PluginOutcome."""
        document = self._parse(raw)

        if document is None:
            return Stop()

        if isinstance(document, dict):
            return self._decode_envelope(document, raw)

        if isinstance(document, list):
            return Frame(state=self.decode_matrix(document, raw=raw))

        raise DecodeError(
            f"Update response must be null, an object or a matrix, got {_json_type(document)}",
            payload=raw,
        )

    def decode_matrix(self, value: Any, raw: Optional[str] = None) -> FrameBuffer:
        """Validate a matrix-shaped value against the configured geometry."""
        payload = raw if raw is not None else value

        if not isinstance(value, list):
            raise DecodeError(
                f"Matrix must be an array of rows, got {_json_type(value)}",
                payload=payload,
            )
        if len(value) != self.height:
            raise DecodeError(
                f"Matrix has {len(value)} rows, expected {self.height}",
                payload=payload,
            )

        for y, row in enumerate(value):
            if not isinstance(row, list):
                raise DecodeError(
                    f"Row {y} must be an array of pixels, got {_json_type(row)}",
                    payload=payload,
                )
            if len(row) != self.width:
                raise DecodeError(
                    f"Row {y} has {len(row)} pixels, expected {self.width}",
                    payload=payload,
                )
            for x, pixel in enumerate(row):
                self._check_pixel(pixel, x, y, payload)

        return FrameBuffer.from_rows(value)

    def _check_pixel(self, pixel: Any, x: int, y: int, payload: Any) -> None:
        if not isinstance(pixel, list) or len(pixel) != CHANNELS:
            raise DecodeError(
                f"Pixel ({x}, {y}) must be an array of {CHANNELS} channels, "
                f"got {_json_type(pixel)}",
                payload=payload,
            )
        for channel in pixel:
            # bool is an int subclass, reject it explicitly
            if isinstance(channel, bool) or not isinstance(channel, int):
                raise DecodeError(
                    f"Pixel ({x}, {y}) has non-integer channel {channel!r}",
                    payload=payload,
                )
            if not CHANNEL_MIN <= channel <= CHANNEL_MAX:
                raise DecodeError(
                    f"Pixel ({x}, {y}) channel {channel} outside "
                    f"[{CHANNEL_MIN}, {CHANNEL_MAX}]",
                    payload=payload,
                )

    def _decode_envelope(self, document: dict, raw: str) -> PluginOutcome:
        try:
            envelope = UpdateEnvelope.model_validate(document)
        except ValidationError as e:
            raise DecodeError(f"Malformed update object: {_summarize(e)}", payload=raw) from e

        log_lines = tuple(envelope.log_message or ())

        if envelope.done:
            final_state = None
            if envelope.state is not None:
                final_state = self.decode_matrix(envelope.state, raw=raw)
            return Done(final_state=final_state, log_lines=log_lines)

        return Frame(state=self.decode_matrix(envelope.state, raw=raw), log_lines=log_lines)

    def _parse(self, raw: Any) -> Any:
        if not isinstance(raw, str):
            raise DecodeError(
                f"Payload must be a string, got {type(raw).__name__}",
                payload=repr(raw),
            )
        try:
            return _decoder.decode(raw)
        except json.JSONDecodeError as e:
            raise DecodeError(f"Payload is not valid JSON: {e}", payload=raw) from e
