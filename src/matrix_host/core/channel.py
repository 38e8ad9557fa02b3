"""
HostChannel - the narrow string-in/string-out link between host and plugin.

One channel belongs to one session. Each call into the plugin opens a
window with ``begin``; the plugin may read the input string and must emit
at most one output string before the host closes the window with
``finish``.
"""

import logging
from typing import Optional

from .errors import DecodeError, SessionStateError

log = logging.getLogger(__name__)


class HostChannel:
    """Per-session bookkeeping of the input/output strings of one call."""

    def __init__(self):
        self._input: str = ""
        self._output: Optional[str] = None
        self._outputs = 0
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def begin(self, input_string: str = "") -> None:
        """Open the window for one plugin call."""
        if self._open:
            raise SessionStateError("HostChannel call window is already open")
        self._input = input_string
        self._output = None
        self._outputs = 0
        self._open = True

    def input_string(self) -> str:
        """The string supplied to the current call (empty for update)."""
        return self._input

    def output_string(self, text: str) -> None:
        """Deliver the plugin's single reply for the current call."""
        if not self._open:
            raise DecodeError("output_string called outside of a plugin call")
        if not isinstance(text, str):
            raise DecodeError(
                f"output_string expects a string, got {type(text).__name__}",
                payload=repr(text),
            )
        self._outputs += 1
        if self._outputs > 1:
            raise DecodeError(
                "Plugin emitted more than one output in a single call",
                payload=text,
            )
        self._output = text

    def finish(self) -> Optional[str]:
        """Close the window; return the output, or None if nothing was emitted."""
        output = self._output
        self._input = ""
        self._output = None
        self._open = False
        return output
