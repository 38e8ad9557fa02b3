"""
Error kinds raised by the plugin host.

Every plugin-caused fault is session-scoped: it terminates exactly the
offending session and carries enough context to diagnose it.
"""

from typing import Any, Optional


class MatrixHostError(Exception):
    """Base class for all matrix-host errors."""


class SessionStateError(MatrixHostError):
    """The host drove a session through an illegal state transition."""


class PluginError(MatrixHostError):
    """
    A fault attributable to one plugin session.

    Attributes:
        session_id: Session that raised the fault, when known.
        tick: Index of the update call that failed (None during load/setup).
        payload: Raw offending payload, when there was one.
    """

    kind = "plugin"

    def __init__(
        self,
        message: str,
        *,
        session_id: Optional[str] = None,
        tick: Optional[int] = None,
        payload: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.session_id = session_id
        self.tick = tick
        self.payload = payload

    def with_context(
        self,
        session_id: Optional[str] = None,
        tick: Optional[int] = None,
        payload: Any = None,
    ) -> "PluginError":
        """Fill in context that is not set yet and return self."""
        if self.session_id is None:
            self.session_id = session_id
        if self.tick is None:
            self.tick = tick
        if self.payload is None:
            self.payload = payload
        return self

    def __str__(self) -> str:
        parts = []
        if self.session_id is not None:
            parts.append(f"session={self.session_id}")
        if self.tick is not None:
            parts.append(f"tick={self.tick}")
        prefix = f"[{' '.join(parts)}] " if parts else ""
        return f"{prefix}{self.message}"

    def __reduce__(self):
        # Keyword-only context must survive pickling across the process sandbox
        return (
            _rebuild_error,
            (type(self), self.message, self.session_id, self.tick, self.payload),
        )


def _rebuild_error(cls, message, session_id, tick, payload):
    return cls(message, session_id=session_id, tick=tick, payload=payload)


class ConfigurationError(PluginError):
    """Missing/invalid configuration, or a plugin lacking a required entry point."""

    kind = "configuration"


class DecodeError(PluginError):
    """A payload did not match the expected wire shape."""

    kind = "decode"


class RuntimeFault(PluginError):
    """The plugin script raised or aborted while executing."""

    kind = "runtime"


class TimeoutFault(PluginError):
    """A plugin call exceeded the scheduler's time bound."""

    kind = "timeout"
