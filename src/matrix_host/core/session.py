"""
PluginSession - one loaded plugin and its lifecycle.

    UNINITIALIZED -> READY -> RUNNING* -> COMPLETED | STOPPED | FAILED

A session is strictly single-pass: ``setup`` runs once, ``update`` runs
until a terminal state, and nothing re-enters READY. The plugin's own
variables live inside its runner and are never touched by the host.
"""

import logging
from enum import Enum
from typing import Any, Optional

from .codec import Done, Frame, PluginCodec, PluginOutcome, Stop
from .errors import DecodeError, PluginError, SessionStateError
from .sandbox import ScriptRunner

log = logging.getLogger(__name__)


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.STOPPED, SessionState.FAILED)


class PluginSession:
    """
    Wraps one script instance behind ``setup``/``update``.

    Args:
        session_id: Identifier used in logs and error context.
        runner: Runner owning the script; the session closes it on any terminal state.
        codec: Codec for the configured matrix geometry.
        setup_input: Document serialized into the plugin's setup input string.
            None means the plugin receives an empty string.
    """

    def __init__(
        self,
        session_id: str,
        runner: ScriptRunner,
        codec: PluginCodec,
        setup_input: Any = None,
    ):
        self.session_id = session_id
        self.codec = codec
        self._runner = runner
        self._setup_input = setup_input
        self._state = SessionState.UNINITIALIZED
        self._tick = 0
        self.error: Optional[PluginError] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def tick(self) -> int:
        """Number of update calls made so far."""
        return self._tick

    def setup(self) -> None:
        """Load the script and call its ``setup`` exactly once."""
        if self._state is not SessionState.UNINITIALIZED:
            raise SessionStateError(
                f"Session {self.session_id} cannot run setup from state {self._state.value}"
            )

        try:
            input_string = ""
            if self._setup_input is not None:
                input_string = self.codec.encode_setup_input(self._setup_input)
            self._runner.start()
            output = self._runner.invoke("setup", input_string)
        except PluginError as e:
            self._fail(e.with_context(session_id=self.session_id))
            raise

        if output is not None:
            log.warning(f"Session {self.session_id}: ignoring output emitted during setup()")

        self._state = SessionState.READY
        log.debug(f"Session {self.session_id} ready")

    def update(self) -> PluginOutcome:
        """Run one tick and return its decoded outcome."""
        if self._state not in (SessionState.READY, SessionState.RUNNING):
            raise SessionStateError(
                f"Session {self.session_id} cannot update from state {self._state.value}"
            )

        tick = self._tick
        self._tick += 1
        raw: Optional[str] = None
        try:
            raw = self._runner.invoke("update")
            if raw is None:
                raise DecodeError("Plugin update() produced no output")
            outcome = self.codec.decode_update_response(raw)
        except PluginError as e:
            self._fail(e.with_context(session_id=self.session_id, tick=tick, payload=raw))
            raise

        if isinstance(outcome, Frame):
            self._state = SessionState.RUNNING
        elif isinstance(outcome, Done):
            self._finish(SessionState.COMPLETED)
        elif isinstance(outcome, Stop):
            self._finish(SessionState.STOPPED)
        return outcome

    def cancel(self) -> None:
        """Force STOPPED without calling the plugin again. Only valid between ticks."""
        if self._state.is_terminal:
            return
        log.info(f"Session {self.session_id} cancelled at tick {self._tick}")
        self._finish(SessionState.STOPPED)

    def close(self) -> None:
        """Release the runner; a live session is cancelled first."""
        if not self._state.is_terminal:
            self.cancel()
        self._runner.close()

    def _finish(self, state: SessionState) -> None:
        self._state = state
        self._runner.close()

    def _fail(self, error: PluginError) -> None:
        self.error = error
        self._finish(SessionState.FAILED)

    def __enter__(self) -> "PluginSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"PluginSession({self.session_id!r}, state={self._state.value}, tick={self._tick})"
