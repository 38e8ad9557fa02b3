"""
Frame scheduler for matrix-host.

Drives one PluginSession to completion and hands its frames to a display,
in order, one tick at a time.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .codec import Done, Frame, PluginOutcome
from .display import Display, FrameBuffer
from .errors import PluginError
from .sandbox import plugin_logger
from .session import PluginSession, SessionState

log = logging.getLogger(__name__)


@dataclass
class SessionReport:
    """How a scheduled session ended."""

    session_id: str
    state: SessionState
    ticks: int = 0
    frames: int = 0
    log_lines: int = 0
    error: Optional[PluginError] = None

    @property
    def failed(self) -> bool:
        return self.state is SessionState.FAILED


class FrameScheduler:
    """
    Runs the setup/update loop of one session.

    Guarantees:
    - at most one plugin call outstanding; nothing is called after Done/Stop/Failed
    - frames reach the display in production order, one per tick
    - a frame's log lines are logged before the frame is shown
    - plugin faults end the session and are reported, never raised

    Pacing is a scheduler policy: ``fps`` of None or 0 runs ticks back to back.
    ``time_limit`` (seconds) cancels the session once exceeded.
    """

    def __init__(
        self,
        session: PluginSession,
        display: Display,
        *,
        fps: Optional[float] = None,
        time_limit: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.session = session
        self.display = display
        self.frame_interval = 1.0 / fps if fps else 0.0
        self.time_limit = time_limit
        self._clock = clock
        self._sleep = sleep
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Request cancellation; honoured before the next tick starts."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> SessionReport:
        """Run the session until it reaches a terminal state."""
        session = self.session
        report = SessionReport(session_id=session.session_id, state=session.state)

        try:
            if session.state is SessionState.UNINITIALIZED:
                session.setup()
                log.info(f"Set up plugin session {session.session_id}")

            start = self._clock()
            next_tick = start

            while not session.state.is_terminal:
                self._pace(next_tick)

                if self._cancel.is_set():
                    session.cancel()
                    break
                if self.time_limit is not None and self._clock() - start >= self.time_limit:
                    log.info(f"Plugin session {session.session_id} reached its time limit")
                    session.cancel()
                    break

                outcome = session.update()
                self._apply(outcome, report)
                del outcome

                if self.frame_interval:
                    next_tick = max(next_tick + self.frame_interval, self._clock())

        except PluginError as e:
            report.error = e
            log.error(f"Plugin session {session.session_id} failed ({e.kind}): {e}")
            if e.payload is not None:
                log.debug(f"Offending payload from {session.session_id}: {e.payload!r}")
        finally:
            session.close()

        report.state = session.state
        report.ticks = session.tick
        log.info(
            f"Plugin session {session.session_id} ended {report.state.value} "
            f"after {report.ticks} ticks, {report.frames} frames"
        )
        return report

    def _pace(self, next_tick: float) -> None:
        delay = next_tick - self._clock()
        if delay <= 0:
            return
        if self._sleep is not None:
            self._sleep(delay)
        else:
            self._cancel.wait(delay)

    def _apply(self, outcome: PluginOutcome, report: SessionReport) -> None:
        if isinstance(outcome, Frame):
            self._forward_logs(outcome.log_lines, report)
            self._deliver(outcome.state, report)
        elif isinstance(outcome, Done):
            self._forward_logs(outcome.log_lines, report)
            if outcome.final_state is not None:
                self._deliver(outcome.final_state, report)
            log.info(f"Plugin session {self.session.session_id} is done")
        else:
            log.info(f"Plugin session {self.session.session_id} requested stop")

    def _forward_logs(self, lines: Sequence[str], report: SessionReport) -> None:
        if not lines:
            return
        logger = plugin_logger(self.session.session_id)
        for line in lines:
            logger.info("%s", line)
        report.log_lines += len(lines)

    def _deliver(self, frame: FrameBuffer, report: SessionReport) -> None:
        # Ownership passes to the display; the scheduler keeps no reference
        self.display.show(frame)
        report.frames += 1
