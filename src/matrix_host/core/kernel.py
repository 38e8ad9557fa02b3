"""
matrix-host Kernel - runs plugin sessions against displays.

Owns the system configuration and the ConfigStore shared by all sessions,
builds a runner, codec and session for each plugin, and drives them through
FrameSchedulers either one after another or concurrently.
"""

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .codec import PluginCodec
from .config import SystemConfig
from .display import Display
from .engine import ScriptEngine
from .errors import RuntimeFault
from .sandbox import create_runner
from .scheduler import FrameScheduler, SessionReport
from .session import PluginSession, SessionState

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PluginSource:
    """Plugin code supplied by the caller."""

    name: str
    source: str
    filename: Optional[str] = None


class Kernel:
    """
    The matrix-host kernel.

    Responsibilities:
    - Build isolated sessions (one runner each) from plugin sources
    - Run sessions through schedulers, sequentially or one thread per session
    - Keep one plugin's fault from affecting any other session
    """

    def __init__(
        self,
        config: Optional[SystemConfig] = None,
        display_factory: Optional[Callable[[], Display]] = None,
        *,
        engine: Optional[ScriptEngine] = None,
    ):
        self.config = config or SystemConfig()
        self.display_factory = display_factory
        self.engine = engine
        self.config_store = self.config.config_store()
        self.codec = PluginCodec(self.config.matrix.width, self.config.matrix.height)

        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self._schedulers: Dict[str, FrameScheduler] = {}
        self._stopping = threading.Event()

    def create_session(
        self, plugin: PluginSource, session_id: Optional[str] = None
    ) -> PluginSession:
        """Build an UNINITIALIZED session with its own runner."""
        if session_id is None:
            session_id = f"{plugin.name}_{next(self._counter)}"
        runner = create_runner(
            self.config.scheduler.execution_mode,
            plugin.source,
            self.config_store,
            session_id=session_id,
            filename=plugin.filename or f"<plugin {plugin.name}>",
            timeout=self.config.scheduler.update_timeout,
            engine=self.engine,
        )
        # Plugins receive the matrix configuration as their setup input
        return PluginSession(
            session_id, runner, self.codec, setup_input=self.config_store.as_dict()
        )

    def run_plugin(self, plugin: PluginSource, display: Optional[Display] = None) -> SessionReport:
        """Run one plugin to a terminal state on ``display``."""
        if display is None:
            display = self._new_display()
        session = self.create_session(plugin)
        scheduler = FrameScheduler(
            session,
            display,
            fps=self.config.scheduler.fps,
            time_limit=self.config.scheduler.time_limit,
        )

        with self._lock:
            if self._stopping.is_set():
                scheduler.cancel()
            self._schedulers[session.session_id] = scheduler
        try:
            report = scheduler.run()
        finally:
            with self._lock:
                self._schedulers.pop(session.session_id, None)

        if report.state is SessionState.FAILED and report.ticks == 0:
            log.warning(f"Skipping plugin '{plugin.name}': it could not be set up")
        return report

    def run_playlist(
        self,
        plugins: Sequence[PluginSource],
        display: Optional[Display] = None,
        max_loops: Optional[int] = None,
    ) -> List[SessionReport]:
        """
        Run ``plugins`` one after another on one display.

        With ``scheduler.loop_plugins`` the list repeats until ``stop()`` or,
        when given, ``max_loops`` passes. Each pass uses fresh sessions.
        """
        if display is None:
            display = self._new_display()
        reports: List[SessionReport] = []
        if not plugins:
            return reports

        loops = 1 if not self.config.scheduler.loop_plugins else max_loops
        passes: Iterable[int] = range(loops) if loops is not None else itertools.count()

        for loop in passes:
            log.debug(f"Playlist pass {loop + 1}")
            for plugin in plugins:
                if self._stopping.is_set():
                    return reports
                log.info(f"Running plugin '{plugin.name}'")
                reports.append(self.run_plugin(plugin, display))
                display.clear()
        return reports

    def run_concurrent(
        self,
        plugins: Sequence[PluginSource],
        timeout: Optional[float] = None,
    ) -> Dict[str, SessionReport]:
        """
        Run every plugin at once, one thread and one display per session.

        Returns reports keyed by session id. With a ``timeout`` (seconds for
        the whole batch), sessions still running when it expires are
        cancelled and finish in the background. The result is a snapshot of
        the reports written by then.
        """
        if self.display_factory is None:
            raise ValueError("run_concurrent needs a display_factory")

        reports: Dict[str, SessionReport] = {}
        runs: List[Tuple[threading.Thread, FrameScheduler]] = []

        for plugin in plugins:
            session = self.create_session(plugin)
            scheduler = FrameScheduler(
                session,
                self.display_factory(),
                fps=self.config.scheduler.fps,
                time_limit=self.config.scheduler.time_limit,
            )
            with self._lock:
                if self._stopping.is_set():
                    scheduler.cancel()
                self._schedulers[session.session_id] = scheduler

            thread = threading.Thread(
                target=self._run_scheduler,
                args=(scheduler, reports),
                name=f"matrix-host-scheduler-{session.session_id}",
                daemon=True,
            )
            runs.append((thread, scheduler))

        for thread, _ in runs:
            thread.start()

        deadline = None if timeout is None else time.monotonic() + timeout
        for thread, _ in runs:
            thread.join(None if deadline is None else max(0.0, deadline - time.monotonic()))

        for thread, scheduler in runs:
            if thread.is_alive():
                log.warning(
                    f"Session {scheduler.session.session_id} still running after {timeout}s, "
                    f"cancelling it"
                )
                scheduler.cancel()

        with self._lock:
            return dict(reports)

    def stop(self) -> None:
        """Cancel every running scheduler between ticks."""
        log.info("Stopping matrix-host kernel...")
        self._stopping.set()
        with self._lock:
            schedulers = list(self._schedulers.values())
        for scheduler in schedulers:
            scheduler.cancel()

    def _run_scheduler(self, scheduler: FrameScheduler, reports: Dict[str, SessionReport]) -> None:
        session_id = scheduler.session.session_id
        try:
            report = scheduler.run()
        except Exception as e:
            log.exception(f"Scheduler for {session_id} crashed")
            report = SessionReport(
                session_id=session_id,
                state=SessionState.FAILED,
                ticks=scheduler.session.tick,
                error=RuntimeFault(f"Scheduler crashed: {e!r}", session_id=session_id),
            )
        finally:
            with self._lock:
                self._schedulers.pop(session_id, None)
        with self._lock:
            reports[session_id] = report

    def _new_display(self) -> Display:
        if self.display_factory is None:
            raise ValueError("No display given and no display_factory configured")
        return self.display_factory()
