"""
Plugin sandboxing for matrix-host.

A runner owns exactly one loaded script and executes its calls strictly one
at a time, either on a dedicated worker thread (INLINE) or inside a child
process (PROCESS). Both bound every call with a timeout; only the process
runner can actually reclaim a hung plugin.
"""

import logging
import logging.handlers
import multiprocessing
import queue
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, FrozenSet, List, Optional

from .channel import HostChannel
from .config import ConfigStore, ExecutionMode
from .engine import DEFAULT_ALLOWED_MODULES, PythonScriptEngine, ScriptEngine
from .errors import PluginError, RuntimeFault, SessionStateError, TimeoutFault

log = logging.getLogger(__name__)

PLUGIN_LOGGER = "matrix_host.plugin"

# Shared queue for forwarding logs from child processes to main process
_log_queue: Optional[multiprocessing.Queue] = None


def set_log_queue(log_queue: Optional[multiprocessing.Queue]) -> None:
    """Set the log queue for child processes to use."""
    global _log_queue
    _log_queue = log_queue


def get_log_queue() -> Optional[multiprocessing.Queue]:
    """Get the log queue."""
    return _log_queue


def _setup_child_logging(log_queue: multiprocessing.Queue) -> None:
    """Set up logging in child process to forward to main process."""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    queue_handler = logging.handlers.QueueHandler(log_queue)
    queue_handler.setLevel(logging.DEBUG)
    root.addHandler(queue_handler)
    root.setLevel(logging.DEBUG)


def plugin_logger(session_id: str) -> logging.Logger:
    return logging.getLogger(f"{PLUGIN_LOGGER}.{session_id}")


class _HostBinding:
    """The ``Host`` object visible to plugins."""

    def __init__(self, script_host: "ScriptHost"):
        self._script_host = script_host

    def input_string(self) -> str:
        return self._script_host.channel.input_string()

    def output_string(self, text: str) -> None:
        self._script_host.guard(self._script_host.channel.output_string, text)


class _ConfigBinding:
    """The ``Config`` object visible to plugins."""

    def __init__(self, script_host: "ScriptHost", store: ConfigStore):
        self._script_host = script_host
        self._store = store

    def get(self, key: str) -> Any:
        return self._script_host.guard(self._store.get, key)


class _LogBinding:
    """The ``Log`` object visible to plugins."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def debug(self, message: Any) -> None:
        self._logger.debug("%s", message)

    def info(self, message: Any) -> None:
        self._logger.info("%s", message)

    def warning(self, message: Any) -> None:
        self._logger.warning("%s", message)

    def error(self, message: Any) -> None:
        self._logger.error("%s", message)

    warn = warning


class ScriptHost:
    """
    Interpreter-side half of a session.

    Holds the loaded script instance, its HostChannel and the objects the
    script sees. Host-primitive faults (unknown config key, second output)
    are recorded and re-raised after the call even if the script catches
    them, so a plugin cannot recover from them.
    """

    def __init__(
        self,
        source: str,
        config: ConfigStore,
        *,
        session_id: str,
        filename: Optional[str] = None,
        engine: Optional[ScriptEngine] = None,
    ):
        self.session_id = session_id
        self.channel = HostChannel()
        self.logger = plugin_logger(session_id)
        self._faults: List[PluginError] = []

        log_binding = _LogBinding(self.logger)
        host_api = {
            "Host": _HostBinding(self),
            "Config": _ConfigBinding(self, config),
            "Log": log_binding,
            "print": lambda *args: log_binding.debug(" ".join(str(a) for a in args)),
        }
        engine = engine or PythonScriptEngine()
        self.instance = engine.load(source, filename or f"<plugin {session_id}>", host_api)

    def guard(self, primitive: Callable[..., Any], *args: Any) -> Any:
        try:
            return primitive(*args)
        except PluginError as e:
            self._faults.append(e)
            raise

    def invoke(self, name: str, input_string: str = "") -> Optional[str]:
        """Call entry point ``name``; return what it passed to ``Host.output_string``."""
        self._faults.clear()
        self.channel.begin(input_string)
        error: Optional[BaseException] = None
        try:
            self.instance.call(name)
        except BaseException as e:
            error = e
        finally:
            output = self.channel.finish()

        if self._faults:
            raise self._faults[0]
        if isinstance(error, PluginError):
            raise error
        if error is not None:
            raise RuntimeFault(f"Plugin raised in {name}(): {error!r}") from error
        return output


class ScriptRunner(ABC):
    """Executes one script's calls sequentially under a timeout."""

    def __init__(self, session_id: str, timeout: Optional[float]):
        self.session_id = session_id
        self.timeout = timeout

    @abstractmethod
    def start(self) -> None:
        """Load the script. Raises PluginError on failure."""

    @abstractmethod
    def invoke(self, name: str, input_string: str = "") -> Optional[str]:
        """Call ``name``; return the plugin's output string or None."""

    @abstractmethod
    def close(self) -> None:
        """Release the interpreter. Safe to call more than once."""

    def __enter__(self) -> "ScriptRunner":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class _PendingCall:
    def __init__(self, function: Callable[[], Any]):
        self._function = function
        self._done = threading.Event()
        self.result: Any = None
        self.error: Optional[BaseException] = None

    def run(self) -> None:
        try:
            self.result = self._function()
        except BaseException as e:
            self.error = e
        finally:
            self._done.set()

    def wait(self, timeout: Optional[float]) -> bool:
        return self._done.wait(timeout)


class InlineRunner(ScriptRunner):
    """
    Runs the script on one dedicated daemon thread of the host process.

    A call that exceeds the timeout is abandoned; the runner is unusable
    afterwards because the script may still be executing.
    """

    def __init__(
        self,
        source: str,
        config: ConfigStore,
        *,
        session_id: str,
        filename: Optional[str] = None,
        engine: Optional[ScriptEngine] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(session_id, timeout)
        self._source = source
        self._config = config
        self._filename = filename
        self._engine = engine
        self._host: Optional[ScriptHost] = None
        self._requests: "queue.Queue[Optional[_PendingCall]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._abandoned = False
        self._closed = False
        self._stop_sent = False

    def start(self) -> None:
        if self._thread is not None:
            raise SessionStateError(f"Runner for {self.session_id} already started")
        self._thread = threading.Thread(
            target=self._run, name=f"matrix-host-{self.session_id}", daemon=True
        )
        self._thread.start()
        self._host = self._call(self._load, "load")

    def invoke(self, name: str, input_string: str = "") -> Optional[str]:
        if self._host is None:
            raise SessionStateError(f"Runner for {self.session_id} is not started")
        host = self._host
        return self._call(lambda: host.invoke(name, input_string), name)

    def close(self) -> None:
        self._closed = True
        if self._thread is None or self._stop_sent:
            return
        # An abandoned worker exits once its hung call returns
        self._stop_sent = True
        self._requests.put(None)
        if not self._abandoned:
            self._thread.join(timeout=1.0)

    def _load(self) -> ScriptHost:
        return ScriptHost(
            self._source,
            self._config,
            session_id=self.session_id,
            filename=self._filename,
            engine=self._engine,
        )

    def _call(self, function: Callable[[], Any], label: str) -> Any:
        if self._closed or self._abandoned:
            raise SessionStateError(f"Runner for {self.session_id} is no longer usable")
        pending = _PendingCall(function)
        self._requests.put(pending)
        if not pending.wait(self.timeout):
            self._abandoned = True
            self._closed = True
            log.warning(f"Abandoning plugin thread for {self.session_id} after {label}() hung")
            raise TimeoutFault(f"{label}() did not return within {self.timeout}s")
        error = pending.error
        if isinstance(error, PluginError):
            raise error
        if error is not None:
            if not isinstance(error, Exception):
                log.warning(
                    f"Retiring plugin thread for {self.session_id}: {label}() raised {error!r}"
                )
                self.close()
            raise RuntimeFault(f"{label}() failed: {error!r}") from error
        return pending.result

    def _run(self) -> None:
        while True:
            pending = self._requests.get()
            if pending is None:
                return
            pending.run()


def _process_main(
    conn,
    source: str,
    config_values: dict,
    session_id: str,
    filename: Optional[str],
    allowed_modules: FrozenSet[str],
    log_queue,
) -> None:
    """
    Run loop for a sandboxed plugin. Runs in a separate process.

    Replies are ("ok", value) or ("error", PluginError).
    """
    if log_queue is not None:
        _setup_child_logging(log_queue)

    try:
        host = ScriptHost(
            source,
            ConfigStore(config_values),
            session_id=session_id,
            filename=filename,
            engine=PythonScriptEngine(allowed_modules),
        )
    except PluginError as e:
        conn.send(("error", e))
        return
    conn.send(("ok", None))

    while True:
        try:
            message = conn.recv()
        except EOFError:
            return
        if message[0] == "stop":
            return
        _, name, input_string = message
        try:
            output = host.invoke(name, input_string)
        except PluginError as e:
            conn.send(("error", e))
            continue
        conn.send(("ok", output))


class ProcessRunner(ScriptRunner):
    """
    Runs the script in its own process for true isolation.

    A hung call is reclaimed by terminating the child process.
    """

    def __init__(
        self,
        source: str,
        config: ConfigStore,
        *,
        session_id: str,
        filename: Optional[str] = None,
        allowed_modules: FrozenSet[str] = DEFAULT_ALLOWED_MODULES,
        timeout: Optional[float] = None,
        start_timeout: float = 10.0,
    ):
        super().__init__(session_id, timeout)
        self.start_timeout = start_timeout
        self._source = source
        self._config = config
        self._filename = filename
        self._allowed_modules = frozenset(allowed_modules)
        self._process: Optional[multiprocessing.Process] = None
        self._conn = None
        self._closed = False

    def start(self) -> None:
        if self._process is not None:
            raise SessionStateError(f"Runner for {self.session_id} already started")
        parent_conn, child_conn = multiprocessing.Pipe()
        self._conn = parent_conn
        self._process = multiprocessing.Process(
            target=_process_main,
            args=(
                child_conn,
                self._source,
                self._config.as_dict(),
                self.session_id,
                self._filename,
                self._allowed_modules,
                get_log_queue(),
            ),
            name=f"matrix-host-{self.session_id}",
            daemon=True,
        )
        self._process.start()
        child_conn.close()
        log.info(f"Started plugin {self.session_id} in process {self._process.pid}")
        self._receive("load", max(self.timeout or 0.0, self.start_timeout))

    def invoke(self, name: str, input_string: str = "") -> Optional[str]:
        if self._conn is None or self._closed:
            raise SessionStateError(f"Runner for {self.session_id} is not usable")
        try:
            self._conn.send(("call", name, input_string))
        except (BrokenPipeError, OSError) as e:
            self._terminate()
            raise RuntimeFault(f"Plugin process is gone: {e}") from e
        return self._receive(name)

    def close(self, timeout: float = 2.0) -> None:
        if self._closed:
            return
        self._closed = True
        if self._process is None:
            return
        if self._process.is_alive():
            try:
                self._conn.send(("stop",))
            except (BrokenPipeError, OSError) as e:
                log.debug(f"Could not ask plugin {self.session_id} to stop: {e}")
            self._process.join(timeout=timeout)
        self._terminate()

    def _receive(self, label: str, timeout: Optional[float] = None) -> Any:
        if timeout is None:
            timeout = self.timeout
        if not self._conn.poll(timeout):
            self._terminate()
            raise TimeoutFault(f"{label}() did not return within {timeout}s")
        try:
            status, value = self._conn.recv()
        except EOFError:
            self._terminate()
            raise RuntimeFault(f"Plugin process exited during {label}()") from None
        if status == "error":
            raise value
        return value

    def _terminate(self) -> None:
        self._closed = True
        if self._process is not None and self._process.is_alive():
            log.warning(f"Force terminating plugin process for {self.session_id}")
            self._process.terminate()
            self._process.join(timeout=1.0)
        if self._conn is not None:
            self._conn.close()


def create_runner(
    mode: ExecutionMode,
    source: str,
    config: ConfigStore,
    *,
    session_id: str,
    filename: Optional[str] = None,
    timeout: Optional[float] = None,
    engine: Optional[ScriptEngine] = None,
) -> ScriptRunner:
    """Build a runner for ``mode``. Custom engines run inline only."""
    if mode is ExecutionMode.PROCESS:
        if engine is not None and not isinstance(engine, PythonScriptEngine):
            raise ValueError("Process sandboxing supports the Python script engine only")
        allowed = engine.allowed_modules if engine is not None else DEFAULT_ALLOWED_MODULES
        return ProcessRunner(
            source,
            config,
            session_id=session_id,
            filename=filename,
            allowed_modules=allowed,
            timeout=timeout,
        )
    return InlineRunner(
        source,
        config,
        session_id=session_id,
        filename=filename,
        engine=engine,
        timeout=timeout,
    )
