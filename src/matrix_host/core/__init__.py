"""
matrix-host Core - plugin sessions, protocol codec, scheduling and sandboxing.
"""

from .channel import HostChannel
from .codec import Done, Frame, PluginCodec, PluginOutcome, Stop
from .config import ConfigStore, ExecutionMode, MatrixConfig, SchedulerConfig, SystemConfig
from .display import (
    Display,
    FrameBuffer,
    MatrixMap,
    MatrixMapBuilder,
    MemoryDisplay,
    SimulatedDisplay,
    StripDisplay,
)
from .engine import PythonScriptEngine, ScriptEngine, ScriptInstance
from .errors import (
    ConfigurationError,
    DecodeError,
    MatrixHostError,
    PluginError,
    RuntimeFault,
    SessionStateError,
    TimeoutFault,
)
from .kernel import Kernel, PluginSource
from .sandbox import InlineRunner, ProcessRunner, ScriptRunner, create_runner
from .scheduler import FrameScheduler, SessionReport
from .session import PluginSession, SessionState

__all__ = [
    "Kernel",
    "PluginSource",
    "PluginSession",
    "SessionState",
    "FrameScheduler",
    "SessionReport",
    "PluginCodec",
    "PluginOutcome",
    "Frame",
    "Done",
    "Stop",
    "HostChannel",
    "ConfigStore",
    "SystemConfig",
    "MatrixConfig",
    "SchedulerConfig",
    "ExecutionMode",
    "Display",
    "FrameBuffer",
    "MemoryDisplay",
    "SimulatedDisplay",
    "StripDisplay",
    "MatrixMap",
    "MatrixMapBuilder",
    "ScriptEngine",
    "ScriptInstance",
    "PythonScriptEngine",
    "ScriptRunner",
    "InlineRunner",
    "ProcessRunner",
    "create_runner",
    "MatrixHostError",
    "PluginError",
    "ConfigurationError",
    "DecodeError",
    "RuntimeFault",
    "TimeoutFault",
    "SessionStateError",
]
