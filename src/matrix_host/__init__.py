"""
matrix-host - A runtime for scripted LED matrix animation plugins.

Architecture:
    - Core: Kernel, PluginSession, FrameScheduler, PluginCodec, runners
    - Plugins: scripts exposing setup() and update(), talking to the host
      only through Host, Config and Log

Each plugin session owns one isolated interpreter, on a worker thread or in a
child process, and is driven strictly one call at a time.

Example:
    from matrix_host.core import Kernel, MemoryDisplay, SystemConfig
    from matrix_host.plugins import load_bundled

    kernel = Kernel(SystemConfig.from_env(), display_factory=MemoryDisplay)
    report = kernel.run_plugin(load_bundled("fade"))
"""

__version__ = "0.1.0"

from .core import (
    ConfigStore,
    Display,
    FrameBuffer,
    FrameScheduler,
    Kernel,
    PluginCodec,
    PluginError,
    PluginSession,
    PluginSource,
    SessionState,
    SystemConfig,
)

__all__ = [
    "Kernel",
    "PluginSource",
    "PluginSession",
    "SessionState",
    "FrameScheduler",
    "PluginCodec",
    "ConfigStore",
    "SystemConfig",
    "Display",
    "FrameBuffer",
    "PluginError",
]
