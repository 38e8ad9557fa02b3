"""
Bundled matrix-host plugins.

Each plugin is a standalone script in this folder. Scripts run inside the
plugin engine, not as regular modules: ``Host``, ``Config`` and ``Log`` are
provided by the host at load time.
"""

from importlib import resources
from typing import List

from ..core.kernel import PluginSource

BUNDLED = ("fade", "fade_stop", "bounce")


def load_bundled(name: str) -> PluginSource:
    """Read a bundled plugin's source."""
    if name not in BUNDLED:
        raise KeyError(f"No bundled plugin named {name!r}")
    filename = f"{name}.py"
    source = resources.files(__name__).joinpath(filename).read_text(encoding="utf-8")
    return PluginSource(name=name, source=source, filename=filename)


def load_all() -> List[PluginSource]:
    return [load_bundled(name) for name in BUNDLED]


__all__ = ["BUNDLED", "load_bundled", "load_all"]
