"""
Script engines for matrix-host plugins.

The host treats the interpreter as an opaque capability: load a script,
then call its named entry points with no arguments. Plugins talk back only
through the injected ``Host``, ``Config`` and ``Log`` objects.

The bundled engine runs Python-source plugins in a private namespace with a
reduced set of builtins and an import allow-list:

    counter = 0

    def setup():
        pass

    def update():
        global counter
        ...
        Host.output_string(json.dumps({"state": rows, "done": False, "log_message": None}))
"""

import builtins
import logging
import random
import types
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional

from .errors import ConfigurationError, RuntimeFault

log = logging.getLogger(__name__)

ENTRY_POINTS = ("setup", "update")

DEFAULT_ALLOWED_MODULES: FrozenSet[str] = frozenset(
    {"math", "random", "json", "colorsys", "itertools", "functools"}
)

_SAFE_BUILTIN_NAMES = (
    "abs",
    "all",
    "any",
    "bool",
    "callable",
    "chr",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "format",
    "frozenset",
    "getattr",
    "hasattr",
    "hash",
    "int",
    "isinstance",
    "issubclass",
    "iter",
    "len",
    "list",
    "map",
    "max",
    "min",
    "next",
    "object",
    "ord",
    "pow",
    "range",
    "repr",
    "reversed",
    "round",
    "set",
    "slice",
    "sorted",
    "str",
    "sum",
    "super",
    "tuple",
    "type",
    "zip",
    "staticmethod",
    "classmethod",
    "property",
    "Exception",
    "ArithmeticError",
    "AssertionError",
    "AttributeError",
    "IndexError",
    "KeyError",
    "LookupError",
    "NotImplementedError",
    "RuntimeError",
    "StopIteration",
    "TypeError",
    "ValueError",
    "ZeroDivisionError",
    "__build_class__",
)


class ScriptInstance(ABC):
    """One loaded script with its own interpreter-side state."""

    @abstractmethod
    def has_function(self, name: str) -> bool:
        """Whether the script exports a callable ``name``."""

    @abstractmethod
    def call(self, name: str) -> Any:
        """Call entry point ``name`` with no arguments."""


class ScriptEngine(ABC):
    """Loads plugin source into fresh, isolated script instances."""

    @abstractmethod
    def load(self, source: str, filename: str, host_api: Mapping[str, Any]) -> ScriptInstance:
        """
        Load ``source`` with ``host_api`` objects visible as globals.

        Raises:
            RuntimeFault: the script could not be compiled or its top level raised.
            ConfigurationError: a required entry point is missing.
        """


class PythonScriptInstance(ScriptInstance):
    def __init__(self, namespace: Dict[str, Any], filename: str):
        self._namespace = namespace
        self.filename = filename

    def has_function(self, name: str) -> bool:
        return callable(self._namespace.get(name))

    def call(self, name: str) -> Any:
        function = self._namespace.get(name)
        if not callable(function):
            raise ConfigurationError(f"Plugin {self.filename} has no entry point {name!r}")
        return function()


class PythonScriptEngine(ScriptEngine):
    """Runs Python plugin source in a restricted namespace."""

    def __init__(self, allowed_modules: FrozenSet[str] = DEFAULT_ALLOWED_MODULES):
        self.allowed_modules = frozenset(allowed_modules)

    def load(self, source: str, filename: str, host_api: Mapping[str, Any]) -> ScriptInstance:
        try:
            code = compile(source, filename, "exec")
        except SyntaxError as e:
            raise RuntimeFault(f"Plugin {filename} does not compile: {e}") from e

        namespace: Dict[str, Any] = {
            "__builtins__": self._build_builtins(),
            "__name__": "__plugin__",
            "__file__": filename,
        }
        namespace.update(host_api)

        try:
            exec(code, namespace)
        except BaseException as e:
            raise RuntimeFault(f"Plugin {filename} failed while loading: {e!r}") from e

        instance = PythonScriptInstance(namespace, filename)
        missing = [name for name in ENTRY_POINTS if not instance.has_function(name)]
        if missing:
            raise ConfigurationError(
                f"Plugin {filename} does not define required entry point(s): {', '.join(missing)}"
            )
        log.debug(f"Loaded plugin {filename}")
        return instance

    def _build_builtins(self) -> Dict[str, Any]:
        table = {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES}
        table["__import__"] = self._guarded_import()
        return table

    def _guarded_import(self) -> Callable[..., Any]:
        allowed = self.allowed_modules
        # One set of module views and one random generator per loaded plugin
        views: Dict[str, PluginModule] = {}
        rng = random.Random()

        def _import(name, globals=None, locals=None, fromlist=(), level=0):
            root = name.split(".")[0]
            if level != 0 or root not in allowed:
                raise ImportError(f"Import of {name!r} is not allowed in plugins")
            module = builtins.__import__(name, globals, locals, fromlist, level)
            return _module_view(module, allowed, views, rng)

        return _import


class PluginModule(types.ModuleType):
    """
    A plugin's private, read-only view of an allowed module.

    Holds the module's public attributes only. Submodules appear as views
    when their package is allowed, and are left out otherwise. Module-level
    ``random`` functions are rebound to a generator owned by the plugin, so
    seeding in one plugin never moves another plugin's or the host's state.
    """

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"Module {self.__name__!r} is read-only in plugins")

    def __delattr__(self, name: str) -> None:
        raise AttributeError(f"Module {self.__name__!r} is read-only in plugins")


def _module_view(
    module: types.ModuleType,
    allowed: FrozenSet[str],
    views: Dict[str, PluginModule],
    rng: random.Random,
) -> PluginModule:
    view: Optional[PluginModule] = views.get(module.__name__)
    if view is not None:
        return view

    view = PluginModule(module.__name__, module.__doc__)
    views[module.__name__] = view

    for name, value in vars(module).items():
        if name.startswith("_"):
            continue
        if isinstance(value, types.ModuleType):
            if value.__name__.split(".")[0] not in allowed:
                continue
            value = _module_view(value, allowed, views, rng)
        elif isinstance(getattr(value, "__self__", None), random.Random):
            value = getattr(rng, value.__name__)
        view.__dict__[name] = value
    return view
