"""
System configuration for matrix-host.

Holds the matrix geometry, scheduler policy and the read-only ConfigStore
that plugins query through ``Config.get``.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Union

from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

Scalar = Union[str, int, float, bool]


class ExecutionMode(Enum):
    """Where a plugin's interpreter runs."""

    INLINE = "inline"  # Dedicated worker thread in the host process
    PROCESS = "process"  # Child process, killable on timeout


class EnvSettings(BaseSettings):
    """Environment-based overrides loaded from MATRIX_HOST_* variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="MATRIX_HOST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    width: Optional[int] = None
    height: Optional[int] = None
    serpentine: Optional[bool] = None
    brightness: Optional[int] = None
    fps: Optional[float] = None
    time_limit: Optional[float] = None
    update_timeout: Optional[float] = None
    loop_plugins: Optional[bool] = None
    execution_mode: Optional[str] = None
    log_level: str = "INFO"


@dataclass(frozen=True)
class MatrixConfig:
    """Geometry and wiring of the LED matrix."""

    width: int = 16
    height: int = 16
    serpentine: bool = False
    vertical: bool = False
    mirror_horizontal: bool = False
    mirror_vertical: bool = False
    brightness: int = 255

    def validate(self) -> "MatrixConfig":
        if self.width < 1 or self.height < 1:
            raise ConfigurationError(
                f"Matrix dimensions must be positive, got {self.width}x{self.height}"
            )
        if not 0 <= self.brightness <= 255:
            raise ConfigurationError(f"Brightness must be within [0, 255], got {self.brightness}")
        return self


@dataclass(frozen=True)
class SchedulerConfig:
    """Frame scheduling policy."""

    fps: float = 30.0
    time_limit: Optional[float] = None  # seconds per plugin, None = unlimited
    update_timeout: float = 1.0  # seconds per setup/update call
    loop_plugins: bool = False
    execution_mode: ExecutionMode = ExecutionMode.INLINE

    def validate(self) -> "SchedulerConfig":
        if self.fps < 0:
            raise ConfigurationError(f"fps must not be negative, got {self.fps}")
        if self.time_limit is not None and self.time_limit <= 0:
            raise ConfigurationError(f"time_limit must be positive, got {self.time_limit}")
        if self.update_timeout <= 0:
            raise ConfigurationError(f"update_timeout must be positive, got {self.update_timeout}")
        return self


@dataclass(frozen=True)
class SystemConfig:
    """Complete host configuration."""

    matrix: MatrixConfig = field(default_factory=MatrixConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    log_level: str = "INFO"

    def __post_init__(self):
        self.matrix.validate()
        self.scheduler.validate()

    @classmethod
    def from_env(cls, base: Optional["SystemConfig"] = None) -> "SystemConfig":
        """Apply MATRIX_HOST_* overrides on top of ``base`` (or the defaults)."""
        base = base or cls()
        env = EnvSettings()

        matrix_overrides: Dict[str, Any] = {}
        for key in ("width", "height", "serpentine", "brightness"):
            value = getattr(env, key)
            if value is not None:
                matrix_overrides[key] = value

        scheduler_overrides: Dict[str, Any] = {}
        for key in ("fps", "time_limit", "update_timeout", "loop_plugins"):
            value = getattr(env, key)
            if value is not None:
                scheduler_overrides[key] = value
        if env.execution_mode is not None:
            try:
                scheduler_overrides["execution_mode"] = ExecutionMode(env.execution_mode.lower())
            except ValueError:
                raise ConfigurationError(f"Unknown execution mode {env.execution_mode!r}") from None

        return cls(
            matrix=replace(base.matrix, **matrix_overrides),
            scheduler=replace(base.scheduler, **scheduler_overrides),
            log_level=env.log_level.upper(),
        )

    def config_store(self) -> "ConfigStore":
        """Build the ConfigStore published to plugins."""
        return ConfigStore.from_config(self)


class ConfigStore(Mapping[str, Scalar]):
    """
    Immutable key/value configuration visible to plugins.

    Built once before ``setup``; shared read-only by every session.
    Looking up an absent key is a ConfigurationError, there are no defaults.
    """

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        checked: Dict[str, Scalar] = {}
        for key, value in (values or {}).items():
            if not isinstance(key, str):
                raise ConfigurationError(f"Config keys must be strings, got {key!r}")
            if not isinstance(value, (str, int, float, bool)):
                raise ConfigurationError(
                    f"Config value for {key!r} must be a scalar, got {type(value).__name__}"
                )
            checked[key] = value
        self._values = MappingProxyType(checked)

    @classmethod
    def from_config(cls, config: SystemConfig) -> "ConfigStore":
        return cls(
            {
                "width": config.matrix.width,
                "height": config.matrix.height,
                "target_fps": config.scheduler.fps,
                "serpentine": config.matrix.serpentine,
                "brightness": config.matrix.brightness,
            }
        )

    def get(self, key: str) -> Scalar:  # type: ignore[override]
        """Look up ``key``; raise ConfigurationError when it is not declared."""
        if not isinstance(key, str):
            raise ConfigurationError(f"Config keys must be strings, got {key!r}")
        try:
            return self._values[key]
        except KeyError:
            raise ConfigurationError(f"Unknown config key {key!r}") from None

    def __getitem__(self, key: str) -> Scalar:
        return self.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def as_dict(self) -> Dict[str, Scalar]:
        """Plain copy, e.g. to hand to a child process."""
        return dict(self._values)

    def __repr__(self) -> str:
        return f"ConfigStore({dict(self._values)!r})"
