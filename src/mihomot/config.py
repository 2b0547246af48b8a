"""Configuration system for mihomot."""

import os
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, TypeVar

import structlog
import tomlkit

log = structlog.get_logger()

SECRET_ENV_VAR = "MIHOMO_SECRET"
FALLBACK_SECRET = "mihomo"

_T = TypeVar("_T")


def _default_secret() -> str:
    return os.environ.get(SECRET_ENV_VAR, FALLBACK_SECRET)


@dataclass
class Settings:
    """Where the daemon lives and what the reachability test targets.

    These are local client settings: there is no remote copy to confirm
    against, so edits apply immediately and are then persisted.
    """

    base_url: str = "http://127.0.0.1:9090"
    api_secret: str = field(default_factory=_default_secret)
    test_url: str = "https://www.google.com"
    test_timeout_ms: int = 3000


@dataclass
class SystemConfig:
    """Event loop, channel and log file tuning."""

    control_timeout: float = 5.0  # Seconds before a control API call is abandoned
    tick_interval: float = 0.1  # Seconds between event loop ticks
    latency_channel_size: int = 512  # Must exceed the largest group's member count
    traffic_channel_size: int = 64
    control_channel_size: int = 64
    # Log file rotation
    log_max_bytes: int = 2 * 1024 * 1024  # Max log file size (2MB)
    log_backup_count: int = 2  # Number of backup log files to keep


@dataclass
class LatencyConfig:
    """Thresholds for grading a measured latency."""

    good_below_ms: int = 200  # Under this is "good"
    warn_below_ms: int = 500  # Under this is "warn", otherwise "bad"


@dataclass
class LatencyColors:
    """Colors for latency values.

    Default palette: Dracula theme.
    """

    good: str = "#50fa7b"  # Dracula green
    warn: str = "#f1fa8c"  # Dracula yellow
    bad: str = "#ff5555"  # Dracula red
    testing: str = "#f1fa8c"  # Dracula yellow
    idle: str = "dim"


@dataclass
class TrafficColors:
    """Colors for the traffic sparklines."""

    download: str = "#50fa7b"  # Dracula green
    upload: str = "#f1fa8c"  # Dracula yellow


@dataclass
class TUIColorsConfig:
    """All TUI color configurations grouped together."""

    latency: LatencyColors = field(default_factory=LatencyColors)
    traffic: TrafficColors = field(default_factory=TrafficColors)
    selected: str = "#50fa7b"  # Active member of a group
    error: str = "#ff5555"


@dataclass
class TUIConfig:
    """TUI-specific configuration."""

    colors: TUIColorsConfig = field(default_factory=TUIColorsConfig)
    traffic_history_size: int = 240  # Samples kept per direction (upper bound on chart width)


# Smallest accepted value per numeric field; anything lower keeps the default
_MINIMUMS: dict[tuple[type, str], float] = {
    (Settings, "test_timeout_ms"): 1,
    (SystemConfig, "control_timeout"): 0.01,
    (SystemConfig, "tick_interval"): 0.01,
    (SystemConfig, "latency_channel_size"): 1,
    (SystemConfig, "traffic_channel_size"): 1,
    (SystemConfig, "control_channel_size"): 1,
    (SystemConfig, "log_max_bytes"): 1,
    (SystemConfig, "log_backup_count"): 0,
    (LatencyConfig, "good_below_ms"): 1,
    (LatencyConfig, "warn_below_ms"): 1,
    (TUIConfig, "traffic_history_size"): 1,
}


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


def _load_section(cls: type[_T], data: Any) -> _T:
    """Build a dataclass from a TOML table, keeping defaults for bad or missing values.

    A value whose type does not match the default's type, or a number below
    the field's minimum, is ignored with a warning rather than raised, so a
    hand-edited file can never stop startup.
    """
    defaults = cls()
    if not isinstance(data, dict):
        if data is not None:
            log.warning("config_section_invalid", section=cls.__name__)
        return defaults

    values: dict[str, Any] = {}
    for f in fields(defaults):  # type: ignore[arg-type]
        if f.name not in data:
            continue
        default = getattr(defaults, f.name)
        raw = data[f.name]
        if is_dataclass(default):
            values[f.name] = _load_section(type(default), raw)
        elif _same_kind(default, raw) and _in_range(cls, f.name, raw):
            values[f.name] = float(raw) if isinstance(default, float) else raw
        else:
            log.warning("config_value_invalid", section=cls.__name__, key=f.name, value=str(raw))
    return replace(defaults, **values)  # type: ignore[type-var]


def _in_range(cls: type, name: str, value: Any) -> bool:
    minimum = _MINIMUMS.get((cls, name))
    return minimum is None or value >= minimum


def _same_kind(default: Any, raw: Any) -> bool:
    if isinstance(default, bool) or isinstance(raw, bool):
        return isinstance(default, bool) and isinstance(raw, bool)
    if isinstance(default, float):
        return isinstance(raw, (int, float))
    return isinstance(raw, type(default))


@dataclass
class Config:
    """Main configuration container."""

    settings: Settings = field(default_factory=Settings)
    system: SystemConfig = field(default_factory=SystemConfig)
    latency: LatencyConfig = field(default_factory=LatencyConfig)
    tui: TUIConfig = field(default_factory=TUIConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "mihomot"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "mihomot"

    @property
    def log_path(self) -> Path:
        """JSON log file path."""
        return self.state_dir / "mihomot.log"

    def with_overrides(self, base_url: str | None = None, secret: str | None = None) -> "Config":
        """Return a copy with command-line overrides applied to the settings."""
        settings = self.settings
        if base_url:
            settings = replace(settings, base_url=base_url)
        if secret is not None:
            settings = replace(settings, api_secret=secret)
        return replace(self, settings=settings)

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        doc.add("daemon", _dataclass_to_table(self.settings))
        doc.add(tomlkit.nl())
        for name in ("system", "latency", "tui"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for anything missing or malformed.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() of a missing file are identical. Nothing is raised for a
        bad file: startup must always get a usable configuration.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f).unwrap()
        except (OSError, UnicodeDecodeError, tomlkit.exceptions.TOMLKitError) as e:
            log.warning("config_unreadable", path=str(path), error=str(e))
            return defaults

        settings = _load_section(Settings, data.get("daemon"))
        if not settings.base_url:
            log.warning("config_value_invalid", section="Settings", key="base_url", value="")
            settings = replace(settings, base_url=defaults.settings.base_url)

        return cls(
            settings=settings,
            system=_load_section(SystemConfig, data.get("system")),
            latency=_load_section(LatencyConfig, data.get("latency")),
            tui=_load_section(TUIConfig, data.get("tui")),
        )


def load_settings(path: Path | None = None) -> Settings:
    """Load only the daemon settings; missing or malformed files yield defaults."""
    return Config.load(path).settings


def save_settings(settings: Settings, path: Path | None = None) -> None:
    """Persist daemon settings, keeping the rest of the file's configuration.

    Raises:
        OSError: If the file cannot be written
    """
    config = Config.load(path)
    replace(config, settings=settings).save(path)
