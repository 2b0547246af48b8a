"""Editable settings as a closed set of fields.

Remote fields belong to the daemon: editing one only produces a PATCH body,
and the displayed value changes when the follow-up fetch confirms it. Local
fields belong to this client and are applied directly to Settings.

Every field has an entry in each dispatch table below; the module refuses to
import if one is missing, so a new field cannot be half wired.
"""

from collections.abc import Callable
from dataclasses import replace
from enum import Enum
from typing import Any

from mihomot.config import Settings
from mihomot.errors import InvalidEditError
from mihomot.models import ConfigSnapshot, LogLevel, Mode


class RemoteField(Enum):
    """Daemon configuration fields the user can change."""

    MODE = "mode"
    TUN = "tun"
    MIXED_PORT = "mixed_port"
    LOG_LEVEL = "log_level"
    ALLOW_LAN = "allow_lan"
    BIND_ADDRESS = "bind_address"
    IPV6 = "ipv6"


class LocalField(Enum):
    """Client settings the user can change."""

    BASE_URL = "base_url"
    API_SECRET = "api_secret"
    TEST_URL = "test_url"
    TEST_TIMEOUT = "test_timeout_ms"


EditableField = RemoteField | LocalField

# Display order of the settings table
SETTINGS_ROWS: tuple[EditableField, ...] = (
    LocalField.BASE_URL,
    LocalField.API_SECRET,
    LocalField.TEST_URL,
    LocalField.TEST_TIMEOUT,
    RemoteField.MODE,
    RemoteField.TUN,
    RemoteField.MIXED_PORT,
    RemoteField.LOG_LEVEL,
    RemoteField.ALLOW_LAN,
    RemoteField.BIND_ADDRESS,
    RemoteField.IPV6,
)

LABELS: dict[EditableField, str] = {
    LocalField.BASE_URL: "API URL",
    LocalField.API_SECRET: "API Secret",
    LocalField.TEST_URL: "Test URL",
    LocalField.TEST_TIMEOUT: "Test Timeout (ms)",
    RemoteField.MODE: "Mode",
    RemoteField.TUN: "TUN",
    RemoteField.MIXED_PORT: "Mixed Port",
    RemoteField.LOG_LEVEL: "Log Level",
    RemoteField.ALLOW_LAN: "Allow LAN",
    RemoteField.BIND_ADDRESS: "Bind Address",
    RemoteField.IPV6: "IPv6",
}

MODE_CYCLE = (Mode.RULE, Mode.GLOBAL, Mode.DIRECT)
LOG_LEVEL_CYCLE = (LogLevel.INFO, LogLevel.WARNING, LogLevel.ERROR, LogLevel.DEBUG, LogLevel.SILENT)


def _next_in_cycle(cycle: tuple[Any, ...], current: Any) -> Any:
    index = cycle.index(current) if current in cycle else -1
    return cycle[(index + 1) % len(cycle)]


def _parse_port(text: str | None) -> int:
    try:
        port = int((text or "").strip())
    except ValueError:
        raise InvalidEditError(f"Invalid port: {text!r}") from None
    if not 0 <= port <= 65535:
        raise InvalidEditError(f"Port out of range: {port}")
    return port


def _parse_timeout(text: str) -> int:
    try:
        timeout = int(text.strip())
    except ValueError:
        raise InvalidEditError(f"Invalid timeout: {text!r}") from None
    if timeout <= 0:
        raise InvalidEditError(f"Timeout must be positive: {timeout}")
    return timeout


def _require_text(text: str | None, label: str) -> str:
    value = (text or "").strip()
    if not value:
        raise InvalidEditError(f"{label} cannot be empty")
    return value


# ─────────────────────────────────────────────────────────────────────────────
# Remote fields
# ─────────────────────────────────────────────────────────────────────────────

# field -> (snapshot, typed text) -> PATCH body
_PATCH_BUILDERS: dict[RemoteField, Callable[[ConfigSnapshot, str | None], dict[str, Any]]] = {
    RemoteField.MODE: lambda c, _: {"mode": _next_in_cycle(MODE_CYCLE, c.mode).value},
    RemoteField.TUN: lambda c, _: {"tun": {"enable": not c.tun_enabled}},
    RemoteField.MIXED_PORT: lambda c, text: {"mixed-port": _parse_port(text)},
    RemoteField.LOG_LEVEL: lambda c, _: {
        "log-level": _next_in_cycle(LOG_LEVEL_CYCLE, c.log_level).value
    },
    RemoteField.ALLOW_LAN: lambda c, _: {"allow-lan": not c.allow_lan},
    RemoteField.BIND_ADDRESS: lambda c, text: {
        "bind-address": _require_text(text, "Bind address")
    },
    RemoteField.IPV6: lambda c, _: {"ipv6": not c.ipv6},
}

_REMOTE_VALUES: dict[RemoteField, Callable[[ConfigSnapshot], str]] = {
    RemoteField.MODE: lambda c: c.mode.value,
    RemoteField.TUN: lambda c: "on" if c.tun_enabled else "off",
    RemoteField.MIXED_PORT: lambda c: str(c.mixed_port),
    RemoteField.LOG_LEVEL: lambda c: c.log_level.value,
    RemoteField.ALLOW_LAN: lambda c: "on" if c.allow_lan else "off",
    RemoteField.BIND_ADDRESS: lambda c: c.bind_address,
    RemoteField.IPV6: lambda c: "on" if c.ipv6 else "off",
}

# Fields edited by typing a value; the rest toggle or cycle on activation
_REMOTE_TEXT_FIELDS = frozenset({RemoteField.MIXED_PORT, RemoteField.BIND_ADDRESS})


def build_patch(field: RemoteField, snapshot: ConfigSnapshot, text: str | None = None) -> dict:
    """Return the PATCH body that applies an edit to the daemon.

    Toggle and cycle fields derive the next value from the confirmed snapshot;
    text fields validate `text`.

    Raises:
        InvalidEditError: If typed input is not acceptable for the field
    """
    return _PATCH_BUILDERS[field](snapshot, text)


# ─────────────────────────────────────────────────────────────────────────────
# Local fields
# ─────────────────────────────────────────────────────────────────────────────

_LOCAL_APPLIERS: dict[LocalField, Callable[[Settings, str], Settings]] = {
    LocalField.BASE_URL: lambda s, text: replace(
        s, base_url=_require_text(text, "API URL").rstrip("/")
    ),
    LocalField.API_SECRET: lambda s, text: replace(s, api_secret=text.strip()),
    LocalField.TEST_URL: lambda s, text: replace(s, test_url=_require_text(text, "Test URL")),
    LocalField.TEST_TIMEOUT: lambda s, text: replace(s, test_timeout_ms=_parse_timeout(text)),
}

_LOCAL_VALUES: dict[LocalField, Callable[[Settings], str]] = {
    LocalField.BASE_URL: lambda s: s.base_url,
    LocalField.API_SECRET: lambda s: s.api_secret,
    LocalField.TEST_URL: lambda s: s.test_url,
    LocalField.TEST_TIMEOUT: lambda s: str(s.test_timeout_ms),
}


def apply_local(field: LocalField, settings: Settings, text: str) -> Settings:
    """Return new Settings with `text` applied to `field`.

    Raises:
        InvalidEditError: If the text is not a valid value for the field
    """
    return _LOCAL_APPLIERS[field](settings, text)


def is_text_field(field: EditableField) -> bool:
    """Whether the field is edited by typing (as opposed to toggling/cycling)."""
    return isinstance(field, LocalField) or field in _REMOTE_TEXT_FIELDS


def current_value(field: EditableField, snapshot: ConfigSnapshot | None, settings: Settings) -> str:
    """Value to display (or pre-fill for editing); empty for remote fields before the first fetch."""
    if isinstance(field, LocalField):
        return _LOCAL_VALUES[field](settings)
    if snapshot is None:
        return ""
    return _REMOTE_VALUES[field](snapshot)


def _check_complete() -> None:
    every_field = set(RemoteField) | set(LocalField)
    tables: dict[str, tuple[set, Any]] = {
        "patch builders": (set(RemoteField), _PATCH_BUILDERS),
        "remote values": (set(RemoteField), _REMOTE_VALUES),
        "local appliers": (set(LocalField), _LOCAL_APPLIERS),
        "local values": (set(LocalField), _LOCAL_VALUES),
        "labels": (every_field, LABELS),
        "settings rows": (every_field, SETTINGS_ROWS),
    }
    for name, (expected, table) in tables.items():
        missing = expected - set(table)
        if missing:
            raise RuntimeError(f"edits: {name} missing {sorted(m.name for m in missing)}")


_check_complete()
