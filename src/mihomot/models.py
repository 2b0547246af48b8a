"""Value types shared by the control core and the front ends.

Everything here is immutable. Snapshots coming from the daemon are replaced
wholesale on every fetch, never patched field by field.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from mihomot.errors import DeserializationError

log = structlog.get_logger()

# Only groups of this kind accept a user selection
SELECTOR_KIND = "Selector"


class Mode(str, Enum):
    """Daemon routing mode."""

    RULE = "rule"
    GLOBAL = "global"
    DIRECT = "direct"


class LogLevel(str, Enum):
    """Daemon log verbosity."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    DEBUG = "debug"
    SILENT = "silent"


# ─────────────────────────────────────────────────────────────────────────────
# Daemon snapshots
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProxyGroup:
    """One entry of the daemon's proxy table.

    Groups carry an ordered member list and, for selectors, the active member.
    Leaf proxies come through the same endpoint with no members; they are kept
    so their details can be shown.
    """

    name: str
    kind: str
    members: tuple[str, ...] = ()
    selected: str | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_selectable(self) -> bool:
        """Whether the user may pick the active member of this group."""
        return self.kind == SELECTOR_KIND

    @classmethod
    def from_api(cls, key: str, payload: Any) -> "ProxyGroup":
        """Build a group from one value of the `proxies` mapping.

        Raises:
            DeserializationError: If the entry is not an object or has bad field types.
        """
        if not isinstance(payload, dict):
            raise DeserializationError(f"proxy {key!r}: expected object, got {type(payload).__name__}")

        name = payload.get("name") or key
        kind = payload.get("type") or ""
        members = payload.get("all") or []
        selected = payload.get("now") or None

        if not isinstance(name, str) or not isinstance(kind, str):
            raise DeserializationError(f"proxy {key!r}: name and type must be strings")
        if not isinstance(members, list) or not all(isinstance(m, str) for m in members):
            raise DeserializationError(f"proxy {key!r}: 'all' must be a list of strings")
        if selected is not None and not isinstance(selected, str):
            raise DeserializationError(f"proxy {key!r}: 'now' must be a string")

        # The selection must name a member; anything else waits for the next fetch
        if selected is not None and members and selected not in members:
            log.debug("proxy_selection_not_member", group=name, selected=selected)
            selected = None

        extra = {k: v for k, v in payload.items() if k not in ("name", "type", "all", "now")}
        return cls(
            name=name,
            kind=kind,
            members=tuple(members),
            selected=selected,
            extra=extra,
        )


def parse_proxies(body: Any) -> dict[str, ProxyGroup]:
    """Parse a `GET /proxies` body into a name -> group mapping.

    Either every entry parses or DeserializationError is raised; a partial map
    is never returned.
    """
    if not isinstance(body, dict) or not isinstance(body.get("proxies"), dict):
        raise DeserializationError("response has no 'proxies' object")
    groups: dict[str, ProxyGroup] = {}
    for key, payload in body["proxies"].items():
        group = ProxyGroup.from_api(key, payload)
        groups[group.name] = group
    return groups


@dataclass(frozen=True)
class ConfigSnapshot:
    """Running daemon configuration as last confirmed by a fetch."""

    mode: Mode
    tun_enabled: bool
    tun_stack: str | None
    mixed_port: int
    log_level: LogLevel
    allow_lan: bool
    bind_address: str
    ipv6: bool

    @classmethod
    def from_api(cls, body: Any) -> "ConfigSnapshot":
        """Build a snapshot from a `GET /configs` body (daemon field names).

        Raises:
            DeserializationError: If a field is missing, mistyped or out of range.
        """
        if not isinstance(body, dict):
            raise DeserializationError("config response is not an object")
        try:
            tun = body.get("tun") or {}
            port = body["mixed-port"]
            if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= 65535:
                raise ValueError(f"mixed-port out of range: {port!r}")
            stack = tun.get("stack")
            return cls(
                mode=Mode(str(body["mode"]).lower()),
                tun_enabled=_as_bool(tun.get("enable", False), "tun.enable"),
                tun_stack=stack if isinstance(stack, str) and stack else None,
                mixed_port=port,
                log_level=LogLevel(str(body["log-level"]).lower()),
                allow_lan=_as_bool(body["allow-lan"], "allow-lan"),
                bind_address=str(body["bind-address"]),
                ipv6=_as_bool(body["ipv6"], "ipv6"),
            )
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise DeserializationError(f"invalid config: {e}") from e


def _as_bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"{name} must be a boolean, got {value!r}")
    return value


# ─────────────────────────────────────────────────────────────────────────────
# Latency results
# ─────────────────────────────────────────────────────────────────────────────


class FailureReason(Enum):
    """Why a latency measurement failed."""

    TIMEOUT = "timeout"
    CONNECT_ERROR = "connect_error"
    OTHER = "other"


@dataclass(frozen=True)
class Pending:
    """No measurement requested yet."""


@dataclass(frozen=True)
class Testing:
    """A measurement is in flight."""


@dataclass(frozen=True)
class Success:
    """Measurement completed."""

    ms: int


@dataclass(frozen=True)
class Failed:
    """Measurement failed."""

    reason: FailureReason
    detail: str = field(default="", compare=False)


LatencyResult = Pending | Testing | Success | Failed

PENDING = Pending()
TESTING = Testing()


class LatencyGrade(Enum):
    """Display bucket for a successful measurement."""

    GOOD = "good"
    WARN = "warn"
    BAD = "bad"


def classify_latency(ms: int, good_below: int = 200, warn_below: int = 500) -> LatencyGrade:
    """Bucket a latency: below good_below is good, below warn_below is warn, else bad."""
    if ms < good_below:
        return LatencyGrade.GOOD
    if ms < warn_below:
        return LatencyGrade.WARN
    return LatencyGrade.BAD


# ─────────────────────────────────────────────────────────────────────────────
# Traffic
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TrafficSample:
    """Bytes moved during one reporting interval of the traffic stream."""

    down: int
    up: int

    @classmethod
    def from_api(cls, payload: Any) -> "TrafficSample":
        """Parse one `{"up": n, "down": n}` line of the traffic stream."""
        if not isinstance(payload, dict):
            raise DeserializationError("traffic sample is not an object")
        down = payload.get("down", 0)
        up = payload.get("up", 0)
        if isinstance(down, bool) or isinstance(up, bool):
            raise DeserializationError("traffic counters must be integers")
        if not isinstance(down, int) or not isinstance(up, int) or down < 0 or up < 0:
            raise DeserializationError(f"invalid traffic counters: down={down!r} up={up!r}")
        return cls(down=down, up=up)
