"""The snapshot the display reads and the event loop writes.

StateStore is owned by the event loop and mutated nowhere else. Renderers get
it typed as StateView, which exposes reads only.
"""

from collections.abc import Iterable, Mapping
from typing import Protocol

from mihomot.config import Settings
from mihomot.models import (
    PENDING,
    TESTING,
    ConfigSnapshot,
    LatencyResult,
    ProxyGroup,
    Testing,
    TrafficSample,
)
from mihomot.traffic import TrafficIngestor


class StateView(Protocol):
    """Read-only view of the application state."""

    @property
    def settings(self) -> Settings: ...

    @property
    def config(self) -> ConfigSnapshot | None: ...

    @property
    def proxies(self) -> Mapping[str, ProxyGroup]: ...

    @property
    def proxies_loaded(self) -> bool: ...

    @property
    def group_names(self) -> list[str]: ...

    @property
    def reachability(self) -> LatencyResult: ...

    @property
    def download_history(self) -> list[int]: ...

    @property
    def upload_history(self) -> list[int]: ...

    @property
    def down_rate(self) -> int: ...

    @property
    def up_rate(self) -> int: ...

    @property
    def traffic_capacity(self) -> int: ...

    @property
    def last_error(self) -> str | None: ...

    def members_of(self, group: str) -> tuple[str, ...]: ...

    def member_latency(self, name: str) -> LatencyResult: ...


class StateStore:
    """Config, proxy groups, latency results, traffic history and the last error.

    `config` is None until the first successful fetch ("not yet loaded"); a
    failed fetch later on leaves the previous snapshot in place.
    """

    def __init__(self, settings: Settings, traffic_capacity: int = 240) -> None:
        self.settings = settings
        self.config: ConfigSnapshot | None = None
        self.proxies: dict[str, ProxyGroup] = {}
        self.proxies_loaded = False
        self.group_names: list[str] = []
        self.reachability: LatencyResult = PENDING
        self.latencies: dict[str, LatencyResult] = {}
        self._traffic = TrafficIngestor(traffic_capacity)
        self.last_error: str | None = None

    def members_of(self, group: str) -> tuple[str, ...]:
        """Members of a group in daemon order, or () for unknown names."""
        entry = self.proxies.get(group)
        return entry.members if entry else ()

    def member_latency(self, name: str) -> LatencyResult:
        return self.latencies.get(name, PENDING)

    @property
    def download_history(self) -> list[int]:
        """Download counters, oldest first (a copy)."""
        return self._traffic.download.items

    @property
    def upload_history(self) -> list[int]:
        """Upload counters, oldest first (a copy)."""
        return self._traffic.upload.items

    @property
    def down_rate(self) -> int:
        return self._traffic.down_rate

    @property
    def up_rate(self) -> int:
        return self._traffic.up_rate

    @property
    def traffic_capacity(self) -> int:
        return self._traffic.capacity

    def ingest_traffic(self, sample: TrafficSample) -> None:
        self._traffic.ingest(sample)

    def resize_traffic(self, capacity: int) -> None:
        """Keep only as many samples per direction as the chart can show."""
        self._traffic.resize(capacity)

    def replace_config(self, snapshot: ConfigSnapshot) -> None:
        self.config = snapshot

    def replace_proxies(self, proxies: dict[str, ProxyGroup]) -> None:
        """Swap in a freshly fetched proxy table and rebuild the group list."""
        self.proxies = dict(proxies)
        self.proxies_loaded = True
        self.group_names = sorted(name for name, p in self.proxies.items() if p.is_selectable)

    def mark_members_testing(self, members: Iterable[str]) -> None:
        """Start a sweep: members go to Testing, leftovers of an older sweep go back to Pending.

        Outcomes of the older sweep will be discarded as stale, so anything it
        left in Testing would otherwise never settle.
        """
        batch = set(members)
        for name, result in list(self.latencies.items()):
            if isinstance(result, Testing) and name not in batch:
                self.latencies[name] = PENDING
        for name in batch:
            self.latencies[name] = TESTING

    def forget_daemon(self) -> None:
        """Drop everything learned from the previous daemon endpoint.

        Config and proxies go back to "not yet loaded" until the new daemon
        answers; member results it never measured are cleared.
        """
        self.config = None
        self.proxies = {}
        self.proxies_loaded = False
        self.group_names = []
        self.latencies.clear()

    def record_error(self, message: str) -> None:
        self.last_error = message

    def clear_error(self) -> None:
        self.last_error = None
