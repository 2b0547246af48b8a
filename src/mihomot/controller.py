"""Single-consumer event loop that owns the application state.

Everything that touches the network runs in a background task; those tasks
report back only through channels (asyncio queues). Each tick the loop:

1. drains the latency channel, applying outcomes that are not stale,
2. drains the traffic channel into the ring buffers,
3. drains the control channel (fetch results and failures), skipping any
   that were requested before the last endpoint switch,
4. handles at most one user intent.

The loop itself never awaits network I/O, and since it is the only writer of
StateStore, no locks are needed.
"""

import asyncio
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from mihomot.client import ControlClient
from mihomot.config import Config, Settings
from mihomot.edits import LocalField, RemoteField, apply_local, build_patch
from mihomot.errors import ControlError, InvalidEditError
from mihomot.models import TESTING, ConfigSnapshot, ProxyGroup, TrafficSample
from mihomot.probe import LatencyProbe, MemberOutcome, ProbeOutcome, ReachabilityOutcome
from mihomot.state import StateStore, StateView
from mihomot.traffic import TrafficPoller

log = structlog.get_logger()


# ─────────────────────────────────────────────────────────────────────────────
# User intents
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Refresh:
    """Refetch proxies and config."""


@dataclass(frozen=True)
class TestReachability:
    """Run the app-wide reachability test against the configured test URL."""


@dataclass(frozen=True)
class TestGroup:
    """Measure every member of a group through the daemon."""

    group: str


@dataclass(frozen=True)
class SelectProxy:
    """Make `member` the active proxy of `group`."""

    group: str
    member: str


@dataclass(frozen=True)
class EditRemote:
    """Change a daemon setting. `text` is the typed value for text fields."""

    field: RemoteField
    text: str | None = None


@dataclass(frozen=True)
class CommitLocal:
    """Change and persist a client setting."""

    field: LocalField
    text: str


@dataclass(frozen=True)
class ResizeHistory:
    """Match the traffic history length to the chart width."""

    width: int


Intent = (
    Refresh | TestReachability | TestGroup | SelectProxy | EditRemote | CommitLocal | ResizeHistory
)


# ─────────────────────────────────────────────────────────────────────────────
# Control channel messages
# ─────────────────────────────────────────────────────────────────────────────


# `epoch` is the endpoint epoch the request was made under; results from
# before the latest endpoint switch are dropped on arrival.


@dataclass(frozen=True)
class ConfigLoaded:
    epoch: int
    snapshot: ConfigSnapshot


@dataclass(frozen=True)
class ProxiesLoaded:
    epoch: int
    proxies: dict[str, ProxyGroup]


@dataclass(frozen=True)
class ControlFailed:
    epoch: int
    operation: str
    message: str


ControlMessage = ConfigLoaded | ProxiesLoaded | ControlFailed

SettingsSaver = Callable[[Settings], None]


class EventLoop:
    """Owner of StateStore; turns intents into background work and results into state.

    Args:
        config: Application config; its settings seed the state
        http: Shared httpx client for all daemon calls (created if omitted)
        save_settings: Persists committed local settings; None disables persistence
    """

    def __init__(
        self,
        config: Config,
        *,
        http: httpx.AsyncClient | None = None,
        save_settings: SettingsSaver | None = None,
    ) -> None:
        self.config = config
        self.tick_interval = config.system.tick_interval
        self._save_settings = save_settings

        self._store = StateStore(config.settings, config.tui.traffic_history_size)
        self._client = ControlClient(
            config.settings.base_url,
            config.settings.api_secret,
            timeout=config.system.control_timeout,
            http=http,
        )

        self._latency_results: asyncio.Queue[ProbeOutcome] = asyncio.Queue(
            maxsize=config.system.latency_channel_size
        )
        self._traffic_samples: asyncio.Queue[TrafficSample] = asyncio.Queue(
            maxsize=config.system.traffic_channel_size
        )
        self._control_results: asyncio.Queue[ControlMessage] = asyncio.Queue(
            maxsize=config.system.control_channel_size
        )
        self._intents: asyncio.Queue[Intent] = asyncio.Queue()
        self._input_ready = asyncio.Event()

        self.probe = LatencyProbe(self._latency_results)
        self._poller = TrafficPoller(self._client, self._traffic_samples)
        self._tasks: set[asyncio.Task] = set()
        self._started = False
        self._epoch = 0  # Bumped on every endpoint switch

    @property
    def state(self) -> StateView:
        """Read-only view for renderers."""
        return self._store

    @property
    def client(self) -> ControlClient:
        return self._client

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, stream_traffic: bool = True) -> None:
        """Kick off the startup fetches, the traffic stream and one reachability test.

        Must be called from a running asyncio loop.
        """
        if self._started:
            return
        self._started = True
        log.info("event_loop_started", base_url=self._client.base_url)
        self._refresh()
        if stream_traffic:
            self._poller.start()
        self._test_reachability()

    async def aclose(self) -> None:
        """Stop background work and close the connection pool."""
        await self._poller.stop()
        await self.probe.aclose()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._client.aclose()
        log.info("event_loop_stopped")

    def submit(self, intent: Intent) -> None:
        """Queue a user intent for a later tick. Safe to call from input handlers."""
        self._intents.put_nowait(intent)
        self._input_ready.set()

    async def run(
        self,
        stop: asyncio.Event,
        on_tick: Callable[[StateView], None] | None = None,
        *,
        stream_traffic: bool = True,
    ) -> None:
        """Tick until `stop` is set, waiting at most one tick interval for input.

        `on_tick` is called after every tick with the updated state; this is
        where a renderer hooks in.
        """
        self.start(stream_traffic=stream_traffic)
        while not stop.is_set():
            try:
                await asyncio.wait_for(self._input_ready.wait(), timeout=self.tick_interval)
            except TimeoutError:
                pass
            self.tick()
            if on_tick is not None:
                on_tick(self._store)

    # ─────────────────────────────────────────────────────────────────────────
    # Tick
    # ─────────────────────────────────────────────────────────────────────────

    def tick(self) -> None:
        """Apply everything the background tasks produced, then one intent."""
        self._drain_latency()
        self._drain_traffic()
        self._drain_control()

        try:
            intent = self._intents.get_nowait()
        except asyncio.QueueEmpty:
            intent = None
        if self._intents.empty():
            self._input_ready.clear()
        if intent is not None:
            self._dispatch(intent)

    def _drain_latency(self) -> None:
        while True:
            try:
                outcome = self._latency_results.get_nowait()
            except asyncio.QueueEmpty:
                return
            if not self.probe.is_current(outcome):
                log.debug("stale_probe_discarded", outcome=repr(outcome))
                continue
            if isinstance(outcome, ReachabilityOutcome):
                self._store.reachability = outcome.result
            elif isinstance(outcome, MemberOutcome):
                self._store.latencies[outcome.member] = outcome.result

    def _drain_traffic(self) -> None:
        while True:
            try:
                sample = self._traffic_samples.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._store.ingest_traffic(sample)

    def _drain_control(self) -> None:
        while True:
            try:
                message = self._control_results.get_nowait()
            except asyncio.QueueEmpty:
                return
            if message.epoch != self._epoch:
                log.debug("stale_control_discarded", message=type(message).__name__)
                continue
            if isinstance(message, ConfigLoaded):
                self._store.replace_config(message.snapshot)
                self._store.clear_error()
            elif isinstance(message, ProxiesLoaded):
                self._store.replace_proxies(message.proxies)
                self._store.clear_error()
            elif isinstance(message, ControlFailed):
                log.warning("control_failed", operation=message.operation, error=message.message)
                self._store.record_error(message.message)

    # ─────────────────────────────────────────────────────────────────────────
    # Intent dispatch
    # ─────────────────────────────────────────────────────────────────────────

    def _dispatch(self, intent: Intent) -> None:
        log.debug("intent", intent=repr(intent))
        try:
            if isinstance(intent, Refresh):
                self._refresh()
            elif isinstance(intent, TestReachability):
                self._test_reachability()
            elif isinstance(intent, TestGroup):
                self._test_group(intent.group)
            elif isinstance(intent, SelectProxy):
                self._select_proxy(intent.group, intent.member)
            elif isinstance(intent, EditRemote):
                self._edit_remote(intent.field, intent.text)
            elif isinstance(intent, CommitLocal):
                self._commit_local(intent.field, intent.text)
            elif isinstance(intent, ResizeHistory):
                self._resize_history(intent.width)
        except InvalidEditError as e:
            self._store.record_error(str(e))

    def _refresh(self) -> None:
        client, epoch = self._client, self._epoch
        self._spawn("fetch_proxies", self._load_proxies(client, epoch))
        self._spawn("fetch_config", self._load_config(client, epoch))

    def _test_reachability(self) -> None:
        settings = self._store.settings
        self._store.reachability = TESTING
        self.probe.test_reachability(self._client, settings.test_url, settings.test_timeout_ms)

    def _test_group(self, group: str) -> None:
        members = self._store.members_of(group)
        if not members:
            log.debug("group_sweep_skipped", group=group)
            return
        settings = self._store.settings
        self._store.mark_members_testing(members)
        self.probe.test_group(self._client, members, settings.test_url, settings.test_timeout_ms)

    def _select_proxy(self, group: str, member: str) -> None:
        entry = self._store.proxies.get(group)
        if entry is None or not entry.is_selectable:
            raise InvalidEditError(f"{group!r} is not a selectable group")
        if member not in entry.members:
            raise InvalidEditError(f"{member!r} is not a member of {group!r}")

        client, epoch = self._client, self._epoch

        async def select_then_confirm() -> None:
            await client.select_proxy(group, member)
            await self._load_proxies(client, epoch)

        self._spawn("select_proxy", select_then_confirm())

    def _edit_remote(self, field: RemoteField, text: str | None) -> None:
        snapshot = self._store.config
        if snapshot is None:
            raise InvalidEditError("Config not loaded yet")
        patch = build_patch(field, snapshot, text)
        client, epoch = self._client, self._epoch

        # The snapshot is only replaced by the fetch, never from the patch itself
        async def patch_then_confirm() -> None:
            await client.patch_config(patch)
            await self._load_config(client, epoch)

        log.info("config_patch", field=field.value, patch=patch)
        self._spawn("patch_config", patch_then_confirm())

    def _commit_local(self, field: LocalField, text: str) -> None:
        settings = apply_local(field, self._store.settings, text)
        self._store.settings = settings
        log.info("settings_committed", field=field.value)

        if self._save_settings is not None:
            try:
                self._save_settings(settings)
            except OSError as e:
                log.warning("settings_save_failed", error=str(e))
                self._store.record_error(f"Failed to save settings: {e}")

        if field in (LocalField.BASE_URL, LocalField.API_SECRET):
            self._switch_endpoint(settings)
        elif field is LocalField.TEST_URL:
            self._test_reachability()

    def _switch_endpoint(self, settings: Settings) -> None:
        """Point every later call at the new endpoint.

        Calls already in flight finish against the old daemon, but their
        results and group measurements are discarded when they arrive.
        """
        self._epoch += 1
        self.probe.abandon_group_sweeps()
        self._store.forget_daemon()
        self._client = self._client.with_endpoint(settings.base_url, settings.api_secret)
        old_poller = self._poller
        self._poller = TrafficPoller(self._client, self._traffic_samples)
        if old_poller.running:
            self._spawn("restart_traffic", self._restart_poller(old_poller, self._poller))
        self._refresh()

    def _resize_history(self, width: int) -> None:
        capacity = max(1, min(width, self.config.tui.traffic_history_size))
        if capacity != self._store.traffic_capacity:
            self._store.resize_traffic(capacity)

    @staticmethod
    async def _restart_poller(old: TrafficPoller, new: TrafficPoller) -> None:
        await old.stop()
        new.start()

    # ─────────────────────────────────────────────────────────────────────────
    # Background operations (never touch StateStore)
    # ─────────────────────────────────────────────────────────────────────────

    async def _load_proxies(self, client: ControlClient, epoch: int) -> None:
        proxies = await client.fetch_proxies()
        await self._control_results.put(ProxiesLoaded(epoch, proxies))

    async def _load_config(self, client: ControlClient, epoch: int) -> None:
        snapshot = await client.fetch_config()
        await self._control_results.put(ConfigLoaded(epoch, snapshot))

    def _spawn(self, operation: str, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(self._guard(operation, self._epoch, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, operation: str, epoch: int, coro: Coroutine[Any, Any, None]) -> None:
        """Run a background operation, reporting failures on the control channel."""
        try:
            await coro
        except ControlError as e:
            await self._control_results.put(ControlFailed(epoch, operation, e.user_message))
        except Exception as e:
            log.exception("background_operation_crashed", operation=operation, error=str(e))
            await self._control_results.put(ControlFailed(epoch, operation, f"{operation}: {e}"))
