"""Traffic counter history.

The daemon pushes one up/down byte counter pair per second. A poller task
forwards them into a channel; the event loop drains the channel and feeds the
ingestor, which keeps two fixed-capacity histories for the charts.
"""

import asyncio
from collections import deque
from typing import Generic, TypeVar

import structlog

from mihomot.client import ControlClient
from mihomot.errors import ControlError
from mihomot.models import TrafficSample

log = structlog.get_logger()

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """Fixed-capacity FIFO history; pushing onto a full buffer evicts the oldest item."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._items: deque[T] = deque(maxlen=capacity)

    def __len__(self) -> int:
        """Return number of items in buffer."""
        return len(self._items)

    @property
    def capacity(self) -> int:
        """Return maximum number of items the buffer can hold."""
        return self._items.maxlen or 0

    @property
    def items(self) -> list[T]:
        """Read-only access to items, oldest first (returns a copy)."""
        return list(self._items)

    def push(self, item: T) -> None:
        """Append an item, evicting the oldest when full."""
        self._items.append(item)

    def resize(self, capacity: int) -> None:
        """Change capacity, keeping the newest items."""
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._items = deque(self._items, maxlen=capacity)


class TrafficIngestor:
    """Download and upload histories plus the instantaneous rate.

    No smoothing: each sample's raw counters are stored as-is.
    """

    def __init__(self, capacity: int = 240) -> None:
        self.download: RingBuffer[int] = RingBuffer(capacity)
        self.upload: RingBuffer[int] = RingBuffer(capacity)
        self._current: TrafficSample | None = None

    @property
    def capacity(self) -> int:
        return self.download.capacity

    @property
    def current(self) -> TrafficSample | None:
        """Most recent sample, or None before the first one arrives."""
        return self._current

    @property
    def down_rate(self) -> int:
        """Bytes per second received during the last interval."""
        return self._current.down if self._current else 0

    @property
    def up_rate(self) -> int:
        """Bytes per second sent during the last interval."""
        return self._current.up if self._current else 0

    def ingest(self, sample: TrafficSample) -> None:
        self.download.push(sample.down)
        self.upload.push(sample.up)
        self._current = sample

    def resize(self, capacity: int) -> None:
        """Resize both histories, e.g. when the chart width changes."""
        self.download.resize(capacity)
        self.upload.resize(capacity)


class TrafficPoller:
    """Background producer reading the daemon's traffic stream into a channel.

    Reconnects with exponential backoff whenever the stream fails or ends.
    Backoff schedule: 1s → 2s → 4s → 8s → 16s → 30s (capped), reset after
    a sample is received.
    """

    _RECONNECT_INITIAL_DELAY = 1.0
    _RECONNECT_MAX_DELAY = 30.0
    _RECONNECT_MULTIPLIER = 2.0

    def __init__(
        self,
        client: ControlClient,
        samples: "asyncio.Queue[TrafficSample]",
    ) -> None:
        self._client = client
        self._samples = samples
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start polling if not already running."""
        if not self.running:
            self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        """Stop polling and wait for the task to exit."""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _poll_loop(self) -> None:
        delay = self._RECONNECT_INITIAL_DELAY
        while True:
            try:
                async for sample in self._client.stream_traffic():
                    delay = self._RECONNECT_INITIAL_DELAY
                    await self._samples.put(sample)
                log.info("traffic_stream_ended", base_url=self._client.base_url)
            except ControlError as e:
                log.warning("traffic_stream_failed", base_url=self._client.base_url, error=str(e))
            except Exception as e:
                log.exception("traffic_stream_crashed", base_url=self._client.base_url, error=str(e))

            await asyncio.sleep(delay)
            delay = min(delay * self._RECONNECT_MULTIPLIER, self._RECONNECT_MAX_DELAY)
