"""Concurrent latency measurements tagged with a generation number.

Each trigger bumps a counter and every measurement it spawns carries the
counter value it started under. Nothing is ever cancelled: the consumer drops
outcomes whose generation is no longer current, which is what keeps a slow
probe from an earlier trigger from overwriting a newer result.
"""

import asyncio
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass

import structlog

from mihomot.client import ControlClient
from mihomot.errors import ProbeError
from mihomot.models import Failed, FailureReason, LatencyResult, Success

log = structlog.get_logger()


@dataclass(frozen=True)
class ReachabilityOutcome:
    """Result of the app-wide reachability test."""

    generation: int
    result: LatencyResult


@dataclass(frozen=True)
class MemberOutcome:
    """Result for one member of a group sweep."""

    generation: int
    member: str
    result: LatencyResult


ProbeOutcome = ReachabilityOutcome | MemberOutcome


class LatencyProbe:
    """Spawns measurements and funnels their outcomes into one channel.

    The reachability test and group sweeps keep separate counters, so a sweep
    never invalidates a reachability result and vice versa. Only the owner of
    the channel (the event loop) triggers tests and reads the counters.
    """

    def __init__(self, results: "asyncio.Queue[ProbeOutcome]") -> None:
        self._results = results
        self.reachability_generation = 0
        self.group_generation = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        """Number of measurements still running, current or stale."""
        return len(self._tasks)

    def is_current(self, outcome: ProbeOutcome) -> bool:
        """Whether an outcome belongs to the latest batch of its kind."""
        if isinstance(outcome, ReachabilityOutcome):
            return outcome.generation == self.reachability_generation
        return outcome.generation == self.group_generation

    def test_reachability(self, client: ControlClient, url: str, timeout_ms: int) -> int:
        """Start a reachability test and return its generation."""
        self.reachability_generation += 1
        generation = self.reachability_generation
        log.debug("reachability_test_started", generation=generation, url=url)
        self._spawn(self._measure_reachability(generation, client, url, timeout_ms))
        return generation

    def test_group(
        self,
        client: ControlClient,
        members: Iterable[str],
        url: str,
        timeout_ms: int,
    ) -> int:
        """Start one independent delay check per member and return the batch generation."""
        self.group_generation += 1
        generation = self.group_generation
        names = list(dict.fromkeys(members))
        log.info("group_sweep_started", generation=generation, members=len(names))
        for name in names:
            self._spawn(self._measure_member(generation, client, name, url, timeout_ms))
        return generation

    def abandon_group_sweeps(self) -> None:
        """Make every group sweep started so far stale without starting a new one.

        Used when the daemon endpoint changes: member delays measured by the
        previous daemon say nothing about the new one. The reachability test
        does not go through the daemon and is left alone.
        """
        self.group_generation += 1
        log.debug("group_sweeps_abandoned", generation=self.group_generation)

    async def _measure_reachability(
        self, generation: int, client: ControlClient, url: str, timeout_ms: int
    ) -> None:
        result = await _settle(client.probe(url, timeout_ms))
        await self._results.put(ReachabilityOutcome(generation, result))

    async def _measure_member(
        self, generation: int, client: ControlClient, name: str, url: str, timeout_ms: int
    ) -> None:
        result = await _settle(client.proxy_delay(name, url, timeout_ms))
        # Blocks while the channel is full rather than dropping the outcome
        await self._results.put(MemberOutcome(generation, name, result))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def aclose(self) -> None:
        """Cancel whatever is still running. Only used at shutdown."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def _settle(measurement: Awaitable[int]) -> LatencyResult:
    """Turn a measurement into a final LatencyResult; it never raises."""
    try:
        return Success(await measurement)
    except ProbeError as e:
        return Failed(e.reason, e.detail)
    except Exception as e:
        log.exception("probe_crashed", error=str(e))
        return Failed(FailureReason.OTHER, f"{type(e).__name__}: {e}")
