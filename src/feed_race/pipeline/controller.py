from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from feed_race.core.config import Settings
from feed_race.core.enums import RunStatus, SourceStatus
from feed_race.core.errors import InsufficientActiveSources
from feed_race.core.models import ChannelSignal, Endpoint, WarmupDeadline
from feed_race.core.time_utils import utc_now
from feed_race.engine.availability import AvailabilityTracker
from feed_race.engine.correlator import EventCorrelator
from feed_race.engine.stats import RunSnapshot, SourceSnapshot, StatsAggregator
from feed_race.sources.protocol import SolanaPubSubDecoder
from feed_race.sources.websocket import Connector, SourceConnection, WebSocketConnector

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RunReport:
    status: RunStatus
    started_at: datetime
    duration_seconds: float
    completed: bool
    snapshot: RunSnapshot
    statuses: dict[str, SourceStatus] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def ranking(self) -> tuple[SourceSnapshot, ...]:
        return self.snapshot.ranking

    def require_ranking(self) -> tuple[SourceSnapshot, ...]:
        if self.status != RunStatus.RANKED:
            raise InsufficientActiveSources(f"Insufficient data for comparison ({self.status.value})")
        return self.ranking


class RunController:
    """Fixed-duration race between endpoints.

    Connections push into one queue; a single consumer task owns the
    correlator, so bucket state is never touched concurrently.
    """

    def __init__(
        self,
        endpoints: Sequence[Endpoint],
        *,
        settings: Settings,
        duration_seconds: float | None = None,
        connector: Connector | None = None,
        decoder: SolanaPubSubDecoder | None = None,
    ) -> None:
        ids = [endpoint.id for endpoint in endpoints]
        if len(set(ids)) != len(ids):
            raise ValueError("Endpoint ids must be unique")

        self._endpoints = tuple(endpoints)
        self._settings = settings
        self._duration_seconds = float(duration_seconds or settings.run_duration_seconds)
        self._warmup_seconds = settings.warmup_seconds(self._duration_seconds)
        self._connector = connector or WebSocketConnector(
            open_timeout_seconds=settings.connect_timeout_seconds,
            max_message_bytes=settings.max_message_bytes,
        )
        self._decoder = decoder or SolanaPubSubDecoder(settings.subscription, settings.commitment)

        self._tracker = AvailabilityTracker(ids, min_quorum=settings.min_quorum)
        self._aggregator = StatsAggregator(ids, {endpoint.id: endpoint.display_name for endpoint in endpoints})
        self._correlator = EventCorrelator(
            self._tracker,
            self._aggregator,
            horizon=settings.bucket_horizon,
            grace_seconds=self._warmup_seconds,
        )
        self._started_at = utc_now()
        self._started_monotonic: float | None = None

    @property
    def correlator(self) -> EventCorrelator:
        return self._correlator

    @property
    def tracker(self) -> AvailabilityTracker:
        return self._tracker

    @property
    def warmup_seconds(self) -> float:
        return self._warmup_seconds

    async def run(self) -> RunReport:
        self._started_at = utc_now()
        self._started_monotonic = time.monotonic()
        if not self._endpoints:
            logger.error("No endpoints configured")
            return self.report(completed=True)

        logger.info(
            "Starting race",
            extra={
                "endpoints": ",".join(endpoint.display_name for endpoint in self._endpoints),
                "duration_seconds": self._duration_seconds,
                "warmup_seconds": round(self._warmup_seconds, 3),
            },
        )

        loop = asyncio.get_running_loop()
        channel: asyncio.Queue[ChannelSignal] = asyncio.Queue()
        connections = [
            SourceConnection(
                endpoint,
                connector=self._connector,
                channel=channel,
                decoder=self._decoder,
                keepalive_interval_seconds=self._settings.keepalive_interval_seconds,
            )
            for endpoint in self._endpoints
        ]

        consumer = asyncio.create_task(self._consume(channel), name="correlator")
        connection_tasks = [
            asyncio.create_task(connection.run(), name=f"source-{connection.endpoint.id}")
            for connection in connections
        ]
        all_closed = asyncio.gather(*connection_tasks, return_exceptions=True)
        progress = asyncio.create_task(self._progress_loop(), name="progress")
        warmup_timer = loop.call_later(self._warmup_seconds, channel.put_nowait, WarmupDeadline())

        try:
            done, _ = await asyncio.wait(
                {consumer, all_closed},
                timeout=self._duration_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if all_closed in done:
                logger.warning("All sources closed before the end of the run")
        finally:
            warmup_timer.cancel()
            progress.cancel()
            for task in connection_tasks:
                task.cancel()
            await asyncio.gather(progress, all_closed, return_exceptions=True)
            self._drain(channel)
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
            for connection in connections:
                logger.debug(
                    "Connection closed",
                    extra={
                        "source": connection.endpoint.id,
                        "events": connection.events_received,
                        "keepalives": connection.keepalives_received,
                        "parse_errors": connection.parse_errors,
                    },
                )

        self._correlator.final_flush()
        return self.report(completed=True)

    def report(self, *, completed: bool) -> RunReport:
        """Build a report from whatever has been scored so far."""
        statuses = self._tracker.statuses()
        snapshot = self._aggregator.snapshot(statuses)
        if not self._tracker.ever_active():
            status = RunStatus.NO_SOURCES
        elif len(snapshot.ranking) >= self._tracker.min_quorum:
            status = RunStatus.RANKED
        else:
            status = RunStatus.INSUFFICIENT_DATA

        elapsed = self._duration_seconds
        if self._started_monotonic is not None:
            elapsed = min(self._duration_seconds, time.monotonic() - self._started_monotonic)
        return RunReport(
            status=status,
            started_at=self._started_at,
            duration_seconds=round(elapsed, 3),
            completed=completed,
            snapshot=snapshot,
            statuses=statuses,
            failures=self._tracker.failures(),
        )

    async def _consume(self, channel: asyncio.Queue[ChannelSignal]) -> None:
        while True:
            signal = await channel.get()
            self._correlator.handle(signal)

    def _drain(self, channel: asyncio.Queue[ChannelSignal]) -> None:
        while True:
            try:
                signal = channel.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._correlator.handle(signal)

    async def _progress_loop(self) -> None:
        interval = self._settings.progress_interval_seconds
        elapsed = 0
        while elapsed + interval < self._duration_seconds:
            await asyncio.sleep(interval)
            elapsed += interval
            logger.info(
                "Progress",
                extra={
                    "elapsed_seconds": elapsed,
                    "remaining_seconds": round(self._duration_seconds - elapsed),
                    "scored_buckets": self._aggregator.scored_buckets,
                    "active_sources": len(self._tracker.active_sources()),
                },
            )
