from __future__ import annotations

import logging

from feed_race.core.enums import RunPhase
from feed_race.core.errors import InsufficientActiveSources
from feed_race.core.models import (
    Bucket,
    ChannelSignal,
    ScoredContribution,
    SourceFailed,
    SourceReady,
    StreamEvent,
    WarmupDeadline,
)
from feed_race.engine.availability import AvailabilityTracker
from feed_race.engine.stats import StatsAggregator

DEFAULT_BUCKET_HORIZON = 100

logger = logging.getLogger(__name__)


def score_bucket(events: list[StreamEvent]) -> list[ScoredContribution]:
    """Relative latency of each event against the earliest arrival.

    Exactly one event is marked first: the earliest arrival time, with ties
    going to whichever event was appended to the bucket first.
    """
    if not events:
        return []
    earliest = min(event.arrival_time for event in events)
    winner_index = next(index for index, event in enumerate(events) if event.arrival_time == earliest)
    return [
        ScoredContribution(
            source_id=event.source_id,
            latency_ms=event.arrival_time - earliest,
            is_first=index == winner_index,
        )
        for index, event in enumerate(events)
    ]


class EventCorrelator:
    """Single-consumer correlation state: buckets by key, scoring and eviction.

    Every mutation goes through `handle` (or the typed methods it dispatches
    to), which the run loop calls from one task only.
    """

    def __init__(
        self,
        tracker: AvailabilityTracker,
        aggregator: StatsAggregator,
        *,
        horizon: int = DEFAULT_BUCKET_HORIZON,
        grace_seconds: float | None = None,
    ) -> None:
        self._tracker = tracker
        self._aggregator = aggregator
        self._horizon = horizon
        self._grace_seconds = grace_seconds
        self._buckets: dict[int, Bucket] = {}
        self._finalized: set[int] = set()
        self._max_key: int | None = None
        self._phase = RunPhase.WARMUP
        self._insufficient = False

    @property
    def phase(self) -> RunPhase:
        return self._phase

    @property
    def insufficient(self) -> bool:
        return self._insufficient

    @property
    def max_key(self) -> int | None:
        return self._max_key

    def open_keys(self) -> list[int]:
        return sorted(self._buckets)

    def bucket(self, key: int) -> Bucket | None:
        return self._buckets.get(key)

    def handle(self, signal: ChannelSignal) -> None:
        if isinstance(signal, StreamEvent):
            self.ingest(signal)
        elif isinstance(signal, SourceReady):
            self.on_source_ready(signal.source_id)
        elif isinstance(signal, SourceFailed):
            self.on_source_failed(signal.source_id, signal.error)
        elif isinstance(signal, WarmupDeadline):
            self.on_warmup_deadline()

    def ingest(self, event: StreamEvent) -> bool:
        """Add one event; returns True when it caused its bucket to be scored."""
        if self._phase == RunPhase.FINISHED:
            return False
        if not self._tracker.is_active(event.source_id):
            return False
        if event.key in self._finalized or self._is_stale(event.key):
            logger.debug("Dropping late event", extra={"source": event.source_id, "key": event.key})
            return False

        if self._max_key is None or event.key > self._max_key:
            self._max_key = event.key
            self._evict_stale()

        bucket = self._buckets.get(event.key)
        if bucket is None:
            bucket = Bucket(key=event.key)
            self._buckets[event.key] = bucket
        if not bucket.add(event):
            return False

        if self._phase != RunPhase.LIVE:
            return False
        return self._evaluate(bucket)

    def on_source_ready(self, source_id: str) -> None:
        if not self._tracker.mark_first_event(source_id):
            return
        if self._phase == RunPhase.WARMUP and self._tracker.all_reported():
            logger.info("All sources ready, starting measurement")
            self.go_live()

    def on_source_failed(self, source_id: str, error: Exception) -> None:
        if not self._tracker.mark_failed(source_id, error):
            return
        if self._phase == RunPhase.LIVE and self._check_quorum(self._tracker.active_sources()):
            # the shrunken active set may complete buckets that were waiting on this source
            for key in self.open_keys():
                bucket = self._buckets.get(key)
                if bucket is not None:
                    self._evaluate(bucket)

    def on_warmup_deadline(self) -> None:
        if self._phase != RunPhase.WARMUP:
            return
        demoted = self._tracker.expire_grace(self._grace_seconds)
        for source_id in demoted:
            logger.warning("Source unavailable", extra={"source": source_id})
        self.go_live()

    def go_live(self) -> int:
        """Leave warm-up: score what was buffered and switch to the live rule."""
        if self._phase != RunPhase.WARMUP:
            return 0
        self._phase = RunPhase.LIVE
        active = self._tracker.active_sources()
        logger.info(
            "Measurement started",
            extra={"active_sources": len(active), "buffered_buckets": len(self._buckets)},
        )
        if not self._check_quorum(active):
            return 0
        return self._flush_with_min_quorum(active)

    def final_flush(self) -> int:
        """Score remaining buckets that reached the minimum quorum, then stop."""
        if self._phase == RunPhase.FINISHED:
            return 0
        self._phase = RunPhase.FINISHED
        active = self._tracker.active_sources()
        scored = 0
        if self._check_quorum(active):
            scored = self._flush_with_min_quorum(active)
        dropped = len(self._buckets)
        self._buckets.clear()
        logger.info("Final flush", extra={"scored": scored, "dropped": dropped})
        return scored

    def _flush_with_min_quorum(self, active: frozenset[str]) -> int:
        scored = 0
        for key in sorted(self._buckets):
            bucket = self._buckets[key]
            if len(bucket.contributors() & active) >= self._tracker.min_quorum:
                self._score(bucket, active)
                scored += 1
        return scored

    def _evaluate(self, bucket: Bucket) -> bool:
        active = self._tracker.active_sources()
        if not self._check_quorum(active):
            return False
        reported = bucket.contributors() & active
        if not reported or reported != active:
            return False
        self._score(bucket, active)
        return True

    def _check_quorum(self, active: frozenset[str]) -> bool:
        if len(active) >= self._tracker.min_quorum:
            self._insufficient = False
            return True
        if not self._insufficient:
            self._insufficient = True
            error = InsufficientActiveSources(
                f"{len(active)} active source(s), need at least {self._tracker.min_quorum}"
            )
            logger.warning("Scoring paused", extra={"reason": str(error)})
        return False

    def _score(self, bucket: Bucket, active: frozenset[str]) -> None:
        events = [event for event in bucket.events if event.source_id in active]
        contributions = score_bucket(events)
        self._aggregator.record(contributions)
        del self._buckets[bucket.key]
        self._finalized.add(bucket.key)

        if logger.isEnabledFor(logging.DEBUG):
            for contribution in contributions:
                outcome = "FIRST" if contribution.is_first else f"+{contribution.latency_ms:.2f}ms"
                logger.debug(
                    "Scored contribution",
                    extra={"source": contribution.source_id, "key": bucket.key, "outcome": outcome},
                )

    def _is_stale(self, key: int) -> bool:
        return self._max_key is not None and key < self._max_key - self._horizon

    def _evict_stale(self) -> None:
        if self._max_key is None:
            return
        threshold = self._max_key - self._horizon
        stale = [key for key in self._buckets if key < threshold]
        for key in stale:
            del self._buckets[key]
        if stale:
            logger.debug("Evicted unscored buckets", extra={"count": len(stale), "threshold": threshold})
        self._finalized = {key for key in self._finalized if key >= threshold}
