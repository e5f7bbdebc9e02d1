from __future__ import annotations

import pytest

from feed_race.core.enums import RunPhase, SourceStatus
from feed_race.core.errors import SourceConnectionError
from feed_race.core.models import SourceFailed, SourceReady, StreamEvent, WarmupDeadline
from feed_race.engine.availability import AvailabilityTracker
from feed_race.engine.correlator import EventCorrelator, score_bucket
from feed_race.engine.stats import StatsAggregator


def _engine(*source_ids: str, horizon: int = 100) -> tuple[EventCorrelator, AvailabilityTracker, StatsAggregator]:
    tracker = AvailabilityTracker(source_ids)
    aggregator = StatsAggregator(source_ids)
    correlator = EventCorrelator(tracker, aggregator, horizon=horizon)
    return correlator, tracker, aggregator


def _event(source_id: str, key: int, arrival_time: float) -> StreamEvent:
    return StreamEvent(source_id=source_id, key=key, arrival_time=arrival_time)


def _total_first_count(aggregator: StatsAggregator, *source_ids: str) -> int:
    return sum(aggregator.state(source_id).first_count for source_id in source_ids)


def test_score_bucket_marks_single_winner_and_relative_latency() -> None:
    contributions = score_bucket([_event("b", 7, 1_050.0), _event("a", 7, 1_000.0), _event("c", 7, 1_200.0)])

    by_source = {item.source_id: item for item in contributions}
    assert [item.source_id for item in contributions if item.is_first] == ["a"]
    assert by_source["a"].latency_ms == 0.0
    assert by_source["b"].latency_ms == pytest.approx(50.0)
    assert by_source["c"].latency_ms == pytest.approx(200.0)


def test_score_bucket_breaks_ties_by_arrival_order_not_source_id() -> None:
    contributions = score_bucket([_event("zeta", 3, 500.0), _event("alpha", 3, 500.0)])

    assert [item.source_id for item in contributions if item.is_first] == ["zeta"]
    assert all(item.latency_ms == 0.0 for item in contributions)


def test_source_a_always_100ms_ahead_ranks_first() -> None:
    correlator, _, aggregator = _engine("A", "B")

    for key in range(1, 51):
        base = key * 400.0
        if key == 1:
            correlator.handle(SourceReady(source_id="A", key=key))
        correlator.handle(_event("A", key, base))
        if key == 1:
            correlator.handle(SourceReady(source_id="B", key=key))
        correlator.handle(_event("B", key, base + 100.0))

    assert correlator.phase == RunPhase.LIVE
    snapshot = aggregator.snapshot()
    assert snapshot.scored_buckets == 50
    ranking = snapshot.ranking
    assert [source.source_id for source in ranking] == ["A", "B"]
    assert ranking[0].first_percent == pytest.approx(100.0)
    assert ranking[0].avg_trailing_latency_ms is None
    assert ranking[1].first_percent == pytest.approx(0.0)
    assert ranking[1].avg_trailing_latency_ms == pytest.approx(100.0)
    assert _total_first_count(aggregator, "A", "B") == snapshot.scored_buckets


def test_warmup_buffers_until_all_sources_report() -> None:
    correlator, _, aggregator = _engine("A", "B", "C")

    correlator.handle(SourceReady(source_id="A", key=10))
    correlator.handle(_event("A", 10, 0.0))
    correlator.handle(SourceReady(source_id="B", key=10))
    correlator.handle(_event("B", 10, 5.0))
    correlator.handle(_event("A", 11, 400.0))

    assert correlator.phase == RunPhase.WARMUP
    assert aggregator.scored_buckets == 0
    assert correlator.open_keys() == [10, 11]

    correlator.handle(SourceReady(source_id="C", key=11))
    # entering live scores every buffered bucket with two active contributors
    assert correlator.phase == RunPhase.LIVE
    assert aggregator.scored_buckets == 1
    assert correlator.open_keys() == [11]

    correlator.handle(_event("C", 11, 420.0))
    correlator.handle(_event("B", 11, 410.0))
    assert aggregator.scored_buckets == 2
    assert aggregator.state("A").first_count == 2
    assert aggregator.state("C").latency_samples == [pytest.approx(20.0)]


def test_silent_source_is_excluded_at_warmup_deadline_and_ignored_afterwards() -> None:
    correlator, tracker, aggregator = _engine("A", "B", "C")
    correlator.handle(SourceReady(source_id="A", key=1))
    correlator.handle(SourceReady(source_id="B", key=1))
    for key in range(1, 6):
        correlator.handle(_event("A", key, key * 400.0))
        correlator.handle(_event("B", key, key * 400.0 + 30.0))

    correlator.handle(WarmupDeadline())

    assert tracker.status("C") == SourceStatus.INACTIVE
    assert tracker.active_sources() == frozenset({"A", "B"})
    assert aggregator.scored_buckets == 5

    for key in range(6, 11):
        correlator.handle(_event("A", key, key * 400.0))
        correlator.handle(_event("B", key, key * 400.0 + 30.0))
    assert aggregator.scored_buckets == 10

    correlator.handle(SourceReady(source_id="C", key=11))
    correlator.handle(_event("C", 11, 1.0))
    correlator.handle(_event("A", 11, 5.0))
    correlator.handle(_event("B", 11, 9.0))

    assert tracker.status("C") == SourceStatus.INACTIVE
    assert aggregator.state("C").measured_count == 0
    assert aggregator.state("A").first_count == 11


def test_source_error_mid_run_shrinks_quorum_without_losing_earlier_scores() -> None:
    correlator, tracker, aggregator = _engine("A", "B", "C")
    for source_id in ("A", "B", "C"):
        correlator.handle(SourceReady(source_id=source_id, key=1))

    for key in range(1, 11):
        correlator.handle(_event("A", key, key * 400.0))
        correlator.handle(_event("B", key, key * 400.0 + 10.0))
        correlator.handle(_event("C", key, key * 400.0 + 20.0))
    assert aggregator.scored_buckets == 10

    correlator.handle(_event("A", 11, 4_400.0))
    correlator.handle(_event("B", 11, 4_410.0))
    assert correlator.open_keys() == [11]

    correlator.handle(SourceFailed(source_id="C", error=SourceConnectionError("C", "connection reset")))

    assert tracker.status("C") == SourceStatus.INACTIVE
    assert correlator.open_keys() == []
    assert aggregator.scored_buckets == 11

    for key in range(12, 21):
        correlator.handle(_event("A", key, key * 400.0))
        correlator.handle(_event("B", key, key * 400.0 + 10.0))

    assert aggregator.scored_buckets == 20
    assert aggregator.state("C").measured_count == 10
    assert aggregator.state("C").latency_samples == [pytest.approx(20.0)] * 10
    assert aggregator.state("A").measured_count == 20
    assert _total_first_count(aggregator, "A", "B", "C") == 20


def test_replayed_events_do_not_rescore_a_finalized_key() -> None:
    correlator, _, aggregator = _engine("A", "B")
    correlator.handle(SourceReady(source_id="A", key=1))
    correlator.handle(SourceReady(source_id="B", key=1))
    correlator.handle(_event("A", 1, 0.0))
    correlator.handle(_event("B", 1, 50.0))
    assert aggregator.scored_buckets == 1

    assert correlator.ingest(_event("A", 1, 0.0)) is False
    assert correlator.ingest(_event("B", 1, 50.0)) is False

    assert aggregator.scored_buckets == 1
    assert correlator.open_keys() == []
    assert aggregator.state("A").measured_count == 1


def test_duplicate_event_from_same_source_is_ignored_within_bucket() -> None:
    correlator, _, aggregator = _engine("A", "B")
    correlator.handle(SourceReady(source_id="A", key=1))
    correlator.handle(SourceReady(source_id="B", key=1))

    correlator.handle(_event("A", 2, 100.0))
    correlator.handle(_event("A", 2, 90.0))
    bucket = correlator.bucket(2)
    assert bucket is not None
    assert len(bucket.events) == 1

    correlator.handle(_event("B", 2, 120.0))
    assert aggregator.state("B").latency_samples == [pytest.approx(20.0)]


def test_bucket_map_is_bounded_by_horizon() -> None:
    correlator, _, aggregator = _engine("A", "B", horizon=10)
    correlator.handle(SourceReady(source_id="A", key=1))
    correlator.handle(SourceReady(source_id="B", key=1))

    for key in range(1, 51):
        correlator.handle(_event("A", key, key * 400.0))

    assert correlator.max_key == 50
    assert min(correlator.open_keys()) >= 40
    assert correlator.ingest(_event("B", 5, 2_000.0)) is False
    assert correlator.bucket(5) is None
    assert aggregator.scored_buckets == 0


def test_insufficient_active_sources_pauses_scoring() -> None:
    correlator, _, aggregator = _engine("A", "B")
    correlator.handle(SourceReady(source_id="A", key=1))
    correlator.handle(SourceReady(source_id="B", key=1))
    correlator.handle(_event("A", 1, 0.0))
    correlator.handle(_event("B", 1, 5.0))

    correlator.handle(SourceFailed(source_id="B", error=SourceConnectionError("B", "closed")))
    assert correlator.insufficient is True

    correlator.handle(_event("A", 2, 400.0))
    correlator.handle(_event("A", 3, 800.0))
    assert aggregator.scored_buckets == 1
    assert correlator.final_flush() == 0
    assert correlator.phase == RunPhase.FINISHED


def test_final_flush_scores_minimal_quorum_buckets_only() -> None:
    correlator, _, aggregator = _engine("A", "B", "C")
    for source_id in ("A", "B", "C"):
        correlator.handle(SourceReady(source_id=source_id, key=1))

    correlator.handle(_event("A", 1, 0.0))
    correlator.handle(_event("C", 1, 40.0))
    correlator.handle(_event("B", 2, 400.0))
    assert aggregator.scored_buckets == 0

    assert correlator.final_flush() == 1
    assert correlator.open_keys() == []
    assert aggregator.state("A").first_count == 1
    assert aggregator.state("C").latency_samples == [pytest.approx(40.0)]
    assert aggregator.state("B").measured_count == 0

    correlator.handle(_event("B", 1, 10.0))
    assert aggregator.scored_buckets == 1
