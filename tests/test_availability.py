from __future__ import annotations

from feed_race.core.enums import SourceStatus
from feed_race.core.errors import SourceConnectionError
from feed_race.engine.availability import AvailabilityTracker


def test_first_event_promotes_probing_source_once() -> None:
    tracker = AvailabilityTracker(["a", "b"])

    assert tracker.status("a") == SourceStatus.PROBING
    assert tracker.mark_first_event("a") is True
    assert tracker.mark_first_event("a") is False
    assert tracker.status("a") == SourceStatus.ACTIVE
    assert tracker.active_sources() == frozenset({"a"})
    assert tracker.all_reported() is False
    assert tracker.has_quorum() is False


def test_grace_expiry_demotes_only_probing_sources() -> None:
    tracker = AvailabilityTracker(["a", "b", "c"])
    tracker.mark_first_event("a")
    tracker.mark_first_event("b")

    demoted = tracker.expire_grace(5.0)

    assert demoted == ["c"]
    assert tracker.status("c") == SourceStatus.INACTIVE
    assert "5.0s" in tracker.failures()["c"]
    assert tracker.has_quorum() is True
    assert tracker.grace_expired is True


def test_inactive_is_terminal() -> None:
    tracker = AvailabilityTracker(["a", "b"])
    tracker.mark_first_event("a")

    assert tracker.mark_failed("a", SourceConnectionError("a", "reset")) is True
    assert tracker.mark_failed("a", SourceConnectionError("a", "again")) is False
    assert tracker.mark_first_event("a") is False
    assert tracker.status("a") == SourceStatus.INACTIVE
    assert tracker.failures() == {"a": "a: reset"}
    assert tracker.ever_active() == frozenset({"a"})


def test_failure_before_first_event_never_counts_as_active() -> None:
    tracker = AvailabilityTracker(["a", "b"])
    tracker.mark_failed("b", SourceConnectionError("b", "refused"))

    assert tracker.mark_first_event("b") is False
    assert tracker.has_received_first_event("b") is False
    assert tracker.ever_active() == frozenset()
    assert tracker.expire_grace() == ["a"]
    assert tracker.active_sources() == frozenset()


def test_unknown_sources_are_ignored() -> None:
    tracker = AvailabilityTracker(["a"])

    assert tracker.mark_first_event("zzz") is False
    assert tracker.is_active("zzz") is False
