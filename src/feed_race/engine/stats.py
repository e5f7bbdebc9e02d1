from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from feed_race.core.enums import SourceStatus
from feed_race.core.models import ScoredContribution, SourceState


def _percentile(values: list[float], quantile: float) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    rank = max(1, math.ceil(quantile * len(ordered)))
    return ordered[rank - 1]


@dataclass(frozen=True, slots=True)
class SourceSnapshot:
    source_id: str
    display_name: str
    status: SourceStatus | None
    first_count: int
    measured_count: int
    first_percent: float | None
    avg_trailing_latency_ms: float | None
    p50_trailing_latency_ms: float | None
    p95_trailing_latency_ms: float | None
    max_trailing_latency_ms: float | None

    @property
    def rankable(self) -> bool:
        return self.measured_count > 0


@dataclass(frozen=True, slots=True)
class RunSnapshot:
    sources: tuple[SourceSnapshot, ...]
    scored_buckets: int

    @property
    def ranking(self) -> tuple[SourceSnapshot, ...]:
        """Rankable sources, most often first, then least trailing delay."""
        rankable = [source for source in self.sources if source.rankable]
        return tuple(sorted(rankable, key=_ranking_key))

    def by_source(self) -> dict[str, SourceSnapshot]:
        return {source.source_id: source for source in self.sources}

    def as_mapping(self) -> dict[str, dict[str, float | int | None]]:
        return {
            source.source_id: {
                "first_percent": source.first_percent,
                "avg_trailing_latency_ms": source.avg_trailing_latency_ms,
                "measured_count": source.measured_count,
            }
            for source in self.sources
        }


def _ranking_key(source: SourceSnapshot) -> tuple[float, float]:
    first_percent = source.first_percent or 0.0
    trailing = source.avg_trailing_latency_ms if source.avg_trailing_latency_ms is not None else 0.0
    return (-first_percent, trailing)


class StatsAggregator:
    def __init__(self, source_ids: Iterable[str], display_names: Mapping[str, str] | None = None) -> None:
        self._states: dict[str, SourceState] = {source_id: SourceState(source_id=source_id) for source_id in source_ids}
        self._display_names = dict(display_names or {})
        self._scored_buckets = 0

    @property
    def scored_buckets(self) -> int:
        return self._scored_buckets

    def state(self, source_id: str) -> SourceState:
        return self._states[source_id]

    def record(self, contributions: Iterable[ScoredContribution]) -> None:
        """Apply the outcome of one scored bucket."""
        for contribution in contributions:
            state = self._states.setdefault(contribution.source_id, SourceState(source_id=contribution.source_id))
            state.measured_count += 1
            if contribution.is_first:
                state.first_count += 1
            elif contribution.latency_ms > 0:
                state.summed_latency += contribution.latency_ms
                state.latency_samples.append(contribution.latency_ms)
        self._scored_buckets += 1

    def snapshot(self, statuses: Mapping[str, SourceStatus] | None = None) -> RunSnapshot:
        statuses = statuses or {}
        sources = tuple(
            self._snapshot_source(state, statuses.get(source_id)) for source_id, state in self._states.items()
        )
        return RunSnapshot(sources=sources, scored_buckets=self._scored_buckets)

    def _snapshot_source(self, state: SourceState, status: SourceStatus | None) -> SourceSnapshot:
        first_percent: float | None = None
        if state.measured_count > 0:
            first_percent = state.first_count / state.measured_count * 100.0

        samples = state.latency_samples
        avg_trailing = state.summed_latency / len(samples) if samples else None

        return SourceSnapshot(
            source_id=state.source_id,
            display_name=self._display_names.get(state.source_id, state.source_id),
            status=status,
            first_count=state.first_count,
            measured_count=state.measured_count,
            first_percent=first_percent,
            avg_trailing_latency_ms=avg_trailing,
            p50_trailing_latency_ms=_percentile(samples, 0.50),
            p95_trailing_latency_ms=_percentile(samples, 0.95),
            max_trailing_latency_ms=max(samples) if samples else None,
        )
