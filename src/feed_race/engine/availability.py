from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from feed_race.core.enums import SourceStatus
from feed_race.core.errors import LivenessTimeout

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _SourceAvailability:
    status: SourceStatus = SourceStatus.PROBING
    has_received_first_event: bool = False
    failure: Exception | None = None


class AvailabilityTracker:
    """Per-source liveness state machine.

    PROBING -> ACTIVE on the first data event, PROBING -> INACTIVE when the
    grace deadline passes without one or the source fails, ACTIVE -> INACTIVE
    on failure. INACTIVE is terminal for the run.
    """

    def __init__(self, source_ids: Iterable[str], *, min_quorum: int = 2) -> None:
        self._sources: dict[str, _SourceAvailability] = {source_id: _SourceAvailability() for source_id in source_ids}
        self._min_quorum = min_quorum
        self._grace_expired = False

    @property
    def source_ids(self) -> tuple[str, ...]:
        return tuple(self._sources)

    @property
    def min_quorum(self) -> int:
        return self._min_quorum

    @property
    def grace_expired(self) -> bool:
        return self._grace_expired

    def status(self, source_id: str) -> SourceStatus:
        return self._sources[source_id].status

    def failure(self, source_id: str) -> Exception | None:
        return self._sources[source_id].failure

    def has_received_first_event(self, source_id: str) -> bool:
        return self._sources[source_id].has_received_first_event

    def is_active(self, source_id: str) -> bool:
        state = self._sources.get(source_id)
        return state is not None and state.status == SourceStatus.ACTIVE

    def mark_first_event(self, source_id: str) -> bool:
        """Promote a probing source. Returns True only on the transition."""
        state = self._sources.get(source_id)
        if state is None or state.status != SourceStatus.PROBING:
            return False
        state.status = SourceStatus.ACTIVE
        state.has_received_first_event = True
        logger.info("Source active", extra={"source": source_id})
        return True

    def mark_failed(self, source_id: str, error: Exception) -> bool:
        state = self._sources.get(source_id)
        if state is None or state.status == SourceStatus.INACTIVE:
            return False
        state.status = SourceStatus.INACTIVE
        state.failure = error
        logger.warning("Source inactive", extra={"source": source_id, "reason": str(error)})
        return True

    def expire_grace(self, grace_seconds: float | None = None) -> list[str]:
        """Demote every source still probing. Returns the demoted ids."""
        self._grace_expired = True
        demoted: list[str] = []
        for source_id, state in self._sources.items():
            if state.status != SourceStatus.PROBING:
                continue
            detail = "no first event before warm-up deadline"
            if grace_seconds is not None:
                detail = f"no first event within {grace_seconds:.1f}s"
            self.mark_failed(source_id, LivenessTimeout(detail))
            demoted.append(source_id)
        return demoted

    def active_sources(self) -> frozenset[str]:
        return frozenset(
            source_id for source_id, state in self._sources.items() if state.status == SourceStatus.ACTIVE
        )

    def ever_active(self) -> frozenset[str]:
        return frozenset(
            source_id for source_id, state in self._sources.items() if state.has_received_first_event
        )

    def all_reported(self) -> bool:
        return all(state.has_received_first_event for state in self._sources.values())

    def has_quorum(self) -> bool:
        return len(self.active_sources()) >= self._min_quorum

    def statuses(self) -> dict[str, SourceStatus]:
        return {source_id: state.status for source_id, state in self._sources.items()}

    def failures(self) -> dict[str, str]:
        return {
            source_id: str(state.failure)
            for source_id, state in self._sources.items()
            if state.failure is not None
        }
