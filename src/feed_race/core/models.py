from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class Endpoint:
    id: str
    display_name: str
    address: str
    credential: str = ""


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """One data notification as observed by one source.

    `arrival_time` is a local monotonic reading in milliseconds; it is only
    comparable with other readings taken in the same process.
    """

    source_id: str
    key: int
    arrival_time: float


@dataclass(frozen=True, slots=True)
class Keepalive:
    source_id: str
    detail: str = ""


StreamMessage = Keepalive | StreamEvent


@dataclass(frozen=True, slots=True)
class SourceReady:
    source_id: str
    key: int


@dataclass(frozen=True, slots=True)
class SourceFailed:
    source_id: str
    error: Exception


@dataclass(frozen=True, slots=True)
class WarmupDeadline:
    pass


ChannelSignal = StreamEvent | SourceReady | SourceFailed | WarmupDeadline


@dataclass(slots=True)
class Bucket:
    key: int
    events: list[StreamEvent] = field(default_factory=list)

    def add(self, event: StreamEvent) -> bool:
        if event.source_id in self.contributors():
            return False
        self.events.append(event)
        return True

    def contributors(self) -> set[str]:
        return {event.source_id for event in self.events}


@dataclass(frozen=True, slots=True)
class ScoredContribution:
    source_id: str
    latency_ms: float
    is_first: bool


@dataclass(slots=True)
class SourceState:
    source_id: str
    first_count: int = 0
    measured_count: int = 0
    summed_latency: float = 0.0
    latency_samples: list[float] = field(default_factory=list)
