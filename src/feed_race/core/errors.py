from __future__ import annotations


class FeedRaceError(RuntimeError):
    """Base class for all feed-race errors."""


class SourceConnectionError(FeedRaceError):
    """Raised when a transport refuses the connection or drops mid-run."""

    def __init__(self, source_id: str, reason: str) -> None:
        super().__init__(f"{source_id}: {reason}")
        self.source_id = source_id
        self.reason = reason


class ProtocolParseError(FeedRaceError):
    """Raised when a raw frame cannot be decoded into a keepalive or data event."""


class LivenessTimeout(FeedRaceError):
    """A source produced no first event before the grace deadline."""


class InsufficientActiveSources(FeedRaceError):
    """Fewer sources are active than the scoring quorum requires."""


class EndpointStoreError(FeedRaceError):
    """Raised for invalid endpoint store operations."""


class RpcError(FeedRaceError):
    """JSON-RPC level error returned with an HTTP 200."""
