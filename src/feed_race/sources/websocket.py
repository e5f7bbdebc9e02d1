from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed

from feed_race.core.errors import ProtocolParseError, SourceConnectionError
from feed_race.core.models import ChannelSignal, Endpoint, Keepalive, SourceFailed, SourceReady
from feed_race.core.time_utils import monotonic_ms
from feed_race.sources.protocol import SolanaPubSubDecoder

DEFAULT_KEEPALIVE_SECONDS = 5.0

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def recv(self) -> str | bytes: ...

    async def send(self, message: str) -> None: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


Connector = Callable[[Endpoint], Awaitable[Transport]]


def stream_url(endpoint: Endpoint) -> str:
    """Websocket URL for an endpoint, with the credential as `api-key` when absent."""
    parts = urlsplit(endpoint.address.strip())
    scheme = {"https": "wss", "http": "ws"}.get(parts.scheme, parts.scheme)
    query = parts.query
    if endpoint.credential:
        params = parse_qsl(query, keep_blank_values=True)
        if not any(name == "api-key" for name, _ in params):
            params.append(("api-key", endpoint.credential))
            query = urlencode(params)
    return urlunsplit((scheme, parts.netloc, parts.path, query, parts.fragment))


class WebSocketTransport:
    def __init__(self, source_id: str, connection: websockets.ClientConnection) -> None:
        self._source_id = source_id
        self._connection = connection

    async def recv(self) -> str | bytes:
        try:
            return await self._connection.recv()
        except ConnectionClosed as exc:
            raise SourceConnectionError(self._source_id, f"connection closed: {exc}") from exc

    async def send(self, message: str) -> None:
        try:
            await self._connection.send(message)
        except ConnectionClosed as exc:
            raise SourceConnectionError(self._source_id, f"connection closed: {exc}") from exc

    async def ping(self) -> None:
        await self._connection.ping()

    async def close(self) -> None:
        await self._connection.close()


class WebSocketConnector:
    def __init__(self, *, open_timeout_seconds: float = 10.0, max_message_bytes: int = 2**24) -> None:
        self._open_timeout_seconds = open_timeout_seconds
        self._max_message_bytes = max_message_bytes

    async def __call__(self, endpoint: Endpoint) -> Transport:
        url = stream_url(endpoint)
        try:
            connection = await websockets.connect(
                url,
                ping_interval=None,
                open_timeout=self._open_timeout_seconds,
                close_timeout=5,
                max_size=self._max_message_bytes,
            )
        except (OSError, TimeoutError, websockets.InvalidURI, websockets.InvalidHandshake) as exc:
            raise SourceConnectionError(endpoint.id, f"connect failed: {exc.__class__.__name__}: {exc}") from exc
        return WebSocketTransport(endpoint.id, connection)


class SourceConnection:
    """One push subscription feeding the shared ingestion channel.

    Emits `SourceReady` once before the first `StreamEvent`, and at most one
    terminal `SourceFailed`. There is no reconnection.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        *,
        connector: Connector,
        channel: asyncio.Queue[ChannelSignal],
        decoder: SolanaPubSubDecoder,
        keepalive_interval_seconds: float = DEFAULT_KEEPALIVE_SECONDS,
    ) -> None:
        self._endpoint = endpoint
        self._connector = connector
        self._channel = channel
        self._decoder = decoder
        self._keepalive_interval_seconds = keepalive_interval_seconds
        self._first_event_seen = False
        self._failed = False
        self.events_received = 0
        self.keepalives_received = 0
        self.parse_errors = 0

    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    @property
    def failed(self) -> bool:
        return self._failed

    async def run(self) -> None:
        source_id = self._endpoint.id
        logger.debug("Connecting", extra={"source": source_id, "address": self._endpoint.address})
        try:
            transport = await self._connector(self._endpoint)
        except SourceConnectionError as exc:
            self._fail(exc)
            return
        except Exception as exc:
            self._fail(SourceConnectionError(source_id, f"connect failed: {exc.__class__.__name__}: {exc}"))
            return

        keepalive = asyncio.create_task(self._keepalive_loop(transport), name=f"keepalive-{source_id}")
        try:
            await transport.send(self._decoder.subscribe_request())
            await self._receive_loop(transport)
        except SourceConnectionError as exc:
            self._fail(exc)
        except Exception as exc:
            self._fail(SourceConnectionError(source_id, f"{exc.__class__.__name__}: {exc}"))
        finally:
            keepalive.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await keepalive
            await self._close(transport)

    async def _receive_loop(self, transport: Transport) -> None:
        source_id = self._endpoint.id
        while True:
            raw = await transport.recv()
            arrival_time = monotonic_ms()
            try:
                message = self._decoder.decode(source_id, raw, arrival_time)
            except ProtocolParseError as exc:
                self.parse_errors += 1
                logger.debug("Dropping malformed frame", extra={"source": source_id, "reason": str(exc)})
                continue

            if isinstance(message, Keepalive):
                self.keepalives_received += 1
                continue

            if not self._first_event_seen:
                self._first_event_seen = True
                logger.info("Source connected", extra={"source": source_id, "key": message.key})
                self._channel.put_nowait(SourceReady(source_id=source_id, key=message.key))
            self.events_received += 1
            self._channel.put_nowait(message)

    async def _keepalive_loop(self, transport: Transport) -> None:
        while True:
            await asyncio.sleep(self._keepalive_interval_seconds)
            try:
                await transport.ping()
            except Exception as exc:
                logger.debug("Keepalive ping failed", extra={"source": self._endpoint.id, "reason": str(exc)})

    async def _close(self, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as exc:
            logger.debug("Transport close failed", extra={"source": self._endpoint.id, "reason": str(exc)})

    def _fail(self, error: SourceConnectionError) -> None:
        if self._failed:
            return
        self._failed = True
        logger.error("Source failed", extra={"source": self._endpoint.id, "reason": error.reason})
        self._channel.put_nowait(SourceFailed(source_id=self._endpoint.id, error=error))
