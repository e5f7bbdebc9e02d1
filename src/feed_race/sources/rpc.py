from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import httpx

from feed_race.core.errors import RpcError
from feed_race.core.models import Endpoint

logger = logging.getLogger(__name__)


def http_url(endpoint: Endpoint) -> str:
    parts = urlsplit(endpoint.address.strip())
    scheme = {"wss": "https", "ws": "http"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, parts.path, parts.query, parts.fragment))


@dataclass(frozen=True, slots=True)
class ProbeResult:
    endpoint_id: str
    healthy: bool
    slot: int | None
    latency_ms: float | None
    error: str | None = None


class SolanaRpcClient:
    """Minimal JSON-RPC client for health probes.

    Retries transport errors, 429 and 5xx a few times, honouring a numeric
    `Retry-After` and otherwise doubling a short base delay. Every wait is
    capped by the request timeout.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: int = 10,
        retries: int = 3,
        *,
        api_key: str = "",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        params = {"api-key": api_key} if api_key and "api-key=" not in url else None
        self._client = httpx.Client(timeout=timeout_seconds, transport=transport, params=params)
        self._url = url
        self._retries = max(1, retries)
        self._max_delay_seconds = float(timeout_seconds)
        self._request_id = 0

    def close(self) -> None:
        self._client.close()

    def _call(self, method: str, params: list[Any] | None = None) -> Any:
        for attempt in range(1, self._retries + 1):
            self._request_id += 1
            body = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params or []}
            last_attempt = attempt >= self._retries
            try:
                response = self._client.post(self._url, json=body)
            except httpx.TransportError as exc:
                if last_attempt:
                    raise
                self._wait(attempt, method=method, reason=exc.__class__.__name__)
                continue

            if response.status_code < 400:
                payload = response.json()
                if not isinstance(payload, dict):
                    raise RpcError(f"{method}: unexpected payload {payload!r}")
                if payload.get("error") is not None:
                    raise RpcError(f"{method}: {payload['error']}")
                return payload.get("result")

            retryable = response.status_code == 429 or response.status_code >= 500
            if not retryable or last_attempt:
                response.raise_for_status()
            self._wait(
                attempt,
                method=method,
                reason=f"HTTP {response.status_code}",
                retry_after=response.headers.get("Retry-After"),
            )
        raise RpcError(f"{method}: no attempts made")

    def _wait(self, attempt: int, *, method: str, reason: str, retry_after: str | None = None) -> None:
        try:
            delay = float(retry_after) if retry_after is not None else 0.5 * 2 ** (attempt - 1)
        except ValueError:
            delay = 0.5 * 2 ** (attempt - 1)
        delay = min(max(delay, 0.0), self._max_delay_seconds)
        logger.warning(
            "Retrying RPC request",
            extra={"method": method, "attempt": attempt, "reason": reason, "sleep_seconds": round(delay, 3)},
        )
        time.sleep(delay)

    def get_slot(self, commitment: str = "processed") -> int:
        return int(self._call("getSlot", [{"commitment": commitment}]))


def probe_endpoint(
    endpoint: Endpoint,
    *,
    timeout_seconds: int = 10,
    retries: int = 3,
    commitment: str = "processed",
    transport: httpx.BaseTransport | None = None,
) -> ProbeResult:
    """Check that an endpoint answers `getSlot` over HTTP before racing it."""
    client = SolanaRpcClient(
        http_url(endpoint),
        timeout_seconds=timeout_seconds,
        retries=retries,
        api_key=endpoint.credential,
        transport=transport,
    )
    started = time.perf_counter()
    try:
        slot = client.get_slot(commitment)
    except (httpx.HTTPError, RpcError, ValueError, TypeError) as exc:
        return ProbeResult(
            endpoint_id=endpoint.id,
            healthy=False,
            slot=None,
            latency_ms=None,
            error=f"{exc.__class__.__name__}: {exc}",
        )
    finally:
        client.close()
    return ProbeResult(
        endpoint_id=endpoint.id,
        healthy=True,
        slot=slot,
        latency_ms=(time.perf_counter() - started) * 1000,
    )
