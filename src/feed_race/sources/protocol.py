from __future__ import annotations

import json
from typing import Any

from feed_race.core.errors import ProtocolParseError, SourceConnectionError
from feed_race.core.models import Keepalive, StreamEvent, StreamMessage

SUBSCRIBE_REQUEST_ID = 1

_SUBSCRIBE_METHODS = {
    "slot": ("slotSubscribe", "slotNotification"),
    "block": ("blockSubscribe", "blockNotification"),
}


def _coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        normalized = value.strip()
        if normalized.isdigit():
            return int(normalized)
    return None


class SolanaPubSubDecoder:
    """Decode Solana JSON-RPC pubsub frames into keepalives and keyed events."""

    def __init__(self, subscription: str = "slot", commitment: str = "processed") -> None:
        if subscription not in _SUBSCRIBE_METHODS:
            raise ValueError(f"Unsupported subscription: {subscription}")
        self._subscription = subscription
        self._commitment = commitment
        self._subscribe_method, self._notification_method = _SUBSCRIBE_METHODS[subscription]

    def subscribe_request(self) -> str:
        params: list[Any]
        if self._subscription == "block":
            params = [
                "all",
                {
                    "commitment": self._commitment,
                    "encoding": "json",
                    "transactionDetails": "none",
                    "showRewards": False,
                    "maxSupportedTransactionVersion": 0,
                },
            ]
        else:
            params = []
        return json.dumps(
            {"jsonrpc": "2.0", "id": SUBSCRIBE_REQUEST_ID, "method": self._subscribe_method, "params": params},
            separators=(",", ":"),
        )

    def decode(self, source_id: str, raw: str | bytes, arrival_time: float) -> StreamMessage:
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ProtocolParseError(f"{source_id}: frame is not utf-8") from exc

        try:
            message = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ProtocolParseError(f"{source_id}: frame is not JSON") from exc
        if not isinstance(message, dict):
            raise ProtocolParseError(f"{source_id}: frame is not a JSON object")

        error = message.get("error")
        if error is not None:
            detail = error.get("message") if isinstance(error, dict) else error
            raise SourceConnectionError(source_id, f"subscription rejected: {detail}")

        method = message.get("method")
        if method is None:
            if "result" in message:
                return Keepalive(source_id=source_id, detail=f"ack id={message.get('id')}")
            raise ProtocolParseError(f"{source_id}: frame has neither method nor result")
        if method != self._notification_method:
            return Keepalive(source_id=source_id, detail=str(method))

        key = self._extract_key(message.get("params"))
        if key is None:
            raise ProtocolParseError(f"{source_id}: {method} without a slot")
        return StreamEvent(source_id=source_id, key=key, arrival_time=arrival_time)

    def _extract_key(self, params: Any) -> int | None:
        if not isinstance(params, dict):
            return None
        result = params.get("result")
        if not isinstance(result, dict):
            return None
        if self._subscription == "slot":
            return _coerce_int(result.get("slot"))

        value = result.get("value")
        if isinstance(value, dict):
            slot = _coerce_int(value.get("slot"))
            if slot is not None:
                return slot
        context = result.get("context")
        if isinstance(context, dict):
            return _coerce_int(context.get("slot"))
        return None
