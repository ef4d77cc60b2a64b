"""Polymarket CLOB market-channel websocket client producing price-change messages."""

import asyncio
import inspect
import json
import logging
from collections.abc import Sequence
from decimal import Decimal
from typing import Any

import websockets
from websockets.exceptions import WebSocketException

from polyalert.core.evaluator import optional_decimal
from polyalert.core.types import PRICE_CHANGE_EVENT, PriceChange, PriceChangeMessage

logger = logging.getLogger(__name__)


class FeedError(Exception):
    """Raised when the feed transport fails; fatal to the owning session."""


def _websocket_connect_kwargs(ping_interval_s: float | None) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"ping_interval": ping_interval_s}
    if "proxy" in inspect.signature(websockets.connect).parameters:
        kwargs["proxy"] = None
    return kwargs


def _build_price_change_message(payload: dict[str, Any]) -> PriceChangeMessage:
    changes: list[PriceChange] = []
    for raw in payload.get("price_changes") or []:
        if not isinstance(raw, dict):
            raise ValueError("price change entry is not an object")
        changes.append(
            PriceChange(
                asset_id=str(raw.get("asset_id") or ""),
                best_bid=optional_decimal(raw.get("best_bid")),
                best_ask=optional_decimal(raw.get("best_ask")),
                price=optional_decimal(raw.get("price")),
            )
        )
    return PriceChangeMessage(event_type=PRICE_CHANGE_EVENT, price_changes=tuple(changes))


def decode_message(raw_message: str | bytes) -> PriceChangeMessage | None:
    """Decode one frame into a price-change message.

    Frames may hold a single event object or an array of them; only the first
    ``price_change`` event is kept. Returns None for anything else.
    """

    if isinstance(raw_message, bytes):
        raw_message = raw_message.decode("utf-8")
    text = raw_message.strip()
    if not text:
        raise ValueError("empty message")

    payload = json.loads(text, parse_float=Decimal)
    candidates = payload if isinstance(payload, list) else [payload]
    for candidate in candidates:
        if isinstance(candidate, dict) and candidate.get("event_type") == PRICE_CHANGE_EVENT:
            return _build_price_change_message(candidate)
    return None


class PolymarketConnection:
    """Live websocket connection to the market channel."""

    def __init__(self, ws: Any, read_timeout_s: float | None = None) -> None:
        self._ws = ws
        self._read_timeout_s = read_timeout_s

    async def subscribe(self, asset_ids: Sequence[str]) -> None:
        request = {"type": "market", "assets_ids": list(asset_ids)}
        logger.info("feed_subscribe", extra={"asset_count": len(asset_ids), "asset_ids": list(asset_ids)})
        try:
            await self._ws.send(json.dumps(request, ensure_ascii=True, separators=(",", ":")))
        except (WebSocketException, OSError) as exc:
            raise FeedError(f"subscribe failed: {exc}") from exc

    async def receive(self) -> PriceChangeMessage | None:
        try:
            if self._read_timeout_s is None:
                raw_message = await self._ws.recv()
            else:
                raw_message = await asyncio.wait_for(self._ws.recv(), timeout=self._read_timeout_s)
        except asyncio.TimeoutError as exc:
            raise FeedError(f"no message within {self._read_timeout_s}s") from exc
        except (WebSocketException, OSError) as exc:
            raise FeedError(f"receive failed: {exc}") from exc

        try:
            return decode_message(raw_message)
        except (ValueError, UnicodeDecodeError) as exc:
            logger.debug("feed_message_ignored", extra={"error": str(exc)})
            return None

    async def close(self) -> None:
        logger.info("feed_close")
        await self._ws.close()


class PolymarketFeedFactory:
    """Opens market-channel connections against a configured endpoint."""

    def __init__(
        self,
        url: str,
        read_timeout_s: float | None = None,
        ping_interval_s: float | None = 30.0,
    ) -> None:
        self.url = url
        self.read_timeout_s = read_timeout_s
        self.ping_interval_s = ping_interval_s

    async def connect(self) -> PolymarketConnection:
        logger.info("feed_connect_start", extra={"url": self.url})
        try:
            ws = await websockets.connect(self.url, **_websocket_connect_kwargs(self.ping_interval_s))
        except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
            logger.error("feed_connect_failed", extra={"url": self.url, "error": str(exc)})
            raise FeedError(f"connect to {self.url} failed: {exc}") from exc
        logger.info("feed_connect_success", extra={"url": self.url})
        return PolymarketConnection(ws, read_timeout_s=self.read_timeout_s)
