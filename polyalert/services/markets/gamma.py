"""Polymarket Gamma REST client used to resolve event and market slugs to CLOB tokens."""

import asyncio
import json
import logging
import time
from decimal import Decimal
from typing import Any
from urllib.parse import quote

import requests

from polyalert.core.evaluator import optional_decimal
from polyalert.core.types import EventMarkets, MarketInfo

logger = logging.getLogger(__name__)


class GammaError(Exception):
    """Raised when the Gamma API cannot be reached or returns an unusable response."""


class EventNotFoundError(LookupError):
    """Raised when Gamma has no event for the requested slug."""


def decode_string_list(value: Any) -> tuple[str, ...]:
    """Decode Gamma list fields, which arrive either as arrays or as JSON-encoded strings.

    ``'["Yes", "No"]'`` and ``["Yes", "No"]`` both decode to ``("Yes", "No")``.
    A plain non-JSON string becomes a single-item tuple; null or blank is empty.
    """

    if value is None:
        return ()
    if isinstance(value, list):
        return tuple(str(item) for item in value)
    if not isinstance(value, str):
        raise ValueError(f"unexpected string list format: {value!r}")

    inner = value.strip()
    if not inner:
        return ()
    try:
        decoded = json.loads(inner)
    except ValueError:
        return (inner,)
    if isinstance(decoded, list):
        return tuple(str(item) for item in decoded)
    return (inner,)


def _market_from_payload(raw: dict[str, Any]) -> MarketInfo:
    return MarketInfo(
        slug=str(raw.get("slug") or ""),
        condition_id=str(raw.get("conditionId") or ""),
        question=str(raw.get("question") or ""),
        outcomes=decode_string_list(raw.get("outcomes")),
        clob_token_ids=decode_string_list(raw.get("clobTokenIds")),
        outcome_prices=decode_string_list(raw.get("outcomePrices")),
        best_bid=optional_decimal(raw.get("bestBid")),
        best_ask=optional_decimal(raw.get("bestAsk")),
        last_trade=optional_decimal(raw.get("lastTradePrice")),
    )


def decode_event(payload: Any) -> EventMarkets:
    if not isinstance(payload, dict):
        raise ValueError("event payload is not an object")
    markets = []
    for raw in payload.get("markets") or []:
        if not isinstance(raw, dict):
            raise ValueError("market entry is not an object")
        markets.append(_market_from_payload(raw))
    return EventMarkets(event_slug=str(payload.get("slug") or ""), markets=tuple(markets))


class GammaClient:
    """Blocking ``requests`` calls run on a worker thread."""

    def __init__(self, base_url: str = "https://gamma-api.polymarket.com", timeout_s: float = 10.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s

    async def get_event_by_slug(self, slug: str) -> EventMarkets:
        return await asyncio.to_thread(self._fetch_event, slug)

    def _fetch_event(self, slug: str) -> EventMarkets:
        url = f"{self._base_url}/events/slug/{quote(slug, safe='')}"
        started = time.monotonic()
        logger.info("gamma_request_start", extra={"slug": slug, "url": url})
        try:
            response = requests.get(url, timeout=self._timeout_s)
        except requests.RequestException as exc:
            logger.error("gamma_request_failed", extra={"slug": slug, "url": url, "error": str(exc)})
            raise GammaError(f"gamma request failed: {exc}") from exc

        logger.info(
            "gamma_request_complete",
            extra={
                "slug": slug,
                "status": response.status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 1),
            },
        )
        if response.status_code == 404:
            raise EventNotFoundError(f"event {slug!r} not found")
        if not response.ok:
            raise GammaError(f"gamma error: status {response.status_code}")

        try:
            return decode_event(response.json(parse_float=Decimal))
        except ValueError as exc:
            raise GammaError(f"gamma returned an invalid event: {exc}") from exc
