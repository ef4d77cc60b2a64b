"""Shared lightweight types to keep module interfaces explicit and typed."""

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

COMPARATOR_LTE = "<="
COMPARATOR_GTE = ">="
PRICE_CHANGE_EVENT = "price_change"


@dataclass(frozen=True, slots=True)
class ServiceMeta:
    """Metadata describing a running service instance."""

    name: str
    version: str
    env: str


@dataclass(frozen=True, slots=True)
class User:
    """Registered user; ``external_id`` is the chat id alerts are delivered to."""

    id: int
    external_id: int
    username: str = ""


@dataclass(frozen=True, slots=True)
class Alert:
    """Threshold alert on one outcome token of a market."""

    id: int
    user_id: int
    market_slug: str
    outcome: str
    asset_id: str
    comparator: str
    threshold: str
    enabled: bool = True
    condition_id: str = ""


@dataclass(frozen=True, slots=True)
class PriceChange:
    """Per-asset price update; any field may be missing upstream."""

    asset_id: str
    best_bid: Decimal | None = None
    best_ask: Decimal | None = None
    price: Decimal | None = None


@dataclass(frozen=True, slots=True)
class PriceChangeMessage:
    """Decoded feed message carrying one or more per-asset changes."""

    event_type: str
    price_changes: tuple[PriceChange, ...] = ()


@dataclass(frozen=True, slots=True)
class MarketInfo:
    """One market of an event as listed by the Gamma API."""

    slug: str
    condition_id: str = ""
    question: str = ""
    outcomes: tuple[str, ...] = ()
    clob_token_ids: tuple[str, ...] = ()
    outcome_prices: tuple[str, ...] = ()
    best_bid: Decimal | None = None
    best_ask: Decimal | None = None
    last_trade: Decimal | None = None


@dataclass(frozen=True, slots=True)
class EventMarkets:
    """An event and the markets it groups."""

    event_slug: str
    markets: tuple[MarketInfo, ...] = ()


class AlertStore(Protocol):
    """Read side of the user/alert store consumed by the alerting runtime."""

    async def list_user_ids_with_enabled_alerts(self) -> list[int]: ...

    async def get_user_by_id(self, user_id: int) -> User: ...

    async def get_user_by_external_id(self, external_id: int) -> User: ...

    async def list_enabled_alerts(self, user_id: int) -> list[Alert]: ...


class FeedConnection(Protocol):
    """One live market-feed connection."""

    async def subscribe(self, asset_ids: Sequence[str]) -> None: ...

    async def receive(self) -> PriceChangeMessage | None: ...

    async def close(self) -> None: ...


class FeedFactory(Protocol):
    """Opens market-feed connections."""

    async def connect(self) -> FeedConnection: ...


class EventSource(Protocol):
    """Looks up events by slug; raises LookupError when the event does not exist."""

    async def get_event_by_slug(self, slug: str) -> EventMarkets: ...


class Notifier(Protocol):
    """Delivers alert text to a user; raises when delivery fails."""

    async def notify(self, external_user_id: int, text: str) -> None: ...
