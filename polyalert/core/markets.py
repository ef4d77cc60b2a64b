"""Resolve a market slug and YES/NO outcome to the CLOB token an alert watches."""

from polyalert.core.types import EventMarkets, MarketInfo

OUTCOMES = ("YES", "NO")


def find_market(event: EventMarkets, market_slug: str) -> MarketInfo | None:
    for market in event.markets:
        if market.slug == market_slug:
            return market
    return None


def normalize_outcome(raw: str) -> str:
    outcome = str(raw).strip().upper()
    if outcome not in OUTCOMES:
        raise ValueError(f"invalid outcome: {raw!r}")
    return outcome


def outcome_asset_id(market: MarketInfo, outcome: str) -> tuple[str, str]:
    """Return ``(asset_id, outcome)`` for a binary market.

    Gamma lists token ids in outcome order, normally ``["Yes", "No"]``. Markets
    with other outcome labels are still read positionally: first token YES,
    second token NO.
    """

    outcome = normalize_outcome(outcome)
    if len(market.clob_token_ids) < 2:
        raise ValueError(f"market {market.slug!r} is missing token ids")
    return market.clob_token_ids[OUTCOMES.index(outcome)], outcome
