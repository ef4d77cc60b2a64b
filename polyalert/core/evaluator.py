"""Pure price selection and threshold checks for alert rules."""

from decimal import Decimal, InvalidOperation
from typing import Any

from polyalert.core.types import COMPARATOR_GTE, COMPARATOR_LTE, PriceChange

_COMPARATOR_ALIASES = {
    "<": COMPARATOR_LTE,
    "<=": COMPARATOR_LTE,
    ">": COMPARATOR_GTE,
    ">=": COMPARATOR_GTE,
}


def canonical_comparator(raw: str) -> str:
    """Map ``<``/``<=`` to ``<=`` and ``>``/``>=`` to ``>=``."""

    comparator = _COMPARATOR_ALIASES.get(str(raw).strip())
    if comparator is None:
        raise ValueError(f"invalid comparator: {raw!r}")
    return comparator


def parse_threshold(raw: str) -> Decimal:
    """Parse a user-supplied decimal threshold without float rounding."""

    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ValueError(f"invalid threshold: {raw!r}") from exc
    if not value.is_finite():
        raise ValueError(f"invalid threshold: {raw!r}")
    return value


def select_price(comparator: str, change: PriceChange) -> Decimal | None:
    """Pick the price an alert is checked against.

    ``<=`` alerts watch the best ask (what a buyer would pay) and ``>=`` alerts
    watch the best bid; either falls back to the last trade price. ``None``
    means the update carries no usable price for this comparator.
    """

    preferred = change.best_ask if comparator == COMPARATOR_LTE else change.best_bid
    if preferred is not None:
        return preferred
    return change.price


def triggers(comparator: str, price: Decimal, threshold: Decimal) -> bool:
    """Return True when ``price`` crosses ``threshold`` (inclusive)."""

    if comparator == COMPARATOR_LTE:
        return price <= threshold
    return price >= threshold


def optional_decimal(value: Any) -> Decimal | None:
    """Decode an upstream price that may be null, empty, quoted or a JSON number."""

    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid decimal: {value!r}")
    text = str(value).strip()
    if not text:
        return None
    try:
        number = Decimal(text)
    except InvalidOperation as exc:
        raise ValueError(f"invalid decimal: {value!r}") from exc
    if not number.is_finite():
        raise ValueError(f"invalid decimal: {value!r}")
    return number
