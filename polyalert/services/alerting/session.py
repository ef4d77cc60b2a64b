"""One user's live alert-watching loop over a single feed connection."""

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from polyalert.core.evaluator import parse_threshold, select_price, triggers
from polyalert.core.types import (
    PRICE_CHANGE_EVENT,
    Alert,
    FeedConnection,
    FeedFactory,
    Notifier,
    PriceChangeMessage,
    User,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AlertRule:
    """Evaluation view of one enabled alert."""

    alert_id: int
    market_slug: str
    outcome: str
    comparator: str
    threshold: Decimal

    def message(self, price: Decimal) -> str:
        return (
            f"Alert #{self.alert_id} triggered: {self.market_slug} {self.outcome} "
            f"{self.comparator} {self.threshold} (price {price})"
        )


def build_rules(user: User, alerts: Iterable[Alert]) -> dict[str, list[AlertRule]]:
    """Group alerts by asset id, skipping any whose threshold does not parse."""

    rules: dict[str, list[AlertRule]] = {}
    for alert in alerts:
        try:
            threshold = parse_threshold(alert.threshold)
        except ValueError as exc:
            logger.warning(
                "session_invalid_threshold",
                extra={"external_user_id": user.external_id, "alert_id": alert.id, "error": str(exc)},
            )
            continue
        rules.setdefault(alert.asset_id, []).append(
            AlertRule(
                alert_id=alert.id,
                market_slug=alert.market_slug,
                outcome=alert.outcome,
                comparator=alert.comparator,
                threshold=threshold,
            )
        )
    return rules


class AlertSession:
    """Owns a user's feed connection and rule set for the session's lifetime.

    The rule set is a snapshot taken at build time; alert changes require a new
    session. ``run`` exits when cancelled (closing the connection) or on the
    first feed error. There is no reconnect.
    """

    def __init__(self, user: User, rules: dict[str, list[AlertRule]], notifier: Notifier) -> None:
        self.user = user
        self._rules = rules
        self._notifier = notifier
        self._connection: FeedConnection | None = None

    @classmethod
    def build(cls, user: User, alerts: Iterable[Alert], notifier: Notifier) -> "AlertSession":
        return cls(user, build_rules(user, alerts), notifier)

    @property
    def asset_ids(self) -> list[str]:
        return sorted(self._rules)

    @property
    def is_empty(self) -> bool:
        return not self._rules

    @property
    def rule_count(self) -> int:
        return sum(len(rules) for rules in self._rules.values())

    async def open(self, feed: FeedFactory) -> None:
        """Connect to the feed; errors propagate to the caller."""

        if self._connection is not None:
            raise RuntimeError("session connection is already open")
        self._connection = await feed.connect()
        logger.info(
            "session_connected",
            extra={"external_user_id": self.user.external_id, "asset_count": len(self._rules)},
        )

    async def close(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            await connection.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "session_close_failed",
                extra={"external_user_id": self.user.external_id, "error": str(exc)},
            )

    async def run(self) -> None:
        """Subscribe and process updates until cancelled or the feed fails."""

        connection = self._connection
        if connection is None:
            raise RuntimeError("session is not open")

        external_user_id = self.user.external_id
        try:
            try:
                await connection.subscribe(self.asset_ids)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "session_subscribe_failed",
                    extra={"external_user_id": external_user_id, "error": str(exc)},
                )
                return

            logger.info(
                "session_started",
                extra={
                    "external_user_id": external_user_id,
                    "asset_ids": self.asset_ids,
                    "rule_count": self.rule_count,
                },
            )
            while True:
                try:
                    message = await connection.receive()
                except asyncio.CancelledError:
                    logger.info("session_stopped", extra={"external_user_id": external_user_id})
                    raise
                except Exception as exc:  # noqa: BLE001
                    logger.error(
                        "session_receive_failed",
                        extra={"external_user_id": external_user_id, "error": str(exc)},
                    )
                    return

                if message is None or message.event_type != PRICE_CHANGE_EVENT:
                    continue
                await self.handle_message(message)
        finally:
            await self.close()

    async def handle_message(self, message: PriceChangeMessage) -> int:
        """Evaluate one price-change message; returns the number of notifications sent."""

        sent = 0
        for change in message.price_changes:
            for rule in self._rules.get(change.asset_id, ()):
                price = select_price(rule.comparator, change)
                if price is None or not triggers(rule.comparator, price, rule.threshold):
                    continue
                if await self._dispatch(rule, price):
                    sent += 1
        return sent

    async def _dispatch(self, rule: AlertRule, price: Decimal) -> bool:
        try:
            await self._notifier.notify(self.user.external_id, rule.message(price))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "session_notify_failed",
                extra={
                    "external_user_id": self.user.external_id,
                    "alert_id": rule.alert_id,
                    "error": str(exc),
                },
            )
            return False
        logger.info(
            "alert_triggered",
            extra={
                "external_user_id": self.user.external_id,
                "alert_id": rule.alert_id,
                "price": str(price),
                "threshold": str(rule.threshold),
            },
        )
        return True
