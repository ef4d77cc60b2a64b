"""In-memory user/alert store implementing the alerting runtime's read contract."""

import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

from polyalert.core.evaluator import canonical_comparator
from polyalert.core.types import Alert, User

logger = logging.getLogger(__name__)


class NotFoundError(LookupError):
    """Raised when a user or alert does not exist."""


class MemoryStore:
    """Dict-backed store; all methods run on the event loop without awaiting."""

    def __init__(self) -> None:
        self._users: dict[int, User] = {}
        self._alerts: dict[int, Alert] = {}
        self._next_user_id = 1
        self._next_alert_id = 1

    @classmethod
    def from_json_file(cls, path: str | Path) -> "MemoryStore":
        """Seed a store from ``{"users": [...], "alerts": [...]}``."""

        path = Path(path)
        with path.open("r", encoding="utf-8") as file_obj:
            document = json.load(file_obj)
        if not isinstance(document, dict):
            raise ValueError(f"store seed must be a JSON object: {path}")

        store = cls()
        for raw in document.get("users") or []:
            store._put_user(_user_from_dict(raw))
        for raw in document.get("alerts") or []:
            alert = _alert_from_dict(raw)
            if alert.user_id not in store._users:
                raise ValueError(f"alert {alert.id} references unknown user {alert.user_id}")
            store._put_alert(alert)

        logger.info(
            "store_seed_loaded",
            extra={"path": str(path), "users": len(store._users), "alerts": len(store._alerts)},
        )
        return store

    async def list_user_ids_with_enabled_alerts(self) -> list[int]:
        return sorted({alert.user_id for alert in self._alerts.values() if alert.enabled})

    async def get_user_by_id(self, user_id: int) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise NotFoundError(f"user {user_id} not found")
        return user

    async def get_user_by_external_id(self, external_id: int) -> User:
        for user in self._users.values():
            if user.external_id == external_id:
                return user
        raise NotFoundError(f"user with external id {external_id} not found")

    async def list_enabled_alerts(self, user_id: int) -> list[Alert]:
        return [alert for alert in await self.list_alerts(user_id) if alert.enabled]

    async def list_alerts(self, user_id: int) -> list[Alert]:
        return sorted(
            (alert for alert in self._alerts.values() if alert.user_id == user_id),
            key=lambda alert: alert.id,
        )

    async def start_or_get_user(self, external_id: int, username: str = "") -> User:
        """Return the user registered for ``external_id``, creating it if needed."""

        try:
            return await self.get_user_by_external_id(external_id)
        except NotFoundError:
            pass
        user = User(id=self._next_user_id, external_id=external_id, username=username)
        self._put_user(user)
        return user

    async def delete_user(self, user_id: int) -> None:
        if self._users.pop(user_id, None) is None:
            raise NotFoundError(f"user {user_id} not found")
        for alert_id in [a.id for a in self._alerts.values() if a.user_id == user_id]:
            del self._alerts[alert_id]

    async def add_alert(
        self,
        user_id: int,
        market_slug: str,
        outcome: str,
        asset_id: str,
        comparator: str,
        threshold: str,
        condition_id: str = "",
    ) -> Alert:
        await self.get_user_by_id(user_id)
        alert = Alert(
            id=self._next_alert_id,
            user_id=user_id,
            market_slug=market_slug,
            outcome=outcome,
            asset_id=asset_id,
            comparator=comparator,
            threshold=threshold,
            enabled=True,
            condition_id=condition_id,
        )
        self._put_alert(alert)
        return alert

    async def set_enabled(self, user_id: int, alert_id: int, enabled: bool) -> Alert:
        alert = self._owned_alert(user_id, alert_id)
        updated = replace(alert, enabled=enabled)
        self._alerts[alert_id] = updated
        return updated

    async def delete_alert(self, user_id: int, alert_id: int) -> None:
        self._owned_alert(user_id, alert_id)
        del self._alerts[alert_id]

    def _owned_alert(self, user_id: int, alert_id: int) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None or alert.user_id != user_id:
            raise NotFoundError(f"alert {alert_id} not found")
        return alert

    def _put_user(self, user: User) -> None:
        self._users[user.id] = user
        self._next_user_id = max(self._next_user_id, user.id + 1)

    def _put_alert(self, alert: Alert) -> None:
        self._alerts[alert.id] = alert
        self._next_alert_id = max(self._next_alert_id, alert.id + 1)


def _user_from_dict(raw: dict[str, Any]) -> User:
    try:
        return User(
            id=int(raw["id"]),
            external_id=int(raw["external_id"]),
            username=str(raw.get("username") or ""),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"invalid user record: {raw!r}") from exc


def _alert_from_dict(raw: dict[str, Any]) -> Alert:
    try:
        return Alert(
            id=int(raw["id"]),
            user_id=int(raw["user_id"]),
            market_slug=str(raw["market_slug"]),
            outcome=str(raw["outcome"]).upper(),
            asset_id=str(raw["asset_id"]),
            comparator=canonical_comparator(raw["comparator"]),
            threshold=str(raw["threshold"]),
            enabled=bool(raw.get("enabled", True)),
            condition_id=str(raw.get("condition_id") or ""),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"invalid alert record: {raw!r}") from exc
