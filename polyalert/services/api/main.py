"""FastAPI service hosting the alerting runtime and its alert-management endpoints."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from polyalert.core.config import Settings, get_settings
from polyalert.core.evaluator import canonical_comparator, parse_threshold
from polyalert.core.logging import configure_logging
from polyalert.core.markets import find_market, normalize_outcome, outcome_asset_id
from polyalert.core.store import MemoryStore, NotFoundError
from polyalert.core.types import (
    Alert,
    EventMarkets,
    EventSource,
    FeedFactory,
    MarketInfo,
    Notifier,
    ServiceMeta,
    User,
)
from polyalert.services.alerting.main import build_registry, build_store, start_registry
from polyalert.services.alerting.registry import RunnerRegistry
from polyalert.services.markets.gamma import GammaClient, GammaError

logger = logging.getLogger(__name__)


class UserIn(BaseModel):
    external_id: int
    username: str = ""


class AlertIn(BaseModel):
    """Either ``event_slug`` (resolved through Gamma) or a raw ``asset_id`` is required."""

    market_slug: str
    outcome: str
    event_slug: str = ""
    asset_id: str = ""
    comparator: str
    threshold: str
    condition_id: str = ""


def _registry(request: Request) -> RunnerRegistry:
    return request.app.state.registry


def _store(request: Request) -> MemoryStore:
    return request.app.state.store


async def _user_or_404(store: MemoryStore, external_id: int) -> User:
    try:
        return await store.get_user_by_external_id(external_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="user not registered") from None


def _alert_out(alert: Alert) -> dict[str, Any]:
    return asdict(alert)


def _market_out(market: MarketInfo) -> dict[str, Any]:
    out = asdict(market)
    for key in ("best_bid", "best_ask", "last_trade"):
        if out[key] is not None:
            out[key] = str(out[key])
    return out


async def _event_or_error(gamma: EventSource, event_slug: str) -> EventMarkets:
    try:
        return await gamma.get_event_by_slug(event_slug)
    except LookupError:
        raise HTTPException(status_code=404, detail="event not found") from None
    except GammaError as exc:
        logger.warning("event_lookup_failed", extra={"event_slug": event_slug, "error": str(exc)})
        raise HTTPException(status_code=502, detail="event lookup failed") from None


def create_app(
    settings: Settings | None = None,
    store: MemoryStore | None = None,
    feed: FeedFactory | None = None,
    notifier: Notifier | None = None,
    gamma: EventSource | None = None,
) -> FastAPI:
    """Build the API; collaborators default to the configured production ones."""

    settings = settings or get_settings()
    store = store if store is not None else build_store(settings)
    if gamma is None:
        gamma = GammaClient(settings.POLYMARKET_GAMMA_URL, timeout_s=settings.POLYMARKET_GAMMA_TIMEOUT_S)
    meta = ServiceMeta(name=settings.APP_NAME, version=settings.VERSION, env=settings.ENV)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Start sessions for existing users and stop them all on shutdown."""

        registry = build_registry(settings, store, feed=feed, notifier=notifier)
        app.state.registry = registry
        logger.info(
            "api_startup",
            extra={"service": "api", "env": settings.ENV, "version": settings.VERSION},
        )
        await start_registry(registry, logger)
        try:
            yield
        finally:
            await registry.stop_all()
            logger.info("api_shutdown", extra={"service": "api"})

    app = FastAPI(title=settings.APP_NAME, version=settings.VERSION, lifespan=lifespan)
    app.state.store = store
    app.state.gamma = gamma

    @app.get("/health")
    def health() -> dict[str, str]:
        """Return process liveness status."""

        return {"status": "ok"}

    @app.get("/version")
    def version() -> dict[str, str]:
        """Return application metadata from shared settings."""

        return asdict(meta)

    @app.get("/runners")
    async def list_runners(request: Request) -> dict[str, list[int]]:
        """Return external ids of users with a registered session."""

        return {"users": await _registry(request).active_users()}

    @app.post("/runners/{external_id}/restart")
    async def restart_runner(external_id: int, request: Request) -> dict[str, Any]:
        started = await _registry(request).restart_user(external_id)
        return {"external_id": external_id, "started": started}

    @app.delete("/runners/{external_id}")
    async def stop_runner(external_id: int, request: Request) -> dict[str, Any]:
        await _registry(request).stop_user(external_id)
        return {"external_id": external_id, "stopped": True}

    @app.post("/users")
    async def register_user(payload: UserIn, request: Request) -> dict[str, Any]:
        user = await _store(request).start_or_get_user(payload.external_id, payload.username)
        return asdict(user)

    @app.get("/users/{external_id}/alerts")
    async def list_alerts(external_id: int, request: Request) -> dict[str, Any]:
        store = _store(request)
        user = await _user_or_404(store, external_id)
        return {"alerts": [_alert_out(alert) for alert in await store.list_alerts(user.id)]}

    @app.get("/events/{event_slug}")
    async def get_event(event_slug: str, request: Request) -> dict[str, Any]:
        """Return the event's markets with outcomes and CLOB token ids."""

        event = await _event_or_error(request.app.state.gamma, event_slug)
        return {"event_slug": event.event_slug, "markets": [_market_out(market) for market in event.markets]}

    @app.post("/users/{external_id}/alerts", status_code=201)
    async def add_alert(external_id: int, payload: AlertIn, request: Request) -> dict[str, Any]:
        """Create an enabled alert and restart the user's session to pick it up."""

        store = _store(request)
        user = await _user_or_404(store, external_id)

        try:
            outcome = normalize_outcome(payload.outcome)
        except ValueError:
            raise HTTPException(status_code=400, detail="invalid outcome, use YES or NO") from None
        try:
            comparator = canonical_comparator(payload.comparator)
        except ValueError:
            raise HTTPException(status_code=400, detail="invalid comparator, use <=, >=, < or >") from None
        try:
            threshold = parse_threshold(payload.threshold)
        except ValueError:
            raise HTTPException(status_code=400, detail="invalid threshold, use a decimal like 0.23") from None

        market_slug = payload.market_slug.strip()
        asset_id = payload.asset_id.strip()
        condition_id = payload.condition_id.strip()
        event_slug = payload.event_slug.strip()
        if event_slug:
            event = await _event_or_error(request.app.state.gamma, event_slug)
            market = find_market(event, market_slug)
            if market is None:
                raise HTTPException(status_code=404, detail="market not in event")
            try:
                asset_id, outcome = outcome_asset_id(market, outcome)
            except ValueError:
                raise HTTPException(status_code=400, detail="market has no outcome tokens") from None
            condition_id = market.condition_id
        elif not asset_id:
            raise HTTPException(status_code=400, detail="event_slug or asset_id is required")

        alert = await store.add_alert(
            user.id,
            market_slug=market_slug,
            outcome=outcome,
            asset_id=asset_id,
            comparator=comparator,
            threshold=str(threshold),
            condition_id=condition_id,
        )
        logger.info("alert_created", extra={"external_user_id": external_id, "alert_id": alert.id})
        await _registry(request).restart_user(external_id)
        return _alert_out(alert)

    async def _set_enabled(request: Request, external_id: int, alert_id: int, enabled: bool) -> dict[str, Any]:
        store = _store(request)
        user = await _user_or_404(store, external_id)
        try:
            alert = await store.set_enabled(user.id, alert_id, enabled)
        except NotFoundError:
            raise HTTPException(status_code=404, detail="alert not found") from None
        logger.info(
            "alert_enabled_changed",
            extra={"external_user_id": external_id, "alert_id": alert_id, "enabled": enabled},
        )
        await _registry(request).restart_user(external_id)
        return _alert_out(alert)

    @app.post("/users/{external_id}/alerts/{alert_id}/enable")
    async def enable_alert(external_id: int, alert_id: int, request: Request) -> dict[str, Any]:
        return await _set_enabled(request, external_id, alert_id, True)

    @app.post("/users/{external_id}/alerts/{alert_id}/disable")
    async def disable_alert(external_id: int, alert_id: int, request: Request) -> dict[str, Any]:
        return await _set_enabled(request, external_id, alert_id, False)

    @app.delete("/users/{external_id}/alerts/{alert_id}")
    async def delete_alert(external_id: int, alert_id: int, request: Request) -> dict[str, Any]:
        store = _store(request)
        user = await _user_or_404(store, external_id)
        try:
            await store.delete_alert(user.id, alert_id)
        except NotFoundError:
            raise HTTPException(status_code=404, detail="alert not found") from None
        logger.info("alert_deleted", extra={"external_user_id": external_id, "alert_id": alert_id})
        await _registry(request).restart_user(external_id)
        return {"id": alert_id, "deleted": True}

    return app


settings = get_settings()
configure_logging(settings.LOG_LEVEL, service="api")
app = create_app(settings)
