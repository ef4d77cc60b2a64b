"""Settings helpers and the service wiring built from them."""

import json

from polyalert.core.config import Settings
from polyalert.services.alerting.main import build_notifier, build_registry, build_store
from polyalert.services.feed.polymarket import PolymarketFeedFactory
from polyalert.services.notifier.telegram import LogNotifier, TelegramNotifier


def test_defaults_disable_optional_features() -> None:
    settings = Settings(_env_file=None)
    assert settings.ws_read_timeout() is None
    assert settings.ws_ping_interval() == 30.0
    assert settings.telegram_enabled() is False
    assert settings.stop_grace() == 5.0
    assert settings.store_seed_path() is None
    assert settings.POLYMARKET_GAMMA_URL == "https://gamma-api.polymarket.com"
    assert isinstance(build_notifier(settings), LogNotifier)


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("POLYMARKET_WS_READ_TIMEOUT_S", "15")
    monkeypatch.setenv("POLYMARKET_WS_PING_INTERVAL_S", "0")
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", " 123:abc ")
    monkeypatch.setenv("RUNNER_STOP_GRACE_S", "-1")

    settings = Settings(_env_file=None)
    assert settings.ws_read_timeout() == 15.0
    assert settings.ws_ping_interval() is None
    assert settings.stop_grace() == 0.0

    notifier = build_notifier(settings)
    assert isinstance(notifier, TelegramNotifier)
    assert notifier._endpoint == "https://api.telegram.org/bot123:abc/sendMessage"


def test_store_and_registry_from_settings(tmp_path) -> None:
    seed = tmp_path / "seed.json"
    seed.write_text(
        json.dumps(
            {
                "users": [{"id": 1, "external_id": 100}],
                "alerts": [
                    {
                        "id": 1,
                        "user_id": 1,
                        "market_slug": "m",
                        "outcome": "yes",
                        "asset_id": "A",
                        "comparator": "<",
                        "threshold": "0.5",
                    }
                ],
            }
        ),
        encoding="utf-8",
    )
    settings = Settings(_env_file=None, STORE_SEED_PATH=str(seed), RUNNER_STOP_GRACE_S=2.0)

    store = build_store(settings)
    registry = build_registry(settings, store)

    assert store._alerts[1].comparator == "<="
    assert isinstance(registry._feed, PolymarketFeedFactory)
    assert registry._stop_grace_s == 2.0
