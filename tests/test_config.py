import pytest

from signal_lifecycle.config import load_config


def test_defaults_without_file():
    cfg = load_config(None)
    assert cfg.market.pair == "BTC/USDT"
    assert cfg.admin_window.execute_ahead_s == 90
    assert cfg.admin_window.expire_after_s == 60
    assert cfg.admin_window.lookahead_s == 180
    assert cfg.prices.max_attempts == 5
    assert cfg.automation.max_attempts == 24
    assert cfg.automation.max_retries == 3
    assert cfg.telegram.chat_ids == []
    assert cfg.webhook.headers == {}


def test_yaml_and_env_overrides(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text(
        "market:\n"
        "  pair: ETH/USDT\n"
        "  timeframe: 5\n"
        "automation:\n"
        "  min_confidence: 75\n"
        "telegram:\n"
        "  token: from-file\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("TELEGRAM_TOKEN", "from-env")
    monkeypatch.setenv("TELEGRAM_CHAT_IDS", "1, 2,")
    monkeypatch.setenv("BROKER_API_KEY", "k")

    cfg = load_config(str(path))

    assert cfg.market.pair == "ETH/USDT"
    assert cfg.market.timeframe == 5
    assert cfg.automation.min_confidence == 75
    assert cfg.telegram.token == "from-env"
    assert cfg.telegram.chat_ids == ["1", "2"]
    assert cfg.broker.api_key == "k"


@pytest.mark.parametrize(
    "body",
    [
        "market:\n  timeframe: 0\n",
        "admin_window:\n  execute_ahead_s: 200\n",
        "admin_feed:\n  enabled: true\n",
    ],
)
def test_invalid_config_raises(tmp_path, monkeypatch, body):
    monkeypatch.delenv("ADMIN_FEED_URL", raising=False)
    path = tmp_path / "bad.yaml"
    path.write_text(body, encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(str(path))
