from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import os
import yaml


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


@dataclass
class AppConfig:
    name: str = "Signal Lifecycle"
    log_level: str = "INFO"


@dataclass
class MarketConfig:
    pair: str = "BTC/USDT"
    timeframe: int = 1  # minutes
    strategy: str = "trend_momentum"


@dataclass
class BrokerConfig:
    base_url: str = "https://symbol-prices-api.mybroker.dev"
    api_key: str = ""
    partner: str = "mybroker"
    slot: str = "default"
    timeout_s: int = 10


@dataclass
class ProviderConfig:
    type: str = "binance"
    market: str = "spot"  # futures|spot
    candles: int = 100
    rest_timeout_s: int = 20
    rest_max_retries: int = 4
    rest_backoff_s: float = 0.8


@dataclass
class RepositoryConfig:
    db_path: str = "data/signals.db"


@dataclass
class StoreConfig:
    state_path: str = "data/store.json"


@dataclass
class PricesConfig:
    cache_ttl_s: float = 5.0
    max_attempts: int = 5
    initial_delay_s: float = 1.0
    backoff_factor: float = 1.5


@dataclass
class ResolverConfig:
    exit_margin_s: float = 3.0
    patience_attempts: int = 5
    backup_delay_s: float = 15.0


@dataclass
class AdminWindowConfig:
    execute_ahead_s: int = 90
    expire_after_s: int = 60
    lookback_s: int = 60
    lookahead_s: int = 180
    poll_interval_s: float = 2.0


@dataclass
class AutomationConfig:
    enabled_on_start: bool = True
    tick_interval_s: float = 5.0
    min_confidence: float = 70.0
    min_factors: int = 1
    max_attempts: int = 24
    max_retries: int = 3
    retry_backoff_s: float = 1.0
    watchdog_interval_s: float = 2.0
    watchdog_margin_s: float = 2.0


@dataclass
class AdminFeedConfig:
    enabled: bool = False
    url: str = ""
    heartbeat_s: int = 20


@dataclass
class TelegramConfig:
    enabled: bool = True
    token: str = ""
    chat_ids: List[str] = None
    disable_web_page_preview: bool = True


@dataclass
class WebhookConfig:
    enabled: bool = False
    url: str = ""
    secret: str = ""
    timeout_s: int = 10
    headers: Dict[str, str] = None


@dataclass
class Config:
    app: AppConfig = field(default_factory=AppConfig)
    market: MarketConfig = field(default_factory=MarketConfig)
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    repository: RepositoryConfig = field(default_factory=RepositoryConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    prices: PricesConfig = field(default_factory=PricesConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    admin_window: AdminWindowConfig = field(default_factory=AdminWindowConfig)
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    admin_feed: AdminFeedConfig = field(default_factory=AdminFeedConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)

    def validate(self) -> None:
        errs = []
        if not (self.market.pair or "").strip():
            errs.append("market.pair is required")
        if int(self.market.timeframe) <= 0:
            errs.append("market.timeframe must be > 0 minutes")
        if not 0 <= float(self.automation.min_confidence) <= 100:
            errs.append("automation.min_confidence must be within 0..100")
        if int(self.prices.max_attempts) < 1:
            errs.append("prices.max_attempts must be >= 1")
        if int(self.resolver.patience_attempts) < 1:
            errs.append("resolver.patience_attempts must be >= 1")
        w = self.admin_window
        if w.execute_ahead_s > w.lookahead_s:
            errs.append("admin_window.execute_ahead_s must not exceed lookahead_s")
        if w.expire_after_s > w.lookback_s:
            errs.append("admin_window.expire_after_s must not exceed lookback_s")
        if self.admin_feed.enabled and not self.admin_feed.url:
            errs.append("admin_feed.url is required when admin_feed.enabled")
        if errs:
            raise ValueError("Invalid config: " + "; ".join(errs))


def load_config(path: Optional[str]) -> Config:
    raw: Dict[str, Any] = {}
    if path:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

    cfg = Config(
        app=AppConfig(**raw.get("app", {})),
        market=MarketConfig(**raw.get("market", {})),
        broker=BrokerConfig(**raw.get("broker", {})),
        provider=ProviderConfig(**raw.get("provider", {})),
        repository=RepositoryConfig(**raw.get("repository", {})),
        store=StoreConfig(**raw.get("store", {})),
        prices=PricesConfig(**raw.get("prices", {})),
        resolver=ResolverConfig(**raw.get("resolver", {})),
        admin_window=AdminWindowConfig(**raw.get("admin_window", {})),
        automation=AutomationConfig(**raw.get("automation", {})),
        admin_feed=AdminFeedConfig(**raw.get("admin_feed", {})),
        telegram=TelegramConfig(**raw.get("telegram", {})),
        webhook=WebhookConfig(**raw.get("webhook", {})),
    )

    # env overrides (useful on servers)
    cfg.broker.api_key = _env_override(cfg.broker.api_key, "BROKER_API_KEY")
    cfg.admin_feed.url = _env_override(cfg.admin_feed.url, "ADMIN_FEED_URL")
    cfg.telegram.token = _env_override(cfg.telegram.token, "TELEGRAM_TOKEN")
    if cfg.telegram.chat_ids is None:
        cfg.telegram.chat_ids = []

    # Allow TELEGRAM_CHAT_IDS="id1,id2"
    chat_env = os.getenv("TELEGRAM_CHAT_IDS")
    if chat_env:
        cfg.telegram.chat_ids = [x.strip() for x in chat_env.split(",") if x.strip()]

    cfg.webhook.secret = _env_override(cfg.webhook.secret, "WEBHOOK_SECRET")
    cfg.webhook.url = _env_override(cfg.webhook.url, "WEBHOOK_URL")
    if cfg.webhook.headers is None:
        cfg.webhook.headers = {}

    cfg.validate()
    return cfg
