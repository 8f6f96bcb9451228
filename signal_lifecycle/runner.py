from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .admin import AdminSignalDispatcher
from .analysis import analyze
from .automation import AutomationController
from .clock import Clock
from .config import Config
from .events import EventHub
from .formatters import format_error, format_opened, format_resolved
from .models import Signal
from .notifier.telegram import TelegramNotifier
from .notifier.webhook import WebhookNotifier
from .price_resolver import PriceResolver
from .providers.admin_feed import AdminSignalFeed
from .providers.binance import BinanceProvider
from .providers.broker import BrokerPriceGateway
from .repository import SignalRepository
from .results import ResultResolver
from .store import SignalStore
from .system import SystemSwitch

log = logging.getLogger("runner")


class SignalRunner:
    """Builds every component from the config and runs the engine until cancelled."""

    def __init__(self, cfg: Config, *, repo: Optional[SignalRepository] = None, clock: Optional[Clock] = None):
        self.cfg = cfg
        self.clock = clock or Clock()
        self.repo = repo or SignalRepository.open(cfg.repository.db_path)
        self.store = SignalStore(cfg.store.state_path or None)
        self.switch = SystemSwitch(self.repo)
        self.events = EventHub()

        self.provider = BinanceProvider(
            market=cfg.provider.market,
            rest_timeout_s=cfg.provider.rest_timeout_s,
            rest_max_retries=cfg.provider.rest_max_retries,
            rest_backoff_s=cfg.provider.rest_backoff_s,
            default_limit=cfg.provider.candles,
        )
        self.broker = BrokerPriceGateway(
            cfg.broker.base_url,
            api_key=cfg.broker.api_key,
            partner=cfg.broker.partner,
            slot=cfg.broker.slot,
            timeout_s=cfg.broker.timeout_s,
        )
        self.prices = PriceResolver(
            self.broker,
            self.clock,
            cache_ttl_s=cfg.prices.cache_ttl_s,
            max_attempts=cfg.prices.max_attempts,
            initial_delay_s=cfg.prices.initial_delay_s,
            backoff_factor=cfg.prices.backoff_factor,
        )
        self.resolver = ResultResolver(
            self.repo,
            self.store,
            self.prices,
            self.provider,
            self.clock,
            self.events,
            exit_margin_s=cfg.resolver.exit_margin_s,
            patience_attempts=cfg.resolver.patience_attempts,
        )
        self.dispatcher = AdminSignalDispatcher(
            self.repo,
            self.store,
            self.provider,
            self.resolver,
            self.clock,
            self.events,
            pair=cfg.market.pair,
            window=cfg.admin_window,
        )
        self.controller = AutomationController(
            store=self.store,
            repo=self.repo,
            dispatcher=self.dispatcher,
            resolver=self.resolver,
            switch=self.switch,
            candles=self.provider,
            analyzer=analyze,
            clock=self.clock,
            events=self.events,
            pair=cfg.market.pair,
            timeframe=cfg.market.timeframe,
            strategy=cfg.market.strategy,
            cfg=cfg.automation,
            resolver_cfg=cfg.resolver,
            admin_poll_interval_s=cfg.admin_window.poll_interval_s,
            candle_limit=cfg.provider.candles,
        )

        self.tg = TelegramNotifier(
            token=cfg.telegram.token,
            chat_ids=cfg.telegram.chat_ids,
            disable_web_page_preview=cfg.telegram.disable_web_page_preview,
        )
        self.webhook = WebhookNotifier(
            enabled=cfg.webhook.enabled,
            url=cfg.webhook.url,
            secret=cfg.webhook.secret,
            timeout_s=cfg.webhook.timeout_s,
            headers=cfg.webhook.headers or {},
        )
        self.feed: Optional[AdminSignalFeed] = None
        if cfg.admin_feed.enabled:
            self.feed = AdminSignalFeed(cfg.admin_feed.url, heartbeat_s=cfg.admin_feed.heartbeat_s)

        self.events.on_opened(self._on_opened)
        self.events.on_resolved(self._on_resolved)
        self.events.on_error(self._on_error)
        self.switch.subscribe(self._on_switch)

    # -- notifications --------------------------------------------------

    def _telegram_on(self) -> bool:
        return self.cfg.telegram.enabled and self.tg.enabled()

    async def _on_opened(self, sig: Signal) -> None:
        if self.webhook.enabled:
            await self.webhook.send_event("opened", sig)
        if self._telegram_on():
            await self.tg.send(format_opened(sig))

    async def _on_resolved(self, sig: Signal) -> None:
        if self.webhook.enabled:
            await self.webhook.send_event("resolved", sig)
        if self._telegram_on():
            await self.tg.send(format_resolved(sig))

    async def _on_error(self, message: str) -> None:
        log.warning("engine_error msg=%s", message)
        if self.webhook.enabled:
            await self.webhook.send_event("error", message=message)
        if self._telegram_on():
            await self.tg.send(format_error(self.cfg.app.name, message))

    def _on_switch(self, enabled: bool) -> None:
        log.info("system_switch enabled=%s", enabled)

    # -- lifecycle ------------------------------------------------------

    async def start(self) -> None:
        pending = await self.store.rehydrate(self.repo)
        self.controller.resume(pending)
        self.controller.open()
        if self.cfg.automation.enabled_on_start:
            self.controller.start()
        log.info(
            "runner_started pair=%s tf=%sm strategy=%s system_enabled=%s",
            self.cfg.market.pair,
            self.cfg.market.timeframe,
            self.cfg.market.strategy,
            await self.switch.is_enabled(),
        )

    async def _consume_feed(self) -> None:
        async for evt in self.feed.stream():
            log.debug("admin_feed_event op=%s id=%s status=%s", evt.op, evt.new.id, evt.new.status)
            self.clock.spawn(self.dispatcher.handle_event(evt), name=f"admin_feed:{evt.new.id}")

    async def run_forever(self) -> None:
        await self.start()
        if self.feed is not None:
            await self._consume_feed()
        else:
            while True:
                await asyncio.sleep(3600)

    async def close(self) -> None:
        await self.controller.close()
        self.switch.close()
        for closer in (self.provider.close, self.broker.close):
            try:
                await closer()
            except Exception as e:
                log.warning("close_failed err=%s", e)
        self.repo.close()
