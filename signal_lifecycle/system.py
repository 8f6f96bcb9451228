from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, List, Optional

from .repository import SignalRepository

log = logging.getLogger("system")

SYSTEM_ENABLED_KEY = "system_enabled"


class SystemSwitch:
    """Global on/off for technical-analysis signals.

    When disabled only operator-scheduled signals are materialized. A read
    failure counts as enabled.
    """

    def __init__(self, repo: SignalRepository):
        self.repo = repo
        self._cached: Optional[bool] = None
        self._subs: List[Callable[[bool], Any]] = []
        self._unsub = repo.subscribe_settings(self._on_setting)

    async def is_enabled(self) -> bool:
        try:
            value = await self.repo.get_setting(SYSTEM_ENABLED_KEY, {"enabled": True})
        except Exception as e:
            log.error("system_status_read_failed err=%s", e)
            return True
        enabled = bool((value or {}).get("enabled", True))
        self._cached = enabled
        return enabled

    async def set_enabled(self, enabled: bool) -> bool:
        try:
            await self.repo.set_setting(SYSTEM_ENABLED_KEY, {"enabled": bool(enabled)})
            return True
        except Exception as e:
            log.error("system_status_update_failed err=%s", e)
            return False

    def subscribe(self, callback: Callable[[bool], Any]) -> Callable[[], None]:
        self._subs.append(callback)
        return lambda: self._subs.remove(callback) if callback in self._subs else None

    async def _on_setting(self, key: str, value: Any) -> None:
        if key != SYSTEM_ENABLED_KEY:
            return
        enabled = bool((value or {}).get("enabled", True))
        self._cached = enabled
        log.info("system_status_changed enabled=%s", enabled)
        for cb in list(self._subs):
            res = cb(enabled)
            if inspect.isawaitable(res):
                await res

    @property
    def last_known(self) -> Optional[bool]:
        return self._cached

    def close(self) -> None:
        self._unsub()
