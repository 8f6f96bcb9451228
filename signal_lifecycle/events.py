from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, List

from .models import Signal

log = logging.getLogger("events")

OPENED = "opened"
RESOLVED = "resolved"
ERROR = "error"


class EventHub:
    """Fan-out of lifecycle events to presentation layers and notifiers.

    Callbacks may be plain functions or coroutine functions. A failing
    callback is logged and does not stop the others.
    """

    def __init__(self) -> None:
        self._subs: Dict[str, List[Callable[[Any], Any]]] = {OPENED: [], RESOLVED: [], ERROR: []}

    def subscribe(self, kind: str, callback: Callable[[Any], Any]) -> Callable[[], None]:
        lst = self._subs[kind]
        lst.append(callback)

        def _unsubscribe() -> None:
            if callback in lst:
                lst.remove(callback)

        return _unsubscribe

    def on_opened(self, callback: Callable[[Signal], Any]) -> Callable[[], None]:
        return self.subscribe(OPENED, callback)

    def on_resolved(self, callback: Callable[[Signal], Any]) -> Callable[[], None]:
        return self.subscribe(RESOLVED, callback)

    def on_error(self, callback: Callable[[str], Any]) -> Callable[[], None]:
        return self.subscribe(ERROR, callback)

    async def emit(self, kind: str, payload: Any) -> None:
        for cb in list(self._subs[kind]):
            try:
                res = cb(payload)
                if inspect.isawaitable(res):
                    await res
            except Exception as e:
                log.warning("event_callback_failed kind=%s err=%s", kind, e)

    async def opened(self, signal: Signal) -> None:
        await self.emit(OPENED, signal)

    async def resolved(self, signal: Signal) -> None:
        await self.emit(RESOLVED, signal)

    async def error(self, message: str) -> None:
        await self.emit(ERROR, message)
