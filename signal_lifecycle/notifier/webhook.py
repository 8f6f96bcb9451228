from __future__ import annotations

import logging
from typing import Optional

import aiohttp

from ..models import Signal

log = logging.getLogger("webhook")


def build_payload(kind: str, secret: str, signal: Optional[Signal] = None, message: Optional[str] = None) -> dict:
    payload = {"secret": secret, "event": kind}
    if signal is not None:
        payload["signal"] = signal.to_dict()
        payload["expiry_ms"] = signal.expiry_ms
    if message is not None:
        payload["message"] = message
    return payload


class WebhookNotifier:
    def __init__(self, *, enabled: bool, url: str, secret: str, timeout_s: int, headers: dict):
        self.enabled = bool(enabled)
        self.url = url or ""
        self.secret = secret or ""
        self.timeout_s = int(timeout_s) if timeout_s is not None else 10
        self.headers = headers or {}

    async def send_event(self, kind: str, signal: Optional[Signal] = None, message: Optional[str] = None) -> None:
        if not self.enabled or not self.url:
            return

        payload = build_payload(kind, self.secret, signal, message)
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_s)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json=payload, headers=self.headers) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        log.warning("webhook_bad_status event=%s status=%s body=%s", kind, resp.status, text[:200])
        except Exception as e:
            log.warning("webhook_post_failed event=%s err=%s", kind, e)
