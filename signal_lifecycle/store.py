from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .models import Signal

log = logging.getLogger("store")


class SignalStore:
    """History of signals plus the single current (unresolved) one.

    Optionally snapshotted to a JSON file so a restart starts from the last
    known state before the repository is consulted.
    """

    def __init__(self, state_path: Optional[str] = None):
        self.state_path = state_path
        self._signals: List[Signal] = []
        self._current: Optional[Signal] = None
        self._subs: List[Callable[[Signal], None]] = []

    def get_current(self) -> Optional[Signal]:
        return self._current

    def set_current(self, signal: Optional[Signal]) -> None:
        if signal is None:
            self._current = None
        else:
            known = self._find(signal.id)
            if (known is not None and known.is_resolved) or signal.is_resolved:
                self._current = None
            else:
                self._current = signal
        self._save()

    def add(self, signal: Signal) -> bool:
        if self._find(signal.id) is not None:
            return False
        self._signals.insert(0, signal)
        if not signal.is_resolved:
            self._current = signal
        self._save()
        return True

    def update(self, signal: Signal) -> None:
        if not signal.id:
            return
        self._signals = [signal if s.id == signal.id else s for s in self._signals]
        if self._current is not None and self._current.id == signal.id:
            self._current = None if signal.is_resolved else signal
        self._save()
        if signal.is_resolved:
            for cb in list(self._subs):
                try:
                    cb(signal)
                except Exception as e:
                    log.warning("store_subscriber_failed err=%s", e)

    def get(self, signal_id: str) -> Optional[Signal]:
        return self._find(signal_id)

    def list(self) -> List[Signal]:
        return list(self._signals)

    def clear(self) -> None:
        self._signals = []
        self._current = None
        self._save()

    def subscribe(self, callback: Callable[[Signal], None]) -> Callable[[], None]:
        self._subs.append(callback)
        return lambda: self._subs.remove(callback) if callback in self._subs else None

    async def rehydrate(self, repo) -> List[Signal]:
        """Load the snapshot, merge the repository's history, return unresolved signals.

        The repository wins for any id present in both.
        """
        merged: Dict[str, Signal] = {s.id: s for s in self._load()}
        try:
            remote = await repo.get_all_signals()
        except Exception as e:
            log.error("rehydrate_fetch_failed err=%s", e)
            remote = []
        for s in remote:
            merged[s.id] = s

        ordered = sorted(merged.values(), key=lambda s: (s.created_at_ms, s.entry_time_ms), reverse=True)
        self._signals = ordered
        pending = [s for s in ordered if not s.is_resolved]
        self._current = pending[0] if pending else None
        self._save()
        log.info("store_rehydrated signals=%d pending=%d", len(ordered), len(pending))
        return pending

    def _find(self, signal_id: str) -> Optional[Signal]:
        for s in self._signals:
            if s.id == signal_id:
                return s
        return None

    def _load(self) -> List[Signal]:
        if not self.state_path or not os.path.exists(self.state_path):
            return []
        try:
            with open(self.state_path, "r", encoding="utf-8") as f:
                raw = json.load(f) or {}
            return [Signal.from_dict(d) for d in raw.get("signals", [])]
        except (OSError, ValueError, KeyError) as e:
            log.warning("store_snapshot_unreadable path=%s err=%s", self.state_path, e)
            return []

    def _save(self) -> None:
        if not self.state_path:
            return
        payload = {
            "version": 1,
            "current_id": self._current.id if self._current else None,
            "signals": [s.to_dict() for s in self._signals],
        }
        path = Path(self.state_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(payload, f, separators=(",", ":"))
            os.replace(tmp, path)
        except OSError as e:
            log.warning("store_snapshot_write_failed path=%s err=%s", self.state_path, e)
