from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from datetime import datetime, timezone

from .clock import fmt_ms
from .config import load_config
from .models import BUY, SELL
from .pairs import normalize_pair
from .repository import SignalRepository
from .runner import SignalRunner
from .store import SignalStore
from .system import SystemSwitch


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _parse_at(value: str) -> int:
    """Epoch ms, ``+<seconds>`` from now, or an ISO-8601 time (UTC if naive)."""
    s = value.strip()
    if s.startswith("+"):
        return int(time.time() * 1000) + int(float(s[1:]) * 1000)
    if s.isdigit():
        return int(s)
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _cmd_run(cfg) -> int:
    runner = SignalRunner(cfg)

    async def _run() -> None:
        try:
            await runner.run_forever()
        finally:
            await runner.close()

    asyncio.run(_run())
    return 0


def _cmd_schedule(cfg, args) -> int:
    async def _run() -> None:
        repo = SignalRepository.open(cfg.repository.db_path)
        try:
            admin = await repo.create_admin_signal(
                pair=normalize_pair(args.pair or cfg.market.pair),
                direction=args.direction,
                scheduled_time_ms=_parse_at(args.at),
                timeframe=int(args.timeframe or cfg.market.timeframe),
            )
            print(f"{admin.id}  {admin.pair}  {admin.direction}  {fmt_ms(admin.scheduled_time_ms)}  {admin.timeframe}m  {admin.status}")
        finally:
            repo.close()

    asyncio.run(_run())
    return 0


def _cmd_admin_list(cfg, args) -> int:
    async def _run() -> None:
        repo = SignalRepository.open(cfg.repository.db_path)
        try:
            if args.delete:
                ok = await repo.delete_admin_signal(args.delete)
                print(f"deleted={ok} id={args.delete}")
                return
            for a in await repo.list_admin_signals():
                print(f"{a.id}  {a.pair}  {a.direction}  {fmt_ms(a.scheduled_time_ms)}  {a.timeframe}m  {a.status}")
        finally:
            repo.close()

    asyncio.run(_run())
    return 0


def _cmd_system(cfg, args) -> int:
    async def _run() -> None:
        repo = SignalRepository.open(cfg.repository.db_path)
        switch = SystemSwitch(repo)
        try:
            if args.enable or args.disable:
                await switch.set_enabled(bool(args.enable))
            print(f"system_enabled={await switch.is_enabled()}")
        finally:
            switch.close()
            repo.close()

    asyncio.run(_run())
    return 0


def _cmd_history(cfg, args) -> int:
    async def _run() -> None:
        repo = SignalRepository.open(cfg.repository.db_path)
        try:
            if args.clear:
                await repo.clear_signal_history()
                SignalStore(cfg.store.state_path).clear()
                print("history cleared")
                return
            for s in (await repo.get_all_signals())[: args.limit]:
                pl = f"{s.profit_loss:.4f}%" if s.profit_loss is not None else "-"
                print(f"{fmt_ms(s.entry_time_ms)}  {s.pair}  {s.direction}  {s.timeframe}m  {s.source}  {s.result or 'pending'}  {pl}")
        finally:
            repo.close()

    asyncio.run(_run())
    return 0


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Signal Lifecycle - timed directional signals with win/loss resolution")
    sub = p.add_subparsers(dest="command", required=True)

    def _with_config(sp: argparse.ArgumentParser) -> argparse.ArgumentParser:
        sp.add_argument("--config", default=None, help="Path to YAML config")
        return sp

    _with_config(sub.add_parser("run", help="Run the engine"))

    sp = _with_config(sub.add_parser("schedule", help="Schedule an admin signal"))
    sp.add_argument("--pair", default=None)
    sp.add_argument("--direction", required=True, choices=[BUY, SELL])
    sp.add_argument("--at", required=True, help="Epoch ms, +seconds, or ISO time")
    sp.add_argument("--timeframe", type=int, default=None, help="Minutes")

    sp = _with_config(sub.add_parser("admin-list", help="List admin signals"))
    sp.add_argument("--delete", default=None, metavar="ID", help="Delete an admin signal instead")

    sp = _with_config(sub.add_parser("system", help="Show or toggle the system switch"))
    g = sp.add_mutually_exclusive_group()
    g.add_argument("--enable", action="store_true")
    g.add_argument("--disable", action="store_true")

    sp = _with_config(sub.add_parser("history", help="Show signal history"))
    sp.add_argument("--limit", type=int, default=50)
    sp.add_argument("--clear", action="store_true", help="Delete all signals")
    return p


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)

    try:
        cfg = load_config(args.config)
    except (OSError, ValueError) as e:
        print(f"config error: {e}", file=sys.stderr)
        return 1
    _setup_logging(cfg.app.log_level)

    try:
        if args.command == "run":
            return _cmd_run(cfg)
        if args.command == "schedule":
            return _cmd_schedule(cfg, args)
        if args.command == "admin-list":
            return _cmd_admin_list(cfg, args)
        if args.command == "system":
            return _cmd_system(cfg, args)
        if args.command == "history":
            return _cmd_history(cfg, args)
        return 1
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logging.getLogger("main").exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
