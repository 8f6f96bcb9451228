import asyncio

import pytest

from signal_lifecycle.models import BUY, EXECUTED, EXPIRED, LOSS, PENDING, WIN
from signal_lifecycle.repository import SignalRepository
from signal_lifecycle.system import SystemSwitch

from fakes import START_MS, make_signal


def test_result_is_written_once():
    async def _run():
        repo = SignalRepository.open(":memory:")
        sig = make_signal()
        await repo.create_signal(sig)

        first = await repo.update_signal_result(sig.id, WIN, 0.25, entry_price=50001.0)
        second = await repo.update_signal_result(sig.id, LOSS, 3.0, entry_price=1.0)

        assert first.result == WIN
        assert second.result == WIN
        assert second.profit_loss == pytest.approx(0.25)
        assert second.entry_price == pytest.approx(50001.0)
        assert await repo.get_pending_signals() == []
        repo.close()

    asyncio.run(_run())


def test_create_signal_is_idempotent_and_validates():
    async def _run():
        repo = SignalRepository.open(":memory:")
        sig = make_signal(id="x")
        await repo.create_signal(sig)
        again = await repo.create_signal(make_signal(id="x", entry_price=1.0))

        assert again.entry_price == pytest.approx(50000.0)
        assert len(await repo.get_all_signals()) == 1
        with pytest.raises(ValueError):
            await repo.create_signal(make_signal(id=""))
        repo.close()

    asyncio.run(_run())


def test_signals_round_trip_factors_and_ordering():
    async def _run():
        repo = SignalRepository.open(":memory:")
        old = make_signal(id="old", created_at_ms=START_MS)
        new = make_signal(id="new", created_at_ms=START_MS + 1_000)
        await repo.create_signal(old)
        await repo.create_signal(new)

        signals = await repo.get_all_signals()
        assert [s.id for s in signals] == ["new", "old"]
        assert signals[0].direction == BUY

        await repo.clear_signal_history()
        assert await repo.get_all_signals() == []
        repo.close()

    asyncio.run(_run())


def test_admin_status_moves_forward_only():
    async def _run():
        repo = SignalRepository.open(":memory:")
        events = []
        repo.subscribe_admin_signals(events.append)

        admin = await repo.create_admin_signal("BTC/USDT", BUY, START_MS, 1)
        assert await repo.mark_admin_signal_executed(admin.id)
        assert not await repo.mark_admin_signal_expired(admin.id)
        assert not await repo.mark_admin_signal_executed(admin.id)

        assert (await repo.get_admin_signal(admin.id)).status == EXECUTED
        assert [e.op for e in events] == ["INSERT", "UPDATE"]
        assert events[1].old.status == PENDING
        assert events[1].new.status == EXECUTED
        repo.close()

    asyncio.run(_run())


def test_admin_window_query():
    async def _run():
        repo = SignalRepository.open(":memory:")
        inside = await repo.create_admin_signal("BTC/USDT", BUY, START_MS + 10_000, 1)
        await repo.create_admin_signal("BTC/USDT", BUY, START_MS + 500_000, 1)
        gone = await repo.create_admin_signal("BTC/USDT", BUY, START_MS + 20_000, 1)
        await repo.mark_admin_signal_expired(gone.id)

        rows = await repo.get_admin_signals(start_ms=START_MS, end_ms=START_MS + 180_000)
        assert [r.id for r in rows] == [inside.id]

        expired = await repo.get_admin_signals(status=EXPIRED)
        assert [r.id for r in expired] == [gone.id]

        assert await repo.delete_admin_signal(inside.id)
        assert not await repo.delete_admin_signal(inside.id)
        assert len(await repo.list_admin_signals()) == 2
        repo.close()

    asyncio.run(_run())


def test_system_switch_defaults_on_and_notifies():
    async def _run():
        repo = SignalRepository.open(":memory:")
        switch = SystemSwitch(repo)
        seen = []
        switch.subscribe(seen.append)

        assert await switch.is_enabled()
        assert await switch.set_enabled(False)
        assert not await switch.is_enabled()
        assert seen == [False]
        assert switch.last_known is False

        await repo.set_setting("other", {"x": 1})
        assert seen == [False]
        assert await repo.get_setting("other") == {"x": 1}
        switch.close()
        repo.close()

    asyncio.run(_run())


def test_system_switch_read_failure_counts_as_enabled(monkeypatch):
    async def _run():
        repo = SignalRepository.open(":memory:")
        switch = SystemSwitch(repo)

        async def _broken(key, default=None):
            raise RuntimeError("db gone")

        monkeypatch.setattr(repo, "get_setting", _broken)
        assert await switch.is_enabled()
        switch.close()
        repo.close()

    asyncio.run(_run())
