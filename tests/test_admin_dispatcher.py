import asyncio

from signal_lifecycle.models import EXECUTED, EXPIRED, PENDING, SELL, AdminSignal, AdminSignalEvent

from fakes import START_MS, FakeClock, Harness, settle


def _harness(**kw):
    h = Harness(clock=FakeClock(auto_advance=False), **kw)
    h.activated = []
    h.dispatcher.gate = lambda: True
    h.dispatcher.activate = h.activated.append
    return h


def _admin(offset_ms: int, *, id: str = "adm-1", pair: str = "BTC/USDT", status: str = PENDING) -> AdminSignal:
    return AdminSignal(
        id=id,
        pair=pair,
        direction=SELL,
        scheduled_time_ms=START_MS + offset_ms,
        timeframe=1,
        status=status,
    )


def test_execution_window_boundaries():
    h = _harness()
    d = h.dispatcher
    now = START_MS

    assert d.is_executable(_admin(90_000), now)
    assert not d.is_executable(_admin(91_000), now)
    assert d.is_executable(_admin(70_000), now)
    assert d.is_executable(_admin(-59_999), now)
    assert not d.is_executable(_admin(-60_000), now)
    assert d.is_expired(_admin(-60_000), now)
    assert not d.is_expired(_admin(-59_999), now)
    assert d.is_lookahead(_admin(150_000), now)
    assert not d.is_lookahead(_admin(90_000), now)
    h.close()


def test_find_eligible_window_and_pair():
    async def _run():
        h = _harness()
        repo = h.repo
        await repo.create_admin_signal("BTC/USDT", SELL, START_MS + 200_000, 1)
        assert await h.dispatcher.find_eligible() is None

        await repo.create_admin_signal("ETH/USDT", SELL, START_MS + 30_000, 1)
        assert await h.dispatcher.find_eligible() is None

        late = await repo.create_admin_signal("btc/usd", SELL, START_MS + 170_000, 1)
        early = await repo.create_admin_signal("BTC/USDT", SELL, START_MS + 40_000, 1)
        found = await h.dispatcher.find_eligible()
        assert found.id == early.id

        await h.dispatcher.materialize(found)
        found = await h.dispatcher.find_eligible()
        assert found.id == late.id
        h.close()

    asyncio.run(_run())


def test_executable_admin_signal_materializes():
    async def _run():
        h = _harness()
        admin = await h.repo.create_admin_signal("BTC/USDT", SELL, START_MS + 70_000, 1)

        sig = await h.dispatcher.offer(admin, "test")

        assert sig is not None
        assert sig.entry_time_ms == admin.scheduled_time_ms
        assert sig.confidence == 99.0
        assert sig.direction == SELL
        assert sig.source == "admin"
        assert sig.admin_signal_id == admin.id
        assert sig.entry_price == 50010.0
        assert (await h.repo.get_admin_signal(admin.id)).status == EXECUTED
        assert (await h.repo.get_signal_by_id(sig.id)) is not None
        assert h.store.get_current().id == sig.id
        assert h.activated == [sig]
        assert [s.id for s in h.opened] == [sig.id]
        h.close()

    asyncio.run(_run())


def test_signal_past_expiry_is_marked_expired():
    async def _run():
        h = _harness()
        admin = await h.repo.create_admin_signal("BTC/USDT", SELL, START_MS - 61_000, 1)

        assert await h.dispatcher.offer(admin, "test") is None

        assert (await h.repo.get_admin_signal(admin.id)).status == EXPIRED
        assert await h.repo.get_all_signals() == []
        assert h.activated == []
        h.close()

    asyncio.run(_run())


def test_push_and_poll_materialize_once():
    async def _run():
        h = _harness()
        admin = await h.repo.create_admin_signal("BTC/USDT", SELL, START_MS + 60_000, 1)
        evt = AdminSignalEvent(op="INSERT", new=admin)

        results = await asyncio.gather(
            h.dispatcher.handle_event(evt),
            h.dispatcher.poll_once(),
            h.dispatcher.handle_event(evt),
        )

        assert len([r for r in results if r is not None]) == 1
        assert len(await h.repo.get_all_signals()) == 1
        assert len(h.activated) == 1
        assert h.dispatcher.is_consumed(admin.id)
        h.close()

    asyncio.run(_run())


def test_push_subscription_delivers_insert():
    async def _run():
        h = _harness()
        h.repo.subscribe_admin_signals(h.controller.on_push)

        await h.repo.create_admin_signal("BTC/USDT", SELL, START_MS + 30_000, 1)
        await settle()

        assert len(h.activated) == 1
        h.close()

    asyncio.run(_run())


def test_lookahead_signal_waits_for_window():
    async def _run():
        h = _harness()
        admin = await h.repo.create_admin_signal("BTC/USDT", SELL, START_MS + 150_000, 1)

        assert await h.dispatcher.offer(admin, "test") is None
        assert h.dispatcher.waiting_for.id == admin.id
        timers = h.clock.pending_timers()
        assert [t.due_ms for t in timers] == [START_MS + 60_000]

        await h.clock.advance(59)
        assert h.activated == []

        await h.clock.advance(1)
        assert len(h.activated) == 1
        assert h.dispatcher.waiting_for is None
        assert (await h.repo.get_admin_signal(admin.id)).status == EXECUTED
        h.close()

    asyncio.run(_run())


def test_update_into_pending_only():
    async def _run():
        h = _harness()
        pending = _admin(30_000)
        executed = _admin(30_000, status=EXECUTED)

        assert await h.dispatcher.handle_event(AdminSignalEvent("UPDATE", new=pending, old=pending)) is None
        assert await h.dispatcher.handle_event(AdminSignalEvent("UPDATE", new=executed, old=pending)) is None
        assert h.activated == []
        h.close()

    asyncio.run(_run())


def test_other_pair_and_closed_gate_are_ignored():
    async def _run():
        h = _harness()
        eth = await h.repo.create_admin_signal("ETH/USDT", SELL, START_MS + 30_000, 1)
        assert await h.dispatcher.offer(eth, "test") is None

        btc = await h.repo.create_admin_signal("BTC/USDT", SELL, START_MS + 30_000, 1)
        h.dispatcher.gate = lambda: False
        assert await h.dispatcher.offer(btc, "test") is None
        assert await h.dispatcher.poll_once() is None
        assert not h.dispatcher.is_consumed(btc.id)
        assert h.activated == []
        h.close()

    asyncio.run(_run())


def test_failed_creation_releases_admin_signal(monkeypatch):
    async def _run():
        h = _harness()
        admin = await h.repo.create_admin_signal("BTC/USDT", SELL, START_MS + 30_000, 1)

        async def _boom(signal):
            raise RuntimeError("db locked")

        monkeypatch.setattr(h.repo, "create_signal", _boom)
        assert await h.dispatcher.offer(admin, "test") is None
        assert not h.dispatcher.is_consumed(admin.id)
        assert (await h.repo.get_admin_signal(admin.id)).status == PENDING

        monkeypatch.undo()
        assert await h.dispatcher.offer(admin, "retry") is not None
        h.close()

    asyncio.run(_run())


def test_reference_price_falls_back_to_zero():
    async def _run():
        h = _harness()
        h.candles.error = RuntimeError("klines down")
        admin = await h.repo.create_admin_signal("BTC/USDT", SELL, START_MS + 30_000, 1)

        sig = await h.dispatcher.offer(admin, "test")

        assert sig.entry_price == 0.0
        h.close()

    asyncio.run(_run())


def test_signal_91s_out_executes_one_second_later():
    async def _run():
        h = _harness()
        admin = await h.repo.create_admin_signal("BTC/USDT", SELL, START_MS + 91_000, 1)

        assert await h.dispatcher.offer(admin, "test") is None
        assert h.activated == []

        await h.clock.advance(1)

        assert len(h.activated) == 1
        assert h.activated[0].entry_time_ms == START_MS + 91_000
        h.close()

    asyncio.run(_run())


def test_poll_expires_missed_signals_while_gate_closed():
    async def _run():
        h = _harness()
        h.dispatcher.gate = lambda: False
        missed = await h.repo.create_admin_signal("BTC/USDT", SELL, START_MS - 120_000, 1)
        edge = await h.repo.create_admin_signal("BTC/USDT", SELL, START_MS - 60_000, 1)
        live = await h.repo.create_admin_signal("BTC/USDT", SELL, START_MS - 59_000, 1)

        assert await h.dispatcher.poll_once() is None

        assert (await h.repo.get_admin_signal(missed.id)).status == EXPIRED
        assert (await h.repo.get_admin_signal(edge.id)).status == EXPIRED
        assert (await h.repo.get_admin_signal(live.id)).status == PENDING
        assert await h.dispatcher.expire_missed() == 0
        assert h.activated == []
        h.close()

    asyncio.run(_run())


def test_second_admin_signal_waits_while_first_is_opening():
    async def _run():
        h = _harness()
        h.candles.hold = asyncio.Event()
        first = await h.repo.create_admin_signal("BTC/USDT", SELL, START_MS + 20_000, 1)
        second = await h.repo.create_admin_signal("BTC/USDT", SELL, START_MS + 40_000, 1)

        opening = asyncio.ensure_future(h.dispatcher.handle_event(AdminSignalEvent("INSERT", new=first)))
        await settle()
        assert h.dispatcher.opening

        assert await h.dispatcher.handle_event(AdminSignalEvent("INSERT", new=second)) is None
        assert not h.dispatcher.is_consumed(second.id)

        h.candles.hold.set()
        sig = await opening

        assert sig.admin_signal_id == first.id
        assert await h.dispatcher.offer(second, "poll") is None
        assert (await h.repo.get_admin_signal(second.id)).status == PENDING
        assert len(h.activated) == 1
        h.close()

    asyncio.run(_run())
