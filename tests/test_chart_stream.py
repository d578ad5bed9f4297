#!/usr/bin/env python
"""
Unit tests for ChartStream merge semantics
"""
import asyncio
import sys
sys.path.insert(0, '.')

import pytest

from charts.candles import candles_from_rest
from charts.chart_cache import ChartCache
from charts.chart_stream import ChartCallbacks, ChartStream
from ingest.errors import TransportError, ValidationError
from tests.fakes import BASE_OPEN_TIME, MINUTE_MS, FakeConnection, kline_event, kline_rows


def _stream(count=10, limit=10, accumulate=False, **kwargs):
    history = candles_from_rest('BTCUSDT', '1m', kline_rows(count))
    return ChartStream('BTCUSDT', '1m', limit, bootstrap=history, accumulate=accumulate, **kwargs)


def _open_time(index):
    return BASE_OPEN_TIME + index * MINUTE_MS


def test_bootstrap_keeps_only_closed_candles():
    rows = kline_rows(5)
    history = candles_from_rest('BTCUSDT', '1m', rows, now_ms=rows[-1][6] - 1)
    stream = ChartStream('BTCUSDT', '1m', 10, bootstrap=history)

    assert len(stream.candles) == 4
    assert stream.last_closed.open_time == _open_time(3)
    assert stream.current_stream is None


def test_bootstrap_trimmed_to_limit():
    stream = _stream(count=12, limit=10)
    assert len(stream.candles) == 10
    assert stream.candles.peekitem(0)[0] == _open_time(2)


def test_invalid_limit_rejected():
    with pytest.raises(ValueError):
        ChartStream('BTCUSDT', '1m', 0)


def test_live_scenario_three_open_then_closed():
    async def _run():
        stream = _stream()
        updates = []
        stream.subscribe(ChartCallbacks(on_update=updates.append))

        next_open = _open_time(10)
        for price in (200.0, 201.0, 202.0):
            await stream.apply_update(kline_event(next_open, price, closed=False))
            assert len(stream.candles) == 10
            assert stream.current_price == price
        await stream.apply_update(kline_event(next_open, 203.0, closed=True))

        assert len(stream.candles) == 10
        assert stream.last_closed.open_time == next_open
        assert stream.last_closed.close == 203.0
        assert stream.current_price == 203.0
        assert stream.candles.peekitem(0)[0] == _open_time(1)
        assert len(updates) == 4
        assert updates[-1].current_price == 203.0

    asyncio.run(_run())


def test_upsert_is_idempotent_per_open_time():
    async def _run():
        stream = _stream()
        target = _open_time(5)

        await stream.apply_update(kline_event(target, 500.0, closed=True))
        await stream.apply_update(kline_event(target, 500.0, closed=True))
        assert len(stream.candles) == 10
        assert stream.candles[target].close == 500.0

        # Out-of-order retransmission of an older bar overwrites in place
        await stream.apply_update(kline_event(_open_time(2), 321.0, closed=True))
        assert len(stream.candles) == 10
        assert stream.candles[_open_time(2)].close == 321.0
        assert list(stream.candles.keys()) == sorted(stream.candles.keys())

    asyncio.run(_run())


def test_unclosed_delta_does_not_enter_window():
    async def _run():
        stream = _stream()
        await stream.apply_update(kline_event(_open_time(10), 150.0, closed=False))

        assert _open_time(10) not in stream.candles
        snapshot = stream.snapshot()
        assert len(snapshot) == 11
        assert snapshot.candles[0].open_time == _open_time(10)
        assert snapshot.candles[0].closed is False
        assert snapshot.last_closed.open_time == _open_time(9)

    asyncio.run(_run())


def test_limit_bounds_window():
    async def _run():
        stream = _stream(limit=10)
        for i in range(10, 25):
            await stream.apply_update(kline_event(_open_time(i), 100.0 + i, closed=True))
            assert len(stream.candles) <= 10
        assert stream.candles.peekitem(0)[0] == _open_time(15)

    asyncio.run(_run())


def test_accumulate_grows_without_eviction():
    async def _run():
        stream = _stream(limit=10, accumulate=True)
        for i in range(10, 15):
            await stream.apply_update(kline_event(_open_time(i), 100.0 + i, closed=True))
        assert len(stream.candles) == 15
        assert stream.candles.peekitem(0)[0] == _open_time(0)

    asyncio.run(_run())


def test_snapshot_newest_first():
    stream = _stream(count=5)
    snapshot = stream.snapshot()
    times = [c.open_time for c in snapshot.candles]
    assert times == sorted(times, reverse=True)
    assert snapshot.last_closed.open_time == times[0]
    assert snapshot.current_price == snapshot.last_closed.close


def test_malformed_delta_leaves_state_untouched():
    async def _run():
        stream = _stream()
        before = list(stream.candles.items())
        with pytest.raises(ValidationError):
            await stream.apply_update({"e": "kline", "s": "BTCUSDT"})
        assert list(stream.candles.items()) == before
        assert stream.current_stream is None

    asyncio.run(_run())


def test_subscribe_returns_snapshot_without_update():
    stream = _stream()
    updates = []
    subscription = stream.subscribe(ChartCallbacks(on_update=updates.append))

    assert subscription.symbol == 'BTCUSDT'
    assert len(subscription.chart) == 10
    assert updates == []
    assert subscription.subscription_id in stream.subscribers


def test_failing_subscriber_does_not_block_others():
    async def _run():
        stream = _stream()
        seen = []

        def _broken(snapshot):
            raise RuntimeError("subscriber bug")

        stream.subscribe(ChartCallbacks(on_update=_broken))
        stream.subscribe(ChartCallbacks(on_update=seen.append))
        await stream.apply_update(kline_event(_open_time(10), 1.0, closed=False))
        assert len(seen) == 1

    asyncio.run(_run())


def test_last_unsubscribe_closes_and_evicts():
    async def _run():
        cache = ChartCache()
        connection = FakeConnection('wss://stream.test/ws/btcusdt@kline_1m')
        connection.opened = True

        async def _factory():
            return _stream(connection=connection, cache=cache)

        stream = await cache.get_or_create('BTCUSDT', '1m', _factory)
        first = stream.subscribe()
        second = stream.subscribe()

        assert await stream.unsubscribe(first.subscription_id) is True
        assert not stream.closed
        assert ('BTCUSDT', '1m') in cache

        assert await stream.unsubscribe(second.subscription_id) is True
        assert stream.closed
        assert connection.close_calls == 1
        assert ('BTCUSDT', '1m') not in cache

        assert await stream.unsubscribe(second.subscription_id) is False
        with pytest.raises(TransportError):
            stream.subscribe()

    asyncio.run(_run())


def test_transport_close_fans_out_once():
    async def _run():
        stream = _stream()
        closes = []
        stream.subscribe(ChartCallbacks(on_close=lambda: closes.append('a')))
        stream.subscribe(ChartCallbacks(on_close=lambda: closes.append('b')))

        await stream.handle_transport_close()
        await stream.handle_transport_close()

        assert sorted(closes) == ['a', 'b']
        assert stream.closed
        assert stream.subscribers == {}

    asyncio.run(_run())


def test_close_notifies_attached_subscribers_once():
    async def _run():
        connection = FakeConnection('wss://stream.test/ws/btcusdt@kline_1m')
        connection.opened = True
        stream = _stream(connection=connection)
        closes = []
        stream.subscribe(ChartCallbacks(on_close=lambda: closes.append('a')))
        stream.subscribe(ChartCallbacks(on_close=lambda: closes.append('b')))

        await stream.close()
        await stream.close()
        # The socket's own close event must not notify a second time
        await stream.handle_transport_close()

        assert sorted(closes) == ['a', 'b']
        assert stream.subscribers == {}
        assert connection.close_calls == 1

    asyncio.run(_run())
