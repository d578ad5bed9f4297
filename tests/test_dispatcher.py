#!/usr/bin/env python
"""
Integration tests for StreamDispatcher chart routing over fake REST/websocket
"""
import asyncio
import sys
sys.path.insert(0, '.')

import pytest

from charts.chart_stream import ChartCallbacks
from ingest.errors import ExchangeError, TransportError, ValidationError
from orchestration.dispatcher import ChartOptions, StreamDispatcher
from tests.fakes import BASE_OPEN_TIME, MINUTE_MS, FakeRESTClient, FakeTransport, kline_event


def _dispatcher(**transport_kwargs):
    rest = FakeRESTClient()
    transport = FakeTransport(**transport_kwargs)
    return StreamDispatcher(rest=rest, transport=transport), rest, transport


def test_second_subscriber_shares_bootstrap_and_socket():
    async def _run():
        dispatcher, rest, transport = _dispatcher()

        first = await dispatcher.subscribe_chart('btcusdt', '1m')
        second = await dispatcher.subscribe_chart('BTCUSDT', '1m')

        assert len(rest.kline_calls) == 1
        assert len(transport.connections) == 1
        assert transport.last.url.endswith('btcusdt@kline_1m')
        assert first.subscription_id != second.subscription_id
        assert len(second.chart) == 10
        assert len(dispatcher.cache) == 1

        await dispatcher.close()

    asyncio.run(_run())


def test_concurrent_subscribers_share_one_creation():
    async def _run():
        dispatcher, rest, transport = _dispatcher()

        subscriptions = await asyncio.gather(*[
            dispatcher.subscribe_chart('BTCUSDT', '1m') for _ in range(4)
        ])

        assert len(rest.kline_calls) == 1
        assert len(transport.connections) == 1
        stream = dispatcher.cache.get('BTCUSDT', '1m')
        assert len(stream.subscribers) == 4
        assert len({s.subscription_id for s in subscriptions}) == 4

        await dispatcher.close()

    asyncio.run(_run())


def test_deltas_fan_out_to_every_subscriber():
    async def _run():
        dispatcher, _, transport = _dispatcher()
        seen_a, seen_b = [], []
        await dispatcher.subscribe_chart('BTCUSDT', '1m', callbacks=ChartCallbacks(on_update=seen_a.append))
        await dispatcher.subscribe_chart('BTCUSDT', '1m', callbacks=ChartCallbacks(on_update=seen_b.append))

        await transport.last.push(kline_event(BASE_OPEN_TIME + 10 * MINUTE_MS, 250.0, closed=False))

        assert len(seen_a) == 1 and len(seen_b) == 1
        assert seen_a[0].current_price == 250.0
        assert dispatcher.get_chart('BTCUSDT', '1m').current_price == 250.0

        await dispatcher.close()

    asyncio.run(_run())


def test_last_unsubscribe_tears_down_and_next_subscribe_rebootstraps():
    async def _run():
        dispatcher, rest, transport = _dispatcher()
        first = await dispatcher.subscribe_chart('BTCUSDT', '1m')
        second = await dispatcher.subscribe_chart('BTCUSDT', '1m')

        assert await dispatcher.unsubscribe_chart(first.subscription_id) is True
        assert transport.last.close_calls == 0

        assert await dispatcher.unsubscribe_chart(second.subscription_id) is True
        assert transport.last.close_calls == 1
        assert dispatcher.get_chart('BTCUSDT', '1m') is None
        assert len(dispatcher.cache) == 0
        assert await dispatcher.unsubscribe_chart(second.subscription_id) is False

        await dispatcher.subscribe_chart('BTCUSDT', '1m')
        assert len(rest.kline_calls) == 2
        assert len(transport.connections) == 2

        await dispatcher.close()

    asyncio.run(_run())


def test_bootstrap_failure_caches_nothing():
    async def _run():
        dispatcher, rest, transport = _dispatcher()
        rest.kline_error = ExchangeError(400, -1121, "Invalid symbol.")

        with pytest.raises(ExchangeError):
            await dispatcher.subscribe_chart('NOPEUSDT', '1m')

        assert len(dispatcher.cache) == 0
        assert transport.connections == []

        rest.kline_error = None
        subscription = await dispatcher.subscribe_chart('NOPEUSDT', '1m')
        assert len(subscription.chart) == 10

        await dispatcher.close()

    asyncio.run(_run())


def test_socket_open_failure_propagates():
    async def _run():
        dispatcher, _, transport = _dispatcher(fail_open=True)

        with pytest.raises(TransportError):
            await dispatcher.subscribe_chart('BTCUSDT', '1m')
        assert len(dispatcher.cache) == 0
        assert len(transport.connections) == 1

        await dispatcher.close()

    asyncio.run(_run())


def test_transport_close_notifies_subscribers_and_evicts():
    async def _run():
        dispatcher, _, transport = _dispatcher()
        closed = []
        await dispatcher.subscribe_chart('BTCUSDT', '1m', callbacks=ChartCallbacks(on_close=lambda: closed.append(1)))
        await dispatcher.subscribe_chart('BTCUSDT', '1m', callbacks=ChartCallbacks(on_close=lambda: closed.append(2)))

        await transport.last.drop()

        assert sorted(closed) == [1, 2]
        assert dispatcher.get_chart('BTCUSDT', '1m') is None
        assert dispatcher._subscriptions == {}

        await dispatcher.close()

    asyncio.run(_run())


def test_malformed_delta_reported_to_subscribers():
    async def _run():
        dispatcher, _, transport = _dispatcher()
        errors = []
        await dispatcher.subscribe_chart('BTCUSDT', '1m', callbacks=ChartCallbacks(on_error=errors.append))

        await transport.last.push({"e": "kline", "s": "BTCUSDT"})

        assert len(errors) == 1
        assert isinstance(errors[0], ValidationError)
        assert dispatcher.get_chart('BTCUSDT', '1m') is not None

        await dispatcher.close()

    asyncio.run(_run())


def test_chart_options_reach_bootstrap():
    async def _run():
        dispatcher, rest, _ = _dispatcher()
        options = ChartOptions(limit=5, start_time=BASE_OPEN_TIME)
        subscription = await dispatcher.subscribe_chart('ETHUSDT', '15m', options=options)

        call = rest.kline_calls[0]
        assert call['symbol'] == 'ETHUSDT'
        assert call['interval'] == '15m'
        assert call['limit'] == 5
        assert call['start_time'] == BASE_OPEN_TIME
        assert len(subscription.chart) == 5
        assert dispatcher.cache.get('ETHUSDT', '15m').limit == 5

        await dispatcher.close()

    asyncio.run(_run())


def test_close_shuts_everything_down():
    async def _run():
        dispatcher, rest, transport = _dispatcher()
        await dispatcher.subscribe_chart('BTCUSDT', '1m')
        await dispatcher.subscribe_chart('ETHUSDT', '1m')

        await dispatcher.close()

        assert len(dispatcher.cache) == 0
        assert all(conn.closed for conn in transport.connections)
        assert rest.closed

    asyncio.run(_run())


def test_bad_history_row_fails_bootstrap_cleanly():
    async def _run():
        dispatcher, rest, transport = _dispatcher()
        rest.rows[3][8] = 'many'

        with pytest.raises(ValidationError):
            await dispatcher.subscribe_chart('BTCUSDT', '1m')

        assert len(dispatcher.cache) == 0
        assert transport.connections == []

        await dispatcher.close()

    asyncio.run(_run())


def test_delta_with_bad_trade_count_reported_to_subscribers():
    async def _run():
        dispatcher, _, transport = _dispatcher()
        errors = []
        subscription = await dispatcher.subscribe_chart(
            'BTCUSDT', '1m', callbacks=ChartCallbacks(on_error=errors.append)
        )

        event = kline_event(BASE_OPEN_TIME + 10 * MINUTE_MS, 250.0, closed=True)
        event['k']['n'] = 'seven'
        await transport.last.push(event)

        assert len(errors) == 1
        assert isinstance(errors[0], ValidationError)
        chart = dispatcher.get_chart('BTCUSDT', '1m')
        assert chart.current_price == subscription.chart.current_price
        assert len(chart) == 10

        await dispatcher.close()

    asyncio.run(_run())


def test_close_notifies_remaining_subscribers():
    async def _run():
        dispatcher, _, transport = _dispatcher()
        closed = []
        await dispatcher.subscribe_chart('BTCUSDT', '1m', callbacks=ChartCallbacks(on_close=lambda: closed.append('btc')))
        await dispatcher.subscribe_chart('ETHUSDT', '1m', callbacks=ChartCallbacks(on_close=lambda: closed.append('eth')))

        await dispatcher.close()

        assert sorted(closed) == ['btc', 'eth']
        assert all(conn.close_calls == 1 for conn in transport.connections)

    asyncio.run(_run())


def test_cancelled_only_subscriber_leaves_no_stream_behind():
    async def _run():
        dispatcher, _, transport = _dispatcher(auto_open=False)
        subscriber = asyncio.create_task(dispatcher.subscribe_chart('BTCUSDT', '1m'))
        while not transport.connections:
            await asyncio.sleep(0)

        subscriber.cancel()
        with pytest.raises(asyncio.CancelledError):
            await subscriber
        assert dispatcher.cache.is_pending('BTCUSDT', '1m')

        connection = transport.last
        await connection.open()
        await asyncio.sleep(0.01)

        assert len(dispatcher.cache) == 0
        assert not dispatcher.cache.is_pending('BTCUSDT', '1m')
        assert connection.closed
        assert connection.close_calls == 1

        await dispatcher.close()

    asyncio.run(_run())


def test_cancelled_subscriber_leaves_shared_stream_to_others():
    async def _run():
        dispatcher, _, transport = _dispatcher(auto_open=False)
        first = asyncio.create_task(dispatcher.subscribe_chart('BTCUSDT', '1m'))
        second = asyncio.create_task(dispatcher.subscribe_chart('BTCUSDT', '1m'))
        while not transport.connections:
            await asyncio.sleep(0)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        await transport.last.open()
        subscription = await second
        await asyncio.sleep(0.01)

        stream = dispatcher.cache.get('BTCUSDT', '1m')
        assert stream is not None
        assert not stream.closed
        assert list(stream.subscribers) == [subscription.subscription_id]
        assert len(transport.connections) == 1
        assert not transport.last.closed

        await dispatcher.close()

    asyncio.run(_run())
