#!/usr/bin/env python
"""
Unit tests for ChartCache single-flight creation
"""
import asyncio
import sys
sys.path.insert(0, '.')

import pytest

from charts.chart_cache import ChartCache
from charts.chart_stream import ChartStream
from ingest.errors import ExchangeError


def test_concurrent_get_or_create_runs_factory_once():
    async def _run():
        cache = ChartCache()
        calls = []

        async def _factory():
            calls.append(1)
            await asyncio.sleep(0.01)
            return ChartStream('BTCUSDT', '1m', 10, cache=cache)

        streams = await asyncio.gather(*[
            cache.get_or_create('BTCUSDT', '1m', _factory) for _ in range(5)
        ])

        assert len(calls) == 1
        assert all(s is streams[0] for s in streams)
        assert len(cache) == 1
        assert not cache.is_pending('BTCUSDT', '1m')

    asyncio.run(_run())


def test_failed_creation_is_not_cached():
    async def _run():
        cache = ChartCache()

        async def _failing():
            raise ExchangeError(400, -1121, "Invalid symbol.")

        with pytest.raises(ExchangeError):
            await cache.get_or_create('NOPE', '1m', _failing)
        assert len(cache) == 0
        assert not cache.is_pending('NOPE', '1m')

        async def _factory():
            return ChartStream('NOPE', '1m', 5)

        stream = await cache.get_or_create('NOPE', '1m', _factory)
        assert cache.get('NOPE', '1m') is stream

    asyncio.run(_run())


def test_evict_only_removes_matching_stream():
    async def _run():
        cache = ChartCache()
        stream = await cache.get_or_create('BTCUSDT', '1m', lambda: _make('BTCUSDT'))
        stranger = ChartStream('BTCUSDT', '1m', 10)

        assert cache.evict('BTCUSDT', '1m', stranger) is False
        assert cache.get('BTCUSDT', '1m') is stream
        assert cache.evict('BTCUSDT', '1m', stream) is True
        assert cache.keys() == []
        assert cache.evict('BTCUSDT', '1m') is False

    async def _make(symbol):
        return ChartStream(symbol, '1m', 10)

    asyncio.run(_run())


def test_close_all_closes_every_stream():
    async def _run():
        cache = ChartCache()

        async def _make(symbol):
            return ChartStream(symbol, '1m', 10, cache=cache)

        first = await cache.get_or_create('BTCUSDT', '1m', lambda: _make('BTCUSDT'))
        second = await cache.get_or_create('ETHUSDT', '1m', lambda: _make('ETHUSDT'))
        await cache.close_all()

        assert first.closed and second.closed
        assert len(cache) == 0

    asyncio.run(_run())
