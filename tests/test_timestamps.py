import asyncio

import pytest

from tippulse.timestamps import TIME_UNAVAILABLE, TimestampCache, TimestampResolver

from tests.fakes import FakeEndpoint


class TestTimestampCache:
    def test_write_once(self):
        cache = TimestampCache()
        assert cache.put(10, 1000)
        assert not cache.put(10, 2000)
        assert cache.get(10) == 1000

    def test_missing_is_sorted_and_unique(self):
        cache = TimestampCache()
        cache.put(2, 1)
        assert cache.missing([5, 2, 3, 5]) == [3, 5]

    def test_unavailable_marker(self):
        cache = TimestampCache()
        cache.put(1, TIME_UNAVAILABLE)
        assert 1 in cache
        assert cache.is_unavailable(1)
        assert not cache.is_unavailable(2)


class TestTimestampResolver:
    @pytest.mark.asyncio
    async def test_resolves_each_height_once(self):
        ep = FakeEndpoint()
        resolver = TimestampResolver(ep, batch_delay_ms=0)

        first = await resolver.resolve([3, 1, 2])
        second = await resolver.resolve([1, 2, 3, 4])

        assert first == {1: 1_700_000_002, 2: 1_700_000_004, 3: 1_700_000_006}
        assert second[4] == 1_700_000_008
        assert sorted(ep.block_calls) == [1, 2, 3, 4]
        assert resolver.lookup(2) == 1_700_000_004

    @pytest.mark.asyncio
    async def test_batches_of_configured_size(self):
        ep = FakeEndpoint()
        resolver = TimestampResolver(ep, batch_size=10, batch_delay_ms=0)

        result = await resolver.resolve(range(1, 24))

        assert len(result) == 23
        assert len(ep.block_calls) == 23
        # batches are issued in ascending height order
        assert sorted(ep.block_calls[:10]) == list(range(1, 11))
        assert sorted(ep.block_calls[20:]) == [21, 22, 23]

    @pytest.mark.asyncio
    async def test_failed_lookup_gets_sentinel_and_is_not_retried(self):
        ep = FakeEndpoint()
        ep.bad_blocks.add(5)
        resolver = TimestampResolver(ep, batch_delay_ms=0)

        result = await resolver.resolve([4, 5])
        assert result[5] == TIME_UNAVAILABLE
        assert result[4] == 1_700_000_008

        await resolver.resolve([5])
        assert ep.block_calls.count(5) == 1

    @pytest.mark.asyncio
    async def test_malformed_block_does_not_block_batch(self):
        ep = FakeEndpoint()
        ep.block_errors[150] = ValueError("invalid literal for int() with base 16")
        ep.block_errors[151] = AttributeError("'str' object has no attribute 'get'")
        resolver = TimestampResolver(ep, batch_delay_ms=0)

        result = await resolver.resolve([150, 151, 160])
        assert result == {150: TIME_UNAVAILABLE, 151: TIME_UNAVAILABLE, 160: 1_700_000_320}

        await resolver.resolve([150, 151, 160])
        assert sorted(ep.block_calls) == [150, 151, 160]

    @pytest.mark.asyncio
    async def test_concurrent_resolves_do_not_duplicate_lookups(self):
        ep = FakeEndpoint()
        resolver = TimestampResolver(ep, batch_delay_ms=0)

        await asyncio.gather(resolver.resolve([1, 2, 3]), resolver.resolve([2, 3, 4]))

        assert sorted(ep.block_calls) == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_shared_cache(self):
        cache = TimestampCache()
        cache.put(9, 123)
        ep = FakeEndpoint()
        resolver = TimestampResolver(ep, cache=cache)

        assert await resolver.resolve([9]) == {9: 123}
        assert ep.block_calls == []

    def test_rejects_bad_batch_size(self):
        with pytest.raises(ValueError):
            TimestampResolver(FakeEndpoint(), batch_size=0)
