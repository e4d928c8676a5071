"""
Tests for the ranged log fetcher.

Tests:
- Window splitting and coverage
- Sequential fetch with per-window failure tolerance
- Progress reporting
- Log normalization
"""

import pytest

from tippulse.fetcher import LogFetcher, normalize_log, normalize_logs, split_windows
from tippulse.rpc import EndpointClient, GenericRPCError, IndexingInProgress, RangeLimitExceeded

from tests.fakes import SENDER_1, TOKEN_A, FakeEndpoint, make_log


class TestSplitWindows:
    def test_single_height_range(self):
        assert split_windows(100, 100, 5000) == [(100, 100)]

    def test_uneven_tail_window(self):
        assert split_windows(1, 12000, 5000) == [(1, 5000), (5001, 10000), (10001, 12000)]

    def test_exact_multiple(self):
        assert split_windows(0, 9999, 5000) == [(0, 4999), (5000, 9999)]

    def test_empty_when_inverted(self):
        assert split_windows(10, 9, 5000) == []

    def test_rejects_non_positive_chunk(self):
        with pytest.raises(ValueError):
            split_windows(1, 10, 0)

    @pytest.mark.parametrize("start,end,chunk", [(0, 0, 1), (5, 17, 3), (1, 10_000, 7), (42, 1_000, 1000), (3, 4, 5000)])
    def test_windows_cover_range_without_gaps_or_overlaps(self, start, end, chunk):
        windows = split_windows(start, end, chunk)
        assert windows[0][0] == start
        assert windows[-1][1] == end
        for (a0, a1), (b0, _) in zip(windows, windows[1:]):
            assert b0 == a1 + 1
        assert all(1 <= w[1] - w[0] + 1 <= chunk for w in windows)
        assert sum(w[1] - w[0] + 1 for w in windows) == end - start + 1


class TestFetchLogs:
    @pytest.mark.asyncio
    async def test_windows_fetched_in_ascending_order(self):
        ep = FakeEndpoint(logs=[make_log(TOKEN_A, SENDER_1, 5, 7), make_log(TOKEN_A, SENDER_1, 6, 2)])
        fetcher = LogFetcher(ep, chunk_blocks=5, window_delay_ms=0)

        report = await fetcher.fetch_logs(TOKEN_A, 1, 12)

        assert [c[1:] for c in ep.log_calls] == [(1, 5), (6, 10), (11, 12)]
        assert [int(x["blockNumber"], 16) for x in report.logs] == [2, 7]
        assert report.windows == 3
        assert not report.failed

    @pytest.mark.asyncio
    async def test_failed_window_is_skipped(self):
        ep = FakeEndpoint(logs=[make_log(TOKEN_A, SENDER_1, 5, 2), make_log(TOKEN_A, SENDER_1, 6, 8)])
        ep.window_errors[(1, 5)] = RangeLimitExceeded("10 block range")
        fetcher = LogFetcher(ep, chunk_blocks=5, window_delay_ms=0)

        report = await fetcher.fetch_logs(TOKEN_A, 1, 10)

        assert len(ep.log_calls) == 2
        assert [int(x["blockNumber"], 16) for x in report.logs] == [8]
        assert report.failed == [(1, 5)]
        assert not report.all_failed

    @pytest.mark.asyncio
    async def test_indexing_window_is_not_a_failure(self):
        ep = FakeEndpoint(logs=[make_log(TOKEN_A, SENDER_1, 5, 8)])
        ep.window_errors[(1, 5)] = IndexingInProgress("not fully indexed")
        fetcher = LogFetcher(ep, chunk_blocks=5, window_delay_ms=0)

        report = await fetcher.fetch_logs(TOKEN_A, 1, 10)

        assert report.indexing == [(1, 5)]
        assert report.failed == []
        assert not report.all_failed
        assert len(report.logs) == 1

    @pytest.mark.asyncio
    async def test_all_windows_failed(self):
        ep = FakeEndpoint()
        ep.fail_all_windows = GenericRPCError("boom")
        fetcher = LogFetcher(ep, chunk_blocks=5, window_delay_ms=0)

        report = await fetcher.fetch_logs(TOKEN_A, 1, 10)

        assert report.all_failed
        assert report.logs == []

    @pytest.mark.asyncio
    async def test_progress_reported_after_every_window(self):
        ep = FakeEndpoint()
        ep.window_errors[(5, 8)] = GenericRPCError("boom")
        fetcher = LogFetcher(ep, chunk_blocks=4, window_delay_ms=0)
        seen = []

        await fetcher.fetch_logs(TOKEN_A, 1, 12, on_progress=seen.append)

        assert seen == [33, 67, 100]


class TestNormalizeLog:
    def test_decodes_sender_amount_height(self):
        big = 123456789012345678901234567890
        ev = normalize_log(make_log(TOKEN_A, SENDER_1, big, 0x1234, tx="0xABCDEF", log_index=3), "NHT")

        assert ev.sender == SENDER_1
        assert ev.amount == big
        assert ev.block_height == 0x1234
        assert ev.tx_ref == "0xabcdef"
        assert ev.log_index == 3
        assert ev.asset_kind == "NHT"
        assert ev.timestamp is None

    def test_drops_log_without_sender_topic(self):
        lg = make_log(TOKEN_A, SENDER_1, 1, 1)
        lg["topics"] = lg["topics"][:1]
        assert normalize_log(lg, "NHT") is None

    def test_normalize_logs_skips_bad_entries(self):
        bad = make_log(TOKEN_A, SENDER_1, 1, 1)
        bad["data"] = "0xzz"
        good = make_log(TOKEN_A, SENDER_1, 2, 2)
        events = normalize_logs([bad, good], "NHT")
        assert [e.amount for e in events] == [2]

    def test_drops_log_with_null_sender_topic(self):
        lg = make_log(TOKEN_A, SENDER_1, 1, 1)
        lg["topics"] = [lg["topics"][0], None]
        assert normalize_log(lg, "NHT") is None

    def test_drops_non_object_log(self):
        assert normalize_log("blockNumber", "NHT") is None
        assert normalize_log({"topics": 5, "blockNumber": "0x1"}, "NHT") is None


class ReplayClient:
    """Endpoint candidate returning canned eth_getLogs results in order."""

    url = "replay"

    def __init__(self, results):
        self.results = list(results)

    async def call(self, method, params):
        return self.results.pop(0)


class TestMalformedResults:
    @pytest.mark.asyncio
    async def test_non_list_window_result_is_skipped(self):
        good = make_log(TOKEN_A, SENDER_1, 5, 8)
        endpoint = EndpointClient([ReplayClient([{"blockNumber": "0x2"}, [good]])])
        fetcher = LogFetcher(endpoint, chunk_blocks=5, window_delay_ms=0)

        report = await fetcher.fetch_logs(TOKEN_A, 1, 10)

        assert report.failed == [(1, 5)]
        assert report.logs == [good]
        assert [e.amount for e in normalize_logs(report.logs, "NHT")] == [5]
