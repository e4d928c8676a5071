"""
Sync controller.

Owns the authoritative event list (newest block first) and the sync cursor.
A full fetch replaces the list for a period; ticks merge deltas on top of it.
Every commit is guarded by a generation counter so that a fetch started for
an older period can never overwrite the state of a newer one.
"""

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from tippulse.config import DEFAULT_ALL_LOOKBACK_CAP, DEFAULT_LOOKBACK_BLOCKS, AssetConfig
from tippulse.fetcher import FetchReport, LogFetcher, normalize_logs
from tippulse.models import Event, validate_period
from tippulse.rpc import EndpointClient
from tippulse.timestamps import TimestampResolver

logger = logging.getLogger(__name__)


class FetchFailed(Exception):
    pass


class SyncState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    REFRESHING = "refreshing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncSnapshot:
    period: Optional[str]
    events: Tuple[Event, ...]
    cursor: Optional[int]
    is_loading: bool
    is_refreshing: bool
    progress_percent: int
    last_error: Optional[str]
    state: SyncState
    generation: int
    updated_at: int

    def to_dict(self, include_events: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "period": self.period,
            "eventCount": len(self.events),
            "cursor": self.cursor,
            "isLoading": self.is_loading,
            "isRefreshing": self.is_refreshing,
            "progressPercent": self.progress_percent,
            "lastError": self.last_error,
            "state": self.state.value,
            "generation": self.generation,
            "updatedAt": self.updated_at,
        }
        if include_events:
            out["events"] = [e.to_dict() for e in self.events]
        return out


def sort_events(events: Iterable[Event]) -> List[Event]:
    # stable: ties keep arrival order
    return sorted(events, key=lambda e: e.block_height, reverse=True)


def drop_known(events: Iterable[Event], known: Set[Tuple[str, Optional[int]]]) -> List[Event]:
    out: List[Event] = []
    for e in events:
        key = e.dedupe_key
        if key in known:
            continue
        known.add(key)
        out.append(e)
    return out


class SyncController:
    def __init__(
        self,
        endpoint: EndpointClient,
        fetcher: LogFetcher,
        resolver: TimestampResolver,
        assets: List[AssetConfig],
        lookback_blocks: Optional[Dict[str, int]] = None,
        all_lookback_cap: int = DEFAULT_ALL_LOOKBACK_CAP,
        dedupe_by_tx: bool = False,
    ):
        if not assets:
            raise ValueError("at least one asset source is required")
        self.endpoint = endpoint
        self.fetcher = fetcher
        self.resolver = resolver
        self.assets = list(assets)
        self.lookback_blocks = dict(lookback_blocks or DEFAULT_LOOKBACK_BLOCKS)
        self.all_lookback_cap = all_lookback_cap
        self.dedupe_by_tx = dedupe_by_tx

        self._events: Tuple[Event, ...] = ()
        self._cursor: Optional[int] = None
        self._period: Optional[str] = None
        self._generation = 0
        self._loading = False
        self._refreshing = False
        self._progress = 0
        self._last_error: Optional[str] = None
        self._full_failed = False
        self._updated_at = 0
        self._load_task: Optional[asyncio.Task] = None

    @property
    def events(self) -> Tuple[Event, ...]:
        return self._events

    @property
    def cursor(self) -> Optional[int]:
        return self._cursor

    @property
    def period(self) -> Optional[str]:
        return self._period

    @property
    def generation(self) -> int:
        return self._generation

    def lookback_for(self, period: str) -> int:
        if period == "all":
            return self.all_lookback_cap
        return min(self.lookback_blocks[period], self.all_lookback_cap)

    def from_height_for(self, period: str, head: int) -> int:
        return max(0, head - self.lookback_for(period))

    def snapshot(self) -> SyncSnapshot:
        if self._loading:
            state = SyncState.LOADING
        elif self._refreshing:
            state = SyncState.REFRESHING
        elif self._full_failed:
            state = SyncState.FAILED
        elif self._cursor is not None:
            state = SyncState.READY
        else:
            state = SyncState.IDLE
        return SyncSnapshot(
            period=self._period,
            events=self._events,
            cursor=self._cursor,
            is_loading=self._loading,
            is_refreshing=self._refreshing,
            progress_percent=self._progress,
            last_error=self._last_error,
            state=state,
            generation=self._generation,
            updated_at=self._updated_at,
        )

    def _publish(self, events: Iterable[Event]) -> None:
        self._events = tuple(events)
        self._updated_at = int(time.time())

    def _set_progress(self, generation: int, value: int) -> None:
        if generation == self._generation:
            self._progress = max(0, min(100, int(value)))

    async def _fetch_range(
        self, from_height: int, to_height: int, generation: int, track_progress: bool
    ) -> Tuple[FetchReport, List[Event]]:
        combined = FetchReport()
        events: List[Event] = []
        n = len(self.assets)
        for idx, asset in enumerate(self.assets):
            on_progress = None
            if track_progress:
                def on_progress(pct: int, idx: int = idx) -> None:
                    self._set_progress(generation, (idx * 100 + pct) // n)
            report = await self.fetcher.fetch_logs(
                asset.address, from_height, to_height, [asset.topic0], on_progress=on_progress
            )
            combined.extend(report)
            events.extend(normalize_logs(report.logs, asset.kind))
        return combined, events

    async def load(self, period: str) -> bool:
        """Full fetch for `period`. Returns True when the result was committed."""
        period = validate_period(period)
        self._generation += 1
        generation = self._generation
        self._period = period
        self._cursor = None
        self._loading = True
        self._progress = 0
        self._last_error = None
        self._full_failed = False
        logger.info("full fetch started for period=%s (generation %d)", period, generation)

        try:
            head = await self.endpoint.head_height()
            from_height = self.from_height_for(period, head)
            report, events = await self._fetch_range(from_height, head, generation, True)
            if report.all_failed:
                raise FetchFailed(
                    f"all {report.windows} windows failed for blocks {from_height}-{head}"
                )
        except asyncio.CancelledError:
            if generation == self._generation:
                self._loading = False
            raise
        except Exception as e:
            if generation != self._generation:
                return False
            logger.error("full fetch failed for period=%s: %s", period, e)
            self._publish(())
            self._last_error = str(e)
            self._full_failed = True
            self._loading = False
            return False

        if generation != self._generation:
            logger.info("discarding stale full fetch result (generation %d)", generation)
            return False

        if self.dedupe_by_tx:
            events = drop_known(events, set())
        self._publish(sort_events(events))
        self._cursor = head
        self._progress = 100
        self._loading = False
        logger.info(
            "full fetch done for period=%s: %d events, blocks %d-%d, %d/%d windows failed",
            period, len(events), from_height, head, len(report.failed), report.windows,
        )
        await self.fill_timestamps(generation)
        return True

    async def tick(self) -> bool:
        """Delta fetch from cursor+1 to the current head. Returns True on merge."""
        if self._loading or self._refreshing:
            return False
        if self._cursor is None:
            if self._full_failed and self._period:
                logger.info("retrying failed full fetch for period=%s", self._period)
                return await self.load(self._period)
            return False

        generation = self._generation
        cursor = self._cursor
        self._refreshing = True
        try:
            head = await self.endpoint.head_height()
            if head <= cursor:
                logger.debug("head %d <= cursor %d, nothing to fetch", head, cursor)
                return False
            report, new_events = await self._fetch_range(cursor + 1, head, generation, False)
            if report.all_failed:
                raise FetchFailed(f"all {report.windows} windows failed for blocks {cursor + 1}-{head}")
            if generation != self._generation:
                logger.info("discarding stale delta result (generation %d)", generation)
                return False
            if self.dedupe_by_tx:
                new_events = drop_known(new_events, {e.dedupe_key for e in self._events})
            self._publish(sort_events(list(self._events) + new_events))
            self._cursor = head
            self._last_error = None
            logger.info("delta merged %d events for blocks %d-%d", len(new_events), cursor + 1, head)
        except Exception as e:
            if generation == self._generation:
                logger.warning("delta fetch failed, keeping current data: %s", e)
                self._last_error = str(e)
            return False
        finally:
            self._refreshing = False

        await self.fill_timestamps(generation)
        return True

    async def fill_timestamps(self, generation: Optional[int] = None) -> int:
        heights = {e.block_height for e in self._events if e.timestamp is None}
        if not heights:
            return 0
        try:
            times = await self.resolver.resolve(heights)
        except Exception as e:
            logger.warning("timestamp resolution failed: %s", e)
            return 0
        if generation is not None and generation != self._generation:
            return 0
        filled = 0
        out: List[Event] = []
        for e in self._events:
            if e.timestamp is None and e.block_height in times:
                out.append(e.with_timestamp(times[e.block_height]))
                filled += 1
            else:
                out.append(e)
        self._publish(out)
        return filled

    def request_period(self, period: str) -> asyncio.Task:
        """Start a full fetch in the background, superseding any in-flight one."""
        period = validate_period(period)
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        self._load_task = asyncio.create_task(self.load(period))
        return self._load_task

    async def close(self) -> None:
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._load_task
