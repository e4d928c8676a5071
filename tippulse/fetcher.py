import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from tippulse.models import Event, decode_topic_address, parse_hex_int
from tippulse.rpc import EndpointClient, IndexingInProgress, RPCError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


def split_windows(from_height: int, to_height: int, chunk: int) -> List[Tuple[int, int]]:
    """Consecutive inclusive windows covering [from_height, to_height]."""
    if chunk <= 0:
        raise ValueError("chunk must be >= 1")
    windows: List[Tuple[int, int]] = []
    current = from_height
    while current <= to_height:
        end = min(to_height, current + chunk - 1)
        windows.append((current, end))
        current = end + 1
    return windows


@dataclass
class FetchReport:
    logs: List[Dict[str, Any]] = field(default_factory=list)
    windows: int = 0
    failed: List[Tuple[int, int]] = field(default_factory=list)
    indexing: List[Tuple[int, int]] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return self.windows > 0 and len(self.failed) == self.windows

    def extend(self, other: "FetchReport") -> None:
        self.logs.extend(other.logs)
        self.windows += other.windows
        self.failed.extend(other.failed)
        self.indexing.extend(other.indexing)


class LogFetcher:
    def __init__(
        self,
        endpoint: EndpointClient,
        chunk_blocks: int = 5000,
        window_delay_ms: int = 30,
    ):
        if chunk_blocks <= 0:
            raise ValueError("chunk_blocks must be >= 1")
        self.endpoint = endpoint
        self.chunk_blocks = chunk_blocks
        self.window_delay = max(0, window_delay_ms) / 1000.0

    async def fetch_logs(
        self,
        address: str,
        from_height: int,
        to_height: int,
        topics: Optional[List[Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> FetchReport:
        windows = split_windows(from_height, to_height, self.chunk_blocks)
        report = FetchReport(windows=len(windows))
        for i, (start, end) in enumerate(windows):
            try:
                logs = await self.endpoint.get_logs(address, start, end, topics)
                report.logs.extend(logs)
            except IndexingInProgress as e:
                logger.warning("window %d-%d not indexed yet, treating as empty: %s", start, end, e)
                report.indexing.append((start, end))
            except RPCError as e:
                logger.warning("window %d-%d skipped (%s): %s", start, end, e.kind, e)
                report.failed.append((start, end))

            if on_progress is not None:
                on_progress(round((i + 1) * 100 / len(windows)))
            if i + 1 < len(windows) and self.window_delay > 0:
                await asyncio.sleep(self.window_delay)

        logger.debug(
            "fetched %d logs for %s over %d windows (%d failed)",
            len(report.logs), address, report.windows, len(report.failed),
        )
        return report


def normalize_log(log: Dict[str, Any], asset_kind: str) -> Optional[Event]:
    if not isinstance(log, dict):
        logger.debug("dropping non-object log: %r", log)
        return None
    topics = log.get("topics") or []
    if not isinstance(topics, list) or len(topics) < 2 or not log.get("blockNumber"):
        logger.debug("dropping malformed log: %r", log)
        return None
    try:
        log_index = log.get("logIndex")
        return Event(
            sender=decode_topic_address(topics[1]),
            amount=parse_hex_int(log.get("data")),
            block_height=parse_hex_int(log["blockNumber"]),
            tx_ref=str(log.get("transactionHash") or "").lower(),
            asset_kind=asset_kind,
            log_index=parse_hex_int(log_index) if log_index is not None else None,
        )
    except (AttributeError, TypeError, ValueError) as e:
        logger.debug("dropping undecodable log %r: %s", log, e)
        return None


def normalize_logs(logs: List[Dict[str, Any]], asset_kind: str) -> List[Event]:
    out: List[Event] = []
    for lg in logs:
        ev = normalize_log(lg, asset_kind)
        if ev is not None:
            out.append(ev)
    return out
