import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from tippulse.rpc import EndpointClient, RPCError

logger = logging.getLogger(__name__)

# Stored for heights whose lookup failed; never retried.
TIME_UNAVAILABLE = 0


class TimestampCache:
    """Write-once mapping of block height to unix seconds."""

    def __init__(self) -> None:
        self._times: Dict[int, int] = {}

    def __contains__(self, height: int) -> bool:
        return height in self._times

    def __len__(self) -> int:
        return len(self._times)

    def get(self, height: int) -> Optional[int]:
        return self._times.get(height)

    def put(self, height: int, timestamp: int) -> bool:
        if height in self._times:
            return False
        self._times[height] = int(timestamp)
        return True

    def is_unavailable(self, height: int) -> bool:
        return self._times.get(height) == TIME_UNAVAILABLE

    def missing(self, heights: Iterable[int]) -> List[int]:
        return sorted({h for h in heights if h not in self._times})


class TimestampResolver:
    def __init__(
        self,
        endpoint: EndpointClient,
        cache: Optional[TimestampCache] = None,
        batch_size: int = 10,
        batch_delay_ms: int = 50,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be >= 1")
        self.endpoint = endpoint
        self.cache = cache if cache is not None else TimestampCache()
        self.batch_size = batch_size
        self.batch_delay = max(0, batch_delay_ms) / 1000.0
        self._lock = asyncio.Lock()

    def lookup(self, height: int) -> Optional[int]:
        return self.cache.get(height)

    async def _fetch_one(self, height: int) -> int:
        try:
            return await self.endpoint.block_time(height)
        except (RPCError, ValueError, TypeError, AttributeError) as e:
            logger.warning("timestamp lookup failed for block %d: %s", height, e)
            return TIME_UNAVAILABLE

    async def resolve(self, heights: Iterable[int]) -> Dict[int, int]:
        wanted = set(heights)
        async with self._lock:
            need = self.cache.missing(wanted)
            if need:
                logger.debug("resolving %d block timestamps (%d cached)", len(need), len(wanted) - len(need))
            for i in range(0, len(need), self.batch_size):
                batch = need[i : i + self.batch_size]
                results = await asyncio.gather(*(self._fetch_one(h) for h in batch))
                for h, ts in zip(batch, results):
                    self.cache.put(h, ts)
                if i + self.batch_size < len(need) and self.batch_delay > 0:
                    await asyncio.sleep(self.batch_delay)
        return {h: self.cache.get(h) for h in wanted if h in self.cache}
