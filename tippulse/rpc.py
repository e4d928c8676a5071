import asyncio
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence

import aiohttp

from tippulse.config import DEFAULT_INDEXING_PATTERNS, DEFAULT_RANGE_LIMIT_PATTERNS
from tippulse.models import parse_hex_int

logger = logging.getLogger(__name__)


class RPCError(Exception):
    """Base class for classified remote-call failures."""

    kind = "generic"

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class RangeLimitExceeded(RPCError):
    kind = "range_limit"


class IndexingInProgress(RPCError):
    kind = "indexing"


class GenericRPCError(RPCError):
    kind = "generic"


class AllEndpointsFailed(GenericRPCError):
    def __init__(self, method: str, errors: List[RPCError]):
        detail = "; ".join(f"{e.url or '?'}: {e}" for e in errors) or "no endpoints configured"
        super().__init__(f"all endpoints failed for {method}: {detail}")
        self.errors = errors


class ErrorClassifier:
    def __init__(
        self,
        range_limit_patterns: Optional[Iterable[str]] = None,
        indexing_patterns: Optional[Iterable[str]] = None,
    ):
        self.range_limit = [
            re.compile(p, re.IGNORECASE)
            for p in (range_limit_patterns or DEFAULT_RANGE_LIMIT_PATTERNS)
        ]
        self.indexing = [
            re.compile(p, re.IGNORECASE)
            for p in (indexing_patterns or DEFAULT_INDEXING_PATTERNS)
        ]

    def classify(self, text: str, url: Optional[str] = None) -> RPCError:
        text = str(text or "")
        if any(p.search(text) for p in self.indexing):
            return IndexingInProgress(f"source is still indexing: {text}", url=url)
        if any(p.search(text) for p in self.range_limit):
            return RangeLimitExceeded(f"block range quota exceeded: {text}", url=url)
        return GenericRPCError(text, url=url)


class RPCClient:
    """JSON-RPC over HTTP POST against a single endpoint."""

    def __init__(
        self,
        url: str,
        max_retries: int = 2,
        timeout_sec: int = 12,
        classifier: Optional[ErrorClassifier] = None,
    ):
        self.url = url
        self.max_retries = max(1, max_retries)
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self.classifier = classifier or ErrorClassifier()
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _post(self, payload: Dict[str, Any]) -> Any:
        async with self._session.post(self.url, json=payload) as resp:
            if resp.status >= 300:
                text = await resp.text()
                err = self.classifier.classify(f"HTTP {resp.status}: {text}", url=self.url)
                if isinstance(err, GenericRPCError) and (resp.status == 429 or resp.status >= 500):
                    # transient; let the retry loop see it as a transport failure
                    raise aiohttp.ClientResponseError(
                        resp.request_info, resp.history, status=resp.status, message=text
                    )
                raise err
            data = await resp.json(content_type=None)
        if not isinstance(data, dict):
            raise GenericRPCError(f"malformed response: {data!r}", url=self.url)
        if data.get("error") is not None:
            error = data["error"]
            if isinstance(error, dict):
                message = f"{error.get('message', 'unknown error')} (code: {error.get('code')})"
            else:
                message = str(error)
            raise self.classifier.classify(message, url=self.url)
        return data.get("result")

    async def call(self, method: str, params: List[Any]) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        backoff = 0.5
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self._post(payload)
            except RPCError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                if attempt >= self.max_retries:
                    raise GenericRPCError(f"{method} transport failure: {e!r}", url=self.url) from e
                logger.debug("%s %s attempt %d failed: %r", self.url, method, attempt, e)
                await asyncio.sleep(backoff)
                backoff *= 2


class EndpointClient:
    """Tries endpoint candidates in priority order, first success wins."""

    def __init__(self, candidates: Sequence[RPCClient]):
        if not candidates:
            raise ValueError("at least one endpoint candidate is required")
        self.candidates = list(candidates)

    async def __aenter__(self) -> "EndpointClient":
        for c in self.candidates:
            await c.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        for c in self.candidates:
            await c.__aexit__(exc_type, exc, tb)

    async def call(self, method: str, params: List[Any]) -> Any:
        errors: List[RPCError] = []
        for client in self.candidates:
            try:
                return await client.call(method, params)
            except RPCError as e:
                errors.append(e)
                if client is not self.candidates[-1]:
                    logger.debug("%s failed on %s, trying next endpoint: %s", method, client.url, e)
        last = errors[-1]
        if isinstance(last, (RangeLimitExceeded, IndexingInProgress)):
            raise last
        if any(isinstance(e, IndexingInProgress) for e in errors):
            raise next(e for e in errors if isinstance(e, IndexingInProgress))
        raise AllEndpointsFailed(method, errors)

    async def head_height(self) -> int:
        result = await self.call("eth_blockNumber", [])
        return parse_hex_int(result)

    async def block_time(self, height: int) -> int:
        block = await self.call("eth_getBlockByNumber", [hex(height), False])
        if not isinstance(block, dict) or not block.get("timestamp"):
            raise GenericRPCError(f"block {height} not found")
        try:
            return parse_hex_int(block["timestamp"])
        except (TypeError, ValueError) as e:
            raise GenericRPCError(f"block {height} has malformed timestamp: {e}") from e

    async def get_logs(
        self,
        address: str,
        from_height: int,
        to_height: int,
        topics: Optional[List[Any]] = None,
    ) -> List[Dict[str, Any]]:
        f: Dict[str, Any] = {
            "address": address,
            "fromBlock": hex(from_height),
            "toBlock": hex(to_height),
        }
        if topics:
            f["topics"] = topics
        result = await self.call("eth_getLogs", [f])
        if result is None:
            return []
        if not isinstance(result, list):
            raise GenericRPCError(f"malformed eth_getLogs result: {result!r}")
        return result


def build_endpoint_client(
    primary_url: str,
    fallback_url: Optional[str] = None,
    max_retries: int = 2,
    timeout_sec: int = 12,
    classifier: Optional[ErrorClassifier] = None,
) -> EndpointClient:
    classifier = classifier or ErrorClassifier()
    urls = [primary_url] + ([fallback_url] if fallback_url else [])
    return EndpointClient(
        [
            RPCClient(u, max_retries=max_retries, timeout_sec=timeout_sec, classifier=classifier)
            for u in urls
        ]
    )
