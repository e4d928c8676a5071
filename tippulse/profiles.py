import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProfileAnnotation:
    display_name: Optional[str] = None
    message: Optional[str] = None


def short_address(addr: str) -> str:
    if not addr:
        return "-"
    return f"{addr[:10]}…{addr[-4:]}"


def pick_display_name(addr: str, annotation: Optional[ProfileAnnotation]) -> str:
    if annotation and annotation.display_name:
        return annotation.display_name
    return short_address(addr)


class ProfileLookup:
    """Display names and messages for senders, from a PostgREST profile table."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        batch_limit: int = 100,
        timeout_sec: int = 10,
        table: str = "user_profiles",
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.batch_limit = max(1, batch_limit)
        self.table = table
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._cache: Dict[str, ProfileAnnotation] = {}

    async def __aenter__(self) -> "ProfileLookup":
        headers = {}
        if self.api_key:
            headers = {"apikey": self.api_key, "Authorization": f"Bearer {self.api_key}"}
        self._session = aiohttp.ClientSession(timeout=self.timeout, headers=headers)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def _limit(self, senders: Iterable[str]) -> List[str]:
        out: List[str] = []
        seen = set()
        for s in senders:
            s = str(s).lower()
            if s in seen:
                continue
            seen.add(s)
            out.append(s)
        if len(out) > self.batch_limit:
            logger.debug("profile lookup truncated from %d to %d senders", len(out), self.batch_limit)
            out = out[: self.batch_limit]
        return out

    async def _query(self, senders: List[str]) -> List[Dict[str, Any]]:
        if not self._session:
            raise RuntimeError("profile session is not initialized")
        params = {
            "select": "wallet_address,display_name,bio",
            "wallet_address": f"in.({','.join(senders)})",
        }
        async with self._session.get(f"{self.base_url}/{self.table}", params=params) as resp:
            resp.raise_for_status()
            rows = await resp.json(content_type=None)
        return rows if isinstance(rows, list) else []

    async def lookup(self, senders: Iterable[str]) -> Dict[str, ProfileAnnotation]:
        wanted = self._limit(senders)
        todo = [s for s in wanted if s not in self._cache]
        if todo:
            try:
                rows = await self._query(todo)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                logger.warning("profile lookup failed for %d senders: %s", len(todo), e)
                rows = None
            if rows is not None:
                for row in rows:
                    addr = str(row.get("wallet_address") or "").lower()
                    if not addr:
                        continue
                    self._cache[addr] = ProfileAnnotation(
                        display_name=row.get("display_name") or None,
                        message=row.get("bio") or None,
                    )
                for s in todo:
                    self._cache.setdefault(s, ProfileAnnotation())
        return {s: self._cache[s] for s in wanted if s in self._cache}
