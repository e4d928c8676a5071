import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tippulse.models import PERIODS, normalize_address

DEFAULT_LOOKBACK_BLOCKS: Dict[str, int] = {
    "day": 50_000,
    "week": 350_000,
    "month": 1_500_000,
}
DEFAULT_ALL_LOOKBACK_CAP = 1_500_000

DEFAULT_RANGE_LIMIT_PATTERNS = [
    r"\d+ block range",
    r"block range (is )?(too large|too wide|limit)",
    r"exceed(s|ed)? (the )?max(imum)? block range",
    r"max(imum)? block (range|span)",
]
DEFAULT_INDEXING_PATTERNS = [
    r"state histories haven't been fully indexed yet",
    r"not (been )?fully indexed",
    r"indexing (is )?in progress",
]

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


@dataclass
class AssetConfig:
    kind: str
    address: str
    topic0: str
    decimals: int = 18
    symbol: str = ""


@dataclass
class AppConfig:
    primary_rpc_url: str
    fallback_rpc_url: Optional[str]
    assets: List[AssetConfig]
    lookback_blocks: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_LOOKBACK_BLOCKS))
    all_lookback_cap: int = DEFAULT_ALL_LOOKBACK_CAP
    chunk_blocks: int = 5000
    window_delay_ms: int = 30
    timestamp_batch_size: int = 10
    timestamp_batch_delay_ms: int = 50
    refresh_interval_sec: int = 30
    top_n: int = 15
    fill_empty_buckets: bool = True
    default_period: str = "day"
    timezone: str = ""
    week_start: str = "sunday"
    dedupe_by_tx: bool = False
    max_rpc_retries: int = 2
    rpc_timeout_sec: int = 12
    range_limit_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_RANGE_LIMIT_PATTERNS))
    indexing_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_INDEXING_PATTERNS))
    profile_api_url: Optional[str] = None
    profile_api_key: Optional[str] = None
    profile_batch_limit: int = 100
    recent_page_size: int = 10
    log_level: str = "info"
    api_host: str = "127.0.0.1"
    api_port: int = 8080
    cors_allow_origins: List[str] = field(default_factory=list)

    def asset_by_kind(self, kind: str) -> Optional[AssetConfig]:
        for a in self.assets:
            if a.kind == kind:
                return a
        return None


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_topic(value: Any, where: str) -> str:
    topic = str(value or "").strip().lower()
    if not topic.startswith("0x") or len(topic) != 66:
        raise ValueError(f"{where}.topic0 must be a 32-byte hex string")
    int(topic[2:], 16)
    return topic


def _parse_positive(raw: Dict[str, Any], key: str, default: int, allow_zero: bool = False) -> int:
    v = int(raw.get(key, default))
    if v < 0 or (v == 0 and not allow_zero):
        raise ValueError(f"{key} must be >= {0 if allow_zero else 1}")
    return v


def parse_assets(items: Any) -> List[AssetConfig]:
    if not isinstance(items, list) or not items:
        raise ValueError("ASSETS cannot be empty")
    assets: List[AssetConfig] = []
    seen = set()
    for idx, item in enumerate(items):
        where = f"ASSETS[{idx}]"
        if not isinstance(item, dict):
            raise ValueError(f"{where} must be an object")
        kind = str(item.get("kind", "")).strip()
        if not kind:
            raise ValueError(f"{where}.kind is required")
        if kind in seen:
            raise ValueError(f"duplicate asset kind: {kind}")
        seen.add(kind)
        address = item.get("address")
        if not address:
            raise ValueError(f"{where}.address is required")
        decimals = int(item.get("decimals", 18))
        if decimals < 0 or decimals > 36:
            raise ValueError(f"{where}.decimals is invalid: {decimals}")
        assets.append(
            AssetConfig(
                kind=kind,
                address=normalize_address(address),
                topic0=_parse_topic(item.get("topic0"), where),
                decimals=decimals,
                symbol=str(item.get("symbol") or kind),
            )
        )
    return assets


def _parse_origins(value: Any) -> List[str]:
    if isinstance(value, str):
        return [x.strip().rstrip("/") for x in value.split(",") if x and x.strip()]
    if isinstance(value, list):
        return [str(x).strip().rstrip("/") for x in value if str(x).strip()]
    return []


def parse_config(raw: Dict[str, Any]) -> AppConfig:
    primary = str(raw.get("PRIMARY_RPC_URL", "")).strip()
    if not primary:
        raise ValueError("PRIMARY_RPC_URL is required")
    fallback = str(raw.get("FALLBACK_RPC_URL", "")).strip() or None

    lookback = dict(DEFAULT_LOOKBACK_BLOCKS)
    for k, v in (raw.get("LOOKBACK_BLOCKS") or {}).items():
        if k not in lookback:
            raise ValueError(f"LOOKBACK_BLOCKS has unknown period: {k}")
        if int(v) <= 0:
            raise ValueError(f"LOOKBACK_BLOCKS.{k} must be >= 1")
        lookback[k] = int(v)

    default_period = str(raw.get("DEFAULT_PERIOD", "day")).lower()
    if default_period not in PERIODS:
        raise ValueError(f"DEFAULT_PERIOD must be one of {', '.join(PERIODS)}")

    week_start = str(raw.get("WEEK_START", "sunday")).lower()
    if week_start not in WEEKDAYS:
        raise ValueError(f"WEEK_START must be a weekday name, got: {week_start}")

    profile_url = str(raw.get("PROFILE_API_URL", "")).strip().rstrip("/") or None

    return AppConfig(
        primary_rpc_url=primary,
        fallback_rpc_url=fallback,
        assets=parse_assets(raw.get("ASSETS")),
        lookback_blocks=lookback,
        all_lookback_cap=_parse_positive(raw, "ALL_LOOKBACK_CAP", DEFAULT_ALL_LOOKBACK_CAP),
        chunk_blocks=_parse_positive(raw, "CHUNK_BLOCKS", 5000),
        window_delay_ms=_parse_positive(raw, "WINDOW_DELAY_MS", 30, allow_zero=True),
        timestamp_batch_size=_parse_positive(raw, "TIMESTAMP_BATCH_SIZE", 10),
        timestamp_batch_delay_ms=_parse_positive(raw, "TIMESTAMP_BATCH_DELAY_MS", 50, allow_zero=True),
        refresh_interval_sec=_parse_positive(raw, "REFRESH_INTERVAL_SEC", 30),
        top_n=_parse_positive(raw, "TOP_N", 15),
        fill_empty_buckets=_parse_bool(raw.get("FILL_EMPTY_BUCKETS", True)),
        default_period=default_period,
        timezone=str(raw.get("TIMEZONE", "")).strip(),
        week_start=week_start,
        dedupe_by_tx=_parse_bool(raw.get("DEDUPE_BY_TX", False)),
        max_rpc_retries=_parse_positive(raw, "MAX_RPC_RETRIES", 2),
        rpc_timeout_sec=_parse_positive(raw, "RPC_TIMEOUT_SEC", 12),
        range_limit_patterns=list(raw.get("RANGE_LIMIT_PATTERNS") or DEFAULT_RANGE_LIMIT_PATTERNS),
        indexing_patterns=list(raw.get("INDEXING_PATTERNS") or DEFAULT_INDEXING_PATTERNS),
        profile_api_url=profile_url,
        profile_api_key=str(raw.get("PROFILE_API_KEY", "")).strip() or None,
        profile_batch_limit=_parse_positive(raw, "PROFILE_BATCH_LIMIT", 100),
        recent_page_size=_parse_positive(raw, "RECENT_PAGE_SIZE", 10),
        log_level=str(raw.get("LOG_LEVEL", "info")).lower(),
        api_host=str(raw.get("API_HOST", "127.0.0.1")),
        api_port=int(raw.get("API_PORT", 8080)),
        cors_allow_origins=_parse_origins(raw.get("CORS_ALLOW_ORIGINS", [])),
    )


def load_config(path: str) -> AppConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError("config root must be an object")
    return parse_config(raw)


def setup_logging(level: str = "info") -> None:
    numeric = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric, int):
        raise ValueError(f"invalid LOG_LEVEL: {level}")
    logging.basicConfig(level=numeric, format=LOG_FORMAT)
    # aiohttp access logs are noisy at info
    logging.getLogger("aiohttp.access").setLevel(max(numeric, logging.WARNING))
