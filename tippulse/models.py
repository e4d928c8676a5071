from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Tuple

PERIODS = ("day", "week", "month", "all")


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not addr.startswith("0x") or len(addr) != 42:
        raise ValueError(f"invalid address format: {addr}")
    int(addr[2:], 16)
    return addr


def parse_hex_int(value: Optional[str]) -> int:
    if value is None or value in ("", "0x"):
        return 0
    return int(value, 16)


def decode_topic_address(topic: str) -> str:
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    return "0x" + topic[-40:]


def validate_period(period: str) -> str:
    p = str(period or "").strip().lower()
    if p not in PERIODS:
        raise ValueError(f"period must be one of {', '.join(PERIODS)}, got: {period}")
    return p


def format_amount(amount: int, decimals: int, places: int = 4) -> str:
    """Render base units as a decimal string, truncated to `places` digits.

    Integer arithmetic only; trailing fractional zeros are dropped.
    """
    if amount < 0:
        return "-" + format_amount(-amount, decimals, places)
    if decimals <= 0:
        return str(amount)
    divisor = 10 ** decimals
    integer_part, fractional_part = divmod(amount, divisor)
    if fractional_part == 0 or places <= 0:
        return str(integer_part)
    frac = str(fractional_part).rjust(decimals, "0")[:places].rstrip("0")
    if not frac:
        return str(integer_part)
    return f"{integer_part}.{frac}"


@dataclass(frozen=True)
class Event:
    sender: str
    amount: int
    block_height: int
    tx_ref: str
    asset_kind: str
    timestamp: Optional[int] = None
    log_index: Optional[int] = None

    @property
    def dedupe_key(self) -> Tuple[str, Optional[int]]:
        return (self.tx_ref, self.log_index)

    @property
    def has_time(self) -> bool:
        # 0 marks a block whose time could not be resolved
        return bool(self.timestamp)

    def with_timestamp(self, timestamp: int) -> "Event":
        return replace(self, timestamp=int(timestamp))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sender": self.sender,
            "amount": str(self.amount),
            "blockHeight": self.block_height,
            "timestamp": self.timestamp,
            "txRef": self.tx_ref,
            "assetKind": self.asset_kind,
            "logIndex": self.log_index,
        }
