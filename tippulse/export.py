import csv
import io
import json
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from tippulse.aggregate import LeaderboardEntry
from tippulse.models import Event, format_amount
from tippulse.profiles import ProfileAnnotation, pick_display_name


def iso_utc(ts: Optional[int]) -> Optional[str]:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def paginate(items: Sequence[Any], page: int, page_size: int) -> Tuple[List[Any], int]:
    total_pages = max(1, math.ceil(len(items) / max(1, page_size)))
    page = max(0, min(page, total_pages - 1))
    start = page * page_size
    return list(items[start : start + page_size]), total_pages


def _to_csv(rows: List[List[Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerows(rows)
    return buf.getvalue()


def leaderboard_csv(entries: Sequence[LeaderboardEntry]) -> str:
    rows: List[List[Any]] = [["Rank", "Address", "Amount"]]
    rows.extend([e.rank, e.sender, str(e.amount)] for e in entries)
    return _to_csv(rows)


def leaderboard_json(
    entries: Sequence[LeaderboardEntry],
    period: str,
    contract_address: str,
) -> str:
    data = {
        "metadata": {
            "exportTime": datetime.now(timezone.utc).isoformat(),
            "period": period,
            "totalUsers": len(entries),
            "contractAddress": contract_address,
        },
        "ranking": [
            {"rank": e.rank, "address": e.sender, "totalAmount": str(e.amount)} for e in entries
        ],
    }
    return json.dumps(data, indent=2, ensure_ascii=False)


def _event_row(
    e: Event,
    decimals: Dict[str, int],
    profiles: Dict[str, ProfileAnnotation],
) -> Dict[str, Any]:
    return {
        "timestamp": iso_utc(e.timestamp),
        "from": e.sender,
        "name": pick_display_name(e.sender, profiles.get(e.sender)),
        "amount": format_amount(e.amount, decimals.get(e.asset_kind, 18)),
        "assetKind": e.asset_kind,
        "txHash": e.tx_ref,
        "blockNumber": e.block_height,
    }


def recent_csv(
    events: Sequence[Event],
    decimals: Dict[str, int],
    profiles: Optional[Dict[str, ProfileAnnotation]] = None,
) -> str:
    profiles = profiles or {}
    rows: List[List[Any]] = [["Timestamp", "From", "Name", "Amount", "TxHash", "Block"]]
    for e in events:
        r = _event_row(e, decimals, profiles)
        rows.append(
            [r["timestamp"] or "", r["from"], r["name"], r["amount"], r["txHash"], r["blockNumber"]]
        )
    return _to_csv(rows)


def recent_json(
    events: Sequence[Event],
    decimals: Dict[str, int],
    period: str,
    contract_address: str,
    profiles: Optional[Dict[str, ProfileAnnotation]] = None,
) -> str:
    profiles = profiles or {}
    data = {
        "metadata": {
            "exportTime": datetime.now(timezone.utc).isoformat(),
            "period": period,
            "totalTips": len(events),
            "contractAddress": contract_address,
        },
        "tips": [_event_row(e, decimals, profiles) for e in events],
    }
    return json.dumps(data, indent=2, ensure_ascii=False)
