"""
Period aggregation over the in-memory event list.

Everything here is a pure function of (events, period, asset filter, clock).
Amounts stay Python ints end to end; formatting happens only in to_dict().
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from tippulse.models import Event, format_amount, validate_period

ALL_ASSETS = "all"
DAY_BUCKET_MINUTES = 15
SUNDAY = 6


@dataclass(frozen=True)
class LeaderboardEntry:
    rank: int
    sender: str
    amount: int
    tip_count: int


@dataclass(frozen=True)
class TimeSeriesPoint:
    key: str
    amounts: Dict[str, int]

    @property
    def total(self) -> int:
        return sum(self.amounts.values())


@dataclass(frozen=True)
class AggregationWindow:
    window_label: str
    period: str
    asset_filter: str
    start_ts: Optional[int]
    end_ts: Optional[int]
    totals_by_asset: Dict[str, int]
    unique_actor_count: int
    event_count: int
    leaderboard_by_asset: Dict[str, List[LeaderboardEntry]]
    time_series: List[TimeSeriesPoint] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(self.totals_by_asset.values())

    def to_dict(self, decimals: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
        decimals = decimals or {}

        def fmt(kind: str, v: int) -> str:
            return format_amount(v, decimals.get(kind, 18))

        return {
            "windowLabel": self.window_label,
            "period": self.period,
            "assetFilter": self.asset_filter,
            "startTs": self.start_ts,
            "endTs": self.end_ts,
            "eventCount": self.event_count,
            "uniqueActorCount": self.unique_actor_count,
            "totalsByAsset": {
                k: {"raw": str(v), "display": fmt(k, v)} for k, v in self.totals_by_asset.items()
            },
            "leaderboardByAsset": {
                k: [
                    {
                        "rank": x.rank,
                        "sender": x.sender,
                        "amount": str(x.amount),
                        "display": fmt(k, x.amount),
                        "tipCount": x.tip_count,
                    }
                    for x in rows
                ]
                for k, rows in self.leaderboard_by_asset.items()
            },
            "timeSeries": [
                {
                    "key": p.key,
                    "amounts": {k: str(v) for k, v in p.amounts.items()},
                    "display": {k: fmt(k, v) for k, v in p.amounts.items()},
                }
                for p in self.time_series
            ],
        }


def _local_date(now: datetime, tz: tzinfo) -> date:
    return now.astimezone(tz).date()


def _midnight(d: date, tz: tzinfo) -> datetime:
    return datetime.combine(d, time.min, tzinfo=tz)


def window_dates(
    period: str, now: datetime, tz: tzinfo, week_start: int = SUNDAY
) -> Optional[Tuple[date, date]]:
    """[first_day, end_day) in local calendar dates; None for 'all'."""
    period = validate_period(period)
    today = _local_date(now, tz)
    if period == "day":
        return today, today + timedelta(days=1)
    if period == "week":
        start = today - timedelta(days=(today.weekday() - week_start) % 7)
        return start, start + timedelta(days=7)
    if period == "month":
        start = today.replace(day=1)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return start, end
    return None


def window_bounds(
    period: str, now: datetime, tz: tzinfo, week_start: int = SUNDAY
) -> Optional[Tuple[int, int]]:
    dates = window_dates(period, now, tz, week_start)
    if dates is None:
        return None
    start, end = dates
    return int(_midnight(start, tz).timestamp()), int(_midnight(end, tz).timestamp())


def window_label(period: str, now: datetime, tz: tzinfo, week_start: int = SUNDAY) -> str:
    dates = window_dates(period, now, tz, week_start)
    if dates is None:
        return "all"
    start, end = dates
    if period == "day":
        return f"day {start.isoformat()}"
    if period == "month":
        return f"month {start.strftime('%Y-%m')}"
    return f"week {start.isoformat()}..{(end - timedelta(days=1)).isoformat()}"


def bucket_key(period: str, timestamp: int, tz: tzinfo) -> str:
    d = datetime.fromtimestamp(timestamp, tz)
    if period == "day":
        minute = (d.minute // DAY_BUCKET_MINUTES) * DAY_BUCKET_MINUTES
        return f"{d.hour:02d}:{minute:02d}"
    return d.strftime("%Y-%m-%d")


def bucket_keys(period: str, now: datetime, tz: tzinfo, week_start: int = SUNDAY) -> List[str]:
    """Every bucket key of the clock-driven window, in order."""
    if period == "day":
        return [
            f"{m // 60:02d}:{m % 60:02d}"
            for m in range(0, 24 * 60, DAY_BUCKET_MINUTES)
        ]
    dates = window_dates(period, now, tz, week_start)
    if dates is None:
        return []
    start, end = dates
    return [(start + timedelta(days=i)).isoformat() for i in range((end - start).days)]


def filter_events(
    events: Iterable[Event],
    period: str,
    now: datetime,
    tz: tzinfo,
    asset_filter: str = ALL_ASSETS,
    week_start: int = SUNDAY,
) -> List[Event]:
    bounds = window_bounds(period, now, tz, week_start)
    out: List[Event] = []
    for e in events:
        if asset_filter != ALL_ASSETS and e.asset_kind != asset_filter:
            continue
        if bounds is not None:
            if not e.has_time:
                continue
            if not (bounds[0] <= e.timestamp < bounds[1]):
                continue
        out.append(e)
    return out


def leaderboard(events: Iterable[Event], asset_kind: str, top_n: int = 15) -> List[LeaderboardEntry]:
    sums: "OrderedDict[str, int]" = OrderedDict()
    counts: Dict[str, int] = {}
    for e in events:
        if e.asset_kind != asset_kind:
            continue
        sender = e.sender.lower()
        sums[sender] = sums.get(sender, 0) + e.amount
        counts[sender] = counts.get(sender, 0) + 1
    ranked = sorted(sums.items(), key=lambda kv: kv[1], reverse=True)[: max(0, top_n)]
    return [
        LeaderboardEntry(rank=i + 1, sender=s, amount=amt, tip_count=counts[s])
        for i, (s, amt) in enumerate(ranked)
    ]


def time_series(
    events: Iterable[Event],
    period: str,
    now: datetime,
    tz: tzinfo,
    asset_kinds: Sequence[str],
    fill_empty: bool = True,
    week_start: int = SUNDAY,
) -> List[TimeSeriesPoint]:
    by_key: Dict[str, Dict[str, int]] = {}
    for e in events:
        if not e.has_time:
            continue
        key = bucket_key(period, e.timestamp, tz)
        slot = by_key.setdefault(key, {k: 0 for k in asset_kinds})
        slot[e.asset_kind] = slot.get(e.asset_kind, 0) + e.amount

    if fill_empty and period != "all":
        keys = bucket_keys(period, now, tz, week_start)
    else:
        keys = sorted(by_key)
    return [
        TimeSeriesPoint(key=k, amounts=dict(by_key.get(k) or {a: 0 for a in asset_kinds}))
        for k in keys
    ]


def aggregate(
    events: Iterable[Event],
    period: str,
    now: datetime,
    tz: tzinfo,
    asset_kinds: Sequence[str],
    asset_filter: str = ALL_ASSETS,
    fill_empty: bool = True,
    top_n: int = 15,
    week_start: int = SUNDAY,
) -> AggregationWindow:
    period = validate_period(period)
    if asset_filter != ALL_ASSETS and asset_filter not in asset_kinds:
        raise ValueError(f"unknown asset: {asset_filter}")
    selected = list(asset_kinds) if asset_filter == ALL_ASSETS else [asset_filter]

    filtered = filter_events(events, period, now, tz, asset_filter, week_start)

    totals: Dict[str, int] = {k: 0 for k in selected}
    for e in filtered:
        totals[e.asset_kind] = totals.get(e.asset_kind, 0) + e.amount

    bounds = window_bounds(period, now, tz, week_start)
    return AggregationWindow(
        window_label=window_label(period, now, tz, week_start),
        period=period,
        asset_filter=asset_filter,
        start_ts=bounds[0] if bounds else None,
        end_ts=bounds[1] if bounds else None,
        totals_by_asset=totals,
        unique_actor_count=len({e.sender.lower() for e in filtered}),
        event_count=len(filtered),
        leaderboard_by_asset={k: leaderboard(filtered, k, top_n) for k in selected},
        time_series=time_series(filtered, period, now, tz, selected, fill_empty, week_start),
    )
