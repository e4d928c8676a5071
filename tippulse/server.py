import argparse
import asyncio
import contextlib
import logging
import signal
import time
from datetime import datetime, tzinfo
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from aiohttp import web

from tippulse.aggregate import ALL_ASSETS, AggregationWindow, aggregate, filter_events
from tippulse.config import WEEKDAYS, AppConfig, load_config, setup_logging
from tippulse.export import leaderboard_csv, leaderboard_json, paginate, recent_csv, recent_json
from tippulse.fetcher import LogFetcher
from tippulse.models import Event, format_amount, validate_period
from tippulse.profiles import ProfileLookup, pick_display_name
from tippulse.rpc import ErrorClassifier, build_endpoint_client
from tippulse.sync import SyncController
from tippulse.timestamps import TimestampCache, TimestampResolver

logger = logging.getLogger(__name__)


def resolve_timezone(name: str) -> tzinfo:
    if name:
        return ZoneInfo(name)
    return datetime.now().astimezone().tzinfo


def _parse_bool_arg(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class TipPulseApp:
    def __init__(self, cfg: AppConfig):
        self.cfg = cfg
        self.tz = resolve_timezone(cfg.timezone)
        self.week_start = WEEKDAYS.index(cfg.week_start)
        self.asset_kinds = [a.kind for a in cfg.assets]
        self.decimals = {a.kind: a.decimals for a in cfg.assets}
        self.cors_allow_origins = {
            str(x).strip().rstrip("/") for x in cfg.cors_allow_origins if str(x).strip()
        }

        classifier = ErrorClassifier(cfg.range_limit_patterns, cfg.indexing_patterns)
        self.endpoint = build_endpoint_client(
            cfg.primary_rpc_url,
            cfg.fallback_rpc_url,
            max_retries=cfg.max_rpc_retries,
            timeout_sec=cfg.rpc_timeout_sec,
            classifier=classifier,
        )
        self.fetcher = LogFetcher(self.endpoint, cfg.chunk_blocks, cfg.window_delay_ms)
        self.resolver = TimestampResolver(
            self.endpoint,
            TimestampCache(),
            batch_size=cfg.timestamp_batch_size,
            batch_delay_ms=cfg.timestamp_batch_delay_ms,
        )
        self.controller = SyncController(
            self.endpoint,
            self.fetcher,
            self.resolver,
            cfg.assets,
            lookback_blocks=cfg.lookback_blocks,
            all_lookback_cap=cfg.all_lookback_cap,
            dedupe_by_tx=cfg.dedupe_by_tx,
        )
        self.profiles: Optional[ProfileLookup] = None
        if cfg.profile_api_url:
            self.profiles = ProfileLookup(
                cfg.profile_api_url,
                api_key=cfg.profile_api_key,
                batch_limit=cfg.profile_batch_limit,
            )
        self.stop_event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []
        self.started_at = int(time.time())

    async def __aenter__(self) -> "TipPulseApp":
        await self.endpoint.__aenter__()
        if self.profiles:
            await self.profiles.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.stop_event.is_set():
            await self.shutdown()
        await self.endpoint.__aexit__(exc_type, exc, tb)
        if self.profiles:
            await self.profiles.__aexit__(exc_type, exc, tb)

    async def refresh_loop(self) -> None:
        interval = max(1, self.cfg.refresh_interval_sec)
        while not self.stop_event.is_set():
            await asyncio.sleep(interval)
            await self.controller.tick()

    def current_period(self) -> str:
        return self.controller.period or self.cfg.default_period

    def parse_asset(self, value: Optional[str], allow_all: bool = True) -> str:
        asset = (value or "").strip() or (ALL_ASSETS if allow_all else self.asset_kinds[0])
        if asset == ALL_ASSETS and allow_all:
            return asset
        if asset not in self.asset_kinds:
            raise ValueError(f"unknown asset: {asset}")
        return asset

    def compute_window(
        self, asset_filter: str = ALL_ASSETS, fill_empty: Optional[bool] = None, top_n: Optional[int] = None
    ) -> AggregationWindow:
        return aggregate(
            self.controller.events,
            self.current_period(),
            datetime.now(self.tz),
            self.tz,
            self.asset_kinds,
            asset_filter=asset_filter,
            fill_empty=self.cfg.fill_empty_buckets if fill_empty is None else fill_empty,
            top_n=self.cfg.top_n if top_n is None else top_n,
            week_start=self.week_start,
        )

    def window_events(self, asset_filter: str) -> List[Event]:
        return filter_events(
            self.controller.events,
            self.current_period(),
            datetime.now(self.tz),
            self.tz,
            asset_filter,
            self.week_start,
        )

    def contract_address(self, asset: str) -> str:
        cfg = self.cfg.asset_by_kind(asset) if asset != ALL_ASSETS else None
        return (cfg or self.cfg.assets[0]).address

    async def annotate(self, senders: List[str]) -> Dict[str, Any]:
        if not self.profiles or not senders:
            return {}
        return await self.profiles.lookup(senders)

    async def health_handler(self, request: web.Request) -> web.Response:
        snap = self.controller.snapshot()
        return web.json_response(
            {
                "ok": True,
                "startedAt": self.started_at,
                "timestampsCached": len(self.resolver.cache),
                "endpoints": [c.url for c in self.endpoint.candidates],
                "sync": snap.to_dict(),
            }
        )

    async def snapshot_handler(self, request: web.Request) -> web.Response:
        include_events = _parse_bool_arg(request.query.get("events"), False)
        return web.json_response(self.controller.snapshot().to_dict(include_events=include_events))

    async def period_handler(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            return web.json_response({"error": "invalid json body"}, status=400)
        try:
            if not isinstance(payload, dict):
                raise ValueError("body must be an object")
            period = validate_period(payload.get("period"))
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        self.controller.request_period(period)
        return web.json_response({"ok": True, "period": period})

    async def aggregate_handler(self, request: web.Request) -> web.Response:
        try:
            asset = self.parse_asset(request.query.get("asset"))
            top = int(request.query.get("top", str(self.cfg.top_n)))
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        fill = _parse_bool_arg(request.query.get("fill"), self.cfg.fill_empty_buckets)
        window = self.compute_window(asset, fill_empty=fill, top_n=max(1, top))
        out = window.to_dict(self.decimals)
        out["sync"] = self.controller.snapshot().to_dict()
        return web.json_response(out)

    async def leaderboard_handler(self, request: web.Request) -> web.Response:
        try:
            asset = self.parse_asset(request.query.get("asset"), allow_all=False)
            top = int(request.query.get("top", str(self.cfg.top_n)))
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        window = self.compute_window(asset, fill_empty=False, top_n=max(1, top))
        rows = window.leaderboard_by_asset.get(asset, [])
        profiles = await self.annotate([r.sender for r in rows])
        items = []
        for r in rows:
            ann = profiles.get(r.sender)
            items.append(
                {
                    "rank": r.rank,
                    "sender": r.sender,
                    "name": pick_display_name(r.sender, ann),
                    "message": ann.message if ann else None,
                    "amount": str(r.amount),
                    "display": format_amount(r.amount, self.decimals[asset]),
                    "tipCount": r.tip_count,
                }
            )
        return web.json_response(
            {"period": window.period, "asset": asset, "top": top, "items": items}
        )

    async def recent_handler(self, request: web.Request) -> web.Response:
        try:
            asset = self.parse_asset(request.query.get("asset"))
            page = int(request.query.get("page", "0"))
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        events = self.window_events(asset)
        paged, total_pages = paginate(events, page, self.cfg.recent_page_size)
        profiles = await self.annotate([e.sender for e in paged])
        items = []
        for e in paged:
            x = e.to_dict()
            x["name"] = pick_display_name(e.sender, profiles.get(e.sender))
            items.append(x)
        return web.json_response(
            {
                "period": self.current_period(),
                "asset": asset,
                "page": max(0, min(page, total_pages - 1)),
                "totalPages": total_pages,
                "count": len(events),
                "items": items,
            }
        )

    async def export_leaderboard_handler(self, request: web.Request) -> web.Response:
        fmt = request.match_info.get("fmt", "json")
        try:
            asset = self.parse_asset(request.query.get("asset"), allow_all=False)
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        window = self.compute_window(asset, fill_empty=False)
        rows = window.leaderboard_by_asset.get(asset, [])
        name = f"tippulse-ranking-{window.period}"
        if fmt == "csv":
            return web.Response(
                text=leaderboard_csv(rows),
                content_type="text/csv",
                headers={"Content-Disposition": f'attachment; filename="{name}.csv"'},
            )
        body = leaderboard_json(rows, window.period, self.contract_address(asset))
        return web.Response(
            text=body,
            content_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{name}.json"'},
        )

    async def export_recent_handler(self, request: web.Request) -> web.Response:
        fmt = request.match_info.get("fmt", "json")
        try:
            asset = self.parse_asset(request.query.get("asset"))
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        events = self.window_events(asset)
        profiles = await self.annotate([e.sender for e in events])
        name = f"tippulse-recent-{self.current_period()}"
        if fmt == "csv":
            return web.Response(
                text=recent_csv(events, self.decimals, profiles),
                content_type="text/csv",
                headers={"Content-Disposition": f'attachment; filename="{name}.csv"'},
            )
        body = recent_json(
            events, self.decimals, self.current_period(), self.contract_address(asset), profiles
        )
        return web.Response(
            text=body,
            content_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{name}.json"'},
        )

    def resolve_cors_origin(self, request_origin: Optional[str]) -> Optional[str]:
        if not request_origin or not self.cors_allow_origins:
            return None
        origin = str(request_origin).strip().rstrip("/")
        if not origin:
            return None
        if "*" in self.cors_allow_origins:
            return "*"
        if origin in self.cors_allow_origins:
            return origin
        return None

    def create_api_app(self) -> web.Application:
        @web.middleware
        async def cors_middleware(request: web.Request, handler):
            allow_origin = self.resolve_cors_origin(request.headers.get("Origin"))
            if request.method == "OPTIONS":
                response: web.StreamResponse = web.Response(status=204)
            else:
                try:
                    response = await handler(request)
                except web.HTTPException as ex:
                    response = ex

            if allow_origin:
                response.headers["Access-Control-Allow-Origin"] = allow_origin
                response.headers["Vary"] = "Origin"
                response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
                response.headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization"
                response.headers["Access-Control-Max-Age"] = "86400"
            return response

        middlewares = [cors_middleware] if self.cors_allow_origins else []
        app = web.Application(middlewares=middlewares)
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/snapshot", self.snapshot_handler)
        app.router.add_post("/period", self.period_handler)
        app.router.add_get("/aggregate", self.aggregate_handler)
        app.router.add_get("/leaderboard", self.leaderboard_handler)
        app.router.add_get("/recent", self.recent_handler)
        app.router.add_get(r"/export/leaderboard.{fmt:(csv|json)}", self.export_leaderboard_handler)
        app.router.add_get(r"/export/recent.{fmt:(csv|json)}", self.export_recent_handler)
        return app

    async def run(self) -> None:
        self.controller.request_period(self.cfg.default_period)
        self.tasks.append(asyncio.create_task(self.refresh_loop()))

        runner = web.AppRunner(self.create_api_app())
        await runner.setup()
        site = web.TCPSite(runner, host=self.cfg.api_host, port=self.cfg.api_port)
        await site.start()
        logger.info("api listening on http://%s:%d", self.cfg.api_host, self.cfg.api_port)

        try:
            await self.stop_event.wait()
        finally:
            await runner.cleanup()

    async def shutdown(self) -> None:
        self.stop_event.set()
        for t in self.tasks:
            t.cancel()
        for t in self.tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        self.tasks = []
        await self.controller.close()


async def main_async(config_path: str) -> None:
    cfg = load_config(config_path)
    setup_logging(cfg.log_level)
    async with TipPulseApp(cfg) as app:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _on_stop() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_stop)

        run_task = asyncio.create_task(app.run())
        wait_task = asyncio.create_task(stop_event.wait())

        await asyncio.wait(
            {run_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        await app.shutdown()
        wait_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await wait_task
        await run_task


def main() -> None:
    parser = argparse.ArgumentParser(description="tippulse tip-ingestion and analytics runtime")
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    args = parser.parse_args()

    try:
        asyncio.run(main_async(args.config))
    except KeyboardInterrupt:
        pass
    except ValueError as e:
        raise SystemExit(f"config error: {e}") from e


if __name__ == "__main__":
    main()
