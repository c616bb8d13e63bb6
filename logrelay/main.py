# logrelay/main.py
from __future__ import annotations
import asyncio
import json
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.exceptions import HTTPException as StarletteHTTPException

from logrelay.config import ServerSettings
from logrelay.errors import RateLimitError, ValidationError
from logrelay.gate import DedupTable, IngestionGate, RateLimiter, RateLimitPolicy
from logrelay.hub import BroadcastHub, format_sse
from logrelay.logging import get_logger
from logrelay.models import now_ms
from logrelay.store import LogStore, OriginInfo, TenantInfo

log = get_logger(__name__)

# ---------- metrics ----------
EVENTS_STORED     = Counter("logrelay_events_stored_total",     "Events accepted into the store")
EVENTS_SUPPRESSED = Counter("logrelay_events_suppressed_total", "Events dropped as duplicates")
RATE_LIMITED      = Counter("logrelay_rate_limited_total",      "Submissions rejected by the rate limiter")
SUBSCRIBERS       = Gauge(  "logrelay_subscribers",             "Open stream connections")
INGEST_LATENCY    = Histogram("logrelay_ingest_duration_seconds", "Submit handling duration")


def _origin_json(o: OriginInfo) -> dict:
    return {
        "origin": o.origin,
        "totalLogs": o.total,
        "topics": [{"topic": t.topic, "count": t.count, "lastActivity": t.last_activity}
                   for t in o.topics],
        "lastActivity": o.last_activity,
        "connectedAt": o.connected_at,
    }


def _tenant_json(t: TenantInfo) -> dict:
    return {
        "tenant": t.tenant,
        "totalLogs": t.total,
        "origins": [_origin_json(o) for o in t.origins],
        "lastActivity": t.last_activity,
        "connectedAt": t.connected_at,
    }


def build_gate(settings: ServerSettings, store: LogStore, hub: BroadcastHub) -> IngestionGate:
    limiter = RateLimiter(
        loopback=RateLimitPolicy(settings.loopback_rate_limit,
                                 int(settings.loopback_window_seconds * 1000)),
        remote=RateLimitPolicy(settings.remote_rate_limit,
                               int(settings.remote_window_seconds * 1000)),
    )
    dedup = DedupTable(ttl_ms=int(settings.dedup_ttl_seconds * 1000),
                       max_entries=settings.dedup_max_entries)
    return IngestionGate(store, hub, rate_limiter=limiter, dedup=dedup)


def create_app(settings: Optional[ServerSettings] = None,
               store: Optional[LogStore] = None,
               hub: Optional[BroadcastHub] = None,
               gate: Optional[IngestionGate] = None) -> FastAPI:
    settings = settings or ServerSettings()
    # an empty store or hub is falsy
    if store is None:
        store = LogStore(capacity=settings.max_log_entries)
    if hub is None:
        hub = BroadcastHub(queue_size=settings.subscriber_queue_size)
    if gate is None:
        gate = build_gate(settings, store, hub)
    started = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        keepalive = asyncio.create_task(hub.run_keepalive(settings.keepalive_interval_seconds))
        log.info("server_started", host=settings.host, port=settings.port,
                 capacity=settings.max_log_entries)
        try:
            yield
        finally:
            keepalive.cancel()
            hub.close_all()
            log.info("server_stopped")

    app = FastAPI(title="Log Relay", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.hub = hub
    app.state.gate = gate

    # browser tabs submit from whatever dev origin they are served on
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=".*",
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With", "Cache-Control"],
    )

    def clamp_lines(lines: Optional[int]) -> int:
        if lines is None:
            return settings.default_query_lines
        return max(1, min(lines, settings.max_query_lines))

    # ---------- errors ----------
    @app.exception_handler(ValidationError)
    async def on_validation_error(request: Request, exc: ValidationError):
        return JSONResponse(exc.to_body(), status_code=exc.status_code)

    @app.exception_handler(RateLimitError)
    async def on_rate_limit(request: Request, exc: RateLimitError):
        RATE_LIMITED.inc()
        return JSONResponse(exc.to_body(), status_code=exc.status_code,
                            headers={"Retry-After": str(exc.retry_after)})

    @app.exception_handler(StarletteHTTPException)
    async def on_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse({"error": "Endpoint not found"}, status_code=404)
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

    # ---------- ingestion ----------
    @app.post("/api/logs/submit")
    async def submit(request: Request):
        start = time.time()
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Request body must be a JSON object")
        if not isinstance(body, dict):
            raise ValidationError("Missing required fields: tenant, origin, logs")

        tenant = body.get("tenant", body.get("app"))
        origin = body.get("origin", body.get("host"))
        client = request.client.host if request.client else "unknown"

        # runs on the event loop: submissions are applied one at a time, in arrival order
        result = gate.submit(tenant, origin, body.get("logs"), client)

        EVENTS_STORED.inc(result.stored)
        EVENTS_SUPPRESSED.inc(result.suppressed)
        INGEST_LATENCY.observe(time.time() - start)

        out = {
            "status": result.status,
            "stored": result.stored,
            "filtered": result.suppressed,
            "tenant": tenant,
            "origin": origin,
            "timestamp": now_ms(),
        }
        if not result.stored:
            out["reason"] = "All logs filtered as duplicates or spam"
        return out

    # ---------- reads ----------
    @app.get("/api/logs/status")
    def status():
        tenants = store.list_tenants()
        return {
            "tenants": [_tenant_json(t) for t in tenants],
            "totalLogs": sum(t.total for t in tenants),
            "serverTime": now_ms(),
            "uptime": time.monotonic() - started,
        }

    @app.get("/api/logs/stream")
    async def stream(request: Request, tenant: Optional[str] = None,
                     origin: Optional[str] = None, topic: Optional[str] = None,
                     lines: Optional[int] = None, filter: str = ""):
        peer = request.client.host if request.client else "unknown"

        async def gen():
            # subscribe and snapshot with no await in between: every event lands in exactly one
            sub = hub.subscribe(peer)
            SUBSCRIBERS.inc()
            try:
                snapshot = None
                if tenant and origin and topic:
                    options = {"lines": clamp_lines(lines), "filter": filter}
                    result = store.read(tenant, origin, topic, options["lines"], filter)
                    snapshot = {
                        "tenant": tenant,
                        "origin": origin,
                        "topic": topic,
                        "logs": [e.to_dict() for e in result.events],
                        "totalEntries": result.total_count,
                        "options": options,
                        "timestamp": now_ms(),
                    }
                yield format_sse("connected", {"timestamp": now_ms(),
                                               "message": "Connected to log stream"})
                if snapshot is not None:
                    yield format_sse("initial_logs", snapshot)
                async for message in hub.listen(sub):
                    yield message
            finally:
                hub.unsubscribe(sub)
                SUBSCRIBERS.dec()

        return StreamingResponse(gen(), media_type="text/event-stream", headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        })

    @app.get("/api/logs/{tenant}/{origin}/{topic}")
    def read_logs(tenant: str, origin: str, topic: str,
                  lines: Optional[int] = None, filter: str = ""):
        options = {"lines": clamp_lines(lines), "filter": filter}
        result = store.read(tenant, origin, topic, options["lines"], filter)
        return {
            "tenant": tenant,
            "origin": origin,
            "topic": topic,
            "logs": [e.to_dict() for e in result.events],
            "totalEntries": result.total_count,
            "filtered": len(result.events),
            "options": options,
            "timestamp": now_ms(),
        }

    @app.get("/api/health")
    def health():
        return {
            "status": "ok",
            "timestamp": now_ms(),
            "uptime": time.monotonic() - started,
            "activeApps": store.tenant_count(),
            "subscribers": len(hub),
        }

    # ---------- metrics ----------
    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
