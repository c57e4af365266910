from __future__ import annotations

import json
import logging
import secrets
import threading
import time
import uuid
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Any

import httpx
from common.utils import now_utc_iso
from fastapi import FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ingestor.config import IngestorSettings, load_settings
from ingestor.errors import IngestionError, MisconfigurationError, Unauthorized
from ingestor.models import (
    CronRefreshResponse,
    ExternalJobsResponse,
    IngestionRunResult,
    IngestRequest,
    IngestResponse,
    MetricsSnapshot,
    Provider,
)
from ingestor.pipeline import IngestionPipeline, IngestionTrigger
from ingestor.rate_limit import RateLimiter, get_client_ip
from ingestor.repository import ExternalJobRepository
from ingestor.sources import IndeedQuery, build_source_adapters
from ingestor.upsert import UpsertCoordinator

LOGGER = logging.getLogger("jobingest.ingestor")
SECRET_HEADER = "x-ingest-secret"
RUN_ID_HEADER = "x-ingest-run-id"

MaintenanceHook = Callable[[], dict[str, Any]]


def skip_maintenance() -> dict[str, Any]:
    return {"skipped": True}


class MetricsStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {"requests": 0, "errors": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}
        self._ingestion = {
            "runs": 0,
            "failed_runs": 0,
            "fetched": 0,
            "created": 0,
            "existing": 0,
            "failed_writes": 0,
        }

    def observe(self, *, method: str, path: str, status_code: int, duration_ms: float) -> None:
        key = f"{method} {path}"
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            endpoint = self._endpoints.setdefault(
                key,
                {
                    "count": 0,
                    "2xx": 0,
                    "4xx": 0,
                    "5xx": 0,
                    "latency_ms_sum": 0.0,
                    "latency_ms_avg": 0.0,
                },
            )
            endpoint["count"] = int(endpoint["count"]) + 1
            if bucket in ("2xx", "4xx", "5xx"):
                endpoint[bucket] = int(endpoint[bucket]) + 1
            endpoint["latency_ms_sum"] = float(endpoint["latency_ms_sum"]) + duration_ms
            endpoint["latency_ms_avg"] = (
                float(endpoint["latency_ms_sum"]) / int(endpoint["count"])
            )

    def observe_run(self, result: IngestionRunResult) -> None:
        with self._lock:
            self._ingestion["runs"] += 1
            if result.status == "failed":
                self._ingestion["failed_runs"] += 1
            self._ingestion["fetched"] += result.fetched_count
            self._ingestion["created"] += result.created_count
            self._ingestion["existing"] += result.existing_count
            self._ingestion["failed_writes"] += result.failed_count

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints={key: dict(value) for key, value in self._endpoints.items()},
                ingestion=dict(self._ingestion),
            )


def parse_ingest_request(body: bytes) -> IngestRequest:
    # An unreadable body is treated as an empty one.
    try:
        data = json.loads(body) if body.strip() else {}
    except ValueError:
        data = {}
    return IngestRequest.model_validate(data)


def build_manual_trigger(payload: IngestRequest, settings: IngestorSettings) -> IngestionTrigger:
    requested = payload.limit if payload.limit is not None else settings.max_limit
    limit = max(1, min(settings.max_limit, requested))
    per_url = payload.max_rows_per_url
    max_rows_per_url = min(limit, per_url) if per_url is not None and per_url > 0 else limit
    urls = [url.strip() for url in payload.urls or [] if url.strip()]
    params = IndeedQuery(
        country=(payload.country or "").strip() or "us",
        query=(payload.query or "").strip() or "Growth Marketing",
        from_days=str(payload.from_days) if payload.from_days is not None else "3",
        urls=urls or list(settings.seed_urls),
        max_rows_per_url=max_rows_per_url,
    )
    return IngestionTrigger(params=params, limit=limit, trigger="manual")


def build_scheduled_trigger(settings: IngestorSettings) -> IngestionTrigger:
    params = IndeedQuery(
        country=settings.cron_country,
        query=settings.cron_query,
        from_days=settings.cron_from_days,
        urls=[],
        max_rows_per_url=settings.cron_limit,
    )
    return IngestionTrigger(params=params, limit=settings.cron_limit, trigger="scheduled")


def create_app(
    *,
    database_path: str | None = None,
    ingest_secret: str | None = None,
    apify_token: str | None = None,
    settings: IngestorSettings | None = None,
    transport: httpx.BaseTransport | None = None,
    rate_limiter: RateLimiter | None = None,
    maintenance: MaintenanceHook | None = None,
) -> FastAPI:
    resolved = settings or load_settings()
    overrides: dict[str, Any] = {}
    if database_path is not None:
        overrides["database_path"] = database_path
    if ingest_secret is not None:
        overrides["ingest_secret"] = ingest_secret.strip() or None
    if apify_token is not None:
        overrides["apify_token"] = apify_token.strip() or None
    if overrides:
        resolved = resolved.model_copy(update=overrides)

    logging.getLogger("jobingest").setLevel(resolved.log_level.upper())
    if not resolved.ingest_secret:
        LOGGER.warning(
            json.dumps(
                {
                    "event": "auth_open",
                    "fail_closed": resolved.require_secret,
                    "message": "INGEST_SECRET is not configured",
                }
            )
        )

    repository = ExternalJobRepository(database_path=resolved.database_path)
    metrics = MetricsStore()
    limiter = rate_limiter or RateLimiter(
        capacity=resolved.rate_capacity,
        refill_per_ms=resolved.rate_refill_ms,
    )
    pipeline = IngestionPipeline(
        build_source_adapters(
            resolved.apify_token,
            timeout_seconds=resolved.fetch_timeout_seconds,
            deadline_seconds=resolved.fetch_deadline_seconds,
            transport=transport,
        ),
        UpsertCoordinator(repository),
        rate_limiter=limiter,
        on_complete=metrics.observe_run,
    )
    maintenance_hook = maintenance or skip_maintenance

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        app.state.settings = resolved
        app.state.repository = repository
        app.state.metrics = metrics
        app.state.pipeline = pipeline
        try:
            yield
        finally:
            await run_in_threadpool(repository.close)

    app = FastAPI(title="JobIngest Ingestor", version="0.3.0", lifespan=lifespan)

    @app.exception_handler(IngestionError)
    async def ingestion_error_handler(request: Request, exc: IngestionError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        problems = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content={"error": "Invalid request: " + "; ".join(problems)},
        )

    def request_log(request: Request, status_code: int, started: float, **extra: Any) -> str:
        duration_ms = (time.perf_counter() - started) * 1000
        metrics.observe(
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            duration_ms=duration_ms,
        )
        entry = {
            "event": "request_complete",
            "request_id": request.state.request_id,
            "run_id": getattr(request.state, "run_id", None),
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 3),
            "source_ip": get_client_ip(request.headers),
        }
        entry.update(extra)
        return json.dumps(entry)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request.state.request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            LOGGER.exception(request_log(request, 500, started, error=str(exc)))
            response = JSONResponse(status_code=500, content={"error": "Internal Server Error"})
        else:
            LOGGER.info(request_log(request, response.status_code, started))

        response.headers["x-request-id"] = request.state.request_id
        run_id = getattr(request.state, "run_id", None)
        if run_id:
            response.headers[RUN_ID_HEADER] = run_id
        return response

    def require_ingest_secret(request: Request, *, allow_query_param: bool) -> None:
        secret = resolved.ingest_secret
        if not secret:
            if resolved.require_secret:
                raise MisconfigurationError("INGEST_SECRET is not configured")
            return
        candidates = [request.headers.get(SECRET_HEADER)]
        if allow_query_param:
            candidates.append(request.query_params.get("secret"))
        expected = secret.encode()
        if not any(
            candidate and secrets.compare_digest(candidate.encode(), expected)
            for candidate in candidates
        ):
            raise Unauthorized()

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "ingestor"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics_snapshot() -> MetricsSnapshot:
        return metrics.snapshot()

    @app.post("/ingest/apify", response_model=IngestResponse)
    async def ingest_apify(request: Request) -> IngestResponse:
        require_ingest_secret(request, allow_query_param=False)
        payload = parse_ingest_request(await request.body())
        trigger = build_manual_trigger(payload, resolved)
        request.state.run_id = str(uuid.uuid4())
        result = await run_in_threadpool(
            pipeline.run,
            trigger,
            run_id=request.state.run_id,
            rate_key=f"ingest:{get_client_ip(request.headers)}",
            capacity=resolved.rate_capacity,
            refill_per_ms=resolved.rate_refill_ms,
        )
        return IngestResponse(
            fetched=result.deduped_count,
            created_posts=result.created_count,
            summary=result,
        )

    @app.api_route("/cron/refresh", methods=["GET", "POST"], response_model=CronRefreshResponse)
    async def cron_refresh(request: Request) -> CronRefreshResponse:
        require_ingest_secret(request, allow_query_param=True)
        cleared = await run_in_threadpool(maintenance_hook)
        LOGGER.info(json.dumps({"event": "cron_maintenance", "cleared": cleared}, default=str))
        request.state.run_id = str(uuid.uuid4())
        result = await run_in_threadpool(
            pipeline.run,
            build_scheduled_trigger(resolved),
            run_id=request.state.run_id,
        )
        return CronRefreshResponse(
            fetched=result.deduped_count,
            created_posts=result.created_count,
            summary=result,
            cleared=cleared,
        )

    @app.get("/external-jobs", response_model=ExternalJobsResponse)
    async def list_external_jobs(
        limit: int = Query(default=50, ge=1, le=200),
        source: Provider | None = None,
    ) -> ExternalJobsResponse:
        jobs = await run_in_threadpool(repository.list_jobs, limit, source)
        return ExternalJobsResponse(jobs=jobs)

    return app


app = create_app()
