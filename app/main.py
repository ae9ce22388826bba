import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any, Callable
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.errors import ApiError, error_response
from app.logging_utils import setup_json_logging
from app.routers import admin, attendance
from app.services.checkin_requests import expire_checkin_requests
from app.services.reminder_scheduler import run_reminder_tick, run_weekly_summary_tick
from app.services.shifts import mark_stale
from app.settings import get_cors_origins, get_settings, is_native_push_enabled, is_push_enabled

settings = get_settings()
setup_json_logging(settings.log_level, service=settings.app_name)
logger = logging.getLogger("app.request")
scheduler_worker_logger = logging.getLogger("app.scheduler_worker")


app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_HTTP_ERROR_CODES = {
    401: "INVALID_TOKEN",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
}


def _format_validation_errors(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "Invalid request."


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or uuid4().hex
    request.state.request_id = request_id
    started = time.perf_counter()
    response = None
    try:
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        state = request.state
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code if response is not None else 500,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "actor": getattr(state, "actor", "anonymous"),
                "actor_id": getattr(state, "actor_id", None),
                "employee_id": getattr(state, "employee_id", None),
                "location_status": getattr(state, "location_status", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("api_error", extra={"code": exc.code, "path": request.url.path})
    return error_response(request, status_code=exc.status_code, code=exc.code, message=exc.message)


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=_HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
        message=str(exc.detail) if exc.detail else "Request failed.",
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=_format_validation_errors(exc),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={"request_id": getattr(request.state, "request_id", None), "path": request.url.path},
    )
    return error_response(request, status_code=500, code="INTERNAL_ERROR", message="Unexpected server error.")



app.include_router(attendance.router)
app.include_router(admin.router)


def _run_minute_tick(now_utc: datetime) -> dict[str, Any]:
    reminders = run_reminder_tick(now_utc)
    summaries = run_weekly_summary_tick(now_utc)
    return {"reminders": reminders.to_dict(), "weekly_summaries": summaries.to_dict()}


def _run_stale_sweep(now_utc: datetime) -> dict[str, Any]:
    marked = mark_stale(now_utc)
    expired = expire_checkin_requests(now_utc)
    return {"marked_stale": len(marked), "expired_requests": len(expired)}


async def _worker_loop(
    stop_event: asyncio.Event,
    *,
    name: str,
    interval_seconds: int,
    job: Callable[[datetime], dict[str, Any]],
) -> None:
    while not stop_event.is_set():
        try:
            result = await asyncio.to_thread(job, datetime.now(timezone.utc))
        except Exception:
            scheduler_worker_logger.exception("scheduler_worker_tick_failed", extra={"worker": name})
        else:
            scheduler_worker_logger.info("scheduler_worker_tick", extra={"worker": name, **result})

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def start_scheduler_workers() -> None:
    if not settings.scheduler_worker_enabled:
        return
    if getattr(app.state, "scheduler_worker_tasks", None):
        return

    stop_event = asyncio.Event()
    tick_interval = max(15, int(settings.scheduler_interval_seconds))
    sweep_interval = max(60, int(settings.stale_sweep_interval_seconds))
    app.state.scheduler_worker_stop_event = stop_event
    app.state.scheduler_worker_tasks = [
        asyncio.create_task(
            _worker_loop(stop_event, name="reminders", interval_seconds=tick_interval, job=_run_minute_tick)
        ),
        asyncio.create_task(
            _worker_loop(stop_event, name="stale_sweep", interval_seconds=sweep_interval, job=_run_stale_sweep)
        ),
    ]
    if not is_push_enabled():
        scheduler_worker_logger.warning("push_channel_not_configured", extra={"channel": "web"})
    if not is_native_push_enabled():
        scheduler_worker_logger.warning("push_channel_not_configured", extra={"channel": "native"})
    scheduler_worker_logger.info(
        "scheduler_worker_started",
        extra={"interval_seconds": tick_interval, "stale_sweep_interval_seconds": sweep_interval},
    )


@app.on_event("shutdown")
async def stop_scheduler_workers() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "scheduler_worker_stop_event", None)
    tasks: list[asyncio.Task[None]] = getattr(app.state, "scheduler_worker_tasks", None) or []
    if stop_event is not None:
        stop_event.set()
    for task in tasks:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.scheduler_worker_stop_event = None
    app.state.scheduler_worker_tasks = None


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "push_enabled": is_push_enabled(),
        "native_push_enabled": is_native_push_enabled(),
        "scheduler_worker_enabled": settings.scheduler_worker_enabled,
    }
