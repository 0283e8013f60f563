"""Delivery service: dispatch endpoint for producers, retry-sweep trigger, admin views."""

from datetime import datetime, timezone
from functools import partial

from fastapi import Depends, FastAPI, Header, HTTPException, Query

from eitcrm.common.config import settings
from eitcrm.common.db import SessionLocal
from eitcrm.common.errors import DispatchInputError, StudentNotFoundError
from eitcrm.common.http import add_metrics_middleware, enforce_secret
from eitcrm.common.logging import configure_logging, logger, trace_id_ctx
from eitcrm.common.metrics import metrics_response, sweep_runs_total
from eitcrm.common.startup import log_startup_config
from eitcrm.common.telegram import TelegramTransport
from eitcrm.common.tracing import instrument_app, setup_tracing
from eitcrm.services.delivery.attendance import send_attendance_warnings
from eitcrm.services.delivery.backoff import backoff_delay
from eitcrm.services.delivery.dispatcher import DeliveryDispatcher
from eitcrm.services.delivery.schemas import (
    AttendanceWarningOutcome,
    AttendanceWarningRequest,
    DispatchRequest,
    DispatchResult,
    SweepSummary,
    TelegramStatusResponse,
)
from eitcrm.services.delivery.status import telegram_status
from eitcrm.services.delivery.store import DeliveryStore
from eitcrm.services.delivery.sweeper import RetrySweeper, SweepUnauthorized, authorize_sweep, clamp_limit

configure_logging()
if settings.tracing_enabled:
    setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "TELEGRAM_BOT_TOKEN",
        "TELEGRAM_API_BASE",
        "CRON_SECRET",
        "DELIVERY_MAX_ATTEMPTS",
        "DELIVERY_BACKOFF_BASE_SECONDS",
    ],
)

transport = TelegramTransport(
    settings.telegram_bot_token,
    api_base=settings.telegram_api_base,
    timeout_seconds=settings.telegram_timeout_seconds,
)
backoff = partial(
    backoff_delay,
    base_seconds=settings.delivery_backoff_base_seconds,
    cap_seconds=settings.delivery_backoff_cap_seconds,
    jitter_seconds=settings.delivery_backoff_jitter_seconds,
)
store = DeliveryStore(SessionLocal)
delivery_dispatcher = DeliveryDispatcher(
    SessionLocal,
    store,
    transport,
    max_attempts=settings.delivery_max_attempts,
    backoff=backoff,
)
retry_sweeper = RetrySweeper(store, transport, max_attempts=settings.delivery_max_attempts, backoff=backoff)


def get_dispatcher() -> DeliveryDispatcher:
    return delivery_dispatcher


def get_sweeper() -> RetrySweeper:
    return retry_sweeper


def get_session_factory():
    return SessionLocal


def _dispatch_error(exc: Exception) -> HTTPException:
    """Map dispatcher input errors to HTTP status codes."""

    if isinstance(exc, StudentNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


app = FastAPI(title="EIT CRM Telegram Delivery")
add_metrics_middleware(app, settings.service_name)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.post("/internal/dispatch", response_model=DispatchResult)
async def dispatch(
    req: DispatchRequest,
    x_api_key: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
):
    """Deliver one notification to a student's linked parents (idempotent)."""

    enforce_secret(settings.api_key, x_api_key, "invalid API key")
    if x_trace_id:
        trace_id_ctx.set(x_trace_id)
    try:
        return await dispatcher.dispatch(req.student_id, req.message, req.actor, req.options())
    except (DispatchInputError, StudentNotFoundError) as exc:
        raise _dispatch_error(exc) from exc


async def _run_sweep(
    limit: int | None,
    include_pending: str | None,
    x_cron_secret: str | None,
    authorization: str | None,
    sweeper: RetrySweeper,
) -> SweepSummary:
    try:
        authorize_sweep(settings.cron_secret, x_cron_secret, authorization)
    except SweepUnauthorized as exc:
        sweep_runs_total.labels(result="unauthorized").inc()
        logger.warning("sweep_rejected reason=%s", exc)
        raise HTTPException(status_code=401, detail="Unauthorized") from exc
    return await sweeper.sweep(
        datetime.now(timezone.utc),
        limit=clamp_limit(limit, settings.sweep_default_limit, settings.sweep_max_limit),
        include_pending=include_pending in ("1", "true"),
    )


@app.post("/cron/telegram-deliveries", response_model=SweepSummary)
async def sweep_deliveries(
    limit: int | None = None,
    include_pending: str | None = Query(default=None, alias="includePending"),
    x_cron_secret: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
    sweeper: RetrySweeper = Depends(get_sweeper),
):
    """Retry due FAILED (and optionally PENDING) deliveries."""

    return await _run_sweep(limit, include_pending, x_cron_secret, authorization, sweeper)


@app.get("/cron/telegram-deliveries", response_model=SweepSummary)
async def sweep_deliveries_get(
    limit: int | None = None,
    include_pending: str | None = Query(default=None, alias="includePending"),
    x_cron_secret: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
    sweeper: RetrySweeper = Depends(get_sweeper),
):
    """Same as POST; some cron providers can only issue GET requests."""

    return await _run_sweep(limit, include_pending, x_cron_secret, authorization, sweeper)


@app.post("/internal/attendance-warnings", response_model=list[AttendanceWarningOutcome])
async def attendance_warnings(
    req: AttendanceWarningRequest,
    x_api_key: str | None = Header(default=None),
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
):
    """Warn parents of students under the monthly attendance threshold."""

    enforce_secret(settings.api_key, x_api_key, "invalid API key")
    return await send_attendance_warnings(
        dispatcher,
        req.month,
        req.tallies,
        threshold_percent=settings.attendance_warning_threshold_percent,
    )


@app.get("/admin/telegram-status", response_model=TelegramStatusResponse)
def admin_telegram_status(
    q: str = "",
    status: str = "all",
    x_admin_secret: str | None = Header(default=None),
    session_factory=Depends(get_session_factory),
):
    """Parents' Telegram link state with their latest delivery."""

    enforce_secret(settings.admin_api_secret, x_admin_secret, "Unauthorized")
    try:
        return telegram_status(session_factory, q=q, status_filter=status)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
