"""Linking service: Telegram webhook receiver and parent invite issuing."""

from datetime import timedelta

from fastapi import Depends, FastAPI, Header, HTTPException, Request

from eitcrm.common.config import settings
from eitcrm.common.db import SessionLocal
from eitcrm.common.errors import InviteCodeExhaustedError, StudentNotFoundError
from eitcrm.common.http import add_metrics_middleware, enforce_secret
from eitcrm.common.logging import configure_logging, logger
from eitcrm.common.metrics import metrics_response, webhook_updates_total
from eitcrm.common.startup import log_startup_config
from eitcrm.common.telegram import TelegramTransport
from eitcrm.common.tracing import instrument_app, setup_tracing
from eitcrm.services.linking.invites import InviteService
from eitcrm.services.linking.processor import WebhookProcessor
from eitcrm.services.linking.schemas import InviteCreateRequest, InviteResponse, WebhookAck

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
        "TELEGRAM_WEBHOOK_SECRET",
        "PENDING_LINK_TTL_MINUTES",
    ],
)

transport = TelegramTransport(
    settings.telegram_bot_token,
    api_base=settings.telegram_api_base,
    timeout_seconds=settings.telegram_timeout_seconds,
)
webhook_processor = WebhookProcessor(
    SessionLocal,
    transport,
    pending_link_ttl=timedelta(minutes=settings.pending_link_ttl_minutes),
)
invite_service = InviteService(SessionLocal)


def get_processor() -> WebhookProcessor:
    return webhook_processor


def get_invite_service() -> InviteService:
    return invite_service


def _deep_link(code: str) -> str | None:
    if not settings.telegram_bot_username:
        return None
    return f"https://t.me/{settings.telegram_bot_username}?start={code}"


app = FastAPI(title="EIT CRM Telegram Linking")
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


@app.post("/telegram/webhook", response_model=WebhookAck)
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: str | None = Header(default=None),
    processor: WebhookProcessor = Depends(get_processor),
):
    """Receive one bot update. Business failures are acknowledged, not retried."""

    if not settings.telegram_webhook_secret:
        logger.error("webhook_secret_not_configured")
    enforce_secret(settings.telegram_webhook_secret, x_telegram_bot_api_secret_token, "Unauthorized")
    try:
        body = await request.json()
    except ValueError as exc:
        webhook_updates_total.labels(kind="unknown", status="BAD_JSON").inc()
        raise HTTPException(status_code=400, detail="Bad JSON") from exc

    await processor.handle(body)
    return WebhookAck()


@app.post("/admin/parent-invites", response_model=InviteResponse)
def create_parent_invite(
    req: InviteCreateRequest,
    x_admin_secret: str | None = Header(default=None),
    invites: InviteService = Depends(get_invite_service),
):
    """Issue a one-time `/start <code>` invite for a student's parent."""

    enforce_secret(settings.admin_api_secret, x_admin_secret, "Unauthorized")
    try:
        invite = invites.create_invite(req.student_id)
    except StudentNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Student not found") from exc
    except InviteCodeExhaustedError as exc:
        raise HTTPException(status_code=500, detail="Failed to generate code") from exc
    return InviteResponse(
        invite_id=invite.id,
        code=invite.code,
        student_id=invite.student_id,
        deep_link=_deep_link(invite.code),
    )
