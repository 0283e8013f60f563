"""Request/response schemas for delivery endpoints and service results."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class Actor(BaseModel):
    """Who caused a notification: a staff user, a parent, or the system."""

    type: Literal["USER", "PARENT", "SYSTEM"]
    id: str | None = None


class DispatchOptions(BaseModel):
    """Formatting and dedup options for one notification intent."""

    parse_mode: str | None = None
    source_type: str | None = None
    source_id: str | None = None
    idempotency_key: str | None = None
    # Ignore an active backoff window and the attempt cap.
    force: bool = False


class DispatchRequest(DispatchOptions):
    """Payload accepted by `POST /internal/dispatch`."""

    student_id: str
    message: str
    actor: Actor = Field(default_factory=lambda: Actor(type="SYSTEM"))

    def options(self) -> DispatchOptions:
        return DispatchOptions(**self.model_dump(include=set(DispatchOptions.model_fields)))


class RecipientOutcome(BaseModel):
    """Per-parent result of one dispatch call."""

    parent_id: str
    delivery_id: str | None = None
    status: Literal["SENT", "FAILED", "PENDING", "NO_CHAT"]
    error: str | None = None


class DispatchResult(BaseModel):
    student_id: str
    idempotency_key: str
    total_parents: int
    parents_with_telegram: int
    created: int
    results: list[RecipientOutcome]


class SweepDetail(BaseModel):
    id: str
    status: Literal["SENT", "FAILED", "SKIPPED"]
    error: str | None = None


class SweepSummary(BaseModel):
    """Operator-facing summary returned by the retry-sweep endpoint."""

    ok: bool = True
    now: datetime
    limit: int
    include_pending: bool
    max_attempts: int
    fetched: int = 0
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    details: list[SweepDetail] = Field(default_factory=list)


class AttendanceTally(BaseModel):
    """Monthly attendance counts for one student, computed by the CRM."""

    student_id: str
    student_name: str
    present: int = Field(ge=0)
    total: int = Field(ge=0)


class AttendanceWarningRequest(BaseModel):
    """Payload accepted by `POST /internal/attendance-warnings`."""

    month: str = Field(pattern=r"^\d{4}-\d{2}$")
    tallies: list[AttendanceTally]


class AttendanceWarningOutcome(BaseModel):
    student_id: str
    percent: float
    warned: bool
    dispatch: DispatchResult | None = None
    error: str | None = None


class TelegramStatusRow(BaseModel):
    parent_id: str
    parent_name: str
    phone: str
    telegram_chat_id: str | None
    link_status: Literal["LINKED", "NOT_LINKED"]
    student_name: str
    group_name: str
    last_delivery_status: str | None = None
    last_delivery_created_at: datetime | None = None
    last_attempt_at: datetime | None = None
    sent_at: datetime | None = None
    last_error: str | None = None


class TelegramStatusStats(BaseModel):
    total: int
    linked: int
    unlinked: int
    failed: int


class TelegramStatusResponse(BaseModel):
    rows: list[TelegramStatusRow]
    stats: TelegramStatusStats
