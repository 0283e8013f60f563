"""HTTP models for the linking service."""

from pydantic import BaseModel, Field


class InviteCreateRequest(BaseModel):
    student_id: str = Field(min_length=1)


class InviteResponse(BaseModel):
    ok: bool = True
    invite_id: str
    code: str
    student_id: str
    deep_link: str | None = None


class WebhookAck(BaseModel):
    ok: bool = True
