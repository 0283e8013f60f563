"""WebhookProcessor: idempotent handling of Telegram bot updates.

Every update is first stored by `update_id`; a replay of an id already seen is
a no-op. Recognized updates are routed to one of the linking flows:

* `/start` asks for the user's phone via a contact-request keyboard;
* a shared contact proposes a parent match and waits for a yes/no callback;
* `link_yes:<id>` / `link_no:<id>` callbacks confirm or reject that proposal;
* `/start <code>` binds the chat directly using a one-time invite code.

The update row is finalised exactly once (PROCESSED, IGNORED or ERROR).
Failures never propagate to the webhook route; Telegram always gets an ack.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from eitcrm.common.db import dialect_insert
from eitcrm.common.logging import logger, update_id_ctx
from eitcrm.common.metrics import duplicate_updates_skipped_total, parents_linked_total, webhook_updates_total
from eitcrm.common.models import AnalyticsEvent, Parent, Student
from eitcrm.common.state_machine import sources_for, validate_transition
from eitcrm.common.telegram import REMOVE_KEYBOARD, ChatTransport, contact_request_keyboard, inline_keyboard
from eitcrm.services.delivery.store import as_utc
from eitcrm.services.linking import messages
from eitcrm.services.linking.models import ParentInvite, TelegramPendingLink, TelegramUpdate
from eitcrm.services.linking.phones import compact_phone_column, lookup_variants
from eitcrm.services.linking.updates import (
    CallbackUpdate,
    MessageUpdate,
    RecognizedUpdate,
    UnrecognizedUpdate,
    parse_update,
    update_kind,
)

UNKNOWN_PHONE = "UNKNOWN"


@dataclass(frozen=True, slots=True)
class WebhookOutcome:
    """What happened to one webhook call; DUPLICATE and SKIPPED store nothing new."""

    update_id: int | None
    status: str
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class Resolution:
    status: str
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class _Reply:
    """A route decision taken inside a DB session, sent after it closes."""

    resolution: Resolution
    text: str | None = None
    callback_text: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _start_code(text: str) -> str | None:
    """Return the `/start` payload ("" when bare), or None for other text."""

    command, _, argument = text.strip().partition(" ")
    if command.split("@", 1)[0] != "/start":
        return None
    parts = argument.split()
    return parts[0] if parts else ""


class WebhookProcessor:
    """Routes stored Telegram updates to the linking flows."""

    def __init__(
        self,
        session_factory,
        transport: ChatTransport,
        pending_link_ttl: timedelta = timedelta(minutes=15),
    ) -> None:
        self.session_factory = session_factory
        self.transport = transport
        self.pending_link_ttl = pending_link_ttl

    async def handle(self, body: Any) -> WebhookOutcome:
        update_id = body.get("update_id") if isinstance(body, dict) else None
        if not isinstance(update_id, int) or isinstance(update_id, bool):
            webhook_updates_total.labels(kind="unknown", status="SKIPPED").inc()
            logger.warning("webhook_update_without_id")
            return WebhookOutcome(update_id=None, status="SKIPPED", reason="missing update_id")

        token = update_id_ctx.set(str(update_id))
        try:
            return await self._handle(update_id, body)
        finally:
            update_id_ctx.reset(token)

    async def _handle(self, update_id: int, body: dict) -> WebhookOutcome:
        parsed = parse_update(body)
        kind = update_kind(parsed)

        try:
            stored = self._store(update_id, body, kind)
        except SQLAlchemyError:
            logger.exception("webhook_store_failed kind=%s", kind)
            webhook_updates_total.labels(kind=kind, status="STORE_FAILED").inc()
            return WebhookOutcome(update_id=update_id, status="ERROR", reason="could not persist update")
        if not stored:
            duplicate_updates_skipped_total.inc()
            webhook_updates_total.labels(kind=kind, status="DUPLICATE").inc()
            logger.info("webhook_duplicate_update kind=%s", kind)
            return WebhookOutcome(update_id=update_id, status="DUPLICATE")

        try:
            resolution = await self._route(parsed)
        except Exception as exc:
            logger.exception("webhook_processing_failed kind=%s", kind)
            resolution = Resolution("ERROR", f"{exc.__class__.__name__}: {exc}")
            if isinstance(parsed, MessageUpdate):
                await self.transport.send_message(parsed.chat_id, messages.SERVER_ERROR)
            elif isinstance(parsed, CallbackUpdate):
                await self.transport.answer_callback_query(parsed.callback_id, messages.CALLBACK_SERVER_ERROR)

        self._finalize(update_id, resolution)
        webhook_updates_total.labels(kind=kind, status=resolution.status).inc()
        logger.info("webhook_update_done kind=%s status=%s reason=%s", kind, resolution.status, resolution.reason)
        return WebhookOutcome(update_id=update_id, status=resolution.status, reason=resolution.reason)

    def _store(self, update_id: int, body: dict, kind: str) -> bool:
        """Insert the inbox row; False means this update_id was already seen."""

        table = TelegramUpdate.__table__
        with self.session_factory() as db:
            stmt = (
                dialect_insert(db, table)
                .values(
                    update_id=update_id,
                    payload=body,
                    kind=kind,
                    status="RECEIVED",
                    received_at=_utcnow(),
                )
                .on_conflict_do_nothing(index_elements=["update_id"])
                .returning(table.c.update_id)
            )
            inserted = db.execute(stmt).scalar_one_or_none()
            db.commit()
        return inserted is not None

    def _finalize(self, update_id: int, resolution: Resolution) -> None:
        validate_transition("update", "RECEIVED", resolution.status)
        try:
            with self.session_factory() as db:
                result = db.execute(
                    update(TelegramUpdate)
                    .where(
                        TelegramUpdate.update_id == update_id,
                        TelegramUpdate.status.in_(sources_for("update", resolution.status)),
                    )
                    .values(status=resolution.status, error=resolution.reason, processed_at=_utcnow())
                    .execution_options(synchronize_session=False)
                )
                db.commit()
        except SQLAlchemyError:
            logger.exception("webhook_finalize_failed status=%s", resolution.status)
            return
        if result.rowcount != 1:
            logger.warning("webhook_update_already_final status=%s", resolution.status)

    async def _route(self, parsed: RecognizedUpdate) -> Resolution:
        if isinstance(parsed, UnrecognizedUpdate):
            return Resolution("IGNORED", parsed.reason)
        if isinstance(parsed, CallbackUpdate):
            return await self._handle_callback(parsed)

        code = _start_code(parsed.text)
        if code == "":
            await self.transport.send_message(
                parsed.chat_id,
                messages.START_PROMPT,
                reply_markup=contact_request_keyboard(messages.CONTACT_BUTTON),
            )
            return Resolution("PROCESSED")
        if code is not None:
            return await self._link_by_invite(parsed, code)
        if parsed.contact is not None:
            return await self._propose_link(parsed)
        return Resolution("IGNORED", "Unsupported message")

    async def _send(self, chat_id: str, reply: _Reply, reply_markup: dict | None = None) -> Resolution:
        if reply.text:
            await self.transport.send_message(chat_id, reply.text, reply_markup=reply_markup)
        return reply.resolution

    # ---- invite codes -------------------------------------------------------

    async def _link_by_invite(self, msg: MessageUpdate, code: str) -> Resolution:
        reply = self._bind_with_invite(msg, code, _utcnow())
        if reply.resolution.status == "PROCESSED" and reply.resolution.reason is None:
            parents_linked_total.labels(method="invite_code").inc()
        return await self._send(msg.chat_id, reply)

    def _bind_with_invite(self, msg: MessageUpdate, code: str, now: datetime) -> _Reply:
        with self.session_factory() as db:
            invite = db.scalars(select(ParentInvite).where(ParentInvite.code == code)).one_or_none()
            if invite is None or invite.status != "ACTIVE":
                return _Reply(Resolution("IGNORED", "Invalid invite"), messages.INVITE_INVALID)

            parents = list(
                db.scalars(
                    select(Parent)
                    .where(Parent.student_id == invite.student_id)
                    .order_by(Parent.created_at, Parent.id)
                )
            )
            if any(parent.telegram_chat_id == msg.chat_id for parent in parents):
                return _Reply(Resolution("PROCESSED", "Chat already linked"), messages.ALREADY_CONNECTED)
            unlinked = [parent for parent in parents if not parent.telegram_chat_id]
            if parents and not unlinked:
                return _Reply(Resolution("PROCESSED", "All parents already linked"), messages.ALREADY_LINKED)

            if unlinked:
                parent_id = unlinked[0].id
                bound = db.execute(
                    update(Parent)
                    .where(Parent.id == parent_id, Parent.telegram_chat_id.is_(None))
                    .values(telegram_chat_id=msg.chat_id)
                    .execution_options(synchronize_session=False)
                ).rowcount
            else:
                parent = Parent(
                    student_id=invite.student_id,
                    name=msg.sender_name or "Parent",
                    phone=UNKNOWN_PHONE,
                    telegram_chat_id=msg.chat_id,
                    created_at=now,
                )
                db.add(parent)
                db.flush()
                parent_id = parent.id
                bound = 1

            validate_transition("invite", invite.status, "USED")
            consumed = db.execute(
                update(ParentInvite)
                .where(ParentInvite.id == invite.id, ParentInvite.status.in_(sources_for("invite", "USED")))
                .values(status="USED", used_at=now, parent_id=parent_id)
                .execution_options(synchronize_session=False)
            ).rowcount
            if bound != 1 or consumed != 1:
                db.rollback()
                logger.warning("invite_bind_race_lost invite_id=%s bound=%s consumed=%s", invite.id, bound, consumed)
                return _Reply(Resolution("IGNORED", "Invite race lost"), messages.INVITE_INVALID)

            db.add(
                AnalyticsEvent(
                    name="parent_linked",
                    actor_type="PARENT",
                    actor_id=parent_id,
                    student_id=invite.student_id,
                    props={"method": "invite_code", "invite_id": invite.id},
                    created_at=now,
                )
            )
            db.commit()
            logger.info("parent_linked method=invite_code parent_id=%s student_id=%s", parent_id, invite.student_id)
        return _Reply(Resolution("PROCESSED"), messages.INVITE_LINKED)

    # ---- contact share ------------------------------------------------------

    async def _propose_link(self, msg: MessageUpdate) -> Resolution:
        contact = msg.contact
        if msg.from_id is None or contact.user_id != msg.from_id:
            return await self._send(
                msg.chat_id, _Reply(Resolution("IGNORED", "Contact user mismatch"), messages.CONTACT_NOT_OWN)
            )

        now = _utcnow()
        variants = lookup_variants(contact.phone_number)
        with self.session_factory() as db:
            row = db.execute(
                select(Parent, Student)
                .join(Student, Parent.student_id == Student.id)
                .where(compact_phone_column(Parent.phone).in_(variants))
                # Prefer a parent row still waiting for a chat when one phone has several.
                .order_by(Parent.telegram_chat_id.is_not(None), Parent.created_at, Parent.id)
                .limit(1)
            ).first()
            if row is None:
                reply = _Reply(Resolution("IGNORED", "Phone not found"), messages.PHONE_NOT_FOUND)
            elif row.Parent.telegram_chat_id == msg.chat_id:
                reply = _Reply(Resolution("PROCESSED", "Chat already linked"), messages.ALREADY_CONNECTED)
            elif row.Parent.telegram_chat_id:
                reply = _Reply(Resolution("IGNORED", "Parent linked to another chat"), messages.PARENT_LINKED_ELSEWHERE)
            else:
                pending_id = self._upsert_pending(db, msg.chat_id, row.Parent, now)
                db.commit()
                student_name, group_name = row.Student.name, row.Student.group_name
                reply = None

        if reply is not None:
            return await self._send(msg.chat_id, reply)

        logger.info("pending_link_created pending_id=%s parent_id=%s", pending_id, row.Parent.id)
        await self.transport.send_message(
            msg.chat_id,
            messages.confirm_prompt(student_name, group_name),
            reply_markup=inline_keyboard(messages.confirm_buttons(pending_id)),
        )
        return Resolution("PROCESSED")

    def _upsert_pending(self, db, chat_id: str, parent: Parent, now: datetime) -> str:
        """Create or replace this chat's proposal; returns the new proposal id.

        A refresh always gets a fresh id, so buttons from the replaced proposal
        no longer resolve.
        """

        table = TelegramPendingLink.__table__
        pending_id = str(uuid4())
        stmt = dialect_insert(db, table).values(
            id=pending_id,
            chat_id=chat_id,
            parent_id=parent.id,
            student_id=parent.student_id,
            status="PENDING",
            expires_at=now + self.pending_link_ttl,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["chat_id"],
            set_={
                "id": stmt.excluded.id,
                "parent_id": stmt.excluded.parent_id,
                "student_id": stmt.excluded.student_id,
                "status": stmt.excluded.status,
                "expires_at": stmt.excluded.expires_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        db.execute(stmt)
        return pending_id

    # ---- confirm / reject callbacks -----------------------------------------

    async def _handle_callback(self, cb: CallbackUpdate) -> Resolution:
        if cb.data.startswith(messages.CONFIRM_PREFIX):
            return await self._confirm(cb, cb.data[len(messages.CONFIRM_PREFIX):].strip())
        if cb.data.startswith(messages.REJECT_PREFIX):
            return await self._reject(cb, cb.data[len(messages.REJECT_PREFIX):].strip())
        await self.transport.answer_callback_query(cb.callback_id, messages.CALLBACK_UNKNOWN)
        return Resolution("IGNORED", "Unknown callback_data")

    async def _confirm(self, cb: CallbackUpdate, pending_id: str) -> Resolution:
        reply, student = self._apply_confirm(cb.chat_id, pending_id, _utcnow())
        await self.transport.answer_callback_query(cb.callback_id, reply.callback_text)
        if student is None:
            return await self._send(cb.chat_id, reply)

        parents_linked_total.labels(method="contact_confirm").inc()
        await self.transport.send_message(
            cb.chat_id,
            messages.linked_success(student.name, student.group_name),
            reply_markup=REMOVE_KEYBOARD,
        )
        return reply.resolution

    def _apply_confirm(self, chat_id: str, pending_id: str, now: datetime) -> tuple[_Reply, Student | None]:
        with self.session_factory() as db:
            pending = db.get(TelegramPendingLink, pending_id)
            if pending is None or pending.chat_id != chat_id:
                return (
                    _Reply(
                        Resolution("IGNORED", "Pending link not found"),
                        messages.PENDING_NOT_FOUND,
                        messages.CALLBACK_NOT_FOUND,
                    ),
                    None,
                )
            if pending.status != "PENDING":
                return self._stale("Pending link not PENDING"), None
            if as_utc(pending.expires_at) <= now:
                return (
                    _Reply(
                        Resolution("IGNORED", "Pending link expired"),
                        messages.PENDING_EXPIRED,
                        messages.CALLBACK_EXPIRED,
                    ),
                    None,
                )

            validate_transition("pending_link", pending.status, "CONFIRMED")
            confirmed = db.execute(
                update(TelegramPendingLink)
                .where(
                    TelegramPendingLink.id == pending.id,
                    TelegramPendingLink.status.in_(sources_for("pending_link", "CONFIRMED")),
                    TelegramPendingLink.expires_at > now,
                )
                .values(status="CONFIRMED", updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if confirmed != 1:
                db.rollback()
                return self._stale("Lost confirm race"), None

            bound = db.execute(
                update(Parent)
                .where(
                    Parent.id == pending.parent_id,
                    or_(Parent.telegram_chat_id.is_(None), Parent.telegram_chat_id == chat_id),
                )
                .values(telegram_chat_id=chat_id)
                .execution_options(synchronize_session=False)
            ).rowcount
            if bound != 1:
                db.rollback()
                return (
                    _Reply(
                        Resolution("IGNORED", "Parent linked to another chat"),
                        messages.PARENT_LINKED_ELSEWHERE,
                        messages.CALLBACK_ALREADY_HANDLED,
                    ),
                    None,
                )

            db.add(
                AnalyticsEvent(
                    name="parent_linked",
                    actor_type="PARENT",
                    actor_id=pending.parent_id,
                    student_id=pending.student_id,
                    props={"method": "contact_confirm"},
                    created_at=now,
                )
            )
            student = db.get(Student, pending.student_id)
            db.commit()
            logger.info("parent_linked method=contact_confirm parent_id=%s pending_id=%s", pending.parent_id, pending.id)
        return _Reply(Resolution("PROCESSED"), callback_text=messages.CALLBACK_LINKED), student

    @staticmethod
    def _stale(reason: str) -> _Reply:
        return _Reply(
            Resolution("IGNORED", reason),
            messages.PENDING_ALREADY_HANDLED,
            messages.CALLBACK_ALREADY_HANDLED,
        )

    async def _reject(self, cb: CallbackUpdate, pending_id: str) -> Resolution:
        reply = self._apply_reject(cb.chat_id, pending_id, _utcnow())
        await self.transport.answer_callback_query(cb.callback_id, reply.callback_text)
        return await self._send(cb.chat_id, reply)

    def _apply_reject(self, chat_id: str, pending_id: str, now: datetime) -> _Reply:
        with self.session_factory() as db:
            rejected = db.execute(
                update(TelegramPendingLink)
                .where(
                    TelegramPendingLink.id == pending_id,
                    TelegramPendingLink.chat_id == chat_id,
                    TelegramPendingLink.status.in_(sources_for("pending_link", "REJECTED")),
                )
                .values(status="REJECTED", updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if rejected == 1:
                db.commit()
                logger.info("pending_link_rejected pending_id=%s", pending_id)
                return _Reply(Resolution("PROCESSED"), messages.LINK_CANCELLED, messages.CALLBACK_ACCEPTED)

            db.rollback()
            pending = db.get(TelegramPendingLink, pending_id)
        if pending is None or pending.chat_id != chat_id:
            return _Reply(
                Resolution("IGNORED", "Pending link not found"),
                messages.PENDING_NOT_FOUND,
                messages.CALLBACK_NOT_FOUND,
            )
        return self._stale("Pending link not PENDING")
