"""DeliveryDispatcher: turn one notification intent into per-parent deliveries.

Producers (lesson reports, support sessions, attendance warnings) call
`dispatch`; it dedups by idempotency key, persists one row per linked parent
and makes the first attempt inline.
"""

from datetime import datetime, timedelta, timezone
from hashlib import sha256
from typing import Callable

from sqlalchemy import select

from eitcrm.common.errors import DispatchInputError, StudentNotFoundError
from eitcrm.common.logging import logger
from eitcrm.common.metrics import deliveries_created_total, deliveries_deduplicated_total
from eitcrm.common.models import Parent, Student
from eitcrm.common.telegram import ChatTransport, normalize_parse_mode
from eitcrm.services.delivery.attempts import attempt_delivery
from eitcrm.services.delivery.backoff import backoff_delay
from eitcrm.services.delivery.models import TelegramDelivery
from eitcrm.services.delivery.schemas import (
    Actor,
    DispatchOptions,
    DispatchResult,
    RecipientOutcome,
)
from eitcrm.services.delivery.store import DeliveryStore, as_utc


def derive_idempotency_key(student_id: str, message: str, actor: Actor, options: DispatchOptions) -> str:
    """Explicit key, else `source_type:source_id`, else a content hash.

    The content hash only catches accidental double submits; two legitimately
    identical messages need a source id to both go out.
    """

    if options.idempotency_key:
        return options.idempotency_key
    if options.source_type and options.source_id:
        return f"{options.source_type}:{options.source_id}"
    content = f"{student_id}|{message}|{actor.type}|{actor.id or ''}"
    return sha256(content.encode("utf-8")).hexdigest()


class DeliveryDispatcher:
    """Resolves recipients, creates delivery rows idempotently, sends inline."""

    def __init__(
        self,
        session_factory,
        store: DeliveryStore,
        transport: ChatTransport,
        max_attempts: int = 10,
        backoff: Callable[[int], timedelta] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.store = store
        self.transport = transport
        self.max_attempts = max_attempts
        self.backoff = backoff or backoff_delay

    def _load_parents(self, student_id: str) -> list[Parent]:
        with self.session_factory() as db:
            if db.get(Student, student_id) is None:
                raise StudentNotFoundError(f"Student not found: {student_id}")
            return list(
                db.execute(
                    select(Parent).where(Parent.student_id == student_id).order_by(Parent.created_at, Parent.id)
                ).scalars()
            )

    async def dispatch(
        self,
        student_id: str,
        message: str,
        actor: Actor,
        options: DispatchOptions | None = None,
    ) -> DispatchResult:
        """Deliver `message` to every linked parent of `student_id`.

        Raises only for caller mistakes (blank ids/messages, unknown student).
        Send failures are reported per parent in the returned result.
        """

        options = options or DispatchOptions()
        if not student_id or not student_id.strip():
            raise DispatchInputError("student_id is required")
        if not message or not message.strip():
            raise DispatchInputError("message is required")

        parents = self._load_parents(student_id)
        linked = [parent for parent in parents if parent.telegram_chat_id]
        key = derive_idempotency_key(student_id, message, actor, options)

        created = self.store.create_if_absent(
            [
                {
                    "student_id": student_id,
                    "parent_id": parent.id,
                    "chat_id": parent.telegram_chat_id,
                    "message_text": message,
                    "parse_mode": normalize_parse_mode(options.parse_mode),
                    "actor_type": actor.type,
                    "actor_id": actor.id,
                    "source_type": options.source_type,
                    "source_id": options.source_id,
                    "idempotency_key": key,
                }
                for parent in linked
            ]
        )
        source_label = options.source_type or "UNSPECIFIED"
        deliveries_created_total.labels(source_type=source_label).inc(created.created)
        deliveries_deduplicated_total.labels(source_type=source_label).inc(created.existing)

        # Re-read so rows from an earlier call with the same key are driven too.
        rows = {row.parent_id: row for row in self.store.find_for_key(key, [p.id for p in linked])}
        now = datetime.now(timezone.utc)
        results: list[RecipientOutcome] = []
        for parent in parents:
            if not parent.telegram_chat_id:
                results.append(RecipientOutcome(parent_id=parent.id, status="NO_CHAT"))
                continue
            row = rows.get(parent.id)
            if row is None:
                results.append(
                    RecipientOutcome(parent_id=parent.id, status="PENDING", error="delivery record not found")
                )
                continue
            results.append(await self._drive(row, now, options.force))

        logger.info(
            "dispatch_done student_id=%s key=%s parents=%s linked=%s created=%s existing=%s",
            student_id,
            key,
            len(parents),
            len(linked),
            created.created,
            created.existing,
        )
        return DispatchResult(
            student_id=student_id,
            idempotency_key=key,
            total_parents=len(parents),
            parents_with_telegram=len(linked),
            created=created.created,
            results=results,
        )

    async def _drive(self, row: TelegramDelivery, now: datetime, force: bool) -> RecipientOutcome:
        """Decide whether this row gets an attempt now and report its state."""

        if row.status == "SENT":
            return RecipientOutcome(parent_id=row.parent_id, delivery_id=row.id, status="SENT")
        if row.status == "UNDELIVERABLE":
            return RecipientOutcome(parent_id=row.parent_id, delivery_id=row.id, status="FAILED", error=row.error)

        next_retry_at = as_utc(row.next_retry_at)
        if not force and next_retry_at is not None and next_retry_at > now:
            return RecipientOutcome(parent_id=row.parent_id, delivery_id=row.id, status="PENDING", error=row.error)
        if not force and row.attempt_count >= self.max_attempts:
            return RecipientOutcome(
                parent_id=row.parent_id,
                delivery_id=row.id,
                status="FAILED",
                error=row.error or "attempt limit reached",
            )

        outcome = await attempt_delivery(
            self.store,
            self.transport,
            row.id,
            now,
            max_attempts=self.max_attempts,
            backoff=self.backoff,
            caller="dispatch",
            enforce_cap=not force,
        )
        if not outcome.claimed:
            return RecipientOutcome(parent_id=row.parent_id, delivery_id=row.id, status="PENDING")
        if outcome.sent:
            return RecipientOutcome(parent_id=row.parent_id, delivery_id=row.id, status="SENT")
        return RecipientOutcome(parent_id=row.parent_id, delivery_id=row.id, status="FAILED", error=outcome.error)
