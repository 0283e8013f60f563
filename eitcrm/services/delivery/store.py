"""DeliveryStore: the durable, idempotent record of outbound Telegram messages.

Every method is its own short unit of work. Concurrency safety rests entirely
on `claim_for_attempt` being one conditional UPDATE: whoever gets rowcount 1
owns the attempt, everyone else backs off.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import func, or_, select, update

from eitcrm.common.db import dialect_insert
from eitcrm.common.metrics import deliveries_backlog_total, deliveries_oldest_due_age_seconds
from eitcrm.common.state_machine import RETRYABLE_DELIVERY_STATUSES, sources_for
from eitcrm.services.delivery.models import TelegramDelivery


@dataclass(frozen=True, slots=True)
class CreateResult:
    """Outcome of a bulk `create_if_absent`: rows inserted vs. already present."""

    created: int
    existing: int


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""

    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def json_safe(value: Any) -> Any:
    """Round-trip through JSON so provider payloads always fit the JSON column."""

    if value is None:
        return None
    try:
        return json.loads(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return {"unserializable": repr(value)}


class DeliveryStore:
    """Persistence operations for `telegram_deliveries`."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def create_if_absent(self, records: list[dict]) -> CreateResult:
        """Insert candidate rows; rows hitting (idempotency_key, parent_id) are skipped."""

        if not records:
            return CreateResult(created=0, existing=0)
        table = TelegramDelivery.__table__
        now = datetime.now(timezone.utc)
        rows = [
            {
                "id": str(uuid4()),
                "status": "PENDING",
                "attempt_count": 0,
                "created_at": now,
                "updated_at": now,
                **record,
            }
            for record in records
        ]
        with self.session_factory() as db:
            stmt = (
                dialect_insert(db, table)
                .values(rows)
                .on_conflict_do_nothing(index_elements=["idempotency_key", "parent_id"])
                .returning(table.c.id)
            )
            created_ids = db.execute(stmt).scalars().all()
            db.commit()
        return CreateResult(created=len(created_ids), existing=len(rows) - len(created_ids))

    def find_for_key(self, idempotency_key: str, parent_ids: list[str]) -> list[TelegramDelivery]:
        if not parent_ids:
            return []
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(TelegramDelivery)
                    .where(
                        TelegramDelivery.idempotency_key == idempotency_key,
                        TelegramDelivery.parent_id.in_(parent_ids),
                    )
                    .order_by(TelegramDelivery.created_at, TelegramDelivery.id)
                ).scalars()
            )

    def get(self, record_id: str) -> TelegramDelivery | None:
        with self.session_factory() as db:
            return db.get(TelegramDelivery, record_id)

    def claim_for_attempt(
        self,
        record_id: str,
        now: datetime,
        max_attempts: int | None = None,
        due_only: bool = False,
    ) -> bool:
        """Atomically take ownership of the next attempt on one row.

        Increments `attempt_count` by exactly one and stamps `last_attempt_at`,
        but only while the row is still PENDING/FAILED (and, when asked, below
        the attempt cap and due). The previous error stays on the row until an
        outcome overwrites it.
        """

        table = TelegramDelivery.__table__
        conditions = [table.c.id == record_id, table.c.status.in_(RETRYABLE_DELIVERY_STATUSES)]
        if max_attempts is not None:
            conditions.append(table.c.attempt_count < max_attempts)
        if due_only:
            conditions.append(or_(table.c.next_retry_at.is_(None), table.c.next_retry_at <= now))
        with self.session_factory() as db:
            result = db.execute(
                update(table)
                .where(*conditions)
                .values(attempt_count=table.c.attempt_count + 1, last_attempt_at=now, updated_at=now)
            )
            db.commit()
        return result.rowcount == 1

    def record_success(self, record_id: str, message_id: int | None) -> bool:
        """Mark a claimed row SENT. Terminal."""

        table = TelegramDelivery.__table__
        now = datetime.now(timezone.utc)
        with self.session_factory() as db:
            result = db.execute(
                update(table)
                .where(table.c.id == record_id, table.c.status.in_(sources_for("delivery", "SENT")))
                .values(
                    status="SENT",
                    sent_at=now,
                    telegram_message_id=message_id,
                    next_retry_at=None,
                    error=None,
                    error_payload=None,
                    updated_at=now,
                )
            )
            db.commit()
        return result.rowcount == 1

    def record_failure(
        self,
        record_id: str,
        error: str,
        error_payload: Any,
        next_retry_at: datetime | None,
        permanent: bool = False,
    ) -> bool:
        """Store a failed attempt.

        `next_retry_at=None` on a FAILED row means the attempt cap was reached;
        the row stays inspectable but no sweep will pick it up again. Permanent
        provider errors go straight to UNDELIVERABLE.
        """

        table = TelegramDelivery.__table__
        status = "UNDELIVERABLE" if permanent else "FAILED"
        with self.session_factory() as db:
            result = db.execute(
                update(table)
                .where(table.c.id == record_id, table.c.status.in_(sources_for("delivery", status)))
                .values(
                    status=status,
                    error=error,
                    error_payload=json_safe(error_payload),
                    next_retry_at=None if permanent else next_retry_at,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            db.commit()
        return result.rowcount == 1

    def find_due_for_retry(
        self,
        now: datetime,
        limit: int,
        include_pending: bool,
        max_attempts: int,
    ) -> list[TelegramDelivery]:
        """Oldest-due-first batch of rows a sweep may retry.

        A NULL `next_retry_at` means "due now" and sorts ahead of scheduled rows.
        """

        statuses = ["FAILED", "PENDING"] if include_pending else ["FAILED"]
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(TelegramDelivery)
                    .where(
                        TelegramDelivery.status.in_(statuses),
                        or_(TelegramDelivery.next_retry_at.is_(None), TelegramDelivery.next_retry_at <= now),
                        TelegramDelivery.attempt_count < max_attempts,
                    )
                    .order_by(
                        TelegramDelivery.next_retry_at.asc().nulls_first(),
                        TelegramDelivery.created_at.asc(),
                        TelegramDelivery.id.asc(),
                    )
                    .limit(limit)
                ).scalars()
            )

    def update_backlog_metrics(self, now: datetime, max_attempts: int) -> dict[str, Any]:
        """Refresh backlog gauges and return the snapshot for logging."""

        table = TelegramDelivery.__table__
        with self.session_factory() as db:
            counts = dict(
                db.execute(
                    select(table.c.status, func.count())
                    .where(table.c.status.in_(RETRYABLE_DELIVERY_STATUSES))
                    .group_by(table.c.status)
                ).all()
            )
            oldest_due = db.execute(
                select(func.min(table.c.created_at)).where(
                    table.c.status.in_(RETRYABLE_DELIVERY_STATUSES),
                    table.c.attempt_count < max_attempts,
                    or_(table.c.next_retry_at.is_(None), table.c.next_retry_at <= now),
                )
            ).scalar_one()
        age_seconds = 0.0
        oldest_due = as_utc(oldest_due)
        if oldest_due is not None:
            age_seconds = max(0.0, (now - oldest_due).total_seconds())
        for status in RETRYABLE_DELIVERY_STATUSES:
            deliveries_backlog_total.labels(status=status).set(float(counts.get(status, 0)))
        deliveries_oldest_due_age_seconds.set(age_seconds)
        return {"pending": counts.get("PENDING", 0), "failed": counts.get("FAILED", 0), "oldest_due_age_s": age_seconds}
