"""One claimed delivery attempt: claim, send, record the outcome.

Shared by the dispatcher (inline first attempt) and the retry sweeper so both
callers follow the same claim protocol and backoff rules.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from eitcrm.common.logging import delivery_id_ctx, logger
from eitcrm.common.metrics import delivery_attempts_total, delivery_claim_conflicts_total
from eitcrm.common.telegram import ChatTransport, SendResult
from eitcrm.services.delivery.store import DeliveryStore


@dataclass(frozen=True, slots=True)
class AttemptOutcome:
    """What happened to one delivery row during one attempt."""

    claimed: bool
    sent: bool = False
    attempt: int = 0
    error: str | None = None
    next_retry_at: datetime | None = None
    permanent: bool = False


async def safe_send(transport: ChatTransport, chat_id: str, text: str, parse_mode: str | None) -> SendResult:
    """Call the transport, converting any escaped exception into a failed result."""

    try:
        return await transport.send_message(chat_id, text, parse_mode=parse_mode)
    except Exception as exc:
        logger.exception("transport_raised chat_id=%s", chat_id)
        return SendResult.failure(
            str(exc) or "send_message raised",
            payload={"name": exc.__class__.__name__, "message": str(exc)},
        )


async def attempt_delivery(
    store: DeliveryStore,
    transport: ChatTransport,
    record_id: str,
    now: datetime,
    *,
    max_attempts: int,
    backoff: Callable[[int], timedelta],
    caller: str,
    enforce_cap: bool = True,
    due_only: bool = False,
) -> AttemptOutcome:
    """Run one attempt on `record_id` if this caller wins the claim.

    A failed attempt is rescheduled with `backoff(attempt)` unless the provider
    error is permanent or `max_attempts` is reached, in which case the row is
    left with no `next_retry_at`.
    """

    token = delivery_id_ctx.set(record_id)
    try:
        claimed = store.claim_for_attempt(
            record_id,
            now,
            max_attempts=max_attempts if enforce_cap else None,
            due_only=due_only,
        )
        if not claimed:
            delivery_claim_conflicts_total.labels(caller=caller).inc()
            logger.info("delivery_claim_lost caller=%s", caller)
            return AttemptOutcome(claimed=False)

        row = store.get(record_id)
        attempt = row.attempt_count
        result = await safe_send(transport, row.chat_id, row.message_text, row.parse_mode)

        if result.ok:
            store.record_success(record_id, result.message_id)
            delivery_attempts_total.labels(caller=caller, outcome="sent").inc()
            logger.info("delivery_sent caller=%s attempt=%s message_id=%s", caller, attempt, result.message_id)
            return AttemptOutcome(claimed=True, sent=True, attempt=attempt)

        next_retry_at = None
        if not result.permanent and attempt < max_attempts:
            next_retry_at = datetime.now(timezone.utc) + backoff(attempt)
        error = result.error or "unknown transport error"
        store.record_failure(record_id, error, result.payload, next_retry_at, permanent=result.permanent)
        if result.permanent:
            outcome = "undeliverable"
        elif next_retry_at is None:
            outcome = "exhausted"
        else:
            outcome = "failed"
        delivery_attempts_total.labels(caller=caller, outcome=outcome).inc()
        logger.warning(
            "delivery_failed caller=%s attempt=%s outcome=%s next_retry_at=%s error=%s",
            caller,
            attempt,
            outcome,
            next_retry_at.isoformat() if next_retry_at else None,
            error,
        )
        return AttemptOutcome(
            claimed=True,
            attempt=attempt,
            error=error,
            next_retry_at=next_retry_at,
            permanent=result.permanent,
        )
    finally:
        delivery_id_ctx.reset(token)
