"""RetrySweeper: externally triggered re-drive of failed/pending deliveries.

There is no in-process scheduler. A cron caller hits the sweep endpoint; each
run claims due rows one at a time, so overlapping runs never double-send.
"""

from datetime import datetime, timedelta
from typing import Callable

from eitcrm.common.http import secret_matches
from eitcrm.common.logging import logger
from eitcrm.common.metrics import sweep_runs_total
from eitcrm.common.telegram import ChatTransport
from eitcrm.services.delivery.attempts import attempt_delivery
from eitcrm.services.delivery.backoff import backoff_delay
from eitcrm.services.delivery.schemas import SweepDetail, SweepSummary
from eitcrm.services.delivery.store import DeliveryStore


class SweepUnauthorized(PermissionError):
    """The caller did not present the shared cron secret."""


def authorize_sweep(secret: str, x_cron_secret: str | None, authorization: str | None) -> None:
    """Accept `x-cron-secret: <secret>` or `Authorization: Bearer <secret>`.

    An unset secret rejects every caller.
    """

    if not secret:
        raise SweepUnauthorized("cron secret is not configured")
    if secret_matches(secret, x_cron_secret):
        return
    if secret_matches(f"Bearer {secret}", authorization):
        return
    raise SweepUnauthorized("invalid cron secret")


def clamp_limit(limit: int | None, default: int, maximum: int) -> int:
    if limit is None:
        return default
    return max(1, min(limit, maximum))


class RetrySweeper:
    """Retries due deliveries with exponential backoff up to an attempt cap."""

    def __init__(
        self,
        store: DeliveryStore,
        transport: ChatTransport,
        max_attempts: int = 10,
        backoff: Callable[[int], timedelta] | None = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.max_attempts = max_attempts
        self.backoff = backoff or backoff_delay

    async def sweep(
        self,
        now: datetime,
        limit: int = 50,
        include_pending: bool = False,
        max_attempts: int | None = None,
    ) -> SweepSummary:
        """Process at most `limit` due rows, oldest-due first."""

        cap = max_attempts or self.max_attempts
        summary = SweepSummary(now=now, limit=limit, include_pending=include_pending, max_attempts=cap)
        batch = self.store.find_due_for_retry(now, limit, include_pending, cap)
        summary.fetched = len(batch)

        for row in batch:
            outcome = await attempt_delivery(
                self.store,
                self.transport,
                row.id,
                now,
                max_attempts=cap,
                backoff=self.backoff,
                caller="sweep",
                due_only=True,
            )
            if not outcome.claimed:
                summary.skipped += 1
                summary.details.append(SweepDetail(id=row.id, status="SKIPPED"))
                continue
            summary.processed += 1
            if outcome.sent:
                summary.sent += 1
                summary.details.append(SweepDetail(id=row.id, status="SENT"))
            else:
                summary.failed += 1
                summary.details.append(SweepDetail(id=row.id, status="FAILED", error=outcome.error))

        backlog = self.store.update_backlog_metrics(now, cap)
        sweep_runs_total.labels(result="ok").inc()
        logger.info(
            "sweep_done fetched=%s processed=%s sent=%s failed=%s skipped=%s backlog=%s",
            summary.fetched,
            summary.processed,
            summary.sent,
            summary.failed,
            summary.skipped,
            backlog,
        )
        return summary
