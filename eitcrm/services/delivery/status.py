"""Read model for the admin "Telegram link status" overview."""

from sqlalchemy import select

from eitcrm.common.models import Parent, Student
from eitcrm.services.delivery.models import TelegramDelivery
from eitcrm.services.delivery.schemas import TelegramStatusResponse, TelegramStatusRow, TelegramStatusStats


STATUS_FILTERS = ("all", "linked", "unlinked")


def _latest_deliveries(db, parent_ids: list[str]) -> dict[str, TelegramDelivery]:
    latest: dict[str, TelegramDelivery] = {}
    if not parent_ids:
        return latest
    rows = db.execute(
        select(TelegramDelivery)
        .where(TelegramDelivery.parent_id.in_(parent_ids))
        .order_by(TelegramDelivery.created_at.desc(), TelegramDelivery.id.desc())
    ).scalars()
    for row in rows:
        latest.setdefault(row.parent_id, row)
    return latest


def telegram_status(session_factory, q: str = "", status_filter: str = "all") -> TelegramStatusResponse:
    """Parents with their link state and most recent delivery, filtered and searched."""

    status_filter = status_filter.lower()
    if status_filter not in STATUS_FILTERS:
        raise ValueError(f"status must be one of {', '.join(STATUS_FILTERS)}")
    needle = q.strip().lower()

    with session_factory() as db:
        pairs = db.execute(
            select(Parent, Student)
            .join(Student, Parent.student_id == Student.id)
            .order_by(Parent.created_at.desc(), Parent.id)
        ).all()
        latest = _latest_deliveries(db, [parent.id for parent, _ in pairs])

    rows: list[TelegramStatusRow] = []
    for parent, student in pairs:
        delivery = latest.get(parent.id)
        row = TelegramStatusRow(
            parent_id=parent.id,
            parent_name=parent.name,
            phone=parent.phone,
            telegram_chat_id=parent.telegram_chat_id,
            link_status="LINKED" if parent.telegram_chat_id else "NOT_LINKED",
            student_name=student.name,
            group_name=student.group_name or "—",
            last_delivery_status=delivery.status if delivery else None,
            last_delivery_created_at=delivery.created_at if delivery else None,
            last_attempt_at=delivery.last_attempt_at if delivery else None,
            sent_at=delivery.sent_at if delivery else None,
            last_error=delivery.error if delivery else None,
        )
        if status_filter == "linked" and row.link_status != "LINKED":
            continue
        if status_filter == "unlinked" and row.link_status != "NOT_LINKED":
            continue
        if needle:
            haystack = " ".join(
                [row.parent_name, row.phone, row.student_name, row.group_name, row.telegram_chat_id or ""]
            ).lower()
            if needle not in haystack:
                continue
        rows.append(row)

    stats = TelegramStatusStats(
        total=len(rows),
        linked=sum(1 for row in rows if row.link_status == "LINKED"),
        unlinked=sum(1 for row in rows if row.link_status == "NOT_LINKED"),
        failed=sum(1 for row in rows if row.last_delivery_status in ("FAILED", "UNDELIVERABLE")),
    )
    return TelegramStatusResponse(rows=rows, stats=stats)
