"""Monthly low-attendance warnings sent through the dispatcher.

The CRM computes per-student tallies; this module decides who is below the
threshold and dispatches one warning per student per month.
"""

from eitcrm.common.errors import DispatchInputError, StudentNotFoundError
from eitcrm.common.logging import logger
from eitcrm.services.delivery.dispatcher import DeliveryDispatcher
from eitcrm.services.delivery.schemas import (
    Actor,
    AttendanceTally,
    AttendanceWarningOutcome,
    DispatchOptions,
)


def attendance_percent(present: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return present / total * 100


def warning_text(student_name: str, percent: float) -> str:
    return (
        "Уважаемые родители!\n\n"
        f"Посещаемость ученика {student_name} за выбранный месяц составляет {percent:.1f}%.\n\n"
        "Просим обратить внимание на регулярность посещения занятий.\n\n"
        "—\n\n"
        "Hurmatli ota-onalar!\n\n"
        f"{student_name} o‘quvchisining tanlangan oy uchun davomat ko‘rsatkichi {percent:.1f}% ni tashkil etadi.\n\n"
        "Iltimos, darslarga muntazam qatnashishini nazorat qiling."
    )


async def send_attendance_warnings(
    dispatcher: DeliveryDispatcher,
    month: str,
    tallies: list[AttendanceTally],
    threshold_percent: float = 70.0,
) -> list[AttendanceWarningOutcome]:
    """Warn parents of students whose attendance for `month` is below threshold.

    Keyed `ATTENDANCE_WARNING:<student>:<YYYY-MM>`, so re-running a month's scan
    never warns the same parent twice. Students with no lessons are skipped.
    """

    outcomes: list[AttendanceWarningOutcome] = []
    for tally in tallies:
        if tally.total == 0:
            continue
        percent = attendance_percent(tally.present, tally.total)
        if percent >= threshold_percent:
            outcomes.append(AttendanceWarningOutcome(student_id=tally.student_id, percent=percent, warned=False))
            continue
        try:
            result = await dispatcher.dispatch(
                tally.student_id,
                warning_text(tally.student_name, percent),
                Actor(type="SYSTEM"),
                DispatchOptions(
                    source_type="ATTENDANCE_WARNING",
                    source_id=month,
                    idempotency_key=f"ATTENDANCE_WARNING:{tally.student_id}:{month}",
                ),
            )
        except (DispatchInputError, StudentNotFoundError) as exc:
            logger.warning("attendance_warning_skipped student_id=%s error=%s", tally.student_id, exc)
            outcomes.append(
                AttendanceWarningOutcome(student_id=tally.student_id, percent=percent, warned=False, error=str(exc))
            )
            continue
        outcomes.append(
            AttendanceWarningOutcome(student_id=tally.student_id, percent=percent, warned=True, dispatch=result)
        )
    return outcomes
