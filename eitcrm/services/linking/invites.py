"""One-time parent invite codes (`/start <code>` deep links)."""

import secrets
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import select

from eitcrm.common.db import dialect_insert
from eitcrm.common.errors import InviteCodeExhaustedError, StudentNotFoundError
from eitcrm.common.logging import logger
from eitcrm.common.models import Student
from eitcrm.services.linking.models import ParentInvite

INVITE_CODE_PREFIX = "eit"
MAX_CODE_ATTEMPTS = 5


def generate_invite_code() -> str:
    return INVITE_CODE_PREFIX + secrets.token_hex(5)


class InviteService:
    """Issues invite codes; collisions are retried, never surfaced as errors."""

    def __init__(self, session_factory, code_factory=generate_invite_code) -> None:
        self.session_factory = session_factory
        self.code_factory = code_factory

    def create_invite(self, student_id: str) -> ParentInvite:
        table = ParentInvite.__table__
        with self.session_factory() as db:
            if db.get(Student, student_id) is None:
                raise StudentNotFoundError(f"student {student_id} not found")

            for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
                code = self.code_factory()
                stmt = (
                    dialect_insert(db, table)
                    .values(
                        id=str(uuid4()),
                        code=code,
                        student_id=student_id,
                        status="ACTIVE",
                        created_at=datetime.now(timezone.utc),
                    )
                    .on_conflict_do_nothing(index_elements=["code"])
                    .returning(table.c.id)
                )
                invite_id = db.execute(stmt).scalar_one_or_none()
                if invite_id is not None:
                    db.commit()
                    logger.info("invite_created student_id=%s invite_id=%s", student_id, invite_id)
                    return db.scalars(select(ParentInvite).where(ParentInvite.id == invite_id)).one()
                logger.warning("invite_code_collision student_id=%s attempt=%s", student_id, attempt)

        raise InviteCodeExhaustedError(f"could not allocate a unique invite code after {MAX_CODE_ATTEMPTS} attempts")
