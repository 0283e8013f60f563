"""Seed a few students and parents for local runs of both services.

Creates tables through the ORM metadata when `--create-tables` is given, which
is handy against a throwaway database; real deployments use the alembic
revisions instead.
"""

import argparse

from sqlalchemy import select

from eitcrm.common.db import Base, SessionLocal, engine
from eitcrm.common.models import Parent, Student
from eitcrm.services.delivery import models as delivery_models  # noqa: F401
from eitcrm.services.linking import models as linking_models  # noqa: F401

DEMO_STUDENTS = [
    ("Ali Karimov", "A2 Morning", [("Dilnoza Karimova", "+998901112233"), ("Rustam Karimov", "998901112234")]),
    ("Madina Yusupova", "B1 Evening", [("Nodira Yusupova", "901112235")]),
    ("Timur Aliev", "IELTS", []),
]


def seed(create_tables: bool) -> int:
    """Insert demo rows that are not already present; returns rows created."""

    if create_tables:
        Base.metadata.create_all(engine)

    created = 0
    with SessionLocal() as db:
        for student_name, group_name, parents in DEMO_STUDENTS:
            student = db.scalars(select(Student).where(Student.name == student_name)).first()
            if student is None:
                student = Student(name=student_name, group_name=group_name)
                db.add(student)
                db.flush()
                created += 1
            for parent_name, phone in parents:
                exists = db.scalars(
                    select(Parent).where(Parent.student_id == student.id, Parent.phone == phone)
                ).first()
                if exists is None:
                    db.add(Parent(student_id=student.id, name=parent_name, phone=phone))
                    created += 1
        db.commit()
    return created


def main() -> None:
    """CLI entrypoint for demo data seeding."""

    parser = argparse.ArgumentParser(description="Seed demo students and parents.")
    parser.add_argument("--create-tables", action="store_true")
    args = parser.parse_args()

    print(f"Seeded {seed(args.create_tables)} rows.")


if __name__ == "__main__":
    main()
