from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOCK_BACKEND", "memory")

from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from lessonhub.database import Base, enable_sqlite_savepoints  # noqa: E402
from lessonhub.models import Contract, ContractVariant, Student, User  # noqa: E402
from lessonhub.schemas import ContractSaveRequest  # noqa: E402
from lessonhub.use_cases.contract_lifecycle import save_contract  # noqa: E402


@pytest.fixture()
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(test_engine)
    Base.metadata.create_all(test_engine)
    yield test_engine
    Base.metadata.drop_all(test_engine)
    test_engine.dispose()


@pytest.fixture()
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(db):
    def _make(*, role: str = "teacher", name: str | None = None, is_active: bool = True) -> User:
        user = User(name=name or f"{role}-{uuid4().hex[:6]}", role=role, is_active=is_active)
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture()
def admin(make_user) -> User:
    return make_user(role="admin", name="Verwaltung")


@pytest.fixture()
def teacher(make_user) -> User:
    return make_user(role="teacher", name="Anna Berger")


@pytest.fixture()
def other_teacher(make_user) -> User:
    return make_user(role="teacher", name="Jonas Keller")


@pytest.fixture()
def make_variant(db):
    def _make(total_lessons: int | None = 10, contract_type: str = "ten_class_card") -> ContractVariant:
        variant = ContractVariant(
            name=f"{total_lessons}er Karte",
            contract_type=contract_type,
            total_lessons=total_lessons,
        )
        db.add(variant)
        db.commit()
        return variant

    return _make


@pytest.fixture()
def make_contract(db, admin, teacher, make_variant):
    def _make(*, total_lessons: int = 10, teacher_user: User | None = None, variant: ContractVariant | None = None) -> Contract:
        student = Student(name="Lena Schmidt", instrument="Klavier")
        db.add(student)
        db.commit()
        variant = variant or make_variant(total_lessons)
        result = save_contract(
            db,
            data=ContractSaveRequest(
                student_id=student.id,
                contract_variant_id=variant.id,
                teacher_id=(teacher_user or teacher).id,
            ),
            is_update=False,
            current_user=admin,
        )
        return db.get(Contract, result.contract_id)

    return _make
