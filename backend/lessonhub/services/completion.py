"""Contract completion detection over the lesson ledger."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session

from .unit_ledger import LessonAggregate, load_aggregate


@dataclass(frozen=True)
class CompletionResult:
    is_complete: bool
    completed_available: int
    total_available: int
    excluded: int
    total_lessons: int

    def as_payload(self) -> dict[str, int]:
        return {
            "completed_available": self.completed_available,
            "total_available": self.total_available,
            "excluded": self.excluded,
            "total_lessons": self.total_lessons,
        }


def is_complete(aggregate: LessonAggregate) -> bool:
    """Excluded lessons count toward the cap; zero available lessons never completes."""
    return (
        aggregate.completed_available + aggregate.excluded >= aggregate.total_lessons
        and aggregate.total_available > 0
    )


def completion_from_aggregate(aggregate: LessonAggregate) -> CompletionResult:
    return CompletionResult(
        is_complete=is_complete(aggregate),
        completed_available=aggregate.completed_available,
        total_available=aggregate.total_available,
        excluded=aggregate.excluded,
        total_lessons=aggregate.total_lessons,
    )


def evaluate(db: Session, contract_id: UUID) -> CompletionResult:
    """Read-only completion check. Firing the transition is the caller's job."""
    return completion_from_aggregate(load_aggregate(db, contract_id))


def summary_string(aggregate: LessonAggregate) -> str:
    """Cached contract summary, ``"completed/available"``."""
    return aggregate.summary
