"""Attempt (submission) schemas and status ordering."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel

from quiz_client.core.errors import InvalidStatusTransition


class AttemptStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    GRADED = "graded"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    @property
    def is_final(self) -> bool:
        return self is not AttemptStatus.IN_PROGRESS


_STATUS_ORDER = [AttemptStatus.IN_PROGRESS, AttemptStatus.SUBMITTED, AttemptStatus.GRADED]


def check_transition(current: AttemptStatus, new: AttemptStatus) -> AttemptStatus:
    """Return *new* if moving there keeps status monotonic, else raise.

    Staying put and skipping forward (in_progress → graded for
    auto-graded quizzes) are allowed; going back never is.
    """
    if new.rank < current.rank:
        raise InvalidStatusTransition(f"Attempt status cannot move from {current.value} to {new.value}")
    return new


class QuestionRef(BaseModel):
    id: int


class ChoiceRef(BaseModel):
    id: int


class AttemptAnswer(BaseModel):
    """An answer already stored on the server (used when resuming)."""

    question: QuestionRef
    selected_choice: ChoiceRef | None = None
    text_answer: str | None = None


class Attempt(BaseModel):
    """POST /quizzes/{id}/start-submission/ and /submissions/{id}/finalize/"""

    id: int
    quiz: int
    student: int | None = None
    status: AttemptStatus
    started_at: datetime
    submitted_at: datetime | None = None
    score: Decimal | None = None
    feedback: str | None = None
    answers: list[AttemptAnswer] = []


class SubmitAnswerPayload(BaseModel):
    """POST /submissions/{id}/submit-answer/ — upsert one question's answer."""

    question_id: int
    selected_choice_id: int | None = None
    text_answer: str | None = None
