"""Pydantic wire schemas — imports everything for convenience."""

from quiz_client.schemas.attempt import (  # noqa: F401
    Attempt,
    AttemptAnswer,
    AttemptStatus,
    SubmitAnswerPayload,
    check_transition,
)
from quiz_client.schemas.common import ApiErrorBody, User, UserProfile  # noqa: F401
from quiz_client.schemas.quiz import Choice, Question, QuestionType, Quiz  # noqa: F401
from quiz_client.schemas.token import LoginRequest, RefreshRequest, RefreshResponse, TokenPair  # noqa: F401
