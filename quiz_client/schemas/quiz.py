"""Quiz schemas."""

from enum import Enum

from pydantic import BaseModel


class QuestionType(str, Enum):
    SINGLE_CHOICE = "SC"
    MULTIPLE_CHOICE = "MC"
    TRUE_FALSE = "TF"
    TEXT = "TEXT"


class Choice(BaseModel):
    id: int
    text: str


class Question(BaseModel):
    """Single question inside a quiz response."""

    id: int
    text: str
    question_type: QuestionType
    order: int = 0
    choices: list[Choice] = []

    @property
    def accepts_text(self) -> bool:
        return self.question_type == QuestionType.TEXT

    def has_choice(self, choice_id: int) -> bool:
        return any(c.id == choice_id for c in self.choices)


class Quiz(BaseModel):
    """GET /quizzes/{id}/"""

    id: int
    title: str
    description: str | None = None
    course: int | None = None
    time_limit_minutes: int | None = None  # None = untimed
    questions: list[Question] = []

    def ordered_questions(self) -> list[Question]:
        return sorted(self.questions, key=lambda q: q.order)
