"""Serialized answer upserts for one attempt, with per-question save state.

Save states:
  pending → dirty, not sent yet
  saving  → upsert in flight
  error   → last upsert failed; value still dirty, retried on the next cycle
  clean   → acknowledged by the server

Every edit bumps the answer's ``revision``. A save snapshots the
revision it sends; when it completes, the answer only becomes clean if
no newer edit arrived meanwhile. Saves for one attempt go out one at a
time, so an earlier, slower upsert can never land after a later one.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Mapping

from quiz_client.core.cancellation import CancellationToken
from quiz_client.core.errors import AuthExpired, QuizClientError
from quiz_client.schemas.attempt import AttemptAnswer, SubmitAnswerPayload
from quiz_client.services.api_client import ResourceClient

logger = logging.getLogger(__name__)


class SaveState(str, Enum):
    CLEAN = "clean"
    PENDING = "pending"
    SAVING = "saving"
    ERROR = "error"


@dataclass(slots=True)
class LocalAnswer:
    question_id: int
    selected_choice_id: int | None = None
    text_answer: str | None = None
    dirty: bool = False
    save_state: SaveState = SaveState.CLEAN
    revision: int = 0
    last_error: QuizClientError | None = None

    def payload(self) -> SubmitAnswerPayload:
        return SubmitAnswerPayload(
            question_id=self.question_id,
            selected_choice_id=self.selected_choice_id,
            text_answer=self.text_answer,
        )


class AnswerPersistenceQueue:
    def __init__(
        self,
        client: ResourceClient,
        submission_id: int,
        question_ids: Iterable[int],
        *,
        token: CancellationToken | None = None,
        on_change: Callable[[LocalAnswer], None] | None = None,
    ) -> None:
        self._client = client
        self.submission_id = submission_id
        self._answers = {qid: LocalAnswer(question_id=qid) for qid in question_ids}
        self._lock = asyncio.Lock()
        self._token = token or CancellationToken()
        self._on_change = on_change
        self._frozen = False

    @property
    def answers(self) -> Mapping[int, LocalAnswer]:
        return self._answers

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, question_id: int) -> LocalAnswer:
        try:
            return self._answers[question_id]
        except KeyError:
            raise KeyError(f"Question {question_id} is not part of submission {self.submission_id}") from None

    def state(self, question_id: int) -> SaveState:
        return self.get(question_id).save_state

    def dirty_ids(self) -> list[int]:
        return [qid for qid, answer in self._answers.items() if answer.dirty]

    def seed(self, saved: Iterable[AttemptAnswer]) -> None:
        """Load answers already stored on the server (resume) as clean."""
        for item in saved:
            answer = self._answers.get(item.question.id)
            if answer is None:
                continue
            answer.selected_choice_id = item.selected_choice.id if item.selected_choice else None
            answer.text_answer = item.text_answer

    def record(
        self,
        question_id: int,
        *,
        selected_choice_id: int | None = None,
        text_answer: str | None = None,
    ) -> LocalAnswer | None:
        """Apply a local edit. Returns None once the queue is frozen."""
        answer = self.get(question_id)
        if self._frozen:
            return None
        answer.selected_choice_id = selected_choice_id
        answer.text_answer = text_answer
        answer.dirty = True
        answer.revision += 1
        answer.save_state = SaveState.PENDING
        self._changed(answer)
        return answer

    def freeze(self) -> None:
        self._frozen = True

    async def save(self, question_id: int) -> SaveState:
        """Upsert the latest value of one question.

        Network, validation and API failures are recorded on the answer
        (``error``) and not raised. ``AuthExpired`` is recorded and re-raised:
        it ends the whole session, not just this question.
        """
        answer = self.get(question_id)
        async with self._lock:
            if not answer.dirty or self._token.cancelled:
                return answer.save_state
            revision = answer.revision
            payload = answer.payload()
            answer.save_state = SaveState.SAVING
            self._changed(answer)
            try:
                await self._client.submit_answer(self.submission_id, payload)
            except QuizClientError as e:
                if self._token.cancelled:
                    return answer.save_state
                logger.warning("Saving answer for question %s failed: %s", question_id, e)
                if answer.revision == revision:
                    answer.save_state = SaveState.ERROR
                    answer.last_error = e
                else:
                    answer.save_state = SaveState.PENDING
                self._changed(answer)
                if isinstance(e, AuthExpired):
                    raise
                return answer.save_state

            if self._token.cancelled:
                return answer.save_state
            if answer.revision == revision:
                answer.dirty = False
                answer.save_state = SaveState.CLEAN
                answer.last_error = None
            else:
                # Edited while in flight; the newer value still has to go out.
                answer.save_state = SaveState.PENDING
            self._changed(answer)
            return answer.save_state

    async def flush(self) -> dict[int, SaveState]:
        """Save every dirty answer; returns the resulting state per question."""
        results: dict[int, SaveState] = {}
        for question_id in self.dirty_ids():
            results[question_id] = await self.save(question_id)
        return results

    def _changed(self, answer: LocalAnswer) -> None:
        if self._on_change is not None:
            self._on_change(answer)
