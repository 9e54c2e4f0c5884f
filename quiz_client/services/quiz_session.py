"""Timed quiz-attempt session: state machine, autosave and finalize.

States::

    loading ──▶ in_progress ──▶ submitting ──▶ submitted
       │             │              │
       └─────────────┴──────────────┴──▶ error

* ``loading → in_progress`` after the quiz is fetched and the attempt is
  started or resumed. A resumed attempt that is already submitted/graded
  goes straight to a read-only ``submitted`` view (no timer, no edits).
* ``in_progress → submitting`` on a manual submit or when the deadline
  hits zero. The step is synchronous and guarded, so whichever trigger
  comes first wins and the other joins the same finalize.
* A failed finalize stays in ``submitting``: manual failures expose a
  dismissible, retryable error; deadline failures expose a blocking one
  and keep retrying. Edits are never re-enabled. Each failure first
  re-reads the attempt: a finalize the server committed but whose reply
  was lost is adopted instead of retried.
* ``error`` means loading failed or the session expired (refresh rejected).

All mutations check the session's cancellation token first, so results
arriving after ``dispose()`` are dropped.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Callable

from quiz_client.config import Settings
from quiz_client.core.cancellation import CancellationToken
from quiz_client.core.errors import (
    ApiError,
    ApiValidationError,
    AuthExpired,
    QuizClientError,
    TransientNetworkError,
)
from quiz_client.schemas.attempt import Attempt, check_transition
from quiz_client.schemas.quiz import Question, Quiz
from quiz_client.services.api_client import ResourceClient
from quiz_client.services.debounce import Debouncer
from quiz_client.services.deadline import Clock, Deadline, DeadlineTimer, utcnow
from quiz_client.services.persistence import AnswerPersistenceQueue, LocalAnswer, SaveState

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    LOADING = "loading"
    IN_PROGRESS = "in_progress"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    ERROR = "error"


class FinalizeTrigger(str, Enum):
    MANUAL = "manual"
    DEADLINE = "deadline"


@dataclass(frozen=True, slots=True)
class SessionError:
    """Session-level failure shown to the user.

    ``blocking`` errors cannot be dismissed; ``retryable`` ones offer a retry.
    """

    message: str
    retryable: bool = False
    blocking: bool = False
    cause: BaseException | None = None


Listener = Callable[["QuizSessionController"], None]


class QuizSessionController:
    def __init__(
        self,
        client: ResourceClient,
        quiz_id: int,
        *,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.client = client
        self.quiz_id = quiz_id
        self.settings = settings or client.context.settings
        self._clock = clock
        self._token = CancellationToken()

        self.state = SessionState.LOADING
        self.quiz: Quiz | None = None
        self.questions: list[Question] = []
        self.attempt: Attempt | None = None
        self.answers: AnswerPersistenceQueue | None = None
        self.deadline: Deadline | None = None
        self.remaining_seconds: int | None = None
        self.read_only = False
        self.trigger: FinalizeTrigger | None = None
        self.error: SessionError | None = None

        self._timer: DeadlineTimer | None = None
        self._debounce: Debouncer[int] = Debouncer(
            self.settings.AUTOSAVE_DEBOUNCE_SECONDS, self._autosave, self._token
        )
        self._load_task: asyncio.Task[None] | None = None
        self._finalize_task: asyncio.Task[None] | None = None
        self._retry_now = asyncio.Event()
        self._token.on_cancel(self._retry_now.set)
        self._listeners: list[Listener] = []

    # ── observation ───────────────────────────────────────────────────────

    @property
    def disposed(self) -> bool:
        return self._token.cancelled

    @property
    def editable(self) -> bool:
        return self.state is SessionState.IN_PROGRESS and not self.disposed

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def local_answer(self, question_id: int) -> LocalAnswer:
        return self._require_answers().get(question_id)

    def save_state(self, question_id: int) -> SaveState:
        return self._require_answers().state(question_id)

    # ── lifecycle ─────────────────────────────────────────────────────────

    async def load(self) -> None:
        """Fetch the quiz and start or resume the attempt.

        Concurrent calls join the load already in flight. May be called
        again after a failed load.
        """
        if self.disposed or self.attempt is not None:
            return
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(self._load())
            self._load_task.add_done_callback(self._load_done)
        await asyncio.shield(self._load_task)

    def _load_done(self, task: asyncio.Task[None]) -> None:
        if self._load_task is task:
            self._load_task = None

    async def _load(self) -> None:
        self.error = None
        self._set_state(SessionState.LOADING)
        try:
            quiz = await self.client.get_quiz(self.quiz_id)
            if self.disposed:
                return
            attempt = await self.client.start_submission(self.quiz_id)
        except QuizClientError as e:
            if not self.disposed:
                self._fail(e, "Failed to load quiz")
            return
        if self.disposed:
            return

        self.quiz = quiz
        self.questions = quiz.ordered_questions()
        self.attempt = attempt
        self.answers = AnswerPersistenceQueue(
            self.client,
            attempt.id,
            [q.id for q in self.questions],
            token=self._token,
            on_change=lambda _answer: self._notify(),
        )
        self.answers.seed(attempt.answers)

        if attempt.status.is_final:
            logger.info("Attempt %s already %s, read-only view", attempt.id, attempt.status.value)
            self.answers.freeze()
            self.read_only = True
            self._set_state(SessionState.SUBMITTED)
            return

        logger.info("Attempt %s in progress (%d questions)", attempt.id, len(self.questions))
        self._set_state(SessionState.IN_PROGRESS)
        if quiz.time_limit_minutes:
            self.deadline = Deadline.from_start(
                attempt.started_at, timedelta(minutes=quiz.time_limit_minutes)
            )
            self._timer = DeadlineTimer(
                self.deadline,
                on_tick=self._on_tick,
                on_expire=self._on_deadline,
                token=self._token,
                tick_interval=self.settings.TIMER_TICK_SECONDS,
                clock=self._clock,
            )
            self._timer.start()

    def dispose(self) -> None:
        """Tear down: stop the timer and debounce now, drop late results."""
        if self.disposed:
            return
        logger.debug("Disposing quiz session %s", self.quiz_id)
        self._token.cancel()
        self._listeners.clear()

    async def settle(self) -> None:
        """Wait for fired autosaves and any running finalize."""
        await self._debounce.drain()
        await self.join()

    async def join(self) -> None:
        task = self._finalize_task
        if task is not None:
            await asyncio.shield(task)

    # ── edits ─────────────────────────────────────────────────────────────

    def edit(
        self,
        question_id: int,
        *,
        selected_choice_id: int | None = None,
        text_answer: str | None = None,
    ) -> bool:
        """Apply a local edit and schedule its autosave.

        Returns False (and changes nothing) once the session is no longer
        in progress.
        """
        if not self.editable or self.answers is None:
            return False
        question = self._question(question_id)
        if selected_choice_id is not None and not question.has_choice(selected_choice_id):
            raise ValueError(f"Choice {selected_choice_id} does not belong to question {question_id}")
        if self.answers.record(
            question_id,
            selected_choice_id=selected_choice_id,
            text_answer=text_answer,
        ) is None:
            return False
        self._debounce.schedule(question_id)
        return True

    async def _autosave(self, question_id: int) -> None:
        if self.disposed or self.answers is None:
            return
        try:
            await self.answers.save(question_id)
        except AuthExpired as e:
            if not self.disposed:
                self._fail(e, "Session expired")

    # ── finalize ──────────────────────────────────────────────────────────

    async def submit(self) -> Attempt | None:
        """Manual finalize. Returns the final attempt, or None if it did not complete.

        Repeating it after success is a no-op that returns the same attempt.
        """
        if self.state is SessionState.SUBMITTED:
            return self.attempt
        if self.state is SessionState.IN_PROGRESS:
            self._begin_finalize(FinalizeTrigger.MANUAL)
        elif self.state is SessionState.SUBMITTING:
            self.retry_finalize()
        await self.join()
        return self.attempt if self.state is SessionState.SUBMITTED else None

    def retry_finalize(self) -> bool:
        """Retry a failed finalize now. Edits stay disabled either way."""
        if self.state is not SessionState.SUBMITTING or self.disposed:
            return False
        task = self._finalize_task
        if task is not None and not task.done():
            self._retry_now.set()
            return True
        self.error = None
        self._notify()
        self._finalize_task = asyncio.ensure_future(self._finalize())
        return True

    def dismiss_error(self) -> bool:
        if self.error is None or self.error.blocking:
            return False
        self.error = None
        self._notify()
        return True

    def annotate(self, attempt: Attempt) -> bool:
        """Apply server-side grading to a submitted attempt.

        Raises InvalidStatusTransition if *attempt* would move status backwards.
        """
        if self.disposed or self.attempt is None or attempt.id != self.attempt.id:
            return False
        if self.state is not SessionState.SUBMITTED:
            return False
        check_transition(self.attempt.status, attempt.status)
        self.attempt = attempt
        self._notify()
        return True

    def _on_tick(self, remaining: int) -> None:
        if self.disposed:
            return
        self.remaining_seconds = remaining
        self._notify()

    def _on_deadline(self) -> None:
        self._begin_finalize(FinalizeTrigger.DEADLINE)

    def _begin_finalize(self, trigger: FinalizeTrigger) -> bool:
        if self.disposed or self.state is not SessionState.IN_PROGRESS:
            logger.debug("Finalize trigger %s ignored in state %s", trigger.value, self.state.value)
            return False
        assert self.answers is not None
        logger.info("Finalizing attempt %s (%s)", self.attempt.id if self.attempt else "?", trigger.value)
        self.trigger = trigger
        self.answers.freeze()
        self._debounce.cancel_all()
        if self._timer is not None:
            self._timer.stop()
        self._set_state(SessionState.SUBMITTING)
        self._finalize_task = asyncio.ensure_future(self._finalize())
        return True

    async def _finalize(self) -> None:
        assert self.attempt is not None and self.answers is not None
        delay = self.settings.FINALIZE_RETRY_SECONDS
        while not self.disposed:
            try:
                await self._debounce.drain()
                unsaved = [
                    qid for qid, state in (await self.answers.flush()).items() if state is not SaveState.CLEAN
                ]
                if unsaved:
                    logger.warning("Finalizing with unsaved answers for questions %s", unsaved)
                if self.disposed or self.state is not SessionState.SUBMITTING:
                    return
                attempt = await self.client.finalize_submission(self.attempt.id)
                if not attempt.status.is_final:
                    raise ApiError(200, "Finalize returned an attempt that is still in progress")
            except AuthExpired as e:
                if not self.disposed:
                    self._fail(e, "Session expired")
                return
            except QuizClientError as e:
                if self.disposed:
                    return
                logger.warning("Finalize (%s) failed: %s", self.trigger.value if self.trigger else "?", e)
                try:
                    committed = await self._committed_attempt()
                except AuthExpired as auth_error:
                    if not self.disposed:
                        self._fail(auth_error, "Session expired")
                    return
                if self.disposed:
                    return
                if committed is not None:
                    self._finish(committed)
                    return
                if self.trigger is not FinalizeTrigger.DEADLINE:
                    self.error = SessionError(f"Failed to submit quiz: {e}", retryable=True, cause=e)
                    self._notify()
                    return
                self.error = SessionError(
                    f"Time is up and the quiz could not be submitted yet: {e}",
                    retryable=True,
                    blocking=True,
                    cause=e,
                )
                self._notify()
                await self._wait_for_retry(delay if _auto_retry(e) else None)
                delay = min(delay * 2, self.settings.FINALIZE_RETRY_MAX_SECONDS)
                continue

            if self.disposed:
                return
            self._finish(attempt)
            return

    async def _committed_attempt(self) -> Attempt | None:
        """Re-read the attempt after a failed finalize.

        The server may have committed a finalize whose response was lost;
        in that case every retry is rejected as already finalized.
        """
        assert self.attempt is not None
        try:
            current = await self.client.start_submission(self.quiz_id)
        except AuthExpired:
            raise
        except QuizClientError as e:
            logger.debug("Could not re-read attempt %s: %s", self.attempt.id, e)
            return None
        if current.id != self.attempt.id or not current.status.is_final:
            return None
        logger.info("Attempt %s was already %s on the server", current.id, current.status.value)
        return current

    def _finish(self, attempt: Attempt) -> None:
        assert self.attempt is not None
        check_transition(self.attempt.status, attempt.status)
        self.attempt = attempt
        self.error = None
        logger.info("Attempt %s %s (score: %s)", attempt.id, attempt.status.value, attempt.score)
        self._set_state(SessionState.SUBMITTED)

    async def _wait_for_retry(self, timeout: float | None) -> None:
        self._retry_now.clear()
        if self.disposed:
            return
        try:
            await asyncio.wait_for(self._retry_now.wait(), timeout)
        except asyncio.TimeoutError:
            pass

    # ── helpers ───────────────────────────────────────────────────────────

    def _fail(self, exc: QuizClientError, message: str) -> None:
        if isinstance(exc, AuthExpired):
            self.error = SessionError(f"{message}: {exc}", blocking=True, cause=exc)
            if self.answers is not None:
                self.answers.freeze()
            self._debounce.cancel_all()
            if self._timer is not None:
                self._timer.stop()
        else:
            self.error = SessionError(f"{message}: {exc}", retryable=True, cause=exc)
        logger.warning("%s: %s", message, exc)
        self._set_state(SessionState.ERROR)

    def _question(self, question_id: int) -> Question:
        for question in self.questions:
            if question.id == question_id:
                return question
        raise KeyError(f"Question {question_id} is not part of quiz {self.quiz_id}")

    def _require_answers(self) -> AnswerPersistenceQueue:
        if self.answers is None:
            raise RuntimeError("Quiz session is not loaded")
        return self.answers

    def _set_state(self, state: SessionState) -> None:
        if self.disposed:
            return
        self.state = state
        self._notify()

    def _notify(self) -> None:
        if self.disposed:
            return
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Quiz session listener failed")


def _auto_retry(exc: QuizClientError) -> bool:
    """Deadline finalize retries on its own only when the failure looks transient."""
    if isinstance(exc, TransientNetworkError):
        return True
    if isinstance(exc, ApiValidationError):
        return False
    return isinstance(exc, ApiError) and (exc.status_code >= 500 or exc.status_code == 200)
