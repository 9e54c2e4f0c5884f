"""Shared pytest fixtures: an in-process fake of the quiz API.

The fake server is a small FastAPI app reached through
``httpx.ASGITransport``, so no sockets are opened. Knobs on
``FakeQuizServer`` let tests expire tokens, slow down or fail specific
endpoints and inspect every call the client made.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx
import pytest
from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import PlainTextResponse

from quiz_client.config import Settings
from quiz_client.core.context import SessionContext, build_session_context
from quiz_client.core.credentials import MemoryCredentialStore
from quiz_client.services.api_client import ResourceClient

BASE_URL = "http://testserver/api"


def _choice_question(qid: int, order: int) -> dict[str, Any]:
    return {
        "id": qid,
        "text": f"Question {qid}?",
        "question_type": "SC",
        "order": order,
        "choices": [{"id": qid * 10 + n, "text": f"Option {n}"} for n in range(1, 4)],
    }


def _text_question(qid: int, order: int) -> dict[str, Any]:
    return {"id": qid, "text": f"Explain {qid}.", "question_type": "TEXT", "order": order, "choices": []}


def _default_quizzes() -> dict[int, dict[str, Any]]:
    # Question order deliberately differs from id order.
    questions = [
        _choice_question(1, 2),
        _choice_question(2, 1),
        _choice_question(3, 3),
        _choice_question(4, 4),
        _text_question(5, 5),
    ]
    return {
        1: {"id": 1, "title": "Timed quiz", "description": "Ten minutes.", "course": 7,
            "time_limit_minutes": 10, "questions": questions},
        2: {"id": 2, "title": "Untimed quiz", "description": None, "course": 7,
            "time_limit_minutes": None, "questions": questions},
        3: {"id": 3, "title": "One minute quiz", "description": None, "course": 7,
            "time_limit_minutes": 1, "questions": questions},
    }


# ── Fake API ──────────────────────────────────────────────────────────────────


class FakeQuizServer:
    def __init__(self) -> None:
        self.users = {"alice": "s3cret"}
        self.access_tokens: set[str] = set()
        self.refresh_tokens: set[str] = set()
        self._serial = 0

        self.refresh_calls = 0
        self.refresh_delay = 0.05
        self.refresh_fails = False
        self.refresh_headers: list[str | None] = []
        # When set, refreshed access tokens are issued but never accepted.
        self.revoke_refreshed = False

        self.quizzes = _default_quizzes()
        self.unavailable_quizzes: set[int] = set()
        self.start_offsets: dict[int, timedelta] = {}
        self.submissions: dict[int, dict[str, Any]] = {}
        self.saved_answers: dict[int, dict[int, dict[str, Any]]] = {}

        self.answer_calls: list[dict[str, Any]] = []
        self.answer_delays: dict[str, float] = {}
        self.finalize_calls = 0
        self.finalize_delay = 0.0
        self.finalize_failures: list[int] = []
        # Number of finalize calls answered with a plain-text 200 before committing.
        self.plain_text_finalizes = 0
        self.start_calls = 0
        self.auto_grade = False
        self.events: list[tuple[Any, ...]] = []

        self.app = self._build_app()

    # ── helpers for tests ─────────────────────────────────────────────────

    def issue_pair(self) -> tuple[str, str]:
        self._serial += 1
        access, refresh = f"access-{self._serial}", f"refresh-{self._serial}"
        self.access_tokens.add(access)
        self.refresh_tokens.add(refresh)
        return access, refresh

    def expire_access_tokens(self) -> None:
        self.access_tokens.clear()

    def preset_submission(self, quiz_id: int, *, status: str, score: str | None = None,
                          answers: dict[int, dict[str, Any]] | None = None) -> dict[str, Any]:
        submission = self._new_submission(quiz_id)
        submission["status"] = status
        submission["score"] = score
        if status != "in_progress":
            submission["submitted_at"] = datetime.now(timezone.utc).isoformat()
        self.saved_answers[submission["id"]] = dict(answers or {})
        return submission

    # ── internals ─────────────────────────────────────────────────────────

    def _new_submission(self, quiz_id: int) -> dict[str, Any]:
        started = datetime.now(timezone.utc) - self.start_offsets.get(quiz_id, timedelta())
        submission = {
            "id": quiz_id * 100,
            "quiz": quiz_id,
            "student": 1,
            "status": "in_progress",
            "started_at": started.isoformat(),
            "submitted_at": None,
            "score": None,
            "feedback": None,
        }
        self.submissions[quiz_id] = submission
        self.saved_answers.setdefault(submission["id"], {})
        return submission

    def _submission_by_id(self, submission_id: int) -> dict[str, Any]:
        for submission in self.submissions.values():
            if submission["id"] == submission_id:
                return submission
        raise HTTPException(status_code=404, detail="Not found.")

    def _render(self, submission: dict[str, Any]) -> dict[str, Any]:
        answers = [
            {
                "question": {"id": qid},
                "selected_choice": {"id": a["selected_choice_id"]} if a.get("selected_choice_id") else None,
                "text_answer": a.get("text_answer"),
            }
            for qid, a in self.saved_answers.get(submission["id"], {}).items()
        ]
        return {**submission, "answers": answers}

    def _require_auth(self, authorization: str | None) -> None:
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Authentication credentials were not provided.")
        if authorization.removeprefix("Bearer ") not in self.access_tokens:
            raise HTTPException(status_code=401, detail="Given token not valid for any token type")

    def _build_app(self) -> FastAPI:
        app = FastAPI()
        server = self

        @app.post("/api/token/")
        async def obtain_token(payload: dict[str, Any]):
            if server.users.get(payload.get("username")) != payload.get("password"):
                raise HTTPException(status_code=401, detail="No active account found with the given credentials")
            access, refresh = server.issue_pair()
            return {"access": access, "refresh": refresh}

        @app.post("/api/token/refresh/")
        async def refresh_token(payload: dict[str, Any], authorization: str | None = Header(default=None)):
            server.refresh_calls += 1
            server.refresh_headers.append(authorization)
            await asyncio.sleep(server.refresh_delay)
            if server.refresh_fails or payload.get("refresh") not in server.refresh_tokens:
                raise HTTPException(status_code=401, detail="Token is invalid or expired")
            server._serial += 1
            access = f"access-{server._serial}"
            if not server.revoke_refreshed:
                server.access_tokens.add(access)
            return {"access": access}

        @app.get("/api/users/me/")
        async def me(authorization: str | None = Header(default=None)):
            server._require_auth(authorization)
            return {"id": 1, "username": "alice", "email": "alice@example.com",
                    "is_staff": False, "profile": {"role": "student", "status": "active"}}

        @app.get("/api/quizzes/{quiz_id}/")
        async def get_quiz(quiz_id: int, authorization: str | None = Header(default=None)):
            server._require_auth(authorization)
            if quiz_id in server.unavailable_quizzes:
                raise HTTPException(status_code=503, detail="Service unavailable")
            if quiz_id not in server.quizzes:
                raise HTTPException(status_code=404, detail="Not found.")
            return server.quizzes[quiz_id]

        @app.post("/api/quizzes/{quiz_id}/start-submission/")
        async def start_submission(quiz_id: int, authorization: str | None = Header(default=None)):
            server._require_auth(authorization)
            server.start_calls += 1
            submission = server.submissions.get(quiz_id) or server._new_submission(quiz_id)
            return server._render(submission)

        @app.post("/api/submissions/{submission_id}/submit-answer/")
        async def submit_answer(submission_id: int, payload: dict[str, Any],
                                authorization: str | None = Header(default=None)):
            server._require_auth(authorization)
            server.answer_calls.append(payload)
            server.events.append(("answer", payload.get("question_id")))
            delay = server.answer_delays.get(payload.get("text_answer") or "", 0.0)
            if delay:
                await asyncio.sleep(delay)
            submission = server._submission_by_id(submission_id)
            if submission["status"] != "in_progress":
                raise HTTPException(status_code=400, detail="Submission is not in progress.")
            question_ids = {q["id"] for q in server.quizzes[submission["quiz"]]["questions"]}
            if payload.get("question_id") not in question_ids:
                raise HTTPException(status_code=400, detail="Question does not belong to this quiz.")
            server.saved_answers[submission_id][payload["question_id"]] = payload
            return {"detail": "Answer saved."}

        @app.post("/api/submissions/{submission_id}/finalize/")
        async def finalize(submission_id: int, authorization: str | None = Header(default=None)):
            server._require_auth(authorization)
            server.finalize_calls += 1
            server.events.append(("finalize", submission_id))
            if server.finalize_delay:
                await asyncio.sleep(server.finalize_delay)
            if server.finalize_failures:
                raise HTTPException(status_code=server.finalize_failures.pop(0), detail="Finalize failed")
            if server.plain_text_finalizes:
                server.plain_text_finalizes -= 1
                return PlainTextResponse("OK")
            submission = server._submission_by_id(submission_id)
            if submission["status"] != "in_progress":
                raise HTTPException(status_code=400, detail="Submission already finalized.")
            submission["status"] = "graded" if server.auto_grade else "submitted"
            submission["score"] = "80.00" if server.auto_grade else None
            submission["submitted_at"] = datetime.now(timezone.utc).isoformat()
            return server._render(submission)

        return app


class FlakyTransport(httpx.AsyncBaseTransport):
    """ASGI transport that can simulate connection failures per request."""

    def __init__(self, app: FastAPI) -> None:
        self._inner = httpx.ASGITransport(app=app)
        self.fail_when: Callable[[httpx.Request], bool] | None = None
        # Matching requests reach the server, but the reply is lost.
        self.lose_reply_when: Callable[[httpx.Request], bool] | None = None

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if self.fail_when is not None and self.fail_when(request):
            raise httpx.ConnectError("Connection refused", request=request)
        response = await self._inner.handle_async_request(request)
        if self.lose_reply_when is not None and self.lose_reply_when(request):
            self.lose_reply_when = None
            raise httpx.ReadError("Connection reset by peer", request=request)
        return response


def _answer_for(question_id: int) -> Callable[[httpx.Request], bool]:
    def predicate(request: httpx.Request) -> bool:
        if not request.url.path.endswith("/submit-answer/"):
            return False
        return json.loads(request.content).get("question_id") == question_id

    return predicate


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ── Fixtures ───────────────────────────────────────────────────────────────────


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def server() -> FakeQuizServer:
    return FakeQuizServer()


@pytest.fixture
def transport(server: FakeQuizServer) -> FlakyTransport:
    return FlakyTransport(server.app)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        API_BASE_URL=BASE_URL,
        CREDENTIAL_BACKEND="memory",
        CREDENTIAL_FILE=tmp_path / "credentials.json",
        AUTOSAVE_DEBOUNCE_SECONDS=0.05,
        TIMER_TICK_SECONDS=0.01,
        FINALIZE_RETRY_SECONDS=0.01,
        FINALIZE_RETRY_MAX_SECONDS=0.05,
    )


@pytest.fixture
def context(test_settings: Settings) -> SessionContext:
    return build_session_context(test_settings, MemoryCredentialStore())


@pytest.fixture
async def client(context: SessionContext, transport: FlakyTransport):
    async with ResourceClient(context, transport=transport) as resource_client:
        yield resource_client


@pytest.fixture
def logged_in(server: FakeQuizServer, context: SessionContext) -> tuple[str, str]:
    """Store a valid credential pair, as a successful login would."""
    access, refresh = server.issue_pair()
    context.credentials.save_tokens(access, refresh)
    return access, refresh


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def answer_for():
    """Factory for transport predicates matching submit-answer calls for one question."""
    return _answer_for
