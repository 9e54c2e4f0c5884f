"""Async HTTP client for the course-and-quiz API.

Every call except the token endpoints carries ``Authorization: Bearer
<access>``. A 401 on an authenticated call is handed to the session's
renewal gate and the call is retried exactly once with the credential the
gate returns; a second 401 is final.
"""

import logging
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from quiz_client.core.context import SessionContext
from quiz_client.core.errors import (
    ApiError,
    ApiValidationError,
    TransientNetworkError,
    Unauthorized,
)
from quiz_client.schemas.attempt import Attempt, SubmitAnswerPayload
from quiz_client.schemas.common import ApiErrorBody, User
from quiz_client.schemas.quiz import Quiz
from quiz_client.schemas.token import LoginRequest, RefreshRequest, RefreshResponse, TokenPair

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

TOKEN_PATH = "/token/"
REFRESH_PATH = "/token/refresh/"

_TRANSIENT_STATUSES = {502, 503, 504}


@dataclass(slots=True)
class _Call:
    """One logical request; ``retried`` is the one-shot marker for 401 recovery."""

    method: str
    path: str
    json: dict[str, Any] | None = None
    authenticated: bool = True
    retried: bool = False


class ResourceClient:
    """Thin async wrapper around the quiz REST API."""

    def __init__(
        self,
        context: SessionContext,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.context = context
        self._base = context.settings.API_BASE_URL.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self._base,
            timeout=context.settings.REQUEST_TIMEOUT_SECONDS,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def __aenter__(self) -> "ResourceClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── auth ──────────────────────────────────────────────────────────────

    async def obtain_token_pair(self, username: str, password: str) -> TokenPair:
        """Exchange username/password for a fresh credential pair (not stored here)."""
        body = LoginRequest(username=username, password=password).model_dump()
        data = await self._request("POST", TOKEN_PATH, json=body, authenticated=False)
        return _model(TokenPair, data)

    async def refresh_access(self, refresh: str) -> str:
        """The renewal call itself: never authenticated, never renewed."""
        body = RefreshRequest(refresh=refresh).model_dump()
        data = await self._request("POST", REFRESH_PATH, json=body, authenticated=False)
        return _model(RefreshResponse, data).access

    async def get_current_user(self) -> User:
        data = await self._request("GET", "/users/me/")
        return _model(User, data)

    # ── quizzes ───────────────────────────────────────────────────────────

    async def get_quiz(self, quiz_id: int) -> Quiz:
        data = await self._request("GET", f"/quizzes/{quiz_id}/")
        return _model(Quiz, data)

    async def start_submission(self, quiz_id: int) -> Attempt:
        """Start a new attempt or return the one already in progress."""
        data = await self._request("POST", f"/quizzes/{quiz_id}/start-submission/")
        return _model(Attempt, data)

    # ── submissions ───────────────────────────────────────────────────────

    async def submit_answer(self, submission_id: int, payload: SubmitAnswerPayload) -> dict[str, Any]:
        """Upsert one question's answer; safe to repeat."""
        return await self._request(
            "POST",
            f"/submissions/{submission_id}/submit-answer/",
            json=payload.model_dump(),
        )

    async def finalize_submission(self, submission_id: int) -> Attempt:
        data = await self._request("POST", f"/submissions/{submission_id}/finalize/")
        return _model(Attempt, data)

    # ── transport ─────────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        authenticated: bool = True,
    ) -> Any:
        call = _Call(method=method, path=path, json=json, authenticated=authenticated)
        gate = self.context.gate
        credential = await gate.acquire_valid_credential() if call.authenticated else None
        r = await self._send(call, credential)

        if r.status_code == 401 and call.authenticated and not call.retried:
            call.retried = True
            logger.debug("401 on %s %s, deferring to renewal gate", method, path)
            credential = await gate.report_unauthorized(credential, self.refresh_access)
            r = await self._send(call, credential)

        return self._parse(r)

    async def _send(self, call: _Call, credential: str | None) -> httpx.Response:
        headers = {}
        if call.authenticated and credential:
            headers["Authorization"] = f"Bearer {credential}"
        try:
            return await self._http.request(call.method, call.path, json=call.json, headers=headers)
        except httpx.TransportError as e:
            logger.warning("%s %s failed: %s", call.method, call.path, e)
            raise TransientNetworkError(f"{call.method} {call.path} failed: {e}") from e

    @staticmethod
    def _parse(r: httpx.Response) -> Any:
        if r.is_success:
            if not r.content:
                return {}
            try:
                return r.json()
            except ValueError as e:
                raise ApiError(r.status_code, "Malformed JSON body", url=str(r.request.url)) from e
        detail = _error_detail(r)
        url = str(r.request.url)
        if r.status_code in _TRANSIENT_STATUSES:
            raise TransientNetworkError(f"{r.status_code} for URL {url}")
        if r.status_code == 401:
            raise Unauthorized(r.status_code, detail, url=url)
        if r.status_code in (400, 422):
            raise ApiValidationError(r.status_code, detail, url=url)
        raise ApiError(r.status_code, detail, url=url)


def _error_detail(r: httpx.Response) -> str | None:
    try:
        payload = r.json()
    except ValueError:
        return r.text or None
    if isinstance(payload, dict):
        try:
            return ApiErrorBody.model_validate(payload).summary()
        except ValidationError:
            return str(payload)
    return str(payload)


def _model(cls: type[ModelT], data: Any) -> ModelT:
    try:
        return cls.model_validate(data)
    except ValidationError as e:
        raise ApiError(200, f"Malformed {cls.__name__} payload: {e}") from e
