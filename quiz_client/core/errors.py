"""Exception hierarchy shared by the client, the renewal gate and the quiz session."""

from typing import Any


class QuizClientError(RuntimeError):
    """Base error raised for quiz client failures."""


class AuthExpired(QuizClientError):
    """The refresh credential is gone or was rejected; the user must log in again."""

    def __init__(self, message: str = "Session expired. Please log in again.") -> None:
        super().__init__(message)


class TransientNetworkError(QuizClientError):
    """Connectivity failure, timeout or gateway error. Safe to retry."""


class ApiError(QuizClientError):
    """The API answered with a non-success status."""

    def __init__(self, status_code: int, detail: Any = None, *, url: str | None = None) -> None:
        self.status_code = status_code
        self.detail = detail
        self.url = url
        message = f"{status_code} for URL {url}" if url else str(status_code)
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class Unauthorized(ApiError):
    """A 401 that cannot be recovered by renewing the access credential."""


class ApiValidationError(ApiError):
    """The server rejected the request payload (400 / 422)."""


class InvalidStatusTransition(QuizClientError):
    """An attempt status would move backwards."""
