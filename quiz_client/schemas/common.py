"""Shared / generic schemas."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict


class ApiErrorBody(BaseModel):
    """Error envelope returned by the API (DRF style)."""

    model_config = ConfigDict(extra="allow")

    detail: str | None = None
    non_field_errors: list[str] | str | None = None

    def summary(self) -> str | None:
        if self.detail:
            return self.detail
        if isinstance(self.non_field_errors, list) and self.non_field_errors:
            return "; ".join(self.non_field_errors)
        if isinstance(self.non_field_errors, str):
            return self.non_field_errors
        extra: dict[str, Any] = self.model_extra or {}
        if extra:
            return "; ".join(f"{field}: {value}" for field, value in extra.items())
        return None


class UserProfile(BaseModel):
    role: Literal["student", "instructor", "admin"]
    status: str | None = None


class User(BaseModel):
    """GET /users/me/"""

    id: int
    username: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_staff: bool = False
    profile: UserProfile | None = None
