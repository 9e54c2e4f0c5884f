"""Token endpoint schemas."""

from pydantic import BaseModel


class LoginRequest(BaseModel):
    """POST /token/"""

    username: str
    password: str


class TokenPair(BaseModel):
    """Access + refresh pair returned on login."""

    access: str
    refresh: str


class RefreshRequest(BaseModel):
    """POST /token/refresh/"""

    refresh: str


class RefreshResponse(BaseModel):
    access: str
