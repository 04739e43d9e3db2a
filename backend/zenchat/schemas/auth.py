"""Authentication schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from zenchat.services.hashing import MAX_PASSWORD_BYTES


class UserRegister(BaseModel):
    """User registration request."""

    # "@" is reserved so a username can never collide with an email at login
    username: str = Field(..., min_length=3, max_length=50, pattern=r"^[^@]+$")
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=72)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
        return value


class UserLogin(BaseModel):
    """User login request."""

    identifier: str  # Can be username or email
    password: str | None = None


class TokenRefresh(BaseModel):
    """Token refresh request; the cookie is used when the body is empty."""

    refresh_token: str | None = None


class TokenPair(BaseModel):
    """Access/refresh credentials issued on login, signup and refresh."""

    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class AccessClaims(BaseModel):
    """Verified contents of an access token."""

    user_id: str
    role: str
    issued_at: datetime
    expires_at: datetime


class PublicUser(BaseModel):
    """Client-facing projection of a user. Has no password digest field."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    email: str
    avatar_url: str | None = None
    role: str
    created_at: str


class AuthResponse(BaseModel):
    success: bool = True
    message: str
    user: PublicUser
    tokens: TokenPair


class MessageResponse(BaseModel):
    """Generic message response."""

    success: bool = True
    message: str
