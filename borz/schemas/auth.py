from typing import Optional

from pydantic import EmailStr, Field, field_validator

from borz.schemas.common import CamelModel


def _normalize_email(value: str) -> str:
    return value.strip().lower()


class SignupRequest(CamelModel):
    name: str = Field(min_length=2, max_length=100)
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("email", mode="after")
    @classmethod
    def _email(cls, value: str) -> str:
        return _normalize_email(value)


class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(min_length=1)

    @field_validator("email", mode="after")
    @classmethod
    def _email(cls, value: str) -> str:
        return _normalize_email(value)


class ForgotPasswordRequest(CamelModel):
    email: EmailStr

    @field_validator("email", mode="after")
    @classmethod
    def _email(cls, value: str) -> str:
        return _normalize_email(value)


class ResetPasswordRequest(CamelModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=8, max_length=128)


class UserOut(CamelModel):
    id: str
    name: str
    email: str


class AuthResponse(CamelModel):
    user: UserOut
    token: str


class ProfileOut(UserOut):
    is_verified: bool = False


class ForgotPasswordOut(CamelModel):
    success: bool = True
    reset_token: Optional[str] = None


class AuthCheckOut(CamelModel):
    is_authenticated: bool
    user_id: Optional[str] = None
    email: Optional[str] = None
