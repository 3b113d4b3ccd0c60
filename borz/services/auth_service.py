from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from borz.auth import SessionTokens, hash_password, verify_password
from borz.crud import user as user_crud
from borz.errors import AuthError, PersistenceError, UserNotFound, ValidationError
from borz.schemas.auth import (
    AuthCheckOut,
    AuthResponse,
    ForgotPasswordOut,
    LoginRequest,
    ProfileOut,
    ResetPasswordRequest,
    SignupRequest,
    UserOut,
)


logger = logging.getLogger(__name__)

_INVALID_CREDENTIALS = "Invalid email or password"
_INVALID_RESET = "Invalid or expired reset token"


# Signup, login and the password reset flow
class AuthService:
    def __init__(self, db: Session, tokens: SessionTokens, *, expose_reset_token: bool = False):
        self.db = db
        self.tokens = tokens
        self.expose_reset_token = expose_reset_token

    def _auth_response(self, user) -> AuthResponse:
        token = self.tokens.issue(user.id, user.email)
        return AuthResponse(user=UserOut(id=user.id, name=user.name, email=user.email), token=token)

    def signup(self, payload: SignupRequest) -> AuthResponse:
        if user_crud.get_user_by_email(self.db, payload.email) is not None:
            raise ValidationError("Email already registered")
        try:
            user = user_crud.create_user(self.db, payload.name, payload.email, hash_password(payload.password))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValidationError("Email already registered")
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to sign up: {e.__class__.__name__}")
        logger.info("auth.signup: user=%s", user.id)
        return self._auth_response(user)

    def login(self, payload: LoginRequest) -> AuthResponse:
        user = user_crud.get_user_by_email(self.db, payload.email)
        if user is None or not verify_password(payload.password, user.password):
            raise AuthError(_INVALID_CREDENTIALS)
        logger.info("auth.login: user=%s", user.id)
        return self._auth_response(user)

    # Always succeeds so the response never reveals whether the email exists
    def forgot_password(self, email: str) -> ForgotPasswordOut:
        user = user_crud.get_user_by_email(self.db, email)
        if user is None:
            return ForgotPasswordOut(success=True)

        reset_token = self.tokens.issue_reset(user.id)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.tokens.reset_ttl_seconds)
        try:
            user_crud.create_password_reset(self.db, user.id, reset_token, expires_at)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("auth.forgot_password.error: user=%s", user.id)
            return ForgotPasswordOut(success=True)

        logger.info("auth.forgot_password: user=%s", user.id)
        # TODO: deliver the reset link by email instead of returning it outside production
        return ForgotPasswordOut(success=True, reset_token=reset_token if self.expose_reset_token else None)

    def reset_password(self, payload: ResetPasswordRequest) -> None:
        try:
            user_id = self.tokens.verify_reset(payload.token)
        except AuthError:
            raise ValidationError(_INVALID_RESET)

        reset = user_crud.get_unused_reset(self.db, payload.token)
        if reset is None or reset.user_id != user_id:
            raise ValidationError(_INVALID_RESET)
        if user_crud.as_utc(reset.expires_at) <= datetime.now(timezone.utc):
            raise ValidationError(_INVALID_RESET)

        user = user_crud.get_user_by_id(self.db, user_id)
        if user is None:
            raise ValidationError(_INVALID_RESET)

        try:
            user_crud.update_user_password(self.db, user, hash_password(payload.password))
            user_crud.mark_reset_used(self.db, reset)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to reset password: {e.__class__.__name__}")
        logger.info("auth.reset_password: user=%s", user_id)

    def get_profile(self, user_id: str) -> ProfileOut:
        user = user_crud.get_user_by_id(self.db, user_id)
        if user is None:
            raise UserNotFound()
        return ProfileOut(id=user.id, name=user.name, email=user.email, is_verified=bool(user.is_verified))

    # Never fails: reports whether the Authorization header carries a valid session token
    def check(self, auth_header) -> AuthCheckOut:
        if not auth_header or not auth_header.startswith("Bearer "):
            return AuthCheckOut(is_authenticated=False)
        try:
            identity = self.tokens.verify(auth_header.split(" ", 1)[1].strip())
        except AuthError:
            return AuthCheckOut(is_authenticated=False)
        return AuthCheckOut(is_authenticated=True, user_id=identity.user_id, email=identity.email)
