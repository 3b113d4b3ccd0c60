from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select

from borz.models.user_models import PasswordReset, User


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# SQLite hands back naive datetimes; treat them as UTC
def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_user_by_email(session, email) -> Optional[User]:
    return session.execute(select(User).where(User.email == email)).scalar_one_or_none()


def get_user_by_id(session, user_id) -> Optional[User]:
    return session.get(User, user_id)


def create_user(session, name, email, password_hash):
    now = _utcnow()
    user = User(name=name, email=email, password=password_hash, created_at=now, updated_at=now)
    session.add(user)
    session.flush()
    return user


def update_user_password(session, user, password_hash):
    user.password = password_hash
    user.updated_at = _utcnow()
    session.flush()
    return user


def create_password_reset(session, user_id, token, expires_at):
    reset = PasswordReset(user_id=user_id, token=token, expires_at=expires_at, used=False, created_at=_utcnow())
    session.add(reset)
    session.flush()
    return reset


# Get the unused reset row for a token (expiry is checked by the caller)
def get_unused_reset(session, token) -> Optional[PasswordReset]:
    stmt = select(PasswordReset).where(PasswordReset.token == token, PasswordReset.used.is_(False))
    return session.execute(stmt).scalars().first()


def mark_reset_used(session, reset):
    reset.used = True
    session.flush()
    return reset
