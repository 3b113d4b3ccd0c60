# Import all SQLAlchemy models so Alembic autogenerate can discover tables via Base.metadata.
# Alembic's env.py imports this package for side effects.

from .user_models import PasswordReset, User  # noqa: F401
from .chat_models import Chat, Message  # noqa: F401
