from typing import Iterator, Optional

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from borz.config import load_settings


Base = declarative_base()


# Builds an engine; SQLite needs cross-thread access (sessions run in executor threads) and FK enforcement
def make_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        engine = create_engine(database_url, connect_args={"check_same_thread": False, "timeout": 15})

        @event.listens_for(engine, "connect")
        def _enable_sqlite_fks(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine
    return create_engine(database_url, pool_pre_ping=True, connect_args={"connect_timeout": 5})


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


engine = make_engine(load_settings().database_url)
SessionLocal = make_session_factory(engine)


def init_db(bind: Optional[Engine] = None) -> None:
    import borz.models  # noqa: F401  # registers tables on Base.metadata

    Base.metadata.create_all(bind=bind or engine)


# FastAPI dependency; the app factory may swap the session factory via app.state
def get_db(request: Request) -> Iterator[Session]:
    factory = getattr(request.app.state, "session_factory", None) or SessionLocal
    db = factory()
    try:
        yield db
    finally:
        db.close()
