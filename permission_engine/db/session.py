from __future__ import annotations

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from permission_engine.settings import Settings, get_settings


def create_db_engine(db_url: str) -> Engine:
    """
    Build the SQLAlchemy engine.

    The engine is called from many request threads at once, so SQLite
    connections must not be pinned to the creating thread. An in-memory SQLite
    database is shared through a single static connection.
    """

    if db_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in db_url or db_url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
        return create_engine(db_url, **kwargs)
    return create_engine(db_url, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    # expire_on_commit=False: rows are converted to dataclasses after commit.
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, class_=Session)


def session_factory_from_settings(settings: Settings | None = None) -> sessionmaker[Session]:
    settings = settings or get_settings()
    return create_session_factory(create_db_engine(settings.resolved_db_url()))
