from collections.abc import Generator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from config import Settings


def make_engine(settings: Settings) -> Engine:
    """Build the engine for ``settings.database_url``.

    SQLite connections are shared across threads; an in-memory SQLite
    database is pinned to one connection so every session sees it.
    """
    kwargs = {}
    url = settings.database_url
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool

    return create_engine(url, echo=settings.sql_echo, **kwargs)


def create_db_and_tables(engine: Engine) -> None:
    """Create all tables in the database if they don't exist."""
    SQLModel.metadata.create_all(engine)


def get_session(request: Request) -> Generator[Session, None, None]:
    """Yield a database session bound to the application's engine."""
    with Session(request.app.state.engine) as session:
        yield session


SessionDep = Annotated[Session, Depends(get_session)]
