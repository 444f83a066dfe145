"""Engine and session plumbing shared by every service."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Build a sync engine.

    SQLite URLs get a busy timeout and cross-thread connections so the same
    services run against a file database in tests and tooling.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def unit_of_work(
    session_factory: sessionmaker[Session], session: Session | None = None
) -> Iterator[Session]:
    """
    Yield a session bound to one transaction.

    When the caller passes its own ``session`` the work joins that
    transaction and the caller owns commit/rollback. Otherwise a fresh
    transaction is opened and committed on exit (rolled back on error).
    """
    if session is not None:
        yield session
        return
    with session_factory.begin() as own:
        yield own
