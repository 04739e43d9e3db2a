"""Database connection and session management."""
import asyncio
from collections.abc import Callable, Generator
from contextlib import contextmanager
import logging
import threading
from typing import TypeVar

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from starlette.concurrency import run_in_threadpool

from zenchat.config import get_settings
from zenchat.errors import InternalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Base = declarative_base()


def build_engine(database_url: str, timeout_seconds: float) -> Engine:
    """Create an engine whose connections give up after ``timeout_seconds``."""
    if "sqlite" in database_url:
        # SQLite requires check_same_thread=False for FastAPI; timeout bounds lock waits
        connect_args = {"check_same_thread": False, "timeout": timeout_seconds}
        return create_engine(database_url, connect_args=connect_args)
    return create_engine(database_url, pool_timeout=timeout_seconds, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


settings = get_settings()

engine = build_engine(settings.database_url, settings.datastore_timeout_seconds)

SessionLocal = build_session_factory(engine)


class CommitGuard:
    """Hand-off between a worker thread's commit and a caller that gave up.

    Whichever side claims the transaction first wins: once a commit has begun
    it can no longer be abandoned, and an abandoned transaction never commits.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = "pending"

    def begin_commit(self) -> bool:
        with self._lock:
            if self._state == "abandoned":
                return False
            self._state = "committing"
            return True

    def abandon(self) -> bool:
        with self._lock:
            if self._state == "committing":
                return False
            self._state = "abandoned"
            return True


@contextmanager
def session_scope(
    session_factory: sessionmaker,
    guard: CommitGuard | None = None,
) -> Generator[Session, None, None]:
    """Transactional scope for use outside of request dependencies.

    Datastore failures are re-raised as ``InternalError``. With a ``guard``,
    the transaction rolls back instead of committing once it was abandoned.
    """
    db = session_factory()
    try:
        yield db
        if guard is not None and not guard.begin_commit():
            raise InternalError("Datastore operation abandoned after timeout")
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Datastore operation failed")
        raise InternalError("Datastore operation failed") from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _consume_result(task: asyncio.Future) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Abandoned datastore call finished with %r", task.exception())


async def run_db(
    session_factory: sessionmaker,
    fn: Callable[[Session], T],
    timeout: float,
) -> T:
    """Run ``fn`` inside a transaction on the threadpool, bounded by ``timeout``.

    On timeout the transaction is rolled back and ``InternalError`` raised,
    unless its commit had already begun; then the call waits for the commit
    so the caller never reports failure for work that was stored.
    """
    guard = CommitGuard()

    def _call() -> T:
        with session_scope(session_factory, guard) as db:
            return fn(db)

    task = asyncio.ensure_future(run_in_threadpool(_call))
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
    except asyncio.CancelledError:
        if guard.abandon():
            task.add_done_callback(_consume_result)
        raise
    except asyncio.TimeoutError as exc:
        if not guard.abandon():
            return await task
        task.add_done_callback(_consume_result)
        logger.error("Datastore call timed out after %.1fs", timeout)
        raise InternalError("Datastore operation timed out") from exc
