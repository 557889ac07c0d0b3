"""Database engine and session management."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional
from urllib.parse import urlparse

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from coachnotify.core.config import get_settings

SessionFactory = Callable[[], Session]


def _resolve_sqlite_path(database_url: str) -> None:
    """Ensure the parent directory for a SQLite database exists."""

    parsed = urlparse(database_url)
    if parsed.scheme != "sqlite":
        return

    if parsed.path in ("", ":memory:", "/:memory:"):
        return

    db_dir = Path(parsed.path).expanduser().resolve().parent
    db_dir.mkdir(parents=True, exist_ok=True)


def build_engine(url: str, *, echo: bool = False) -> Engine:
    """Create an engine with the pooling rules each backend needs."""

    if url.startswith("sqlite"):
        _resolve_sqlite_path(url)
        engine_kwargs: dict[str, object] = {
            "future": True,
            "echo": echo,
            "connect_args": {"check_same_thread": False, "timeout": 15},
        }
        if url.endswith(":memory:") or url == "sqlite://":
            engine_kwargs["poolclass"] = StaticPool
        return create_engine(url, **engine_kwargs)
    return create_engine(url, future=True, echo=echo, pool_pre_ping=True)


def build_session_factory(bind: Engine) -> sessionmaker:
    # Objects stay readable after commit; pipeline components hand them across threads.
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=bind,
        future=True,
        class_=Session,
        expire_on_commit=False,
    )


def _create_engine() -> Engine:
    settings = get_settings()
    return build_engine(settings.database_url, echo=settings.sql_echo)


engine: Engine = _create_engine()

SessionLocal = build_session_factory(engine)


def get_session(factory: Optional[SessionFactory] = None) -> Iterator[Session]:
    """FastAPI dependency for acquiring a database session."""

    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_scope(factory: Optional[SessionFactory] = None) -> Iterator[Session]:
    """Provide a transactional scope for background jobs and pipeline components."""

    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
