from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event, func, select
from sqlalchemy.orm import Session, sessionmaker

from evalroom.errors import NotFoundError, StaleWriteError
from evalroom.models import Base, EmailTemplate

_lock = threading.Lock()
_engine = None
_SessionLocal = None


def configure_sqlite(engine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINTs behave on pysqlite."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            from evalroom.config import get_settings
            db_path = get_settings().database_path
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{db_path}"
        _engine = create_engine(url, connect_args={"check_same_thread": False})
        configure_sqlite(_engine)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    with session_scope() as session:
        seed_email_templates(session)
        session.commit()


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (scripts, background callers)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def seed_email_templates(session: Session) -> int:
    """Insert the default email templates if the table is empty (caller commits)."""
    count = session.execute(select(func.count()).select_from(EmailTemplate)).scalar_one()
    if count:
        return 0
    from evalroom.feedback import DEFAULT_TEMPLATES
    for category, (label, subject, body) in DEFAULT_TEMPLATES.items():
        session.add(EmailTemplate(
            category=category, label=label,
            subject_template=subject, body_template=body, is_active=True,
        ))
    session.flush()
    return len(DEFAULT_TEMPLATES)


def get_or_raise(session: Session, model, entity_id: int, label: str = "Entity"):
    """Fetch *model* by primary key or raise :class:`~evalroom.errors.NotFoundError`."""
    obj = session.get(model, entity_id)
    if obj is None:
        raise NotFoundError(f"{label} not found")
    return obj


def check_version(obj, expected_version: int | None) -> None:
    """Reject a write made against an older copy of *obj*."""
    if expected_version is not None and obj.version != expected_version:
        raise StaleWriteError(
            f"Record was modified by someone else (version {obj.version}, "
            f"you had {expected_version}). Reload and try again."
        )
