from __future__ import annotations

"""Security audit journal.

Security-relevant events (path traversal, injection hits, oversized input,
disallowed XML names) are appended as immutable rows to the
``security_audit_journal`` table, separately from anything shown to the user.
"""

import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import JSON, Column, String
from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel, create_engine

__all__ = [
    "SecurityAuditEvent",
    "configure_engine",
    "get_engine",
    "get_session",
    "log_event",
]


# ---------------------------------------------------------------------------
# Database setup
# ---------------------------------------------------------------------------

DEFAULT_AUDIT_DB_URL = "sqlite:///./.data/security_audit.db"

_engine: Engine | None = None
_engine_lock = threading.Lock()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecurityAuditEvent(SQLModel, table=True):
    """Immutable audit row for a single security event."""

    __tablename__ = "security_audit_journal"

    id: Optional[int] = Field(default=None, primary_key=True)

    ts: datetime = Field(default_factory=_utcnow, index=True)

    # Emitting component e.g. "payment_converter"
    service: str = Field(sa_column=Column(String, nullable=False, index=True))

    # Action verb e.g. "CONVERSION_REJECTED", "PATH_TRAVERSAL"
    action: str = Field(sa_column=Column(String, nullable=False))

    # Violation class: "sql", "script", "command", "path", "size", "xml_name", ...
    category: Optional[str] = None

    # Sanitised, JSON-serialisable context
    details: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False, default={})
    )


def _make_engine(url: str) -> Engine:
    if url.startswith("sqlite:///") and not url.startswith("sqlite:///:memory:"):
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        url,
        echo=False,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
    )
    SQLModel.metadata.create_all(engine, tables=[SecurityAuditEvent.__table__])
    return engine


def configure_engine(url: str | None = None) -> Engine:
    """(Re)bind the journal to *url*, or ``PAYCONV_AUDIT_DB_URL``."""

    global _engine
    with _engine_lock:
        _engine = _make_engine(url or os.getenv("PAYCONV_AUDIT_DB_URL", DEFAULT_AUDIT_DB_URL))
        return _engine


def get_engine() -> Engine:
    """Return the shared audit engine, creating it on first use."""

    if _engine is None:
        return configure_engine()
    return _engine


def get_session() -> Iterator[Session]:
    """Context-managed session generator (FastAPI dependency style)."""

    with Session(get_engine()) as session:
        yield session


def log_event(
    *,
    service: str,
    action: str,
    category: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> SecurityAuditEvent:
    """Insert a new audit record and commit immediately.

    Parameters
    ----------
    service: Name of the emitting component.
    action: Action verb.
    category: Violation class, if any.
    details: JSON-serialisable dictionary with extra context. Callers pass
        values already run through the logging sanitiser.
    """

    entry = SecurityAuditEvent(
        service=service,
        action=action,
        category=category,
        details=details or {},
    )

    with Session(get_engine()) as audit_sess:
        audit_sess.add(entry)
        audit_sess.commit()
        audit_sess.refresh(entry)
    return entry
