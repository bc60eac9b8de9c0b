"""Security audit journal."""
from __future__ import annotations

from pathlib import Path

from sqlmodel import Session, select

from common import audit


def test_log_event_persists_row():
    entry = audit.log_event(
        service="payment_converter",
        action="CONVERSION_REJECTED",
        category="path",
        details={"input_format": "MT103"},
    )
    assert entry.id is not None

    with Session(audit.get_engine()) as sess:
        rows = sess.exec(select(audit.SecurityAuditEvent)).all()
    assert len(rows) == 1
    assert rows[0].details == {"input_format": "MT103"}
    assert rows[0].category == "path"


def test_configure_engine_creates_sqlite_directory(tmp_path: Path):
    db = tmp_path / "nested" / "dir" / "audit.db"
    audit.configure_engine(f"sqlite:///{db}")
    audit.log_event(service="payment_converter", action="TEST")
    assert db.exists()


def test_configure_engine_from_env(monkeypatch, tmp_path: Path):
    db = tmp_path / "env" / "audit.db"
    monkeypatch.setenv("PAYCONV_AUDIT_DB_URL", f"sqlite:///{db}")
    audit.configure_engine()
    audit.log_event(service="payment_converter", action="TEST")
    assert db.exists()


def test_get_session_yields_bound_session():
    gen = audit.get_session()
    sess = next(gen)
    assert sess.get_bind() is audit.get_engine()
    gen.close()
