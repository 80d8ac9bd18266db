from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

import scheduler
from database import Base
from models import PasswordResetToken, User
from scheduler import SchedulerManager


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_scheduler_disabled_in_test_env() -> None:
    manager = SchedulerManager()
    assert manager.enabled is False
    manager.start()
    assert not manager.scheduler.running
    manager.stop()


def test_purge_removes_spent_and_expired_tokens(monkeypatch) -> None:
    session = make_session()
    user = User(username="alice", display_name="Alice", password_hash="x")
    session.add(user)
    session.commit()

    now = datetime.utcnow()
    session.add_all(
        [
            PasswordResetToken(
                user_id=user.id, token_hash="a" * 64, expires_at=now + timedelta(hours=1)
            ),
            PasswordResetToken(
                user_id=user.id, token_hash="b" * 64, expires_at=now - timedelta(hours=1)
            ),
            PasswordResetToken(
                user_id=user.id,
                token_hash="c" * 64,
                expires_at=now + timedelta(hours=1),
                used_at=now,
            ),
        ]
    )
    session.commit()

    @contextmanager
    def fake_scope():
        yield session

    monkeypatch.setattr(scheduler, "session_scope", fake_scope)

    assert scheduler.purge_reset_tokens() == 2
    remaining = session.scalars(select(PasswordResetToken.token_hash)).all()
    assert remaining == ["a" * 64]


def test_archive_job_with_nothing_due(monkeypatch) -> None:
    session = make_session()

    @contextmanager
    def fake_scope():
        yield session

    monkeypatch.setattr(scheduler, "session_scope", fake_scope)
    assert scheduler.archive_due_cycles("test") == 0
