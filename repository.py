from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import PasswordResetToken, User, Workspace, WorkspacePermission, WorkspaceUser


class UniqueViolation(Exception):
    """A unique constraint rejected a write; ``constraint`` names the column."""

    def __init__(self, constraint: str) -> None:
        super().__init__(f"Unique constraint violated: {constraint}")
        self.constraint = constraint


def _violated_column(exc: IntegrityError) -> Optional[str]:
    message = str(exc.orig) if exc.orig is not None else str(exc)
    # NOT NULL, CHECK and foreign-key failures name columns too; only a
    # uniqueness failure is a conflict.
    if "UNIQUE constraint failed" not in message and "duplicate key" not in message:
        return None
    for column in ("email_hash", "username"):
        if column in message:
            return column
    return "unknown"


@dataclass(frozen=True)
class CreateUserData:
    username: str
    display_name: str
    password_hash: str
    email_hash: str
    email_encrypted: str


class AuthRepository(Protocol):
    def find_user_by_username(self, username: str) -> Optional[User]: ...

    def find_user_by_id(self, user_id: int) -> Optional[User]: ...

    def get_user_token_version(self, user_id: int) -> Optional[int]: ...

    def create_user(self, data: CreateUserData) -> User: ...

    def increment_token_version(self, user_id: int) -> None: ...

    def update_password_and_invalidate_sessions(
        self, user_id: int, password_hash: str
    ) -> None: ...

    def update_email(
        self, user_id: int, email_hash: str, email_encrypted: str
    ) -> None: ...

    def create_password_reset_token(
        self, user_id: int, token_hash: str, expires_at: datetime
    ) -> None: ...

    def find_valid_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[PasswordResetToken]: ...

    def mark_reset_token_used(self, token_id: int, now: datetime) -> None: ...

    def consume_reset_token(
        self, token_id: int, user_id: int, password_hash: str, now: datetime
    ) -> bool: ...


class SqlAuthRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_user_by_username(self, username: str) -> Optional[User]:
        return self.session.scalar(select(User).where(User.username == username))

    def find_user_by_id(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def get_user_token_version(self, user_id: int) -> Optional[int]:
        return self.session.scalar(
            select(User.token_version).where(User.id == user_id)
        )

    def create_user(self, data: CreateUserData) -> User:
        user = User(
            username=data.username,
            display_name=data.display_name,
            password_hash=data.password_hash,
            email_hash=data.email_hash,
            email_encrypted=data.email_encrypted,
            token_version=0,
        )
        workspace = Workspace(balance_cents=0)
        try:
            self.session.add_all([user, workspace])
            self.session.flush()
            self.session.add(
                WorkspaceUser(
                    user_id=user.id,
                    workspace_id=workspace.id,
                    permission=WorkspacePermission.owner,
                )
            )
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            column = _violated_column(exc)
            if column is None:
                raise
            raise UniqueViolation(column) from exc
        self.session.refresh(user)
        return user

    def increment_token_version(self, user_id: int) -> None:
        self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(token_version=User.token_version + 1)
        )
        self.session.commit()

    def update_password_and_invalidate_sessions(
        self, user_id: int, password_hash: str
    ) -> None:
        self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                password_hash=password_hash, token_version=User.token_version + 1
            )
        )
        self.session.commit()

    def update_email(self, user_id: int, email_hash: str, email_encrypted: str) -> None:
        try:
            self.session.execute(
                update(User)
                .where(User.id == user_id)
                .values(email_hash=email_hash, email_encrypted=email_encrypted)
            )
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            column = _violated_column(exc)
            if column is None:
                raise
            raise UniqueViolation(column) from exc

    def create_password_reset_token(
        self, user_id: int, token_hash: str, expires_at: datetime
    ) -> None:
        self.session.add(
            PasswordResetToken(
                user_id=user_id, token_hash=token_hash, expires_at=expires_at
            )
        )
        self.session.commit()

    def find_valid_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        return self.session.scalar(
            select(PasswordResetToken).where(
                PasswordResetToken.token_hash == token_hash,
                PasswordResetToken.used_at.is_(None),
                PasswordResetToken.expires_at > now,
            )
        )

    def mark_reset_token_used(self, token_id: int, now: datetime) -> None:
        self.session.execute(
            update(PasswordResetToken)
            .where(PasswordResetToken.id == token_id)
            .values(used_at=now)
        )
        self.session.commit()

    def consume_reset_token(
        self, token_id: int, user_id: int, password_hash: str, now: datetime
    ) -> bool:
        """Burn the token, replace the password and end all sessions as one commit.

        The token update is guarded on ``used_at IS NULL`` so two concurrent
        consumers cannot both succeed; the loser gets ``False`` and nothing is
        written.
        """
        try:
            burned = self.session.execute(
                update(PasswordResetToken)
                .where(
                    PasswordResetToken.id == token_id,
                    PasswordResetToken.used_at.is_(None),
                )
                .values(used_at=now)
            )
            if burned.rowcount != 1:
                self.session.rollback()
                return False
            self.session.execute(
                update(User)
                .where(User.id == user_id)
                .values(
                    password_hash=password_hash,
                    token_version=User.token_version + 1,
                )
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return True

    def purge_expired_reset_tokens(self, now: datetime) -> int:
        result = self.session.execute(
            delete(PasswordResetToken).where(
                or_(
                    PasswordResetToken.used_at.is_not(None),
                    PasswordResetToken.expires_at <= now,
                )
            )
        )
        self.session.commit()
        return int(result.rowcount or 0)
