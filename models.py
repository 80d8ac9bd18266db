from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class ItemType(str, Enum):
    income = "INCOME"
    rent = "RENT"
    credit_card = "CREDIT_CARD"
    loan_payment = "LOAN_PAYMENT"
    utilities = "UTILITIES"
    insurance = "INSURANCE"
    subscription = "SUBSCRIPTION"
    other = "OTHER"

    @property
    def is_income(self) -> bool:
        return self is ItemType.income


ITEM_TYPE_ENUM = SAEnum(
    ItemType,
    name="itemtype",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class WorkspacePermission(str, Enum):
    owner = "OWNER"
    member = "MEMBER"
    viewer = "VIEWER"

    @property
    def can_edit(self) -> bool:
        return self in (WorkspacePermission.owner, WorkspacePermission.member)


WORKSPACE_PERMISSION_ENUM = SAEnum(
    WorkspacePermission,
    name="workspacepermission",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(30), nullable=False)
    display_name: Mapped[str] = mapped_column(String(50), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(100), nullable=False)
    # HMAC of the normalized address; the plaintext is only kept encrypted.
    email_hash: Mapped[Optional[str]] = mapped_column(String(64))
    email_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    token_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    memberships: Mapped[list["WorkspaceUser"]] = relationship(
        "WorkspaceUser", back_populates="user"
    )
    reset_tokens: Mapped[list["PasswordResetToken"]] = relationship(
        "PasswordResetToken", back_populates="user", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("username", name="uq_users_username"),
        UniqueConstraint("email_hash", name="uq_users_email_hash"),
        CheckConstraint("token_version >= 0", name="ck_users_token_version"),
    )


class PasswordResetToken(Base):
    """Single-use reset credential; only the SHA-256 of the raw token is stored."""

    __tablename__ = "password_reset_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    user: Mapped["User"] = relationship("User", back_populates="reset_tokens")

    __table_args__ = (
        UniqueConstraint("token_hash", name="uq_reset_token_hash"),
        Index("ix_reset_tokens_user", "user_id"),
    )


class Workspace(Base, TimestampMixin):
    __tablename__ = "workspaces"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    balance_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Derived from the items, cached so the cycle is cheap to read and lock.
    cycle_start_day: Mapped[Optional[int]] = mapped_column(Integer)
    cycle_end_day: Mapped[Optional[int]] = mapped_column(Integer)

    members: Mapped[list["WorkspaceUser"]] = relationship(
        "WorkspaceUser", back_populates="workspace", cascade="all, delete-orphan"
    )
    items: Mapped[list["Item"]] = relationship(
        "Item",
        back_populates="workspace",
        cascade="all, delete-orphan",
        order_by="Item.day_of_month",
    )
    completed_cycles: Mapped[list["CompletedCycle"]] = relationship(
        "CompletedCycle", back_populates="workspace", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "cycle_start_day IS NULL OR (cycle_start_day BETWEEN 1 AND 31)",
            name="ck_workspace_cycle_start_day",
        ),
        CheckConstraint(
            "cycle_end_day IS NULL OR (cycle_end_day BETWEEN 1 AND 31)",
            name="ck_workspace_cycle_end_day",
        ),
    )


class WorkspaceUser(Base, TimestampMixin):
    __tablename__ = "workspace_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    workspace_id: Mapped[int] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    permission: Mapped[WorkspacePermission] = mapped_column(
        WORKSPACE_PERMISSION_ENUM, nullable=False, default=WorkspacePermission.owner
    )

    user: Mapped["User"] = relationship("User", back_populates="memberships")
    workspace: Mapped["Workspace"] = relationship(
        "Workspace", back_populates="members"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "workspace_id", name="uq_workspace_user"),
    )


class Item(Base, TimestampMixin):
    __tablename__ = "items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workspace_id: Mapped[int] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[ItemType] = mapped_column(ITEM_TYPE_ENUM, nullable=False)
    label: Mapped[str] = mapped_column(String(100), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    day_of_month: Mapped[int] = mapped_column(Integer, nullable=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    workspace: Mapped["Workspace"] = relationship("Workspace", back_populates="items")

    __table_args__ = (
        Index("ix_items_workspace", "workspace_id"),
        CheckConstraint("amount_cents >= 0", name="ck_items_amount_positive"),
        CheckConstraint(
            "day_of_month BETWEEN 1 AND 31", name="ck_items_day_of_month_range"
        ),
    )


class CompletedCycle(Base):
    """Append-only snapshot of a workspace at the moment a cycle was archived."""

    __tablename__ = "completed_cycles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workspace_id: Mapped[int] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    cycle_label: Mapped[str] = mapped_column(String(40), nullable=False)
    final_balance_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    items_snapshot: Mapped[str] = mapped_column(Text, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    workspace: Mapped["Workspace"] = relationship(
        "Workspace", back_populates="completed_cycles"
    )

    __table_args__ = (
        Index("ix_completed_cycles_workspace", "workspace_id", "completed_at"),
    )
