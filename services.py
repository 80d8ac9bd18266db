from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from cycles import (
    CycleDays,
    build_archive_label,
    build_cycle_label,
    calculate_balance_cards,
    calculate_cycle_days,
    is_past_cycle_end,
)
from models import (
    CompletedCycle,
    Item,
    User,
    Workspace,
    WorkspacePermission,
    WorkspaceUser,
)
from schemas import ItemIn, ItemUpdate

logger = logging.getLogger(__name__)


def local_today() -> date:
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone)).date()


def snapshot_items(items: list[Item]) -> list[dict[str, object]]:
    return [
        {
            "id": item.id,
            "type": item.type.value,
            "label": item.label,
            "amount_cents": int(item.amount_cents),
            "day_of_month": item.day_of_month,
            "is_paid": item.is_paid,
        }
        for item in items
    ]


def public_profile(user: User) -> dict[str, object]:
    return {"id": user.id, "username": user.username, "display_name": user.display_name}


class WorkspaceNotFound(ValueError):
    pass


class WorkspaceAccessDenied(ValueError):
    pass


class ItemNotFound(ValueError):
    pass


class UserNotFound(ValueError):
    pass


class MemberNotFound(ValueError):
    pass


class MemberAlreadyExists(ValueError):
    pass


class InvalidSharingRequest(ValueError):
    pass


class WorkspaceService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _membership(self, workspace_id: Optional[int]) -> WorkspaceUser:
        stmt = select(WorkspaceUser).where(WorkspaceUser.user_id == self.user_id)
        if workspace_id is not None:
            stmt = stmt.where(WorkspaceUser.workspace_id == workspace_id)
        else:
            # Without an explicit id the user's own workspace wins over shared ones.
            stmt = stmt.order_by(
                case((WorkspaceUser.permission == WorkspacePermission.owner, 0), else_=1),
                WorkspaceUser.id,
            )
        membership = self.session.scalars(stmt.limit(1)).first()
        if membership is None:
            raise WorkspaceNotFound("Workspace not found")
        return membership

    def get(self, workspace_id: Optional[int] = None) -> Workspace:
        membership = self._membership(workspace_id)
        return self.session.get(Workspace, membership.workspace_id)

    def permission(self, workspace_id: int) -> WorkspacePermission:
        return self._membership(workspace_id).permission

    def require_editable(self, workspace_id: Optional[int] = None) -> Workspace:
        membership = self._membership(workspace_id)
        if not membership.permission.can_edit:
            raise WorkspaceAccessDenied("You have read-only access to this workspace")
        return self.session.get(Workspace, membership.workspace_id)

    def items(self, workspace_id: int) -> list[Item]:
        stmt = (
            select(Item)
            .where(Item.workspace_id == workspace_id)
            .order_by(Item.day_of_month, Item.id)
        )
        return list(self.session.scalars(stmt).all())

    def refresh_cycle_days(self, workspace: Workspace) -> CycleDays:
        self.session.flush()
        cycle = calculate_cycle_days(self.items(workspace.id))
        workspace.cycle_start_day = cycle.start_day
        workspace.cycle_end_day = cycle.end_day
        return cycle

    def update_balance(
        self, balance_cents: int, workspace_id: Optional[int] = None
    ) -> Workspace:
        workspace = self.require_editable(workspace_id)
        workspace.balance_cents = balance_cents
        self.session.commit()
        self.session.refresh(workspace)
        return workspace

    def reset(self, workspace_id: Optional[int] = None) -> None:
        workspace = self.require_editable(workspace_id)
        self.session.execute(
            update(Item).where(Item.workspace_id == workspace.id).values(is_paid=False)
        )
        self.session.commit()

    def overview(
        self, workspace_id: Optional[int] = None, today: Optional[date] = None
    ) -> dict[str, object]:
        today = today or local_today()
        membership = self._membership(workspace_id)
        archived = CycleService(self.session).archive_cycle_if_needed(
            membership.workspace_id, today=today
        )

        workspace = self.session.get(Workspace, membership.workspace_id)
        items = self.items(workspace.id)
        cards = calculate_balance_cards(workspace.balance_cents, items)
        label = None
        if workspace.cycle_start_day is not None and workspace.cycle_end_day is not None:
            label = build_cycle_label(
                workspace.cycle_start_day, workspace.cycle_end_day, today
            )
        return {
            "id": workspace.id,
            "balance_cents": workspace.balance_cents,
            "cycle_start_day": workspace.cycle_start_day,
            "cycle_end_day": workspace.cycle_end_day,
            "cycle_label": label,
            "permission": membership.permission,
            "items": items,
            "balance_cards": cards.as_dict(),
            "archived": archived,
        }

    def completed_cycles(self, workspace_id: int) -> list[dict[str, object]]:
        self._membership(workspace_id)
        stmt = (
            select(CompletedCycle)
            .where(CompletedCycle.workspace_id == workspace_id)
            .order_by(CompletedCycle.completed_at.desc(), CompletedCycle.id.desc())
        )
        return [
            {
                "id": cycle.id,
                "cycle_label": cycle.cycle_label,
                "final_balance_cents": cycle.final_balance_cents,
                "items": json.loads(cycle.items_snapshot),
                "completed_at": cycle.completed_at,
            }
            for cycle in self.session.scalars(stmt).all()
        ]

    def _require_owner(self, workspace_id: int) -> WorkspaceUser:
        membership = self._membership(workspace_id)
        if membership.permission != WorkspacePermission.owner:
            raise WorkspaceAccessDenied("Only the workspace owner can manage members")
        return membership

    def members(self, workspace_id: int) -> list[dict[str, object]]:
        self._membership(workspace_id)
        stmt = (
            select(WorkspaceUser, User)
            .join(User, User.id == WorkspaceUser.user_id)
            .where(WorkspaceUser.workspace_id == workspace_id)
            .order_by(
                case((WorkspaceUser.permission == WorkspacePermission.owner, 0), else_=1),
                User.username,
            )
        )
        return [
            {
                "user_id": user.id,
                "username": user.username,
                "display_name": user.display_name,
                "permission": membership.permission,
            }
            for membership, user in self.session.execute(stmt).all()
        ]

    def add_member(
        self,
        workspace_id: int,
        user_id: int,
        permission: WorkspacePermission = WorkspacePermission.member,
    ) -> dict[str, object]:
        self._require_owner(workspace_id)
        if permission == WorkspacePermission.owner:
            raise InvalidSharingRequest("Members can only be granted MEMBER or VIEWER")
        if user_id == self.user_id:
            raise InvalidSharingRequest("You already own this workspace")
        user = self.session.get(User, user_id)
        if user is None:
            raise UserNotFound("User not found")

        existing = self.session.scalars(
            select(WorkspaceUser).where(
                WorkspaceUser.workspace_id == workspace_id,
                WorkspaceUser.user_id == user_id,
            )
        ).first()
        if existing is not None:
            raise MemberAlreadyExists("User is already a member of this workspace")

        self.session.add(
            WorkspaceUser(user_id=user_id, workspace_id=workspace_id, permission=permission)
        )
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise MemberAlreadyExists(
                "User is already a member of this workspace"
            ) from exc
        logger.info(f"member_added: workspace_id={workspace_id} user_id={user_id}")
        return {
            "user_id": user.id,
            "username": user.username,
            "display_name": user.display_name,
            "permission": permission,
        }

    def remove_member(self, workspace_id: int, user_id: int) -> None:
        # Anyone may leave a workspace; only the owner may remove others.
        if user_id == self.user_id:
            self._membership(workspace_id)
        else:
            self._require_owner(workspace_id)
        membership = self.session.scalars(
            select(WorkspaceUser).where(
                WorkspaceUser.workspace_id == workspace_id,
                WorkspaceUser.user_id == user_id,
            )
        ).first()
        if membership is None:
            raise MemberNotFound("Member not found")
        if membership.permission == WorkspacePermission.owner:
            raise InvalidSharingRequest("The workspace owner cannot be removed")
        self.session.delete(membership)
        self.session.commit()
        logger.info(f"member_removed: workspace_id={workspace_id} user_id={user_id}")

    def shared_workspaces(self) -> list[dict[str, object]]:
        stmt = (
            select(WorkspaceUser)
            .where(
                WorkspaceUser.user_id == self.user_id,
                WorkspaceUser.permission != WorkspacePermission.owner,
            )
            .order_by(WorkspaceUser.workspace_id)
        )
        shared = []
        for membership in self.session.scalars(stmt).all():
            owner = self.session.scalars(
                select(User)
                .join(WorkspaceUser, WorkspaceUser.user_id == User.id)
                .where(
                    WorkspaceUser.workspace_id == membership.workspace_id,
                    WorkspaceUser.permission == WorkspacePermission.owner,
                )
            ).first()
            shared.append(
                {
                    "id": membership.workspace_id,
                    "permission": membership.permission,
                    "owner": public_profile(owner) if owner else None,
                }
            )
        return shared


class ItemService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.workspaces = WorkspaceService(session, user_id)

    def _editable_item(self, item_id: int) -> Item:
        item = self.session.get(Item, item_id)
        if item is None:
            raise ItemNotFound("Item not found")
        try:
            self.workspaces.require_editable(item.workspace_id)
        except WorkspaceNotFound as exc:
            raise ItemNotFound("Item not found") from exc
        return item

    def create(self, data: ItemIn) -> Item:
        workspace = self.workspaces.require_editable(data.workspace_id)
        item = Item(
            workspace_id=workspace.id,
            type=data.type,
            label=data.label.strip(),
            amount_cents=data.amount_cents,
            day_of_month=data.day_of_month,
            is_paid=False,
        )
        self.session.add(item)
        self.workspaces.refresh_cycle_days(workspace)
        self.session.commit()
        self.session.refresh(item)
        return item

    def update(self, item_id: int, data: ItemUpdate) -> Item:
        item = self._editable_item(item_id)
        if data.type is not None:
            item.type = data.type
        if data.label is not None:
            item.label = data.label.strip()
        if data.amount_cents is not None:
            item.amount_cents = data.amount_cents
        if data.day_of_month is not None:
            item.day_of_month = data.day_of_month
        self.workspaces.refresh_cycle_days(item.workspace)
        self.session.commit()
        self.session.refresh(item)
        return item

    def delete(self, item_id: int) -> None:
        item = self._editable_item(item_id)
        workspace = item.workspace
        self.session.delete(item)
        self.workspaces.refresh_cycle_days(workspace)
        self.session.commit()

    def toggle_paid(self, item_id: int) -> Item:
        item = self._editable_item(item_id)
        item.is_paid = not item.is_paid
        self.session.commit()
        self.session.refresh(item)
        return item


class CycleService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def archive_cycle_if_needed(
        self, workspace_id: int, today: Optional[date] = None
    ) -> bool:
        """Snapshot and restart the cycle once every item is paid and it has ended.

        Runs as one transaction holding a row lock on the workspace, so
        concurrent callers for the same workspace queue up and only the first
        sees a fully paid cycle; the rest find the reset items and do nothing.
        The balance is never touched: it mirrors the real bank account.
        """
        today = today or local_today()
        try:
            archived = self._archive_locked(workspace_id, today)
        except Exception:
            self.session.rollback()
            raise
        if archived:
            self.session.commit()
            logger.info(f"cycle_archived: workspace_id={workspace_id}")
        else:
            # Releases the row lock.
            self.session.rollback()
        return archived

    def _archive_locked(self, workspace_id: int, today: date) -> bool:
        workspace = self.session.scalars(
            select(Workspace)
            .where(Workspace.id == workspace_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if workspace is None:
            return False
        start_day = workspace.cycle_start_day
        end_day = workspace.cycle_end_day
        if start_day is None or end_day is None:
            return False

        items = list(
            self.session.scalars(
                select(Item)
                .where(Item.workspace_id == workspace_id)
                .order_by(Item.id)
                .execution_options(populate_existing=True)
            ).all()
        )
        if not items:
            return False
        if not all(item.is_paid for item in items):
            return False
        if not is_past_cycle_end(start_day, end_day, today):
            return False

        snapshot = json.dumps(snapshot_items(items))
        # SQLite ignores FOR UPDATE, so the reset is the guard: a concurrent
        # archiver that already reset the items leaves fewer paid rows to match.
        reset = self.session.execute(
            update(Item)
            .where(Item.workspace_id == workspace_id, Item.is_paid)
            .values(is_paid=False)
            .execution_options(synchronize_session="evaluate")
        )
        if reset.rowcount != len(items):
            return False

        self.session.add(
            CompletedCycle(
                workspace_id=workspace_id,
                cycle_label=build_archive_label(today),
                final_balance_cents=workspace.balance_cents,
                items_snapshot=snapshot,
            )
        )
        return True

    def archive_all_due(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        workspace_ids = self.session.scalars(
            select(Workspace.id).where(Workspace.cycle_start_day.is_not(None))
        ).all()
        self.session.rollback()
        archived = 0
        for workspace_id in workspace_ids:
            if self.archive_cycle_if_needed(workspace_id, today=today):
                archived += 1
        return archived
