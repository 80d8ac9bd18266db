from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from models import ItemType, WorkspacePermission


# Auth payloads stay permissive: AuthService owns their validation so that
# every rejection carries the same message regardless of which field failed.
class RegisterIn(BaseModel):
    username: Optional[str] = None
    display_name: Optional[str] = None
    password: Optional[str] = None
    email: Optional[str] = None


class LoginIn(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class ForgotPasswordIn(BaseModel):
    username: Optional[str] = None


class ResetPasswordIn(BaseModel):
    token: Optional[str] = None
    new_password: Optional[str] = None


class ChangeEmailIn(BaseModel):
    current_password: Optional[str] = None
    new_email: Optional[str] = None


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    display_name: str


class ItemIn(BaseModel):
    workspace_id: Optional[int] = None
    type: ItemType
    label: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., ge=0)
    day_of_month: int = Field(..., ge=1, le=31)


class ItemUpdate(BaseModel):
    type: Optional[ItemType] = None
    label: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount_cents: Optional[int] = Field(default=None, ge=0)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)


class ItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: ItemType
    label: str
    amount_cents: int
    day_of_month: int
    is_paid: bool


class BalanceIn(BaseModel):
    workspace_id: Optional[int] = None
    balance_cents: int


class WorkspaceRef(BaseModel):
    workspace_id: Optional[int] = None


class CompletedCycleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    cycle_label: str
    final_balance_cents: int
    items: list[dict[str, object]]
    completed_at: datetime


class WorkspaceOut(BaseModel):
    id: int
    balance_cents: int
    cycle_start_day: Optional[int]
    cycle_end_day: Optional[int]
    cycle_label: Optional[str]
    permission: WorkspacePermission
    items: list[ItemOut]
    balance_cards: dict[str, int]
    archived: bool = False


class MemberIn(BaseModel):
    user_id: int = Field(..., validation_alias=AliasChoices("user_id", "userId"))
    permission: WorkspacePermission = WorkspacePermission.member


class MemberOut(BaseModel):
    user_id: int
    username: str
    display_name: str
    permission: WorkspacePermission


class SharedWorkspaceOut(BaseModel):
    id: int
    permission: WorkspacePermission
    owner: Optional[UserOut]
