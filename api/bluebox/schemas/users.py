from datetime import datetime, timezone
from typing import Any, Literal, Union

from pydantic import BaseModel, Field, field_validator

UserRole = Literal["student", "venture_capitalist", "startup", "admin"]
UserTier = Literal["free", "premium"]
UserStatus = Literal["pending", "approved", "rejected", "banned"]


class UserOut(BaseModel):
    id: int
    username: str
    email: str
    role: UserRole
    tier: UserTier
    status: UserStatus
    referral_code: str | None = None
    created_at: datetime
    updated_at: datetime


class UserListOut(BaseModel):
    total: int
    limit: int
    offset: int
    users: list[UserOut] = Field(default_factory=list)


class UserBanOut(BaseModel):
    id: int
    user_id: int
    reason: str
    banned_by: int
    banned_at: datetime
    expires_at: datetime | None = None
    lifted_at: datetime | None = None
    lifted_by: int | None = None


class ModerationEventOut(BaseModel):
    id: int
    entity_type: str
    entity_id: int | None = None
    event_type: str
    actor_type: str
    actor_id: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class LimitSetOut(BaseModel):
    job_applications: int | None = None
    weekly_connections: int | None = None
    visible_jobs: int | None = None
    job_posts: int | None = None
    can_request_intro_with_student: bool
    can_request_intro_with_business: bool


class BanAction(BaseModel):
    action: Literal["ban"] = "ban"
    reason: str = Field(min_length=1, max_length=2000)
    expires_at: datetime | None = None

    @field_validator("reason")
    @classmethod
    def _reason_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("reason must not be blank")
        return stripped

    @field_validator("expires_at")
    @classmethod
    def _expires_in_future(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        if value <= datetime.now(timezone.utc):
            raise ValueError("expires_at must be in the future")
        return value


class UnbanAction(BaseModel):
    action: Literal["unban"] = "unban"


class TierAction(BaseModel):
    action: Literal["tier"] = "tier"
    tier: UserTier


class ApproveAction(BaseModel):
    action: Literal["approve"] = "approve"


class RejectAction(BaseModel):
    action: Literal["reject"] = "reject"


ModerationAction = Union[BanAction, UnbanAction, TierAction, ApproveAction, RejectAction]
