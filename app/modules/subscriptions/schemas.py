from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from enum import Enum


class GrantStatus(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    HALTED = "halted"


USABLE_GRANT_STATUSES = (GrantStatus.ACTIVE, GrantStatus.TRIALING)


class PlanLimits(BaseModel):
    max_frontend: int = 0
    max_backend: int = 0
    features: List[str] = Field(default_factory=list)

    def for_role(self, role: str) -> int:
        return self.max_frontend if role == "frontend" else self.max_backend


class SubscriptionGrant(BaseModel):
    id: str
    user_id: str
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    status: GrantStatus
    current_start: Optional[datetime] = None
    current_end: Optional[datetime] = None
    limits: PlanLimits = Field(default_factory=PlanLimits)
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    def window_open(self, now: datetime) -> bool:
        return self.current_end is None or self.current_end > now

    def usable(self, now: datetime) -> bool:
        return self.status in USABLE_GRANT_STATUSES and self.window_open(now)


class RoleUsage(BaseModel):
    frontend: int = 0
    backend: int = 0


class QuotaResponse(BaseModel):
    plan_name: Optional[str] = None
    grant_id: Optional[str] = None
    limits: PlanLimits
    usage: RoleUsage
    remaining: RoleUsage


class SubscriptionWarning(BaseModel):
    type: str  # subscription_expired, pending_deletion
    severity: str = "critical"
    message: str
    action_required: Optional[str] = None
    suspended_count: Optional[int] = None
    deployment_id: Optional[str] = None
    deployment_name: Optional[str] = None
    days_until_deletion: Optional[int] = None


class WarningsResponse(BaseModel):
    has_warnings: bool
    user_status: str
    current_plan: Optional[str] = None
    warnings: List[SubscriptionWarning] = Field(default_factory=list)


class SweepReport(BaseModel):
    expired_grants: int = 0
    suspended: int = 0
    reaped: int = 0
    errors: int = 0
