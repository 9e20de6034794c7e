from supabase import Client
from app.modules.subscriptions.schemas import (
    GrantStatus,
    PlanLimits,
    QuotaResponse,
    RoleUsage,
    SubscriptionGrant,
    USABLE_GRANT_STATUSES,
)
from app.modules.deployments.errors import QuotaExceeded
from app.modules.deployments.schemas import DeploymentStatus, Role
from app.modules.deployments.service import DeploymentService
from typing import Iterable, List, Optional
from datetime import datetime, timezone
from fastapi import HTTPException
import logging

logger = logging.getLogger(__name__)


class SubscriptionService:
    def __init__(self, supabase: Client):
        self.supabase = supabase
        self.deployments = DeploymentService(supabase)

    def list_grants(self, user_id: str) -> List[SubscriptionGrant]:
        """All grants of a user, newest first"""
        try:
            result = self.supabase.table("subscriptions")\
                .select("*")\
                .eq("user_id", user_id)\
                .order("created_at", desc=True)\
                .execute()
            return [SubscriptionGrant(**grant) for grant in result.data or []]
        except Exception as e:
            logger.error(f"Error listing subscriptions for user {user_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def get_usable_grant(self, user_id: str, now: Optional[datetime] = None) -> Optional[SubscriptionGrant]:
        """Most recent active or trialing grant whose window has not ended"""
        now = now or datetime.now(timezone.utc)
        for grant in self.list_grants(user_id):
            if grant.usable(now):
                return grant
        return None

    def get_latest_grant(self, user_id: str) -> Optional[SubscriptionGrant]:
        grants = self.list_grants(user_id)
        return grants[0] if grants else None

    def list_overdue_grants(self, now: Optional[datetime] = None) -> List[SubscriptionGrant]:
        """Grants still marked active or trialing although their window has ended"""
        now = now or datetime.now(timezone.utc)
        try:
            result = self.supabase.table("subscriptions")\
                .select("*")\
                .in_("status", [s.value for s in USABLE_GRANT_STATUSES])\
                .execute()
        except Exception as e:
            logger.error(f"Error listing active subscriptions: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))
        grants = [SubscriptionGrant(**grant) for grant in result.data or []]
        return [g for g in grants if not g.window_open(now)]

    def mark_expired(self, grant_id: str) -> bool:
        try:
            result = self.supabase.table("subscriptions")\
                .update({
                    "status": GrantStatus.EXPIRED.value,
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                })\
                .eq("id", grant_id)\
                .execute()
            return bool(result.data)
        except Exception as e:
            logger.error(f"Error expiring subscription {grant_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def get_usage(self, user_id: str) -> RoleUsage:
        """Counts deployments holding each role. Failed deployments do not consume quota."""
        usage = RoleUsage()
        for deployment in self.deployments.list_deployments_by_user(user_id):
            if deployment.status == DeploymentStatus.FAILED:
                continue
            if deployment.frontend is not None:
                usage.frontend += 1
            if deployment.backend is not None:
                usage.backend += 1
        return usage

    def get_quota(self, user_id: str, now: Optional[datetime] = None) -> QuotaResponse:
        grant = self.get_usable_grant(user_id, now)
        limits = grant.limits if grant else PlanLimits()
        usage = self.get_usage(user_id)
        return QuotaResponse(
            plan_name=grant.plan_name if grant else None,
            grant_id=grant.id if grant else None,
            limits=limits,
            usage=usage,
            remaining=RoleUsage(
                frontend=max(0, limits.max_frontend - usage.frontend),
                backend=max(0, limits.max_backend - usage.backend),
            ),
        )

    def check_quota(self, user_id: str, roles: Iterable[Role], now: Optional[datetime] = None) -> QuotaResponse:
        """Raise QuotaExceeded if any requested role has no headroom left."""
        roles = list(roles)
        quota = self.get_quota(user_id, now)
        limits = {
            "max_frontend": quota.limits.max_frontend,
            "max_backend": quota.limits.max_backend,
        }
        if quota.grant_id is None:
            raise QuotaExceeded(
                role=roles[0].value if roles else Role.FRONTEND.value,
                limits=limits,
                message="No active subscription. Please subscribe to a plan to deploy.",
            )
        for role in roles:
            remaining = getattr(quota.remaining, role.value)
            if remaining <= 0:
                logger.info(f"User {user_id} is out of {role.value} quota ({limits})")
                raise QuotaExceeded(role=role.value, limits=limits)
        return quota
