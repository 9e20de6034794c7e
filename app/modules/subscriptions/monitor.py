"""Subscription lifecycle: expire grants, suspend over-limit deployments, reap after the grace period."""
import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from app.config import settings
from app.modules.deployments.orchestrator import DeploymentOrchestrator
from app.modules.deployments.schemas import DeploymentResponse, DeploymentStatus, Role
from app.modules.subscriptions.schemas import (
    GrantStatus,
    SubscriptionGrant,
    SubscriptionWarning,
    SweepReport,
    WarningsResponse,
)
from app.modules.subscriptions.service import SubscriptionService
from app.modules.users.schemas import SubscriptionState
from app.modules.users.service import UserService

logger = logging.getLogger(__name__)

SUSPENDED_SUBSCRIPTION_EXPIRED = "subscription_expired"
SUSPENDED_PLAN_LIMIT = "plan_limit_exceeded"

_DAY_SECONDS = 24 * 60 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionMonitor:
    def __init__(
        self,
        orchestrator: DeploymentOrchestrator,
        grace_period_days: Optional[int] = None,
        retained_unentitled: Optional[int] = None,
    ):
        self.orchestrator = orchestrator
        self.deployments = orchestrator.deployments
        self.subscriptions = SubscriptionService(orchestrator.deployments.supabase)
        self.users = UserService(orchestrator.deployments.supabase)
        self.grace_period = timedelta(
            days=settings.grace_period_days if grace_period_days is None else grace_period_days
        )
        self.retained_unentitled = (
            settings.retained_deployments_unentitled if retained_unentitled is None else retained_unentitled
        )

    def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """One sweep. Failures for one user or deployment are logged and do not stop the sweep."""
        now = now or _utcnow()
        report = SweepReport()
        logger.info("Checking subscriptions")

        report.expired_grants = self.expire_grants(now)

        owners = []
        for deployment in self.deployments.list_all_deployments():
            if deployment.user_id not in owners:
                owners.append(deployment.user_id)
        for user_id in owners:
            try:
                report.suspended += self.enforce_limits(user_id, now)
            except Exception as e:
                report.errors += 1
                logger.error(f"Error enforcing subscription limits for user {user_id}: {str(e)}")

        report.reaped = self.reap(now)
        logger.info(
            f"Subscription check completed: {report.expired_grants} grant(s) expired, "
            f"{report.suspended} deployment(s) suspended, {report.reaped} reaped"
        )
        return report

    def expire_grants(self, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()
        expired = 0
        for grant in self.subscriptions.list_overdue_grants(now):
            try:
                logger.info(f"Subscription {grant.id} of user {grant.user_id} expired at {grant.current_end}")
                self.subscriptions.mark_expired(grant.id)
                expired += 1
                if self.subscriptions.get_usable_grant(grant.user_id, now) is None:
                    self.users.update_subscription_status(
                        grant.user_id, SubscriptionState.EXPIRED, current_plan=grant.plan_name
                    )
            except Exception as e:
                logger.error(f"Error expiring subscription {grant.id}: {str(e)}")
        return expired

    def enforce_limits(self, user_id: str, now: Optional[datetime] = None) -> int:
        """Suspend what an unentitled user may not keep. Returns how many deployments were newly suspended."""
        now = now or _utcnow()
        grant = self.subscriptions.get_usable_grant(user_id, now)
        if grant is not None:
            self.lift_suspensions(user_id, grant)
            return 0

        latest = self.subscriptions.get_latest_grant(user_id)
        paid_expired = latest is not None
        retained = 0 if paid_expired else self.retained_unentitled
        reason = SUSPENDED_SUBSCRIPTION_EXPIRED if paid_expired else SUSPENDED_PLAN_LIMIT

        deployments = self.deployments.list_deployments_by_user(user_id)
        suspended = 0
        for deployment in deployments[retained:]:
            if deployment.suspended or deployment.status == DeploymentStatus.DEPLOYING:
                continue
            if deployment.status == DeploymentStatus.DEPLOYED:
                try:
                    result = self.orchestrator.stop(deployment.id)
                    if not result.success:
                        logger.error(f"Could not fully stop deployment {deployment.id} before suspension")
                except Exception as e:
                    logger.error(f"Error stopping deployment {deployment.id}: {str(e)}")
            deadline = now + self.grace_period
            if self.deployments.suspend(deployment.id, reason, deadline, suspended_at=now):
                suspended += 1
                logger.info(f"Deployment {deployment.id} suspended ({reason}), deletion scheduled for {deadline}")
        return suspended

    def lift_suspensions(self, user_id: str, grant: SubscriptionGrant) -> int:
        """Restore suspended deployments that fit the grant's limits, oldest first. They stay stopped."""
        deployments = self.deployments.list_deployments_by_user(user_id)
        in_use = {role: 0 for role in Role}
        for deployment in deployments:
            if deployment.suspended or deployment.status == DeploymentStatus.FAILED:
                continue
            for role in deployment.roles():
                in_use[role] += 1

        restored = 0
        for deployment in deployments:
            if not deployment.suspended:
                continue
            claimed = [] if deployment.status == DeploymentStatus.FAILED else deployment.roles()
            if any(in_use[role] >= grant.limits.for_role(role.value) for role in claimed):
                logger.info(f"Deployment {deployment.id} stays suspended: plan {grant.plan_name} has no room for it")
                continue
            if self.deployments.unsuspend(deployment.id):
                for role in claimed:
                    in_use[role] += 1
                restored += 1
                logger.info(f"Suspension of deployment {deployment.id} lifted after renewal by user {user_id}")

        profile = self.users.find_user(user_id)
        if profile is not None and profile.subscription_status == SubscriptionState.EXPIRED:
            self.users.update_subscription_status(
                user_id, SubscriptionState(grant.status.value), current_plan=grant.plan_name
            )
        return restored

    def reap(self, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()
        reaped = 0
        renewed = set()
        for deployment in self.deployments.list_suspended_deployments():
            deadline = deployment.delete_scheduled_at
            if deadline is None or deadline > now:
                continue
            try:
                if deployment.user_id not in renewed:
                    grant = self.subscriptions.get_usable_grant(deployment.user_id, now)
                    if grant is not None:
                        self.lift_suspensions(deployment.user_id, grant)
                        renewed.add(deployment.user_id)
                if deployment.user_id in renewed:
                    if not self.deployments.get_deployment_by_id(deployment.id).suspended:
                        continue
                    logger.info(f"Deployment {deployment.id} exceeds the renewed plan, deleting as scheduled")
                logger.info(f"Deleting deployment {deployment.id}: grace period ended {deadline}")
                result = self.orchestrator.delete(deployment.id)
                reaped += 1
                if not result.success:
                    logger.error(f"Deployment {deployment.id} reaped with partial failures")
            except Exception as e:
                logger.error(f"Error deleting deployment {deployment.id}: {str(e)}")
        return reaped

    def get_warnings(self, user_id: str, now: Optional[datetime] = None) -> WarningsResponse:
        """Read-only view of what the user stands to lose."""
        now = now or _utcnow()
        profile = self.users.find_user(user_id)
        user_status = profile.subscription_status if profile else SubscriptionState.NONE
        current_plan = profile.current_plan if profile else None

        if user_status != SubscriptionState.EXPIRED and self.subscriptions.get_usable_grant(user_id, now) is None:
            latest = self.subscriptions.get_latest_grant(user_id)
            if latest is not None and latest.status == GrantStatus.EXPIRED:
                user_status = SubscriptionState.EXPIRED

        suspended: List[DeploymentResponse] = [
            d for d in self.deployments.list_deployments_by_user(user_id) if d.suspended
        ]
        warnings: List[SubscriptionWarning] = []
        if user_status == SubscriptionState.EXPIRED:
            warnings.append(SubscriptionWarning(
                type="subscription_expired",
                message="Your subscription has expired. All deployments have been stopped.",
                action_required="Renew your subscription to restore services.",
                suspended_count=len(suspended),
            ))
        for deployment in suspended:
            if deployment.delete_scheduled_at is None:
                continue
            days_left = math.ceil((deployment.delete_scheduled_at - now).total_seconds() / _DAY_SECONDS)
            if days_left <= 0:
                continue
            plural = "s" if days_left > 1 else ""
            warnings.append(SubscriptionWarning(
                type="pending_deletion",
                deployment_id=deployment.id,
                deployment_name=deployment.name,
                message=f'Deployment "{deployment.name}" will be permanently deleted in {days_left} day{plural}.',
                action_required="Upgrade your plan to prevent deletion.",
                days_until_deletion=days_left,
            ))

        return WarningsResponse(
            has_warnings=bool(warnings),
            user_status=user_status.value,
            current_plan=current_plan,
            warnings=warnings,
        )


def run_sweep() -> SweepReport:
    from app.modules.deployments.orchestrator import get_orchestrator
    return SubscriptionMonitor(get_orchestrator()).run_once()


async def monitor_loop(interval_seconds: Optional[int] = None):
    """Background task: sweep once at startup, then on a fixed interval"""
    interval = interval_seconds or settings.monitor_interval_seconds
    while True:
        try:
            await asyncio.to_thread(run_sweep)
        except Exception as e:
            logger.error(f"Error in subscription monitor loop: {str(e)}")

        await asyncio.sleep(interval)
