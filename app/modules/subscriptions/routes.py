from fastapi import APIRouter, Depends
from app.modules.subscriptions.schemas import QuotaResponse, WarningsResponse
from app.modules.subscriptions.monitor import SubscriptionMonitor
from app.modules.deployments.orchestrator import DeploymentOrchestrator
from app.modules.deployments.routes import get_deployment_orchestrator
from app.core.dependencies import get_current_user_id
from typing import Dict

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def get_subscription_monitor(
    orchestrator: DeploymentOrchestrator = Depends(get_deployment_orchestrator),
) -> SubscriptionMonitor:
    return SubscriptionMonitor(orchestrator)


@router.get("/warnings", response_model=WarningsResponse)
async def get_warnings(
    user_data: Dict = Depends(get_current_user_id),
    monitor: SubscriptionMonitor = Depends(get_subscription_monitor),
):
    """Expired-subscription and pending-deletion notices for the caller"""
    return monitor.get_warnings(user_data["id"])


@router.get("/quota", response_model=QuotaResponse)
async def get_quota(
    user_data: Dict = Depends(get_current_user_id),
    monitor: SubscriptionMonitor = Depends(get_subscription_monitor),
):
    """Limits of the caller's active plan and how much of it is in use"""
    return monitor.subscriptions.get_quota(user_data["id"])
