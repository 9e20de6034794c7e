from supabase import Client
from app.modules.deployments.schemas import (
    BillingStatus,
    DeploymentResponse,
    DeploymentStatus,
    Role,
    RoleState,
)
from app.modules.deployments.errors import SubdomainTaken
from typing import Dict, List, Optional
from datetime import datetime, timezone
from fastapi import HTTPException
import logging

logger = logging.getLogger(__name__)

# deployed <-> stopped is the only reversible pair; failed -> deploying is the retry path
ALLOWED_TRANSITIONS = {
    DeploymentStatus.DEPLOYING: {DeploymentStatus.DEPLOYED, DeploymentStatus.FAILED},
    DeploymentStatus.DEPLOYED: {DeploymentStatus.STOPPED},
    DeploymentStatus.STOPPED: {DeploymentStatus.DEPLOYED},
    DeploymentStatus.FAILED: {DeploymentStatus.DEPLOYING},
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_unique_violation(error: Exception) -> bool:
    return getattr(error, "code", None) == "23505" or "duplicate key" in str(error).lower()


class DeploymentService:
    def __init__(self, supabase: Client):
        self.supabase = supabase

    def create_deployment(
        self,
        user_id: str,
        name: str,
        subdomain: str,
        roles: Dict[Role, RoleState],
        env_vars: Optional[Dict[str, str]] = None,
    ) -> DeploymentResponse:
        """Create a new deployment in the deploying state. Raises SubdomainTaken on a subdomain collision."""
        row = {
            "user_id": user_id,
            "name": name,
            "subdomain": subdomain,
            "status": DeploymentStatus.DEPLOYING.value,
            "billing_status": BillingStatus.ACTIVE.value,
            "env_vars": env_vars or {},
            "frontend": None,
            "backend": None,
        }
        for role, state in roles.items():
            row[role.value] = state.model_dump(mode="json")
        try:
            result = self.supabase.table("deployments").insert(row).execute()
        except Exception as e:
            if _is_unique_violation(e):
                raise SubdomainTaken(f"Subdomain {subdomain} is already taken")
            logger.error(f"Error creating deployment: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

        if not result.data:
            raise HTTPException(status_code=500, detail="Failed to create deployment")
        return DeploymentResponse(**result.data[0])

    def get_deployment_by_id(self, deployment_id: str) -> DeploymentResponse:
        """Get deployment by ID"""
        try:
            result = self.supabase.table("deployments")\
                .select("*")\
                .eq("id", deployment_id)\
                .maybe_single()\
                .execute()

            if not result or not result.data:
                raise HTTPException(status_code=404, detail="Deployment not found")

            return DeploymentResponse(**result.data)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error getting deployment: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def list_deployments_by_user(self, user_id: str) -> List[DeploymentResponse]:
        """List a user's deployments, oldest first"""
        try:
            result = self.supabase.table("deployments")\
                .select("*")\
                .eq("user_id", user_id)\
                .order("created_at")\
                .execute()

            return [DeploymentResponse(**deployment) for deployment in result.data or []]
        except Exception as e:
            logger.error(f"Error listing deployments: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def list_all_deployments(self) -> List[DeploymentResponse]:
        try:
            result = self.supabase.table("deployments").select("*").execute()
            return [DeploymentResponse(**deployment) for deployment in result.data or []]
        except Exception as e:
            logger.error(f"Error listing deployments: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def list_suspended_deployments(self) -> List[DeploymentResponse]:
        try:
            result = self.supabase.table("deployments")\
                .select("*")\
                .eq("billing_status", BillingStatus.SUSPENDED.value)\
                .execute()
            return [DeploymentResponse(**deployment) for deployment in result.data or []]
        except Exception as e:
            logger.error(f"Error listing suspended deployments: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def subdomain_exists(self, subdomain: str) -> bool:
        result = self.supabase.table("deployments")\
            .select("id")\
            .eq("subdomain", subdomain)\
            .limit(1)\
            .execute()
        return bool(result.data)

    def update_role(self, deployment_id: str, role: Role, state: RoleState) -> Optional[DeploymentResponse]:
        """Persist one role's state. The other role's column is left untouched."""
        try:
            result = self.supabase.table("deployments")\
                .update({role.value: state.model_dump(mode="json"), "updated_at": _now()})\
                .eq("id", deployment_id)\
                .execute()
            if result.data:
                return DeploymentResponse(**result.data[0])
            return None
        except Exception as e:
            logger.error(f"Error updating {role.value} of deployment {deployment_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def update_deployment_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        error_message: Optional[str] = None,
    ) -> DeploymentResponse:
        """Move the operational status along an allowed transition. Same-status updates are no-ops."""
        current = self.get_deployment_by_id(deployment_id)
        if current.status == status:
            return current
        if status not in ALLOWED_TRANSITIONS.get(current.status, set()):
            raise HTTPException(
                status_code=409,
                detail=f"Cannot move deployment from {current.status.value} to {status.value}",
            )
        try:
            update_data = {"status": status.value, "updated_at": _now()}

            if status == DeploymentStatus.FAILED:
                update_data["error_message"] = error_message
            elif status in (DeploymentStatus.DEPLOYED, DeploymentStatus.DEPLOYING):
                update_data["error_message"] = None

            if status in (DeploymentStatus.DEPLOYED, DeploymentStatus.FAILED):
                update_data["completed_at"] = _now()

            result = self.supabase.table("deployments")\
                .update(update_data)\
                .eq("id", deployment_id)\
                .eq("status", current.status.value)\
                .execute()

            if result.data:
                return DeploymentResponse(**result.data[0])
            # Lost a race with another writer; report what is stored now
            return self.get_deployment_by_id(deployment_id)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error updating deployment: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def suspend(
        self,
        deployment_id: str,
        reason: str,
        delete_scheduled_at: datetime,
        suspended_at: Optional[datetime] = None,
    ) -> bool:
        """Mark a deployment suspended. Only active rows are touched, so an existing deadline is never reset."""
        suspended_at = suspended_at or datetime.now(timezone.utc)
        try:
            result = self.supabase.table("deployments")\
                .update({
                    "billing_status": BillingStatus.SUSPENDED.value,
                    "suspended_at": suspended_at.isoformat(),
                    "suspension_reason": reason,
                    "delete_scheduled_at": delete_scheduled_at.isoformat(),
                    "updated_at": _now(),
                })\
                .eq("id", deployment_id)\
                .eq("billing_status", BillingStatus.ACTIVE.value)\
                .execute()
            return bool(result.data)
        except Exception as e:
            logger.error(f"Error suspending deployment {deployment_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def unsuspend(self, deployment_id: str) -> bool:
        """Lift a suspension and its deletion deadline. Active rows are left untouched."""
        try:
            result = self.supabase.table("deployments")\
                .update({
                    "billing_status": BillingStatus.ACTIVE.value,
                    "suspended_at": None,
                    "suspension_reason": None,
                    "delete_scheduled_at": None,
                    "updated_at": _now(),
                })\
                .eq("id", deployment_id)\
                .eq("billing_status", BillingStatus.SUSPENDED.value)\
                .execute()
            return bool(result.data)
        except Exception as e:
            logger.error(f"Error lifting suspension of deployment {deployment_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def delete_deployment(self, deployment_id: str) -> bool:
        try:
            self.supabase.table("deployments")\
                .delete()\
                .eq("id", deployment_id)\
                .execute()
            return True
        except Exception as e:
            logger.error(f"Error deleting deployment {deployment_id}: {str(e)}")
            return False
