"""
Core dependencies for route protection and ownership checks
"""

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from app.database.supabase_client import get_supabase
from app.modules.auth.service import AuthService
from supabase import Client
from typing import Dict, Any
import logging

logger = logging.getLogger(__name__)

security = HTTPBearer()


def get_auth_service(supabase: Client = Depends(get_supabase)) -> AuthService:
    return AuthService(supabase)


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Security(security),
    auth_service: AuthService = Depends(get_auth_service)
) -> dict:
    """Extract current user info from JWT token"""
    token = credentials.credentials
    user_data = auth_service.get_current_user(token)
    return user_data


def is_super_user(user_data: Dict[str, Any]) -> bool:
    """Check if user is a super user from app_metadata (set server-side, not user editable)"""
    app_metadata = user_data.get("app_metadata") or {}
    return app_metadata.get("type") == "super_user"


def check_deployment_access(deployment_id: str, user_data: dict, supabase: Client) -> dict:
    """Allow if super_user or the caller owns the deployment"""
    result = supabase.table("deployments")\
        .select("user_id")\
        .eq("id", deployment_id)\
        .maybe_single()\
        .execute()
    if not result or not result.data:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Deployment not found"
        )
    if is_super_user(user_data):
        return user_data
    if result.data.get("user_id") == user_data["id"]:
        return user_data
    logger.warning(f"User {user_data['id']} denied access to deployment {deployment_id}")
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="You can only access your own deployments"
    )
