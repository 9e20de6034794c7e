from supabase import Client
from app.modules.users.schemas import UserResponse, SubscriptionState
from typing import List, Optional
from datetime import datetime, timezone
from fastapi import HTTPException
import logging

logger = logging.getLogger(__name__)


class UserService:
    def __init__(self, supabase: Client):
        self.supabase = supabase

    def get_user_by_id(self, user_id: str) -> UserResponse:
        """Get user profile by ID"""
        user = self.find_user(user_id)
        if user is None:
            raise HTTPException(status_code=404, detail="User not found")
        return user

    def find_user(self, user_id: str) -> Optional[UserResponse]:
        try:
            result = self.supabase.table("user_profiles")\
                .select("*")\
                .eq("id", user_id)\
                .maybe_single()\
                .execute()
        except Exception as e:
            logger.error(f"Error getting user {user_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))
        if not result or not result.data:
            return None
        return UserResponse(**result.data)

    def update_subscription_status(
        self,
        user_id: str,
        status: SubscriptionState,
        current_plan: Optional[str] = None,
    ) -> bool:
        update_data = {
            "subscription_status": status.value,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        if current_plan is not None:
            update_data["current_plan"] = current_plan
        try:
            result = self.supabase.table("user_profiles")\
                .update(update_data)\
                .eq("id", user_id)\
                .execute()
            return bool(result.data)
        except Exception as e:
            logger.error(f"Error updating subscription status of user {user_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def list_users_by_subscription_status(self, statuses: List[SubscriptionState]) -> List[UserResponse]:
        try:
            result = self.supabase.table("user_profiles")\
                .select("*")\
                .in_("subscription_status", [s.value for s in statuses])\
                .execute()
            return [UserResponse(**user) for user in result.data or []]
        except Exception as e:
            logger.error(f"Error listing users: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))
