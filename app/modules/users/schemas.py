from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from enum import Enum


class SubscriptionState(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    TRIALING = "trialing"
    EXPIRED = "expired"


class UserResponse(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    subscription_status: SubscriptionState = SubscriptionState.NONE
    current_plan: str = "free"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
