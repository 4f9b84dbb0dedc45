"""
Customer model for billing and recovery
"""
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from enum import Enum

from models.subscription import Subscription, SubscriptionStatus


class CustomerSegment(str, Enum):
    NEW = "new"
    STANDARD = "standard"
    HIGH_VALUE = "high_value"


class Customer(BaseModel):
    id: str
    gateway_customer_id: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    created_at: Optional[datetime] = None
    subscriptions: List[Subscription] = Field(default_factory=list)

    def monthly_subscription_amount(self) -> float:
        """Aggregate monthly-equivalent amount (cents) across non-canceled subscriptions."""
        return sum(
            sub.monthly_amount()
            for sub in self.subscriptions
            if sub.status != SubscriptionStatus.CANCELED
        )
