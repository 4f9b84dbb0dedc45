"""
Customer segmentation used to size grace periods
"""
from typing import Optional
from datetime import datetime, timezone

from config.dunning_config import NEW_CUSTOMER_TENURE_DAYS, HIGH_VALUE_MONTHLY_THRESHOLD_CENTS
from models.customer import Customer, CustomerSegment


def segment_customer(customer: Optional[Customer], now: Optional[datetime] = None) -> CustomerSegment:
    """
    Classify a customer from tenure and monthly spend.

    Tenure under NEW_CUSTOMER_TENURE_DAYS is `new`; otherwise a monthly-equivalent
    amount at or above the high-value threshold is `high_value`; everything else,
    including a customer we could not load, is `standard`.
    """
    if customer is None or customer.created_at is None:
        return CustomerSegment.STANDARD

    now = now or datetime.now(timezone.utc)
    created_at = customer.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)

    tenure_days = (now - created_at).days
    if tenure_days < NEW_CUSTOMER_TENURE_DAYS:
        return CustomerSegment.NEW

    if customer.monthly_subscription_amount() >= HIGH_VALUE_MONTHLY_THRESHOLD_CENTS:
        return CustomerSegment.HIGH_VALUE

    return CustomerSegment.STANDARD
