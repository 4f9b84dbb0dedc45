"""
Subscription, invoice and payment-failure models
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    TRIALING = "trialing"
    PAUSED = "paused"


class BillingInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"


class Subscription(BaseModel):
    id: str
    customer_id: str
    gateway_subscription_id: Optional[str] = None
    plan_type: Optional[str] = None
    status: SubscriptionStatus
    amount: int = 0  # cents per interval
    currency: str = "usd"
    interval: BillingInterval = BillingInterval.MONTH
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def monthly_amount(self) -> float:
        """Monthly-equivalent amount in cents."""
        if self.interval == BillingInterval.YEAR:
            return self.amount / 12
        return float(self.amount)


class InvoiceStatus(str, Enum):
    PAID = "paid"
    OPEN = "open"
    VOID = "void"
    DRAFT = "draft"


class Invoice(BaseModel):
    id: str
    gateway_invoice_id: Optional[str] = None
    customer_id: str
    subscription_id: Optional[str] = None
    status: InvoiceStatus
    amount_due: int = 0
    amount_paid: int = 0
    amount_remaining: int = 0
    currency: str = "usd"
    attempt_count: int = 0
    next_payment_attempt: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    description: Optional[str] = None
    hosted_invoice_url: Optional[str] = None
    created_at: Optional[datetime] = None


class PaymentFailureStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"


class PaymentFailure(BaseModel):
    """One failed charge attempt. Only `status` ever changes after creation."""
    id: str
    customer_id: str
    subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    amount: int = 0
    currency: str = "usd"
    retry_count: int = 0
    max_retry_attempts: int = 3
    status: PaymentFailureStatus = PaymentFailureStatus.PENDING
    classification: Optional[str] = None
    created_at: Optional[datetime] = None


class RetryConfig(BaseModel):
    max_retries: int = 3
    retry_intervals_hours: List[float] = Field(default_factory=lambda: [24, 72, 168], min_length=1)
    grace_period_days: int = 3
    suspension_days: int = 10

    def interval_for_attempt(self, attempt_count: int) -> float:
        """Back-off (hours) before the retry that follows `attempt_count` prior retries."""
        index = min(attempt_count, len(self.retry_intervals_hours) - 1)
        return self.retry_intervals_hours[index]


class BillingCycleResult(BaseModel):
    processed_invoices: int = 0
    successful_billings: int = 0
    failed_billings: int = 0
    retry_scheduled: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)


class GatewayResult(BaseModel):
    """Outcome of a single payment gateway call."""
    success: bool
    amount_paid: int = 0
    status: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
