"""
Account state models for payment recovery.

A customer has at most one current AccountState row. A missing row means the
account is active with no restrictions, so lookups return Optional[AccountState]
and callers treat None as the active default.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class AccountStateType(str, Enum):
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    RESTRICTED = "restricted"
    SUSPENDED = "suspended"


class TransitionTrigger(str, Enum):
    SYSTEM = "system"
    MANUAL = "manual"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILURE = "payment_failure"
    SCHEDULER = "scheduler"


class StateTransition(BaseModel):
    from_state: AccountStateType
    to_state: AccountStateType
    reason: str
    triggered_by: TransitionTrigger
    at: datetime
    payment_failure_id: Optional[str] = None
    payment_intent_id: Optional[str] = None


class AccountStateMetadata(BaseModel):
    # Admin overrides may attach extra keys; they are kept as-is
    model_config = ConfigDict(extra="allow")

    failure_count: int = 0
    payment_failure_id: Optional[str] = None
    failure_reason: Optional[str] = None
    recent_failure_count: Optional[int] = None
    payment_intent_id: Optional[str] = None
    reactivated_from: Optional[AccountStateType] = None
    reactivated_at: Optional[datetime] = None
    grace_period_expired_at: Optional[datetime] = None
    previous_grace_period_end: Optional[datetime] = None
    transitions: List[StateTransition] = Field(default_factory=list)


class AccountState(BaseModel):
    id: str
    customer_id: str
    subscription_id: Optional[str] = None
    state: AccountStateType
    previous_state: Optional[AccountStateType] = None
    reason: str
    grace_period_end: Optional[datetime] = None
    suspension_date: Optional[datetime] = None
    reactivation_date: Optional[datetime] = None
    feature_restrictions: List[str] = Field(default_factory=list)
    data_retention_period: int = 90
    automated_actions: Dict[str, Any] = Field(default_factory=dict)
    manual_override: bool = False
    override_reason: Optional[str] = None
    override_by: Optional[str] = None
    metadata: AccountStateMetadata = Field(default_factory=AccountStateMetadata)
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FeatureAccessResult(BaseModel):
    feature: str
    allowed: bool
    reason: Optional[str] = None
    grace_period_end: Optional[datetime] = None


class RestrictionsView(BaseModel):
    account_state: str
    restrictions: List[str] = Field(default_factory=list)
    allowed_features: List[str] = Field(default_factory=list)
    grace_period_end: Optional[datetime] = None


class GracePeriodSweepResult(BaseModel):
    processed: int = 0
    suspended: int = 0
    errors: int = 0


class AccountStateUpdate(BaseModel):
    """Admin override request body."""
    account_state_id: str
    state: AccountStateType
    reason: str
    override_reason: Optional[str] = None
    metadata: Optional[dict] = None
