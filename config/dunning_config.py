# config/dunning_config.py

import os
from typing import Dict, Any, List, Optional

from dotenv import load_dotenv

from models.subscription import RetryConfig

load_dotenv()

ALL_FEATURES = "all_features"

NEW_CUSTOMER_TENURE_DAYS = 30
HIGH_VALUE_MONTHLY_THRESHOLD_CENTS = int(os.getenv("HIGH_VALUE_MONTHLY_THRESHOLD_CENTS", "10000"))  # $100/mo
DATA_RETENTION_DAYS = int(os.getenv("DATA_RETENTION_DAYS", "90"))
RECENT_FAILURE_WINDOW_DAYS = 90

GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "30"))
DUNNING_SWEEP_INTERVAL_SECONDS = int(os.getenv("DUNNING_SWEEP_INTERVAL_SECONDS", "3600"))
DUNNING_BATCH_LIMIT = int(os.getenv("DUNNING_BATCH_LIMIT", "100"))
DUNNING_SCHEDULER_ENABLED = os.getenv("DUNNING_SCHEDULER_ENABLED", "false").lower() in ("1", "true", "yes")

# Billing address countries where the active Stripe tax rate applies
TAXABLE_COUNTRIES = {"US"}

# Grace period length by customer segment, in days
GRACE_PERIOD_DAYS: Dict[str, int] = {
    "new": 3,
    "standard": 5,
    "high_value": 7,
}

# Features that stay usable in grace_period / restricted no matter what the restriction list says
ALWAYS_ALLOWED_FEATURES = {"read_only_access", "billing_update", "data_export"}
SUSPENDED_ALLOWED_FEATURES = {"billing_update"}

STATE_POLICIES: Dict[str, Dict[str, Any]] = {
    "active": {
        "restrictions": [],
        "allowed_features": [ALL_FEATURES],
    },
    "grace_period": {
        "restrictions": [],  # warning window only
        "allowed_features": ["read_only_access", "billing_update", "data_export"],
    },
    "restricted": {
        "restrictions": ["new_data_creation", "advanced_features", "api_access"],
        "allowed_features": ["read_only_access", "billing_update", "data_export"],
    },
    "suspended": {
        "restrictions": [ALL_FEATURES],
        "allowed_features": ["billing_update"],
    },
}

# Follow-up actions recorded on the account state row when it enters each state
STATE_ACTIONS: Dict[str, List[str]] = {
    "grace_period": ["send_grace_period_notification", "schedule_grace_period_reminder"],
    "restricted": ["send_restriction_notification", "disable_advanced_features"],
    "suspended": [
        "send_suspension_notification",
        "disable_all_features",
        "schedule_data_retention_warning",
    ],
    "active": ["send_reactivation_notification", "restore_all_features"],
}

# Gateway decline codes -> how hard we should try again
DECLINE_CODE_POLICIES: Dict[str, Dict[str, Any]] = {
    "insufficient_funds": {
        "classification": "temporary",
        "severity": "medium",
        "recommended_retry_count": 3,
        "payment_method_update_required": False,
    },
    "card_declined": {
        "classification": "temporary",
        "severity": "medium",
        "recommended_retry_count": 2,
        "payment_method_update_required": True,
    },
    "generic_decline": {
        "classification": "temporary",
        "severity": "medium",
        "recommended_retry_count": 2,
        "payment_method_update_required": True,
    },
    "expired_card": {
        "classification": "customer_action_required",
        "severity": "high",
        "recommended_retry_count": 1,
        "payment_method_update_required": True,
    },
    "authentication_required": {
        "classification": "customer_action_required",
        "severity": "medium",
        "recommended_retry_count": 2,
        "payment_method_update_required": False,
    },
    "card_not_supported": {
        "classification": "permanent",
        "severity": "high",
        "recommended_retry_count": 0,
        "payment_method_update_required": True,
    },
    "fraudulent": {
        "classification": "permanent",
        "severity": "critical",
        "recommended_retry_count": 0,
        "payment_method_update_required": True,
    },
}
DECLINE_CODE_POLICIES["three_d_secure_required"] = DECLINE_CODE_POLICIES["authentication_required"]
DECLINE_CODE_POLICIES["currency_not_supported"] = DECLINE_CODE_POLICIES["card_not_supported"]
DECLINE_CODE_POLICIES["stolen_card"] = DECLINE_CODE_POLICIES["fraudulent"]

DEFAULT_DECLINE_POLICY: Dict[str, Any] = {
    "classification": "temporary",
    "severity": "medium",
    "recommended_retry_count": 2,
    "payment_method_update_required": True,
}


DEFAULT_RETRY_INTERVALS_HOURS = [24.0, 72.0, 168.0]


def _parse_intervals(raw: str) -> List[float]:
    """Comma-separated hours; an empty or blank setting keeps the default schedule."""
    intervals = [float(part) for part in raw.split(",") if part.strip()]
    return intervals or list(DEFAULT_RETRY_INTERVALS_HOURS)


DEFAULT_RETRY_CONFIG = RetryConfig(
    max_retries=int(os.getenv("DUNNING_MAX_RETRIES", "3")),
    retry_intervals_hours=_parse_intervals(os.getenv("DUNNING_RETRY_INTERVALS_HOURS", "")),
    grace_period_days=int(os.getenv("DUNNING_GRACE_PERIOD_DAYS", "3")),
    suspension_days=int(os.getenv("DUNNING_SUSPENSION_DAYS", "10")),
)

# Plan-specific retry policy, keyed by plan type. Empty until product confirms per-plan values.
PLAN_RETRY_OVERRIDES: Dict[str, Dict[str, Any]] = {}


def get_grace_period_days(segment: str) -> int:
    """Grace period length for a segment, falling back to the standard window."""
    return GRACE_PERIOD_DAYS.get(segment, GRACE_PERIOD_DAYS["standard"])


def get_state_policy(state: str) -> Dict[str, Any]:
    """Safely get the restriction policy for an account state."""
    return STATE_POLICIES.get(state, STATE_POLICIES["active"])


def get_state_actions(state: str) -> List[str]:
    return list(STATE_ACTIONS.get(state, []))


def get_decline_policy(failure_code: Optional[str]) -> Dict[str, Any]:
    return DECLINE_CODE_POLICIES.get(failure_code or "", DEFAULT_DECLINE_POLICY)


def get_retry_config(plan_type: Optional[str] = None) -> RetryConfig:
    overrides = PLAN_RETRY_OVERRIDES.get(plan_type or "", {})
    if not overrides:
        return DEFAULT_RETRY_CONFIG
    return RetryConfig.model_validate({**DEFAULT_RETRY_CONFIG.model_dump(), **overrides})
