"""
Feature access gate driven by account state
"""
import logging

from config.dunning_config import (
    ALL_FEATURES,
    ALWAYS_ALLOWED_FEATURES,
    SUSPENDED_ALLOWED_FEATURES,
    get_state_policy,
)
from models.account_state import AccountStateType, FeatureAccessResult, RestrictionsView
from services.billing_store import BillingStore

logger = logging.getLogger(__name__)

FAIL_OPEN_REASON = "Error checking access - defaulting to allow"


class FeatureAccessService:
    def __init__(self, store: BillingStore):
        self.store = store

    async def check_feature_access(self, customer_id: str, feature: str) -> FeatureAccessResult:
        """
        Decide whether a customer may use a feature right now.

        Never raises: if the account state cannot be read the answer is allow,
        so a billing outage does not lock paying customers out.
        """
        try:
            account_state = self.store.get_account_state(customer_id)

            if account_state is None or account_state.state == AccountStateType.ACTIVE:
                return FeatureAccessResult(feature=feature, allowed=True)

            state = account_state.state

            if state == AccountStateType.SUSPENDED:
                if feature in SUSPENDED_ALLOWED_FEATURES:
                    return FeatureAccessResult(
                        feature=feature,
                        allowed=True,
                        reason=f"Feature allowed in {state.value} state",
                    )
                return FeatureAccessResult(
                    feature=feature,
                    allowed=False,
                    reason=f"Feature restricted due to account state: {state.value}",
                )

            if feature in ALWAYS_ALLOWED_FEATURES:
                return FeatureAccessResult(
                    feature=feature,
                    allowed=True,
                    reason=f"Feature allowed in {state.value} state",
                    grace_period_end=account_state.grace_period_end,
                )

            restrictions = account_state.feature_restrictions
            if feature in restrictions or ALL_FEATURES in restrictions:
                return FeatureAccessResult(
                    feature=feature,
                    allowed=False,
                    reason=f"Feature restricted due to account state: {state.value}",
                    grace_period_end=account_state.grace_period_end,
                )

            return FeatureAccessResult(
                feature=feature,
                allowed=True,
                reason="Feature not restricted",
                grace_period_end=account_state.grace_period_end,
            )

        except Exception as e:
            logger.error(f"Error checking feature access for customer {customer_id}: {str(e)}", exc_info=True)
            return FeatureAccessResult(feature=feature, allowed=True, reason=FAIL_OPEN_REASON)

    async def get_feature_restrictions(self, customer_id: str) -> RestrictionsView:
        """Restriction and allow-list view for rendering, degrading to full access on error."""
        try:
            account_state = self.store.get_account_state(customer_id)

            if account_state is None or account_state.state == AccountStateType.ACTIVE:
                return RestrictionsView(
                    account_state=AccountStateType.ACTIVE.value,
                    restrictions=[],
                    allowed_features=[ALL_FEATURES],
                )

            policy = get_state_policy(account_state.state.value)
            return RestrictionsView(
                account_state=account_state.state.value,
                restrictions=list(account_state.feature_restrictions),
                allowed_features=list(policy["allowed_features"]),
                grace_period_end=account_state.grace_period_end,
            )

        except Exception as e:
            logger.error(f"Error getting feature restrictions for customer {customer_id}: {str(e)}", exc_info=True)
            return RestrictionsView(
                account_state="error",
                restrictions=[],
                allowed_features=[ALL_FEATURES],
            )
