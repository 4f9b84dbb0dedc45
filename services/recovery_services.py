"""
Wiring for the payment recovery services around one Supabase client
"""
from supabase import Client

from auth.middleware import get_auth_middleware
from services.account_state_service import AccountStateService
from services.analytics_service import AnalyticsService
from services.billing_service import BillingService
from services.billing_store import BillingStore
from services.dunning_scheduler import DunningScheduler
from services.feature_access_service import FeatureAccessService
from services.payment_failure_service import PaymentFailureService
from services.stripe_service import StripeService
from services.webhook_service import WebhookService


class RecoveryServices:
    def __init__(self, supabase_client: Client, gateway: StripeService = None):
        self.store = BillingStore(supabase_client)
        self.gateway = gateway or StripeService()
        self.payment_failures = PaymentFailureService(self.store)
        self.account_states = AccountStateService(self.store, self.payment_failures)
        self.feature_access = FeatureAccessService(self.store)
        self.billing = BillingService(self.store, self.gateway, self.payment_failures, self.account_states)
        self.analytics = AnalyticsService(self.store)
        self.webhooks = WebhookService(
            self.store, self.gateway, self.account_states, self.billing, self.payment_failures
        )
        self.scheduler = DunningScheduler(self.account_states, self.billing)


# Global instance - created on first use
recovery_services = None


def get_recovery_services() -> RecoveryServices:
    """Get or create the shared recovery services"""
    global recovery_services
    if recovery_services is None:
        recovery_services = RecoveryServices(get_auth_middleware().supabase)
    return recovery_services
