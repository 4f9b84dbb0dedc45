"""
Pytest fixtures for the payment recovery services.

Provides an in-memory stand-in for the Supabase-backed BillingStore, a mocked
Stripe gateway and builders for customers, subscriptions and account states.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, Iterable, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from models.account_state import AccountState, AccountStateMetadata, AccountStateType
from models.customer import Customer
from models.subscription import (
    GatewayResult,
    Invoice,
    InvoiceStatus,
    PaymentFailure,
    PaymentFailureStatus,
    Subscription,
    SubscriptionStatus,
)
from services.account_state_service import AccountStateService
from services.analytics_service import AnalyticsService
from services.billing_service import BillingService, parse_timestamp
from services.dunning_scheduler import DunningScheduler
from services.exceptions import AccountStateConflictError
from services.feature_access_service import FeatureAccessService
from services.payment_failure_service import PaymentFailureService
from services.webhook_service import WebhookService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryBillingStore:
    """Dict-backed BillingStore with the same compare-and-set semantics."""

    def __init__(self):
        self.customers: Dict[str, Customer] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.account_states: Dict[str, AccountState] = {}
        self.payment_failures: Dict[str, PaymentFailure] = {}
        self.invoices: Dict[str, Invoice] = {}
        self.refunds: List[Dict[str, Any]] = []
        self.webhook_events: Dict[str, Dict[str, Any]] = {}

    # ---- customers -------------------------------------------------------

    def _with_subscriptions(self, customer: Optional[Customer]) -> Optional[Customer]:
        if customer is None:
            return None
        loaded = customer.model_copy(deep=True)
        loaded.subscriptions = [
            sub.model_copy(deep=True) for sub in self.subscriptions.values()
            if sub.customer_id == customer.id
        ]
        return loaded

    def get_customer_with_subscriptions(self, customer_id: str) -> Optional[Customer]:
        return self._with_subscriptions(self.customers.get(customer_id))

    def get_customer_by_gateway_id(self, gateway_customer_id: str) -> Optional[Customer]:
        for customer in self.customers.values():
            if customer.gateway_customer_id == gateway_customer_id:
                return self._with_subscriptions(customer)
        return None

    def get_customer_by_user_id(self, user_id: str) -> Optional[Customer]:
        for customer in self.customers.values():
            if customer.user_id == user_id:
                return self._with_subscriptions(customer)
        return None

    # ---- account states --------------------------------------------------

    def get_account_state(self, customer_id: str) -> Optional[AccountState]:
        for row in self.account_states.values():
            if row.customer_id == customer_id:
                return row.model_copy(deep=True)
        return None

    def get_account_state_by_id(self, account_state_id: str) -> Optional[AccountState]:
        row = self.account_states.get(account_state_id)
        return row.model_copy(deep=True) if row else None

    def upsert_account_state(
        self,
        row: AccountState,
        expected_version: Optional[int] = None,
        expected_state: Optional[AccountStateType] = None,
    ) -> Optional[AccountState]:
        if expected_version is None:
            if any(stored.customer_id == row.customer_id for stored in self.account_states.values()):
                raise AccountStateConflictError(row.customer_id)
            self.account_states[row.id] = row.model_copy(deep=True)
            return row.model_copy(deep=True)

        stored = self.account_states.get(row.id)
        if stored is None or stored.version != expected_version:
            return None
        if expected_state is not None and stored.state != expected_state:
            return None

        saved = row.model_copy(deep=True)
        saved.created_at = stored.created_at
        self.account_states[row.id] = saved
        return saved.model_copy(deep=True)

    def get_expired_grace_periods(self, now: datetime, limit: int = 100) -> List[AccountState]:
        expired = [
            row for row in self.account_states.values()
            if row.state in (AccountStateType.GRACE_PERIOD, AccountStateType.RESTRICTED)
            and row.grace_period_end is not None
            and row.grace_period_end < now
        ]
        expired.sort(key=lambda row: row.grace_period_end)
        return [row.model_copy(deep=True) for row in expired[:limit]]

    def list_account_states(self, since: Optional[datetime] = None) -> List[AccountState]:
        return [
            row.model_copy(deep=True) for row in self.account_states.values()
            if since is None or (row.updated_at is not None and row.updated_at >= since)
        ]

    # ---- payment failures ------------------------------------------------

    def record_payment_failure(self, failure: PaymentFailure) -> PaymentFailure:
        self.payment_failures[failure.id] = failure.model_copy(deep=True)
        return failure

    def count_recent_failures(self, customer_id: str, window: timedelta) -> int:
        since = datetime.now(timezone.utc) - window
        return sum(
            1 for failure in self.payment_failures.values()
            if failure.customer_id == customer_id
            and (failure.created_at is None or failure.created_at >= since)
        )

    def update_payment_failure_status(
        self,
        to_status: PaymentFailureStatus,
        from_statuses: Iterable[PaymentFailureStatus],
        customer_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ) -> int:
        from_statuses = set(from_statuses)
        updated = 0
        for failure in self.payment_failures.values():
            if failure.status not in from_statuses:
                continue
            if customer_id is not None and failure.customer_id != customer_id:
                continue
            if invoice_id is not None and failure.invoice_id != invoice_id:
                continue
            failure.status = to_status
            updated += 1
        return updated

    # ---- invoices --------------------------------------------------------

    def get_due_invoices(self, now: datetime, limit: int = 100) -> List[Invoice]:
        due = [
            invoice for invoice in self.invoices.values()
            if invoice.status == InvoiceStatus.OPEN
            and invoice.next_payment_attempt is not None
            and invoice.next_payment_attempt <= now
        ]
        due.sort(key=lambda invoice: invoice.next_payment_attempt)
        return [invoice.model_copy(deep=True) for invoice in due[:limit]]

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        invoice = self.invoices.get(invoice_id)
        return invoice.model_copy(deep=True) if invoice else None

    def get_invoice_by_gateway_id(self, gateway_invoice_id: str) -> Optional[Invoice]:
        for invoice in self.invoices.values():
            if invoice.gateway_invoice_id == gateway_invoice_id:
                return invoice.model_copy(deep=True)
        return None

    def get_customer_invoices(self, customer_id: str, limit: int = 20, offset: int = 0) -> List[Invoice]:
        invoices = [invoice for invoice in self.invoices.values() if invoice.customer_id == customer_id]
        invoices.sort(key=lambda invoice: invoice.created_at, reverse=True)
        return [invoice.model_copy(deep=True) for invoice in invoices[offset:offset + limit]]

    def insert_invoice(self, invoice: Invoice) -> Invoice:
        self.invoices[invoice.id] = invoice.model_copy(deep=True)
        return invoice

    def upsert_invoice(self, invoice: Invoice) -> Invoice:
        for existing_id, existing in list(self.invoices.items()):
            if existing.gateway_invoice_id == invoice.gateway_invoice_id and existing_id != invoice.id:
                del self.invoices[existing_id]
        self.invoices[invoice.id] = invoice.model_copy(deep=True)
        return invoice

    def update_invoice(
        self,
        invoice_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[InvoiceStatus] = None,
        expected_attempt_count: Optional[int] = None,
    ) -> bool:
        invoice = self.invoices.get(invoice_id)
        if invoice is None:
            return False
        if expected_status is not None and invoice.status != expected_status:
            return False
        if expected_attempt_count is not None and invoice.attempt_count != expected_attempt_count:
            return False
        self.invoices[invoice_id] = invoice.model_copy(update=fields)
        return True

    # ---- subscriptions ---------------------------------------------------

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        subscription = self.subscriptions.get(subscription_id)
        return subscription.model_copy(deep=True) if subscription else None

    def get_subscription_by_gateway_id(self, gateway_subscription_id: str) -> Optional[Subscription]:
        for subscription in self.subscriptions.values():
            if subscription.gateway_subscription_id == gateway_subscription_id:
                return subscription.model_copy(deep=True)
        return None

    def update_subscription(
        self,
        subscription_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[SubscriptionStatus] = None,
    ) -> bool:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            return False
        if expected_status is not None and subscription.status != expected_status:
            return False
        self.subscriptions[subscription_id] = subscription.model_copy(update=fields)
        return True

    def get_overdue_subscriptions(self, now: datetime) -> List[Subscription]:
        overdue = []
        for subscription in self.subscriptions.values():
            grace_period_end = parse_timestamp(subscription.metadata.get("grace_period_end"))
            if (
                subscription.status == SubscriptionStatus.PAST_DUE
                and grace_period_end is not None
                and grace_period_end < now
            ):
                overdue.append(subscription.model_copy(deep=True))
        return overdue

    def list_subscriptions(self) -> List[Subscription]:
        return [subscription.model_copy(deep=True) for subscription in self.subscriptions.values()]

    # ---- webhook events --------------------------------------------------

    def claim_webhook_event(self, event_id: str, event_type: str) -> bool:
        if event_id in self.webhook_events:
            return False
        self.webhook_events[event_id] = {"event_id": event_id, "event_type": event_type, "processed": False}
        return True

    def mark_webhook_event_processed(self, event_id: str) -> None:
        if event_id in self.webhook_events:
            self.webhook_events[event_id]["processed"] = True

    def release_webhook_event(self, event_id: str) -> None:
        if not self.webhook_events.get(event_id, {}).get("processed", True):
            del self.webhook_events[event_id]

    # ---- refunds ---------------------------------------------------------


    def record_refund(self, refund: Dict[str, Any]) -> Dict[str, Any]:
        self.refunds.append(dict(refund))
        return refund


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store() -> InMemoryBillingStore:
    return InMemoryBillingStore()


@pytest.fixture
def gateway() -> MagicMock:
    """Stripe adapter double; every gateway call succeeds unless a test says otherwise."""
    gateway = MagicMock()
    gateway.pay_invoice = AsyncMock(return_value=GatewayResult(success=True, amount_paid=5000, status="paid"))
    gateway.retrieve_invoice = AsyncMock(return_value={})
    gateway.refund = AsyncMock(return_value=GatewayResult(success=True, amount_paid=5000, status="succeeded"))
    gateway.pause_collection = AsyncMock(return_value=GatewayResult(success=True, status="active"))
    gateway.resume_collection = AsyncMock(return_value=GatewayResult(success=True, status="active"))
    gateway.create_invoice = AsyncMock()
    gateway.add_invoice_item = AsyncMock(return_value={})
    gateway.finalize_invoice = AsyncMock()
    gateway.retrieve_customer = AsyncMock(return_value={})
    gateway.get_active_tax_rate_percentage = AsyncMock(return_value=None)
    return gateway


@pytest.fixture
def payment_failure_service(store) -> PaymentFailureService:
    return PaymentFailureService(store)


@pytest.fixture
def account_state_service(store, payment_failure_service) -> AccountStateService:
    return AccountStateService(store, payment_failure_service)


@pytest.fixture
def feature_access_service(store) -> FeatureAccessService:
    return FeatureAccessService(store)


@pytest.fixture
def billing_service(store, gateway, payment_failure_service, account_state_service) -> BillingService:
    return BillingService(store, gateway, payment_failure_service, account_state_service)


@pytest.fixture
def services(store, gateway, payment_failure_service, account_state_service, feature_access_service, billing_service):
    """Same attribute layout as RecoveryServices, built on the in-memory store."""
    return SimpleNamespace(
        store=store,
        gateway=gateway,
        payment_failures=payment_failure_service,
        account_states=account_state_service,
        feature_access=feature_access_service,
        billing=billing_service,
        analytics=AnalyticsService(store),
        webhooks=WebhookService(store, gateway, account_state_service, billing_service, payment_failure_service),
        scheduler=DunningScheduler(account_state_service, billing_service),
    )


@pytest.fixture
def make_customer(store, now):
    """Create a customer with one monthly subscription; amount in cents."""
    def _make_customer(
        tenure_days: int = 60,
        monthly_amount: int = 5000,
        customer_id: Optional[str] = None,
        user_id: Optional[str] = None,
        subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        subscription_metadata: Optional[Dict[str, Any]] = None,
    ) -> Customer:
        customer_id = customer_id or f"cus_{uuid.uuid4().hex[:8]}"
        customer = Customer(
            id=customer_id,
            gateway_customer_id=f"gw_{customer_id}",
            user_id=user_id or f"user_{customer_id}",
            email=f"{customer_id}@example.com",
            created_at=now - timedelta(days=tenure_days),
        )
        store.customers[customer_id] = customer
        subscription = Subscription(
            id=f"sub_{customer_id}",
            customer_id=customer_id,
            gateway_subscription_id=f"gw_sub_{customer_id}",
            plan_type="pro",
            status=subscription_status,
            amount=monthly_amount,
            metadata=subscription_metadata or {},
            created_at=now - timedelta(days=tenure_days),
        )
        store.subscriptions[subscription.id] = subscription
        return store.get_customer_with_subscriptions(customer_id)
    return _make_customer


@pytest.fixture
def make_account_state(store, now):
    """Insert an account state row directly, bypassing the state machine."""
    def _make_account_state(
        customer_id: str,
        state: AccountStateType,
        grace_period_end: Optional[datetime] = None,
        failure_count: int = 1,
        feature_restrictions: Optional[List[str]] = None,
    ) -> AccountState:
        row = AccountState(
            id=f"as_{customer_id}",
            customer_id=customer_id,
            subscription_id=f"sub_{customer_id}",
            state=state,
            previous_state=AccountStateType.ACTIVE,
            reason="payment_failure",
            grace_period_end=grace_period_end,
            feature_restrictions=feature_restrictions or [],
            metadata=AccountStateMetadata(failure_count=failure_count),
            version=1,
            created_at=now - timedelta(days=10),
            updated_at=now - timedelta(days=10),
        )
        store.account_states[row.id] = row
        return row.model_copy(deep=True)
    return _make_account_state


@pytest.fixture
def make_failure(payment_failure_service):
    def _make_failure(customer_id: str, retry_count: int = 0, failure_code: str = "card_declined") -> PaymentFailure:
        return payment_failure_service.record_failure(
            customer_id,
            subscription_id=f"sub_{customer_id}",
            invoice_id=f"in_{customer_id}",
            payment_intent_id=f"pi_{customer_id}",
            failure_code=failure_code,
            failure_message="Your card was declined.",
            amount=5000,
            retry_count=retry_count,
        )
    return _make_failure
