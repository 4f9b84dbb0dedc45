"""
Supabase-backed store for customers, subscriptions, invoices, payment failures
and account states
"""
from typing import Optional, List, Dict, Any, Iterable
from datetime import datetime, timedelta, timezone
import logging
from supabase import Client

from models.account_state import AccountState, AccountStateType
from models.customer import Customer
from models.subscription import (
    Subscription,
    SubscriptionStatus,
    Invoice,
    InvoiceStatus,
    PaymentFailure,
    PaymentFailureStatus,
)
from services.exceptions import StoreError, AccountStateConflictError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


class BillingStore:
    def __init__(self, supabase_client: Client):
        self.supabase = supabase_client

    def _execute(self, query, action: str):
        """Run a query, turning client/database failures into StoreError."""
        try:
            return query.execute()
        except Exception as e:
            logger.error(f"Store error while trying to {action}: {str(e)}")
            raise StoreError(f"Failed to {action}", details={"cause": str(e)}) from e

    # ---- customers -------------------------------------------------------

    def get_customer_with_subscriptions(self, customer_id: str) -> Optional[Customer]:
        response = self._execute(
            self.supabase.table("customers").select("*, subscriptions(*)").eq("id", customer_id).limit(1),
            "load customer",
        )
        if not response.data:
            return None
        return Customer.model_validate(response.data[0])

    def get_customer_by_gateway_id(self, gateway_customer_id: str) -> Optional[Customer]:
        response = self._execute(
            self.supabase.table("customers").select("*, subscriptions(*)").eq("gateway_customer_id", gateway_customer_id).limit(1),
            "load customer by gateway id",
        )
        if not response.data:
            return None
        return Customer.model_validate(response.data[0])

    def get_customer_by_user_id(self, user_id: str) -> Optional[Customer]:
        response = self._execute(
            self.supabase.table("customers").select("*, subscriptions(*)").eq("user_id", user_id).limit(1),
            "load customer by user id",
        )
        if not response.data:
            return None
        return Customer.model_validate(response.data[0])

    # ---- account states --------------------------------------------------

    def get_account_state(self, customer_id: str) -> Optional[AccountState]:
        response = self._execute(
            self.supabase.table("account_states").select("*").eq("customer_id", customer_id).limit(1),
            "load account state",
        )
        if not response.data:
            return None
        return AccountState.model_validate(response.data[0])

    def get_account_state_by_id(self, account_state_id: str) -> Optional[AccountState]:
        response = self._execute(
            self.supabase.table("account_states").select("*").eq("id", account_state_id).limit(1),
            "load account state by id",
        )
        if not response.data:
            return None
        return AccountState.model_validate(response.data[0])

    def upsert_account_state(
        self,
        row: AccountState,
        expected_version: Optional[int] = None,
        expected_state: Optional[AccountStateType] = None,
    ) -> Optional[AccountState]:
        """
        Insert a new row, or compare-and-set an existing one.

        With `expected_version` the update only applies if the stored row still
        has that version (and `expected_state`, when given). Returns None when
        the guard did not match, i.e. someone else wrote first.
        """
        payload = row.model_dump(mode="json")

        if expected_version is None:
            try:
                response = self.supabase.table("account_states").insert(payload).execute()
            except Exception as e:
                if getattr(e, "code", None) == UNIQUE_VIOLATION:
                    raise AccountStateConflictError(row.customer_id) from e
                logger.error(f"Store error while inserting account state: {str(e)}")
                raise StoreError("Failed to insert account state", details={"cause": str(e)}) from e
            return AccountState.model_validate(response.data[0]) if response.data else row

        payload.pop("created_at", None)
        query = (
            self.supabase.table("account_states")
            .update(payload)
            .eq("id", row.id)
            .eq("version", expected_version)
        )
        if expected_state is not None:
            query = query.eq("state", expected_state.value)

        response = self._execute(query, "update account state")
        if not response.data:
            return None
        return AccountState.model_validate(response.data[0])

    def get_expired_grace_periods(self, now: datetime, limit: int = 100) -> List[AccountState]:
        """Grace period and restricted rows whose grace window has ended."""
        response = self._execute(
            self.supabase.table("account_states")
            .select("*")
            .in_("state", [AccountStateType.GRACE_PERIOD.value, AccountStateType.RESTRICTED.value])
            .lt("grace_period_end", now.isoformat())
            .order("grace_period_end")
            .limit(limit),
            "load expired grace periods",
        )
        return [AccountState.model_validate(item) for item in response.data or []]

    def list_account_states(self, since: Optional[datetime] = None) -> List[AccountState]:
        query = self.supabase.table("account_states").select("*")
        if since is not None:
            query = query.gte("updated_at", since.isoformat())
        response = self._execute(query, "list account states")
        return [AccountState.model_validate(item) for item in response.data or []]

    # ---- payment failures ------------------------------------------------

    def record_payment_failure(self, failure: PaymentFailure) -> PaymentFailure:
        response = self._execute(
            self.supabase.table("payment_failures").insert(failure.model_dump(mode="json")),
            "record payment failure",
        )
        return PaymentFailure.model_validate(response.data[0]) if response.data else failure

    def count_recent_failures(self, customer_id: str, window: timedelta) -> int:
        since = datetime.now(timezone.utc) - window
        response = self._execute(
            self.supabase.table("payment_failures")
            .select("id", count="exact")
            .eq("customer_id", customer_id)
            .gte("created_at", since.isoformat()),
            "count recent payment failures",
        )
        if response.count is not None:
            return response.count
        return len(response.data or [])

    def update_payment_failure_status(
        self,
        to_status: PaymentFailureStatus,
        from_statuses: Iterable[PaymentFailureStatus],
        customer_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ) -> int:
        query = (
            self.supabase.table("payment_failures")
            .update({"status": to_status.value})
            .in_("status", [status.value for status in from_statuses])
        )
        if customer_id is not None:
            query = query.eq("customer_id", customer_id)
        if invoice_id is not None:
            query = query.eq("invoice_id", invoice_id)
        response = self._execute(query, "advance payment failure status")
        return len(response.data or [])

    # ---- invoices --------------------------------------------------------

    def get_due_invoices(self, now: datetime, limit: int = 100) -> List[Invoice]:
        response = self._execute(
            self.supabase.table("invoices")
            .select("*")
            .eq("status", InvoiceStatus.OPEN.value)
            .lte("next_payment_attempt", now.isoformat())
            .order("next_payment_attempt")
            .limit(limit),
            "load due invoices",
        )
        return [Invoice.model_validate(item) for item in response.data or []]

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        response = self._execute(
            self.supabase.table("invoices").select("*").eq("id", invoice_id).limit(1),
            "load invoice",
        )
        return Invoice.model_validate(response.data[0]) if response.data else None

    def get_invoice_by_gateway_id(self, gateway_invoice_id: str) -> Optional[Invoice]:
        response = self._execute(
            self.supabase.table("invoices").select("*").eq("gateway_invoice_id", gateway_invoice_id).limit(1),
            "load invoice by gateway id",
        )
        return Invoice.model_validate(response.data[0]) if response.data else None

    def get_customer_invoices(self, customer_id: str, limit: int = 20, offset: int = 0) -> List[Invoice]:
        response = self._execute(
            self.supabase.table("invoices")
            .select("*")
            .eq("customer_id", customer_id)
            .order("created_at", desc=True)
            .range(offset, offset + limit - 1),
            "load customer invoices",
        )
        return [Invoice.model_validate(item) for item in response.data or []]

    def insert_invoice(self, invoice: Invoice) -> Invoice:
        response = self._execute(
            self.supabase.table("invoices").insert(invoice.model_dump(mode="json")),
            "insert invoice",
        )
        return Invoice.model_validate(response.data[0]) if response.data else invoice

    def upsert_invoice(self, invoice: Invoice) -> Invoice:
        response = self._execute(
            self.supabase.table("invoices").upsert(invoice.model_dump(mode="json"), on_conflict="gateway_invoice_id"),
            "upsert invoice",
        )
        return Invoice.model_validate(response.data[0]) if response.data else invoice

    def update_invoice(
        self,
        invoice_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[InvoiceStatus] = None,
        expected_attempt_count: Optional[int] = None,
    ) -> bool:
        """
        Update an invoice. With `expected_status` / `expected_attempt_count` the
        write only lands while the stored row still matches; returns False otherwise.
        """
        query = self.supabase.table("invoices").update(_serialize(fields)).eq("id", invoice_id)
        if expected_status is not None:
            query = query.eq("status", expected_status.value)
        if expected_attempt_count is not None:
            query = query.eq("attempt_count", expected_attempt_count)
        response = self._execute(query, "update invoice")
        return bool(response.data)


    # ---- subscriptions ---------------------------------------------------

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        response = self._execute(
            self.supabase.table("subscriptions").select("*").eq("id", subscription_id).limit(1),
            "load subscription",
        )
        return Subscription.model_validate(response.data[0]) if response.data else None

    def get_subscription_by_gateway_id(self, gateway_subscription_id: str) -> Optional[Subscription]:
        response = self._execute(
            self.supabase.table("subscriptions").select("*").eq("gateway_subscription_id", gateway_subscription_id).limit(1),
            "load subscription by gateway id",
        )
        return Subscription.model_validate(response.data[0]) if response.data else None

    def update_subscription(
        self,
        subscription_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[SubscriptionStatus] = None,
    ) -> bool:
        query = self.supabase.table("subscriptions").update(_serialize(fields)).eq("id", subscription_id)
        if expected_status is not None:
            query = query.eq("status", expected_status.value)
        response = self._execute(query, "update subscription")
        return bool(response.data)

    def get_overdue_subscriptions(self, now: datetime) -> List[Subscription]:
        response = self._execute(
            self.supabase.table("subscriptions")
            .select("*")
            .eq("status", SubscriptionStatus.PAST_DUE.value)
            .filter("metadata->>grace_period_end", "lt", now.isoformat()),
            "load overdue subscriptions",
        )
        return [Subscription.model_validate(item) for item in response.data or []]

    def list_subscriptions(self) -> List[Subscription]:
        response = self._execute(self.supabase.table("subscriptions").select("*"), "list subscriptions")
        return [Subscription.model_validate(item) for item in response.data or []]

    # ---- webhook events --------------------------------------------------

    def claim_webhook_event(self, event_id: str, event_type: str) -> bool:
        """
        Record a gateway event id before handling it. Returns False when the id
        is already recorded, i.e. the event was (or is being) handled elsewhere.
        """
        payload = {
            "event_id": event_id,
            "event_type": event_type,
            "processed": False,
            "received_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.supabase.table("webhook_events").insert(payload).execute()
        except Exception as e:
            if getattr(e, "code", None) == UNIQUE_VIOLATION:
                return False
            logger.error(f"Store error while recording webhook event {event_id}: {str(e)}")
            raise StoreError("Failed to record webhook event", details={"cause": str(e)}) from e
        return True

    def mark_webhook_event_processed(self, event_id: str) -> None:
        self._execute(
            self.supabase.table("webhook_events")
            .update({"processed": True, "processed_at": datetime.now(timezone.utc).isoformat()})
            .eq("event_id", event_id),
            "mark webhook event processed",
        )

    def release_webhook_event(self, event_id: str) -> None:
        """Forget a claimed event whose handling failed so the gateway's redelivery is handled."""
        self._execute(
            self.supabase.table("webhook_events").delete().eq("event_id", event_id).eq("processed", False),
            "release webhook event",
        )

    # ---- refunds ---------------------------------------------------------


    def record_refund(self, refund: Dict[str, Any]) -> Dict[str, Any]:
        response = self._execute(
            self.supabase.table("payment_refunds").insert(_serialize(refund)),
            "record refund",
        )
        return response.data[0] if response.data else refund


def _serialize(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Make datetimes and enums JSON friendly for the Supabase client."""
    serialized = {}
    for key, value in fields.items():
        if isinstance(value, datetime):
            serialized[key] = value.isoformat()
        elif hasattr(value, "value") and not isinstance(value, (dict, list)):
            serialized[key] = value.value
        elif isinstance(value, dict):
            serialized[key] = _serialize(value)
        else:
            serialized[key] = value
    return serialized
