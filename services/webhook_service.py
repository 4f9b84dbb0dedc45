"""
Stripe webhook processing for payment recovery
"""
from typing import Optional, Dict, Any
from datetime import datetime, timezone
import logging

from models.subscription import InvoiceStatus, SubscriptionStatus
from services.account_state_service import AccountStateService
from services.billing_service import BillingService, invoice_from_gateway, parse_timestamp
from services.billing_store import BillingStore
from services.payment_failure_service import PaymentFailureService
from services.stripe_service import StripeService

logger = logging.getLogger(__name__)


class WebhookService:
    def __init__(
        self,
        store: BillingStore,
        gateway: StripeService,
        account_state_service: AccountStateService,
        billing_service: BillingService,
        payment_failure_service: PaymentFailureService,
    ):
        self.store = store
        self.gateway = gateway
        self.account_states = account_state_service
        self.billing = billing_service
        self.payment_failures = payment_failure_service

        self.handlers = {
            "invoice.payment_failed": self._handle_invoice_payment_failed,
            "invoice.payment_succeeded": self._handle_invoice_payment_succeeded,
            "payment_intent.payment_failed": self._handle_payment_intent_failed,
            "payment_intent.succeeded": self._handle_payment_intent_succeeded,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
        }

    async def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify and process a Stripe webhook. Signature problems raise
        WebhookSignatureError; store failures propagate so Stripe retries.
        """
        event = self.gateway.construct_event(payload, signature)
        return await self.process_event(event)

    async def process_event(self, event) -> Dict[str, Any]:
        """
        Dispatch one event. Stripe delivers at least once, so each event id is
        claimed in the store first and a redelivery is acknowledged without
        being handled again. A claim is released when its handler fails.
        """
        event_type = event["type"]
        event_id = event.get("id")
        logger.info(f"Processing webhook event: {event_type} ({event_id})")

        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info(f"Ignoring unhandled webhook event: {event_type}")
            return {"status": "success", "event_type": event_type, "processed": False}

        if event_id and not self.store.claim_webhook_event(event_id, event_type):
            logger.info(f"Event {event_id} already processed, skipping")
            return {"status": "success", "event_type": event_type, "processed": False, "duplicate": True}

        try:
            processed = await handler(event["data"]["object"])
        except Exception:
            if event_id:
                self.store.release_webhook_event(event_id)
            raise

        if event_id:
            self.store.mark_webhook_event_processed(event_id)
        return {"status": "success", "event_type": event_type, "processed": processed}

    def _customer_for(self, gateway_customer_id: Optional[str], event_type: str):
        customer = self.store.get_customer_by_gateway_id(gateway_customer_id) if gateway_customer_id else None
        if customer is None:
            logger.warning(f"{event_type}: no customer for gateway id {gateway_customer_id}, acknowledging")
        return customer

    def _mirror_invoice(self, invoice: Dict[str, Any], customer_id: str):
        subscription = None
        if invoice.get("subscription"):
            subscription = self.store.get_subscription_by_gateway_id(invoice["subscription"])
        existing = self.store.get_invoice_by_gateway_id(invoice["id"])
        mirrored = invoice_from_gateway(
            invoice,
            customer_id,
            subscription.id if subscription else None,
            invoice_id=existing.id if existing else None,
        )
        return self.store.upsert_invoice(mirrored), subscription

    async def _handle_invoice_payment_failed(self, invoice: Dict[str, Any]) -> bool:
        customer = self._customer_for(invoice.get("customer"), "invoice.payment_failed")
        if customer is None:
            return False

        local_invoice, subscription = self._mirror_invoice(invoice, customer.id)
        attempt_count = invoice.get("attempt_count") or 1

        failure = self.payment_failures.record_failure(
            customer.id,
            subscription_id=subscription.id if subscription else None,
            invoice_id=local_invoice.id,
            payment_intent_id=invoice.get("payment_intent"),
            failure_code=invoice.get("failure_code"),
            failure_message=f"Invoice payment failed (attempt {attempt_count})",
            amount=invoice.get("amount_due") or 0,
            currency=invoice.get("currency") or "usd",
            retry_count=max(attempt_count - 1, 0),
        )
        await self.account_states.process_payment_failure(failure)
        return True

    async def _handle_payment_intent_failed(self, payment_intent: Dict[str, Any]) -> bool:
        # Invoice charges are handled through invoice.payment_failed
        if payment_intent.get("invoice"):
            return False

        customer = self._customer_for(payment_intent.get("customer"), "payment_intent.payment_failed")
        if customer is None:
            return False

        error = payment_intent.get("last_payment_error") or {}
        failure = self.payment_failures.record_failure(
            customer.id,
            payment_intent_id=payment_intent.get("id"),
            failure_code=error.get("decline_code") or error.get("code"),
            failure_message=error.get("message"),
            amount=payment_intent.get("amount") or 0,
            currency=payment_intent.get("currency") or "usd",
        )
        await self.account_states.process_payment_failure(failure)
        return True

    async def _handle_invoice_payment_succeeded(self, invoice: Dict[str, Any]) -> bool:
        customer = self._customer_for(invoice.get("customer"), "invoice.payment_succeeded")
        if customer is None:
            return False

        local_invoice, subscription = self._mirror_invoice(invoice, customer.id)
        self.store.update_invoice(local_invoice.id, {
            "status": InvoiceStatus.PAID,
            "paid_at": datetime.now(timezone.utc),
            "next_payment_attempt": None,
        })
        self.payment_failures.resolve_invoice_failures(local_invoice.id)

        if subscription is not None:
            await self.billing.remove_grace_period(subscription.id)

        await self.account_states.process_payment_success(customer.id, invoice.get("payment_intent"))
        return True

    async def _handle_payment_intent_succeeded(self, payment_intent: Dict[str, Any]) -> bool:
        if payment_intent.get("invoice"):
            return False

        customer = self._customer_for(payment_intent.get("customer"), "payment_intent.succeeded")
        if customer is None:
            return False

        await self.account_states.process_payment_success(customer.id, payment_intent.get("id"))
        return True

    async def _handle_subscription_updated(self, subscription: Dict[str, Any]) -> bool:
        local = self.store.get_subscription_by_gateway_id(subscription["id"])
        if local is None:
            logger.warning(f"Subscription update for unknown subscription {subscription['id']}")
            return False

        fields: Dict[str, Any] = {
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            "updated_at": datetime.now(timezone.utc),
        }
        try:
            fields["status"] = SubscriptionStatus(subscription.get("status"))
        except ValueError:
            logger.info(f"Keeping local status for subscription {local.id}, gateway status {subscription.get('status')}")

        for key in ("current_period_start", "current_period_end"):
            value = parse_timestamp(subscription.get(key))
            if value is not None:
                fields[key] = value

        self.store.update_subscription(local.id, fields)
        logger.info(f"Subscription {local.id} updated from gateway")
        return True

    async def _handle_subscription_deleted(self, subscription: Dict[str, Any]) -> bool:
        local = self.store.get_subscription_by_gateway_id(subscription["id"])
        if local is None:
            logger.warning(f"Cancellation for unknown subscription {subscription['id']}")
            return False

        details = subscription.get("cancellation_details") or {}
        now = datetime.now(timezone.utc)
        self.store.update_subscription(local.id, {
            "status": SubscriptionStatus.CANCELED,
            "canceled_at": parse_timestamp(subscription.get("canceled_at")) or now,
            "metadata": {
                **local.metadata,
                "cancellation_reason": details.get("reason") or "cancellation_requested",
            },
            "updated_at": now,
        })
        logger.info(f"Subscription {local.id} canceled")
        return True
