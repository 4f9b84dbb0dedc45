"""
Billing service: invoices, refunds and the dunning retry loop
"""
from typing import Optional, Dict, Any, List
from datetime import datetime, timedelta, timezone
import asyncio
import logging
import uuid

from config.dunning_config import DUNNING_BATCH_LIMIT, TAXABLE_COUNTRIES, get_retry_config
from models.account_state import AccountStateType, TransitionTrigger
from models.subscription import (
    Invoice,
    InvoiceStatus,
    RetryConfig,
    BillingCycleResult,
    GatewayResult,
    Subscription,
    SubscriptionStatus,
)
from services.account_state_service import AccountStateService
from services.billing_store import BillingStore
from services.exceptions import CustomerNotFoundError, GatewayError
from services.payment_failure_service import PaymentFailureService
from services.stripe_service import StripeService

logger = logging.getLogger(__name__)

GRACE_METADATA_KEYS = ("grace_period_end", "scheduled_suspension", "payment_failed")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept ISO strings (from Supabase) and unix seconds (from Stripe)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def invoice_from_gateway(
    data: Dict[str, Any],
    customer_id: str,
    subscription_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
) -> Invoice:
    """Mirror a Stripe invoice payload into our Invoice model."""
    raw_status = data.get("status") or InvoiceStatus.OPEN.value
    try:
        status = InvoiceStatus(raw_status)
    except ValueError:
        # uncollectible invoices stay open for dunning
        status = InvoiceStatus.OPEN

    return Invoice(
        id=invoice_id or str(uuid.uuid4()),
        gateway_invoice_id=data.get("id"),
        customer_id=customer_id,
        subscription_id=subscription_id,
        status=status,
        amount_due=data.get("amount_due") or 0,
        amount_paid=data.get("amount_paid") or 0,
        amount_remaining=data.get("amount_remaining") or 0,
        currency=data.get("currency") or "usd",
        attempt_count=data.get("attempt_count") or 0,
        next_payment_attempt=parse_timestamp(data.get("next_payment_attempt")),
        description=data.get("description"),
        hosted_invoice_url=data.get("hosted_invoice_url"),
        created_at=parse_timestamp(data.get("created")) or _utcnow(),
    )


def _still_due(live: Optional[Invoice], selected: Invoice) -> bool:
    return (
        live is not None
        and live.status == InvoiceStatus.OPEN
        and live.attempt_count == selected.attempt_count
    )


class BillingService:
    def __init__(
        self,
        store: BillingStore,
        gateway: StripeService,
        payment_failure_service: PaymentFailureService,
        account_state_service: Optional[AccountStateService] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.payment_failures = payment_failure_service
        self.account_states = account_state_service
        self.retry_config = retry_config

    def _config_for(self, subscription: Optional[Subscription]) -> RetryConfig:
        if self.retry_config is not None:
            return self.retry_config
        return get_retry_config(subscription.plan_type if subscription else None)

    # ---- invoices --------------------------------------------------------

    async def create_invoice(
        self,
        customer_id: str,
        subscription_id: Optional[str] = None,
        description: Optional[str] = None,
        items: Optional[List[Dict[str, Any]]] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Invoice:
        """
        Create an invoice at the gateway, add its line items, finalize it and
        keep a local copy. Items are dicts with `amount` (cents), optional
        `quantity`, `currency` and `description`.
        """
        customer = self.store.get_customer_with_subscriptions(customer_id)
        if customer is None or not customer.gateway_customer_id:
            raise CustomerNotFoundError(customer_id)

        gateway_subscription_id = None
        if subscription_id:
            subscription = self.store.get_subscription(subscription_id)
            gateway_subscription_id = subscription.gateway_subscription_id if subscription else None

        draft = await self.gateway.create_invoice(
            customer.gateway_customer_id,
            description=description,
            gateway_subscription_id=gateway_subscription_id,
            metadata=metadata,
        )

        for item in items or []:
            await self.add_invoice_item(
                customer_id,
                draft["id"],
                amount=int(item["amount"]) * int(item.get("quantity", 1)),
                currency=item.get("currency", "usd"),
                description=item.get("description"),
                gateway_customer_id=customer.gateway_customer_id,
            )

        finalized = await self.gateway.finalize_invoice(draft["id"])
        invoice = self.store.insert_invoice(invoice_from_gateway(finalized, customer_id, subscription_id))

        logger.info(f"Created invoice {invoice.id} ({invoice.gateway_invoice_id}) for customer {customer_id}")
        return invoice

    async def add_invoice_item(
        self,
        customer_id: str,
        gateway_invoice_id: str,
        amount: int,
        currency: str = "usd",
        description: Optional[str] = None,
        gateway_customer_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if gateway_customer_id is None:
            customer = self.store.get_customer_with_subscriptions(customer_id)
            if customer is None or not customer.gateway_customer_id:
                raise CustomerNotFoundError(customer_id)
            gateway_customer_id = customer.gateway_customer_id

        return await self.gateway.add_invoice_item(
            gateway_customer_id, gateway_invoice_id, amount, currency=currency, description=description
        )

    def get_customer_invoices(self, customer_id: str, page: int = 1, limit: int = 20) -> List[Invoice]:
        offset = (max(page, 1) - 1) * limit
        return self.store.get_customer_invoices(customer_id, limit=limit, offset=offset)

    # ---- retry loop ------------------------------------------------------

    async def retry_invoice_payment(self, invoice: Invoice) -> GatewayResult:
        if not invoice.gateway_invoice_id:
            return GatewayResult(
                success=False,
                error_code="missing_gateway_invoice",
                error_message=f"Invoice {invoice.id} has no gateway invoice id",
            )
        return await self.gateway.pay_invoice(invoice.gateway_invoice_id)

    async def process_failed_payments(
        self,
        now: Optional[datetime] = None,
        limit: int = DUNNING_BATCH_LIMIT,
        stop_event: Optional[asyncio.Event] = None,
    ) -> BillingCycleResult:
        """
        Retry every open invoice whose next attempt is due.

        Per-invoice exceptions are recorded in `errors` and never stop the batch.
        """
        now = now or _utcnow()
        result = BillingCycleResult()
        invoices = self.store.get_due_invoices(now, limit)

        for invoice in invoices:
            if stop_event is not None and stop_event.is_set():
                logger.info(f"Failed payment sweep interrupted after {result.processed_invoices} invoices")
                break

            result.processed_invoices += 1
            try:
                await self._process_due_invoice(invoice, now, result)
            except Exception as e:
                logger.error(f"Failed to process invoice {invoice.id}: {str(e)}")
                result.errors.append(f"Failed to process invoice {invoice.id}: {str(e)}")

        logger.info(
            f"Failed payment sweep: processed={result.processed_invoices}, paid={result.successful_billings}, "
            f"retry_scheduled={result.retry_scheduled}, exhausted={result.failed_billings}, "
            f"skipped={result.skipped}, errors={len(result.errors)}"
        )
        return result

    async def _process_due_invoice(self, invoice: Invoice, now: datetime, result: BillingCycleResult) -> None:
        live = self.store.get_invoice(invoice.id)
        if not _still_due(live, invoice):
            # Paid or retried by a webhook or an overlapping sweep since the batch was loaded
            result.skipped += 1
            logger.info(f"Invoice {invoice.id} changed since it was selected, skipping")
            return

        subscription = self.store.get_subscription(invoice.subscription_id) if invoice.subscription_id else None
        config = self._config_for(subscription)

        if await self._paid_at_gateway(invoice):
            payment = GatewayResult(success=True, amount_paid=invoice.amount_due, status="paid")
        else:
            payment = await self.retry_invoice_payment(invoice)

        if payment.success:
            if not self._update_due_invoice(invoice, {
                "status": InvoiceStatus.PAID,
                "amount_paid": payment.amount_paid,
                "amount_remaining": 0,
                "paid_at": now,
                "attempt_count": invoice.attempt_count + 1,
                "next_payment_attempt": None,
            }, result):
                return
            if subscription:
                await self.remove_grace_period(subscription.id)
            self.payment_failures.resolve_invoice_failures(invoice.id)
            result.successful_billings += 1
            logger.info(f"Invoice {invoice.id} paid on retry")
            return

        if invoice.attempt_count < config.max_retries:
            delay_hours = config.interval_for_attempt(invoice.attempt_count)
            next_attempt = now + timedelta(hours=delay_hours)
            if not self._update_due_invoice(invoice, {
                "attempt_count": invoice.attempt_count + 1,
                "next_payment_attempt": next_attempt,
            }, result):
                return
            self.payment_failures.mark_retrying(invoice.id)
            result.retry_scheduled += 1
            logger.info(
                f"Invoice {invoice.id} retry failed ({payment.error_code}), "
                f"attempt {invoice.attempt_count + 1}/{config.max_retries}, next at {next_attempt.isoformat()}"
            )
            return

        # Retry budget exhausted
        if not self._update_due_invoice(invoice, {
            "attempt_count": invoice.attempt_count + 1,
            "next_payment_attempt": None,
        }, result):
            return
        if subscription:
            await self.apply_grace_period_or_suspend(subscription.id, config, now=now)
        self.payment_failures.exhaust_failures(invoice.id)
        result.failed_billings += 1
        logger.warning(f"Invoice {invoice.id} exhausted {config.max_retries} retries ({payment.error_code})")

    def _update_due_invoice(self, invoice: Invoice, fields: Dict[str, Any], result: BillingCycleResult) -> bool:
        updated = self.store.update_invoice(
            invoice.id,
            fields,
            expected_status=InvoiceStatus.OPEN,
            expected_attempt_count=invoice.attempt_count,
        )
        if not updated:
            result.skipped += 1
            logger.warning(f"Invoice {invoice.id} was updated elsewhere during its retry, leaving it alone")
        return updated

    async def _paid_at_gateway(self, invoice: Invoice) -> bool:
        """True when the gateway already shows the invoice paid (its own retry got there first)."""
        if not invoice.gateway_invoice_id:
            return False
        try:
            remote = await self.gateway.retrieve_invoice(invoice.gateway_invoice_id)
        except GatewayError as e:
            logger.warning(f"Could not check invoice {invoice.id} at the gateway before retrying: {e.message}")
            return False
        return remote.get("status") == InvoiceStatus.PAID.value

    # ---- grace period & suspension --------------------------------------

    async def apply_grace_period_or_suspend(
        self,
        subscription_id: str,
        config: Optional[RetryConfig] = None,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """
        Put a subscription into a grace period, or suspend it outright if an
        earlier grace period has already run out. Returns the action taken.
        """
        now = now or _utcnow()
        subscription = self.store.get_subscription(subscription_id)
        if subscription is None:
            logger.warning(f"Subscription {subscription_id} not found, skipping grace period")
            return None

        config = config or self._config_for(subscription)
        existing_end = parse_timestamp(subscription.metadata.get("grace_period_end"))
        if existing_end is not None and existing_end < now:
            await self._suspend_subscription(subscription, now)
            return "suspended"

        grace_period_end = now + timedelta(days=config.grace_period_days)
        scheduled_suspension = now + timedelta(days=config.suspension_days)
        metadata = {
            **subscription.metadata,
            "grace_period_end": grace_period_end.isoformat(),
            "scheduled_suspension": scheduled_suspension.isoformat(),
            "payment_failed": True,
        }
        self.store.update_subscription(subscription_id, {
            "status": SubscriptionStatus.PAST_DUE,
            "metadata": metadata,
        })

        logger.info(f"Applied grace period to subscription {subscription_id} until {grace_period_end.isoformat()}")
        return "grace_period"

    async def remove_grace_period(self, subscription_id: str) -> bool:
        subscription = self.store.get_subscription(subscription_id)
        if subscription is None:
            return False

        if subscription.status == SubscriptionStatus.PAUSED and subscription.gateway_subscription_id:
            resumed = await self.gateway.resume_collection(subscription.gateway_subscription_id)
            if not resumed.success:
                raise GatewayError(
                    f"Could not resume collection for subscription {subscription_id}",
                    details={"code": resumed.error_code},
                )

        metadata = {
            key: value for key, value in subscription.metadata.items()
            if key not in GRACE_METADATA_KEYS
        }
        self.store.update_subscription(subscription_id, {
            "status": SubscriptionStatus.ACTIVE,
            "metadata": metadata,
        })

        logger.info(f"Removed grace period from subscription {subscription_id}")
        return True

    async def suspend_overdue_subscriptions(
        self,
        now: Optional[datetime] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> int:
        """Pause collection on past_due subscriptions whose grace period has passed."""
        now = now or _utcnow()
        overdue = self.store.get_overdue_subscriptions(now)
        suspended_count = 0

        for subscription in overdue:
            if stop_event is not None and stop_event.is_set():
                logger.info(f"Overdue subscription sweep interrupted after {suspended_count} suspensions")
                break

            try:
                if await self._suspend_subscription(subscription, now):
                    suspended_count += 1
            except Exception as e:
                logger.error(f"Error suspending subscription {subscription.id}: {str(e)}")

        return suspended_count

    async def _suspend_subscription(self, subscription: Subscription, now: datetime) -> bool:
        if subscription.gateway_subscription_id:
            paused = await self.gateway.pause_collection(subscription.gateway_subscription_id)
            if not paused.success:
                raise GatewayError(
                    f"Could not pause collection for subscription {subscription.id}",
                    details={"code": paused.error_code},
                )

        updated = self.store.update_subscription(
            subscription.id,
            {
                "status": SubscriptionStatus.PAUSED,
                "metadata": {
                    **subscription.metadata,
                    "suspended_at": now.isoformat(),
                    "suspension_reason": "payment_failed",
                },
            },
            expected_status=subscription.status,
        )
        if updated:
            logger.info(f"Suspended subscription {subscription.id} due to payment failure")
            await self._suspend_account(subscription.customer_id, now)
        return updated

    async def _suspend_account(self, customer_id: str, now: datetime) -> None:
        """Carry a subscription suspension over to the customer's account state."""
        if self.account_states is None:
            return
        row = self.store.get_account_state(customer_id)
        if row is None or row.state not in (AccountStateType.GRACE_PERIOD, AccountStateType.RESTRICTED):
            return
        await self.account_states.update_account_state(
            row.id,
            AccountStateType.SUSPENDED,
            "payment_retries_exhausted",
            metadata={"suspended_subscription_at": now},
            expected_state=row.state,
            triggered_by=TransitionTrigger.SCHEDULER,
            now=now,
        )

    # ---- tax -------------------------------------------------------------

    async def calculate_tax(self, customer_id: str, amount: int, currency: str = "usd") -> int:
        """
        Tax in cents on `amount` for a customer, from the first active Stripe tax
        rate. Customers without a billing address, or billed outside
        TAXABLE_COUNTRIES, pay none. Lookup failures are logged and return 0.
        """
        customer = self.store.get_customer_with_subscriptions(customer_id)
        if customer is None or not customer.gateway_customer_id:
            raise CustomerNotFoundError(customer_id)

        try:
            gateway_customer = await self.gateway.retrieve_customer(customer.gateway_customer_id)
            address = gateway_customer.get("address") or {}
            if not address or address.get("country") not in TAXABLE_COUNTRIES:
                return 0

            percentage = await self.gateway.get_active_tax_rate_percentage()
        except GatewayError as e:
            logger.error(f"Calculate tax error for customer {customer_id}: {e.message}")
            return 0

        if percentage is None:
            return 0
        tax = round(amount * percentage / 100)
        logger.info(f"Tax for customer {customer_id}: {tax} {currency} on {amount}")
        return tax

    # ---- refunds ---------------------------------------------------------

    async def process_refund(
        self,
        charge_id: str,
        amount: Optional[int] = None,
        reason: str = "requested_by_customer",
        invoice_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        refund = await self.gateway.refund(charge_id, reason=reason, amount=amount)
        if not refund.success:
            raise GatewayError(
                refund.error_message or f"Refund for charge {charge_id} failed",
                details={"code": refund.error_code, "charge_id": charge_id},
            )

        record = self.store.record_refund({
            "id": str(uuid.uuid4()),
            "gateway_refund_id": refund.data.get("id"),
            "charge_id": charge_id,
            "invoice_id": invoice_id,
            "amount": refund.amount_paid,
            "currency": refund.data.get("currency"),
            "reason": reason,
            "status": refund.status,
            "created_at": _utcnow(),
        })
        logger.info(f"Recorded refund of {refund.amount_paid} for charge {charge_id}")
        return record
