"""
Stripe gateway adapter for invoice retries, refunds and collection pauses
"""
import stripe
import os
import asyncio
from typing import Optional, Dict, Any
import logging

from config.dunning_config import GATEWAY_TIMEOUT_SECONDS
from models.subscription import GatewayResult
from services.exceptions import GatewayError, GatewayTimeoutError, WebhookSignatureError

logger = logging.getLogger(__name__)

# Initialize Stripe
stripe.api_key = os.getenv("STRIPE_SECRET_KEY")


def _to_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    return to_dict() if callable(to_dict) else {}


class StripeService:
    def __init__(self, webhook_secret: Optional[str] = None, timeout_seconds: float = GATEWAY_TIMEOUT_SECONDS):
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")
        self.timeout_seconds = timeout_seconds

    async def _call(self, operation: str, func, *args, **kwargs):
        """
        Run a blocking Stripe SDK call in a worker thread with a deadline.
        Raises GatewayTimeoutError / GatewayError; never hangs past the timeout.
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Stripe call {operation} timed out after {self.timeout_seconds}s")
            raise GatewayTimeoutError(operation, self.timeout_seconds) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe error in {operation}: {str(e)}")
            error = getattr(e, "error", None)
            raise GatewayError(
                f"Stripe error in {operation}: {getattr(e, 'user_message', None) or str(e)}",
                details={
                    "code": getattr(e, "code", None),
                    "decline_code": getattr(error, "decline_code", None),
                },
            ) from e

    @staticmethod
    def _failed(e: GatewayError) -> GatewayResult:
        if isinstance(e, GatewayTimeoutError):
            error_code = "timeout"
        else:
            error_code = e.details.get("decline_code") or e.details.get("code") or e.code
        return GatewayResult(success=False, error_code=error_code, error_message=e.message)

    async def pay_invoice(self, gateway_invoice_id: str) -> GatewayResult:
        """
        Attempt to collect an open invoice. Declines, API errors and timeouts all
        come back as success=False so they count against the retry budget.
        """
        try:
            invoice = await self._call("pay_invoice", stripe.Invoice.pay, gateway_invoice_id)
        except GatewayError as e:
            return self._failed(e)

        data = _to_dict(invoice)
        status = data.get("status")
        return GatewayResult(
            success=status == "paid",
            amount_paid=data.get("amount_paid") or 0,
            status=status,
            error_code=None if status == "paid" else "invoice_not_paid",
            data=data,
        )

    async def retrieve_invoice(self, gateway_invoice_id: str) -> Dict[str, Any]:
        invoice = await self._call("retrieve_invoice", stripe.Invoice.retrieve, gateway_invoice_id)
        return _to_dict(invoice)

    async def refund(
        self,
        charge_id: str,
        reason: str = "requested_by_customer",
        amount: Optional[int] = None,
    ) -> GatewayResult:
        params: Dict[str, Any] = {"charge": charge_id, "reason": reason}
        if amount is not None:
            params["amount"] = amount

        try:
            refund = await self._call("refund", stripe.Refund.create, **params)
        except GatewayError as e:
            return self._failed(e)

        data = _to_dict(refund)
        logger.info(f"Created refund {data.get('id')} for charge {charge_id}")
        return GatewayResult(
            success=data.get("status") in ("succeeded", "pending"),
            amount_paid=data.get("amount") or 0,
            status=data.get("status"),
            data=data,
        )

    async def pause_collection(self, gateway_subscription_id: str) -> GatewayResult:
        """Stop collecting on a subscription; open invoices are voided while paused."""
        try:
            subscription = await self._call(
                "pause_collection",
                stripe.Subscription.modify,
                gateway_subscription_id,
                pause_collection={"behavior": "void"},
            )
        except GatewayError as e:
            return self._failed(e)

        data = _to_dict(subscription)
        return GatewayResult(success=True, status=data.get("status"), data=data)

    async def resume_collection(self, gateway_subscription_id: str) -> GatewayResult:
        try:
            subscription = await self._call(
                "resume_collection",
                stripe.Subscription.modify,
                gateway_subscription_id,
                pause_collection="",
            )
        except GatewayError as e:
            return self._failed(e)

        data = _to_dict(subscription)
        return GatewayResult(success=True, status=data.get("status"), data=data)

    async def create_invoice(
        self,
        gateway_customer_id: str,
        description: Optional[str] = None,
        gateway_subscription_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "customer": gateway_customer_id,
            "collection_method": "charge_automatically",
            "auto_advance": True,
            "metadata": metadata or {},
        }
        if description:
            params["description"] = description
        if gateway_subscription_id:
            params["subscription"] = gateway_subscription_id

        invoice = await self._call("create_invoice", stripe.Invoice.create, **params)
        return _to_dict(invoice)

    async def add_invoice_item(
        self,
        gateway_customer_id: str,
        gateway_invoice_id: str,
        amount: int,
        currency: str = "usd",
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        item = await self._call(
            "add_invoice_item",
            stripe.InvoiceItem.create,
            customer=gateway_customer_id,
            invoice=gateway_invoice_id,
            amount=amount,
            currency=currency,
            description=description,
        )
        return _to_dict(item)

    async def finalize_invoice(self, gateway_invoice_id: str) -> Dict[str, Any]:
        invoice = await self._call("finalize_invoice", stripe.Invoice.finalize_invoice, gateway_invoice_id)
        return _to_dict(invoice)

    async def retrieve_customer(self, gateway_customer_id: str) -> Dict[str, Any]:
        customer = await self._call("retrieve_customer", stripe.Customer.retrieve, gateway_customer_id)
        return _to_dict(customer)

    async def get_active_tax_rate_percentage(self) -> Optional[float]:
        """Percentage of the first active tax rate on the account, or None when there is none."""
        rates = await self._call("list_tax_rates", stripe.TaxRate.list, active=True, limit=1)
        data = _to_dict(rates).get("data") or []
        if not data:
            return None
        return float(_to_dict(data[0]).get("percentage") or 0)

    def construct_event(self, payload: bytes, signature: Optional[str]):
        """Verify a webhook payload against the endpoint secret."""
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.error(f"Webhook signature verification failed: {str(e)}")
            raise WebhookSignatureError() from e
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {str(e)}")
            raise WebhookSignatureError("Invalid webhook payload") from e
