"""
Payment failure records: the audit trail behind every dunning decision
"""
from typing import Optional, Dict, Any
from datetime import datetime, timezone
import logging
import uuid

from config.dunning_config import get_decline_policy
from models.subscription import PaymentFailure, PaymentFailureStatus
from services.billing_store import BillingStore

logger = logging.getLogger(__name__)

OPEN_STATUSES = (PaymentFailureStatus.PENDING, PaymentFailureStatus.RETRYING)


class PaymentFailureService:
    def __init__(self, store: BillingStore):
        self.store = store

    def classify_failure(self, failure_code: Optional[str]) -> Dict[str, Any]:
        """Map a gateway decline code to classification, severity and retry budget."""
        return dict(get_decline_policy(failure_code))

    def record_failure(
        self,
        customer_id: str,
        subscription_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        failure_code: Optional[str] = None,
        failure_message: Optional[str] = None,
        amount: int = 0,
        currency: str = "usd",
        retry_count: int = 0,
    ) -> PaymentFailure:
        """Create the failure row for one failed charge attempt. Rows are never updated except for status."""
        policy = self.classify_failure(failure_code)
        failure = PaymentFailure(
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            subscription_id=subscription_id,
            invoice_id=invoice_id,
            payment_intent_id=payment_intent_id,
            failure_code=failure_code,
            failure_message=failure_message,
            amount=amount,
            currency=currency,
            retry_count=retry_count,
            max_retry_attempts=policy["recommended_retry_count"],
            status=PaymentFailureStatus.PENDING,
            classification=policy["classification"],
            created_at=datetime.now(timezone.utc),
        )
        saved = self.store.record_payment_failure(failure)
        logger.info(
            f"Recorded payment failure {saved.id} for customer {customer_id} "
            f"({failure_code or 'unknown'}, {policy['classification']})"
        )
        return saved

    def mark_retrying(self, invoice_id: str) -> int:
        return self.store.update_payment_failure_status(
            PaymentFailureStatus.RETRYING,
            [PaymentFailureStatus.PENDING],
            invoice_id=invoice_id,
        )

    def resolve_failures(self, customer_id: str) -> int:
        resolved = self.store.update_payment_failure_status(
            PaymentFailureStatus.RESOLVED, OPEN_STATUSES, customer_id=customer_id
        )
        if resolved:
            logger.info(f"Resolved {resolved} payment failures for customer {customer_id}")
        return resolved

    def resolve_invoice_failures(self, invoice_id: str) -> int:
        return self.store.update_payment_failure_status(
            PaymentFailureStatus.RESOLVED, OPEN_STATUSES, invoice_id=invoice_id
        )

    def exhaust_failures(self, invoice_id: str) -> int:
        exhausted = self.store.update_payment_failure_status(
            PaymentFailureStatus.EXHAUSTED, OPEN_STATUSES, invoice_id=invoice_id
        )
        if exhausted:
            logger.info(f"Marked {exhausted} payment failures exhausted for invoice {invoice_id}")
        return exhausted
