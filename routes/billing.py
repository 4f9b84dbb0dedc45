"""
Billing routes: gateway webhooks, invoices, tax estimates and refunds
"""
from fastapi import APIRouter, HTTPException, status, Depends, Request, Query
from pydantic import BaseModel, Field
from typing import Optional, List, Dict
import logging

from auth.dependencies import get_current_customer, require_admin
from models.customer import Customer
from models.subscription import Invoice
from services.exceptions import DunningError
from services.recovery_services import RecoveryServices, get_recovery_services

router = APIRouter(prefix="/billing", tags=["Billing"])
logger = logging.getLogger(__name__)


class InvoiceItemRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Unit amount in cents")
    quantity: int = Field(default=1, ge=1)
    currency: str = "usd"
    description: Optional[str] = None


class InvoiceCreateRequest(BaseModel):
    customer_id: str
    subscription_id: Optional[str] = None
    description: Optional[str] = None
    items: List[InvoiceItemRequest] = Field(default_factory=list)
    metadata: Optional[Dict[str, str]] = None


class RefundRequest(BaseModel):
    charge_id: str
    amount: Optional[int] = Field(default=None, gt=0, description="Partial refund in cents; full refund when omitted")
    reason: str = "requested_by_customer"
    invoice_id: Optional[str] = None


@router.post("/webhook")
async def stripe_webhook(request: Request, services: RecoveryServices = Depends(get_recovery_services)):
    """
    Handle Stripe webhooks
    """
    try:
        payload = await request.body()
        signature = request.headers.get("stripe-signature")

        return await services.webhooks.handle_webhook(payload, signature)

    except HTTPException:
        raise
    except DunningError as e:
        logger.error(f"Webhook processing error: {str(e)}")
        raise HTTPException(status_code=e.status_code, detail=e.to_dict()["error"])
    except Exception as e:
        logger.error(f"Webhook processing error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )


@router.get("/invoices", response_model=List[Invoice])
async def list_invoices(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    customer: Customer = Depends(get_current_customer),
    services: RecoveryServices = Depends(get_recovery_services),
):
    """
    Get the current customer's invoices, newest first
    """
    try:
        return services.billing.get_customer_invoices(customer.id, page=page, limit=limit)

    except DunningError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict()["error"])
    except Exception as e:
        logger.error(f"Error listing invoices for customer {customer.id}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to list invoices"
        )


@router.post("/invoices", response_model=Invoice)
async def create_invoice(
    request: InvoiceCreateRequest,
    admin: dict = Depends(require_admin),
    services: RecoveryServices = Depends(get_recovery_services),
):
    """
    Create and finalize an invoice for a customer (admin only)
    """
    try:
        invoice = await services.billing.create_invoice(
            request.customer_id,
            subscription_id=request.subscription_id,
            description=request.description,
            items=[item.model_dump() for item in request.items],
            metadata=request.metadata,
        )
        logger.info(f"Admin {admin['id']} created invoice {invoice.id} for customer {request.customer_id}")
        return invoice

    except DunningError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict()["error"])
    except Exception as e:
        logger.error(f"Invoice creation error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create invoice"
        )


@router.get("/tax")
async def estimate_tax(
    amount: int = Query(..., gt=0, description="Amount in cents"),
    currency: str = Query(default="usd"),
    customer: Customer = Depends(get_current_customer),
    services: RecoveryServices = Depends(get_recovery_services),
):
    """
    Estimate tax on an amount for the current customer
    """
    try:
        tax = await services.billing.calculate_tax(customer.id, amount, currency=currency)
        return {"amount": amount, "currency": currency, "tax": tax, "total": amount + tax}

    except DunningError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict()["error"])
    except Exception as e:
        logger.error(f"Tax estimate error for customer {customer.id}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to estimate tax"
        )


@router.post("/refunds")
async def create_refund(
    request: RefundRequest,
    admin: dict = Depends(require_admin),
    services: RecoveryServices = Depends(get_recovery_services),
):
    """
    Refund a charge (admin only)
    """
    try:
        refund = await services.billing.process_refund(
            request.charge_id,
            amount=request.amount,
            reason=request.reason,
            invoice_id=request.invoice_id,
        )
        logger.info(f"Admin {admin['id']} refunded charge {request.charge_id}")
        return {"refund": refund}

    except DunningError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict()["error"])
    except Exception as e:
        logger.error(f"Refund error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process refund"
        )
