"""
Payment recovery routes: account status, feature access, admin overrides and dunning jobs
"""
from fastapi import APIRouter, HTTPException, status, Depends, Query
from pydantic import BaseModel
from typing import Optional
from datetime import datetime, timedelta, timezone
import logging

from auth.dependencies import get_current_customer, require_admin, verify_cron_secret
from models.account_state import AccountState, AccountStateUpdate, FeatureAccessResult
from models.customer import Customer
from services.exceptions import DunningError
from services.recovery_services import RecoveryServices, get_recovery_services

router = APIRouter(prefix="/recovery", tags=["Payment Recovery"])
logger = logging.getLogger(__name__)


class ManualPaymentSuccess(BaseModel):
    customer_id: str
    payment_intent_id: Optional[str] = None


def _http_error(e: DunningError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_dict()["error"])


@router.get("/account-status")
async def get_account_status(
    customer: Customer = Depends(get_current_customer),
    services: RecoveryServices = Depends(get_recovery_services),
):
    """
    Current account state and restriction view for the signed-in customer
    """
    try:
        account_state = services.account_states.get_account_state(customer.id)
        restrictions = await services.feature_access.get_feature_restrictions(customer.id)
        return {
            "customer_id": customer.id,
            "account_state": account_state,
            "restrictions": restrictions,
        }

    except DunningError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error getting account status for customer {customer.id}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get account status"
        )


@router.get("/feature-access", response_model=FeatureAccessResult)
async def check_feature_access(
    feature: str = Query(..., min_length=1),
    customer: Customer = Depends(get_current_customer),
    services: RecoveryServices = Depends(get_recovery_services),
):
    # The gate itself never raises
    return await services.feature_access.check_feature_access(customer.id, feature)


@router.put("/account-status", response_model=AccountState)
async def override_account_state(
    request: AccountStateUpdate,
    admin: dict = Depends(require_admin),
    services: RecoveryServices = Depends(get_recovery_services),
):
    """
    Manually move an account to another state (admin only)
    """
    try:
        return await services.account_states.update_account_state(
            request.account_state_id,
            request.state,
            request.reason,
            metadata=request.metadata,
            manual_override=True,
            override_reason=request.override_reason,
            override_by=admin["id"],
        )

    except DunningError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Account state override error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update account state"
        )


@router.post("/payment-success")
async def record_payment_success(
    request: ManualPaymentSuccess,
    admin: dict = Depends(require_admin),
    services: RecoveryServices = Depends(get_recovery_services),
):
    """
    Reactivate an account after a payment collected outside the gateway flow (admin only)
    """
    try:
        account_state = await services.account_states.process_payment_success(
            request.customer_id, request.payment_intent_id
        )
        logger.info(f"Admin {admin['id']} recorded payment success for customer {request.customer_id}")
        return {"account_state": account_state}

    except DunningError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Manual payment success error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process payment success"
        )


@router.post("/jobs/run", dependencies=[Depends(verify_cron_secret)])
async def run_dunning_jobs(
    job: Optional[str] = Query(default=None, description="Run a single job instead of the full sweep"),
    services: RecoveryServices = Depends(get_recovery_services),
):
    """
    Entry point for external cron: runs the dunning sweeps once
    """
    scheduler = services.scheduler
    if job is not None and job not in scheduler.job_names:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown job. Available: {', '.join(scheduler.job_names)}"
        )

    try:
        if job is not None:
            results = [await scheduler.trigger_job(job)]
        else:
            results = await scheduler.run_once()
        return {"jobs": [result.model_dump(mode="json") for result in results]}

    except Exception as e:
        logger.error(f"Dunning job run error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to run dunning jobs"
        )


@router.get("/jobs/status")
async def get_job_status(
    admin: dict = Depends(require_admin),
    services: RecoveryServices = Depends(get_recovery_services),
):
    return services.scheduler.get_status()


@router.get("/analytics")
async def get_recovery_analytics(
    days: int = Query(default=30, ge=1, le=365),
    admin: dict = Depends(require_admin),
    services: RecoveryServices = Depends(get_recovery_services),
):
    """
    Subscription and recovery analytics (admin only)
    """
    analytics = services.analytics
    end = datetime.now(timezone.utc)
    start = end - timedelta(days=days)

    return {
        "period_days": days,
        "mrr": await analytics.calculate_mrr(),
        "arr": await analytics.calculate_arr(),
        "churn": await analytics.analyze_churn(start, end),
        "clv": await analytics.calculate_clv(),
        "recovery": await analytics.get_recovery_metrics(days),
    }
