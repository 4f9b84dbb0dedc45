"""
Authentication and feature-gate dependencies
"""
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
import hmac
import os

from .middleware import get_auth_middleware
from models.customer import Customer
from services.recovery_services import RecoveryServices, get_recovery_services

security = HTTPBearer()


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """
    Get current authenticated user
    """
    auth_middleware = get_auth_middleware()
    return await auth_middleware.verify_token(credentials)


def _admin_emails() -> set:
    return {email.strip().lower() for email in os.getenv("ADMIN_EMAILS", "").split(",") if email.strip()}


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin" and user.get("email", "").lower() not in _admin_emails():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


async def verify_cron_secret(x_cron_secret: Optional[str] = Header(default=None)) -> None:
    """Authorize scheduler calls (external cron) with a shared secret."""
    expected = os.getenv("CRON_SECRET")
    if not expected or not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
        )


async def get_current_customer(
    user: dict = Depends(get_current_user),
    services: RecoveryServices = Depends(get_recovery_services),
) -> Customer:
    customer = services.store.get_customer_by_user_id(user["id"])
    if customer is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No billing customer for this user",
        )
    return customer


def require_feature(feature: str):
    """Dependency factory: 403 unless the customer's account state allows `feature`."""
    async def _require_feature(
        customer: Customer = Depends(get_current_customer),
        services: RecoveryServices = Depends(get_recovery_services),
    ) -> Customer:
        access = await services.feature_access.check_feature_access(customer.id, feature)
        if not access.allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "feature": feature,
                    "reason": access.reason,
                    "grace_period_end": access.grace_period_end.isoformat() if access.grace_period_end else None,
                },
            )
        return customer
    return _require_feature
