"""
Unit tests for JWT validation and the admin / cron guards.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from auth.dependencies import require_admin, verify_cron_secret
from auth.middleware import JWT_ALGORITHM, JWT_AUDIENCE, AuthMiddleware

SECRET = "test-jwt-secret-with-enough-length-for-hs256"


@pytest.fixture
def auth_middleware():
    with patch("auth.middleware.JWT_SECRET", SECRET):
        yield AuthMiddleware(supabase_client=MagicMock())


def _credentials(token):
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestAuthMiddleware:

    @pytest.mark.asyncio
    async def test_round_trip_token_carries_role(self, auth_middleware):
        token = auth_middleware.create_access_token("user_1", "ops@example.com", role="admin")

        user = await auth_middleware.verify_token(_credentials(token))

        assert user == {"id": "user_1", "email": "ops@example.com", "role": "admin"}

    @pytest.mark.asyncio
    async def test_expired_token_is_401(self, auth_middleware):
        token = jwt.encode(
            {
                "sub": "user_1",
                "email": "a@example.com",
                "aud": JWT_AUDIENCE,
                "exp": datetime.now(timezone.utc) - timedelta(minutes=1),
            },
            SECRET,
            algorithm=JWT_ALGORITHM,
        )

        with pytest.raises(HTTPException) as exc_info:
            await auth_middleware.verify_token(_credentials(token))

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Token has expired"

    @pytest.mark.asyncio
    async def test_token_without_email_is_rejected(self, auth_middleware):
        token = jwt.encode({"sub": "user_1", "aud": JWT_AUDIENCE}, SECRET, algorithm=JWT_ALGORITHM)

        with pytest.raises(HTTPException) as exc_info:
            await auth_middleware.verify_token(_credentials(token))

        assert exc_info.value.status_code == 401

    def test_missing_secret_refuses_to_start(self):
        with patch("auth.middleware.JWT_SECRET", None):
            with pytest.raises(ValueError):
                AuthMiddleware(supabase_client=MagicMock())


class TestGuards:

    @pytest.mark.asyncio
    async def test_admin_by_role_or_email(self, monkeypatch):
        monkeypatch.setenv("ADMIN_EMAILS", "Boss@Example.com, other@example.com")

        assert await require_admin({"id": "1", "email": "x@example.com", "role": "admin"})
        assert await require_admin({"id": "2", "email": "boss@example.com", "role": "user"})
        with pytest.raises(HTTPException) as exc_info:
            await require_admin({"id": "3", "email": "x@example.com", "role": "user"})
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_cron_secret_without_configuration_is_refused(self, monkeypatch):
        monkeypatch.delenv("CRON_SECRET", raising=False)

        with pytest.raises(HTTPException):
            await verify_cron_secret("anything")
