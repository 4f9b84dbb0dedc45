"""
Unit tests for the feature access gate.
"""

from datetime import timedelta

import pytest

from config.dunning_config import ALL_FEATURES
from models.account_state import AccountStateType
from services.exceptions import StoreError
from services.feature_access_service import FAIL_OPEN_REASON

RESTRICTED = ["new_data_creation", "advanced_features", "api_access"]


@pytest.fixture
def broken_store(store, monkeypatch):
    def unavailable(customer_id):
        raise StoreError("Failed to load account state")

    monkeypatch.setattr(store, "get_account_state", unavailable)
    return store


class TestCheckFeatureAccess:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("feature", ["api_access", "advanced_features", "billing_update", "anything"])
    async def test_no_row_allows_everything(self, feature_access_service, feature):
        result = await feature_access_service.check_feature_access("cus_never_failed", feature)

        assert result.allowed is True
        assert result.feature == feature

    @pytest.mark.asyncio
    async def test_active_row_allows_everything(self, feature_access_service, make_account_state):
        make_account_state("cus_1", AccountStateType.ACTIVE)

        result = await feature_access_service.check_feature_access("cus_1", "api_access")

        assert result.allowed is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state,restrictions", [
        (AccountStateType.GRACE_PERIOD, []),
        (AccountStateType.RESTRICTED, RESTRICTED),
        (AccountStateType.SUSPENDED, [ALL_FEATURES]),
    ])
    async def test_billing_update_is_always_allowed(
        self, feature_access_service, make_account_state, now, state, restrictions
    ):
        make_account_state("cus_1", state, grace_period_end=now, feature_restrictions=restrictions)

        result = await feature_access_service.check_feature_access("cus_1", "billing_update")

        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_suspended_denies_everything_else(self, feature_access_service, make_account_state):
        make_account_state("cus_1", AccountStateType.SUSPENDED, feature_restrictions=[ALL_FEATURES])

        result = await feature_access_service.check_feature_access("cus_1", "read_only_access")

        assert result.allowed is False
        assert "suspended" in result.reason

    @pytest.mark.asyncio
    async def test_grace_period_does_not_restrict(self, feature_access_service, make_account_state, now):
        grace_period_end = now + timedelta(days=3)
        make_account_state("cus_1", AccountStateType.GRACE_PERIOD, grace_period_end=grace_period_end)

        result = await feature_access_service.check_feature_access("cus_1", "api_access")

        assert result.allowed is True
        assert result.grace_period_end == grace_period_end

    @pytest.mark.asyncio
    async def test_restricted_denies_listed_features_with_countdown(
        self, feature_access_service, make_account_state, now
    ):
        grace_period_end = now + timedelta(days=2)
        make_account_state(
            "cus_1", AccountStateType.RESTRICTED, grace_period_end=grace_period_end, feature_restrictions=RESTRICTED
        )

        result = await feature_access_service.check_feature_access("cus_1", "api_access")

        assert result.allowed is False
        assert "restricted" in result.reason
        assert result.grace_period_end == grace_period_end

    @pytest.mark.asyncio
    @pytest.mark.parametrize("feature", ["read_only_access", "data_export", "reporting"])
    async def test_restricted_keeps_core_features(self, feature_access_service, make_account_state, feature):
        make_account_state("cus_1", AccountStateType.RESTRICTED, feature_restrictions=RESTRICTED)

        result = await feature_access_service.check_feature_access("cus_1", feature)

        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_store_error_fails_open(self, feature_access_service, broken_store):
        result = await feature_access_service.check_feature_access("cus_1", "api_access")

        assert result.allowed is True
        assert result.reason == FAIL_OPEN_REASON
        assert "defaulting to allow" in result.reason


class TestGetFeatureRestrictions:

    @pytest.mark.asyncio
    async def test_no_row_is_active_view(self, feature_access_service):
        view = await feature_access_service.get_feature_restrictions("cus_1")

        assert view.account_state == "active"
        assert view.restrictions == []
        assert view.allowed_features == [ALL_FEATURES]

    @pytest.mark.asyncio
    async def test_restricted_view(self, feature_access_service, make_account_state, now):
        make_account_state(
            "cus_1", AccountStateType.RESTRICTED, grace_period_end=now, feature_restrictions=RESTRICTED
        )

        view = await feature_access_service.get_feature_restrictions("cus_1")

        assert view.account_state == "restricted"
        assert view.restrictions == RESTRICTED
        assert "billing_update" in view.allowed_features
        assert view.grace_period_end == now

    @pytest.mark.asyncio
    async def test_store_error_degrades_to_full_access(self, feature_access_service, broken_store):
        view = await feature_access_service.get_feature_restrictions("cus_1")

        assert view.account_state == "error"
        assert view.allowed_features == [ALL_FEATURES]
