"""
Unit tests for dunning policy lookups.
"""

from config import dunning_config
from config.dunning_config import (
    DEFAULT_RETRY_CONFIG,
    get_decline_policy,
    get_grace_period_days,
    get_retry_config,
    get_state_actions,
    get_state_policy,
)


def test_grace_period_days_by_segment():
    assert get_grace_period_days("new") == 3
    assert get_grace_period_days("standard") == 5
    assert get_grace_period_days("high_value") == 7
    assert get_grace_period_days("enterprise") == 5


def test_state_policy_falls_back_to_active():
    assert get_state_policy("restricted")["restrictions"] == ["new_data_creation", "advanced_features", "api_access"]
    assert get_state_policy("archived") == get_state_policy("active")


def test_decline_aliases_share_policy():
    assert get_decline_policy("stolen_card") == get_decline_policy("fraudulent")
    assert get_decline_policy(None) == dunning_config.DEFAULT_DECLINE_POLICY


def test_plan_overrides_layer_on_defaults(monkeypatch):
    monkeypatch.setitem(dunning_config.PLAN_RETRY_OVERRIDES, "enterprise", {"max_retries": 5})

    enterprise = get_retry_config("enterprise")

    assert enterprise.max_retries == 5
    assert enterprise.retry_intervals_hours == DEFAULT_RETRY_CONFIG.retry_intervals_hours
    assert get_retry_config("pro") is DEFAULT_RETRY_CONFIG


def test_blank_retry_intervals_keep_default_schedule():
    assert dunning_config._parse_intervals("") == [24.0, 72.0, 168.0]
    assert dunning_config._parse_intervals(" , ") == [24.0, 72.0, 168.0]
    assert dunning_config._parse_intervals("12,48") == [12.0, 48.0]


def test_state_actions_are_copies():
    actions = get_state_actions("suspended")
    actions.append("extra")

    assert "extra" not in get_state_actions("suspended")
    assert get_state_actions("unknown") == []
