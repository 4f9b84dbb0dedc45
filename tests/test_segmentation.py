"""
Unit tests for customer segmentation.
"""

from datetime import timedelta

from models.customer import Customer, CustomerSegment
from models.subscription import BillingInterval, Subscription, SubscriptionStatus
from services.segmentation_service import segment_customer


def _customer(now, tenure_days, subscriptions=()):
    return Customer(
        id="cus_1",
        created_at=now - timedelta(days=tenure_days),
        subscriptions=list(subscriptions),
    )


def _subscription(amount, interval=BillingInterval.MONTH, status=SubscriptionStatus.ACTIVE):
    return Subscription(id="sub_1", customer_id="cus_1", status=status, amount=amount, interval=interval)


class TestSegmentCustomer:
    """Tenure first, then monthly spend."""

    def test_missing_customer_is_standard(self, now):
        assert segment_customer(None, now) == CustomerSegment.STANDARD

    def test_missing_created_at_is_standard(self, now):
        assert segment_customer(Customer(id="cus_1"), now) == CustomerSegment.STANDARD

    def test_new_customer_wins_over_spend(self, now):
        customer = _customer(now, 10, [_subscription(50000)])
        assert segment_customer(customer, now) == CustomerSegment.NEW

    def test_tenure_boundary(self, now):
        assert segment_customer(_customer(now, 29), now) == CustomerSegment.NEW
        assert segment_customer(_customer(now, 30), now) == CustomerSegment.STANDARD

    def test_high_value_threshold_is_inclusive(self, now):
        assert segment_customer(_customer(now, 60, [_subscription(10000)]), now) == CustomerSegment.HIGH_VALUE
        assert segment_customer(_customer(now, 60, [_subscription(9999)]), now) == CustomerSegment.STANDARD

    def test_yearly_plans_are_normalised_to_monthly(self, now):
        yearly = _subscription(120000, interval=BillingInterval.YEAR)
        assert segment_customer(_customer(now, 60, [yearly]), now) == CustomerSegment.HIGH_VALUE

    def test_canceled_subscriptions_do_not_count(self, now):
        canceled = _subscription(50000, status=SubscriptionStatus.CANCELED)
        assert segment_customer(_customer(now, 60, [canceled]), now) == CustomerSegment.STANDARD

    def test_naive_created_at_is_treated_as_utc(self, now):
        customer = Customer(id="cus_1", created_at=(now - timedelta(days=5)).replace(tzinfo=None))
        assert segment_customer(customer, now) == CustomerSegment.NEW
