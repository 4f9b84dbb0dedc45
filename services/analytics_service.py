"""
Subscription analytics: MRR/ARR, churn, CLV and payment recovery metrics
"""
from typing import Dict, List, Any, Optional
from datetime import datetime, timedelta, timezone
from collections import defaultdict
from statistics import median
import logging

from models.account_state import AccountStateType
from models.subscription import Subscription, SubscriptionStatus
from services.billing_store import BillingStore

logger = logging.getLogger(__name__)

INVOLUNTARY_REASON = "payment_failed"


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def _month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _next_month(moment: datetime) -> datetime:
    if moment.month == 12:
        return moment.replace(year=moment.year + 1, month=1)
    return moment.replace(month=moment.month + 1)


def _active_at(sub: Subscription, moment: datetime) -> bool:
    if sub.status == SubscriptionStatus.TRIALING:
        return False
    if sub.created_at is not None and sub.created_at > moment:
        return False
    if sub.canceled_at is not None and sub.canceled_at <= moment:
        return False
    if sub.canceled_at is None and sub.status == SubscriptionStatus.CANCELED:
        return False
    return True


def _is_involuntary(sub: Subscription) -> bool:
    return (
        sub.metadata.get("cancellation_reason") == INVOLUNTARY_REASON
        or sub.metadata.get("suspension_reason") == INVOLUNTARY_REASON
    )


class AnalyticsService:
    def __init__(self, store: BillingStore):
        self.store = store

    async def calculate_mrr(self, month: Optional[datetime] = None) -> Dict[str, Any]:
        """Monthly recurring revenue (cents) for a month, with growth against the month before."""
        try:
            now = datetime.now(timezone.utc)
            start = _month_start(_aware(month) if month else now)
            reference = min(_next_month(start), now) if start <= now else start

            subscriptions = self.store.list_subscriptions()

            current_mrr = sum(s.monthly_amount() for s in subscriptions if _active_at(s, reference))
            previous_mrr = sum(s.monthly_amount() for s in subscriptions if _active_at(s, start))
            new_mrr = sum(
                s.monthly_amount() for s in subscriptions
                if s.created_at is not None and start <= s.created_at < reference
            )
            churned_mrr = sum(
                s.monthly_amount() for s in subscriptions
                if s.canceled_at is not None and start <= s.canceled_at < reference
            )
            growth_rate = ((current_mrr - previous_mrr) / previous_mrr * 100) if previous_mrr else 0

            return {
                "month": start.strftime("%Y-%m"),
                "current_mrr": round(current_mrr, 2),
                "previous_mrr": round(previous_mrr, 2),
                "growth_rate": round(growth_rate, 2),
                "new_mrr": round(new_mrr, 2),
                "churned_mrr": round(churned_mrr, 2),
            }

        except Exception as e:
            logger.error(f"Error calculating MRR: {str(e)}")
            return {}

    async def calculate_arr(self) -> Dict[str, Any]:
        mrr = await self.calculate_mrr()
        current_mrr = mrr.get("current_mrr", 0)
        return {"mrr": current_mrr, "arr": round(current_mrr * 12, 2)}

    async def analyze_churn(self, start: datetime, end: datetime) -> Dict[str, Any]:
        """
        Customer and revenue churn over [start, end).

        Involuntary churn is cancellation or suspension caused by failed payment;
        everything else counts as voluntary.
        """
        try:
            start, end = _aware(start), _aware(end)
            subscriptions = self.store.list_subscriptions()

            starting = [s for s in subscriptions if _active_at(s, start)]
            churned = [
                s for s in subscriptions
                if s.canceled_at is not None and start <= s.canceled_at < end
            ]
            involuntary = [s for s in churned if _is_involuntary(s)]
            voluntary = [s for s in churned if not _is_involuntary(s)]

            starting_customers = {s.customer_id for s in starting}
            churned_customers = {s.customer_id for s in churned}
            starting_mrr = sum(s.monthly_amount() for s in starting)
            churned_mrr = sum(s.monthly_amount() for s in churned)

            return {
                "period_start": start.isoformat(),
                "period_end": end.isoformat(),
                "starting_customers": len(starting_customers),
                "churned_customers": len(churned_customers),
                "customer_churn_rate": round(len(churned_customers) / len(starting_customers) * 100, 2) if starting_customers else 0,
                "revenue_churn_rate": round(churned_mrr / starting_mrr * 100, 2) if starting_mrr else 0,
                "churned_mrr": round(churned_mrr, 2),
                "voluntary_churn": len(voluntary),
                "involuntary_churn": len(involuntary),
            }

        except Exception as e:
            logger.error(f"Error analyzing churn: {str(e)}")
            return {}

    async def calculate_clv(self) -> Dict[str, Any]:
        """Customer lifetime value (cents): revenue to date per customer, overall and by plan."""
        try:
            now = datetime.now(timezone.utc)
            subscriptions = self.store.list_subscriptions()

            per_customer: Dict[str, float] = defaultdict(float)
            per_plan: Dict[str, List[float]] = defaultdict(list)

            for s in subscriptions:
                if s.created_at is None:
                    continue
                ended = s.canceled_at or now
                lifetime_months = max((ended - s.created_at).days / 30, 1)
                value = s.monthly_amount() * lifetime_months
                per_customer[s.customer_id] += value
                per_plan[s.plan_type or "unknown"].append(value)

            values = list(per_customer.values())
            if not values:
                return {"average_clv": 0, "median_clv": 0, "customers": 0, "by_plan": {}}

            return {
                "average_clv": round(sum(values) / len(values), 2),
                "median_clv": round(median(values), 2),
                "customers": len(values),
                "by_plan": {plan: round(sum(v) / len(v), 2) for plan, v in per_plan.items()},
            }

        except Exception as e:
            logger.error(f"Error calculating CLV: {str(e)}")
            return {}

    async def get_recovery_metrics(self, days: int = 30) -> Dict[str, Any]:
        """Dunning outcomes over the last `days`, read from account state transition logs."""
        try:
            since = datetime.now(timezone.utc) - timedelta(days=days)
            states = self.store.list_account_states(since=since)

            state_counts = defaultdict(int)
            entered_dunning = 0
            recovered = 0
            suspended = 0
            recovery_hours: List[float] = []

            for account_state in states:
                state_counts[account_state.state.value] += 1
                failure_started: Optional[datetime] = None

                for transition in account_state.metadata.transitions:
                    if (
                        transition.from_state == AccountStateType.ACTIVE
                        and transition.to_state == AccountStateType.GRACE_PERIOD
                    ):
                        failure_started = transition.at
                        if transition.at >= since:
                            entered_dunning += 1
                    elif transition.to_state == AccountStateType.ACTIVE:
                        if transition.at >= since:
                            recovered += 1
                            if failure_started is not None:
                                recovery_hours.append((transition.at - failure_started).total_seconds() / 3600)
                        failure_started = None
                    elif transition.to_state == AccountStateType.SUSPENDED and transition.from_state != AccountStateType.SUSPENDED:
                        if transition.at >= since:
                            suspended += 1

            return {
                "period_days": days,
                "state_distribution": dict(state_counts),
                "entered_dunning": entered_dunning,
                "recovered": recovered,
                "suspended": suspended,
                "recovery_rate": round(recovered / entered_dunning * 100, 2) if entered_dunning else 0,
                "avg_hours_to_recovery": round(sum(recovery_hours) / len(recovery_hours), 2) if recovery_hours else None,
            }

        except Exception as e:
            logger.error(f"Error getting recovery metrics: {str(e)}")
            return self._empty_recovery_metrics(days)

    def _empty_recovery_metrics(self, days: int) -> Dict[str, Any]:
        return {
            "period_days": days,
            "state_distribution": {},
            "entered_dunning": 0,
            "recovered": 0,
            "suspended": 0,
            "recovery_rate": 0,
            "avg_hours_to_recovery": None,
        }
