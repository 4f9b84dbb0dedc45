"""
Account state machine for payment recovery.

Owns the single current AccountState row per customer: moves it through
active -> grace_period -> restricted -> suspended on payment failures and time,
and back to active when a payment recovers. Every write is a compare-and-set on
the row version so concurrent webhooks and overlapping sweeps never overwrite
each other blindly.
"""
from typing import Optional, Dict, Any, Tuple, Callable
from datetime import datetime, timedelta, timezone
import asyncio
import logging
import uuid

from config.decorators import retry_on_conflict
from config.dunning_config import (
    ALL_FEATURES,
    DATA_RETENTION_DAYS,
    DUNNING_BATCH_LIMIT,
    RECENT_FAILURE_WINDOW_DAYS,
    get_grace_period_days,
    get_state_actions,
    get_state_policy,
)
from models.account_state import (
    AccountState,
    AccountStateType,
    AccountStateMetadata,
    StateTransition,
    TransitionTrigger,
    GracePeriodSweepResult,
)
from models.subscription import PaymentFailure
from services.billing_store import BillingStore
from services.exceptions import (
    AccountStateConflictError,
    AccountStateNotFoundError,
    InvalidStateTransitionError,
)
from services.segmentation_service import segment_customer

logger = logging.getLogger(__name__)

VALID_TRANSITIONS = {
    AccountStateType.ACTIVE: {AccountStateType.GRACE_PERIOD},
    AccountStateType.GRACE_PERIOD: {
        AccountStateType.RESTRICTED,
        AccountStateType.SUSPENDED,
        AccountStateType.ACTIVE,
    },
    AccountStateType.RESTRICTED: {AccountStateType.SUSPENDED, AccountStateType.ACTIVE},
    AccountStateType.SUSPENDED: {AccountStateType.ACTIVE},
}

# failure_count at which an open grace period escalates to restricted
ESCALATION_FAILURE_COUNT = 2


def can_transition(from_state: AccountStateType, to_state: AccountStateType) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, set())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStateService:
    def __init__(self, store: BillingStore, payment_failure_service=None):
        self.store = store
        self.payment_failures = payment_failure_service

    def get_account_state(self, customer_id: str) -> Optional[AccountState]:
        """Current row for a customer. None means active with no restrictions."""
        return self.store.get_account_state(customer_id)

    @retry_on_conflict()
    async def process_payment_failure(self, failure: PaymentFailure, now: Optional[datetime] = None) -> AccountState:
        """
        Move a customer's account in response to a failed charge.

        First failure opens a grace period sized by segment; a second or later
        failure while the grace period is open escalates to restricted.
        """
        now = now or _utcnow()
        customer_id = failure.customer_id

        current = self.store.get_account_state(customer_id)
        customer = self.store.get_customer_with_subscriptions(customer_id)
        segment = segment_customer(customer, now)
        grace_days = get_grace_period_days(segment.value)

        prior_state = current.state if current else AccountStateType.ACTIVE
        failure_count = (current.metadata.failure_count if current else 0) + 1
        recent_failures = self.store.count_recent_failures(
            customer_id, timedelta(days=RECENT_FAILURE_WINDOW_DAYS)
        )

        metadata_updates = {
            "failure_count": failure_count,
            "payment_failure_id": failure.id,
            "failure_reason": failure.failure_code,
            "recent_failure_count": recent_failures,
        }

        if current is not None and current.state == AccountStateType.SUSPENDED:
            # Suspension keeps its reason; the failure only lands in metadata
            row = current.model_copy(deep=True)
            metadata = current.metadata.model_dump()
            metadata.update(metadata_updates)
            row.metadata = AccountStateMetadata.model_validate(metadata)
            row.version = current.version + 1
            row.updated_at = now
            saved = self._compare_and_set(current, row)
            logger.info(
                f"Payment failure for suspended customer {customer_id} recorded (failure_count={failure_count})"
            )
            return saved

        to_state, reason, grace_period_end = self._state_for_failure(
            current, failure, failure_count, now + timedelta(days=grace_days)
        )
        if to_state != prior_state and not can_transition(prior_state, to_state):
            raise InvalidStateTransitionError(prior_state.value, to_state.value)

        transition = StateTransition(
            from_state=prior_state,
            to_state=to_state,
            reason=reason,
            triggered_by=TransitionTrigger.PAYMENT_FAILURE,
            at=now,
            payment_failure_id=failure.id,
        )

        if current is None:
            row = AccountState(
                id=str(uuid.uuid4()),
                customer_id=customer_id,
                subscription_id=failure.subscription_id,
                state=to_state,
                previous_state=prior_state,
                reason=reason,
                grace_period_end=grace_period_end,
                feature_restrictions=list(get_state_policy(to_state.value)["restrictions"]),
                data_retention_period=DATA_RETENTION_DAYS,
                metadata=AccountStateMetadata(**metadata_updates, transitions=[transition]),
                version=1,
                created_at=now,
                updated_at=now,
            )
            _record_actions(row, transition)
            saved = self.store.upsert_account_state(_enforce_invariants(row))
        else:
            row = self._next_row(
                current,
                to_state,
                reason,
                transition,
                now,
                grace_period_end=grace_period_end,
                metadata_updates=metadata_updates,
            )
            if failure.subscription_id and not row.subscription_id:
                row.subscription_id = failure.subscription_id
            saved = self._compare_and_set(current, row)

        logger.info(
            f"Payment failure for customer {customer_id} ({segment.value}): "
            f"{prior_state.value} -> {saved.state.value} ({reason}, failure_count={failure_count})"
        )
        return saved

    @retry_on_conflict()
    async def process_payment_success(
        self, customer_id: str, payment_intent_id: Optional[str], now: Optional[datetime] = None
    ) -> Optional[AccountState]:
        """
        Reactivate an account after a successful payment. Returns None when the
        customer never had an account state row; an active row is returned as-is.
        """
        now = now or _utcnow()
        current = self.store.get_account_state(customer_id)

        if current is not None and current.state != AccountStateType.ACTIVE:
            transition = StateTransition(
                from_state=current.state,
                to_state=AccountStateType.ACTIVE,
                reason="payment_recovered",
                triggered_by=TransitionTrigger.PAYMENT_SUCCESS,
                at=now,
                payment_intent_id=payment_intent_id,
            )
            row = self._next_row(
                current,
                AccountStateType.ACTIVE,
                "payment_recovered",
                transition,
                now,
                metadata_updates={
                    "reactivated_from": current.state,
                    "reactivated_at": now,
                    "payment_intent_id": payment_intent_id,
                },
            )
            current = self._compare_and_set(current, row)
            logger.info(f"Account for customer {customer_id} reactivated from {transition.from_state.value}")

        if self.payment_failures is not None:
            self.payment_failures.resolve_failures(customer_id)

        return current

    async def update_account_state(
        self,
        account_state_id: str,
        state: AccountStateType,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        manual_override: bool = False,
        override_reason: Optional[str] = None,
        override_by: Optional[str] = None,
        expected_state: Optional[AccountStateType] = None,
        triggered_by: Optional[TransitionTrigger] = None,
        now: Optional[datetime] = None,
    ) -> AccountState:
        """
        Move an existing account state row to `state`.

        Setting the current state again is a no-op. With `expected_state` the
        change only applies while the row is still in that state ("set to X if
        currently Y"); otherwise the row is returned unchanged.
        """
        def precondition(row: AccountState) -> bool:
            return expected_state is None or row.state == expected_state

        row, _ = await self._update_account_state(
            account_state_id,
            state,
            reason,
            metadata=metadata,
            manual_override=manual_override,
            override_reason=override_reason,
            override_by=override_by,
            precondition=precondition,
            triggered_by=triggered_by,
            now=now,
        )
        return row

    async def process_expired_grace_periods(
        self,
        now: Optional[datetime] = None,
        limit: int = DUNNING_BATCH_LIMIT,
        stop_event: Optional[asyncio.Event] = None,
    ) -> GracePeriodSweepResult:
        """
        Suspend every grace_period or restricted account whose grace period has ended.

        Each row is handled on its own; a failure is logged and counted and the
        sweep moves on. Rows that changed since they were fetched are counted as
        processed but left alone, so overlapping sweeps do not double-suspend.
        """
        now = now or _utcnow()
        expired = self.store.get_expired_grace_periods(now, limit)
        result = GracePeriodSweepResult()

        if not expired:
            return result

        logger.info(f"Found {len(expired)} expired grace periods")

        for row in expired:
            if stop_event is not None and stop_event.is_set():
                logger.info(f"Grace period sweep interrupted after {result.processed} accounts")
                break

            result.processed += 1
            try:
                _, changed = await self._update_account_state(
                    row.id,
                    AccountStateType.SUSPENDED,
                    "grace_period_expired",
                    metadata={
                        "grace_period_expired_at": now,
                        "previous_grace_period_end": row.grace_period_end,
                    },
                    precondition=lambda live: _grace_period_expired(live, now),
                    triggered_by=TransitionTrigger.SCHEDULER,
                    now=now,
                )
                if changed:
                    result.suspended += 1
            except Exception as e:
                result.errors += 1
                logger.error(f"Error suspending account state {row.id} for customer {row.customer_id}: {str(e)}")

        logger.info(
            f"Grace period sweep: processed={result.processed}, suspended={result.suspended}, errors={result.errors}"
        )
        return result

    @retry_on_conflict()
    async def _update_account_state(
        self,
        account_state_id: str,
        state: AccountStateType,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        manual_override: bool = False,
        override_reason: Optional[str] = None,
        override_by: Optional[str] = None,
        precondition: Optional[Callable[[AccountState], bool]] = None,
        triggered_by: Optional[TransitionTrigger] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[AccountState, bool]:
        now = now or _utcnow()
        current = self.store.get_account_state_by_id(account_state_id)
        if current is None:
            raise AccountStateNotFoundError(account_state_id)

        if precondition is not None and not precondition(current):
            logger.info(f"Account state {account_state_id} no longer eligible for {state.value}, skipping")
            return current, False

        if current.state == state:
            return current, False

        if not can_transition(current.state, state):
            raise InvalidStateTransitionError(current.state.value, state.value)

        if triggered_by is None:
            triggered_by = TransitionTrigger.MANUAL if manual_override else TransitionTrigger.SYSTEM

        grace_period_end = None
        if state == AccountStateType.GRACE_PERIOD:
            customer = self.store.get_customer_with_subscriptions(current.customer_id)
            grace_days = get_grace_period_days(segment_customer(customer, now).value)
            grace_period_end = now + timedelta(days=grace_days)

        transition = StateTransition(
            from_state=current.state,
            to_state=state,
            reason=reason,
            triggered_by=triggered_by,
            at=now,
        )
        row = self._next_row(
            current,
            state,
            reason,
            transition,
            now,
            grace_period_end=grace_period_end,
            metadata_updates=metadata,
        )
        if manual_override:
            row.manual_override = True
            row.override_reason = override_reason
            row.override_by = override_by

        saved = self._compare_and_set(current, row)
        logger.info(
            f"Account state {account_state_id} for customer {current.customer_id}: "
            f"{current.state.value} -> {state.value} ({reason}, by {triggered_by.value})"
        )
        return saved, True

    def _state_for_failure(
        self,
        current: Optional[AccountState],
        failure: PaymentFailure,
        failure_count: int,
        new_grace_period_end: datetime,
    ) -> Tuple[AccountStateType, str, Optional[datetime]]:
        if current is None or current.state == AccountStateType.ACTIVE:
            return AccountStateType.GRACE_PERIOD, "payment_failure", new_grace_period_end

        if current.state == AccountStateType.GRACE_PERIOD:
            # failure_count starts at 0 on a grace period opened by an admin, so the
            # gateway's retry count can be the only sign of a repeat failure
            if failure_count >= ESCALATION_FAILURE_COUNT or failure.retry_count >= ESCALATION_FAILURE_COUNT:
                return AccountStateType.RESTRICTED, "multiple_payment_failures", current.grace_period_end
            return AccountStateType.GRACE_PERIOD, "payment_failure_retry", new_grace_period_end

        return AccountStateType.RESTRICTED, "multiple_payment_failures", current.grace_period_end

    def _next_row(
        self,
        current: AccountState,
        to_state: AccountStateType,
        reason: str,
        transition: StateTransition,
        now: datetime,
        grace_period_end: Optional[datetime] = None,
        metadata_updates: Optional[Dict[str, Any]] = None,
    ) -> AccountState:
        metadata = current.metadata.model_dump()
        metadata.update(metadata_updates or {})
        metadata["transitions"] = metadata.get("transitions", []) + [transition.model_dump()]

        row = current.model_copy(deep=True)
        row.previous_state = current.state
        row.state = to_state
        row.reason = reason
        row.feature_restrictions = list(get_state_policy(to_state.value)["restrictions"])
        row.grace_period_end = grace_period_end
        row.metadata = AccountStateMetadata.model_validate(metadata)
        row.version = current.version + 1
        row.updated_at = now

        if to_state == AccountStateType.SUSPENDED and current.state != AccountStateType.SUSPENDED:
            row.suspension_date = now
        if to_state == AccountStateType.ACTIVE:
            row.reactivation_date = now
            row.suspension_date = None
        if to_state != current.state:
            _record_actions(row, transition)

        return _enforce_invariants(row)

    def _compare_and_set(self, current: AccountState, row: AccountState) -> AccountState:
        saved = self.store.upsert_account_state(
            row, expected_version=current.version, expected_state=current.state
        )
        if saved is None:
            logger.warning(f"Account state for customer {current.customer_id} changed during update")
            raise AccountStateConflictError(
                current.customer_id, details={"expected_version": current.version}
            )
        return saved


def _grace_period_expired(row: AccountState, now: datetime) -> bool:
    return (
        row.state in (AccountStateType.GRACE_PERIOD, AccountStateType.RESTRICTED)
        and row.grace_period_end is not None
        and row.grace_period_end < now
    )


def _record_actions(row: AccountState, transition: StateTransition) -> None:
    """Note the follow-up actions for the state the row is entering, keyed by state."""
    actions = get_state_actions(row.state.value)
    row.automated_actions = {
        **row.automated_actions,
        row.state.value: {
            "actions": actions,
            "executed_at": transition.at.isoformat(),
            "triggered_by": transition.triggered_by.value,
        },
    }
    if actions:
        logger.info(f"Account state {row.id} entered {row.state.value}, actions: {', '.join(actions)}")


def _enforce_invariants(row: AccountState) -> AccountState:
    if row.state == AccountStateType.ACTIVE:
        row.feature_restrictions = []
        row.grace_period_end = None
    elif row.state == AccountStateType.SUSPENDED:
        row.feature_restrictions = [ALL_FEATURES]
        row.grace_period_end = None
    return row
