"""
Unit tests for the subscription dunning state machine.
"""
import pytest

from tenant_billing.core.state_machine import (
    BillingTrigger,
    SideEffect,
    SubscriptionStateMachine,
    SubscriptionStatus,
    trigger_for_event,
)
from tenant_billing.gateways.types import WebhookEventType


@pytest.fixture
def machine() -> SubscriptionStateMachine:
    return SubscriptionStateMachine(suspend_after_failures=3)


class TestSubscriptionStateMachine:
    """Transitions and side effects."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "status", ["trialing", "active", "past_due", "suspended"]
    )
    def test_success_activates_and_resets_counter(
        self, machine: SubscriptionStateMachine, status: str
    ) -> None:
        transition = machine.transition(status, 2, BillingTrigger.PAYMENT_SUCCEEDED)

        assert transition.status == SubscriptionStatus.ACTIVE
        assert transition.failure_count == 0
        assert transition.effects == {
            SideEffect.MARK_INVOICE_PAID,
            SideEffect.ACTIVATE_TENANT,
            SideEffect.RECORD_PAYMENT,
            SideEffect.STAMP_LAST_PAYMENT,
        }

    @pytest.mark.unit
    def test_invoice_paid_behaves_like_success(self, machine: SubscriptionStateMachine) -> None:
        transition = machine.transition("past_due", 1, BillingTrigger.INVOICE_PAID)

        assert transition.status == SubscriptionStatus.ACTIVE
        assert transition.failure_count == 0

    @pytest.mark.unit
    def test_success_on_cancelled_only_records(self, machine: SubscriptionStateMachine) -> None:
        transition = machine.transition("cancelled", 1, BillingTrigger.PAYMENT_SUCCEEDED)

        assert transition.status == SubscriptionStatus.CANCELLED
        assert transition.effects == {SideEffect.MARK_INVOICE_PAID, SideEffect.RECORD_PAYMENT}

    @pytest.mark.unit
    def test_failures_escalate_to_suspension(self, machine: SubscriptionStateMachine) -> None:
        status, count = SubscriptionStatus.ACTIVE, 0
        seen = []
        for _ in range(4):
            transition = machine.transition(status, count, BillingTrigger.PAYMENT_FAILED)
            status, count = transition.status, transition.failure_count
            seen.append((status.value, count, transition.suspends))

        assert seen == [
            ("past_due", 1, False),
            ("past_due", 2, False),
            ("suspended", 3, True),
            ("suspended", 4, False),
        ]

    @pytest.mark.unit
    def test_failure_records_failed_payment_but_overdue_does_not(
        self, machine: SubscriptionStateMachine
    ) -> None:
        failed = machine.transition("active", 0, BillingTrigger.PAYMENT_FAILED)
        overdue = machine.transition("active", 0, BillingTrigger.PAYMENT_OVERDUE)

        assert SideEffect.RECORD_FAILED_PAYMENT in failed.effects
        assert SideEffect.RECORD_FAILED_PAYMENT not in overdue.effects
        assert overdue.status == SubscriptionStatus.PAST_DUE

    @pytest.mark.unit
    def test_suspended_stays_suspended_on_failure(self, machine: SubscriptionStateMachine) -> None:
        transition = machine.transition("suspended", 0, BillingTrigger.PAYMENT_OVERDUE)

        assert transition.status == SubscriptionStatus.SUSPENDED
        assert not transition.suspends

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "trigger", [BillingTrigger.PAYMENT_FAILED, BillingTrigger.PAYMENT_OVERDUE]
    )
    def test_failure_on_cancelled_is_noop(
        self, machine: SubscriptionStateMachine, trigger: BillingTrigger
    ) -> None:
        transition = machine.transition("cancelled", 1, trigger)

        assert transition.status == SubscriptionStatus.CANCELLED
        assert transition.failure_count == 1
        assert transition.effects == frozenset()

    @pytest.mark.unit
    def test_cancellation(self, machine: SubscriptionStateMachine) -> None:
        transition = machine.transition("past_due", 2, BillingTrigger.SUBSCRIPTION_CANCELLED)
        repeat = machine.transition("cancelled", 2, BillingTrigger.SUBSCRIPTION_CANCELLED)

        assert transition.status == SubscriptionStatus.CANCELLED
        assert transition.effects == {SideEffect.STAMP_CANCELLED}
        assert repeat.effects == frozenset()

    @pytest.mark.unit
    def test_refund_only_records(self, machine: SubscriptionStateMachine) -> None:
        transition = machine.transition("active", 0, BillingTrigger.REFUND_COMPLETED)

        assert transition.status == SubscriptionStatus.ACTIVE
        assert transition.effects == {SideEffect.RECORD_REFUND}

    @pytest.mark.unit
    def test_custom_threshold(self) -> None:
        machine = SubscriptionStateMachine(suspend_after_failures=1)

        assert machine.transition("active", 0, BillingTrigger.PAYMENT_FAILED).suspends

        with pytest.raises(ValueError):
            SubscriptionStateMachine(suspend_after_failures=0)


class TestTriggerForEvent:
    """Canonical event mapping."""

    @pytest.mark.unit
    def test_every_event_type_is_mapped(self) -> None:
        for event_type in WebhookEventType:
            trigger = trigger_for_event(event_type)
            if event_type == WebhookEventType.UNKNOWN:
                assert trigger is None
            else:
                assert isinstance(trigger, BillingTrigger)

    @pytest.mark.unit
    def test_payment_failed_maps_to_failure(self) -> None:
        assert trigger_for_event(WebhookEventType.PAYMENT_FAILED) == BillingTrigger.PAYMENT_FAILED
