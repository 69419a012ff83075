"""
Subscription dunning state machine.

Pure decision logic: given the current subscription status, its failure
counter and a trigger, decide the next status, the next counter and the
side effects the orchestrator must carry out. No I/O happens here.
"""
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional, Union

from tenant_billing.gateways.types import WebhookEventType


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class BillingTrigger(str, Enum):
    """Inputs to the state machine."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    INVOICE_PAID = "invoice_paid"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_OVERDUE = "payment_overdue"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    REFUND_COMPLETED = "refund_completed"


class SideEffect(str, Enum):
    """Actions the orchestrator performs after a transition."""

    MARK_INVOICE_PAID = "mark_invoice_paid"
    ACTIVATE_TENANT = "activate_tenant"
    SUSPEND_TENANT = "suspend_tenant"
    RECORD_PAYMENT = "record_payment"
    RECORD_FAILED_PAYMENT = "record_failed_payment"
    RECORD_REFUND = "record_refund"
    STAMP_LAST_PAYMENT = "stamp_last_payment"
    STAMP_CANCELLED = "stamp_cancelled"


@dataclass(frozen=True)
class Transition:
    status: SubscriptionStatus
    failure_count: int
    effects: FrozenSet[SideEffect] = frozenset()

    @property
    def suspends(self) -> bool:
        return SideEffect.SUSPEND_TENANT in self.effects


_EVENT_TRIGGERS = {
    WebhookEventType.PAYMENT_SUCCEEDED: BillingTrigger.PAYMENT_SUCCEEDED,
    WebhookEventType.INVOICE_PAID: BillingTrigger.INVOICE_PAID,
    WebhookEventType.PAYMENT_FAILED: BillingTrigger.PAYMENT_FAILED,
    WebhookEventType.SUBSCRIPTION_CANCELLED: BillingTrigger.SUBSCRIPTION_CANCELLED,
    WebhookEventType.REFUND_COMPLETED: BillingTrigger.REFUND_COMPLETED,
    WebhookEventType.UNKNOWN: None,
}

if set(_EVENT_TRIGGERS) != set(WebhookEventType):
    raise RuntimeError("Every webhook event type needs an explicit billing trigger")


def trigger_for_event(event_type: WebhookEventType) -> Optional[BillingTrigger]:
    """Map a canonical webhook event type to a trigger; unknown maps to None."""
    return _EVENT_TRIGGERS[event_type]


class SubscriptionStateMachine:
    """Dunning transitions with suspension after repeated failures."""

    def __init__(self, suspend_after_failures: int = 3) -> None:
        if suspend_after_failures < 1:
            raise ValueError("suspend_after_failures must be at least 1")
        self.suspend_after_failures = suspend_after_failures

    def transition(
        self,
        current_status: Union[SubscriptionStatus, str],
        failure_count: int,
        trigger: BillingTrigger,
    ) -> Transition:
        """
        Decide the next subscription state.

        Args:
            current_status: Current subscription status
            failure_count: Consecutive payment failures so far
            trigger: What happened

        Returns:
            Transition: New status, new counter and side effects
        """
        status = SubscriptionStatus(current_status)

        if trigger in (BillingTrigger.PAYMENT_SUCCEEDED, BillingTrigger.INVOICE_PAID):
            if status == SubscriptionStatus.CANCELLED:
                # Late payment on a cancelled subscription is recorded only.
                return Transition(
                    status=status,
                    failure_count=failure_count,
                    effects=frozenset({SideEffect.MARK_INVOICE_PAID, SideEffect.RECORD_PAYMENT}),
                )
            return Transition(
                status=SubscriptionStatus.ACTIVE,
                failure_count=0,
                effects=frozenset(
                    {
                        SideEffect.MARK_INVOICE_PAID,
                        SideEffect.ACTIVATE_TENANT,
                        SideEffect.RECORD_PAYMENT,
                        SideEffect.STAMP_LAST_PAYMENT,
                    }
                ),
            )

        if trigger in (BillingTrigger.PAYMENT_FAILED, BillingTrigger.PAYMENT_OVERDUE):
            if status == SubscriptionStatus.CANCELLED:
                return Transition(status=status, failure_count=failure_count)

            effects = set()
            if trigger == BillingTrigger.PAYMENT_FAILED:
                effects.add(SideEffect.RECORD_FAILED_PAYMENT)

            new_count = failure_count + 1
            if new_count >= self.suspend_after_failures or status == SubscriptionStatus.SUSPENDED:
                if status != SubscriptionStatus.SUSPENDED:
                    effects.add(SideEffect.SUSPEND_TENANT)
                return Transition(
                    status=SubscriptionStatus.SUSPENDED,
                    failure_count=new_count,
                    effects=frozenset(effects),
                )
            return Transition(
                status=SubscriptionStatus.PAST_DUE,
                failure_count=new_count,
                effects=frozenset(effects),
            )

        if trigger == BillingTrigger.SUBSCRIPTION_CANCELLED:
            if status == SubscriptionStatus.CANCELLED:
                return Transition(status=status, failure_count=failure_count)
            return Transition(
                status=SubscriptionStatus.CANCELLED,
                failure_count=failure_count,
                effects=frozenset({SideEffect.STAMP_CANCELLED}),
            )

        if trigger == BillingTrigger.REFUND_COMPLETED:
            return Transition(
                status=status,
                failure_count=failure_count,
                effects=frozenset({SideEffect.RECORD_REFUND}),
            )

        raise ValueError(f"Unhandled trigger: {trigger}")
