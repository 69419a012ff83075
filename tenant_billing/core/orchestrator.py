"""
Payment orchestrator.

The façade the rest of the platform uses for billing:
1. Create invoices and payment intents through the selected gateway
2. Verify, de-duplicate and apply provider webhooks
3. Drive the dunning state machine and tenant suspension
4. Retries, refunds, cancellation and localized pricing
"""
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenant_billing.config import Settings
from tenant_billing.core.exceptions import (
    BillingError,
    InvoiceNotFoundError,
    InvoiceStateError,
    TenantNotFoundError,
    UnknownProviderError,
    UnsupportedCapabilityError,
)
from tenant_billing.core.ledger import WebhookEventLedger
from tenant_billing.core.money import calculate_tax, to_decimal
from tenant_billing.core.selector import GatewaySelector, normalize_country
from tenant_billing.core.state_machine import (
    BillingTrigger,
    SideEffect,
    SubscriptionStateMachine,
    SubscriptionStatus,
    Transition,
    trigger_for_event,
)
from tenant_billing.database.models import (
    Invoice,
    PaymentAttempt,
    PlanLocalPrice,
    PricingPlan,
    Tenant,
    TenantSubscription,
    TransactionLog,
    new_id,
    utcnow,
)
from tenant_billing.gateways.base import GatewayAdapter, SubscriptionCapable
from tenant_billing.gateways.types import (
    CreatePaymentParams,
    NormalizedWebhookEvent,
    PaymentIntent,
    PaymentIntentStatus,
    PaymentStatus,
    RefundParams,
    RefundResult,
)
from tenant_billing.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

INVOICE_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits
OPEN_INVOICE_STATUSES = ("pending", "overdue")
SUCCESS_TRIGGERS = (BillingTrigger.PAYMENT_SUCCEEDED, BillingTrigger.INVOICE_PAID)


def generate_invoice_number(now: Optional[datetime] = None) -> str:
    """INV-<yyyymmddHHMMSS>-<5 random upper alphanumerics>."""
    now = now or utcnow()
    suffix = "".join(secrets.choice(INVOICE_SUFFIX_ALPHABET) for _ in range(5))
    return f"INV-{now:%Y%m%d%H%M%S}-{suffix}"


def _intent_payload(intent: PaymentIntent) -> Dict[str, Any]:
    """JSON-safe snapshot of an intent for the transaction log."""
    return {
        "id": intent.id,
        "provider": intent.provider.value,
        "amount": str(intent.amount),
        "currency": intent.currency,
        "status": intent.status.value,
        "external_payment_id": intent.external_payment_id,
        "redirect_url": intent.redirect_url,
        "metadata": {key: str(value) for key, value in intent.metadata.items()},
    }


@dataclass(frozen=True)
class PaymentCreationResult:
    success: bool
    payment_url: Optional[str] = None
    invoice_id: Optional[str] = None
    provider: Optional[str] = None
    payment_intent_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def failure(cls, error: BillingError, **kwargs: Any) -> "PaymentCreationResult":
        return cls(success=False, error=error.message, error_code=error.error_code, **kwargs)


class WebhookStatus(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class WebhookResult:
    status: WebhookStatus
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    error: Optional[str] = None

    @property
    def acknowledged(self) -> bool:
        """Whether the provider should consider the delivery done."""
        return self.status != WebhookStatus.REJECTED


class PaymentOrchestrator:
    """
    Billing façade.

    Owns its database sessions: each public operation runs in its own
    transaction(s).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        selector: GatewaySelector,
        ledger: WebhookEventLedger,
        state_machine: SubscriptionStateMachine,
        settings: Settings,
    ) -> None:
        self.session_factory = session_factory
        self.selector = selector
        self.registry = selector.registry
        self.ledger = ledger
        self.state_machine = state_machine
        self.settings = settings

    # Payment creation

    async def create_subscription_payment(
        self, tenant_id: str, plan_code: str
    ) -> PaymentCreationResult:
        """
        Invoice a tenant for a plan and start a payment at the provider.

        Flow:
        1. Load tenant and select a gateway for its billing country
        2. Resolve the localized price and tax
        3. Create a pending invoice due after the grace period
        4. Call the provider
        5. Record the transaction log and payment attempt

        Steps 3-5 share one database transaction.

        Args:
            tenant_id: Tenant identifier
            plan_code: Pricing plan code

        Returns:
            PaymentCreationResult: payment_url on success, error and
            error_code otherwise
        """
        with structlog.contextvars.bound_contextvars(tenant_id=tenant_id, plan_code=plan_code):
            async with self.session_factory() as session:
                async with session.begin():
                    return await self._create_subscription_payment(session, tenant_id, plan_code)

    async def _create_subscription_payment(
        self, session: AsyncSession, tenant_id: str, plan_code: str
    ) -> PaymentCreationResult:
        tenant = await session.get(Tenant, tenant_id)
        if tenant is None:
            logger.warning("payment_request_unknown_tenant")
            return PaymentCreationResult.failure(TenantNotFoundError("Tenant not found"))

        country = normalize_country(tenant.country)
        adapter = self.selector.get_gateway_for_country(country)
        if adapter is None:
            logger.critical("no_gateway_available", country=country)
            metrics.record_no_gateway(country)
            return PaymentCreationResult(
                success=False,
                error="No payment gateway available for this country",
                error_code="no_gateway_available",
            )

        mapping = self.selector.get_country_mapping(country)
        if mapping is None:
            logger.error("country_not_configured", country=country)
            return PaymentCreationResult(
                success=False,
                error="Country configuration not found",
                error_code="country_not_configured",
            )

        plan = await session.scalar(
            select(PricingPlan).where(PricingPlan.code == plan_code, PricingPlan.is_active.is_(True))
        )
        if plan is None:
            return PaymentCreationResult(
                success=False, error="Plan not found", error_code="plan_not_found"
            )

        local_price = await session.scalar(
            select(PlanLocalPrice.local_price).where(
                PlanLocalPrice.plan_id == plan.id, PlanLocalPrice.country == country
            )
        )
        subtotal = to_decimal(local_price if local_price is not None else plan.base_price)
        tax_amount = calculate_tax(subtotal, mapping.tax_rate)
        total = subtotal + tax_amount

        now = utcnow()
        invoice = Invoice(
            id=new_id(),
            invoice_number=generate_invoice_number(now),
            tenant_id=tenant.id,
            plan_code=plan.code,
            status="pending",
            country=country,
            currency=mapping.currency,
            subtotal=subtotal,
            tax_name=mapping.tax_name,
            tax_rate=mapping.tax_rate,
            tax_amount=tax_amount,
            total_amount=total,
            amount_paid=Decimal("0.00"),
            amount_due=total,
            due_date=now + timedelta(days=self.settings.grace_period_days),
            line_items=[
                {
                    "description": plan.name,
                    "quantity": 1,
                    "unit_price": str(subtotal),
                    "total": str(subtotal),
                }
            ],
        )
        session.add(invoice)
        await self._ensure_subscription(session, tenant.id, plan_code=plan.code)
        await session.flush()

        logger.info(
            "invoice_created",
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            provider=adapter.name,
            total=str(total),
            currency=mapping.currency,
        )

        intent = await self._charge(session, adapter, tenant, invoice, attempt_number=1)
        return self._creation_result(adapter, invoice, intent)

    async def retry_invoice_payment(self, invoice_id: str) -> PaymentCreationResult:
        """
        Start a new payment attempt for an open invoice.

        Uses the gateway currently selected for the invoice's country and
        refuses once max_payment_retries attempts exist.
        """
        with structlog.contextvars.bound_contextvars(invoice_id=invoice_id):
            async with self.session_factory() as session:
                async with session.begin():
                    invoice = await session.scalar(
                        select(Invoice).where(Invoice.id == invoice_id).with_for_update()
                    )
                    if invoice is None:
                        return PaymentCreationResult.failure(
                            InvoiceNotFoundError("Invoice not found"), invoice_id=invoice_id
                        )
                    if invoice.status not in OPEN_INVOICE_STATUSES:
                        return PaymentCreationResult.failure(
                            InvoiceStateError(f"Invoice is {invoice.status}"),
                            invoice_id=invoice_id,
                        )

                    attempts = await session.scalar(
                        select(func.coalesce(func.max(PaymentAttempt.attempt_number), 0)).where(
                            PaymentAttempt.invoice_id == invoice_id
                        )
                    )
                    if attempts >= self.settings.max_payment_retries:
                        logger.warning("payment_retries_exhausted", attempts=attempts)
                        return PaymentCreationResult(
                            success=False,
                            invoice_id=invoice_id,
                            error="Maximum payment attempts reached",
                            error_code="max_retries_exceeded",
                        )

                    tenant = await session.get(Tenant, invoice.tenant_id)
                    if tenant is None:
                        return PaymentCreationResult.failure(
                            TenantNotFoundError("Tenant not found"), invoice_id=invoice_id
                        )

                    adapter = self.selector.get_gateway_for_country(invoice.country)
                    if adapter is None:
                        logger.critical("no_gateway_available", country=invoice.country)
                        metrics.record_no_gateway(invoice.country)
                        return PaymentCreationResult(
                            success=False,
                            invoice_id=invoice_id,
                            error="No payment gateway available for this country",
                            error_code="no_gateway_available",
                        )

                    intent = await self._charge(
                        session, adapter, tenant, invoice, attempt_number=attempts + 1
                    )
                    return self._creation_result(adapter, invoice, intent)

    async def _charge(
        self,
        session: AsyncSession,
        adapter: GatewayAdapter,
        tenant: Tenant,
        invoice: Invoice,
        attempt_number: int,
    ) -> PaymentIntent:
        """Call the provider and record the attempt in the caller's transaction."""
        base_url = self.settings.app_base_url.rstrip("/")
        params = CreatePaymentParams(
            tenant_id=tenant.id,
            invoice_id=invoice.id,
            amount=invoice.amount_due,
            currency=invoice.currency,
            description=f"Subscription: {invoice.plan_code} ({invoice.invoice_number})",
            customer_email=tenant.email,
            return_url=f"{base_url}/billing/success",
            webhook_url=f"{base_url}/webhooks/{adapter.name}",
            attempt_number=attempt_number,
            metadata={"plan_code": invoice.plan_code or ""},
        )
        intent = await adapter.create_payment(params)

        session.add(
            TransactionLog(
                tenant_id=tenant.id,
                invoice_id=invoice.id,
                provider=adapter.name,
                external_transaction_id=intent.external_payment_id,
                transaction_type="payment",
                country=invoice.country,
                currency=invoice.currency,
                amount=invoice.amount_due,
                status=intent.status.value,
                raw_response=_intent_payload(intent),
                error_message=intent.error,
            )
        )
        session.add(
            PaymentAttempt(
                invoice_id=invoice.id,
                tenant_id=tenant.id,
                provider=adapter.name,
                amount=invoice.amount_due,
                currency=invoice.currency,
                status=intent.status.value,
                external_payment_id=intent.external_payment_id,
                attempt_number=attempt_number,
                error_message=intent.error,
            )
        )
        if intent.status != PaymentIntentStatus.FAILED:
            invoice.provider = adapter.name
            invoice.external_payment_id = intent.external_payment_id

        metrics.record_payment_request(
            adapter.name, intent.status.value, invoice.currency, float(invoice.amount_due)
        )
        if intent.status == PaymentIntentStatus.FAILED:
            logger.warning(
                "payment_intent_failed",
                provider=adapter.name,
                invoice_id=invoice.id,
                attempt_number=attempt_number,
                error=intent.error,
            )
        else:
            logger.info(
                "payment_intent_created",
                provider=adapter.name,
                invoice_id=invoice.id,
                attempt_number=attempt_number,
                external_payment_id=intent.external_payment_id,
            )
        return intent

    @staticmethod
    def _creation_result(
        adapter: GatewayAdapter, invoice: Invoice, intent: PaymentIntent
    ) -> PaymentCreationResult:
        if intent.status == PaymentIntentStatus.FAILED:
            return PaymentCreationResult(
                success=False,
                invoice_id=invoice.id,
                provider=adapter.name,
                error=intent.error or "Payment could not be created",
                error_code="payment_failed",
            )
        return PaymentCreationResult(
            success=True,
            payment_url=intent.payment_url,
            invoice_id=invoice.id,
            provider=adapter.name,
            payment_intent_id=intent.external_payment_id,
        )

    # Webhooks

    async def handle_webhook_event(
        self,
        provider: str,
        payload: Mapping[str, Any],
        signature: Optional[str],
        raw_body: bytes,
    ) -> WebhookResult:
        """
        Verify, de-duplicate and apply a provider webhook.

        Args:
            provider: Provider name from the webhook URL
            payload: Decoded JSON body
            signature: Value of the provider's signature header
            raw_body: Raw request body the signature covers

        Returns:
            WebhookResult: rejected results write nothing; every other
            status means the event is durably recorded
        """
        start = time.perf_counter()
        try:
            adapter = self.registry.require(provider)
        except UnknownProviderError as e:
            logger.warning("webhook_unknown_provider", provider=provider)
            return WebhookResult(WebhookStatus.REJECTED, error=e.error_code)

        if not adapter.verify_webhook_signature(raw_body, signature):
            logger.warning("webhook_signature_rejected", provider=adapter.name)
            metrics.record_webhook_event(
                adapter.name, "unverified", WebhookStatus.REJECTED.value, time.perf_counter() - start
            )
            return WebhookResult(WebhookStatus.REJECTED, error="invalid_signature")

        event = adapter.normalize_webhook_event(payload)
        with structlog.contextvars.bound_contextvars(
            provider=adapter.name, event_id=event.external_event_id, event_type=event.type.value
        ):
            result = await self._process_event(adapter, event)

        metrics.record_webhook_event(
            adapter.name, event.type.value, result.status.value, time.perf_counter() - start
        )
        return result

    async def _process_event(
        self, adapter: GatewayAdapter, event: NormalizedWebhookEvent
    ) -> WebhookResult:
        claim = await self.ledger.claim(adapter.name, event)
        if not claim.acquired:
            return WebhookResult(
                WebhookStatus.DUPLICATE,
                event_id=event.external_event_id,
                event_type=event.type.value,
            )

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    status = await self._apply_event(session, adapter.name, event)
                    await self.ledger.mark_processed(session, adapter.name, event.external_event_id)
        except Exception as e:
            logger.exception("webhook_processing_failed", error=str(e))
            await self.ledger.mark_failed(adapter.name, event.external_event_id, str(e) or repr(e))
            return WebhookResult(
                WebhookStatus.FAILED,
                event_id=event.external_event_id,
                event_type=event.type.value,
                error=str(e) or repr(e),
            )

        logger.info("webhook_event_applied", outcome=status.value)
        return WebhookResult(status, event_id=event.external_event_id, event_type=event.type.value)

    async def _apply_event(
        self, session: AsyncSession, provider: str, event: NormalizedWebhookEvent
    ) -> WebhookStatus:
        trigger = trigger_for_event(event.type)
        if trigger is None:
            logger.info("webhook_event_ignored", reason="unknown_event_type")
            return WebhookStatus.IGNORED

        invoice = await self._find_invoice(session, provider, event)
        tenant_id = event.tenant_id or (invoice.tenant_id if invoice else None)
        if tenant_id is None and event.external_subscription_id:
            tenant_id = await session.scalar(
                select(TenantSubscription.tenant_id).where(
                    TenantSubscription.external_subscription_id == event.external_subscription_id
                )
            )
        if invoice is not None and tenant_id is not None and invoice.tenant_id != tenant_id:
            logger.warning(
                "webhook_invoice_tenant_mismatch",
                invoice_id=invoice.id,
                invoice_tenant_id=invoice.tenant_id,
                event_tenant_id=tenant_id,
            )
            invoice = None

        tenant = await session.get(Tenant, tenant_id) if tenant_id else None
        if tenant is None:
            logger.warning("webhook_event_ignored", reason="tenant_not_resolved", tenant_id=tenant_id)
            return WebhookStatus.IGNORED

        await self._apply_trigger(
            session, tenant, trigger, provider=provider, invoice=invoice, event=event
        )
        return WebhookStatus.PROCESSED

    async def _find_invoice(
        self, session: AsyncSession, provider: str, event: NormalizedWebhookEvent
    ) -> Optional[Invoice]:
        if event.invoice_id:
            invoice = await session.scalar(
                select(Invoice).where(Invoice.id == event.invoice_id).with_for_update()
            )
            if invoice is not None:
                return invoice
        if event.external_payment_id:
            return await session.scalar(
                select(Invoice)
                .where(
                    Invoice.provider == provider,
                    Invoice.external_payment_id == event.external_payment_id,
                )
                .with_for_update()
            )
        return None

    # Dunning

    async def _apply_trigger(
        self,
        session: AsyncSession,
        tenant: Tenant,
        trigger: BillingTrigger,
        provider: Optional[str] = None,
        invoice: Optional[Invoice] = None,
        event: Optional[NormalizedWebhookEvent] = None,
    ) -> Transition:
        """Run one state machine transition and carry out its side effects."""
        subscription = await self._ensure_subscription(session, tenant.id, lock=True)
        previous_status = subscription.status
        transition = self.state_machine.transition(
            previous_status, subscription.payment_failure_count, trigger
        )
        now = utcnow()

        if SideEffect.MARK_INVOICE_PAID in transition.effects and invoice is not None:
            if not await self._mark_invoice_paid(session, invoice, provider, event, now):
                logger.info("invoice_already_settled", invoice_id=invoice.id)
                return Transition(
                    status=SubscriptionStatus(previous_status),
                    failure_count=subscription.payment_failure_count,
                )

        subscription.status = transition.status.value
        subscription.payment_failure_count = transition.failure_count
        if SideEffect.STAMP_LAST_PAYMENT in transition.effects:
            subscription.last_payment_at = now
            if provider:
                subscription.provider = provider
        if SideEffect.STAMP_CANCELLED in transition.effects:
            subscription.cancelled_at = now
        if event is not None and event.external_subscription_id and trigger in SUCCESS_TRIGGERS:
            subscription.external_subscription_id = event.external_subscription_id

        if SideEffect.SUSPEND_TENANT in transition.effects:
            reason = (
                "Overdue payments exceeded threshold"
                if trigger == BillingTrigger.PAYMENT_OVERDUE
                else "Payment failures exceeded threshold"
            )
            self._set_tenant_status(tenant, "suspended", reason, now)
        if SideEffect.ACTIVATE_TENANT in transition.effects and tenant.status != "cancelled":
            self._set_tenant_status(tenant, "active", None, now)

        if SideEffect.RECORD_PAYMENT in transition.effects:
            self._record_event_transaction(session, tenant, "payment", "success", provider, invoice, event)
        if SideEffect.RECORD_FAILED_PAYMENT in transition.effects:
            self._record_event_transaction(session, tenant, "payment", "failed", provider, invoice, event)
        if SideEffect.RECORD_REFUND in transition.effects:
            self._record_event_transaction(session, tenant, "refund", "success", provider, invoice, event)

        metrics.record_subscription_transition(
            previous_status, transition.status.value, trigger.value
        )
        logger.info(
            "subscription_transition",
            tenant_id=tenant.id,
            from_status=previous_status,
            to_status=transition.status.value,
            failure_count=transition.failure_count,
            trigger=trigger.value,
            effects=sorted(effect.value for effect in transition.effects),
        )
        return transition

    async def _mark_invoice_paid(
        self,
        session: AsyncSession,
        invoice: Invoice,
        provider: Optional[str],
        event: Optional[NormalizedWebhookEvent],
        now: datetime,
    ) -> bool:
        """Settle an open invoice. Returns False when it was already settled."""
        values: Dict[str, Any] = {
            "status": "paid",
            "amount_paid": Invoice.total_amount,
            "amount_due": Decimal("0.00"),
            "paid_at": now,
            "updated_at": now,
        }
        if provider:
            values["provider"] = provider
        if event is not None and event.external_payment_id:
            values["external_payment_id"] = event.external_payment_id
        if event is not None and event.amount is not None and event.amount != invoice.total_amount:
            logger.warning(
                "invoice_amount_mismatch",
                invoice_id=invoice.id,
                invoice_total=str(invoice.total_amount),
                event_amount=str(event.amount),
            )

        result = await session.execute(
            update(Invoice)
            .where(Invoice.id == invoice.id, Invoice.status.in_(OPEN_INVOICE_STATUSES))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _record_event_transaction(
        self,
        session: AsyncSession,
        tenant: Tenant,
        transaction_type: str,
        status: str,
        provider: Optional[str],
        invoice: Optional[Invoice],
        event: Optional[NormalizedWebhookEvent],
    ) -> None:
        amount = event.amount if event is not None and event.amount is not None else None
        if amount is None:
            amount = invoice.total_amount if invoice is not None else Decimal("0.00")
        currency = (event.currency if event is not None else None) or (
            invoice.currency if invoice is not None else None
        )
        if currency is None:
            mapping = self.selector.get_country_mapping(tenant.country)
            currency = mapping.currency if mapping else "USD"

        session.add(
            TransactionLog(
                tenant_id=tenant.id,
                invoice_id=invoice.id if invoice is not None else None,
                provider=provider or (invoice.provider if invoice is not None else None) or "internal",
                external_transaction_id=event.external_payment_id if event is not None else None,
                transaction_type=transaction_type,
                country=normalize_country(tenant.country),
                currency=currency,
                amount=to_decimal(amount),
                status=status,
                raw_response=dict(event.metadata) if event is not None else None,
                error_message=(
                    event.metadata.get("error") if event is not None and status == "failed" else None
                ),
            )
        )

    async def _ensure_subscription(
        self,
        session: AsyncSession,
        tenant_id: str,
        plan_code: Optional[str] = None,
        lock: bool = False,
    ) -> TenantSubscription:
        """Load the tenant's subscription row, creating a trialing one if missing."""
        query = select(TenantSubscription).where(TenantSubscription.tenant_id == tenant_id)
        if lock:
            query = query.with_for_update()
        subscription = await session.scalar(query)
        if subscription is None:
            subscription = TenantSubscription(
                tenant_id=tenant_id,
                plan_code=plan_code,
                status=SubscriptionStatus.TRIALING.value,
                payment_failure_count=0,
            )
            session.add(subscription)
            await session.flush()
            logger.info("subscription_created", tenant_id=tenant_id)
        elif plan_code and subscription.plan_code != plan_code:
            subscription.plan_code = plan_code
        return subscription

    async def apply_overdue(self, invoice_id: str, now: Optional[datetime] = None) -> Optional[Transition]:
        """
        Claim one past-due invoice and apply the overdue transition.

        The pending -> overdue update is conditional, so an invoice is
        counted once even when sweeps overlap.

        Returns:
            The transition, or None when another run already claimed the
            invoice
        """
        now = now or utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                claimed = await session.execute(
                    update(Invoice)
                    .where(
                        Invoice.id == invoice_id,
                        Invoice.status == "pending",
                        Invoice.due_date < now,
                    )
                    .values(status="overdue", updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    return None

                tenant_id = await session.scalar(
                    select(Invoice.tenant_id).where(Invoice.id == invoice_id)
                )
                tenant = await session.get(Tenant, tenant_id)
                if tenant is None:
                    logger.warning("overdue_invoice_without_tenant", invoice_id=invoice_id)
                    return None

                logger.info("invoice_marked_overdue", invoice_id=invoice_id, tenant_id=tenant_id)
                return await self._apply_trigger(session, tenant, BillingTrigger.PAYMENT_OVERDUE)

    # Tenant status

    @staticmethod
    def _set_tenant_status(
        tenant: Tenant, status: str, reason: Optional[str], now: datetime
    ) -> None:
        if tenant.status == status:
            return
        tenant.status = status
        tenant.status_reason = reason
        tenant.status_changed_at = now
        if status == "suspended":
            logger.warning("tenant_suspended", tenant_id=tenant.id, reason=reason)
        else:
            logger.info("tenant_status_changed", tenant_id=tenant.id, status=status)

    async def suspend_tenant(self, tenant_id: str, reason: str) -> None:
        """
        Suspend a tenant.

        Raises:
            TenantNotFoundError: If the tenant does not exist
        """
        async with self.session_factory() as session:
            async with session.begin():
                tenant = await session.get(Tenant, tenant_id, with_for_update=True)
                if tenant is None:
                    raise TenantNotFoundError(f"Tenant {tenant_id} not found")
                self._set_tenant_status(tenant, "suspended", reason, utcnow())

    async def reactivate_tenant(self, tenant_id: str) -> None:
        """
        Reactivate a suspended tenant.

        Raises:
            TenantNotFoundError: If the tenant does not exist
        """
        async with self.session_factory() as session:
            async with session.begin():
                tenant = await session.get(Tenant, tenant_id, with_for_update=True)
                if tenant is None:
                    raise TenantNotFoundError(f"Tenant {tenant_id} not found")
                self._set_tenant_status(tenant, "active", None, utcnow())

    # Refunds, status, cancellation

    async def refund_invoice_payment(
        self,
        invoice_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a paid invoice through the provider that collected it.

        A refund transaction log row is written whatever the outcome.

        Raises:
            InvoiceNotFoundError: If the invoice does not exist
            InvoiceStateError: If the invoice is unpaid or the amount is
                larger than what was paid
            UnknownProviderError: If the collecting provider is not registered
        """
        async with self.session_factory() as session:
            async with session.begin():
                invoice = await session.get(Invoice, invoice_id)
                if invoice is None:
                    raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")
                if invoice.status != "paid" or not invoice.provider or not invoice.external_payment_id:
                    raise InvoiceStateError("Only paid invoices can be refunded")
                if amount is not None:
                    amount = to_decimal(amount)
                    if amount <= 0 or amount > invoice.amount_paid:
                        raise InvoiceStateError("Refund amount must be positive and at most the amount paid")

                adapter = self.registry.require(invoice.provider)
                result = await adapter.refund(
                    RefundParams(
                        external_payment_id=invoice.external_payment_id,
                        currency=invoice.currency,
                        amount=amount,
                        reason=reason,
                        idempotency_key=f"refund:{invoice.id}:{amount if amount is not None else 'full'}",
                    )
                )

                session.add(
                    TransactionLog(
                        tenant_id=invoice.tenant_id,
                        invoice_id=invoice.id,
                        provider=adapter.name,
                        external_transaction_id=result.external_refund_id,
                        transaction_type="refund",
                        country=invoice.country,
                        currency=invoice.currency,
                        amount=amount if amount is not None else invoice.amount_paid,
                        status=result.status.value,
                        raw_response={
                            "id": result.id,
                            "external_payment_id": result.external_payment_id,
                            "amount": str(result.amount),
                            "status": result.status.value,
                        },
                        error_message=result.error,
                    )
                )

        logger.info(
            "refund_requested",
            invoice_id=invoice_id,
            provider=adapter.name,
            status=result.status.value,
        )
        return result

    async def get_payment_status(self, provider: str, external_payment_id: str) -> PaymentStatus:
        """
        Poll a provider for a payment's status.

        Raises:
            UnknownProviderError: If the provider is not registered
        """
        adapter = self.registry.require(provider)
        return await adapter.get_payment_status(external_payment_id)

    async def cancel_subscription(self, tenant_id: str) -> Transition:
        """
        Cancel a tenant's subscription.

        The provider-managed subscription is cancelled first when one
        exists and the adapter supports it.

        Raises:
            TenantNotFoundError: If the tenant or its subscription is missing
            UnsupportedCapabilityError: If the provider cannot cancel
            BillingError: If the provider refused the cancellation
        """
        async with self.session_factory() as session:
            async with session.begin():
                tenant = await session.get(Tenant, tenant_id)
                subscription = await session.scalar(
                    select(TenantSubscription).where(TenantSubscription.tenant_id == tenant_id)
                )
                if tenant is None or subscription is None:
                    raise TenantNotFoundError(f"No subscription for tenant {tenant_id}")

                if subscription.provider and subscription.external_subscription_id:
                    adapter = self.registry.require(subscription.provider)
                    if not isinstance(adapter, SubscriptionCapable):
                        raise UnsupportedCapabilityError(
                            f"{adapter.name} does not manage subscriptions"
                        )
                    if not await adapter.cancel_subscription(subscription.external_subscription_id):
                        raise BillingError(
                            "Provider refused to cancel the subscription",
                            "provider_cancel_failed",
                        )

                return await self._apply_trigger(
                    session, tenant, BillingTrigger.SUBSCRIPTION_CANCELLED
                )

    # Pricing

    async def get_pricing_plans(self, country: Optional[str] = None) -> List[Dict[str, Any]]:
        """Active plans, localized with the country's currency, price and tax."""
        async with self.session_factory() as session:
            plans = (
                await session.scalars(
                    select(PricingPlan)
                    .where(PricingPlan.is_active.is_(True))
                    .order_by(PricingPlan.sort_order, PricingPlan.code)
                )
            ).all()
            local_prices: Dict[str, Decimal] = {}
            mapping = None
            if country:
                country = normalize_country(country)
                mapping = self.selector.get_country_mapping(country)
                rows = await session.execute(
                    select(PlanLocalPrice.plan_id, PlanLocalPrice.local_price).where(
                        PlanLocalPrice.country == country
                    )
                )
                local_prices = {plan_id: price for plan_id, price in rows.all()}

        localized = []
        for plan in plans:
            entry: Dict[str, Any] = {
                "id": plan.id,
                "code": plan.code,
                "name": plan.name,
                "base_price": to_decimal(plan.base_price),
                "currency": plan.currency,
                "price": to_decimal(plan.base_price),
            }
            if mapping is not None:
                price = to_decimal(local_prices.get(plan.id, plan.base_price))
                tax = calculate_tax(price, mapping.tax_rate)
                entry.update(
                    currency=mapping.currency,
                    price=price,
                    tax_name=mapping.tax_name,
                    tax_rate=mapping.tax_rate,
                    tax_amount=tax,
                    total=price + tax,
                )
            localized.append(entry)
        return localized
