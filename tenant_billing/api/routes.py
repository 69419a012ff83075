"""
API routes for tenant billing.
"""
import json
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from tenant_billing.core.context import BillingContext
from tenant_billing.core.orchestrator import PaymentCreationResult, WebhookStatus
from tenant_billing.workers.overdue_sweep import OverdueSweep

from .schemas import (
    CancelSubscriptionResponse,
    CreateSubscriptionPaymentRequest,
    HealthCheckResponse,
    PaymentCreationResponse,
    PaymentStatusResponse,
    PricingPlanResponse,
    RefundRequest,
    RefundResponse,
    RevenueStatsResponse,
    SweepResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
billing_router = APIRouter(prefix="/billing", tags=["billing"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

ERROR_STATUS_CODES: Dict[str, int] = {
    "tenant_not_found": status.HTTP_404_NOT_FOUND,
    "plan_not_found": status.HTTP_404_NOT_FOUND,
    "invoice_not_found": status.HTTP_404_NOT_FOUND,
    "unknown_provider": status.HTTP_404_NOT_FOUND,
    "payment_failed": status.HTTP_402_PAYMENT_REQUIRED,
    "invalid_invoice_state": status.HTTP_409_CONFLICT,
    "max_retries_exceeded": status.HTTP_409_CONFLICT,
    "unsupported_capability": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "no_gateway_available": status.HTTP_503_SERVICE_UNAVAILABLE,
    "country_not_configured": status.HTTP_503_SERVICE_UNAVAILABLE,
    "provider_cancel_failed": status.HTTP_502_BAD_GATEWAY,
}


def get_context(request: Request) -> BillingContext:
    """Billing context attached to the application."""
    return request.app.state.billing


def _creation_response(result: PaymentCreationResult, success_code: int) -> JSONResponse:
    status_code = success_code
    if not result.success:
        status_code = ERROR_STATUS_CODES.get(result.error_code or "", status.HTTP_400_BAD_REQUEST)
    body = PaymentCreationResponse(**asdict(result))
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@billing_router.post(
    "/subscriptions/payments",
    response_model=PaymentCreationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a subscription payment",
    description="Invoice a tenant for a plan and return the provider checkout URL",
)
async def create_subscription_payment(
    request: CreateSubscriptionPaymentRequest,
    context: BillingContext = Depends(get_context),
) -> JSONResponse:
    logger.info(
        "api_create_subscription_payment_request",
        tenant_id=request.tenant_id,
        plan_code=request.plan_code,
    )
    result = await context.orchestrator.create_subscription_payment(
        request.tenant_id, request.plan_code
    )
    return _creation_response(result, status.HTTP_201_CREATED)


@billing_router.post(
    "/invoices/{invoice_id}/retry",
    response_model=PaymentCreationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Retry an invoice payment",
)
async def retry_invoice_payment(
    invoice_id: str,
    context: BillingContext = Depends(get_context),
) -> JSONResponse:
    result = await context.orchestrator.retry_invoice_payment(invoice_id)
    return _creation_response(result, status.HTTP_201_CREATED)


@billing_router.post(
    "/invoices/{invoice_id}/refund",
    response_model=RefundResponse,
    summary="Refund an invoice",
    description="Create a full or partial refund through the collecting provider",
)
async def refund_invoice(
    invoice_id: str,
    request: RefundRequest,
    context: BillingContext = Depends(get_context),
) -> Dict[str, Any]:
    logger.info(
        "api_refund_request",
        invoice_id=invoice_id,
        amount=str(request.amount) if request.amount is not None else None,
        reason=request.reason,
    )
    result = await context.orchestrator.refund_invoice_payment(
        invoice_id, amount=request.amount, reason=request.reason
    )
    return {
        "invoice_id": invoice_id,
        "refund_id": result.id,
        "external_refund_id": result.external_refund_id,
        "status": result.status.value,
        "amount": result.amount,
        "error": result.error,
    }


@billing_router.get(
    "/payments/{provider}/{external_payment_id}",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Poll the provider for the current status of a payment",
)
async def get_payment_status(
    provider: str,
    external_payment_id: str,
    context: BillingContext = Depends(get_context),
) -> Dict[str, Any]:
    payment = await context.orchestrator.get_payment_status(provider, external_payment_id)
    return {
        "provider": provider.lower(),
        "external_payment_id": payment.external_payment_id,
        "status": payment.status.value,
        "amount": payment.amount,
        "currency": payment.currency,
        "paid_at": payment.paid_at,
        "error_code": payment.error_code,
        "error_message": payment.error_message,
    }


@billing_router.post(
    "/subscriptions/{tenant_id}/cancel",
    response_model=CancelSubscriptionResponse,
    summary="Cancel a subscription",
)
async def cancel_subscription(
    tenant_id: str,
    context: BillingContext = Depends(get_context),
) -> Dict[str, Any]:
    transition = await context.orchestrator.cancel_subscription(tenant_id)
    return {"tenant_id": tenant_id, "status": transition.status.value}


@billing_router.get(
    "/plans",
    response_model=List[PricingPlanResponse],
    summary="List pricing plans",
    description="Active plans, localized when a billing country is given",
)
async def list_pricing_plans(
    country: Optional[str] = None,
    context: BillingContext = Depends(get_context),
) -> List[Dict[str, Any]]:
    return await context.orchestrator.get_pricing_plans(country)


@webhook_router.post(
    "/{provider}",
    response_model=WebhookResponse,
    summary="Provider webhook endpoint",
    description="Verify and apply a provider webhook event exactly once",
)
async def provider_webhook(
    provider: str,
    request: Request,
    context: BillingContext = Depends(get_context),
) -> JSONResponse:
    """
    Handle a provider webhook.

    Every verified delivery is acknowledged with 200, including
    duplicates and events whose processing failed.
    """
    adapter = context.registry.get(provider.lower())
    if adapter is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown provider")

    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("api_webhook_malformed_body", provider=adapter.name)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed JSON body")

    result = await context.orchestrator.handle_webhook_event(
        adapter.name,
        payload,
        request.headers.get(adapter.signature_header),
        body,
    )

    if result.status == WebhookStatus.REJECTED:
        status_code = (
            status.HTTP_404_NOT_FOUND
            if result.error == "unknown_provider"
            else status.HTTP_401_UNAUTHORIZED
        )
        raise HTTPException(status_code=status_code, detail=result.error)

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=WebhookResponse(
            status=result.status.value,
            event_id=result.event_id,
            message=result.error,
        ).model_dump(mode="json"),
    )


@admin_router.get(
    "/reports/revenue",
    response_model=RevenueStatsResponse,
    summary="Revenue report",
)
async def revenue_report(context: BillingContext = Depends(get_context)) -> Dict[str, Any]:
    stats = await context.reporter.get_revenue_stats()
    return asdict(stats)


@admin_router.post(
    "/overdue-sweep",
    response_model=SweepResponse,
    summary="Run overdue sweep",
    description="Manually trigger one overdue invoice sweep",
)
async def run_overdue_sweep(context: BillingContext = Depends(get_context)) -> Dict[str, Any]:
    sweep = OverdueSweep(
        context.session_factory,
        context.orchestrator,
        context.redis,
        lock_ttl_seconds=context.settings.sweep_lock_ttl_seconds,
    )
    result = await sweep.run_once()
    logger.info("api_overdue_sweep_completed", marked_overdue=result.marked_overdue)
    return asdict(result)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(context: BillingContext = Depends(get_context)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await context.health.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(context: BillingContext = Depends(get_context)) -> Dict[str, Any]:
    return await context.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(context: BillingContext = Depends(get_context)) -> Dict[str, Any]:
    result = await context.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
