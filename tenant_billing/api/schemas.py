"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class CreateSubscriptionPaymentRequest(BaseModel):
    """Request schema for starting a subscription payment."""

    tenant_id: str = Field(..., min_length=1, description="Tenant identifier")
    plan_code: str = Field(..., min_length=1, description="Pricing plan code")

    model_config = {
        "json_schema_extra": {
            "examples": [{"tenant_id": "b3c9a1e2d4f5", "plan_code": "growth"}]
        }
    }


class PaymentCreationResponse(BaseModel):
    """Response schema for payment creation and retries."""

    success: bool = Field(..., description="Whether a payment was started")
    payment_url: Optional[str] = Field(
        default=None, description="Hosted checkout URL or client secret"
    )
    invoice_id: Optional[str] = Field(default=None, description="Invoice ID")
    provider: Optional[str] = Field(default=None, description="Gateway used")
    payment_intent_id: Optional[str] = Field(default=None, description="Provider payment ID")
    error: Optional[str] = Field(default=None, description="Error message")
    error_code: Optional[str] = Field(default=None, description="Machine-readable error code")


class RefundRequest(BaseModel):
    """Request schema for refunding an invoice."""

    amount: Optional[Decimal] = Field(
        default=None, gt=0, description="Partial refund amount (full refund if not specified)"
    )
    reason: Optional[str] = Field(
        default=None, description="Refund reason (requested_by_customer, duplicate, fraudulent)"
    )

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if v else None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"amount": "250.00", "reason": "requested_by_customer"},
                {"reason": "duplicate"},
            ]
        }
    }


class RefundResponse(BaseModel):
    """Response schema for refund."""

    invoice_id: str = Field(..., description="Invoice ID")
    refund_id: str = Field(..., description="Refund ID")
    external_refund_id: Optional[str] = Field(default=None, description="Provider refund ID")
    status: str = Field(..., description="Refund status")
    amount: Decimal = Field(..., description="Refunded amount")
    error: Optional[str] = Field(default=None, description="Error message if failed")


class PaymentStatusResponse(BaseModel):
    """Response schema for a provider payment status poll."""

    provider: str = Field(..., description="Gateway name")
    external_payment_id: str = Field(..., description="Provider payment ID")
    status: str = Field(..., description="Payment state")
    amount: Decimal = Field(..., description="Payment amount")
    currency: str = Field(..., description="Currency code")
    paid_at: Optional[datetime] = Field(default=None, description="Settlement time")
    error_code: Optional[str] = Field(default=None, description="Provider error code")
    error_message: Optional[str] = Field(default=None, description="Provider error message")


class CancelSubscriptionResponse(BaseModel):
    """Response schema for subscription cancellation."""

    tenant_id: str = Field(..., description="Tenant identifier")
    status: str = Field(..., description="Subscription status after cancellation")


class PricingPlanResponse(BaseModel):
    """A plan, localized for a billing country when one is given."""

    id: str
    code: str
    name: str
    base_price: Decimal
    currency: str
    price: Decimal
    tax_name: Optional[str] = None
    tax_rate: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    total: Optional[Decimal] = None


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    event_id: Optional[str] = Field(default=None, description="Provider event ID")
    message: Optional[str] = Field(default=None, description="Status message")


class RevenueStatsResponse(BaseModel):
    """Response schema for the revenue report."""

    total_revenue: Decimal
    monthly_revenue: Decimal
    last_month_revenue: Decimal
    mrr: Decimal
    revenue_change: int = Field(..., description="Month-over-month change in percent")
    active_subscriptions: int
    pending_invoices: int
    revenue_by_country: Dict[str, Decimal]
    revenue_by_provider: Dict[str, Decimal]
    revenue_by_business_type: Dict[str, Decimal]
    subscriptions_by_business_type: Dict[str, int]


class SweepResponse(BaseModel):
    """Response schema for a manual overdue sweep."""

    scanned: int
    marked_overdue: int
    suspended_tenants: List[str]
    skipped: bool


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    """Error body for billing errors."""

    error: str
    error_code: Optional[str] = None
