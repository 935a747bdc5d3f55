"""Billing domain schemas - subscription plans and dispute evidence"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Camel case request fields mapped onto Stripe's evidence keys
EVIDENCE_FIELDS = {
    "customerName": "customer_name",
    "customerEmailAddress": "customer_email_address",
    "billingAddress": "billing_address",
    "serviceDate": "service_date",
    "productDescription": "product_description",
    "customerSignature": "customer_signature",
    "customerPurchaseIp": "customer_purchase_ip",
    "customerCommunication": "customer_communication",
    "uncategorizedText": "uncategorized_text",
}


class PlanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ulid: str
    name: str
    description: Optional[str] = None
    amount: int
    currency: str
    interval: str
    stripe_price_id: Optional[str] = None
    features: list[Any] = []


class DisputeEvidence(BaseModel):
    customerName: Optional[str] = None
    customerEmailAddress: Optional[str] = None
    billingAddress: Optional[str] = None
    serviceDate: Optional[str] = None
    productDescription: Optional[str] = None
    customerSignature: Optional[str] = None
    customerPurchaseIp: Optional[str] = None
    customerCommunication: Optional[str] = None
    uncategorizedText: Optional[str] = None

    @field_validator("*")
    @classmethod
    def strip_blank(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    def to_stripe(self) -> dict[str, str]:
        """Stripe evidence payload, omitting fields that were not provided"""
        return {
            stripe_key: getattr(self, field)
            for field, stripe_key in EVIDENCE_FIELDS.items()
            if getattr(self, field) is not None
        }


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ulid: str
    stripe_dispute_id: str
    stripe_payment_intent_id: Optional[str] = None
    session_ulid: Optional[str] = None
    amount: int
    currency: str
    status: str
    reason: Optional[str] = None
    evidence_due_by: Optional[datetime] = None
    evidence: Optional[dict[str, Any]] = None
    stripe_refund_id: Optional[str] = None
    created_at: Optional[datetime] = None


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)  # cents, defaults to the disputed amount
