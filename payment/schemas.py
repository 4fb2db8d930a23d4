# src/payment/schemas.py
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional


class PaymentCreateRequest(BaseModel):
    """Schema for starting a checkout."""
    subject_id: int
    plan: str
    amount: int = Field(gt=0)
    phone: str


class PaymentCreateResponse(BaseModel):
    """Schema for checkout creation response."""
    checkout_url: str
    merchant_reference: str


class PaymentStatusResponse(BaseModel):
    merchant_reference: str
    status: str  # pending, success, cancelled, failed


class WebhookPayload(BaseModel):
    """Pesapal IPN fields, plus the nested {data: {...}} shape some callbacks use."""
    OrderMerchantReference: Optional[str] = None
    OrderTrackingId: Optional[str] = None
    OrderNotificationType: Optional[str] = None
    PaymentStatusDescription: Optional[str] = None
    data: Optional[dict] = None

    def merchant_reference(self) -> Optional[str]:
        if self.OrderMerchantReference:
            return self.OrderMerchantReference
        if self.data:
            return self.data.get("merchant_reference")
        return None

    def tracking_id(self) -> Optional[str]:
        if self.OrderTrackingId:
            return self.OrderTrackingId
        if self.data:
            return self.data.get("order_tracking_id")
        return None

    def status(self) -> Optional[str]:
        if self.PaymentStatusDescription:
            return self.PaymentStatusDescription
        if self.data:
            return self.data.get("status")
        return None


class WebhookAck(BaseModel):
    orderNotificationType: str = "IPNCHANGE"
    orderTrackingId: Optional[str] = None
    orderMerchantReference: Optional[str] = None
    status: int = 200
    received: bool = True
    known: bool = True
    outcome: Optional[str] = None


class PaymentResponse(BaseModel):
    """Schema for payment response."""
    id: int
    merchant_reference: str
    provider_tracking_id: Optional[str]
    subject_id: int
    plan_name: str
    amount: int
    currency: str
    method: str
    status: str
    provider_status: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True
