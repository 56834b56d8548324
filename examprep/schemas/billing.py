"""
Pydantic schemas for billing endpoints.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field


class CheckoutSessionRequest(BaseModel):
    """Request schema for creating checkout session."""
    plan_id: Optional[str] = Field(None, alias="planId", description="Plan id: 'monthly' or 'annual'")
    
    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "planId": "monthly"
            }
        }


class UrlResponse(BaseModel):
    """Hosted Stripe page to send the browser to."""
    url: str = Field(..., description="Stripe checkout or portal URL")
    
    class Config:
        json_schema_extra = {
            "example": {
                "url": "https://checkout.stripe.com/c/pay/cs_test_..."
            }
        }


class WebhookAck(BaseModel):
    received: bool = True


class PlanInfo(BaseModel):
    id: str
    name: str
    price: int = Field(..., description="Price in minor currency units")
    interval: Optional[str] = None
    exam_limit: int = Field(..., alias="examLimit", description="-1 means unlimited")
    price_id: Optional[str] = Field(None, alias="priceId", description="Stripe price, once provisioned")
    
    class Config:
        populate_by_name = True


class SubscriptionResponse(BaseModel):
    """Current subscription of the authenticated user."""
    tier: str
    status: str
    current_period_end: Optional[datetime] = Field(None, alias="currentPeriodEnd")
    has_customer: bool = Field(..., alias="hasCustomer")
    plans: List[PlanInfo]
    
    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "tier": "monthly",
                "status": "active",
                "currentPeriodEnd": "2026-11-17T12:00:00",
                "hasCustomer": True,
                "plans": [
                    {"id": "free", "name": "Gratuito", "price": 0, "interval": None, "examLimit": 1},
                ]
            }
        }


class BillingErrorResponse(BaseModel):
    """Error response schema for billing operations."""
    detail: str = Field(..., description="Generic error message")
