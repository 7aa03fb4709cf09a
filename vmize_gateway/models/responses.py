"""
Request and response models for the public and admin API.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from vmize_gateway.models.plans import Plan


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(..., examples=["healthy"], description="Service health status")
    timestamp: str = Field(..., examples=["2026-01-15T10:30:00+00:00"], description="ISO timestamp")


class TryOnSubmitResponse(BaseModel):
    id: Optional[str] = Field(None, description="Provider job id, used to poll status")
    status: str = Field(..., examples=["processing"])
    result_url: Optional[str] = Field(None, alias="resultUrl")

    model_config = {"populate_by_name": True}


class TryOnStatusResponse(BaseModel):
    id: str
    status: str = Field(..., examples=["completed"])
    result_url: Optional[str] = Field(None, alias="resultUrl")
    error: Optional[str] = None

    model_config = {"populate_by_name": True}


class UsageResponse(BaseModel):
    plan: str
    used: int
    limit: int
    remaining: int
    percent_used: float = Field(..., alias="percentUsed")
    over_limit: bool = Field(False, alias="overLimit")
    api_calls: int = Field(0, alias="apiCalls")
    last_reset: Optional[str] = Field(None, alias="lastReset")
    history: Dict[str, int] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


class GenerateKeyRequest(BaseModel):
    email: str = Field(..., max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    name: Optional[str] = Field(None, max_length=255)
    plan: Plan = Plan.STARTER
    company_name: Optional[str] = Field(None, alias="companyName", max_length=255)
    stripe_customer_id: Optional[str] = Field(None, alias="stripeCustomerId", max_length=255)

    model_config = {"populate_by_name": True}


class GenerateKeyResponse(BaseModel):
    """Returned only on creation; includes the full key (shown once)."""
    api_key: str = Field(..., alias="apiKey", description="Full API key. Store securely; shown only once")
    customer_id: str = Field(..., alias="customerId")
    plan: str
    limit: int

    model_config = {"populate_by_name": True}


class RevokeKeyRequest(BaseModel):
    api_key: str = Field(..., alias="apiKey", min_length=1)

    model_config = {"populate_by_name": True}


class RevokeKeyResponse(BaseModel):
    success: bool = True
    customer_id: str = Field(..., alias="customerId")
    status: str

    model_config = {"populate_by_name": True}


class TrackEventRequest(BaseModel):
    event: str = Field(..., min_length=1, max_length=100)
    customer_id: Optional[str] = Field(None, alias="customerId")
    product_id: Optional[str] = Field(None, alias="productId")
    revenue: Optional[float] = Field(None, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


class UpsellOpportunity(BaseModel):
    customer_id: str = Field(..., alias="customerId")
    email: str
    name: Optional[str] = None
    plan: str
    used: int
    limit: int
    percent_used: float = Field(..., alias="percentUsed")
    recommended_plan: str = Field(..., alias="recommendedPlan")
    recommended_plan_limit: int = Field(..., alias="recommendedPlanLimit")
    recommended_plan_price: int = Field(..., alias="recommendedPlanPrice")

    model_config = {"populate_by_name": True}


class UpsellResponse(BaseModel):
    opportunities: List[UpsellOpportunity]
    count: int
