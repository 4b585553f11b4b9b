from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, field_validator

from leadsense.lifecycle import ALL_STATUSES


EmailType = Literal["initial_outreach", "follow_up", "quote_follow_up", "thank_you", "custom"]
Tone = Literal["professional", "friendly", "urgent"]


class FollowUpResultOut(BaseModel):
    lead_id: int
    email: str
    follow_up_number: Optional[int] = None
    email_sent: Optional[bool] = None
    sms_sent: Optional[bool] = None
    sms_attempted: Optional[bool] = None
    new_status: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


class FollowUpBatchOut(BaseModel):
    success: bool
    processed: int
    results: List[FollowUpResultOut]
    cancelled: bool = False


class EmailGenerationIn(BaseModel):
    lead_id: int
    email_type: EmailType
    tone: Tone = "professional"


class ProviderFailureOut(BaseModel):
    provider: str
    error: str
    kind: str
    attempts: int = 0


class EmailGenerationOut(BaseModel):
    success: bool = True
    lead_id: int
    subject: str
    body: str
    email_type: EmailType
    provider_used: str
    total_attempts: int
    failed_attempts: List[ProviderFailureOut] = []
    generated_at: datetime


class QuoteIn(BaseModel):
    lead_id: int


class QuotePricingOut(BaseModel):
    standard_rate: int
    discount_rate: int
    savings: int
    early_bird_deadline: datetime
    early_bird_applicable: bool


class QuoteOut(BaseModel):
    success: bool = True
    lead_id: int
    status: str
    quote: QuotePricingOut
    subject: str
    email_sent: bool
    sms_sent: bool
    provider_used: Optional[str] = None
    used_fallback: bool = False


class RecommendationOut(BaseModel):
    lead_id: int
    type: str
    message: str


class LeadAnalysisOut(BaseModel):
    total_leads: int
    new_leads: int
    needs_follow_up: int
    stale_leads: int
    converted: int
    recommendations: List[RecommendationOut]


class StatusChangeIn(BaseModel):
    status: str
    reason: Optional[str] = None

    @field_validator("status")
    @classmethod
    def known_status(cls, value: str) -> str:
        if value not in ALL_STATUSES:
            raise ValueError(f"Unknown lead status: {value}")
        return value


class LeadOut(BaseModel):
    id: int
    status: str
    director_email: EmailStr
    director_first_name: str
    director_last_name: str
    follow_up_count: int
    reply_detected: bool
    last_communication_date: Optional[datetime] = None
    updated_at: datetime


class ErrorOut(BaseModel):
    success: bool = False
    error: str
    error_type: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
