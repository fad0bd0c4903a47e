from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, EmailStr, Field, StringConstraints

NonBlank = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Longitude = Annotated[float, Field(ge=-180, le=180)]
Latitude = Annotated[float, Field(ge=-90, le=90)]


class ChatIn(BaseModel):
    session_id: NonBlank
    message: NonBlank
    sender: Literal["user", "assistant"] = "user"


class ChatOut(BaseModel):
    session_id: str
    score_delta: int
    status: str
    intent_score: int
    matched_keywords: List[str]
    membership_prompt: Optional[Dict[str, Any]] = None


class EmailSignupIn(BaseModel):
    session_id: NonBlank
    email: EmailStr


class EmailSignupOut(BaseModel):
    lead_status: str
    intent_score: int
    email_scheduled: bool
    reason: Optional[str] = None


class ScheduleEntryOut(BaseModel):
    type: str
    scheduled_for: datetime
    sent: bool
    sent_at: Optional[datetime] = None
    retry_count: int = 0
    state: str  # "pending" | "sent" | "failed"


class EmailScheduleOut(BaseModel):
    has_email: bool
    email: Optional[str] = None
    followup_scheduled: bool
    schedules: List[ScheduleEntryOut]


class CancelOut(BaseModel):
    cancelled_count: int


class LeadOut(BaseModel):
    id: int
    session_id: str
    intent_score: int
    status: str
    total_interactions: int
    email: Optional[str] = None
    followup_scheduled: bool
    membership_prompted: bool
    last_interaction: datetime
    location: Optional[Dict[str, Any]] = None


class PersonalizationOut(BaseModel):
    greeting: str
    interests: List[str]
    business_needs: List[str]
    urgency: str
    role: Optional[str] = None
    pain_points: List[str]
    recommendations: List[str]
    next_actions: List[str]
    tone: str


class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: Tuple[Longitude, Latitude]


class LocationIn(BaseModel):
    session_id: NonBlank
    location: GeoPoint


class LocationOut(BaseModel):
    message: str
    coordinates: List[float]
