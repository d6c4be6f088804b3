from pydantic import BaseModel, EmailStr, Field, ConfigDict, field_validator
from typing import Optional, Literal
from datetime import datetime
from enum import Enum

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class TrialStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CONVERTED = "converted"
    CANCELLED = "cancelled"

class FollowUpType(str, Enum):
    CALL = "call"
    EMAIL = "email"
    MEETING = "meeting"
    OTHER = "other"

class QuoteStatus(str, Enum):
    PENDING = "pending"
    CONTACTED = "contacted"
    QUOTED = "quoted"
    CONVERTED = "converted"
    CLOSED = "closed"

class CompanyType(str, Enum):
    GOVERNMENT = "government"
    PARK = "park"  # Industrial park operator
    ENTERPRISE = "enterprise"  # Key discharge enterprise
    CONSULTANT = "consultant"
    OTHER = "other"

class UserRole(str, Enum):
    ROLE_ADMIN = "ROLE_ADMIN"


# Mainland China mobile numbers
PHONE_PATTERN = r"^1[3-9]\d{9}$"

UserCount = Literal["1-10", "11-50", "51-100", "100+", ""]


# ============================================================================
# INTAKE REQUESTS (public forms)
# ============================================================================

class TrialCreateRequest(BaseModel):
    """Public "request a trial" form."""
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    company_name: str = Field(..., min_length=2, max_length=100)
    contact_name: str = Field(..., min_length=2, max_length=50)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    email: EmailStr
    source: Optional[str] = None

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.lower()


class QuoteCreateRequest(BaseModel):
    """Public "request a quote" form."""
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    company_name: str = Field(..., min_length=2, max_length=100)
    contact_name: str = Field(..., min_length=2, max_length=50)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    email: Optional[EmailStr] = None
    company_type: CompanyType
    user_count: UserCount = ""
    requirements: Optional[str] = Field(None, max_length=1000)

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_is_none(cls, v):
        # The form posts "" when the optional email is left empty
        if isinstance(v, str) and not v.strip():
            return None
        return v.lower() if isinstance(v, str) else v


# ============================================================================
# ADMIN REQUESTS
# ============================================================================

class FeedbackUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    rating: Optional[int] = Field(None, ge=1, le=5)
    comments: Optional[str] = Field(None, max_length=1000)
    submitted_at: Optional[datetime] = None


class TrialUpdateRequest(BaseModel):
    status: Optional[TrialStatus] = None
    feedback: Optional[FeedbackUpdate] = None


class TrialExtendRequest(BaseModel):
    days: int = Field(30, ge=1)


class TrialConvertRequest(BaseModel):
    quote_id: Optional[str] = None


class FollowUpCreateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    type: FollowUpType
    content: str = Field(..., min_length=1)
    contacted_by: str = Field(..., min_length=1)
    scheduled_at: Optional[datetime] = None


class QuoteUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    status: Optional[QuoteStatus] = None
    assigned_to: Optional[str] = None
    notes: Optional[str] = None
    quoted_price: Optional[float] = Field(None, ge=0)


class AdminLoginRequest(BaseModel):
    email: EmailStr
    password: str
