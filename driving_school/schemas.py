from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from driving_school.models import PaymentStatus, Role, StudentStatus


def envelope(data: Any = None, message: Optional[str] = None) -> dict:
    body: dict = {"status": "success"}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


class ApiModel(BaseModel):
    """Request/response models exchanged with the SPA use camelCase keys."""

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    @classmethod
    def serialize(cls, obj: Any) -> dict:
        return cls.model_validate(obj).model_dump(mode="json", by_alias=True)


# ---------- Auth ----------
class LoginRequest(ApiModel):
    email: EmailStr
    password: str = Field(min_length=6)


class ViewerLoginRequest(ApiModel):
    student_code: str = Field(min_length=1)


class RefreshRequest(ApiModel):
    refresh_token: str = Field(min_length=1)


class RegisterRequest(ApiModel):
    email: EmailStr
    password: str = Field(min_length=6)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Role = Role.STAFF

    @field_validator("role")
    @classmethod
    def staff_roles_only(cls, value: Role) -> Role:
        if value == Role.VIEWER:
            raise ValueError("role must be admin or staff")
        return value


class ChangePasswordRequest(ApiModel):
    current_password: str
    new_password: str = Field(min_length=6)


class UserOut(ApiModel):
    id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Role
    is_active: bool = True


class UserStatusUpdate(ApiModel):
    is_active: bool


# ---------- Students ----------
class StudentCreate(ApiModel):
    student_code: Optional[str] = Field(default=None, max_length=20)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: str = Field(min_length=1, max_length=20)
    course_type: str = "standard"
    status: StudentStatus = StudentStatus.ACTIVE
    enrollment_date: Optional[date] = None
    notes: Optional[str] = None


class StudentUpdate(ApiModel):
    student_code: Optional[str] = Field(default=None, max_length=20)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, min_length=1, max_length=20)
    course_type: Optional[str] = None
    status: Optional[StudentStatus] = None
    enrollment_date: Optional[date] = None
    notes: Optional[str] = None


class StudentOut(ApiModel):
    id: int
    student_code: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: str
    course_type: str
    status: StudentStatus
    enrollment_date: Optional[date] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


# ---------- Payments ----------
class PaymentInitiate(ApiModel):
    student_id: int
    amount: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    currency: str = Field(default="NGN", min_length=3, max_length=3)
    description: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return value.upper()


class PaymentOut(ApiModel):
    id: int
    student_id: int
    amount: Decimal
    currency: str
    status: PaymentStatus
    reference: str
    flutterwave_ref: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_link: Optional[str] = None
    description: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class PaymentSummary(ApiModel):
    total: int
    paid: int
    pending: int
    failed: int
    total_paid: Decimal
    total_pending: Decimal


# Provider webhook payloads keep the provider's snake_case keys.
class WebhookData(BaseModel):
    id: Optional[int] = None
    tx_ref: str
    flw_ref: Optional[str] = None
    status: str


class WebhookEvent(BaseModel):
    event: str
    data: Optional[WebhookData] = None


# ---------- Dashboard ----------
class DashboardStats(ApiModel):
    total_students: int
    active_students: int
    pending_payments: int
