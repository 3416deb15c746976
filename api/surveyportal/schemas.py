from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, EmailStr, Field, field_validator

QuestionType = Literal["MULTI_SINGLE", "MULTI_MULTI", "YES_NO", "RATING_5", "PARAGRAPH"]
AdminRole = Literal["FULL", "VIEW_ONLY"]


def _aware_utc(value):
    # an offset-less schedule is read as UTC
    if value is None:
        return value
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    name: str = Field(min_length=1)

class LoginRequest(BaseModel):
    email: str
    password: str
    code: Optional[str] = None

class EmailOnly(BaseModel):
    email: EmailStr

class InviteCreate(BaseModel):
    email: EmailStr
    name: str = Field(min_length=1)
    role: AdminRole = "VIEW_ONLY"

class AcceptInvite(BaseModel):
    token: str
    password: str = Field(min_length=8)

class ResetPassword(BaseModel):
    token: str
    password: str

class TargetAdmin(BaseModel):
    admin_id: int

class AdminUpdate(BaseModel):
    role: Optional[AdminRole] = None
    two_factor: Optional[bool] = None
    code: Optional[str] = None

class ShowWhen(BaseModel):
    triggerOrder: int = Field(ge=0)
    operator: Literal["equals", "contains"] = "equals"
    value: str

class QuestionCreate(BaseModel):
    text: str = Field(min_length=1)
    type: QuestionType
    options: Optional[List[str]] = None
    order: Optional[int] = None
    required: bool = False
    show_when: Optional[ShowWhen] = None
    max_selections: Optional[int] = Field(default=None, gt=0)
    write_in: bool = False
    write_in_count: int = Field(default=0, ge=0, le=10)

class SurveyCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    opens_at: datetime
    closes_at: datetime
    member_list_id: int
    min_responses: Optional[int] = Field(default=None, ge=0)
    min_responses_all: bool = False
    notify_on_min_responses: bool = False
    questions: List[QuestionCreate] = []

    @field_validator("opens_at", "closes_at")
    @classmethod
    def utc_schedule(cls, value):
        return _aware_utc(value)

class SurveyUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    opens_at: Optional[datetime] = None
    closes_at: Optional[datetime] = None
    member_list_id: Optional[int] = None
    min_responses: Optional[int] = Field(default=None, ge=0)
    min_responses_all: Optional[bool] = None
    notify_on_min_responses: Optional[bool] = None
    questions: Optional[List[QuestionCreate]] = None

    @field_validator("opens_at", "closes_at")
    @classmethod
    def utc_schedule(cls, value):
        return _aware_utc(value)

class AnswersSubmit(BaseModel):
    answers: Dict[str, Any] = {}

class MemberListRename(BaseModel):
    name: str

class MemberCreate(BaseModel):
    lot: str = Field(min_length=1)
    name: str = Field(min_length=1)
    email: EmailStr
    address: str = ""

class MemberUpdate(BaseModel):
    lot: Optional[str] = None
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[str] = None
