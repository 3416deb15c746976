from typing import Optional
from datetime import datetime
from sqlmodel import SQLModel, Field as ORMField
from .utils import utcnow

class Admin(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    email: str = ORMField(index=True, unique=True)
    name: str = ""
    password_hash: str = ""  # empty until an invite or reset is completed
    role: str = "VIEW_ONLY"  # FULL|VIEW_ONLY|LIMITED
    two_factor: bool = False
    secret_2fa: Optional[str] = None
    invited_by_id: Optional[int] = ORMField(default=None, index=True)
    invite_token: Optional[str] = ORMField(default=None, index=True)
    invite_expires: Optional[datetime] = None
    reset_token: Optional[str] = ORMField(default=None, index=True)
    reset_token_expires: Optional[datetime] = None
    created_at: datetime = ORMField(default_factory=utcnow)

class MemberList(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    name: str
    created_at: datetime = ORMField(default_factory=utcnow)

class Member(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    lot: str
    name: str
    email: str
    address: str = ""
    created_at: datetime = ORMField(default_factory=utcnow)

class MemberListLink(SQLModel, table=True):
    member_list_id: int = ORMField(primary_key=True)
    member_id: int = ORMField(primary_key=True)

class Survey(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    title: str
    description: str = ""
    opens_at: datetime
    closes_at: datetime
    member_list_id: int = ORMField(index=True)
    created_by_id: Optional[int] = None
    initial_sent_at: Optional[datetime] = None
    min_responses: Optional[int] = None
    min_responses_all: bool = False
    notify_on_min_responses: bool = False
    minimal_notified_at: Optional[datetime] = None
    created_at: datetime = ORMField(default_factory=utcnow)

class Question(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    survey_id: int = ORMField(index=True)
    text: str
    type: str  # MULTI_SINGLE|MULTI_MULTI|YES_NO|RATING_5|PARAGRAPH
    options: Optional[str] = None  # json list
    order: int = 0
    required: bool = False
    show_when: Optional[str] = None  # json {triggerOrder, operator, value}
    max_selections: Optional[int] = None
    write_in: bool = False  # MULTI_SINGLE free-text "other"
    write_in_count: int = 0  # MULTI_MULTI free-text slots

class Response(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    survey_id: int = ORMField(index=True)
    member_id: int = ORMField(index=True)
    token: str = ORMField(index=True, unique=True)
    submitted_at: Optional[datetime] = None
    signature_token: Optional[str] = None
    signed: bool = False
    signed_at: Optional[datetime] = None

class Answer(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    response_id: int = ORMField(index=True)
    question_id: int
    value: str

class Reminder(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    survey_id: int = ORMField(index=True)
    member_id: int
    sent_at: datetime = ORMField(default_factory=utcnow)
    reminder_num: int = 1

class VerificationToken(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    token: str = ORMField(index=True, unique=True)
    email: str
    purpose: str = "verify-email"
    expires_at: datetime
