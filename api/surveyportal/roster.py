import csv
import io
import logging
import re

from pydantic import EmailStr, TypeAdapter, ValidationError
from sqlalchemy import func
from sqlmodel import Session, select

from .errors import ValidationFailed
from .encryption import decrypt_value
from .lifecycle import seed_response
from .models import Member, MemberListLink, Response, Survey
from .utils import utcnow

logger = logging.getLogger(__name__)

EMAIL_ADAPTER = TypeAdapter(EmailStr)
CSV_FIELDS = ("lot", "name", "email", "address")


def is_valid_email(value: str) -> bool:
    try:
        EMAIL_ADAPTER.validate_python(value)
    except ValidationError:
        return False
    return True


def lot_sort_key(lot: str):
    digits = re.match(r"\d+", lot or "")
    if digits:
        return (0, int(digits.group()), lot)
    return (1, 0, lot or "")


def member_ids(session: Session, member_list_id: int) -> list[int]:
    return session.exec(
        select(MemberListLink.member_id).where(MemberListLink.member_list_id == member_list_id)
    ).all()


def list_members(session: Session, member_list_id: int) -> list[Member]:
    ids = member_ids(session, member_list_id)
    if not ids:
        return []
    members = session.exec(select(Member).where(Member.id.in_(ids))).all()
    return sorted(members, key=lambda m: lot_sort_key(decrypt_value(m.lot)))


def membership_count(session: Session, member_id: int) -> int:
    return session.exec(
        select(func.count()).select_from(MemberListLink).where(MemberListLink.member_id == member_id)
    ).one()


def seed_survey_responses(session: Session, survey: Survey) -> int:
    # does not commit
    existing = set(session.exec(select(Response.member_id).where(Response.survey_id == survey.id)).all())
    seeded = 0
    for member_id in member_ids(session, survey.member_list_id):
        if member_id in existing:
            continue
        seed_response(session, survey.id, member_id)
        seeded += 1
    return seeded


def sync_min_responses(session: Session, member_list_id: int):
    count = len(member_ids(session, member_list_id))
    surveys = session.exec(
        select(Survey).where(Survey.member_list_id == member_list_id, Survey.min_responses_all == True)  # noqa: E712
    ).all()
    for survey in surveys:
        survey.min_responses = count
        session.add(survey)


def open_surveys(session: Session, member_list_id: int) -> list[Survey]:
    return session.exec(
        select(Survey).where(Survey.member_list_id == member_list_id, Survey.closes_at > utcnow())
    ).all()


def parse_member_csv(raw: bytes) -> list[dict]:
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise ValidationFailed("CSV file must be UTF-8 encoded")
    reader = csv.DictReader(io.StringIO(text))
    headers = {(h or "").strip().lower() for h in (reader.fieldnames or [])}
    missing = [f for f in ("lot", "name", "email") if f not in headers]
    if missing:
        raise ValidationFailed(f"CSV is missing column(s): {', '.join(missing)}")
    rows = []
    for raw_row in reader:
        row = {(k or "").strip().lower(): (v or "").strip() for k, v in raw_row.items() if k is not None}
        if not any(row.get(f) for f in CSV_FIELDS):
            continue
        rows.append({f: row.get(f, "") for f in CSV_FIELDS})
    invalid = [r for r in rows if r["email"] and not is_valid_email(r["email"])]
    if invalid:
        raise ValidationFailed(f"Invalid email format detected: found {len(invalid)} invalid email(s). Please check your CSV file.")
    logger.info("parsed %s members from csv", len(rows))
    return rows
