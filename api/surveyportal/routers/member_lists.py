import logging
from typing import Optional
from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from sqlalchemy import func
from sqlmodel import Session, select

from ..auth import AdminContext, require_full_access, resolve_admin_context
from ..db import get_session
from ..encryption import encrypt_member_fields, member_contact
from ..errors import Conflict, NotFound, ValidationFailed
from ..lifecycle import discard_response, seed_response
from ..models import Member, MemberList, MemberListLink, Reminder, Response, Survey
from ..roster import (
    list_members,
    member_ids,
    membership_count,
    open_surveys,
    parse_member_csv,
    sync_min_responses,
)
from ..schemas import MemberCreate, MemberListRename, MemberUpdate

logger = logging.getLogger(__name__)

router = APIRouter()


def _serialize_member(member: Member):
    return {"id": member.id, **member_contact(member)}


def _serialize_list(session: Session, member_list: MemberList):
    survey_count = session.exec(
        select(func.count()).select_from(Survey).where(Survey.member_list_id == member_list.id)
    ).one()
    return {
        "id": member_list.id,
        "name": member_list.name,
        "created_at": member_list.created_at,
        "member_count": len(member_ids(session, member_list.id)),
        "survey_count": survey_count,
    }


def _get_list(session: Session, list_id: int) -> MemberList:
    member_list = session.get(MemberList, list_id)
    if not member_list:
        raise NotFound("Member list not found")
    return member_list


def _get_listed_member(session: Session, list_id: int, member_id: int) -> Member:
    link = session.get(MemberListLink, (list_id, member_id))
    member = session.get(Member, member_id)
    if not link or not member:
        raise NotFound("Member not found")
    return member


def _has_responses(session: Session, member_id: int) -> bool:
    return session.exec(select(Response.id).where(Response.member_id == member_id)).first() is not None


@router.get("")
def list_member_lists(session: Session = Depends(get_session), ctx=Depends(resolve_admin_context)):
    lists = session.exec(select(MemberList).order_by(MemberList.created_at.desc(), MemberList.id.desc())).all()
    return [_serialize_list(session, ml) for ml in lists]


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_member_list(
    name: str = Form(...),
    csv: Optional[UploadFile] = File(None),
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    if not name.strip():
        raise ValidationFailed("Name is required")
    rows = parse_member_csv(await csv.read()) if csv is not None else []
    member_list = MemberList(name=name.strip())
    session.add(member_list)
    session.flush()
    for row in rows:
        member = Member(**encrypt_member_fields(row))
        session.add(member)
        session.flush()
        session.add(MemberListLink(member_list_id=member_list.id, member_id=member.id))
    session.commit()
    session.refresh(member_list)
    logger.info("admin %s created member list %s with %s members", ctx.admin_id, member_list.id, len(rows))
    return _serialize_list(session, member_list)


@router.get("/{list_id}")
def get_member_list(list_id: int, session: Session = Depends(get_session), ctx=Depends(resolve_admin_context)):
    member_list = _get_list(session, list_id)
    return {
        **_serialize_list(session, member_list),
        "members": [_serialize_member(m) for m in list_members(session, list_id)],
    }


@router.put("/{list_id}")
def rename_member_list(
    list_id: int,
    body: MemberListRename,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    member_list = _get_list(session, list_id)
    if not body.name.strip():
        raise ValidationFailed("Name is required")
    member_list.name = body.name.strip()
    session.add(member_list)
    session.commit()
    session.refresh(member_list)
    return _serialize_list(session, member_list)


@router.delete("/{list_id}")
def delete_member_list(
    list_id: int,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    member_list = _get_list(session, list_id)
    in_use = session.exec(select(func.count()).select_from(Survey).where(Survey.member_list_id == list_id)).one()
    if in_use:
        raise Conflict(f"Member list is used by {in_use} survey(s)")
    former = member_ids(session, list_id)
    for link in session.exec(select(MemberListLink).where(MemberListLink.member_list_id == list_id)).all():
        session.delete(link)
    session.delete(member_list)
    session.flush()
    removed = 0
    for member_id in former:
        if membership_count(session, member_id) == 0 and not _has_responses(session, member_id):
            session.delete(session.get(Member, member_id))
            removed += 1
    session.commit()
    logger.info("admin %s deleted member list %s (%s orphaned members removed)", ctx.admin_id, list_id, removed)
    return {"ok": True}


@router.post("/{list_id}/members", status_code=status.HTTP_201_CREATED)
def add_member(
    list_id: int,
    body: MemberCreate,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    _get_list(session, list_id)
    if not body.lot.strip() or not body.name.strip() or not body.email.strip():
        raise ValidationFailed("Lot, name, and email are required")
    member = Member(**encrypt_member_fields({k: v.strip() for k, v in body.model_dump().items()}))
    session.add(member)
    session.flush()
    session.add(MemberListLink(member_list_id=list_id, member_id=member.id))
    session.flush()
    seeded = 0
    for survey in open_surveys(session, list_id):
        seed_response(session, survey.id, member.id)
        seeded += 1
    sync_min_responses(session, list_id)
    session.commit()
    session.refresh(member)
    logger.info("member %s added to list %s, seeded %s responses", member.id, list_id, seeded)
    return _serialize_member(member)


@router.put("/{list_id}/members/{member_id}")
def update_member(
    list_id: int,
    member_id: int,
    body: MemberUpdate,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    member = _get_listed_member(session, list_id, member_id)
    updates = body.model_dump(exclude_unset=True)
    for key in ("lot", "name", "email"):
        if key in updates and not (updates[key] or "").strip():
            raise ValidationFailed(f"{key.capitalize()} cannot be blank")
    for key, value in encrypt_member_fields({k: (v or "").strip() for k, v in updates.items()}).items():
        setattr(member, key, value)
    session.add(member)
    session.commit()
    session.refresh(member)
    return _serialize_member(member)


@router.delete("/{list_id}/members/{member_id}")
def remove_member(
    list_id: int,
    member_id: int,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    member = _get_listed_member(session, list_id, member_id)
    survey_ids = session.exec(select(Survey.id).where(Survey.member_list_id == list_id)).all()
    if survey_ids:
        responses = session.exec(
            select(Response).where(Response.member_id == member_id, Response.survey_id.in_(survey_ids))
        ).all()
        for response in responses:
            discard_response(session, response)
        reminders = session.exec(
            select(Reminder).where(Reminder.member_id == member_id, Reminder.survey_id.in_(survey_ids))
        ).all()
        for reminder in reminders:
            session.delete(reminder)
    session.delete(session.get(MemberListLink, (list_id, member_id)))
    session.flush()
    if membership_count(session, member_id) == 0 and not _has_responses(session, member_id):
        session.delete(member)
    sync_min_responses(session, list_id)
    session.commit()
    logger.info("member %s removed from list %s", member_id, list_id)
    return {"ok": True}
