import json
import logging
from fastapi import APIRouter, Depends
from fastapi import Response as HTTPResponse
from sqlalchemy import func
from sqlmodel import Session, select

from ..auth import AdminContext, require_full_access, resolve_admin_context
from ..db import get_session
from ..email import send_bulk
from ..encryption import member_contact
from ..errors import Conflict, NotFound, ValidationFailed
from ..lifecycle import discard_response, is_closed, reset_response, response_state, submitted_count
from ..models import Member, MemberList, Question, Reminder, Response, Survey
from .. import notifications
from ..roster import lot_sort_key, member_ids, seed_survey_responses
from ..schemas import AnswersSubmit, QuestionCreate, SurveyCreate, SurveyUpdate
from ..tally import (
    export_csv,
    load_answers,
    ordered_questions,
    replace_answers,
    serialize_question,
    submitted_responses,
    tabulate,
)
from ..utils import as_utc, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

CHOICE_TYPES = ("MULTI_SINGLE", "MULTI_MULTI")


def _response_counts(session: Session, survey_id: int) -> tuple[int, int]:
    total = session.exec(select(func.count(Response.id)).where(Response.survey_id == survey_id)).one()
    return total, submitted_count(session, survey_id)


def _serialize_survey(session: Session, survey: Survey):
    total, submitted = _response_counts(session, survey.id)
    return {
        "id": survey.id,
        "title": survey.title,
        "description": survey.description,
        "opens_at": as_utc(survey.opens_at),
        "closes_at": as_utc(survey.closes_at),
        "member_list_id": survey.member_list_id,
        "created_by_id": survey.created_by_id,
        "initial_sent_at": survey.initial_sent_at,
        "min_responses": survey.min_responses,
        "min_responses_all": survey.min_responses_all,
        "notify_on_min_responses": survey.notify_on_min_responses,
        "created_at": survey.created_at,
        "is_closed": is_closed(survey),
        "total_recipients": total,
        "submitted_count": submitted,
        "response_rate": round(submitted / total * 100) if total else 0,
    }


def _get_survey(session: Session, survey_id: int) -> Survey:
    survey = session.get(Survey, survey_id)
    if not survey:
        raise NotFound("Survey not found")
    return survey


def _get_survey_response(session: Session, survey_id: int, response_id: int) -> Response:
    response = session.get(Response, response_id)
    if not response or response.survey_id != survey_id:
        raise NotFound("Response not found")
    return response


def _check_schedule(opens_at, closes_at):
    if as_utc(closes_at) <= as_utc(opens_at):
        raise ValidationFailed("Survey must close after it opens")


def _store_questions(session: Session, survey_id: int, questions: list[QuestionCreate]):
    for existing in session.exec(select(Question).where(Question.survey_id == survey_id)).all():
        session.delete(existing)
    session.flush()
    for index, q in enumerate(questions):
        options = [o.strip() for o in (q.options or []) if o and o.strip()]
        write_in = q.write_in and q.type == "MULTI_SINGLE"
        write_in_count = q.write_in_count if q.type == "MULTI_MULTI" else 0
        if q.type in CHOICE_TYPES and not options and not (write_in or write_in_count):
            raise ValidationFailed(f"Question {index + 1} needs at least one option")
        session.add(
            Question(
                survey_id=survey_id,
                text=q.text.strip(),
                type=q.type,
                options=json.dumps(options) if options else None,
                order=q.order if q.order is not None else index,
                required=q.required,
                show_when=json.dumps(q.show_when.model_dump()) if q.show_when else None,
                max_selections=q.max_selections if q.type == "MULTI_MULTI" else None,
                write_in=write_in,
                write_in_count=write_in_count,
            )
        )


def _list_size(session: Session, member_list_id: int) -> int:
    return len(member_ids(session, member_list_id))


@router.get("")
def list_surveys(session: Session = Depends(get_session), ctx=Depends(resolve_admin_context)):
    surveys = session.exec(select(Survey).order_by(Survey.created_at.desc(), Survey.id.desc())).all()
    return [_serialize_survey(session, s) for s in surveys]


@router.post("")
def create_survey(
    body: SurveyCreate,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    if not session.get(MemberList, body.member_list_id):
        raise NotFound("Member list not found")
    _check_schedule(body.opens_at, body.closes_at)
    survey = Survey(
        title=body.title.strip(),
        description=body.description,
        opens_at=body.opens_at,
        closes_at=body.closes_at,
        member_list_id=body.member_list_id,
        created_by_id=ctx.admin_id,
        min_responses=body.min_responses,
        min_responses_all=body.min_responses_all,
        notify_on_min_responses=body.notify_on_min_responses,
    )
    if survey.min_responses_all:
        survey.min_responses = _list_size(session, body.member_list_id)
    session.add(survey)
    session.flush()
    _store_questions(session, survey.id, body.questions)
    seeded = seed_survey_responses(session, survey)
    session.commit()
    session.refresh(survey)
    logger.info("admin %s created survey %s for %s members", ctx.admin_id, survey.id, seeded)
    return _serialize_survey(session, survey)


@router.get("/{survey_id}")
def get_survey(survey_id: int, session: Session = Depends(get_session), ctx=Depends(resolve_admin_context)):
    survey = _get_survey(session, survey_id)
    return {
        **_serialize_survey(session, survey),
        "questions": [serialize_question(q) for q in ordered_questions(session, survey.id)],
    }


@router.put("/{survey_id}")
def update_survey(
    survey_id: int,
    body: SurveyUpdate,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    survey = _get_survey(session, survey_id)
    updates = body.model_dump(exclude_unset=True, exclude={"questions"})
    new_list_id = updates.get("member_list_id")
    if new_list_id is not None and new_list_id != survey.member_list_id:
        if not session.get(MemberList, new_list_id):
            raise NotFound("Member list not found")
        if submitted_count(session, survey.id):
            raise Conflict("Cannot change member list after submitted responses exist for this survey.")
        for response in session.exec(select(Response).where(Response.survey_id == survey.id)).all():
            discard_response(session, response)
        for reminder in session.exec(select(Reminder).where(Reminder.survey_id == survey.id)).all():
            session.delete(reminder)
        session.flush()
    for key, value in updates.items():
        if value is None and key not in ("min_responses",):
            continue
        setattr(survey, key, value.strip() if key == "title" else value)
    _check_schedule(survey.opens_at, survey.closes_at)
    if survey.min_responses_all:
        survey.min_responses = _list_size(session, survey.member_list_id)
    session.add(survey)
    if body.questions is not None:
        _store_questions(session, survey.id, body.questions)
    session.flush()
    seed_survey_responses(session, survey)
    session.commit()
    session.refresh(survey)
    logger.info("admin %s updated survey %s", ctx.admin_id, survey.id)
    return get_survey(survey.id, session, ctx)


@router.post("/{survey_id}/close")
def close_survey(
    survey_id: int,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    survey = _get_survey(session, survey_id)
    survey.closes_at = utcnow()
    session.add(survey)
    session.commit()
    session.refresh(survey)
    logger.info("admin %s closed survey %s", ctx.admin_id, survey.id)
    return _serialize_survey(session, survey)


@router.delete("/{survey_id}")
def delete_survey(
    survey_id: int,
    force: bool = False,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    survey = _get_survey(session, survey_id)
    total, submitted = _response_counts(session, survey.id)
    if submitted and not force:
        raise Conflict(
            {
                "message": "Survey has submitted responses",
                "requires_confirmation": True,
                "submitted_count": submitted,
                "total_responses": total,
            }
        )
    for reminder in session.exec(select(Reminder).where(Reminder.survey_id == survey.id)).all():
        session.delete(reminder)
    for response in session.exec(select(Response).where(Response.survey_id == survey.id)).all():
        discard_response(session, response)
    for question in session.exec(select(Question).where(Question.survey_id == survey.id)).all():
        session.delete(question)
    session.delete(survey)
    session.commit()
    logger.info("admin %s deleted survey %s (%s submitted responses)", ctx.admin_id, survey_id, submitted)
    return {"ok": True, "message": "Survey deleted successfully"}


def _pending(session: Session, survey_id: int) -> list[tuple[Response, Member]]:
    return session.exec(
        select(Response, Member)
        .where(Response.survey_id == survey_id, Response.member_id == Member.id, Response.submitted_at.is_(None))
        .order_by(Response.id)
    ).all()


def _reminder_count(session: Session, survey_id: int, member_id: int) -> int:
    return session.exec(
        select(func.count(Reminder.id)).where(Reminder.survey_id == survey_id, Reminder.member_id == member_id)
    ).one()


def _record_reminder(session: Session, survey_id: int, member_id: int):
    session.add(
        Reminder(
            survey_id=survey_id,
            member_id=member_id,
            reminder_num=_reminder_count(session, survey_id, member_id) + 1,
        )
    )


@router.post("/{survey_id}/send-initial")
def send_initial(
    survey_id: int,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    survey = _get_survey(session, survey_id)
    if survey.initial_sent_at is not None:
        raise Conflict("Initial notice already sent")
    recipients = session.exec(
        select(Response, Member).where(Response.survey_id == survey.id, Response.member_id == Member.id).order_by(Response.id)
    ).all()
    results = send_bulk([notifications.survey_invitation(survey, m, r) for r, m in recipients])
    survey.initial_sent_at = utcnow()
    session.add(survey)
    session.commit()
    sent = sum(1 for r in results if r.ok)
    logger.info("survey %s initial notice: %s sent, %s failed", survey.id, sent, len(results) - sent)
    return {"ok": True, "sent": sent, "failed": len(results) - sent}


@router.post("/{survey_id}/remind")
def remind_all(
    survey_id: int,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    survey = _get_survey(session, survey_id)
    if is_closed(survey):
        raise Conflict("Survey is closed")
    pending = _pending(session, survey.id)
    if not pending:
        return {"message": "No pending responses to remind", "sent": 0, "failed": 0}
    results = send_bulk([notifications.survey_invitation(survey, m, r, reminder=True) for r, m in pending])
    sent = 0
    for result in results:
        if not result.ok:
            continue
        _record_reminder(session, survey.id, result.message.meta["member_id"])
        sent += 1
    session.commit()
    failed = len(results) - sent
    logger.info("survey %s reminders: %s sent, %s failed", survey.id, sent, failed)
    return {"message": f"Sent {sent} reminder(s)", "sent": sent, "failed": failed}


@router.post("/{survey_id}/remind/{response_id}")
def remind_one(
    survey_id: int,
    response_id: int,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    survey = _get_survey(session, survey_id)
    response = _get_survey_response(session, survey.id, response_id)
    if response.submitted_at is not None:
        raise Conflict("Response already submitted")
    if is_closed(survey):
        raise Conflict("Survey is closed")
    member = session.get(Member, response.member_id)
    result = send_bulk([notifications.survey_invitation(survey, member, response, reminder=True)])[0]
    if not result.ok:
        return {"ok": False, "sent": 0, "failed": 1, "error": result.error}
    _record_reminder(session, survey.id, member.id)
    session.commit()
    return {"ok": True, "sent": 1, "failed": 0}


@router.get("/{survey_id}/nonrespondents")
def nonrespondents(survey_id: int, session: Session = Depends(get_session), ctx=Depends(resolve_admin_context)):
    survey = _get_survey(session, survey_id)
    rows = [
        {
            "response_id": response.id,
            "member_id": member.id,
            **member_contact(member),
            "token": response.token,
            "reminder_count": _reminder_count(session, survey.id, member.id),
        }
        for response, member in _pending(session, survey.id)
    ]
    return sorted(rows, key=lambda row: lot_sort_key(row["lot"]))


@router.get("/{survey_id}/results")
def results(survey_id: int, session: Session = Depends(get_session), ctx=Depends(resolve_admin_context)):
    survey = _get_survey(session, survey_id)
    questions = ordered_questions(session, survey.id)
    rows = submitted_responses(session, survey.id)
    answers = load_answers(session, [r.id for r, _ in rows])
    total, submitted = _response_counts(session, survey.id)
    return {
        "survey": _serialize_survey(session, survey),
        "total_recipients": total,
        "submitted_count": submitted,
        "signed_count": sum(1 for r, _ in rows if r.signed),
        "questions": tabulate(questions, [answers[r.id] for r, _ in rows]),
        "responses": [
            {
                "id": response.id,
                "member": {"id": member.id, **member_contact(member)},
                "state": response_state(response),
                "submitted_at": response.submitted_at,
                "signed": response.signed,
                "signed_at": response.signed_at,
                "answers": {str(qid): value for qid, value in answers[response.id].items()},
            }
            for response, member in rows
        ],
    }


@router.get("/{survey_id}/export")
def export(survey_id: int, session: Session = Depends(get_session), ctx=Depends(resolve_admin_context)):
    survey = _get_survey(session, survey_id)
    questions = ordered_questions(session, survey.id)
    rows = submitted_responses(session, survey.id)
    answers = load_answers(session, [r.id for r, _ in rows])
    filename = f"survey-{survey.id}-results.csv"
    return HTTPResponse(
        content=export_csv(questions, rows, answers),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.put("/{survey_id}/responses/{response_id}")
def admin_edit_response(
    survey_id: int,
    response_id: int,
    body: AnswersSubmit,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    survey = _get_survey(session, survey_id)
    response = _get_survey_response(session, survey.id, response_id)
    stored = replace_answers(session, response, ordered_questions(session, survey.id), body.answers)
    session.commit()
    session.refresh(response)
    logger.info("admin %s edited response %s (%s answers)", ctx.admin_id, response.id, stored)
    return {"ok": True, "id": response.id, "answers_stored": stored, "state": response_state(response)}


@router.delete("/{survey_id}/responses/{response_id}")
def admin_delete_response(
    survey_id: int,
    response_id: int,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    survey = _get_survey(session, survey_id)
    response = _get_survey_response(session, survey.id, response_id)
    replacement = reset_response(session, response)
    logger.info("admin %s reset response %s to %s", ctx.admin_id, response_id, replacement.id)
    return {"ok": True, "id": replacement.id, "token": replacement.token, "state": response_state(replacement)}
