import logging
from fastapi import APIRouter, Depends
from sqlmodel import Session

from ..auth import AdminContext, require_full_access
from ..db import get_session
from ..encryption import member_contact
from ..lifecycle import (
    get_response_by_token,
    is_closed,
    request_signature,
    response_state,
    sign_response,
    submit_answers,
    unlock_response,
)
from ..models import Member, Survey
from ..notifications import sanitize_description
from ..schemas import AnswersSubmit
from ..tally import load_answers, ordered_questions, serialize_question
from ..utils import as_utc

logger = logging.getLogger(__name__)

router = APIRouter()


def _serialize_response(response):
    return {
        "id": response.id,
        "token": response.token,
        "state": response_state(response),
        "submitted_at": response.submitted_at,
        "signed": response.signed,
        "signed_at": response.signed_at,
    }


@router.get("/{token}")
def get_response(token: str, session: Session = Depends(get_session)):
    response = get_response_by_token(session, token)
    survey = session.get(Survey, response.survey_id)
    member = session.get(Member, response.member_id)
    existing = None
    if response.submitted_at is not None:
        decoded = load_answers(session, [response.id]).get(response.id, {})
        existing = {str(qid): value for qid, value in decoded.items()}
    return {
        **_serialize_response(response),
        "survey": {
            "id": survey.id,
            "title": survey.title,
            "description": sanitize_description(survey.description),
            "opens_at": as_utc(survey.opens_at),
            "closes_at": as_utc(survey.closes_at),
        },
        "questions": [serialize_question(q) for q in ordered_questions(session, survey.id)],
        "member": {k: v for k, v in member_contact(member).items() if k != "email"},
        "is_closed": is_closed(survey),
        "existing_answers": existing,
    }


@router.put("/{token}")
def submit_response(token: str, body: AnswersSubmit, session: Session = Depends(get_session)):
    response = get_response_by_token(session, token)
    response = submit_answers(session, response, body.answers)
    return _serialize_response(response)


@router.post("/{token}/request-signature")
def request_response_signature(token: str, session: Session = Depends(get_session)):
    response = get_response_by_token(session, token)
    request_signature(session, response)
    return {"ok": True, "message": "Signature request sent"}


@router.post("/{token}/sign/{signature_token}")
def sign(token: str, signature_token: str, session: Session = Depends(get_session)):
    response = get_response_by_token(session, token)
    response = sign_response(session, response, signature_token)
    return _serialize_response(response)


@router.post("/{token}/unlock")
def unlock(
    token: str,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    response = get_response_by_token(session, token)
    changed = unlock_response(session, response)
    if changed:
        logger.info("admin %s unlocked response %s", ctx.admin_id, response.id)
    return {**_serialize_response(response), "unlocked": changed}
