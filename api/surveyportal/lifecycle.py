import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlmodel import Session, select

from .email import OutgoingEmail, deliver
from .errors import Conflict, Forbidden, NotFound
from .models import Admin, Answer, Member, Response, Survey
from . import notifications
from .tally import load_answers, ordered_questions, replace_answers, tabulate
from .utils import as_utc, new_token, utcnow

logger = logging.getLogger(__name__)

UNSUBMITTED = "UNSUBMITTED"
SUBMITTED = "SUBMITTED"
SIGNED = "SIGNED"


def response_state(response: Response) -> str:
    if response.signed:
        return SIGNED
    if response.submitted_at is None:
        return UNSUBMITTED
    return SUBMITTED


def is_closed(survey: Survey, now: Optional[datetime] = None) -> bool:
    return as_utc(now or utcnow()) > as_utc(survey.closes_at)


def get_response_by_token(session: Session, token: str) -> Response:
    response = session.exec(select(Response).where(Response.token == token)).first()
    if not response:
        raise NotFound("Response not found")
    return response


def _load_context(session: Session, response: Response) -> tuple[Survey, Member]:
    survey = session.get(Survey, response.survey_id)
    member = session.get(Member, response.member_id)
    if not survey or not member:
        raise NotFound("Response not found")
    return survey, member


def _notify(message: OutgoingEmail, what: str):
    try:
        deliver(message)
    except Exception:
        logger.exception("failed to send %s email to %s", what, message.to)


def submit_answers(session: Session, response: Response, answers: dict, now: Optional[datetime] = None) -> Response:
    survey, member = _load_context(session, response)
    now = now or utcnow()
    if response.signed:
        raise Conflict("This response has been digitally signed and can no longer be edited")
    if is_closed(survey, now):
        raise Conflict("Survey is closed")

    questions = ordered_questions(session, survey.id)
    stored = replace_answers(session, response, questions, answers)
    response.submitted_at = now
    response.signature_token = new_token()
    session.add(response)
    session.commit()
    session.refresh(response)
    logger.info("response %s submitted with %s answers", response.id, stored)

    _notify(notifications.signature_request(survey, member, response), "signature request")
    try:
        notify_min_responses(session, survey)
    except Exception:
        logger.exception("min-response check failed for survey %s", survey.id)
    return response


def request_signature(session: Session, response: Response) -> Response:
    survey, member = _load_context(session, response)
    if response.submitted_at is None:
        raise Conflict("Response must be submitted first")
    if response.signed:
        raise Conflict("Response is already signed")
    response.signature_token = new_token()
    session.add(response)
    session.commit()
    session.refresh(response)
    _notify(notifications.signature_request(survey, member, response), "signature request")
    return response


def sign_response(session: Session, response: Response, signature_token: str, now: Optional[datetime] = None) -> Response:
    survey, member = _load_context(session, response)
    if response.submitted_at is None:
        raise Conflict("Response must be submitted first")
    if response.signed:
        raise Conflict("Response is already signed")
    if not response.signature_token or response.signature_token != signature_token:
        raise Forbidden("Invalid signature token")
    response.signed = True
    response.signed_at = now or utcnow()
    session.add(response)
    session.commit()
    session.refresh(response)
    logger.info("response %s signed", response.id)
    _notify(notifications.signature_confirmation(survey, member, response), "signature confirmation")
    return response


def unlock_response(session: Session, response: Response) -> bool:
    if not response.signed:
        return False
    response.signed = False
    response.signed_at = None
    response.signature_token = None
    session.add(response)
    session.commit()
    session.refresh(response)
    return True


def discard_response(session: Session, response: Response):
    # does not commit
    for answer in session.exec(select(Answer).where(Answer.response_id == response.id)).all():
        session.delete(answer)
    session.delete(response)


def reset_response(session: Session, response: Response) -> Response:
    # the old token stops working
    survey_id, member_id = response.survey_id, response.member_id
    discard_response(session, response)
    session.flush()
    replacement = Response(survey_id=survey_id, member_id=member_id, token=new_token())
    session.add(replacement)
    session.commit()
    session.refresh(replacement)
    return replacement


def seed_response(session: Session, survey_id: int, member_id: int) -> Response:
    response = Response(survey_id=survey_id, member_id=member_id, token=new_token())
    session.add(response)
    return response


def submitted_count(session: Session, survey_id: int) -> int:
    return session.exec(
        select(func.count(Response.id)).where(Response.survey_id == survey_id, Response.submitted_at.is_not(None))
    ).one()


def notify_min_responses(session: Session, survey: Survey) -> bool:
    if not survey.notify_on_min_responses or not survey.min_responses:
        return False
    if survey.minimal_notified_at is not None or survey.created_by_id is None:
        return False
    submitted = submitted_count(session, survey.id)
    if submitted < survey.min_responses:
        return False
    creator = session.get(Admin, survey.created_by_id)
    if not creator:
        return False
    response_ids = session.exec(
        select(Response.id).where(Response.survey_id == survey.id, Response.submitted_at.is_not(None))
    ).all()
    answers = load_answers(session, list(response_ids))
    stats = tabulate(ordered_questions(session, survey.id), list(answers.values()))
    survey.minimal_notified_at = utcnow()
    session.add(survey)
    session.commit()
    _notify(notifications.min_responses_reached(survey, creator, submitted, stats), "min-responses")
    return True
