import csv
import io
import math
from collections import defaultdict

from sqlmodel import Session, select

from .encryption import member_contact
from .errors import ValidationFailed
from .models import Answer, Member, Question, Response
from .utils import (
    decode_answer_value,
    encode_answer_value,
    format_display_time,
    is_blank_answer,
    is_write_in,
    load_json_column,
)
EXPORT_COLUMNS = ["Lot", "Name", "Email", "Submitted At", "Signed", "Signed At"]


def serialize_question(question: Question) -> dict:
    return {
        "id": question.id,
        "survey_id": question.survey_id,
        "text": question.text,
        "type": question.type,
        "order": question.order,
        "options": load_json_column(question.options),
        "show_when": load_json_column(question.show_when),
        "max_selections": question.max_selections,
        "required": question.required,
        "write_in": question.write_in,
        "write_in_count": question.write_in_count,
    }


def ordered_questions(session: Session, survey_id: int) -> list[Question]:
    return session.exec(
        select(Question).where(Question.survey_id == survey_id).order_by(Question.order, Question.id)
    ).all()


def load_answers(session: Session, response_ids: list[int]) -> dict[int, dict[int, object]]:
    result: dict[int, dict[int, object]] = {rid: {} for rid in response_ids}
    if not response_ids:
        return result
    rows = session.exec(select(Answer).where(Answer.response_id.in_(response_ids))).all()
    for row in rows:
        result.setdefault(row.response_id, {})[row.question_id] = decode_answer_value(row.value)
    return result


def _normalize_keys(answers: dict) -> dict[int, object]:
    normalized = {}
    for key, value in (answers or {}).items():
        try:
            normalized[int(key)] = value
        except (TypeError, ValueError):
            continue
    return normalized


def is_question_enabled(question: Question, questions: list[Question], answers: dict[int, object]) -> bool:
    rule = load_json_column(question.show_when)
    if not rule:
        return True
    if not isinstance(rule, dict):
        return False
    trigger = next((q for q in questions if q.order == rule.get("triggerOrder")), None)
    if trigger is None:
        return False
    trigger_answer = answers.get(trigger.id)
    if is_blank_answer(trigger_answer):
        return False
    expected = str(rule.get("value", ""))
    operator = rule.get("operator", "equals")
    if isinstance(trigger_answer, list):
        if operator == "equals":
            return expected in [str(a) for a in trigger_answer]
        return any(expected in str(a) for a in trigger_answer)
    if operator == "equals":
        return str(trigger_answer) == expected
    return expected in str(trigger_answer)


def _check_write_ins(question: Question, value):
    if isinstance(value, list):
        if sum(1 for v in value if is_write_in(v)) > question.write_in_count:
            raise ValidationFailed(f"Too many write-in answers for \"{question.text}\"")
    elif is_write_in(value) and not question.write_in:
        raise ValidationFailed(f"\"{question.text}\" does not accept write-in answers")


def filter_answers(questions: list[Question], answers: dict) -> list[tuple[int, str]]:
    normalized = _normalize_keys(answers)
    by_id = {q.id: q for q in questions}
    kept = []
    for question_id, value in normalized.items():
        if isinstance(value, list):
            value = [v for v in value if not (is_write_in(v) and is_blank_answer(v))]
        if is_blank_answer(value):
            continue
        question = by_id.get(question_id)
        if question is None:
            continue
        if not is_question_enabled(question, questions, normalized):
            continue
        _check_write_ins(question, value)
        kept.append((question_id, encode_answer_value(value)))
    return kept


def replace_answers(session: Session, response: Response, questions: list[Question], answers: dict) -> int:
    # does not commit
    kept = filter_answers(questions, answers)
    for existing in session.exec(select(Answer).where(Answer.response_id == response.id)).all():
        session.delete(existing)
    session.flush()
    for question_id, value in kept:
        session.add(Answer(response_id=response.id, question_id=question_id, value=value))
    return len(kept)


def _count_key(answer) -> str:
    if is_write_in(answer):
        text = str(answer.get("writeIn") or "").strip()
        return text or "Other"
    return str(answer)


def _rating_key(value: float) -> str:
    return str(int(value)) if value.is_integer() else str(value)


def question_stats(question: Question, answer_maps: list[dict[int, object]], total_responses: int) -> dict:
    values = [a.get(question.id) for a in answer_maps]
    values = [v for v in values if not is_blank_answer(v)]
    stats = {
        "question_id": question.id,
        "text": question.text,
        "type": question.type,
        "total_responses": len(values),
        "response_rate": round(len(values) / total_responses * 100) if total_responses else 0,
    }
    if question.type in ("YES_NO", "MULTI_SINGLE"):
        counts: dict[str, int] = defaultdict(int)
        for value in values:
            counts[_count_key(value)] += 1
        stats["counts"] = dict(counts)
    elif question.type == "MULTI_MULTI":
        counts = defaultdict(int)
        for value in values:
            if isinstance(value, list):
                for option in value:
                    counts[_count_key(option)] += 1
        stats["counts"] = dict(counts)
    elif question.type == "RATING_5":
        ratings = []
        for value in values:
            try:
                ratings.append(float(value))
            except (TypeError, ValueError):
                continue
        counts = defaultdict(int)
        for rating in ratings:
            counts[_rating_key(rating)] += 1
        average = sum(ratings) / len(ratings) if ratings else 0
        # half-up to one decimal
        stats["average"] = math.floor(average * 10 + 0.5) / 10
        stats["counts"] = dict(counts)
    elif question.type == "PARAGRAPH":
        stats["responses"] = values
    return stats


def tabulate(questions: list[Question], answer_maps: list[dict[int, object]]) -> list[dict]:
    return [question_stats(q, answer_maps, len(answer_maps)) for q in questions]


def submitted_responses(session: Session, survey_id: int) -> list[tuple[Response, Member]]:
    return session.exec(
        select(Response, Member)
        .where(Response.survey_id == survey_id, Response.member_id == Member.id, Response.submitted_at.is_not(None))
        .order_by(Response.id)
    ).all()


def _export_cell(answer) -> str:
    if answer is None:
        return ""
    if isinstance(answer, list):
        return "; ".join(_count_key(a) for a in answer)
    if isinstance(answer, dict):
        return _count_key(answer)
    return str(answer)


def export_csv(questions: list[Question], rows: list[tuple[Response, Member]], answers: dict[int, dict[int, object]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS + [q.text for q in questions])
    for response, member in rows:
        response_answers = answers.get(response.id, {})
        contact = member_contact(member)
        writer.writerow(
            [
                contact["lot"],
                contact["name"],
                contact["email"],
                format_display_time(response.submitted_at),
                "Yes" if response.signed else "No",
                format_display_time(response.signed_at),
            ]
            + [_export_cell(response_answers.get(q.id)) for q in questions]
        )
    return buf.getvalue()
