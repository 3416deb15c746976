import json

import pytest

from surveyportal.errors import ValidationFailed
from surveyportal.models import Question
from surveyportal.tally import filter_answers, is_question_enabled, question_stats
from surveyportal.utils import WRITE_IN_CHOICE, decode_answer_value, encode_answer_value, is_blank_answer


def make_questions():
    return [
        Question(id=1, survey_id=1, text="Own a dog?", type="YES_NO", order=0),
        Question(id=2, survey_id=1, text="Amenities", type="MULTI_MULTI", order=1, options=json.dumps(["Pool", "Gym", "Park"])),
        Question(
            id=3,
            survey_id=1,
            text="Dog park hours",
            type="PARAGRAPH",
            order=2,
            show_when=json.dumps({"triggerOrder": 0, "operator": "equals", "value": "Yes"}),
        ),
        Question(
            id=4,
            survey_id=1,
            text="Park feedback",
            type="PARAGRAPH",
            order=3,
            show_when=json.dumps({"triggerOrder": 1, "operator": "contains", "value": "Par"}),
        ),
        Question(
            id=5,
            survey_id=1,
            text="Broken rule",
            type="PARAGRAPH",
            order=4,
            show_when=json.dumps({"triggerOrder": 42, "operator": "equals", "value": "x"}),
        ),
    ]


def test_display_rules():
    questions = make_questions()
    by_id = {q.id: q for q in questions}
    assert is_question_enabled(by_id[1], questions, {})
    assert not is_question_enabled(by_id[3], questions, {})
    assert not is_question_enabled(by_id[3], questions, {1: ""})
    assert is_question_enabled(by_id[3], questions, {1: "Yes"})
    assert not is_question_enabled(by_id[3], questions, {1: "No"})
    assert is_question_enabled(by_id[4], questions, {2: ["Gym", "Park"]})
    assert not is_question_enabled(by_id[4], questions, {2: ["Gym"]})
    assert not is_question_enabled(by_id[4], questions, {2: []})
    assert not is_question_enabled(by_id[5], questions, {1: "Yes"})


def test_equals_on_array_is_membership():
    questions = make_questions()
    questions[2].show_when = json.dumps({"triggerOrder": 1, "operator": "equals", "value": "Gym"})
    assert is_question_enabled(questions[2], questions, {2: ["Pool", "Gym"]})
    assert not is_question_enabled(questions[2], questions, {2: ["Pool", "Gymnasium"]})


def test_filter_answers_drops_blank_unknown_and_hidden():
    kept = filter_answers(
        make_questions(),
        {"1": "No", "2": ["Pool"], "3": "mornings", "4": "", "77": "ghost", "bogus": "x", "5": None},
    )
    assert kept == [(1, "No"), (2, '["Pool"]')]


def test_write_in_answers():
    single = Question(id=10, survey_id=1, text="Color", type="MULTI_SINGLE", order=10, write_in=True)
    multi = Question(id=11, survey_id=1, text="Extras", type="MULTI_MULTI", order=11, write_in_count=1)
    yes_no = Question(id=12, survey_id=1, text="Agree?", type="YES_NO", order=12)
    questions = [single, multi, yes_no]
    blank = {"choice": WRITE_IN_CHOICE, "writeIn": "  "}
    assert is_blank_answer(blank)
    assert not is_blank_answer({"choice": WRITE_IN_CHOICE, "writeIn": "Teal"})

    kept = filter_answers(
        questions,
        {"10": blank, "11": ["Sauna", {"choice": WRITE_IN_CHOICE, "writeIn": "Bocce"}, blank], "12": blank},
    )
    assert kept == [(11, '["Sauna", {"choice": "__WRITE_IN__", "writeIn": "Bocce"}]')]
    assert filter_answers(questions, {"11": [blank]}) == []

    with pytest.raises(ValidationFailed):
        filter_answers(questions, {"12": {"choice": WRITE_IN_CHOICE, "writeIn": "Maybe"}})
    two = [{"choice": WRITE_IN_CHOICE, "writeIn": "A", "index": 0}, {"choice": WRITE_IN_CHOICE, "writeIn": "B", "index": 1}]
    with pytest.raises(ValidationFailed):
        filter_answers(questions, {"11": two})


def test_answer_encoding():
    assert encode_answer_value(["A", "B"]) == '["A", "B"]'
    assert decode_answer_value('["A", "B"]') == ["A", "B"]
    assert encode_answer_value(True) == "true"
    assert encode_answer_value(4) == "4"
    assert decode_answer_value("Yes") == "Yes"
    # free text that only looks structured stays as written
    assert decode_answer_value("[not json") == "[not json"
    assert decode_answer_value("null") == "null"


def test_stats_by_type():
    yes_no, multi, paragraph = make_questions()[0], make_questions()[1], make_questions()[2]
    rating = Question(id=9, survey_id=1, text="Rate", type="RATING_5", order=9)
    single = Question(id=10, survey_id=1, text="Color", type="MULTI_SINGLE", order=10)
    answers = [
        {1: "Yes", 2: ["Pool", "Gym"], 3: "Early", 9: "5", 10: "Blue"},
        {1: "Yes", 2: ["Pool"], 9: "4", 10: {"choice": WRITE_IN_CHOICE, "writeIn": "Teal"}},
        {1: "No", 9: "4"},
        {},
    ]
    assert question_stats(yes_no, answers, 4)["counts"] == {"Yes": 2, "No": 1}
    assert question_stats(yes_no, answers, 4)["response_rate"] == 75
    assert question_stats(multi, answers, 4)["counts"] == {"Pool": 2, "Gym": 1}
    assert question_stats(paragraph, answers, 4)["responses"] == ["Early"]
    assert question_stats(single, answers, 4)["counts"] == {"Blue": 1, "Teal": 1}
    rating_stats = question_stats(rating, answers, 4)
    assert rating_stats["average"] == 4.3
    assert rating_stats["counts"] == {"5": 1, "4": 2}


def test_rating_average_rounds_half_up():
    rating = Question(id=9, survey_id=1, text="Rate", type="RATING_5", order=0)
    answers = [{9: "4"}, {9: "4"}, {9: "4"}, {9: "5"}]
    assert question_stats(rating, answers, 4)["average"] == 4.3
    assert question_stats(rating, [], 0)["average"] == 0
    assert question_stats(rating, [{9: "3"}, {9: "4"}], 2)["average"] == 3.5
