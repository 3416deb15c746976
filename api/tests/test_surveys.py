import csv
import io
from datetime import timedelta

from sqlmodel import Session, select

from surveyportal.models import Member, Reminder, Response, Survey
from surveyportal.utils import utcnow
from conftest import auth_headers, question_ids, survey_payload


def submit(client, token, answers):
    res = client.put(f"/api/responses/{token}", json={"answers": {str(k): v for k, v in answers.items()}})
    assert res.status_code == 200, res.text


def test_create_survey_seeds_one_response_per_member(client, make_survey, survey_responses):
    survey = make_survey(size=4)
    rows = survey_responses(survey["id"])
    assert len(rows) == 4
    assert len({r.token for r in rows}) == 4
    assert all(len(r.token) == 64 for r in rows)
    assert survey["total_recipients"] == 4
    assert survey["submitted_count"] == 0
    assert [q["order"] for q in survey["questions"]] == [0, 1, 2, 3]
    assert survey["questions"][3]["show_when"] == {"triggerOrder": 0, "operator": "equals", "value": "No"}


def test_create_survey_requires_full_admin(client, make_member_list, make_admin, root_admin):
    member_list = make_member_list(2)
    viewer = make_admin("viewer@hoa-board.org", role="VIEW_ONLY", invited_by=root_admin.id)
    res = client.post("/api/surveys", json=survey_payload(member_list.id), headers=auth_headers(viewer))
    assert res.status_code == 403
    assert client.post("/api/surveys", json=survey_payload(member_list.id)).status_code == 401
    assert client.get("/api/surveys", headers=auth_headers(viewer)).status_code == 200


def test_create_survey_validation(client, make_member_list, admin_headers):
    member_list = make_member_list(1)
    bad_type = survey_payload(member_list.id, questions=[{"text": "?", "type": "ESSAY"}])
    assert client.post("/api/surveys", json=bad_type, headers=admin_headers).status_code == 422
    no_options = survey_payload(member_list.id, questions=[{"text": "Pick", "type": "MULTI_SINGLE"}])
    assert client.post("/api/surveys", json=no_options, headers=admin_headers).status_code == 400
    now = utcnow()
    backwards = survey_payload(member_list.id, opens_at=now.isoformat(), closes_at=(now - timedelta(days=1)).isoformat())
    assert client.post("/api/surveys", json=backwards, headers=admin_headers).status_code == 400
    assert client.post("/api/surveys", json=survey_payload(9999), headers=admin_headers).status_code == 404


def test_min_responses_all_tracks_list_size(client, make_member_list, admin_headers):
    member_list = make_member_list(3)
    res = client.post(
        "/api/surveys", json=survey_payload(member_list.id, min_responses_all=True), headers=admin_headers
    )
    assert res.json()["min_responses"] == 3


def test_reminder_partial_failure_counts(client, make_survey, sent_emails, admin_headers, test_engine):
    survey = make_survey(size=5)
    sent_emails.fail_for.update({"owner2@example.com", "owner4@example.com"})

    res = client.post(f"/api/surveys/{survey['id']}/remind", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["sent"] == 3
    assert res.json()["failed"] == 2

    with Session(test_engine) as s:
        reminders = s.exec(select(Reminder).where(Reminder.survey_id == survey["id"])).all()
        assert len(reminders) == 3
        reminded = {s.get(Member, r.member_id).email for r in reminders}
    assert reminded == {"owner1@example.com", "owner3@example.com", "owner5@example.com"}
    assert all(m["subject"] == "Reminder: Pool Hours" for m in sent_emails)


def test_reminders_skip_submitted_and_number_sequentially(client, make_survey, survey_responses, sent_emails, admin_headers, test_engine):
    survey = make_survey(size=3)
    rows = survey_responses(survey["id"])
    submit(client, rows[0].token, {question_ids(survey)[0]: "Yes"})

    client.post(f"/api/surveys/{survey['id']}/remind", headers=admin_headers)
    res = client.post(f"/api/surveys/{survey['id']}/remind", headers=admin_headers)
    assert res.json()["sent"] == 2
    assert not any(m["subject"].startswith("Reminder") for m in sent_emails.to("owner1@example.com"))

    with Session(test_engine) as s:
        nums = s.exec(
            select(Reminder.reminder_num).where(Reminder.member_id == rows[1].member_id).order_by(Reminder.id)
        ).all()
    assert nums == [1, 2]

    listed = client.get(f"/api/surveys/{survey['id']}/nonrespondents", headers=admin_headers).json()
    assert [r["lot"] for r in listed] == ["2", "3"]
    assert all(r["reminder_count"] == 2 for r in listed)


def test_remind_closed_survey_conflicts(client, make_survey, admin_headers):
    survey = make_survey(size=2)
    assert client.post(f"/api/surveys/{survey['id']}/close", headers=admin_headers).status_code == 200
    res = client.post(f"/api/surveys/{survey['id']}/remind", headers=admin_headers)
    assert res.status_code == 409
    assert res.json()["detail"] == "Survey is closed"


def test_remind_one(client, make_survey, survey_responses, sent_emails, admin_headers):
    survey = make_survey(size=2)
    rows = survey_responses(survey["id"])
    res = client.post(f"/api/surveys/{survey['id']}/remind/{rows[1].id}", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["sent"] == 1
    assert len(sent_emails.to("owner2@example.com")) == 1

    submit(client, rows[0].token, {question_ids(survey)[0]: "Yes"})
    res = client.post(f"/api/surveys/{survey['id']}/remind/{rows[0].id}", headers=admin_headers)
    assert res.status_code == 409


def test_send_initial_only_once(client, make_survey, sent_emails, admin_headers, test_engine):
    survey = make_survey(size=3)
    sent_emails.fail_for.add("owner3@example.com")
    res = client.post(f"/api/surveys/{survey['id']}/send-initial", headers=admin_headers)
    assert res.status_code == 200
    assert (res.json()["sent"], res.json()["failed"]) == (2, 1)
    assert all(m["subject"] == "Survey: Pool Hours" for m in sent_emails)
    assert "<script>" not in sent_emails[0]["html"]

    again = client.post(f"/api/surveys/{survey['id']}/send-initial", headers=admin_headers)
    assert again.status_code == 409
    with Session(test_engine) as s:
        assert s.get(Survey, survey["id"]).initial_sent_at is not None


def test_results_tabulation(client, make_survey, survey_responses, admin_headers):
    survey = make_survey(size=4)
    q_yes, q_days, q_rate, q_why = question_ids(survey)
    rows = survey_responses(survey["id"])
    submit(client, rows[0].token, {q_yes: "Yes", q_days: ["A", "B"], q_rate: 5})
    submit(client, rows[1].token, {q_yes: "No", q_days: ["B"], q_rate: 4, q_why: "Too crowded"})
    submit(client, rows[2].token, {q_yes: "Yes", q_rate: 4})

    res = client.get(f"/api/surveys/{survey['id']}/results", headers=admin_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["submitted_count"] == 3
    assert body["total_recipients"] == 4
    stats = {s["question_id"]: s for s in body["questions"]}
    assert stats[q_yes]["counts"] == {"Yes": 2, "No": 1}
    assert stats[q_days]["counts"] == {"A": 1, "B": 2}
    assert stats[q_rate]["average"] == 4.3
    assert stats[q_rate]["counts"] == {"5": 1, "4": 2}
    assert stats[q_why]["responses"] == ["Too crowded"]
    assert len(body["responses"]) == 3


def test_export_csv(client, make_survey, survey_responses, admin_headers):
    survey = make_survey(size=2)
    q_yes, q_days, q_rate, q_why = question_ids(survey)
    rows = survey_responses(survey["id"])
    submit(client, rows[0].token, {q_yes: "No", q_days: ["A", "B"], q_why: 'Too cold, "really"'})

    res = client.get(f"/api/surveys/{survey['id']}/export", headers=admin_headers)
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/csv")
    assert "attachment" in res.headers["content-disposition"]
    assert '"Too cold, ""really"""' in res.text

    parsed = list(csv.reader(io.StringIO(res.text)))
    assert parsed[0] == ["Lot", "Name", "Email", "Submitted At", "Signed", "Signed At", "Extend hours?", "Which days?", "Rate the pool", "Why not?"]
    assert len(parsed) == 2
    row = parsed[1]
    assert row[:3] == ["1", "Owner 1", "owner1@example.com"]
    assert " at " in row[3]
    assert row[4:6] == ["No", ""]
    assert row[6:] == ["No", "A; B", "", 'Too cold, "really"']


def test_update_survey_replaces_questions(client, make_survey, admin_headers):
    survey = make_survey(size=1)
    res = client.put(
        f"/api/surveys/{survey['id']}",
        json={"title": "Pool Hours 2027", "questions": [{"text": "Keep it?", "type": "YES_NO"}]},
        headers=admin_headers,
    )
    assert res.status_code == 200, res.text
    assert res.json()["title"] == "Pool Hours 2027"
    assert [q["text"] for q in res.json()["questions"]] == ["Keep it?"]


def test_change_member_list(client, make_survey, make_member_list, survey_responses, admin_headers):
    survey = make_survey(size=2)
    other = make_member_list(3, name="Board")
    res = client.put(f"/api/surveys/{survey['id']}", json={"member_list_id": other.id}, headers=admin_headers)
    assert res.status_code == 200
    assert len(survey_responses(survey["id"])) == 3

    submit(client, survey_responses(survey["id"])[0].token, {question_ids(res.json())[0]: "Yes"})
    back = client.put(f"/api/surveys/{survey['id']}", json={"member_list_id": survey["member_list_id"]}, headers=admin_headers)
    assert back.status_code == 409


def test_delete_survey_with_submissions_needs_force(client, make_survey, survey_responses, admin_headers, test_engine):
    survey = make_survey(size=2)
    submit(client, survey_responses(survey["id"])[0].token, {question_ids(survey)[0]: "Yes"})
    client.post(f"/api/surveys/{survey['id']}/remind", headers=admin_headers)

    res = client.delete(f"/api/surveys/{survey['id']}", headers=admin_headers)
    assert res.status_code == 409
    assert res.json()["detail"]["submitted_count"] == 1
    assert res.json()["detail"]["total_responses"] == 2

    res = client.delete(f"/api/surveys/{survey['id']}?force=true", headers=admin_headers)
    assert res.status_code == 200
    with Session(test_engine) as s:
        assert s.get(Survey, survey["id"]) is None
        assert s.exec(select(Response).where(Response.survey_id == survey["id"])).all() == []
        assert s.exec(select(Reminder).where(Reminder.survey_id == survey["id"])).all() == []
    assert client.get(f"/api/surveys/{survey['id']}", headers=admin_headers).status_code == 404


def test_admin_edit_response_applies_display_rules(client, make_survey, survey_responses, admin_headers):
    survey = make_survey(size=1)
    q_yes, _, _, q_why = question_ids(survey)
    row = survey_responses(survey["id"])[0]
    submit(client, row.token, {q_yes: "No", q_why: "Too crowded"})

    res = client.put(
        f"/api/surveys/{survey['id']}/responses/{row.id}",
        json={"answers": {str(q_yes): "Yes", str(q_why): "Too crowded", "9999": "x"}},
        headers=admin_headers,
    )
    assert res.status_code == 200
    assert res.json()["answers_stored"] == 1
    body = client.get(f"/api/responses/{row.token}").json()
    assert body["existing_answers"] == {str(q_yes): "Yes"}


def test_survey_list_stats(client, make_survey, survey_responses, admin_headers):
    survey = make_survey(size=4)
    submit(client, survey_responses(survey["id"])[0].token, {question_ids(survey)[0]: "Yes"})
    listed = client.get("/api/surveys", headers=admin_headers).json()
    assert len(listed) == 1
    assert listed[0]["submitted_count"] == 1
    assert listed[0]["response_rate"] == 25
