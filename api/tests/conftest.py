import os
from datetime import timedelta
from typing import Dict, List

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, create_engine, select

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")

from surveyportal.main import app  # noqa: E402
from surveyportal import db as db_module  # noqa: E402
from surveyportal.db import get_session  # noqa: E402
from surveyportal import email as email_module  # noqa: E402
from surveyportal.auth import hash_password, issue_session_token  # noqa: E402
from surveyportal.encryption import encrypt_member_fields  # noqa: E402
from surveyportal.models import Admin, Member, MemberList, MemberListLink, Response  # noqa: E402
from surveyportal.utils import utcnow  # noqa: E402

DEFAULT_PASSWORD = "correct-horse-1"


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    return engine


@pytest.fixture
def setup_db(test_engine):
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def session(test_engine, setup_db):
    with Session(test_engine) as s:
        yield s


class Outbox(list):
    """Captured messages; addresses in ``fail_for`` raise instead of sending."""

    def __init__(self):
        super().__init__()
        self.fail_for = set()

    def to(self, address) -> List[Dict]:
        return [m for m in self if m["to"] == address]


@pytest.fixture
def sent_emails(monkeypatch):
    outbox = Outbox()

    def fake_send_email(to, subject, body, html_body=None, sender_name=None, reply_to=None):
        if to in outbox.fail_for:
            raise RuntimeError(f"smtp rejected {to}")
        outbox.append({"to": to, "subject": subject, "text": body, "html": html_body})

    monkeypatch.setattr(email_module, "send_email", fake_send_email)
    return outbox


@pytest.fixture
def client(test_engine, setup_db, sent_emails):
    db_module.engine = test_engine

    def override_session():
        with Session(test_engine) as s:
            yield s

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_admin(session):
    def _make(email, role="FULL", invited_by=None, password=DEFAULT_PASSWORD, name=None):
        admin = Admin(
            email=email,
            name=name or email.split("@")[0].title(),
            role=role,
            invited_by_id=invited_by,
            password_hash=hash_password(password) if password else "",
        )
        session.add(admin)
        session.commit()
        session.refresh(admin)
        return admin

    return _make


def auth_headers(admin: Admin) -> Dict[str, str]:
    return {"Authorization": f"Bearer {issue_session_token(admin)}"}


@pytest.fixture
def root_admin(make_admin):
    return make_admin("root@hoa-board.org")


@pytest.fixture
def admin_headers(root_admin):
    return auth_headers(root_admin)


@pytest.fixture
def make_member_list(session):
    def _make(size, name="Residents"):
        member_list = MemberList(name=name)
        session.add(member_list)
        session.commit()
        session.refresh(member_list)
        for index in range(1, size + 1):
            member = Member(**encrypt_member_fields({"lot": str(index), "name": f"Owner {index}", "email": f"owner{index}@example.com"}))
            session.add(member)
            session.flush()
            session.add(MemberListLink(member_list_id=member_list.id, member_id=member.id))
        session.commit()
        return member_list

    return _make


def survey_payload(member_list_id, **overrides):
    now = utcnow()
    payload = {
        "title": "Pool Hours",
        "description": "<p>Tell us about the <b>pool</b></p><script>alert(1)</script>",
        "opens_at": (now - timedelta(days=1)).isoformat(),
        "closes_at": (now + timedelta(days=7)).isoformat(),
        "member_list_id": member_list_id,
        "questions": [
            {"text": "Extend hours?", "type": "YES_NO", "order": 0},
            {"text": "Which days?", "type": "MULTI_MULTI", "order": 1, "options": ["A", "B", "C"]},
            {"text": "Rate the pool", "type": "RATING_5", "order": 2},
            {
                "text": "Why not?",
                "type": "PARAGRAPH",
                "order": 3,
                "show_when": {"triggerOrder": 0, "operator": "equals", "value": "No"},
            },
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_survey(client, admin_headers, make_member_list):
    def _make(size=3, **overrides):
        member_list = make_member_list(size)
        res = client.post("/api/surveys", json=survey_payload(member_list.id, **overrides), headers=admin_headers)
        assert res.status_code == 200, res.text
        return client.get(f"/api/surveys/{res.json()['id']}", headers=admin_headers).json()

    return _make


@pytest.fixture
def survey_responses(session):
    def _load(survey_id):
        # rows are written through the app's own sessions
        session.expire_all()
        return session.exec(select(Response).where(Response.survey_id == survey_id).order_by(Response.id)).all()

    return _load


def question_ids(survey) -> List[int]:
    return [q["id"] for q in sorted(survey["questions"], key=lambda q: q["order"])]
