import logging
from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy import text, inspect
from .config import DATABASE_URL

logger = logging.getLogger(__name__)

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, echo=False, pool_pre_ping=True, connect_args=_connect_args)

def init_db():
    from .models import Admin, MemberList, Member, MemberListLink, Survey, Question, Response, Answer, Reminder, VerificationToken
    SQLModel.metadata.create_all(engine)
    _ensure_survey_notify_columns()
    _ensure_question_write_in_columns()

def get_session():
    with Session(engine) as session:
        yield session

def _add_missing_columns(table: str, wanted: dict[str, str]):
    inspector = inspect(engine)
    try:
        columns = [col["name"] for col in inspector.get_columns(table)]
    except Exception:
        logger.warning("could not inspect %s table", table, exc_info=True)
        return
    missing = [f"{name} {ddl}" for name, ddl in wanted.items() if name not in columns]
    if not missing:
        return
    with engine.begin() as conn:
        for column_sql in missing:
            logger.info("adding %s column %s", table, column_sql.split()[0])
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column_sql}"))

def _ensure_survey_notify_columns():
    # databases created before min-response notifications existed
    _add_missing_columns("survey", {
        "notify_on_min_responses": "BOOLEAN NOT NULL DEFAULT 0",
        "minimal_notified_at": "TIMESTAMP",
    })

def _ensure_question_write_in_columns():
    _add_missing_columns("question", {
        "write_in": "BOOLEAN NOT NULL DEFAULT 0",
        "write_in_count": "INTEGER NOT NULL DEFAULT 0",
    })
