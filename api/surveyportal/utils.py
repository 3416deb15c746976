import json, secrets
from datetime import datetime, timezone
from zoneinfo import ZoneInfo
from itsdangerous import URLSafeTimedSerializer
from .config import SECRET_KEY, DISPLAY_TIMEZONE

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value: datetime | None) -> datetime | None:
    # sqlite drops the offset; stored values are UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def new_token() -> str:
    return secrets.token_hex(32)

def make_token(payload: dict) -> str:
    s = URLSafeTimedSerializer(SECRET_KEY, salt="admin-session")
    return s.dumps(payload)

def read_token(token: str, max_age: int) -> dict:
    s = URLSafeTimedSerializer(SECRET_KEY, salt="admin-session")
    return s.loads(token, max_age=max_age)

WRITE_IN_CHOICE = "__WRITE_IN__"

def is_write_in(value) -> bool:
    return isinstance(value, dict) and value.get("choice") == WRITE_IN_CHOICE

def is_blank_answer(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and value == "":
        return True
    if is_write_in(value):
        return not str(value.get("writeIn") or "").strip()
    if isinstance(value, (list, dict)) and len(value) == 0:
        return True
    return False

def encode_answer_value(value) -> str:
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)

def decode_answer_value(raw: str):
    """Inverse of encode_answer_value for structured values.

    Only JSON arrays and objects are decoded; any other stored text is
    returned untouched so free-text answers like "1e3" or "null" keep
    their original form.
    """
    if raw is None:
        return None
    stripped = raw.strip()
    if not stripped or stripped[0] not in "[{":
        return raw
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return raw

def load_json_column(raw: str | None, default=None):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default

def format_display_time(value: datetime | None) -> str:
    if value is None:
        return ""
    local = as_utc(value).astimezone(ZoneInfo(DISPLAY_TIMEZONE))
    hour = local.strftime("%I").lstrip("0") or "12"
    return f"{local.strftime('%B')} {local.day}, {local.year} at {hour}:{local.strftime('%M %p')} {local.tzname()}"
