import hashlib, hmac, logging, secrets
from typing import Optional
from fastapi import Cookie, Depends, Header
from fastapi import Response as HTTPResponse
from itsdangerous import BadSignature, SignatureExpired
from pydantic import BaseModel
from sqlmodel import Session

from .config import COOKIE_SECURE, SESSION_COOKIE_NAME, SESSION_MAX_AGE_SECONDS
from .db import get_session
from .errors import Forbidden, Unauthorized
from .models import Admin
from .utils import make_token, read_token

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 240_000


class AdminContext(BaseModel):
    admin_id: int
    email: str
    role: str

    @property
    def is_full(self) -> bool:
        return self.role == "FULL"


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    if not stored or not password:
        return False
    try:
        algorithm, iterations, salt, expected = stored.split("$", 3)
        rounds = int(iterations)
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), rounds)
    return hmac.compare_digest(digest.hex(), expected)


def issue_session_token(admin: Admin) -> str:
    return make_token({"admin_id": admin.id, "email": admin.email, "role": admin.role})


def set_session_cookie(response: HTTPResponse, token: str):
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=SESSION_MAX_AGE_SECONDS,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
    )


def clear_session_cookie(response: HTTPResponse):
    response.delete_cookie(SESSION_COOKIE_NAME, httponly=True, secure=COOKIE_SECURE, samesite="lax")


def resolve_admin_context(
    authorization: Optional[str] = Header(default=None),
    auth_cookie: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE_NAME),
    session: Session = Depends(get_session),
) -> AdminContext:
    candidate = None
    if authorization and authorization.lower().startswith("bearer "):
        candidate = authorization[7:].strip()
    candidate = candidate or auth_cookie
    if not candidate:
        raise Unauthorized("Unauthorized")
    try:
        data = read_token(candidate, max_age=SESSION_MAX_AGE_SECONDS)
    except SignatureExpired:
        raise Unauthorized("Session expired")
    except BadSignature:
        raise Unauthorized("Invalid token")
    admin = session.get(Admin, data.get("admin_id")) if isinstance(data, dict) else None
    if not admin:
        raise Unauthorized("Unauthorized")
    # stored role wins over whatever the token was minted with
    return AdminContext(admin_id=admin.id, email=admin.email, role=admin.role)


def require_full_access(context: AdminContext = Depends(resolve_admin_context)) -> AdminContext:
    if not context.is_full:
        raise Forbidden("Insufficient permissions")
    return context
