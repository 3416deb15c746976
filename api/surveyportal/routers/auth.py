import logging
from datetime import timedelta

import pyotp
from fastapi import APIRouter, Depends
from fastapi import Response as HTTPResponse
from fastapi.responses import JSONResponse
from sqlmodel import Session, select

from ..auth import (
    AdminContext,
    clear_session_cookie,
    hash_password,
    issue_session_token,
    require_full_access,
    resolve_admin_context,
    set_session_cookie,
    verify_password,
)
from ..config import (
    FORGOT_PASSWORD_EXPIRY_HOURS,
    HOA_NAME,
    INVITE_EXPIRY_DAYS,
    RESET_TOKEN_EXPIRY_HOURS,
    VERIFICATION_EXPIRY_HOURS,
)
from ..db import get_session
from ..email import OutgoingEmail, deliver
from ..errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationFailed
from ..models import Admin, VerificationToken
from .. import notifications
from ..permissions import can_manage
from ..schemas import (
    AcceptInvite,
    EmailOnly,
    InviteCreate,
    LoginRequest,
    ResetPassword,
    SignupRequest,
    TargetAdmin,
)
from ..utils import as_utc, new_token, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

MIN_PASSWORD_LENGTH = 8
FORGOT_PASSWORD_MESSAGE = "If an account exists for that email, a password reset link has been sent."
VERIFICATION_MESSAGE = "If that account still needs verification, a new link has been sent."


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def serialize_admin(admin: Admin):
    return {
        "id": admin.id,
        "email": admin.email,
        "name": admin.name,
        "role": admin.role,
        "two_factor": admin.two_factor,
        "invited_by_id": admin.invited_by_id,
        "pending": not admin.password_hash,
    }


def _send(message: OutgoingEmail, what: str) -> bool:
    try:
        deliver(message)
    except Exception:
        logger.exception("failed to send %s email to %s", what, message.to)
        return False
    return True


def _find_admin(session: Session, email: str):
    return session.exec(select(Admin).where(Admin.email == _normalize_email(email))).first()


def _sweep_verification_tokens(session: Session):
    expired = session.exec(select(VerificationToken).where(VerificationToken.expires_at < utcnow())).all()
    for row in expired:
        session.delete(row)
    if expired:
        session.commit()


def _issue_verification(session: Session, admin: Admin) -> VerificationToken:
    for old in session.exec(select(VerificationToken).where(VerificationToken.email == admin.email)).all():
        session.delete(old)
    entry = VerificationToken(
        token=new_token(),
        email=admin.email,
        expires_at=utcnow() + timedelta(hours=VERIFICATION_EXPIRY_HOURS),
    )
    session.add(entry)
    session.commit()
    session.refresh(entry)
    return entry


def _managed_target(session: Session, ctx: AdminContext, admin_id: int) -> Admin:
    target = session.get(Admin, admin_id)
    if not target:
        raise NotFound("Admin not found")
    if not can_manage(session, ctx.admin_id, target.id):
        raise Forbidden("You can only manage admins you invited")
    return target


def _start_password_reset(session: Session, admin: Admin, hours: int, clear_password: bool = False):
    admin.reset_token = new_token()
    admin.reset_token_expires = utcnow() + timedelta(hours=hours)
    if clear_password:
        admin.password_hash = ""
    session.add(admin)
    session.commit()
    session.refresh(admin)


@router.post("/signup")
def signup(body: SignupRequest, session: Session = Depends(get_session)):
    if session.exec(select(Admin)).first():
        raise Forbidden("Signup is closed. Ask an existing administrator for an invite.")
    admin = Admin(
        email=_normalize_email(body.email),
        name=body.name.strip(),
        password_hash=hash_password(body.password),
        role="LIMITED",
    )
    session.add(admin)
    session.commit()
    session.refresh(admin)
    logger.info("first administrator %s signed up", admin.id)
    entry = _issue_verification(session, admin)
    _send(notifications.email_verification(admin, entry.token), "verification")
    return {"ok": True, "needs_verification": True, "admin": serialize_admin(admin)}


@router.get("/verify")
def verify_email(token: str, email: str, session: Session = Depends(get_session)):
    _sweep_verification_tokens(session)
    entry = session.exec(
        select(VerificationToken).where(
            VerificationToken.token == token,
            VerificationToken.email == _normalize_email(email),
            VerificationToken.purpose == "verify-email",
        )
    ).first()
    if not entry:
        raise ValidationFailed("Invalid or expired verification link")
    session.delete(entry)
    admin = _find_admin(session, email)
    if admin and admin.role == "LIMITED":
        admin.role = "FULL"
        session.add(admin)
        logger.info("admin %s verified", admin.id)
    session.commit()
    return {"ok": True, "message": "Email verified. You can now log in."}


@router.post("/resend-verification")
def resend_verification(body: EmailOnly, session: Session = Depends(get_session)):
    admin = _find_admin(session, body.email)
    if admin and admin.role == "LIMITED":
        entry = _issue_verification(session, admin)
        _send(notifications.email_verification(admin, entry.token), "verification")
    return {"ok": True, "message": VERIFICATION_MESSAGE}


@router.post("/login")
def login(body: LoginRequest, response: HTTPResponse, session: Session = Depends(get_session)):
    admin = _find_admin(session, body.email)
    if not admin or not verify_password(body.password, admin.password_hash):
        raise Unauthorized("Invalid credentials")
    if admin.role == "LIMITED":
        return JSONResponse(
            status_code=403,
            content={
                "detail": "Please verify your email address to activate your account.",
                "needs_verification": True,
            },
        )
    if admin.two_factor:
        if not body.code:
            return {"requires_two_factor": True}
        if not admin.secret_2fa or not pyotp.TOTP(admin.secret_2fa).verify(body.code, valid_window=1):
            raise Unauthorized("Invalid two-factor code")
    token = issue_session_token(admin)
    set_session_cookie(response, token)
    logger.info("admin %s logged in", admin.id)
    return {"token": token, "admin": serialize_admin(admin)}


@router.post("/logout")
def logout(response: HTTPResponse):
    clear_session_cookie(response)
    return {"ok": True}


@router.get("/me")
def me(session: Session = Depends(get_session), ctx: AdminContext = Depends(resolve_admin_context)):
    return serialize_admin(session.get(Admin, ctx.admin_id))


@router.post("/2fa/setup")
def setup_two_factor(session: Session = Depends(get_session), ctx: AdminContext = Depends(resolve_admin_context)):
    admin = session.get(Admin, ctx.admin_id)
    if admin.two_factor:
        raise Conflict("Two-factor authentication is already enabled")
    admin.secret_2fa = pyotp.random_base32()
    session.add(admin)
    session.commit()
    uri = pyotp.TOTP(admin.secret_2fa).provisioning_uri(name=admin.email, issuer_name=HOA_NAME)
    return {"secret": admin.secret_2fa, "provisioning_uri": uri}


@router.post("/invite")
def invite(
    body: InviteCreate,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    email = _normalize_email(body.email)
    if _find_admin(session, email):
        raise Conflict("Admin already exists")
    admin = Admin(
        email=email,
        name=body.name.strip(),
        password_hash="",
        role=body.role,
        invited_by_id=ctx.admin_id,
        invite_token=new_token(),
        invite_expires=utcnow() + timedelta(days=INVITE_EXPIRY_DAYS),
    )
    session.add(admin)
    session.commit()
    session.refresh(admin)
    logger.info("admin %s invited admin %s", ctx.admin_id, admin.id)
    inviter = session.get(Admin, ctx.admin_id)
    sent = _send(notifications.admin_invite(admin, inviter), "invite")
    return {"ok": True, "email_sent": sent, "admin": serialize_admin(admin)}


@router.post("/accept-invite")
def accept_invite(body: AcceptInvite, response: HTTPResponse, session: Session = Depends(get_session)):
    admin = session.exec(select(Admin).where(Admin.invite_token == body.token)).first()
    if not admin or not admin.invite_expires or as_utc(admin.invite_expires) < utcnow():
        raise ValidationFailed("Invalid or expired invite")
    admin.password_hash = hash_password(body.password)
    admin.invite_token = None
    admin.invite_expires = None
    session.add(admin)
    session.commit()
    session.refresh(admin)
    logger.info("admin %s accepted invite", admin.id)
    token = issue_session_token(admin)
    set_session_cookie(response, token)
    return {"token": token, "admin": serialize_admin(admin)}


@router.post("/resend-invite")
def resend_invite(
    body: TargetAdmin,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    admin = _managed_target(session, ctx, body.admin_id)
    if admin.password_hash:
        raise Conflict("Admin has already accepted the invite")
    admin.invite_token = new_token()
    admin.invite_expires = utcnow() + timedelta(days=INVITE_EXPIRY_DAYS)
    session.add(admin)
    session.commit()
    session.refresh(admin)
    sent = _send(notifications.admin_invite(admin, session.get(Admin, ctx.admin_id)), "invite")
    return {"ok": True, "email_sent": sent}


@router.post("/forgot-password")
def forgot_password(body: EmailOnly, session: Session = Depends(get_session)):
    admin = _find_admin(session, body.email)
    if admin:
        _start_password_reset(session, admin, FORGOT_PASSWORD_EXPIRY_HOURS)
        _send(notifications.password_reset(admin), "password reset")
    return {"ok": True, "message": FORGOT_PASSWORD_MESSAGE}


@router.post("/reset-password")
def reset_password(body: ResetPassword, session: Session = Depends(get_session)):
    if len(body.password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed("Password must be at least 8 characters long")
    admin = session.exec(select(Admin).where(Admin.reset_token == body.token)).first()
    if not admin:
        raise ValidationFailed("Invalid or expired reset token")
    if not admin.reset_token_expires or as_utc(admin.reset_token_expires) < utcnow():
        admin.reset_token = None
        admin.reset_token_expires = None
        session.add(admin)
        session.commit()
        raise ValidationFailed("Reset token has expired")
    admin.password_hash = hash_password(body.password)
    admin.reset_token = None
    admin.reset_token_expires = None
    session.add(admin)
    session.commit()
    logger.info("admin %s reset password", admin.id)
    return {"ok": True, "message": "Password reset successfully"}


@router.post("/reset-my-password")
def reset_my_password(
    response: HTTPResponse,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(resolve_admin_context),
):
    admin = session.get(Admin, ctx.admin_id)
    _start_password_reset(session, admin, RESET_TOKEN_EXPIRY_HOURS, clear_password=True)
    sent = _send(notifications.password_reset(admin, requested_by=admin), "password reset")
    clear_session_cookie(response)
    return {"ok": True, "email_sent": sent}


@router.post("/reset-admin-password")
def reset_admin_password(
    body: TargetAdmin,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(require_full_access),
):
    admin = _managed_target(session, ctx, body.admin_id)
    _start_password_reset(session, admin, RESET_TOKEN_EXPIRY_HOURS, clear_password=True)
    logger.info("admin %s reset password of admin %s", ctx.admin_id, admin.id)
    sent = _send(notifications.password_reset(admin, requested_by=session.get(Admin, ctx.admin_id)), "password reset")
    return {"ok": True, "email_sent": sent}
