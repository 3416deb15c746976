import logging
import pyotp
from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from ..auth import AdminContext, resolve_admin_context
from ..db import get_session
from ..errors import Forbidden, NotFound, ValidationFailed
from ..models import Admin, Survey
from ..permissions import can_manage, get_managed_admins
from ..schemas import AdminUpdate
from .auth import serialize_admin

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
def list_admins(session: Session = Depends(get_session), ctx: AdminContext = Depends(resolve_admin_context)):
    visible = get_managed_admins(session, ctx.admin_id) | {ctx.admin_id}
    admins = session.exec(select(Admin).where(Admin.id.in_(visible)).order_by(Admin.email)).all()
    inviters = {}
    inviter_ids = {a.invited_by_id for a in admins if a.invited_by_id}
    if inviter_ids:
        for inviter in session.exec(select(Admin).where(Admin.id.in_(inviter_ids))).all():
            inviters[inviter.id] = {"name": inviter.name, "email": inviter.email}
    return [
        {
            **serialize_admin(admin),
            "invite_expires": admin.invite_expires,
            "invited_by": inviters.get(admin.invited_by_id),
        }
        for admin in admins
    ]


def _enable_two_factor(admin: Admin, code):
    if not admin.secret_2fa:
        raise ValidationFailed("Run two-factor setup before enabling it")
    if not code or not pyotp.TOTP(admin.secret_2fa).verify(code, valid_window=1):
        raise ValidationFailed("Invalid two-factor code")
    admin.two_factor = True


@router.patch("/{admin_id}")
def update_admin(
    admin_id: int,
    body: AdminUpdate,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(resolve_admin_context),
):
    target = session.get(Admin, admin_id)
    if not target:
        raise NotFound("Admin not found")
    if target.id == ctx.admin_id:
        # self-service is limited to the two-factor toggle
        if body.role is not None and body.role != target.role:
            raise Forbidden("You cannot change your own role")
    else:
        if not ctx.is_full:
            raise Forbidden("Insufficient permissions")
        if not can_manage(session, ctx.admin_id, target.id):
            raise Forbidden("You can only manage admins you invited")
        if body.role is not None:
            target.role = body.role
    if body.two_factor is not None:
        if body.two_factor and not target.two_factor:
            if target.id != ctx.admin_id:
                raise Forbidden("Only the account owner can enable two-factor authentication")
            _enable_two_factor(target, body.code)
        elif not body.two_factor:
            target.two_factor = False
            target.secret_2fa = None
    session.add(target)
    session.commit()
    session.refresh(target)
    logger.info("admin %s updated admin %s", ctx.admin_id, target.id)
    return serialize_admin(target)


@router.delete("/{admin_id}")
def delete_admin(
    admin_id: int,
    session: Session = Depends(get_session),
    ctx: AdminContext = Depends(resolve_admin_context),
):
    if admin_id == ctx.admin_id:
        raise ValidationFailed("You cannot delete your own account")
    target = session.get(Admin, admin_id)
    if not target:
        raise NotFound("Admin not found")
    if not ctx.is_full:
        raise Forbidden("Insufficient permissions")
    if not can_manage(session, ctx.admin_id, target.id):
        raise Forbidden("You can only manage admins you invited")
    # keep the invite tree connected
    for invitee in session.exec(select(Admin).where(Admin.invited_by_id == target.id)).all():
        invitee.invited_by_id = target.invited_by_id
        session.add(invitee)
    for survey in session.exec(select(Survey).where(Survey.created_by_id == target.id)).all():
        survey.created_by_id = None
        session.add(survey)
    session.delete(target)
    session.commit()
    logger.info("admin %s deleted admin %s", ctx.admin_id, admin_id)
    return {"ok": True}
