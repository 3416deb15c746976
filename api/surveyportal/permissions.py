import logging
from sqlmodel import Session, select
from .models import Admin

logger = logging.getLogger(__name__)

# Upper bound on parent hops; only reachable if stored data contains a cycle.
MAX_INVITE_DEPTH = 1000


def is_in_invite_tree(session: Session, ancestor_id: int, descendant_id: int) -> bool:
    current_id = descendant_id
    for _ in range(MAX_INVITE_DEPTH):
        row = session.get(Admin, current_id)
        if row is None:
            return False
        if row.invited_by_id is None:
            return False
        if row.invited_by_id == ancestor_id:
            return True
        current_id = row.invited_by_id
    logger.error("invite chain from admin %s exceeded %s hops", descendant_id, MAX_INVITE_DEPTH)
    return False


def can_manage(session: Session, admin_id: int, target_id: int) -> bool:
    if admin_id == target_id:
        return False
    return is_in_invite_tree(session, admin_id, target_id)


def get_managed_admins(session: Session, admin_id: int) -> set[int]:
    ids = session.exec(select(Admin.id)).all()
    return {
        other_id
        for other_id in ids
        if other_id != admin_id and is_in_invite_tree(session, admin_id, other_id)
    }
