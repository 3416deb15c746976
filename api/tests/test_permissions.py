from surveyportal.models import Admin
from surveyportal.permissions import can_manage, get_managed_admins, is_in_invite_tree


def build_chain(make_admin):
    root = make_admin("root@hoa-board.org")
    a = make_admin("a@hoa-board.org", invited_by=root.id)
    b = make_admin("b@hoa-board.org", invited_by=a.id)
    c = make_admin("c@hoa-board.org", invited_by=b.id)
    return root, a, b, c


def test_ancestors_manage_descendants(session, make_admin):
    root, a, b, c = build_chain(make_admin)
    assert can_manage(session, root.id, c.id)
    assert can_manage(session, a.id, c.id)
    assert can_manage(session, b.id, c.id)
    assert not can_manage(session, c.id, a.id)
    assert not can_manage(session, c.id, root.id)


def test_unrelated_admins_cannot_manage_each_other(session, make_admin):
    root, a, b, c = build_chain(make_admin)
    sibling = make_admin("sibling@hoa-board.org", invited_by=root.id)
    other_root = make_admin("other@hoa-board.org")
    assert not can_manage(session, sibling.id, a.id)
    assert not can_manage(session, a.id, sibling.id)
    assert not can_manage(session, other_root.id, c.id)
    assert not can_manage(session, c.id, other_root.id)


def test_nobody_manages_themselves(session, make_admin):
    for admin in build_chain(make_admin):
        assert not can_manage(session, admin.id, admin.id)


def test_missing_rows_fail_closed(session, make_admin):
    root, a, b, c = build_chain(make_admin)
    assert not can_manage(session, root.id, 9999)
    assert not is_in_invite_tree(session, 9999, c.id)

    # a hole in the chain cuts off everything above it
    session.delete(session.get(Admin, a.id))
    session.commit()
    assert not can_manage(session, root.id, c.id)
    assert can_manage(session, b.id, c.id)


def test_cycle_terminates(session, make_admin):
    x = make_admin("x@hoa-board.org")
    y = make_admin("y@hoa-board.org", invited_by=x.id)
    x.invited_by_id = y.id
    session.add(x)
    session.commit()
    outsider = make_admin("outsider@hoa-board.org")
    assert not is_in_invite_tree(session, outsider.id, x.id)


def test_managed_admins_are_strict_descendants(session, make_admin):
    root, a, b, c = build_chain(make_admin)
    make_admin("sibling@hoa-board.org", invited_by=root.id)
    assert get_managed_admins(session, a.id) == {b.id, c.id}
    assert get_managed_admins(session, c.id) == set()
    assert root.id not in get_managed_admins(session, root.id)
    assert len(get_managed_admins(session, root.id)) == 4
