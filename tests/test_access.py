import itertools
from datetime import timedelta

import pytest
from sqlalchemy import select

from mentor_app import db
from mentor_app.access import (
    EDIT, READ, UserGrant, check_form, check_response, check_role_assignment, check_student,
    check_student_create, check_user, find_form_grant, resolve_form_access, visible_forms,
    visible_students,
)
from mentor_app.forms.services import create_form
from mentor_app.grants import grant_users, reconcile_student_access
from mentor_app.models import Student, User, UserFormAccess, utc_now
from mentor_app.responses.services import save_response
from mentor_app.roles import get_role

_seq = itertools.count(1)


def add_user(role, region=None):
    user = User(email=f"{role}-{next(_seq)}@example.com", name=role, region=region, role_id=get_role(role).id)
    db.session.add(user)
    db.session.commit()
    return user


def add_student(region):
    student = Student(name=f"Student {next(_seq)}", region=region)
    db.session.add(student)
    db.session.commit()
    return student


def add_form(author, seed_grants=True, **data):
    data.setdefault("title", "Intake survey")
    data.setdefault("fields", [{"field_name": "q1", "field_label": "Question", "field_type": "text"}])
    return create_form(author, data, seed_grants=seed_grants)


def test_owner_gets_edit_without_any_grant(ctx):
    owner = add_user("candidate")
    form = add_form(owner, seed_grants=False)
    decision = resolve_form_access(owner, form)
    assert decision.permits(EDIT)
    assert decision.reason == "owner"


def test_elevated_role_beats_missing_grants(ctx):
    author = add_user("class-teacher")
    admin = add_user("admin")
    form = add_form(author, seed_grants=False)
    assert check_form(admin, form, "edit").allowed


def test_default_role_grants(ctx):
    author = add_user("class-teacher")
    form = add_form(author)
    manager = add_user("manager")
    teacher = add_user("teacher")
    registrant = add_user("new-registrant")

    assert check_form(manager, form, "edit").allowed
    assert check_form(teacher, form, "read").access_type == READ
    assert not check_form(teacher, form, "edit").allowed
    assert check_form(registrant, form, "read").allowed


def test_no_grant_means_deny(ctx):
    author = add_user("class-teacher")
    form = add_form(author, seed_grants=False)
    outsider = add_user("candidate")
    decision = check_form(outsider, form, "read")
    assert not decision
    assert form not in db.session.execute(visible_forms(outsider)).scalars().all()


def test_user_grant_wins_over_weaker_role_grant(ctx):
    author = add_user("admin")
    form = add_form(author)
    candidate = add_user("candidate")
    assert resolve_form_access(candidate, form).access_type == READ

    db.session.add(UserFormAccess(form_id=form.id, user_id=candidate.id, access_type=EDIT))
    db.session.commit()
    grant = find_form_grant(candidate, form.id)
    assert isinstance(grant, UserGrant)
    assert grant.access_type == EDIT
    assert check_form(candidate, form, "edit").allowed


def test_user_grant_wins_a_tie(ctx):
    author = add_user("admin")
    form = add_form(author)
    candidate = add_user("candidate")
    grant_users(form, [candidate.id], author.id)
    grant = find_form_grant(candidate, form.id)
    assert grant == UserGrant(candidate.id, READ)


def test_task_assignees_cannot_edit_the_task(ctx):
    author = add_user("admin")
    task = create_form(author, {"title": "Log"}, form_type="task", seed_grants=False)
    assignee = add_user("teacher")
    grant_users(task, [assignee.id], author.id)
    assert check_form(assignee, task, "read").allowed
    assert not check_form(assignee, task, "edit").allowed


def test_expired_and_inactive_grants_are_ignored(ctx):
    author = add_user("admin")
    form = add_form(author, seed_grants=False)
    expired = add_user("candidate")
    revoked = add_user("candidate")
    db.session.add(UserFormAccess(
        form_id=form.id, user_id=expired.id, access_type=READ,
        expires_at=utc_now() - timedelta(days=1),
    ))
    db.session.add(UserFormAccess(form_id=form.id, user_id=revoked.id, access_type=READ, is_active=False))
    db.session.commit()

    assert find_form_grant(expired, form.id) is None
    assert not check_form(expired, form, "read")
    assert not check_form(revoked, form, "read")


def test_only_form_admins_delete_or_manage_permissions(ctx):
    owner = add_user("class-teacher")
    form = add_form(owner)
    admin = add_user("admin")
    assert not check_form(owner, form, "delete")
    assert not check_form(owner, form, "manage_permissions")
    assert check_form(admin, form, "delete")


def test_response_access(ctx):
    author = add_user("class-teacher")
    form = add_form(author, status="active")
    respondent = add_user("teacher")
    other = add_user("teacher")
    response = save_response(form, respondent, {"q1": "hello"})

    assert check_response(respondent, response, "edit").allowed
    assert not check_response(other, response, "read").allowed
    assert check_response(author, response, "review").allowed
    assert not check_response(respondent, response, "review").allowed


def test_manager_sees_only_own_region(ctx):
    manager = add_user("manager", region="North")
    north = [add_student("North") for _ in range(3)]
    south = add_student("South")
    add_student(None)

    rows = db.session.execute(visible_students(manager)).scalars().all()
    assert {s.id for s in rows} == {s.id for s in north}
    assert all(s.region == "North" for s in rows)
    assert check_student(manager, north[0], "edit").allowed
    assert not check_student(manager, south, "read").allowed


def test_manager_without_region_sees_nothing(ctx):
    manager = add_user("manager")
    add_student("North")
    assert db.session.execute(visible_students(manager)).scalars().all() == []
    assert not check_student_create(manager, "North")
    assert not check_student_create(manager, None)


def test_manager_creates_only_in_own_region(ctx):
    manager = add_user("manager", region="North")
    assert check_student_create(manager, "North").allowed
    assert not check_student_create(manager, "South").allowed


def test_teacher_reads_only_assigned_students(ctx):
    teacher = add_user("teacher")
    mine = add_student("North")
    other = add_student("North")
    reconcile_student_access(teacher.id, [mine.id])

    rows = db.session.execute(visible_students(teacher)).scalars().all()
    assert [s.id for s in rows] == [mine.id]
    assert check_student(teacher, mine, "read").access_type == READ
    assert not check_student(teacher, mine, "edit").allowed
    assert not check_student(teacher, other, "read").allowed
    assert not check_student_create(teacher, "North").allowed


def test_class_teacher_sees_every_student(ctx):
    class_teacher = add_user("class-teacher")
    add_student("North")
    add_student(None)
    assert len(db.session.execute(visible_students(class_teacher)).scalars().all()) == 2


def test_user_management_rules(ctx):
    admin = add_user("admin")
    manager = add_user("manager")
    teacher = add_user("teacher")

    assert not check_user(admin, admin, "delete").allowed
    assert check_user(teacher, teacher, "edit").allowed
    assert not check_user(teacher, manager, "view").allowed
    assert not check_user(manager, admin, "edit").allowed
    assert check_user(manager, teacher, "delete").allowed
    assert check_user(admin, manager, "edit").allowed


@pytest.mark.parametrize("actor,target,allowed", [
    ("manager", "admin", False),
    ("manager", "manager", True),
    ("manager", "teacher", True),
    ("admin", "root", False),
    ("teacher", "candidate", False),
])
def test_role_assignment(ctx, actor, target, allowed):
    user = add_user(actor)
    assert check_role_assignment(user, get_role(target)).allowed is allowed


def test_grant_rows_unique_per_form_and_user(ctx):
    author = add_user("admin")
    form = add_form(author, seed_grants=False)
    candidate = add_user("candidate")
    grant_users(form, [candidate.id], author.id)
    grant_users(form, [candidate.id], author.id)
    rows = db.session.execute(
        select(UserFormAccess).where(UserFormAccess.form_id == form.id, UserFormAccess.user_id == candidate.id)
    ).scalars().all()
    assert len(rows) == 1
