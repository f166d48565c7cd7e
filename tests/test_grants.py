import pytest
from sqlalchemy import select

from mentor_app import db
from mentor_app.errors import NotFound, ValidationError
from mentor_app.forms.services import create_form
from mentor_app.grants import (
    STUDENT_ACCESS, active_assignees, assigned_student_ids, grant_users, reconcile,
    reconcile_student_access, reconcile_task_assignees, replace_role_grants, revoke_users,
    role_grants,
)
from mentor_app.models import Student, User, UserFormAccess
from mentor_app.roles import get_role


@pytest.fixture()
def teacher(ctx):
    user = User(email="t1@example.com", name="T1", role_id=get_role("teacher").id)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture()
def students(ctx):
    rows = {name: Student(name=name, region="North") for name in ("S1", "S2", "S3", "S4")}
    db.session.add_all(rows.values())
    db.session.commit()
    return {name: s.id for name, s in rows.items()}


def test_bulk_reassignment_diffs_the_set(teacher, students):
    s = students
    first = reconcile_student_access(teacher.id, [s["S1"], s["S2"], s["S3"]])
    assert first == {"added": 3, "removed": 0}

    second = reconcile_student_access(teacher.id, [s["S2"], s["S3"], s["S4"]])
    assert second == {"added": 1, "removed": 1}
    assert assigned_student_ids(teacher.id) == {s["S2"], s["S3"], s["S4"]}


def test_reconcile_twice_is_a_noop(teacher, students):
    wanted = [students["S1"], students["S4"]]
    reconcile_student_access(teacher.id, wanted)
    assert reconcile_student_access(teacher.id, wanted) == {"added": 0, "removed": 0}
    assert assigned_student_ids(teacher.id) == set(wanted)


def test_duplicates_in_input_collapse(teacher, students):
    result = reconcile_student_access(teacher.id, [students["S1"], students["S1"]])
    assert result == {"added": 1, "removed": 0}


def test_empty_set_removes_everything(teacher, students):
    reconcile_student_access(teacher.id, list(students.values()))
    assert reconcile_student_access(teacher.id, []) == {"added": 0, "removed": 4}
    assert assigned_student_ids(teacher.id) == set()


def test_unknown_id_rejects_the_whole_call(teacher, students):
    reconcile_student_access(teacher.id, [students["S1"]])
    with pytest.raises(ValidationError) as excinfo:
        reconcile_student_access(teacher.id, [students["S2"], "missing-student"])
    assert excinfo.value.details == {"invalid_ids": ["missing-student"]}
    # Nothing changed
    assert assigned_student_ids(teacher.id) == {students["S1"]}


def test_non_list_input_is_rejected(teacher):
    with pytest.raises(ValidationError):
        reconcile(STUDENT_ACCESS, teacher.id, "S1")


def test_unknown_teacher_is_not_found(ctx):
    with pytest.raises(NotFound):
        reconcile_student_access("no-such-teacher", [])


def test_students_only_go_to_teachers_and_candidates(teacher, students):
    manager = User(email="m1@example.com", name="M1", role_id=get_role("manager").id)
    candidate = User(email="c1@example.com", name="C1", role_id=get_role("candidate").id)
    db.session.add_all([manager, candidate])
    db.session.commit()

    with pytest.raises(ValidationError) as excinfo:
        reconcile_student_access(manager.id, [students["S1"]])
    assert excinfo.value.details == {"role": "manager"}
    assert assigned_student_ids(manager.id) == set()
    assert reconcile_student_access(manager.id, []) == {"added": 0, "removed": 0}
    assert reconcile_student_access(candidate.id, [students["S1"]]) == {"added": 1, "removed": 0}


@pytest.fixture()
def task_setup(ctx):
    admin = User(email="admin@example.com", name="Admin", role_id=get_role("admin").id)
    users = [User(email=f"u{i}@example.com", name=f"U{i}", role_id=get_role("teacher").id) for i in range(3)]
    db.session.add_all([admin, *users])
    db.session.commit()
    task = create_form(admin, {"title": "Weekly log"}, form_type="task", seed_grants=False)
    return admin, task, [u.id for u in users]


def test_task_assignee_reconcile(task_setup):
    admin, task, ids = task_setup
    assert reconcile_task_assignees(task, ids[:2], admin.id) == {"added": 2, "removed": 0}
    assert reconcile_task_assignees(task, ids[1:], admin.id) == {"added": 1, "removed": 1}
    assert {u.id for u in active_assignees(task)} == set(ids[1:])
    assert reconcile_task_assignees(task, ids[1:], admin.id) == {"added": 0, "removed": 0}


def test_task_reconcile_leaves_role_grants_alone(task_setup):
    admin, task, ids = task_setup
    replace_role_grants(task, [{"role_id": get_role("teacher").id, "access_type": "read"}], admin.id)
    reconcile_task_assignees(task, [ids[0]], admin.id)
    reconcile_task_assignees(task, [], admin.id)
    assert len(role_grants(task)) == 1


def test_inactive_assignment_is_revived(task_setup):
    admin, task, ids = task_setup
    grant_users(task, [ids[0]], admin.id)
    row = db.session.execute(
        select(UserFormAccess).where(UserFormAccess.form_id == task.id, UserFormAccess.user_id == ids[0])
    ).scalar_one()
    row.is_active = False
    db.session.commit()

    assert reconcile_task_assignees(task, [ids[0]], admin.id) == {"added": 1, "removed": 0}
    assert [u.id for u in active_assignees(task)] == [ids[0]]


def test_grant_and_revoke_users(task_setup):
    admin, task, ids = task_setup
    assert grant_users(task, ids, admin.id) == sorted(ids)
    assert grant_users(task, ids, admin.id) == []
    assert revoke_users(task, [ids[0]]) == 1
    assert len(active_assignees(task)) == 2


def test_replace_role_grants_validates(task_setup):
    admin, task, _ = task_setup
    with pytest.raises(ValidationError):
        replace_role_grants(task, [{"role_id": 999, "access_type": "read"}], admin.id)
    with pytest.raises(ValidationError):
        replace_role_grants(task, [{"role_id": get_role("teacher").id, "access_type": "write"}], admin.id)
    grants = replace_role_grants(task, [
        {"role_id": get_role("teacher").id, "access_type": "read"},
        {"role_id": get_role("manager").id, "access_type": "edit"},
    ], admin.id)
    assert {(g.role_id, g.access_type) for g in grants} == {
        (get_role("teacher").id, "read"), (get_role("manager").id, "edit"),
    }
