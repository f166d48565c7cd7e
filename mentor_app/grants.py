"""Grant store: bulk reconciliation of many-to-many access records.

``reconcile`` makes the persisted grant set for one owner equal to a target
set. Every target id is validated before anything is written, so a bad id
rejects the whole call. Calling it again with the same set is a no-op.
"""
from dataclasses import dataclass, field
from typing import Callable, Tuple

from flask import current_app
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from . import db
from .errors import Conflict, NotFound, ValidationError
from .models import Role, Student, TeacherStudentAccess, User, UserFormAccess, utc_now
from .roles import in_allow_list, role_name

ACCESS_TYPES = ("read", "edit")


@dataclass(frozen=True)
class GrantKind:
    name: str
    grant_model: type
    owner_column: str
    target_column: str
    target_model: type
    # Extra where clauses limiting which grant rows belong to this kind
    scope: Callable[[], Tuple] = field(default=lambda: ())


STUDENT_ACCESS = GrantKind(
    name="teacher_student",
    grant_model=TeacherStudentAccess,
    owner_column="teacher_id",
    target_column="student_id",
    target_model=Student,
)

TASK_ASSIGNMENT = GrantKind(
    name="task_user",
    grant_model=UserFormAccess,
    owner_column="form_id",
    target_column="user_id",
    target_model=User,
    scope=lambda: (UserFormAccess.user_id.isnot(None),),
)


def normalize_ids(ids):
    if ids is None or isinstance(ids, (str, bytes)) or not hasattr(ids, "__iter__"):
        raise ValidationError("Expected a list of ids")
    normalized = set()
    for ident in ids:
        if not isinstance(ident, str) or not ident.strip():
            raise ValidationError("Ids must be non-empty strings", details={"invalid_ids": [ident]})
        normalized.add(ident.strip())
    return normalized


def validate_targets(kind, ids):
    """Raise ValidationError naming every id with no backing row."""
    if not ids:
        return
    target_id = kind.target_model.id
    found = set(db.session.execute(select(target_id).where(target_id.in_(ids))).scalars())
    invalid = sorted(ids - found)
    if invalid:
        raise ValidationError(
            f"Unknown {kind.target_model.__name__.lower()} ids: {', '.join(invalid)}",
            details={"invalid_ids": invalid},
        )


def _owner_rows(kind, owner_id):
    owner_col = getattr(kind.grant_model, kind.owner_column)
    return list(db.session.execute(
        select(kind.grant_model).where(owner_col == owner_id, *kind.scope())
    ).scalars())


def _commit(label):
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        current_app.logger.warning("Concurrent %s grant update rejected", label)
        raise Conflict("Grants were changed concurrently; retry the request")


def reconcile(kind, owner_id, target_ids, **row_values):
    """Replace the grant set of ``owner_id`` with ``target_ids``.

    Returns ``{"added": n, "removed": m}``. ``row_values`` are set on newly
    created grant rows.
    """
    new = normalize_ids(target_ids)
    validate_targets(kind, new)

    rows = _owner_rows(kind, owner_id)
    existing = {getattr(r, kind.target_column) for r in rows}
    to_add = new - existing
    to_remove = existing - new

    # Deactivated rows still occupy the unique key; switch them back on
    revived = [
        r for r in rows
        if getattr(r, kind.target_column) in new and getattr(r, "is_active", True) is False
    ]

    if not to_add and not to_remove and not revived:
        return {"added": 0, "removed": 0}

    if to_remove:
        owner_col = getattr(kind.grant_model, kind.owner_column)
        target_col = getattr(kind.grant_model, kind.target_column)
        db.session.execute(
            delete(kind.grant_model)
            .where(owner_col == owner_id, target_col.in_(to_remove), *kind.scope())
            .execution_options(synchronize_session="fetch")
        )
    for row in revived:
        row.is_active = True
        for key, value in row_values.items():
            setattr(row, key, value)
    for target in sorted(to_add):
        db.session.add(kind.grant_model(
            **{kind.owner_column: owner_id, kind.target_column: target}, **row_values
        ))
    _commit(kind.name)

    result = {"added": len(to_add) + len(revived), "removed": len(to_remove)}
    current_app.logger.info("Reconciled %s grants for %s: %s", kind.name, owner_id, result)
    return result


def reconcile_student_access(teacher_id, student_ids):
    teacher = db.session.get(User, teacher_id)
    if teacher is None:
        raise NotFound("Teacher not found")
    # An empty set can be applied to any user
    if student_ids and not in_allow_list(teacher, "student_grantee"):
        raise ValidationError(
            "Students can only be assigned to teachers or candidates",
            details={"role": role_name(teacher)},
        )
    return reconcile(STUDENT_ACCESS, teacher_id, student_ids)


def assigned_student_ids(teacher_id):
    return set(db.session.execute(
        select(TeacherStudentAccess.student_id).where(TeacherStudentAccess.teacher_id == teacher_id)
    ).scalars())


def _user_grant_values(granted_by):
    return {"access_type": "read", "is_active": True, "granted_by": granted_by, "granted_at": utc_now()}


def reconcile_task_assignees(form, user_ids, granted_by):
    return reconcile(TASK_ASSIGNMENT, form.id, user_ids, **_user_grant_values(granted_by))


def grant_users(form, user_ids, granted_by, commit=True):
    """Add user grants without touching existing ones. Returns newly granted ids.

    With ``commit=False`` the rows are only staged in the session.
    """
    ids = normalize_ids(user_ids)
    validate_targets(TASK_ASSIGNMENT, ids)
    rows = {r.user_id: r for r in _owner_rows(TASK_ASSIGNMENT, form.id)}
    granted = []
    for user_id in sorted(ids):
        row = rows.get(user_id)
        if row is not None and row.is_active:
            continue
        if row is None:
            db.session.add(UserFormAccess(form_id=form.id, user_id=user_id, **_user_grant_values(granted_by)))
        else:
            for key, value in _user_grant_values(granted_by).items():
                setattr(row, key, value)
        granted.append(user_id)
    if granted and commit:
        _commit(TASK_ASSIGNMENT.name)
    return granted


def revoke_users(form, user_ids):
    ids = normalize_ids(user_ids)
    if not ids:
        return 0
    result = db.session.execute(
        delete(UserFormAccess)
        .where(UserFormAccess.form_id == form.id, UserFormAccess.user_id.in_(ids))
        .execution_options(synchronize_session="fetch")
    )
    _commit(TASK_ASSIGNMENT.name)
    return result.rowcount or 0


def active_assignees(form):
    return list(db.session.execute(
        select(User)
        .join(UserFormAccess, UserFormAccess.user_id == User.id)
        .where(UserFormAccess.form_id == form.id, UserFormAccess.is_active.is_(True))
        .order_by(User.name, User.email)
    ).scalars())


def role_grants(form):
    return list(db.session.execute(
        select(UserFormAccess)
        .where(UserFormAccess.form_id == form.id, UserFormAccess.role_id.isnot(None))
        .order_by(UserFormAccess.role_id)
    ).scalars())


def seed_role_grants(form, defaults, granted_by):
    """Attach the default (role name, access_type) grants to a new form."""
    roles = {r.name: r for r in db.session.execute(select(Role)).scalars()}
    for name, access_type in defaults:
        role = roles.get(name)
        if role is None:
            continue
        db.session.add(UserFormAccess(
            form_id=form.id, role_id=role.id, access_type=access_type,
            is_active=True, granted_by=granted_by, granted_at=utc_now(),
        ))


def replace_role_grants(form, grants, granted_by):
    """Replace every role grant on ``form`` with ``grants``.

    ``grants`` is a list of ``{"role_id": int, "access_type": "read"|"edit"}``.
    """
    if not isinstance(grants, list):
        raise ValidationError("permissions must be a list")
    wanted = {}
    for item in grants:
        if not isinstance(item, dict):
            raise ValidationError("Each permission must be an object")
        role_id = item.get("role_id")
        access_type = item.get("access_type")
        if access_type not in ACCESS_TYPES:
            raise ValidationError(f"Invalid access_type: {access_type!r}")
        if not isinstance(role_id, int) or isinstance(role_id, bool):
            raise ValidationError(f"Invalid role_id: {role_id!r}")
        wanted[role_id] = access_type
    if wanted:
        found = set(db.session.execute(select(Role.id).where(Role.id.in_(wanted))).scalars())
        invalid = sorted(set(wanted) - found)
        if invalid:
            raise ValidationError("Unknown role ids", details={"invalid_ids": invalid})

    db.session.execute(
        delete(UserFormAccess)
        .where(UserFormAccess.form_id == form.id, UserFormAccess.role_id.isnot(None))
        .execution_options(synchronize_session="fetch")
    )
    for role_id, access_type in sorted(wanted.items()):
        db.session.add(UserFormAccess(
            form_id=form.id, role_id=role_id, access_type=access_type,
            is_active=True, granted_by=granted_by, granted_at=utc_now(),
        ))
    _commit("form_role")
    return role_grants(form)
