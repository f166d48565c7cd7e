"""Access control engine.

Every check returns a :class:`Decision`; denial is a normal outcome, not an
exception. Route code calls :func:`enforce` to turn a denial into a 403.

Precedence for forms and responses, first match wins:

1. ownership (creator / respondent)
2. elevated allow-list (``form_admin``)
3. explicit grant, by user or by role
4. deny

Students add region scoping for ``region_scoped`` roles: a manager only
sees students in their own region, and nothing when their region is unset.
"""
from dataclasses import dataclass
from typing import Optional

from flask import current_app
from sqlalchemy import false, or_, select

from . import db
from .errors import Forbidden
from .models import Form, Student, TeacherStudentAccess, UserFormAccess, utc_now
from .roles import can_assign_role, has_equal_or_higher_permission, in_allow_list

READ = "read"
EDIT = "edit"
ACCESS_LEVELS = {READ: 1, EDIT: 2}


@dataclass(frozen=True)
class Decision:
    allowed: bool
    access_type: Optional[str] = None
    reason: str = ""

    @classmethod
    def allow(cls, access_type=EDIT, reason=""):
        return cls(True, access_type, reason)

    @classmethod
    def deny(cls, reason):
        return cls(False, None, reason)

    def permits(self, access_type):
        if not self.allowed:
            return False
        return ACCESS_LEVELS.get(self.access_type, 0) >= ACCESS_LEVELS[access_type]

    def __bool__(self):
        return self.allowed


@dataclass(frozen=True)
class RoleGrant:
    role_id: int
    access_type: str


@dataclass(frozen=True)
class UserGrant:
    user_id: str
    access_type: str


def _authenticated(principal):
    return principal is not None and getattr(principal, "is_authenticated", False)


def _as_grant(row):
    if row.user_id is not None:
        return UserGrant(row.user_id, row.access_type)
    return RoleGrant(row.role_id, row.access_type)


def _current_grant_clause(now=None):
    now = now or utc_now()
    return [
        UserFormAccess.is_active.is_(True),
        or_(UserFormAccess.expires_at.is_(None), UserFormAccess.expires_at > now),
    ]


def _principal_grant_clause(principal):
    targets = [UserFormAccess.user_id == principal.id]
    if principal.role_id is not None:
        targets.append(UserFormAccess.role_id == principal.role_id)
    return or_(*targets)


def find_form_grant(principal, form_id):
    """Strongest current grant the principal holds on ``form_id``, if any.

    Both the user grant and the role grant are looked up; on a tie the user
    grant wins.
    """
    if not _authenticated(principal):
        return None
    rows = db.session.execute(
        select(UserFormAccess).where(
            UserFormAccess.form_id == form_id,
            _principal_grant_clause(principal),
            *_current_grant_clause(),
        )
    ).scalars()
    grants = [_as_grant(r) for r in rows]
    if not grants:
        return None
    return max(grants, key=lambda g: (ACCESS_LEVELS.get(g.access_type, 0), isinstance(g, UserGrant)))


def has_user_grant(principal, form_id):
    """True when the principal holds a current grant of their own on the form,
    whatever role grants they also hold."""
    if not _authenticated(principal):
        return False
    row = db.session.execute(
        select(UserFormAccess.id).where(
            UserFormAccess.form_id == form_id,
            UserFormAccess.user_id == principal.id,
            *_current_grant_clause(),
        ).limit(1)
    ).first()
    return row is not None


def resolve_form_access(principal, form):
    if not _authenticated(principal):
        return Decision.deny("not authenticated")
    if form.created_by is not None and form.created_by == principal.id:
        return Decision.allow(EDIT, "owner")
    if in_allow_list(principal, "form_admin"):
        return Decision.allow(EDIT, "elevated role")
    grant = find_form_grant(principal, form.id)
    if grant is not None:
        kind = "user grant" if isinstance(grant, UserGrant) else "role grant"
        return Decision.allow(grant.access_type, kind)
    return Decision.deny("no access to this form")


def check_form(principal, form, action):
    if action in ("delete", "manage_permissions"):
        if in_allow_list(principal, "form_admin"):
            return Decision.allow(EDIT, "elevated role")
        return Decision.deny(f"only administrators may {action.replace('_', ' ')} forms")
    decision = resolve_form_access(principal, form)
    if action == "read":
        return decision
    if action == "edit":
        if decision.permits(EDIT):
            return decision
        return Decision.deny("edit access required")
    raise ValueError(f"unknown form action: {action}")


def check_form_create(principal):
    if in_allow_list(principal, "form_author"):
        return Decision.allow(EDIT, "author role")
    return Decision.deny("your role may not create forms")


def visible_forms(principal):
    """Select of forms the principal can read."""
    stmt = select(Form)
    if in_allow_list(principal, "form_admin"):
        return stmt
    granted = select(UserFormAccess.form_id).where(
        _principal_grant_clause(principal), *_current_grant_clause()
    )
    return stmt.where(or_(Form.created_by == principal.id, Form.id.in_(granted)))


def check_form_responses(principal, form):
    """Seeing every response on a form, not only one's own."""
    decision = resolve_form_access(principal, form)
    if decision.permits(EDIT):
        return decision
    if _authenticated(principal) and in_allow_list(principal, "response_viewer"):
        return Decision.allow(READ, "response viewer role")
    return Decision.deny("cannot view responses for this form")


def check_response(principal, response, action):
    if not _authenticated(principal):
        return Decision.deny("not authenticated")
    own = response.respondent_id is not None and response.respondent_id == principal.id
    form_access = resolve_form_access(principal, response.form)
    if action == "read":
        if own:
            return Decision.allow(EDIT, "respondent")
        if in_allow_list(principal, "response_viewer"):
            return Decision.allow(READ, "response viewer role")
        if form_access.permits(EDIT):
            return form_access
        return Decision.deny("cannot view this response")
    if action in ("edit", "delete"):
        if own:
            return Decision.allow(EDIT, "respondent")
        if form_access.permits(EDIT):
            return form_access
        return Decision.deny(f"cannot {action} this response")
    if action == "review":
        if form_access.permits(EDIT):
            return form_access
        return Decision.deny("edit access to the form is required to review")
    raise ValueError(f"unknown response action: {action}")


def _has_student_grant(principal, student_id):
    row = db.session.execute(
        select(TeacherStudentAccess.id).where(
            TeacherStudentAccess.teacher_id == principal.id,
            TeacherStudentAccess.student_id == student_id,
        )
    ).first()
    return row is not None


def check_student(principal, student, action):
    if not _authenticated(principal):
        return Decision.deny("not authenticated")
    if in_allow_list(principal, "student_admin"):
        if in_allow_list(principal, "region_scoped"):
            if principal.region and student.region == principal.region:
                return Decision.allow(EDIT, "same region")
            return Decision.deny("student is outside your region")
        return Decision.allow(EDIT, "student admin role")
    if action == "read" and _has_student_grant(principal, student.id):
        return Decision.allow(READ, "teacher grant")
    return Decision.deny("no access to this student")


def check_student_create(principal, region):
    if not in_allow_list(principal, "student_admin"):
        return Decision.deny("your role may not create students")
    if in_allow_list(principal, "region_scoped"):
        if not principal.region or region != principal.region:
            return Decision.deny("students may only be created in your own region")
    return Decision.allow(EDIT, "student admin role")


def visible_students(principal):
    """Select of students the principal may list."""
    stmt = select(Student)
    if not _authenticated(principal):
        return stmt.where(false())
    if in_allow_list(principal, "student_admin"):
        if in_allow_list(principal, "region_scoped"):
            if not principal.region:
                return stmt.where(false())
            return stmt.where(Student.region == principal.region)
        return stmt
    return stmt.join(TeacherStudentAccess, TeacherStudentAccess.student_id == Student.id).where(
        TeacherStudentAccess.teacher_id == principal.id
    )


def check_user(actor, target, action):
    if not _authenticated(actor):
        return Decision.deny("not authenticated")
    is_self = actor.id == target.id
    if action == "view":
        if is_self or in_allow_list(actor, "user_manage"):
            return Decision.allow(READ, "self" if is_self else "user manager role")
        return Decision.deny("cannot view other users")
    if action == "delete" and is_self:
        return Decision.deny("you cannot delete your own account")
    if action in ("edit", "delete"):
        if is_self and action == "edit":
            return Decision.allow(EDIT, "self")
        if not in_allow_list(actor, "user_manage"):
            return Decision.deny("your role may not manage users")
        if not has_equal_or_higher_permission(actor, target):
            return Decision.deny("target user outranks you")
        return Decision.allow(EDIT, "user manager role")
    raise ValueError(f"unknown user action: {action}")


def check_role_assignment(actor, role):
    if not in_allow_list(actor, "user_manage"):
        return Decision.deny("your role may not assign roles")
    if not can_assign_role(actor, role):
        return Decision.deny("cannot assign a role ranked above your own")
    return Decision.allow(EDIT, "role assignment")


def check_allow_list(principal, list_name, reason):
    if _authenticated(principal) and in_allow_list(principal, list_name):
        return Decision.allow(EDIT, list_name)
    return Decision.deny(reason)


def check_assignment_view(principal, teacher_id):
    if _authenticated(principal) and principal.id == teacher_id:
        return Decision.allow(READ, "self")
    return check_allow_list(principal, "assignment_viewer", "cannot view another teacher's assignments")


def enforce(decision):
    if not decision.allowed:
        current_app.logger.info("Access denied: %s", decision.reason)
        raise Forbidden(decision.reason or "Permission denied")
    return decision
