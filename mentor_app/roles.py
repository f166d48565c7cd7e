"""Role hierarchy: ranks, comparisons and the named allow-lists.

Privilege is always compared through :func:`rank`. Role names only appear in
the allow-lists below, which are plain data and can be overridden per
deployment with ``ROLE_ALLOW_LISTS`` in the app config.
"""
from flask import current_app, has_app_context
from sqlalchemy import select

from . import db

ROOT = "root"
ADMIN = "admin"
MANAGER = "manager"
CLASS_TEACHER = "class-teacher"
TEACHER = "teacher"
CANDIDATE = "candidate"
NEW_REGISTRANT = "new-registrant"

# name, display_name, color, order
ROLE_DEFINITIONS = (
    (ROOT, "Root", "#7c3aed", 0),
    (ADMIN, "Administrator", "#dc2626", 1),
    (MANAGER, "Manager", "#ea580c", 2),
    (CLASS_TEACHER, "Class Teacher", "#ca8a04", 3),
    (TEACHER, "Teacher", "#16a34a", 4),
    (CANDIDATE, "Candidate", "#2563eb", 5),
    (NEW_REGISTRANT, "New Registrant", "#6b7280", 6),
)

ROLE_ORDER = {name: order for name, _, _, order in ROLE_DEFINITIONS}

# Anything unknown ranks below every real role
LEAST_PRIVILEGE_RANK = max(ROLE_ORDER.values()) + 1

DEFAULT_ROLE = NEW_REGISTRANT

DEFAULT_ALLOW_LISTS = {
    "form_admin": frozenset({ROOT, ADMIN}),
    "form_author": frozenset({ROOT, ADMIN, MANAGER, CLASS_TEACHER}),
    "user_manage": frozenset({ROOT, ADMIN, MANAGER, CLASS_TEACHER}),
    "response_viewer": frozenset({ROOT, ADMIN, MANAGER, CLASS_TEACHER}),
    "student_admin": frozenset({ROOT, ADMIN, MANAGER, CLASS_TEACHER}),
    "region_scoped": frozenset({MANAGER}),
    "student_grantee": frozenset({TEACHER, CANDIDATE}),
    "grant_admin": frozenset({ROOT, ADMIN}),
    "assignment_viewer": frozenset({ROOT, ADMIN, MANAGER}),
    "analytics": frozenset({ROOT}),
}

# Role grants seeded on every new form
DEFAULT_FORM_GRANTS = (
    (ROOT, "edit"),
    (ADMIN, "edit"),
    (MANAGER, "edit"),
    (CLASS_TEACHER, "edit"),
    (TEACHER, "read"),
    (CANDIDATE, "read"),
    (NEW_REGISTRANT, "read"),
)


def role_name(role):
    """Name of a Role row, a User, a plain name string, or None."""
    if role is None:
        return None
    if isinstance(role, str):
        return role.strip().lower() or None
    if hasattr(role, "role") and not hasattr(role, "order"):
        return role_name(role.role)
    return getattr(role, "name", None)


def rank(role):
    """Integer privilege level of ``role``; lower is more privileged.

    Accepts a Role row, a User (its role is used), a role name or None.
    Missing and unknown roles get LEAST_PRIVILEGE_RANK.
    """
    if role is None:
        return LEAST_PRIVILEGE_RANK
    if isinstance(role, str):
        return ROLE_ORDER.get(role.strip().lower(), LEAST_PRIVILEGE_RANK)
    if hasattr(role, "role") and not hasattr(role, "order"):
        return rank(role.role)
    order = getattr(role, "order", None)
    if order is None:
        return rank(getattr(role, "name", None))
    return int(order)


def has_equal_or_higher_permission(a, b):
    return rank(a) <= rank(b)


def has_higher_permission(a, b):
    return rank(a) < rank(b)


def can_assign_role(actor_role, target_role):
    """An actor may only hand out roles ranked at or below their own."""
    if rank(target_role) >= LEAST_PRIVILEGE_RANK:
        return False
    return has_equal_or_higher_permission(actor_role, target_role)


def allow_list(name):
    overrides = {}
    if has_app_context():
        overrides = current_app.config.get("ROLE_ALLOW_LISTS") or {}
    if name in overrides:
        return frozenset(r.strip().lower() for r in overrides[name])
    try:
        return DEFAULT_ALLOW_LISTS[name]
    except KeyError:
        raise KeyError(f"Unknown allow-list: {name}") from None


def in_allow_list(role, name):
    key = role_name(role)
    return key is not None and key in allow_list(name)


def get_role(name):
    from .models import Role
    return db.session.execute(select(Role).filter_by(name=name)).scalars().first()


def ensure_roles():
    """Insert missing reference roles. Returns the number created."""
    from .models import Role
    existing = {r.name for r in db.session.execute(select(Role)).scalars()}
    created = 0
    for name, display_name, color, order in ROLE_DEFINITIONS:
        if name in existing:
            continue
        db.session.add(Role(name=name, display_name=display_name, color=color, order=order))
        created += 1
    if created:
        db.session.commit()
    return created
