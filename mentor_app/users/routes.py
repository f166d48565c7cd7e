from datetime import timedelta

from flask import current_app, request
from flask_login import current_user
from sqlalchemy import delete, func, or_, select, update

from . import users_bp
from .. import cache, db
from ..access import check_role_assignment, check_user, enforce
from ..api_utils import api_success, as_bool, get_or_404, json_body, page_args
from ..decorators import allow_list_required, api_login_required
from ..errors import Forbidden, ValidationError
from ..models import (
    Form, FormResponse, Role, Student, TeacherStudentAccess, User, UserFormAccess, utc_now,
)
from ..roles import in_allow_list

ROLES_CACHE_KEY = "roles_list"
PROFILE_FIELDS = ("name", "avatar_url")
ADMIN_FIELDS = ("region", "is_active", "role_id", "role")


def _clean_text(data, key, max_len=None):
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    value = value.strip() or None
    if value and max_len and len(value) > max_len:
        raise ValidationError(f"{key} is too long")
    return value


def _resolve_role(data):
    ref = data.get("role_id", data.get("role"))
    if ref is None:
        raise ValidationError("role_id must not be null")
    if isinstance(ref, int) and not isinstance(ref, bool):
        role = db.session.get(Role, ref)
    elif isinstance(ref, str):
        role = db.session.execute(select(Role).filter_by(name=ref.strip().lower())).scalars().first()
    else:
        role = None
    if role is None:
        raise ValidationError(f"Unknown role: {ref!r}")
    return role


@users_bp.route("/users", methods=["GET"])
@allow_list_required("user_manage")
def list_users():
    stmt = select(User)
    role = (request.args.get("role") or "").strip().lower()
    if role:
        stmt = stmt.join(Role, Role.id == User.role_id).where(Role.name == role)
    region = (request.args.get("region") or "").strip()
    if region:
        stmt = stmt.where(User.region == region)
    q = (request.args.get("q") or "").strip()
    if q:
        like = f"%{q}%"
        stmt = stmt.where(or_(User.name.ilike(like), User.email.ilike(like)))
    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar()
    limit, offset = page_args()
    users = db.session.execute(
        stmt.order_by(User.created_at.desc(), User.id).limit(limit).offset(offset)
    ).scalars().all()
    return api_success([u.to_dict() for u in users], {"total": total, "limit": limit, "offset": offset})


@users_bp.route("/users/me", methods=["GET"])
@api_login_required
def me():
    return api_success(current_user.to_dict())


@users_bp.route("/users/me", methods=["PUT"])
@api_login_required
def update_me():
    data = json_body()
    if any(key in data for key in ADMIN_FIELDS):
        raise Forbidden("Use the user management endpoint to change role, region or status")
    if "name" in data:
        name = _clean_text(data, "name", 128)
        if not name:
            raise ValidationError("name cannot be empty")
        current_user.name = name
    if "avatar_url" in data:
        current_user.avatar_url = _clean_text(data, "avatar_url", 512)
    db.session.commit()
    return api_success(current_user.to_dict())


@users_bp.route("/users/me/activity", methods=["POST"])
@api_login_required
def touch_activity():
    current_user.last_active = utc_now()
    db.session.commit()
    return api_success({"last_active": current_user.to_dict()["last_active"]})


@users_bp.route("/users/<user_id>", methods=["GET"])
@api_login_required
def get_user(user_id):
    user = get_or_404(User, user_id, "User not found")
    enforce(check_user(current_user, user, "view"))
    return api_success(user.to_dict())


@users_bp.route("/users/<user_id>", methods=["PUT"])
@api_login_required
def update_user(user_id):
    user = get_or_404(User, user_id, "User not found")
    enforce(check_user(current_user, user, "edit"))
    data = json_body()
    is_self = user.id == current_user.id

    if any(key in data for key in ADMIN_FIELDS) and not in_allow_list(current_user, "user_manage"):
        raise Forbidden("Your role may not change role, region or status")

    if "role_id" in data or "role" in data:
        role = _resolve_role(data)
        enforce(check_role_assignment(current_user, role))
        if role.id != user.role_id:
            current_app.logger.info(
                "Role of %s changed to %s by %s", user.id, role.name, current_user.id
            )
        user.role_id = role.id
        user.role = role
    if "region" in data:
        user.region = _clean_text(data, "region", 64)
    if "is_active" in data:
        active = as_bool(data["is_active"])
        if is_self and not active:
            raise ValidationError("You cannot deactivate your own account")
        user.is_active = active
    for key in PROFILE_FIELDS:
        if key in data:
            setattr(user, key, _clean_text(data, key, 512))
    db.session.commit()
    return api_success(user.to_dict())


@users_bp.route("/users/<user_id>", methods=["DELETE"])
@api_login_required
def delete_user(user_id):
    user = get_or_404(User, user_id, "User not found")
    enforce(check_user(current_user, user, "delete"))
    db.session.execute(delete(TeacherStudentAccess).where(TeacherStudentAccess.teacher_id == user.id))
    db.session.execute(delete(UserFormAccess).where(UserFormAccess.user_id == user.id))
    # Keep the forms and answers, drop the link to the person
    db.session.execute(update(FormResponse).where(FormResponse.respondent_id == user.id).values(respondent_id=None))
    db.session.execute(update(FormResponse).where(FormResponse.reviewed_by == user.id).values(reviewed_by=None))
    db.session.execute(update(Form).where(Form.created_by == user.id).values(created_by=None))
    db.session.execute(update(UserFormAccess).where(UserFormAccess.granted_by == user.id).values(granted_by=None))
    db.session.delete(user)
    db.session.commit()
    current_app.logger.info("User %s deleted by %s", user_id, current_user.id)
    return api_success({"id": user_id, "deleted": True})


def role_list():
    roles = cache.get(ROLES_CACHE_KEY)
    if roles is None:
        roles = [r.to_dict() for r in db.session.execute(
            select(Role).where(Role.is_active.is_(True)).order_by(Role.order)
        ).scalars()]
        cache.set(ROLES_CACHE_KEY, roles, timeout=3600)
    return roles


@users_bp.route("/roles", methods=["GET"])
@api_login_required
def roles():
    return api_success(role_list())


@users_bp.route("/analytics", methods=["GET"])
@allow_list_required("analytics", "Only root may view analytics")
def analytics():
    def grouped(column, *where):
        stmt = select(column, func.count()).group_by(column)
        if where:
            stmt = stmt.where(*where)
        return {key if key is not None else "unassigned": count for key, count in db.session.execute(stmt).all()}

    week_ago = utc_now() - timedelta(days=7)
    users_by_role = {
        name or "unassigned": count
        for name, count in db.session.execute(
            select(Role.name, func.count(User.id)).select_from(User).outerjoin(Role, Role.id == User.role_id).group_by(Role.name)
        ).all()
    }
    data = {
        "users": {
            "total": db.session.execute(select(func.count(User.id))).scalar(),
            "active_last_7_days": db.session.execute(
                select(func.count(User.id)).where(User.last_active >= week_ago)
            ).scalar(),
            "by_role": users_by_role,
        },
        "students": {
            "total": db.session.execute(select(func.count(Student.id))).scalar(),
            "by_region": grouped(Student.region),
            "disadvantaged": db.session.execute(
                select(func.count(Student.id)).where(Student.is_disadvantaged.is_(True))
            ).scalar(),
        },
        "forms": {
            "by_type": grouped(Form.form_type),
            "by_status": grouped(Form.status),
        },
        "responses": {
            "by_status": grouped(FormResponse.submission_status),
        },
    }
    return api_success(data)
