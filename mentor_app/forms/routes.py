from flask import request
from flask_login import current_user
from sqlalchemy import func, select

from . import forms_bp
from .. import db, limiter
from ..access import (
    check_form, check_form_create, check_form_responses, enforce,
    resolve_form_access, visible_forms,
)
from ..api_utils import api_success, get_or_404, json_body, page_args
from ..decorators import api_login_required
from ..errors import ValidationError
from ..grants import replace_role_grants
from ..models import Form, UserFormAccess, User
from ..responses.services import list_responses, save_response, serialize_response
from .services import (
    FORM_STATUSES, FORM_TYPES, create_form, delete_form, response_counts,
    responses_overview, serialize_form, update_form,
)


@forms_bp.route("", methods=["GET"])
@api_login_required
def list_forms():
    stmt = visible_forms(current_user)
    form_type = (request.args.get("form_type") or "").strip()
    status = (request.args.get("status") or "").strip()
    if form_type:
        if form_type not in FORM_TYPES:
            raise ValidationError(f"form_type must be one of: {', '.join(FORM_TYPES)}")
        stmt = stmt.where(Form.form_type == form_type)
    if status:
        if status not in FORM_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(FORM_STATUSES)}")
        stmt = stmt.where(Form.status == status)

    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar()
    limit, offset = page_args()
    forms = db.session.execute(
        stmt.order_by(Form.created_at.desc()).limit(limit).offset(offset)
    ).scalars().all()
    counts = response_counts([f.id for f in forms])
    items = []
    for form in forms:
        item = serialize_form(form, detail=False)
        item["access_type"] = resolve_form_access(current_user, form).access_type
        item["response_count"] = counts.get(form.id, 0)
        items.append(item)
    return api_success(items, {"total": total, "limit": limit, "offset": offset})


@forms_bp.route("", methods=["POST"])
@api_login_required
def create():
    enforce(check_form_create(current_user))
    form = create_form(current_user, json_body())
    return api_success(serialize_form(form), status=201)


@forms_bp.route("/<form_id>", methods=["GET"])
@api_login_required
def get_form(form_id):
    form = get_or_404(Form, form_id, "Form not found")
    decision = enforce(check_form(current_user, form, "read"))
    data = serialize_form(form)
    data["access_type"] = decision.access_type
    return api_success(data)


@forms_bp.route("/<form_id>", methods=["PUT"])
@api_login_required
def edit_form(form_id):
    form = get_or_404(Form, form_id, "Form not found")
    enforce(check_form(current_user, form, "edit"))
    form = update_form(form, json_body())
    return api_success(serialize_form(form))


@forms_bp.route("/<form_id>", methods=["DELETE"])
@api_login_required
def remove_form(form_id):
    form = get_or_404(Form, form_id, "Form not found")
    enforce(check_form(current_user, form, "delete"))
    delete_form(form)
    return api_success({"id": form_id, "deleted": True})


def _permissions_payload(form):
    grants = db.session.execute(
        select(UserFormAccess).where(UserFormAccess.form_id == form.id).order_by(UserFormAccess.id)
    ).scalars().all()
    role_grants = []
    user_grants = []
    for grant in grants:
        item = grant.to_dict()
        if grant.role_id is not None:
            item["role_name"] = grant.role.name if grant.role else None
            role_grants.append(item)
        else:
            item["user_email"] = grant.user.email if grant.user else None
            user_grants.append(item)
    return {"form_id": form.id, "role_permissions": role_grants, "user_permissions": user_grants}


@forms_bp.route("/<form_id>/permissions", methods=["GET"])
@api_login_required
def get_permissions(form_id):
    form = get_or_404(Form, form_id, "Form not found")
    enforce(check_form(current_user, form, "manage_permissions"))
    return api_success(_permissions_payload(form))


@forms_bp.route("/<form_id>/permissions", methods=["PUT"])
@api_login_required
def put_permissions(form_id):
    form = get_or_404(Form, form_id, "Form not found")
    enforce(check_form(current_user, form, "manage_permissions"))
    data = json_body()
    replace_role_grants(form, data.get("permissions"), current_user.id)
    return api_success(_permissions_payload(form))


@forms_bp.route("/<form_id>/responses", methods=["GET"])
@api_login_required
def form_responses(form_id):
    form = get_or_404(Form, form_id, "Form not found")
    enforce(check_form(current_user, form, "read"))
    status = (request.args.get("status") or "").strip() or None
    if check_form_responses(current_user, form):
        respondent_id = request.args.get("respondent_id") or None
    else:
        # Plain readers only ever see their own
        respondent_id = current_user.id
    responses = list_responses(form, respondent_id=respondent_id, status=status)
    return api_success([serialize_response(r) for r in responses], {"total": len(responses)})


@forms_bp.route("/<form_id>/responses", methods=["POST"])
@limiter.limit("30 per minute")
@api_login_required
def submit_response(form_id):
    form = get_or_404(Form, form_id, "Form not found")
    enforce(check_form(current_user, form, "read"))
    data = json_body()
    response = save_response(
        form, current_user, data.get("answers"),
        status=data.get("submission_status") or "draft",
        metadata=data.get("metadata"),
    )
    return api_success(serialize_response(response))


@forms_bp.route("/<form_id>/responses/overview", methods=["GET"])
@api_login_required
def overview(form_id):
    form = get_or_404(Form, form_id, "Form not found")
    enforce(check_form_responses(current_user, form))
    return api_success(responses_overview(form))


@forms_bp.route("/<form_id>/responses/users/<user_id>", methods=["GET"])
@api_login_required
def user_responses(form_id, user_id):
    form = get_or_404(Form, form_id, "Form not found")
    get_or_404(User, user_id, "User not found")
    if user_id == current_user.id:
        enforce(check_form(current_user, form, "read"))
    else:
        enforce(check_form_responses(current_user, form))
    responses = list_responses(form, respondent_id=user_id)
    return api_success([serialize_response(r) for r in responses], {"total": len(responses)})
