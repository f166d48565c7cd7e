from flask import request
from flask_login import current_user
from sqlalchemy import select

from . import responses_bp
from .. import db, limiter
from ..access import EDIT, check_form_responses, check_response, enforce, resolve_form_access
from ..api_utils import api_success, get_or_404, json_body
from ..decorators import api_login_required
from ..models import Form, FormResponse
from .services import (
    delete_response, list_responses, review_response, save_response, serialize_response,
)


@responses_bp.route("", methods=["GET"])
@api_login_required
def list_all():
    """The caller's own responses, or a whole form's when they may see them."""
    form_id = request.args.get("form_id")
    status = (request.args.get("status") or "").strip() or None
    if form_id:
        form = get_or_404(Form, form_id, "Form not found")
        respondent_id = None if check_form_responses(current_user, form) else current_user.id
        responses = list_responses(form, respondent_id=respondent_id, status=status)
    else:
        stmt = select(FormResponse).where(FormResponse.respondent_id == current_user.id)
        if status:
            stmt = stmt.where(FormResponse.submission_status == status)
        responses = db.session.execute(stmt.order_by(FormResponse.created_at.desc())).scalars().all()
    return api_success([serialize_response(r) for r in responses], {"total": len(responses)})


@responses_bp.route("/<response_id>", methods=["GET"])
@api_login_required
def get_response(response_id):
    response = get_or_404(FormResponse, response_id, "Response not found")
    enforce(check_response(current_user, response, "read"))
    return api_success(serialize_response(response))


@responses_bp.route("/<response_id>", methods=["PUT"])
@limiter.limit("30 per minute")
@api_login_required
def update_response(response_id):
    response = get_or_404(FormResponse, response_id, "Response not found")
    enforce(check_response(current_user, response, "edit"))
    data = json_body()
    response = save_response(
        response.form, response.respondent or current_user, data.get("answers"),
        status=data.get("submission_status") or response.submission_status,
        response=response, metadata=data.get("metadata"),
    )
    return api_success(serialize_response(response))


@responses_bp.route("/<response_id>", methods=["DELETE"])
@api_login_required
def remove_response(response_id):
    response = get_or_404(FormResponse, response_id, "Response not found")
    enforce(check_response(current_user, response, "delete"))
    by_editor = resolve_form_access(current_user, response.form).permits(EDIT)
    delete_response(response, by_editor=by_editor)
    return api_success({"id": response_id, "deleted": True})


@responses_bp.route("/<response_id>/review", methods=["POST"])
@api_login_required
def review(response_id):
    response = get_or_404(FormResponse, response_id, "Response not found")
    enforce(check_response(current_user, response, "review"))
    data = json_body()
    response = review_response(
        response, current_user,
        status=data.get("status") or data.get("submission_status"),
        notes=data.get("review_notes"),
    )
    return api_success(serialize_response(response))
