from flask import Response, request
from flask_login import current_user
from sqlalchemy import func, select

from . import tasks_bp
from .. import db, limiter
from ..access import check_form, check_form_create, check_form_responses, enforce, visible_forms
from ..api_utils import api_success, as_bool, json_body, page_args, require_fields
from ..decorators import api_login_required
from ..errors import ValidationError
from ..forms.services import FORM_STATUSES, delete_form, serialize_form
from ..grants import grant_users, reconcile_task_assignees, revoke_users
from ..models import Form, FormResponse
from ..responses.services import list_responses, serialize_response
from .services import (
    assignment_summary, create_task, export_workbook, get_task, is_overdue, my_tasks,
    notify_assignees, remind_unsubmitted, submit_task, task_stats, update_task,
)


def _task_item(task, now=None):
    item = serialize_form(task, detail=False)
    item["is_overdue"] = is_overdue(task, now)
    return item


@tasks_bp.route("", methods=["GET"])
@api_login_required
def list_tasks():
    stmt = visible_forms(current_user).where(Form.form_type == "task")
    status = (request.args.get("status") or "").strip()
    if status:
        if status not in FORM_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(FORM_STATUSES)}")
        stmt = stmt.where(Form.status == status)
    tasks = db.session.execute(stmt.order_by(Form.created_at.desc())).scalars().all()
    limit, offset = page_args()
    page = tasks[offset:offset + limit]

    counts = {}
    if page:
        rows = db.session.execute(
            select(FormResponse.form_id, func.count(FormResponse.id))
            .where(
                FormResponse.form_id.in_([t.id for t in page]),
                FormResponse.submission_status != "draft",
            )
            .group_by(FormResponse.form_id)
        ).all()
        counts = dict(rows)
    items = []
    for task in page:
        item = _task_item(task)
        item["response_count"] = counts.get(task.id, 0)
        items.append(item)
    meta = {"stats": task_stats(tasks), "total": len(tasks), "limit": limit, "offset": offset}
    return api_success(items, meta)


@tasks_bp.route("", methods=["POST"])
@api_login_required
def create():
    enforce(check_form_create(current_user))
    data = json_body()
    require_fields(data, "title")
    task, notified = create_task(current_user, data)
    meta = {"notifications": notified} if notified is not None else None
    return api_success(serialize_form(task), meta, status=201)


@tasks_bp.route("/my", methods=["GET"])
@api_login_required
def my():
    tasks, mine, stats = my_tasks(current_user)
    items = []
    for task in tasks:
        item = serialize_form(task)
        response = mine.get(task.id)
        item["my_response"] = serialize_response(response) if response else None
        item["is_overdue"] = is_overdue(task)
        items.append(item)
    return api_success(items, {"stats": stats})


@tasks_bp.route("/submit", methods=["POST"])
@limiter.limit("30 per minute")
@api_login_required
def submit():
    data = json_body()
    require_fields(data, "task_id")
    task = get_task(data["task_id"])
    response = submit_task(
        current_user, task, data.get("answers"),
        status=data.get("submission_status") or "submitted",
    )
    return api_success(serialize_response(response))


@tasks_bp.route("/<task_id>", methods=["GET"])
@api_login_required
def get_one(task_id):
    task = get_task(task_id)
    decision = enforce(check_form(current_user, task, "read"))
    data = serialize_form(task)
    data["access_type"] = decision.access_type
    data["is_overdue"] = is_overdue(task)
    return api_success(data)


@tasks_bp.route("/<task_id>", methods=["PUT"])
@api_login_required
def edit(task_id):
    task = get_task(task_id)
    enforce(check_form(current_user, task, "edit"))
    task = update_task(task, json_body())
    return api_success(serialize_form(task))


@tasks_bp.route("/<task_id>", methods=["DELETE"])
@api_login_required
def remove(task_id):
    task = get_task(task_id)
    enforce(check_form(current_user, task, "delete"))
    delete_form(task)
    return api_success({"id": task_id, "deleted": True})


@tasks_bp.route("/<task_id>/assign", methods=["GET"])
@api_login_required
def assignments(task_id):
    task = get_task(task_id)
    enforce(check_form(current_user, task, "edit"))
    rows, summary = assignment_summary(task)
    return api_success(rows, summary)


@tasks_bp.route("/<task_id>/assign", methods=["POST"])
@api_login_required
def assign(task_id):
    task = get_task(task_id)
    enforce(check_form(current_user, task, "edit"))
    data = json_body()
    granted = grant_users(task, data.get("user_ids"), current_user.id)
    result = {"assigned": granted}
    if granted and as_bool(data.get("notify"), default=True):
        result["notifications"] = notify_assignees(task, granted)
    return api_success(result)


@tasks_bp.route("/<task_id>/assign", methods=["DELETE"])
@api_login_required
def unassign(task_id):
    task = get_task(task_id)
    enforce(check_form(current_user, task, "edit"))
    data = json_body()
    return api_success({"removed": revoke_users(task, data.get("user_ids"))})


@tasks_bp.route("/<task_id>/assignees", methods=["PUT"])
@api_login_required
def set_assignees(task_id):
    task = get_task(task_id)
    enforce(check_form(current_user, task, "edit"))
    data = json_body()
    return api_success(reconcile_task_assignees(task, data.get("user_ids"), current_user.id))


@tasks_bp.route("/<task_id>/notify", methods=["POST"])
@api_login_required
def notify(task_id):
    task = get_task(task_id)
    enforce(check_form(current_user, task, "edit"))
    data = request.get_json(silent=True) or {}
    return api_success(remind_unsubmitted(task, as_bool(data.get("unsubmitted_only"), default=True)))


@tasks_bp.route("/<task_id>/responses", methods=["GET"])
@api_login_required
def responses(task_id):
    task = get_task(task_id)
    enforce(check_form_responses(current_user, task))
    rows, summary = assignment_summary(task)
    data = {
        "assignments": rows,
        "responses": [serialize_response(r) for r in list_responses(task)],
    }
    return api_success(data, summary)


@tasks_bp.route("/<task_id>/export", methods=["GET"])
@api_login_required
def export(task_id):
    task = get_task(task_id)
    enforce(check_form_responses(current_user, task))
    bio = export_workbook(task)
    filename = f"task_{task.id}_responses.xlsx"
    return Response(bio.read(), mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", headers={
        "Content-Disposition": f"attachment; filename={filename}"
    })
