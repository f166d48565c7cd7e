"""Tasks are forms with ``form_type='task'`` answered by individually assigned users."""
from io import BytesIO

from flask import current_app
from openpyxl import Workbook
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .. import db
from ..access import has_user_grant
from ..email_utils import notify_users, task_assignment_message, task_reminder_message
from ..errors import Conflict, Forbidden, NotFound, ValidationError
from ..forms.services import create_form, update_form
from ..grants import TASK_ASSIGNMENT, active_assignees, grant_users, normalize_ids, validate_targets
from ..models import Form, FormResponse, UserFormAccess, as_utc, isoformat, utc_now
from ..responses.services import save_response

DONE_STATUSES = frozenset({"submitted", "reviewed", "approved"})


def _requirements_to_sections(requirements):
    if not isinstance(requirements, list):
        raise ValidationError("requirements must be a list")
    fields = []
    for index, item in enumerate(requirements, start=1):
        if isinstance(item, str):
            item = {"label": item}
        if not isinstance(item, dict):
            raise ValidationError("Each requirement must be an object or a string")
        fields.append({
            "field_name": item.get("field_name") or f"req_{index}",
            "field_label": item.get("label") or item.get("field_label"),
            "field_type": item.get("type") or item.get("field_type") or "textarea",
            "is_required": item.get("required", item.get("is_required", True)),
            "help_text": item.get("description") or item.get("help_text"),
            "options": item.get("options"),
            "validation_rules": item.get("validation_rules"),
            "display_order": index,
        })
    return [{"title": None, "fields": fields}]


def _task_payload(data):
    payload = dict(data)
    payload.pop("form_type", None)
    if "deadline" in data and "submission_deadline" not in data:
        payload["submission_deadline"] = data["deadline"]
    if "requirements" in data and "sections" not in data:
        payload["sections"] = _requirements_to_sections(data["requirements"])
    return payload


def base_url():
    return current_app.config.get("PUBLIC_BASE_URL", "")


def create_task(author, data):
    assignees = normalize_ids(data.get("assigned_users") or [])
    # Fail before anything is written
    validate_targets(TASK_ASSIGNMENT, assignees)
    try:
        task = create_form(author, _task_payload(data), form_type="task", seed_grants=False, commit=False)
        granted = grant_users(task, assignees, author.id, commit=False) if assignees else []
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        current_app.logger.warning("Integrity error while creating a task for %s", author.id)
        raise Conflict("Could not create task: conflicting data")
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info("Task %s created by %s with %d assignees", task.id, author.id, len(granted))
    notified = None
    if granted and data.get("notify"):
        notified = notify_assignees(task, granted)
    return task, notified


def update_task(task, data):
    return update_form(task, _task_payload(data))


def get_task(task_id):
    task = db.session.get(Form, task_id)
    if task is None or task.form_type != "task":
        raise NotFound("Task not found")
    return task


def notify_assignees(task, user_ids, reminder=False):
    users = [u for u in active_assignees(task) if u.id in set(user_ids)]
    make_message = task_reminder_message if reminder else task_assignment_message
    subject, body = make_message(task, base_url())
    return notify_users(users, subject, body)


def latest_responses(task):
    """{respondent_id: newest FormResponse}"""
    responses = db.session.execute(
        select(FormResponse)
        .where(FormResponse.form_id == task.id)
        .order_by(FormResponse.submission_no)
    ).scalars()
    return {r.respondent_id: r for r in responses}


def remind_unsubmitted(task, unsubmitted_only=True):
    assignees = active_assignees(task)
    if unsubmitted_only:
        responses = latest_responses(task)
        assignees = [
            u for u in assignees
            if u.id not in responses or responses[u.id].submission_status not in DONE_STATUSES
        ]
    return notify_assignees(task, [u.id for u in assignees], reminder=True)


def is_overdue(task, now=None):
    return task.status == "active" and task.is_past_deadline(now)


def task_stats(tasks, now=None):
    now = now or utc_now()
    return {
        "total": len(tasks),
        "active": sum(1 for t in tasks if t.status == "active"),
        "completed": sum(1 for t in tasks if t.status == "archived"),
        "overdue": sum(1 for t in tasks if is_overdue(t, now)),
    }


def assignment_summary(task):
    responses = latest_responses(task)
    assignees = active_assignees(task)
    rows = []
    for user in assignees:
        response = responses.get(user.id)
        rows.append({
            "user": {"id": user.id, "name": user.name, "email": user.email},
            "response_id": response.id if response else None,
            "submission_status": response.submission_status if response else "not_started",
            "submitted_at": isoformat(response.submitted_at) if response else None,
        })
    submitted = sum(1 for r in rows if r["submission_status"] in DONE_STATUSES)
    return rows, {"assigned": len(rows), "submitted": submitted, "pending": len(rows) - submitted}


def my_tasks(user, now=None):
    now = now or utc_now()
    tasks = db.session.execute(
        select(Form)
        .join(UserFormAccess, UserFormAccess.form_id == Form.id)
        .where(
            Form.form_type == "task",
            Form.status == "active",
            UserFormAccess.user_id == user.id,
            UserFormAccess.is_active.is_(True),
        )
        .order_by(Form.submission_deadline.is_(None), Form.submission_deadline, Form.created_at.desc())
    ).scalars().all()
    mine = {}
    if tasks:
        rows = db.session.execute(
            select(FormResponse)
            .where(FormResponse.form_id.in_([t.id for t in tasks]), FormResponse.respondent_id == user.id)
            .order_by(FormResponse.submission_no)
        ).scalars()
        mine = {r.form_id: r for r in rows}
    completed = sum(1 for t in tasks if t.id in mine and mine[t.id].submission_status in DONE_STATUSES)
    overdue = sum(
        1 for t in tasks
        if t.is_past_deadline(now) and not (t.id in mine and mine[t.id].submission_status in DONE_STATUSES)
    )
    stats = {"total": len(tasks), "completed": completed, "pending": len(tasks) - completed, "overdue": overdue}
    return tasks, mine, stats


def submit_task(user, task, answers, status="submitted"):
    if not has_user_grant(user, task.id):
        raise Forbidden("You are not assigned to this task")
    return save_response(task, user, answers, status=status)


def export_workbook(task):
    """Responses of every assignee as an .xlsx file (BytesIO)."""
    fields = task.active_fields
    responses = latest_responses(task)
    wb = Workbook()
    ws = wb.active
    ws.title = "Responses"
    ws.append(["Name", "Email", "Status", "Submitted At"] + [f.field_label for f in fields])
    for user in active_assignees(task):
        response = responses.get(user.id)
        answers = {}
        if response is not None:
            answers = {row.field_id: row for row in response.field_responses}
        row = [
            user.name,
            user.email,
            response.submission_status if response else "not_started",
            as_utc(response.submitted_at).strftime("%Y-%m-%d %H:%M") if response and response.submitted_at else "",
        ]
        for field in fields:
            answer = answers.get(field.id)
            if answer is None:
                row.append("")
            elif answer.field_values is not None:
                row.append(", ".join(answer.field_values))
            else:
                row.append(answer.field_value)
        ws.append(row)
    bio = BytesIO()
    wb.save(bio)
    bio.seek(0)
    return bio