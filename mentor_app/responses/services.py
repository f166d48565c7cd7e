"""Form response lifecycle.

draft -> submitted -> reviewed -> approved

Respondents save drafts and submit; reviewers with edit access to the form
move submitted responses forward. Deployments can add review outcomes
(e.g. ``{"submitted": ["rejected"]}``) through ``EXTRA_REVIEW_TRANSITIONS``.
"""
from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from .. import db
from ..errors import Conflict, ValidationError
from ..forms.validation import FieldError, clean_answer, is_empty_answer
from ..models import FormResponse, FormFieldResponse, isoformat, utc_now

RESPONDENT_STATUSES = ("draft", "submitted")
REVIEW_TRANSITIONS = {
    "submitted": ("reviewed",),
    "reviewed": ("approved",),
}


def review_transitions():
    table = {state: list(targets) for state, targets in REVIEW_TRANSITIONS.items()}
    for state, targets in (current_app.config.get("EXTRA_REVIEW_TRANSITIONS") or {}).items():
        table.setdefault(state, [])
        table[state].extend(t for t in targets if t not in table[state])
    return table


def known_statuses():
    statuses = set(RESPONDENT_STATUSES)
    for state, targets in review_transitions().items():
        statuses.add(state)
        statuses.update(targets)
    return statuses


def is_locked(response):
    """Anything past draft/submitted was set by a reviewer."""
    return response.submission_status not in RESPONDENT_STATUSES


def _answer_items(form, answers):
    """(field, raw) pairs from {field_name or field_id: value} or a list of rows."""
    by_name = {f.field_name: f for f in form.active_fields}
    by_id = {str(f.id): f for f in form.active_fields}
    unknown = []
    if isinstance(answers, dict):
        items = answers.items()
        pairs = []
        for key, raw in items:
            field = by_name.get(str(key)) or by_id.get(str(key))
            if field is None:
                unknown.append(str(key))
            else:
                pairs.append((field, raw))
    elif isinstance(answers, list):
        pairs = []
        for row in answers:
            if not isinstance(row, dict):
                raise ValidationError("Each answer must be an object")
            key = row.get("field_id", row.get("field_name"))
            field = by_id.get(str(key)) or by_name.get(str(key))
            if field is None:
                unknown.append(str(key))
                continue
            raw = row.get("field_values") if row.get("field_values") is not None else row.get("field_value")
            pairs.append((field, raw))
    elif answers is None:
        pairs = []
    else:
        raise ValidationError("answers must be an object or a list")
    if unknown:
        raise ValidationError("Unknown or inactive fields", details={"unknown_fields": unknown})
    return pairs


def collect_answers(form, answers):
    """Validate every answer; returns {field: (field_value, field_values)}."""
    cleaned = {}
    errors = {}
    for field, raw in _answer_items(form, answers):
        try:
            value, values = clean_answer(field, raw)
        except FieldError as exc:
            errors[field.field_name] = str(exc)
            continue
        if value is not None or values is not None:
            cleaned[field] = (value, values)
    if errors:
        raise ValidationError("Some answers are invalid", details={"field_errors": errors})
    return cleaned


def missing_required(form, cleaned):
    missing = []
    for field in form.active_fields:
        if not field.is_required:
            continue
        value, values = cleaned.get(field, (None, None))
        if is_empty_answer(value, values):
            missing.append(field.field_label)
    return missing


def _existing_response(form, respondent):
    stmt = select(FormResponse).where(
        FormResponse.form_id == form.id, FormResponse.respondent_id == respondent.id
    )
    if not form.allow_multiple_submissions:
        return db.session.execute(stmt.where(FormResponse.submission_no == 1)).scalars().first()
    # Multiple submissions: only an open draft is reused
    return db.session.execute(
        stmt.where(FormResponse.submission_status == "draft").order_by(FormResponse.submission_no.desc())
    ).scalars().first()


def _next_submission_no(form, respondent):
    if not form.allow_multiple_submissions:
        return 1
    current = db.session.execute(
        select(func.max(FormResponse.submission_no)).where(
            FormResponse.form_id == form.id, FormResponse.respondent_id == respondent.id
        )
    ).scalar()
    return (current or 0) + 1


def check_accepting(form):
    if form.status != "active":
        raise ValidationError("This form is not accepting responses")
    if form.is_past_deadline():
        raise ValidationError("The submission deadline has passed")


def save_response(form, respondent, answers, status="draft", response=None, metadata=None):
    """Create or overwrite the respondent's response.

    Field answers are replaced wholesale. On ``submitted`` every required
    field must be answered, otherwise nothing is written.
    """
    if response is not None and is_locked(response):
        raise Conflict("This response has already been reviewed")
    if status not in RESPONDENT_STATUSES:
        raise ValidationError(f"submission_status must be one of: {', '.join(RESPONDENT_STATUSES)}")
    check_accepting(form)
    cleaned = collect_answers(form, answers)
    if status == "submitted":
        missing = missing_required(form, cleaned)
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                details={"missing_fields": missing},
            )

    if response is None:
        response = _existing_response(form, respondent)
    if response is not None:
        if is_locked(response):
            raise Conflict("This response has already been reviewed")
        if response.submission_status == "submitted" and status == "draft":
            raise Conflict("A submitted response cannot be turned back into a draft")
    else:
        response = FormResponse(
            form_id=form.id,
            respondent_id=respondent.id,
            submission_no=_next_submission_no(form, respondent),
        )
        db.session.add(response)

    response.submission_status = status
    if status == "submitted":
        response.submitted_at = utc_now()
    if metadata is not None:
        response.meta = metadata

    try:
        response.field_responses.clear()
        db.session.flush()
        for field, (value, values) in cleaned.items():
            response.field_responses.append(
                FormFieldResponse(field_id=field.id, field_value=value, field_values=values)
            )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        current_app.logger.warning("Duplicate response for form %s by %s", form.id, respondent.id)
        raise Conflict("A response for this form already exists")
    current_app.logger.info("Response %s saved as %s", response.id, status)
    return response


def review_response(response, reviewer, status=None, notes=None):
    if status is None and notes is None:
        raise ValidationError("Provide a status and/or review_notes")
    if status is not None:
        if status not in known_statuses():
            raise ValidationError(f"Unknown status: {status}")
        allowed = review_transitions().get(response.submission_status, [])
        if status not in allowed:
            raise Conflict(f"Cannot move a response from {response.submission_status} to {status}")
        response.submission_status = status
    if notes is not None:
        response.review_notes = notes
    response.reviewed_at = utc_now()
    response.reviewed_by = reviewer.id
    db.session.commit()
    current_app.logger.info("Response %s reviewed by %s -> %s", response.id, reviewer.id, response.submission_status)
    return response


def delete_response(response, by_editor=False):
    if not by_editor and is_locked(response):
        raise Conflict("Reviewed responses cannot be deleted")
    db.session.delete(response)
    db.session.commit()


def list_responses(form, respondent_id=None, status=None):
    stmt = select(FormResponse).where(FormResponse.form_id == form.id)
    if respondent_id is not None:
        stmt = stmt.where(FormResponse.respondent_id == respondent_id)
    if status:
        stmt = stmt.where(FormResponse.submission_status == status)
    return db.session.execute(
        stmt.order_by(FormResponse.created_at.desc(), FormResponse.submission_no.desc())
    ).scalars().all()


def serialize_response(response, answers=True):
    data = {
        "id": response.id,
        "form_id": response.form_id,
        "respondent_id": response.respondent_id,
        "respondent": None,
        "submission_no": response.submission_no,
        "submission_status": response.submission_status,
        "submitted_at": isoformat(response.submitted_at),
        "reviewed_at": isoformat(response.reviewed_at),
        "reviewed_by": response.reviewed_by,
        "review_notes": response.review_notes,
        "metadata": response.meta,
        "created_at": isoformat(response.created_at),
        "updated_at": isoformat(response.updated_at),
    }
    if response.respondent is not None:
        data["respondent"] = {
            "id": response.respondent.id,
            "name": response.respondent.name,
            "email": response.respondent.email,
        }
    if answers:
        rows = sorted(response.field_responses, key=lambda r: (r.field.display_order or 0, r.field_id))
        data["answers"] = [
            {
                "field_id": row.field_id,
                "field_name": row.field.field_name,
                "field_label": row.field.field_label,
                "field_type": row.field.field_type,
                "field_value": row.field_value,
                "field_values": row.field_values,
            }
            for row in rows
        ]
    return data
