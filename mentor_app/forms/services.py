from collections import Counter, OrderedDict

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from .. import db
from ..api_utils import as_bool, parse_datetime
from ..errors import Conflict, ValidationError
from ..grants import seed_role_grants
from ..models import (
    Form, FormField, FormFieldOption, FormFieldResponse, FormResponse, FormSection,
    isoformat, new_id,
)
from ..roles import DEFAULT_FORM_GRANTS
from .validation import (
    CHOICE_TYPES, FIELD_TYPES, GRID_TYPES, normalize_field_type,
)

FORM_TYPES = ("form", "task")
FORM_STATUSES = ("draft", "active", "inactive", "archived")

FIELD_ATTRS = (
    "placeholder", "help_text", "validation_rules", "min_length", "max_length",
    "student_field_mapping", "upload_folder_id",
)


def _commit(action):
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        current_app.logger.warning("Integrity error while trying to %s", action)
        raise Conflict(f"Could not {action}: conflicting data")


def _apply_form_attrs(form, data, partial):
    if "title" in data or not partial:
        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("title is required", details={"missing_fields": ["title"]})
        form.title = title
    if "description" in data:
        form.description = data.get("description")
    if "status" in data:
        if data["status"] not in FORM_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(FORM_STATUSES)}")
        form.status = data["status"]
    if "is_required" in data:
        form.is_required = as_bool(data["is_required"])
    if "allow_multiple_submissions" in data:
        form.allow_multiple_submissions = as_bool(data["allow_multiple_submissions"])
    if "submission_deadline" in data:
        form.submission_deadline = parse_datetime(data["submission_deadline"], "submission_deadline")


def _option_entries(raw, label):
    """Options may be plain strings or {option_value, option_label} objects."""
    entries = []
    for i, item in enumerate(raw or []):
        if isinstance(item, str):
            value, text = item.strip(), item.strip()
        elif isinstance(item, dict):
            value = str(item.get("option_value") or item.get("value") or "").strip()
            text = str(item.get("option_label") or item.get("label") or value).strip()
        else:
            raise ValidationError(f"Invalid option for field '{label}'")
        if not value:
            raise ValidationError(f"Empty option value for field '{label}'")
        entries.append((value, text, i))
    values = [v for v, _, _ in entries]
    if len(values) != len(set(values)):
        raise ValidationError(f"Duplicate option values for field '{label}'")
    return entries


def _field_specs(sections_data):
    """Validate incoming sections/fields and assign field names."""
    if not isinstance(sections_data, list):
        raise ValidationError("sections must be a list")
    taken = set()
    specs = []
    for s_index, section in enumerate(sections_data):
        if not isinstance(section, dict):
            raise ValidationError("Each section must be an object")
        fields = section.get("fields") or []
        if not isinstance(fields, list):
            raise ValidationError("section fields must be a list")
        for f_index, field in enumerate(fields):
            if not isinstance(field, dict):
                raise ValidationError("Each field must be an object")
            label = (field.get("field_label") or field.get("label") or "").strip()
            if not label:
                raise ValidationError("Every field needs a field_label")
            field_type = normalize_field_type(field.get("field_type") or field.get("type"))
            if field_type not in FIELD_TYPES:
                raise ValidationError(f"Unsupported field_type '{field_type}' for field '{label}'")
            name = (field.get("field_name") or "").strip()
            if name in taken:
                raise ValidationError(f"Duplicate field_name '{name}'")
            options = _option_entries(field.get("options"), label)
            grid = field.get("grid_options") or field.get("gridOptions") or {}
            rows = _option_entries(grid.get("rows"), label)
            columns = _option_entries(grid.get("columns"), label)
            if field_type in CHOICE_TYPES and field_type != "checkbox" and not options:
                raise ValidationError(f"Field '{label}' needs at least one option")
            if field_type in GRID_TYPES and (not rows or not columns):
                raise ValidationError(f"Grid field '{label}' needs rows and columns")
            rules = field.get("validation_rules")
            if rules is not None and not isinstance(rules, dict):
                raise ValidationError(f"validation_rules for '{label}' must be an object")
            if name:
                taken.add(name)
            specs.append({
                "section_index": s_index,
                "field_name": name,
                "field_label": label,
                "field_type": field_type,
                "display_order": field.get("display_order", f_index),
                "is_required": as_bool(field.get("is_required", field.get("required"))),
                "options": options,
                "rows": rows,
                "columns": columns,
                **{attr: field.get(attr) for attr in FIELD_ATTRS},
            })
    # Unnamed fields get field_<n>, skipping names already in use
    counter = 1
    for spec in specs:
        if spec["field_name"]:
            continue
        while f"field_{counter}" in taken:
            counter += 1
        spec["field_name"] = f"field_{counter}"
        taken.add(spec["field_name"])
    return specs


def _sections_from(data):
    if "sections" in data:
        return data.get("sections") or []
    if "fields" in data:
        return [{"title": None, "fields": data.get("fields") or []}]
    return None


def _sync_options(field, option_type, entries):
    existing = {o.option_value: o for o in field.options if o.option_type == option_type}
    seen = set()
    for value, label, order in entries:
        seen.add(value)
        option = existing.get(value)
        if option is None:
            field.options.append(FormFieldOption(
                option_value=value, option_label=label,
                option_type=option_type, display_order=order, is_active=True,
            ))
        else:
            option.option_label = label
            option.display_order = order
            option.is_active = True
    for value, option in existing.items():
        if value not in seen:
            option.is_active = False


def _sync_sections(form, sections_data):
    existing = {s.id: s for s in form.sections}
    kept = []
    for index, data in enumerate(sections_data):
        section = existing.pop(data.get("id"), None) if data.get("id") is not None else None
        if section is None:
            section = FormSection(form_id=form.id)
            form.sections.append(section)
        section.title = data.get("title")
        section.description = data.get("description")
        section.order = data.get("order", index)
        kept.append(section)
    for orphan in existing.values():
        form.sections.remove(orphan)
    return kept


def _apply_schema(form, sections_data):
    """Update fields by field_name: update, insert, deactivate missing."""
    specs = _field_specs(sections_data)
    sections = _sync_sections(form, sections_data)
    db.session.flush()

    existing = {f.field_name: f for f in form.fields}
    seen = set()
    for spec in specs:
        seen.add(spec["field_name"])
        field = existing.get(spec["field_name"])
        if field is None:
            field = FormField(form_id=form.id, field_name=spec["field_name"])
            form.fields.append(field)
        field.section_id = sections[spec["section_index"]].id
        field.field_label = spec["field_label"]
        field.field_type = spec["field_type"]
        field.display_order = spec["display_order"]
        field.is_required = spec["is_required"]
        field.is_active = True
        for attr in FIELD_ATTRS:
            setattr(field, attr, spec[attr])
        _sync_options(field, "standard", spec["options"])
        _sync_options(field, "grid_row", spec["rows"])
        _sync_options(field, "grid_column", spec["columns"])
    for name, field in existing.items():
        if name not in seen:
            field.is_active = False


def create_form(author, data, form_type="form", seed_grants=True, commit=True):
    form_type = data.get("form_type") or form_type
    if form_type not in FORM_TYPES:
        raise ValidationError(f"form_type must be one of: {', '.join(FORM_TYPES)}")
    form = Form(id=new_id(), form_type=form_type, created_by=author.id,
                status="active" if form_type == "task" else "draft")
    _apply_form_attrs(form, data, partial=False)
    db.session.add(form)
    db.session.flush()

    sections_data = _sections_from(data)
    if sections_data:
        _apply_schema(form, sections_data)
    if seed_grants:
        seed_role_grants(form, DEFAULT_FORM_GRANTS, author.id)
    if commit:
        _commit("create form")
        current_app.logger.info("Form %s created by %s", form.id, author.id)
    return form


def update_form(form, data):
    _apply_form_attrs(form, data, partial=True)
    sections_data = _sections_from(data)
    if sections_data is not None:
        _apply_schema(form, sections_data)
    _commit("update form")
    return form


def delete_form(form):
    form_id = form.id
    db.session.delete(form)
    _commit("delete form")
    current_app.logger.info("Form %s deleted", form_id)


def _serialize_option(option):
    return {
        "id": option.id,
        "option_value": option.option_value,
        "option_label": option.option_label,
        "display_order": option.display_order,
    }


def serialize_field(field):
    data = {
        "id": field.id,
        "section_id": field.section_id,
        "field_name": field.field_name,
        "field_label": field.field_label,
        "field_type": field.field_type,
        "display_order": field.display_order,
        "is_required": bool(field.is_required),
        "is_active": bool(field.is_active),
        **{attr: getattr(field, attr) for attr in FIELD_ATTRS},
        "options": [_serialize_option(o) for o in field.active_options("standard")],
    }
    if field.field_type in GRID_TYPES:
        data["grid_options"] = {
            "rows": [_serialize_option(o) for o in field.active_options("grid_row")],
            "columns": [_serialize_option(o) for o in field.active_options("grid_column")],
        }
    return data


def serialize_form(form, detail=True):
    data = {
        "id": form.id,
        "title": form.title,
        "description": form.description,
        "form_type": form.form_type,
        "status": form.status,
        "is_required": bool(form.is_required),
        "allow_multiple_submissions": bool(form.allow_multiple_submissions),
        "submission_deadline": isoformat(form.submission_deadline),
        "created_by": form.created_by,
        "created_at": isoformat(form.created_at),
        "updated_at": isoformat(form.updated_at),
    }
    if not detail:
        return data
    sections = []
    placed = set()
    for section in form.sections:
        fields = [f for f in section.fields if f.is_active]
        placed.update(f.id for f in fields)
        sections.append({
            "id": section.id,
            "title": section.title,
            "description": section.description,
            "order": section.order,
            "fields": [serialize_field(f) for f in fields],
        })
    loose = [f for f in form.active_fields if f.id not in placed]
    if loose:
        sections.append({"id": None, "title": None, "description": None,
                         "order": len(sections), "fields": [serialize_field(f) for f in loose]})
    data["sections"] = sections
    return data


def response_counts(form_ids):
    """{form_id: number of non-draft responses}"""
    if not form_ids:
        return {}
    rows = db.session.execute(
        select(FormResponse.form_id, func.count(FormResponse.id))
        .where(FormResponse.form_id.in_(form_ids), FormResponse.submission_status != "draft")
        .group_by(FormResponse.form_id)
    ).all()
    return {form_id: count for form_id, count in rows}


def responses_overview(form):
    """Per-field answer summary over every non-draft response."""
    responses = db.session.execute(
        select(FormResponse).where(
            FormResponse.form_id == form.id, FormResponse.submission_status != "draft"
        )
    ).scalars().all()
    answers = {}
    if responses:
        rows = db.session.execute(
            select(FormFieldResponse).where(FormFieldResponse.response_id.in_([r.id for r in responses]))
        ).scalars()
        for row in rows:
            answers.setdefault(row.field_id, []).append(row)

    summary = []
    for field in form.active_fields:
        rows = answers.get(field.id, [])
        entry = {
            "field_id": field.id,
            "field_name": field.field_name,
            "field_label": field.field_label,
            "field_type": field.field_type,
            "answer_count": len(rows),
        }
        if field.field_type in CHOICE_TYPES:
            labels = OrderedDict((o.option_value, o.option_label) for o in field.active_options("standard"))
            counts = Counter()
            for row in rows:
                values = row.field_values if row.field_values is not None else [row.field_value]
                counts.update(v for v in values if v)
            entry["counts"] = {labels.get(v, v): counts.get(v, 0) for v in labels}
            for value in counts:
                if value not in labels:
                    entry["counts"][value] = counts[value]
        elif field.field_type in GRID_TYPES:
            row_labels = {o.option_value: o.option_label for o in field.active_options("grid_row")}
            col_labels = {o.option_value: o.option_label for o in field.active_options("grid_column")}
            counts = Counter()
            for row in rows:
                for item in row.field_values or []:
                    r, _, c = item.partition(":")
                    counts[f"{row_labels.get(r, r)} / {col_labels.get(c, c)}"] += 1
            entry["counts"] = dict(counts)
        else:
            entry["values"] = [row.field_value for row in rows if row.field_value]
        summary.append(entry)
    return {"total_responses": len(responses), "fields": summary}
