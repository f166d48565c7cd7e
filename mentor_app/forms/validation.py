"""Answer validation for dynamic form fields.

``clean_answer`` turns a raw JSON answer into the pair stored on a
FormFieldResponse: ``(field_value, field_values)``. Exactly one side is
populated; ``(None, None)`` means "no answer".
"""
import re
from datetime import date, datetime, timezone

SINGLE_VALUE_TYPES = frozenset({
    "text", "email", "taiwan_id", "phone", "number", "textarea", "date",
    "select", "radio", "file_upload",
})
MULTI_VALUE_TYPES = frozenset({"multi-select", "checkbox", "radio_grid", "checkbox_grid"})
CHOICE_TYPES = frozenset({"select", "radio", "multi-select", "checkbox"})
GRID_TYPES = frozenset({"radio_grid", "checkbox_grid"})
FIELD_TYPES = SINGLE_VALUE_TYPES | MULTI_VALUE_TYPES

# Older clients send "file"
FIELD_TYPE_ALIASES = {"file": "file_upload", "multiselect": "multi-select"}

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_RE = re.compile(r"^(\+886|0)?[2-9]\d{7,8}$")
TAIWAN_ID_RE = re.compile(r"^[A-Z][12]\d{8}$")
TAIWAN_ID_LETTERS = {
    "A": 10, "B": 11, "C": 12, "D": 13, "E": 14, "F": 15, "G": 16, "H": 17,
    "I": 34, "J": 18, "K": 19, "L": 20, "M": 21, "N": 22, "O": 35, "P": 23,
    "Q": 24, "R": 25, "S": 26, "T": 27, "U": 28, "V": 29, "W": 32, "X": 30,
    "Y": 31, "Z": 33,
}


class FieldError(ValueError):
    pass


def normalize_field_type(field_type):
    value = (field_type or "text").strip().lower()
    return FIELD_TYPE_ALIASES.get(value, value)


def is_multi_value(field_type):
    return normalize_field_type(field_type) in MULTI_VALUE_TYPES


def is_valid_taiwan_id(value):
    if not TAIWAN_ID_RE.match(value):
        return False
    code = TAIWAN_ID_LETTERS[value[0]]
    total = code // 10 + (code % 10) * 9
    for i in range(1, 9):
        total += int(value[i]) * (9 - i)
    return (10 - total % 10) % 10 == int(value[9])


def is_valid_phone(value):
    return bool(PHONE_RE.match(re.sub(r"[-\s]", "", value)))


def _parse_date(value, label):
    text = str(value).strip().split("T", 1)[0]
    try:
        return date.fromisoformat(text)
    except ValueError:
        raise FieldError(f"{label} must be a date in YYYY-MM-DD format")



def _today():
    return datetime.now(timezone.utc).date()


def is_empty_answer(field_value, field_values):
    if field_values is not None:
        return len(field_values) == 0
    return field_value is None or not str(field_value).strip()


def _as_text(raw, label):
    if raw is None:
        return None
    if isinstance(raw, bool):
        return "true" if raw else "false"
    if isinstance(raw, (int, float)):
        return str(raw)
    if isinstance(raw, str):
        return raw.strip() or None
    raise FieldError(f"{label} expects a single value")


def _as_list(raw, label):
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        raise FieldError(f"{label} expects a list of values")
    seen = []
    for item in raw:
        text = _as_text(item, label)
        if text is not None and text not in seen:
            seen.append(text)
    return seen


def _check_length(field, text):
    if field.min_length is not None and len(text) < field.min_length:
        raise FieldError(f"{field.field_label} must be at least {field.min_length} characters")
    if field.max_length is not None and len(text) > field.max_length:
        raise FieldError(f"{field.field_label} must be at most {field.max_length} characters")


def _check_number(field, text, rules):
    try:
        number = float(text)
    except ValueError:
        raise FieldError(f"{field.field_label} must be a number")
    if rules.get("integerOnly") and not number.is_integer():
        raise FieldError(f"{field.field_label} must be a whole number")
    if isinstance(rules.get("min"), (int, float)) and number < rules["min"]:
        raise FieldError(f"{field.field_label} must be at least {rules['min']}")
    if isinstance(rules.get("max"), (int, float)) and number > rules["max"]:
        raise FieldError(f"{field.field_label} must be at most {rules['max']}")


def _check_date(field, text, rules, today):
    value = _parse_date(text, field.field_label)
    if rules.get("noPast") and value < today:
        raise FieldError(f"{field.field_label} cannot be in the past")
    if rules.get("noFuture") and value > today:
        raise FieldError(f"{field.field_label} cannot be in the future")
    if rules.get("minDate") and value < _parse_date(rules["minDate"], "minDate"):
        raise FieldError(f"{field.field_label} must be on or after {rules['minDate']}")
    if rules.get("maxDate") and value > _parse_date(rules["maxDate"], "maxDate"):
        raise FieldError(f"{field.field_label} must be on or before {rules['maxDate']}")
    return value.isoformat()


def _check_email(field, text, rules):
    if not EMAIL_RE.match(text):
        raise FieldError(f"{field.field_label} must be a valid email address")
    domains = [d.lower().lstrip("@") for d in rules.get("allowedDomains") or []]
    if domains and not any(text.lower().endswith("@" + d) for d in domains):
        raise FieldError(f"{field.field_label} must use one of: {', '.join(domains)}")


def _clean_file(field, raw, rules):
    """File answers are an opaque reference id in the external drive."""
    if isinstance(raw, dict):
        ref = raw.get("file_id") or raw.get("id")
        name = raw.get("name") or ""
        if not isinstance(name, str):
            raise FieldError(f"{field.field_label} file name must be text")
        extensions = [e.lower().lstrip(".") for e in rules.get("allowedExtensions") or []]
        if extensions and name and name.rsplit(".", 1)[-1].lower() not in extensions:
            raise FieldError(f"{field.field_label} only accepts: {', '.join(extensions)}")
        max_size = rules.get("maxFileSize")
        if isinstance(max_size, (int, float)) and isinstance(raw.get("size"), (int, float)) and raw["size"] > max_size:
            raise FieldError(f"{field.field_label} exceeds the maximum file size")
        return _as_text(ref, field.field_label)
    return _as_text(raw, field.field_label)


def _clean_choices(field, values):
    options = {o.option_value for o in field.active_options("standard")}
    if not options:
        return values
    unknown = [v for v in values if v not in options]
    if unknown:
        raise FieldError(f"{field.field_label} has invalid option(s): {', '.join(unknown)}")
    return values


def _clean_grid(field, values, single_per_row):
    rows = {o.option_value for o in field.active_options("grid_row")}
    columns = {o.option_value for o in field.active_options("grid_column")}
    answered_rows = set()
    for item in values:
        row, sep, column = item.partition(":")
        if not sep or row not in rows or column not in columns:
            raise FieldError(f"{field.field_label} has an invalid grid answer: {item}")
        if single_per_row and row in answered_rows:
            raise FieldError(f"{field.field_label} allows one answer per row")
        answered_rows.add(row)
    return values


def clean_answer(field, raw, today=None):
    """Validate ``raw`` for ``field`` and return ``(field_value, field_values)``."""
    field_type = normalize_field_type(field.field_type)
    rules = field.validation_rules or {}
    today = today or _today()

    if field_type in MULTI_VALUE_TYPES:
        if field_type in GRID_TYPES and isinstance(raw, dict):
            # {"row": "col"} or {"row": ["col", ...]}
            pairs = []
            for row, cols in raw.items():
                for col in (cols if isinstance(cols, list) else [cols]):
                    pairs.append(f"{row}:{col}")
            raw = pairs
        values = _as_list(raw, field.field_label)
        if not values:
            return None, None
        if field_type in GRID_TYPES:
            values = _clean_grid(field, values, single_per_row=field_type == "radio_grid")
        else:
            values = _clean_choices(field, values)
        return None, values

    if field_type == "file_upload":
        text = _clean_file(field, raw, rules)
        return (text, None) if text else (None, None)

    text = _as_text(raw, field.field_label)
    if text is None:
        return None, None
    if field_type in ("text", "textarea", "email", "phone", "taiwan_id"):
        _check_length(field, text)
    if field_type == "email":
        _check_email(field, text, rules)
    elif field_type == "taiwan_id":
        text = text.upper()
        if not is_valid_taiwan_id(text):
            raise FieldError(f"{field.field_label} is not a valid national ID number")
    elif field_type == "phone":
        if not is_valid_phone(text):
            raise FieldError(f"{field.field_label} is not a valid phone number")
    elif field_type == "number":
        _check_number(field, text, rules)
    elif field_type == "date":
        text = _check_date(field, text, rules, today)
    elif field_type in CHOICE_TYPES:
        _clean_choices(field, [text])
    return text, None
