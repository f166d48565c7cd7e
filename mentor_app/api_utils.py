from datetime import datetime, timezone

from flask import current_app, jsonify, request

from .errors import NotFound, ValidationError


def api_success(data=None, meta=None, status=200):
    body = {"success": True, "data": data if data is not None else {}, "meta": meta or {}}
    return jsonify(body), status


def api_error(code="error", message="", status=400, details=None):
    error = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    body = {"success": False, "error": error}
    return jsonify(body), status


def json_body():
    """Request JSON as a dict; anything else is a 400."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def require_fields(data, *names):
    missing = [n for n in names if data.get(n) in (None, "")]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            details={"missing_fields": missing},
        )


def get_or_404(model, ident, message=None):
    from . import db
    obj = db.session.get(model, ident)
    if obj is None:
        raise NotFound(message or f"{model.__name__} not found")
    return obj


def page_args():
    """limit/offset query args, clamped to MAX_PAGE_SIZE."""
    default = int(current_app.config.get("DEFAULT_PAGE_SIZE", 50))
    ceiling = int(current_app.config.get("MAX_PAGE_SIZE", 500))
    try:
        limit = int(request.args.get("limit", default))
        offset = int(request.args.get("offset", 0))
    except ValueError:
        raise ValidationError("limit and offset must be integers")
    return max(1, min(limit, ceiling)), max(0, offset)


def parse_datetime(value, name="datetime"):
    """ISO-8601 string (``Z`` suffix allowed) to an aware UTC datetime."""
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be an ISO-8601 string")
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 string")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def as_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")
