class ApiError(Exception):
    """Base for errors translated into the JSON error envelope."""

    status = 500
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(self, message=None, details=None, code=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details
        if code:
            self.code = code


class Unauthorized(ApiError):
    status = 401
    code = "unauthorized"
    default_message = "Authentication required"


class Forbidden(ApiError):
    status = 403
    code = "forbidden"
    default_message = "Permission denied"


class NotFound(ApiError):
    status = 404
    code = "not_found"
    default_message = "Resource not found"


class ValidationError(ApiError):
    status = 400
    code = "validation_error"
    default_message = "Invalid request"


class Conflict(ApiError):
    status = 409
    code = "conflict"
    default_message = "Resource conflict"


class Internal(ApiError):
    pass
