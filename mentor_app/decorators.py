from functools import wraps

from flask_login import current_user

from .access import check_allow_list, enforce
from .errors import Unauthorized


def api_login_required(func):
    """Like flask_login.login_required, but answers with the JSON 401 envelope."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        if not current_user.is_authenticated:
            raise Unauthorized()
        return func(*args, **kwargs)
    return wrapper


def allow_list_required(list_name, message="You do not have permission to access this resource."):
    """
    Decorator to ensure the current user's role is in the named allow-list.
    Applies the login check itself.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                raise Unauthorized()
            enforce(check_allow_list(current_user, list_name, message))
            return func(*args, **kwargs)
        return wrapper
    return decorator
