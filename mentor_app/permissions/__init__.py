from flask import Blueprint

permissions_bp = Blueprint("permissions", __name__)

from . import routes  # noqa: E402,F401
