from flask import Blueprint

responses_bp = Blueprint("responses", __name__)

from . import routes  # noqa: E402,F401
