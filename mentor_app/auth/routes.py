from flask import current_app, request
from flask_login import current_user, login_user, logout_user

from . import auth_bp
from .. import limiter
from ..api_utils import api_success, json_body
from ..errors import Forbidden, Unauthorized
from ..identity import bearer_token, provision_user, read_token


@auth_bp.route("/login", methods=["POST"])
@limiter.limit("10 per minute")
def login():
    """Exchange an identity token for a session; creates the user on first login."""
    token = bearer_token(request)
    if token is None:
        token = (json_body().get("token") or "").strip()
    if not token:
        raise Unauthorized("Identity token required")
    claims = read_token(token)
    user = provision_user(claims)
    if not user.is_active:
        raise Forbidden("This account is disabled")
    login_user(user)
    current_app.logger.info("User %s logged in", user.email)
    return api_success(user.to_dict())


@auth_bp.route("/logout", methods=["POST"])
def logout():
    if current_user.is_authenticated:
        current_app.logger.info("User %s logged out", current_user.email)
    logout_user()
    return api_success({"logged_out": True})
