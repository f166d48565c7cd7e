"""Identity provider adapter.

The identity provider hands out signed tokens carrying
``{"sub", "email", "name", "picture"}``. We only verify them and map the
email onto a local User; credentials never pass through this app.
"""
from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import func, select

from . import db
from .errors import Unauthorized
from .models import User, utc_now
from .roles import DEFAULT_ROLE, get_role

TOKEN_SALT = "identity"


def _get_serializer():
    secret = current_app.config.get("IDENTITY_SECRET_KEY") or current_app.config["SECRET_KEY"]
    return URLSafeTimedSerializer(secret)


def issue_token(email, name=None, picture=None, subject=None):
    claims = {"sub": subject or email, "email": email, "name": name, "picture": picture}
    return _get_serializer().dumps(claims, salt=TOKEN_SALT)


def read_token(token):
    max_age = int(current_app.config.get("IDENTITY_TOKEN_MAX_AGE", 3600))
    try:
        claims = _get_serializer().loads(token, salt=TOKEN_SALT, max_age=max_age)
    except SignatureExpired:
        raise Unauthorized("Identity token expired")
    except BadSignature:
        raise Unauthorized("Invalid identity token")
    if not isinstance(claims, dict) or not (claims.get("email") or "").strip():
        raise Unauthorized("Identity token has no email claim")
    return claims


def bearer_token(request):
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def find_user(email):
    email = (email or "").strip().lower()
    if not email:
        return None
    return db.session.execute(select(User).where(func.lower(User.email) == email)).scalars().first()


def provision_user(claims):
    """Local user for the token's email, created with the default role on first login."""
    user = find_user(claims["email"])
    if user is None:
        role = get_role(DEFAULT_ROLE)
        user = User(
            email=claims["email"].strip().lower(),
            name=claims.get("name") or claims["email"].split("@")[0],
            avatar_url=claims.get("picture"),
            role_id=role.id if role else None,
        )
        db.session.add(user)
        current_app.logger.info("Provisioned user %s on first login", user.email)
    elif claims.get("picture") and not user.avatar_url:
        user.avatar_url = claims["picture"]
    user.last_active = utc_now()
    db.session.commit()
    return user


def load_user_from_request(request):
    token = bearer_token(request)
    if token is None:
        return None
    try:
        claims = read_token(token)
    except Unauthorized as exc:
        current_app.logger.info("Rejected bearer token: %s", exc.message)
        return None
    user = find_user(claims["email"])
    if user is None or not user.is_active:
        return None
    return user
