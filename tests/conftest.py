import itertools
from types import SimpleNamespace

import pytest

from mentor_app import create_app, db
from mentor_app.identity import issue_token
from mentor_app.models import Student, User
from mentor_app.roles import get_role


@pytest.fixture()
def app(tmp_path):
    db_path = (tmp_path / "test.db").as_posix()
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
        "RATELIMIT_ENABLED": False,
        "CACHE_TYPE": "SimpleCache",
        "MAIL_HOST": None,
        "PUBLIC_BASE_URL": "https://mentor.example.org",
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def ctx(app):
    """App context for tests that call services directly (no test client)."""
    with app.app_context():
        yield app


def auth_headers(email):
    return {"Authorization": f"Bearer {issue_token(email)}"}


@pytest.fixture()
def make_user(app):
    counter = itertools.count(1)

    def _make(role="teacher", region=None, email=None, name=None):
        n = next(counter)
        email = email or f"{role}{n}@example.com"
        with app.app_context():
            user = User(
                email=email,
                name=name or f"{role.title()} {n}",
                region=region,
                role_id=get_role(role).id,
            )
            db.session.add(user)
            db.session.commit()
            return SimpleNamespace(
                id=user.id, email=email, role=role, region=region, headers=auth_headers(email),
            )
    return _make


@pytest.fixture()
def make_student(app):
    counter = itertools.count(1)

    def _make(region=None, name=None, **extra):
        n = next(counter)
        with app.app_context():
            student = Student(name=name or f"Student {n}", region=region, **extra)
            db.session.add(student)
            db.session.commit()
            return student.id
    return _make


@pytest.fixture()
def sent_mail(monkeypatch):
    """Captures outgoing email instead of talking to SMTP."""
    outbox = []

    def fake_send(subject, to_address, text_body, html_body=None):
        outbox.append({"subject": subject, "to": to_address, "body": text_body})
        return True

    monkeypatch.setattr("mentor_app.email_utils.send_email", fake_send)
    return outbox
