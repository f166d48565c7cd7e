from types import SimpleNamespace

from mentor_app.email_utils import build_message, mail_settings, notify_users, send_email


def test_mail_settings_defaults():
    settings = mail_settings({"MAIL_HOST": "smtp.example.org", "MAIL_USER": "bot@example.org"})
    assert settings.port == 587
    assert settings.sender == "bot@example.org"
    assert settings.use_tls and not settings.use_ssl


def test_build_message_with_html():
    settings = mail_settings({"MAIL_FROM": "noreply@example.org"})
    message = build_message(settings, "Hi", "a@example.org", "plain", "<p>html</p>")
    assert message["From"] == "noreply@example.org"
    assert message["To"] == "a@example.org"
    assert message.is_multipart()


def test_send_email_without_host_is_a_noop(ctx):
    assert send_email("Hi", "a@example.org", "body") is False


def test_notify_users_counts_outcomes(ctx, sent_mail):
    users = [SimpleNamespace(email="a@example.org"), SimpleNamespace(email=None)]
    result = notify_users(users, "Hello", "body")
    assert result == {"sent": 1, "failed": 0, "skipped": 1}
    assert [m["to"] for m in sent_mail] == ["a@example.org"]
