import smtplib
from collections import namedtuple
from email.message import EmailMessage

from flask import current_app

MailSettings = namedtuple("MailSettings", "host port user password sender use_tls use_ssl")


def mail_settings(config):
    """Read the MAIL_* keys. A missing MAIL_HOST disables delivery."""
    user = config.get("MAIL_USER")
    return MailSettings(
        host=config.get("MAIL_HOST"),
        port=int(config.get("MAIL_PORT", 587)),
        user=user,
        password=config.get("MAIL_PASSWORD"),
        sender=config.get("MAIL_FROM") or user or "noreply@example.com",
        use_tls=bool(config.get("MAIL_USE_TLS", True)),
        use_ssl=bool(config.get("MAIL_USE_SSL", False)),
    )


def build_message(settings, subject, to_address, text_body, html_body=None):
    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = settings.sender
    message["To"] = to_address
    message.set_content(text_body)
    if html_body:
        message.add_alternative(html_body, subtype="html")
    return message


def _deliver(settings, message):
    if settings.use_ssl:
        connection = smtplib.SMTP_SSL(settings.host, settings.port)
    else:
        connection = smtplib.SMTP(settings.host, settings.port)
    with connection as server:
        if settings.use_tls and not settings.use_ssl:
            server.starttls()
        if settings.user and settings.password:
            server.login(settings.user, settings.password)
        server.send_message(message)


def send_email(subject: str, to_address: str, text_body: str, html_body: str = None) -> bool:
    """Send one message over SMTP. Returns False instead of raising on failure."""
    settings = mail_settings(current_app.config)
    if not settings.host:
        current_app.logger.info("Mail delivery disabled, dropping '%s' for %s", subject, to_address)
        return False

    try:
        _deliver(settings, build_message(settings, subject, to_address, text_body, html_body))
    except (smtplib.SMTPException, OSError) as exc:
        current_app.logger.error("Mail to %s via %s:%s failed: %s", to_address, settings.host, settings.port, exc)
        return False
    current_app.logger.debug("Mail '%s' delivered to %s", subject, to_address)
    return True


def notify_users(users, subject, text_body, html_body=None):
    """Send one message per user. Delivery failures are counted, not raised."""
    result = {"sent": 0, "failed": 0, "skipped": 0}
    for user in users:
        if not getattr(user, "email", None):
            result["skipped"] += 1
            continue
        if send_email(subject, user.email, text_body, html_body):
            result["sent"] += 1
        else:
            result["failed"] += 1
    current_app.logger.info("Notification '%s': %s", subject, result)
    return result


def task_assignment_message(task, base_url=""):
    deadline = task.submission_deadline.strftime("%Y-%m-%d %H:%M") if task.submission_deadline else "none"
    subject = f"New task: {task.title}"
    body = (
        f"You have been assigned the task \"{task.title}\".\n\n"
        f"{task.description or ''}\n\n"
        f"Deadline: {deadline}\n"
    )
    if base_url:
        body += f"Open it here: {base_url.rstrip('/')}/tasks/{task.id}\n"
    return subject, body


def task_reminder_message(task, base_url=""):
    _, body = task_assignment_message(task, base_url)
    return f"Reminder: {task.title}", "This is a reminder about a task that is still open.\n\n" + body
