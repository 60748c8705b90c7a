import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Any

from jinja2 import Environment, select_autoescape

from backend import config
from database.db import get_class_by_id, get_session_by_id, get_session_roster

logger = logging.getLogger(__name__)

_templates = Environment(autoescape=select_autoescape(default=True, default_for_string=True))

VERIFICATION_TEMPLATE = _templates.from_string(
    """
<h2>Welcome to the Attendance System</h2>
<p>Dear {{ student.name }},</p>
<p>Please click the link below to verify your account and join {{ class_name }}:</p>
<a href="{{ link }}" style="display: inline-block; padding: 10px 20px; background-color: #3B82F6; color: white; text-decoration: none; border-radius: 5px;">Verify Account</a>
<p>This link works only once. The device and network you open it from will be the only ones allowed to mark your attendance.</p>
<p>If you did not request this, please ignore this email.</p>
"""
)

ATTENDANCE_TEMPLATE = _templates.from_string(
    """
<h2>Attendance Update</h2>
<p>Dear Parent/Guardian,</p>
<p>This is to inform you about the attendance status of your ward:</p>
<ul>
  <li><strong>Student Name:</strong> {{ student.name }}</li>
  <li><strong>Roll Number:</strong> {{ student.roll_no or "-" }}</li>
  <li><strong>Class:</strong> {{ class_name }}</li>
  <li><strong>Session:</strong> {{ session.scheduled_at }}</li>
  <li><strong>Status:</strong> {{ "Present" if is_present else "Absent" }}</li>
</ul>
<p>Thank you for your attention.</p>
<p>Best regards,<br>Attendance Management System</p>
"""
)


def email_configured() -> bool:
    return bool(config.SMTP_HOST)


def verification_link(token: str) -> str:
    return f"{config.FRONTEND_URL}/verify-student/{token}"


def send_email(to: str, subject: str, html: str) -> bool:
    """
    Deliver one HTML email over SMTP. Never raises: failures are logged and
    reported as False so callers can treat delivery as best-effort.
    """
    if not to:
        logger.warning("Email '%s' skipped: no recipient", subject)
        return False
    if not email_configured():
        logger.warning("Email not configured, skipping '%s' to %s", subject, to)
        return False

    msg = MIMEMultipart()
    msg["From"] = formataddr((config.EMAIL_SENDER_NAME, config.EMAIL_FROM))
    msg["To"] = to
    msg["Subject"] = subject
    msg.attach(MIMEText(html, "html"))

    try:
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=config.SMTP_TIMEOUT_SECONDS) as server:
            if config.SMTP_USE_TLS:
                server.starttls(context=ssl.create_default_context())
            if config.SMTP_USERNAME:
                server.login(config.SMTP_USERNAME, config.SMTP_PASSWORD)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Failed to send '%s' to %s: %s", subject, to, e)
        return False

    logger.info("Email '%s' sent to %s", subject, to)
    return True


def send_verification_email(student: dict[str, Any], token: str) -> bool:
    klass = get_class_by_id(int(student["class_id"]))
    html = VERIFICATION_TEMPLATE.render(
        student=student,
        class_name=klass["name"] if klass else "your class",
        link=verification_link(token),
    )
    return send_email(student["email"], "Verify Your Student Account", html)


def send_attendance_email(
    student: dict[str, Any],
    session: dict[str, Any],
    *,
    is_present: bool,
    class_name: str | None = None,
) -> bool:
    if class_name is None:
        klass = get_class_by_id(int(session["class_id"]))
        class_name = klass["name"] if klass else ""
    html = ATTENDANCE_TEMPLATE.render(
        student=student,
        session=session,
        class_name=class_name,
        is_present=is_present,
    )
    subject = f"Attendance Update for {student['name']} - {session['scheduled_at']}"
    return send_email(student["parent_email"], subject, html)


def notify_present(session_id: int, student_id: int) -> bool:
    session = get_session_by_id(session_id)
    if not session:
        return False
    for student in get_session_roster(session_id):
        if int(student["id"]) == student_id:
            return send_attendance_email(student, session, is_present=True)
    return False


def notify_parents(session_id: int) -> dict[str, int]:
    """Send every parent of the session's class a Present/Absent email."""
    stats = {"total": 0, "sent": 0, "failed": 0}
    session = get_session_by_id(session_id)
    if not session:
        logger.warning("Parent notifications skipped: session %s not found", session_id)
        return stats

    klass = get_class_by_id(int(session["class_id"]))
    class_name = klass["name"] if klass else ""
    for student in get_session_roster(session_id):
        stats["total"] += 1
        ok = send_attendance_email(
            student,
            session,
            is_present=bool(student["has_marked"]),
            class_name=class_name,
        )
        stats["sent" if ok else "failed"] += 1

    logger.info(
        "Parent notifications for session %s: %s sent, %s failed",
        session_id,
        stats["sent"],
        stats["failed"],
    )
    return stats
