import logging
import secrets
import sqlite3
from typing import Any

from backend.identity import device_fingerprint, subnet_from_ip
from backend.services.qr import render_session_qr
from database.db import (
    VerificationResult,
    add_student,
    create_attendance_session,
    get_class_by_id,
    get_session_by_id,
    get_student_by_id,
    redeem_verification_token,
    student_email_exists,
)

logger = logging.getLogger(__name__)


class DuplicateEmailError(Exception):
    pass


class ClassNotFoundError(LookupError):
    pass


def new_verification_token() -> str:
    return secrets.token_hex(32)


def enroll_student(
    *,
    name: str,
    roll_no: str,
    class_id: int,
    email: str,
    parent_email: str,
) -> dict[str, Any]:
    """
    Create an unverified student holding a fresh one-time token.

    The returned record carries `verification_token`; callers are expected to
    mail it out and never echo it back to the enrolling faculty member.
    """
    if not get_class_by_id(class_id):
        raise ClassNotFoundError(f"Class {class_id} not found.")
    if student_email_exists(email):
        raise DuplicateEmailError("Student with this email already exists.")

    try:
        student_id = add_student(
            name=name,
            roll_no=roll_no,
            class_id=class_id,
            email=email,
            parent_email=parent_email,
            verification_token=new_verification_token(),
        )
    except sqlite3.IntegrityError as e:
        # lost a race against a concurrent enrollment of the same email
        raise DuplicateEmailError("Student with this email already exists.") from e

    logger.info("Enrolled student %s in class %s", student_id, class_id)
    return get_student_by_id(student_id)


def redeem_token(token: str, *, user_agent: str | None, ip: str | None) -> VerificationResult:
    result = redeem_verification_token(
        token,
        device_id=device_fingerprint(user_agent),
        ip_address=ip,
        subnet=subnet_from_ip(ip),
    )
    if result["verified"]:
        logger.info("Student %s verified from subnet %s", result["student_id"], subnet_from_ip(ip))
    else:
        logger.info("Token redemption rejected: %s", result["decision_code"])
    return result


def create_session(*, class_id: int, scheduled_at: str, creator_ip: str | None) -> dict[str, Any]:
    """
    Open an attendance session bound to the creator's network identity.

    Raises QrRenderError (nothing persisted) when the QR payload can't be built.
    """
    if not get_class_by_id(class_id):
        raise ClassNotFoundError(f"Class {class_id} not found.")

    session_id = create_attendance_session(
        class_id=class_id,
        scheduled_at=scheduled_at,
        ip_address=creator_ip,
        subnet=subnet_from_ip(creator_ip),
        render_qr=render_session_qr,
    )
    logger.info("Created attendance session %s for class %s", session_id, class_id)
    return get_session_by_id(session_id)
