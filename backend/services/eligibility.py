import logging
import sqlite3
from datetime import datetime
from typing import Literal, TypedDict

from backend.identity import device_fingerprint, subnet_from_ip
from backend.services.photos import PhotoInvalidError, PhotoUploadError, discard_photo, store_photo
from database.db import (
    attendance_log_exists,
    get_session_by_id,
    get_student_by_id,
    insert_attendance_log,
)

logger = logging.getLogger(__name__)

DecisionCode = Literal[
    "MARKED",
    "ELIGIBLE",
    "SESSION_NOT_FOUND",
    "STUDENT_NOT_FOUND",
    "NOT_VERIFIED",
    "WRONG_CLASS",
    "DEVICE_MISMATCH",
    "NETWORK_MISMATCH",
    "ALREADY_MARKED",
    "PHOTO_INVALID",
    "PHOTO_UPLOAD_FAILED",
]

DECISION_MESSAGES: dict[str, str] = {
    "MARKED": "Attendance marked successfully.",
    "ELIGIBLE": "Attendance can be marked from this device and network.",
    "SESSION_NOT_FOUND": "Attendance session not found.",
    "STUDENT_NOT_FOUND": "Student not found.",
    "NOT_VERIFIED": "Student account not verified.",
    "WRONG_CLASS": "Student is not enrolled in this class.",
    "DEVICE_MISMATCH": "Attendance can only be marked from your verified device.",
    "NETWORK_MISMATCH": "Must be on the same network as when you verified your account.",
    "ALREADY_MARKED": "Attendance already marked.",
    "PHOTO_INVALID": "Attached photo could not be read.",
    "PHOTO_UPLOAD_FAILED": "Error uploading photo. Please retry.",
}

# NotFound -> 404, PolicyRejection -> 403, StateConflict -> 409, DependencyFailure -> 502
DECISION_STATUS: dict[str, int] = {
    "MARKED": 200,
    "ELIGIBLE": 200,
    "SESSION_NOT_FOUND": 404,
    "STUDENT_NOT_FOUND": 404,
    "NOT_VERIFIED": 403,
    "WRONG_CLASS": 403,
    "DEVICE_MISMATCH": 403,
    "NETWORK_MISMATCH": 403,
    "ALREADY_MARKED": 409,
    "PHOTO_INVALID": 400,
    "PHOTO_UPLOAD_FAILED": 502,
}


class MarkAttendanceResult(TypedDict):
    marked: bool
    decision_code: DecisionCode
    message: str
    session_id: int
    student_id: int
    log_id: int | None
    marked_at: str | None
    photo_url: str | None


def _result(
    decision_code: DecisionCode,
    *,
    session_id: int,
    student_id: int,
    log_id: int | None = None,
    marked_at: str | None = None,
    photo_url: str | None = None,
) -> MarkAttendanceResult:
    return {
        "marked": decision_code == "MARKED",
        "decision_code": decision_code,
        "message": DECISION_MESSAGES[decision_code],
        "session_id": session_id,
        "student_id": student_id,
        "log_id": log_id,
        "marked_at": marked_at,
        "photo_url": photo_url,
    }


def _reject(decision_code: DecisionCode, *, session_id: int, student_id: int) -> MarkAttendanceResult:
    logger.info(
        "Attendance rejected: session=%s student=%s decision=%s",
        session_id,
        student_id,
        decision_code,
    )
    return _result(decision_code, session_id=session_id, student_id=student_id)


def evaluate_attendance(
    *,
    session_id: int,
    student_id: int,
    request_ip: str | None,
    user_agent: str | None,
    photo_data: str | None = None,
    dry_run: bool = False,
) -> MarkAttendanceResult:
    """
    Decide a single marking attempt and record it when accepted.

    Guards run in a fixed order and the first failure is the answer:
    session, student, verified, class, device, network, already marked,
    then the optional photo. With `dry_run` the chain stops after the
    already-marked check and nothing is written.
    """
    session = get_session_by_id(session_id)
    if not session:
        return _reject("SESSION_NOT_FOUND", session_id=session_id, student_id=student_id)

    student = get_student_by_id(student_id)
    if not student:
        return _reject("STUDENT_NOT_FOUND", session_id=session_id, student_id=student_id)

    if not student["is_verified"]:
        return _reject("NOT_VERIFIED", session_id=session_id, student_id=student_id)

    if int(student["class_id"]) != int(session["class_id"]):
        return _reject("WRONG_CLASS", session_id=session_id, student_id=student_id)

    current_device = device_fingerprint(user_agent)
    if current_device != student["verified_device_id"]:
        return _reject("DEVICE_MISMATCH", session_id=session_id, student_id=student_id)

    # Compared with the student's own verification-time network, not the session's.
    current_subnet = subnet_from_ip(request_ip)
    if current_subnet is None or current_subnet != student["verified_subnet"]:
        logger.debug(
            "Network check failed: ip=%s subnet=%s bound=%s",
            request_ip,
            current_subnet,
            student["verified_subnet"],
        )
        return _reject("NETWORK_MISMATCH", session_id=session_id, student_id=student_id)

    if attendance_log_exists(session_id, student_id):
        return _reject("ALREADY_MARKED", session_id=session_id, student_id=student_id)

    if dry_run:
        return _result("ELIGIBLE", session_id=session_id, student_id=student_id)

    photo_url: str | None = None
    if photo_data:
        try:
            photo_url = store_photo(photo_data)
        except PhotoInvalidError as e:
            logger.info("Attendance photo rejected for student %s: %s", student_id, e)
            return _result("PHOTO_INVALID", session_id=session_id, student_id=student_id)
        except PhotoUploadError as e:
            logger.warning("Attendance photo upload failed for student %s: %s", student_id, e)
            return _result("PHOTO_UPLOAD_FAILED", session_id=session_id, student_id=student_id)

    marked_at = datetime.now().isoformat(timespec="seconds")
    try:
        log_id = insert_attendance_log(
            session_id=session_id,
            student_id=student_id,
            device_id=current_device,
            ip_address=request_ip,
            subnet=current_subnet,
            timestamp=marked_at,
            photo_url=photo_url,
        )
    except sqlite3.IntegrityError:
        discard_photo(photo_url)
        # foreign key failure: the session or student was deleted after the guards ran
        if not get_session_by_id(session_id):
            return _reject("SESSION_NOT_FOUND", session_id=session_id, student_id=student_id)
        if not get_student_by_id(student_id):
            return _reject("STUDENT_NOT_FOUND", session_id=session_id, student_id=student_id)
        raise
    except sqlite3.Error:
        discard_photo(photo_url)
        raise
    if log_id is None:
        # a concurrent attempt for the same pair won the insert
        discard_photo(photo_url)
        return _reject("ALREADY_MARKED", session_id=session_id, student_id=student_id)

    logger.info("Attendance marked: session=%s student=%s log=%s", session_id, student_id, log_id)
    return _result(
        "MARKED",
        session_id=session_id,
        student_id=student_id,
        log_id=log_id,
        marked_at=marked_at,
        photo_url=photo_url,
    )
