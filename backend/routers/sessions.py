from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backend.config import NOTIFY_PARENTS_ON_MARK
from backend.identity import client_ip
from backend.routers.classes import owned_class_or_404
from backend.security import require_session
from backend.services.eligibility import DECISION_STATUS, evaluate_attendance
from backend.services.mailer import email_configured, notify_parents, notify_present
from backend.services.qr import QrRenderError, attendance_url
from backend.services.registry import ClassNotFoundError, create_session
from database.db import delete_session, get_session_by_id, get_session_roster

router = APIRouter()


class SessionCreate(BaseModel):
    class_id: int
    scheduled_at: str | None = None


class MarkAttendanceRequest(BaseModel):
    student_id: int
    photo_data: str | None = None


def _normalize_scheduled_at(value: str | None) -> str:
    if value is None or not value.strip():
        return datetime.now().isoformat(timespec="seconds")
    try:
        return datetime.fromisoformat(value.strip()).isoformat()
    except ValueError:
        raise HTTPException(status_code=400, detail="scheduled_at must be an ISO date or datetime.")


def _owned_session_or_404(session_id: int, auth: dict) -> dict:
    attendance_session = get_session_by_id(session_id)
    if not attendance_session:
        raise HTTPException(status_code=404, detail="Attendance session not found.")
    owned_class_or_404(int(attendance_session["class_id"]), auth)
    return attendance_session


@router.post("/sessions")
def open_session(payload: SessionCreate, request: Request, auth: dict = Depends(require_session)):
    owned_class_or_404(payload.class_id, auth)
    scheduled_at = _normalize_scheduled_at(payload.scheduled_at)

    try:
        attendance_session = create_session(
            class_id=payload.class_id,
            scheduled_at=scheduled_at,
            creator_ip=client_ip(request),
        )
    except ClassNotFoundError:
        raise HTTPException(status_code=404, detail="Class not found.")
    except QrRenderError:
        return JSONResponse(
            status_code=502,
            content={
                "decision_code": "QR_RENDER_FAILED",
                "detail": "Could not render the attendance QR code. Please retry.",
            },
        )

    return {
        "id": attendance_session["id"],
        "class_id": attendance_session["class_id"],
        "scheduled_at": attendance_session["scheduled_at"],
        "qr_code": attendance_session["qr_code"],
        "mark_url": attendance_url(int(attendance_session["id"])),
        "subnet": attendance_session["subnet"],
    }


@router.get("/sessions/{session_id}")
def session_detail(session_id: int, auth: dict = Depends(require_session)):
    attendance_session = _owned_session_or_404(session_id, auth)
    roster = get_session_roster(session_id)
    present = sum(1 for s in roster if s["has_marked"])
    return {
        "id": attendance_session["id"],
        "class_id": attendance_session["class_id"],
        "scheduled_at": attendance_session["scheduled_at"],
        "qr_code": attendance_session["qr_code"],
        "mark_url": attendance_url(session_id),
        "students": roster,
        "total_students": len(roster),
        "present_count": present,
        "absent_count": len(roster) - present,
    }


@router.delete("/sessions/{session_id}")
def remove_session(session_id: int, auth: dict = Depends(require_session)):
    _owned_session_or_404(session_id, auth)
    deleted = delete_session(session_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Attendance session not found.")
    return {
        "ok": True,
        "message": "Attendance session and all associated records deleted successfully.",
        "deleted_logs": deleted["deleted_logs"],
        "deleted_session": {
            "scheduled_at": deleted["scheduled_at"],
            "class_id": deleted["class_id"],
        },
    }


@router.post("/sessions/{session_id}/notifications")
def send_notifications(
    session_id: int,
    background_tasks: BackgroundTasks,
    auth: dict = Depends(require_session),
):
    _owned_session_or_404(session_id, auth)
    if not email_configured():
        raise HTTPException(status_code=503, detail="Email delivery is not configured.")
    background_tasks.add_task(notify_parents, session_id)
    return {"ok": True, "message": "Parent notifications scheduled."}


# Student-facing endpoints below carry no faculty session.
@router.get("/sessions/{session_id}/students")
def session_students(session_id: int):
    if not get_session_by_id(session_id):
        raise HTTPException(status_code=404, detail="Attendance session not found.")
    return [
        {
            "id": s["id"],
            "name": s["name"],
            "roll_no": s["roll_no"],
            "is_verified": s["is_verified"],
            "has_marked": s["has_marked"],
        }
        for s in get_session_roster(session_id)
    ]


@router.get("/sessions/{session_id}/precheck")
def precheck_attendance(session_id: int, student_id: int, request: Request):
    result = evaluate_attendance(
        session_id=session_id,
        student_id=student_id,
        request_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        dry_run=True,
    )
    return JSONResponse(status_code=DECISION_STATUS[result["decision_code"]], content=result)


@router.post("/sessions/{session_id}/mark")
def mark_attendance(
    session_id: int,
    payload: MarkAttendanceRequest,
    request: Request,
    background_tasks: BackgroundTasks,
):
    result = evaluate_attendance(
        session_id=session_id,
        student_id=payload.student_id,
        request_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        photo_data=payload.photo_data,
    )
    if result["marked"] and NOTIFY_PARENTS_ON_MARK:
        background_tasks.add_task(notify_present, session_id, payload.student_id)
    return JSONResponse(status_code=DECISION_STATUS[result["decision_code"]], content=result)
