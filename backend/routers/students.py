from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backend.identity import client_ip
from backend.routers.classes import owned_class_or_404, public_student
from backend.security import require_session
from backend.services.mailer import email_configured, send_verification_email
from backend.services.registry import ClassNotFoundError, DuplicateEmailError, enroll_student, redeem_token
from database.db import delete_student, get_student_attendance_history, get_student_by_id

router = APIRouter()

VERIFICATION_STATUS: dict[str, int] = {
    "VERIFIED": 200,
    "INVALID_TOKEN": 404,
    "ALREADY_VERIFIED": 409,
}


class StudentCreate(BaseModel):
    name: str
    roll_no: str = ""
    class_id: int
    email: str
    parent_email: str


def _owned_student_or_404(student_id: int, session: dict) -> dict:
    student = get_student_by_id(student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found.")
    owned_class_or_404(int(student["class_id"]), session)
    return student


@router.post("/students")
def create_student(
    payload: StudentCreate,
    background_tasks: BackgroundTasks,
    session: dict = Depends(require_session),
):
    name = payload.name.strip()
    roll_no = payload.roll_no.strip()
    email = payload.email.strip().lower()
    parent_email = payload.parent_email.strip().lower()

    if not name:
        raise HTTPException(status_code=400, detail="Student name is required.")
    if not email or not parent_email:
        raise HTTPException(status_code=400, detail="Email and parent email are required.")
    if "@" not in email or "@" not in parent_email:
        raise HTTPException(status_code=400, detail="Email and parent email must be valid addresses.")

    owned_class_or_404(payload.class_id, session)

    try:
        student = enroll_student(
            name=name,
            roll_no=roll_no,
            class_id=payload.class_id,
            email=email,
            parent_email=parent_email,
        )
    except ClassNotFoundError:
        raise HTTPException(status_code=404, detail="Class not found.")
    except DuplicateEmailError:
        return JSONResponse(
            status_code=409,
            content={
                "decision_code": "DUPLICATE_EMAIL",
                "detail": "Student with this email already exists.",
            },
        )

    background_tasks.add_task(send_verification_email, student, student["verification_token"])

    return {
        **public_student(student),
        "message": (
            "Student created. Verification email sent."
            if email_configured()
            else "Student created but email delivery is not configured."
        ),
    }


@router.delete("/students/{student_id}")
def remove_student(student_id: int, session: dict = Depends(require_session)):
    _owned_student_or_404(student_id, session)
    deleted = delete_student(student_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Student not found.")
    return {
        "ok": True,
        "message": "Student and all associated attendance records deleted successfully.",
        "deleted_logs": deleted["deleted_logs"],
        "deleted_student": {
            "name": deleted["name"],
            "roll_no": deleted["roll_no"],
            "email": deleted["email"],
        },
    }


@router.get("/students/{student_id}/attendance-history")
def student_history(student_id: int, session: dict = Depends(require_session)):
    student = _owned_student_or_404(student_id, session)
    rows = get_student_attendance_history(student_id)
    present = sum(1 for r in rows if r["status"] == "present")
    return {
        "student": public_student(student),
        "total_sessions": len(rows),
        "present_count": present,
        "absent_count": len(rows) - present,
        "rows": rows,
    }


@router.post("/students/{student_id}/resend-verification")
def resend_verification(
    student_id: int,
    background_tasks: BackgroundTasks,
    session: dict = Depends(require_session),
):
    student = _owned_student_or_404(student_id, session)
    if student["is_verified"] or not student["verification_token"]:
        return JSONResponse(
            status_code=409,
            content={"decision_code": "ALREADY_VERIFIED", "detail": "Student already verified."},
        )
    background_tasks.add_task(send_verification_email, student, student["verification_token"])
    return {"ok": True, "message": "Verification email scheduled."}


@router.post("/verify-student/{token}")
def verify_student(token: str, request: Request):
    result = redeem_token(
        token,
        user_agent=request.headers.get("user-agent"),
        ip=client_ip(request),
    )
    return JSONResponse(status_code=VERIFICATION_STATUS[result["decision_code"]], content=result)
