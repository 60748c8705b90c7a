import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import require_session, session_faculty_id
from database.db import (
    add_class,
    get_class_by_id,
    get_classes_for_faculty,
    get_sessions_by_class,
    get_students_by_class,
)

router = APIRouter(dependencies=[Depends(require_session)])


class ClassCreate(BaseModel):
    name: str


def owned_class_or_404(class_id: int, session: dict) -> dict:
    klass = get_class_by_id(class_id)
    if not klass or int(klass["faculty_id"]) != session_faculty_id(session):
        raise HTTPException(status_code=404, detail="Class not found.")
    return klass


def public_student(student: dict) -> dict:
    return {
        "id": student["id"],
        "name": student["name"],
        "roll_no": student["roll_no"],
        "class_id": student["class_id"],
        "email": student["email"],
        "parent_email": student["parent_email"],
        "is_verified": bool(student["is_verified"]),
        "verified_at": student.get("verified_at"),
        "created_at": student.get("created_at"),
    }


@router.post("/classes")
def create_class(payload: ClassCreate, session: dict = Depends(require_session)):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Class name is required.")

    faculty_id = session_faculty_id(session)
    try:
        class_id = add_class(name, faculty_id)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=401, detail="Faculty account no longer exists.")
    return {"id": class_id, "name": name, "faculty_id": faculty_id}


@router.get("/classes")
def list_classes(session: dict = Depends(require_session)):
    return get_classes_for_faculty(session_faculty_id(session))


@router.get("/classes/{class_id}")
def class_detail(class_id: int, session: dict = Depends(require_session)):
    return owned_class_or_404(class_id, session)


@router.get("/classes/{class_id}/students")
def class_students(class_id: int, session: dict = Depends(require_session)):
    owned_class_or_404(class_id, session)
    return [public_student(s) for s in get_students_by_class(class_id)]


@router.get("/classes/{class_id}/sessions")
def class_sessions(class_id: int, session: dict = Depends(require_session)):
    owned_class_or_404(class_id, session)
    return get_sessions_by_class(class_id)
