import sqlite3
import time

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import issue_session_token, require_session, session_faculty_id
from database.db import add_faculty, create_tables, get_faculty_by_id, verify_faculty_credentials

router = APIRouter()

MIN_PASSWORD_LENGTH = 8


class FacultyRegister(BaseModel):
    name: str
    email: str
    password: str


class FacultyLogin(BaseModel):
    email: str
    password: str


def _token_response(faculty: dict) -> dict:
    token, claims = issue_session_token(int(faculty["id"]), faculty["email"])
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "faculty_id": int(faculty["id"]),
        "name": faculty["name"],
        "email": claims["email"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


@router.post("/auth/register")
def register_faculty(payload: FacultyRegister):
    name = payload.name.strip()
    email = payload.email.strip().lower()
    password = payload.password.strip()

    if not name or not email or not password:
        raise HTTPException(status_code=400, detail="All fields are required.")
    if "@" not in email:
        raise HTTPException(status_code=400, detail="A valid email is required.")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters.",
        )

    try:
        faculty_id = add_faculty(name, email, password)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Faculty with this email already exists.")

    return _token_response({"id": faculty_id, "name": name, "email": email})


@router.post("/auth/login")
def login_faculty(payload: FacultyLogin):
    email = payload.email.strip()
    password = payload.password.strip()

    if not email:
        raise HTTPException(status_code=400, detail="Email is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        faculty = verify_faculty_credentials(email, password)
    except sqlite3.OperationalError:
        # Self-heal when DB schema is missing (e.g., startup hook skipped).
        try:
            create_tables()
            faculty = verify_faculty_credentials(email, password)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )

    if not faculty:
        raise HTTPException(status_code=401, detail="Invalid email or password.")

    return _token_response(faculty)


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    faculty = get_faculty_by_id(session_faculty_id(session))
    if not faculty:
        raise HTTPException(status_code=401, detail="Faculty account no longer exists.")
    return {
        "faculty_id": faculty["id"],
        "name": faculty["name"],
        "email": faculty["email"],
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }
