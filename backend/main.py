import logging
import sqlite3

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_LEVEL,
)
from backend.routers.auth import router as auth_router
from backend.routers.classes import router as classes_router
from backend.routers.core import router as core_router
from backend.routers.sessions import router as sessions_router
from backend.routers.students import router as students_router
from database.db import create_tables

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="QR Attendance API")


# -----------------------------
# CORS (React dev server)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


# -----------------------------
# Startup
# -----------------------------
@app.on_event("startup")
def _startup():
    create_tables()
    logger.info("Attendance store ready")


@app.exception_handler(sqlite3.OperationalError)
async def store_unavailable(request: Request, exc: sqlite3.OperationalError):
    logger.error("Store error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Attendance store unavailable. Please retry.", "retryable": True},
    )


app.include_router(core_router)
app.include_router(auth_router)
app.include_router(classes_router)
app.include_router(students_router)
app.include_router(sessions_router)
