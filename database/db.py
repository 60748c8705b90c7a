import hashlib
import hmac
import secrets
import sqlite3
from typing import Any, Callable, Literal, TypedDict

from backend.config import DB_PATH


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000
BUSY_TIMEOUT_SECONDS = 10.0


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), timeout=BUSY_TIMEOUT_SECONDS, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _as_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return dict(row)


def create_tables():
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS faculty (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS classes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        faculty_id INTEGER NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (faculty_id) REFERENCES faculty(id) ON DELETE CASCADE
    )
    """)

    # email is globally unique: one student record per address across classes
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS students (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        roll_no TEXT,
        class_id INTEGER NOT NULL,
        email TEXT NOT NULL UNIQUE COLLATE NOCASE,
        parent_email TEXT NOT NULL,
        is_verified INTEGER NOT NULL DEFAULT 0,
        verification_token TEXT UNIQUE,
        consumed_token_hash TEXT,
        verified_device_id TEXT,
        verified_ip_address TEXT,
        verified_subnet TEXT,
        verified_at TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (class_id) REFERENCES classes(id) ON DELETE CASCADE
    )
    """)
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_students_consumed_token ON students(consumed_token_hash)"
    )

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        class_id INTEGER NOT NULL,
        scheduled_at TEXT NOT NULL,     -- ISO date or datetime
        qr_code TEXT,                   -- PNG data URI
        ip_address TEXT,                -- creator IP
        subnet TEXT,                    -- creator network identity
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (class_id) REFERENCES classes(id) ON DELETE CASCADE
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id INTEGER NOT NULL,
        student_id INTEGER NOT NULL,
        device_id TEXT NOT NULL,
        ip_address TEXT,
        subnet TEXT,
        photo_url TEXT,
        timestamp TEXT NOT NULL,        -- YYYY-MM-DDTHH:MM:SS
        FOREIGN KEY (session_id) REFERENCES attendance_sessions(id) ON DELETE CASCADE,
        FOREIGN KEY (student_id) REFERENCES students(id) ON DELETE CASCADE,
        UNIQUE(session_id, student_id)
    )
    """)
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_attendance_logs_student ON attendance_logs(student_id)"
    )

    conn.commit()
    conn.close()


# -----------------------------
# Faculty
# -----------------------------
def add_faculty(name: str, email: str, password: str) -> int:
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO faculty (name, email, password_hash)
            VALUES (?, ?, ?)
            """,
            (name, email, _hash_password(password)),
        )
        faculty_id = int(cur.lastrowid)
        conn.commit()
        return faculty_id
    finally:
        conn.close()


def get_faculty_by_id(faculty_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, name, email, created_at
        FROM faculty
        WHERE id = ?
        """,
        (faculty_id,),
    )
    row = cur.fetchone()
    conn.close()
    return _as_dict(row)


def verify_faculty_credentials(email: str, password: str) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, name, email, password_hash
        FROM faculty
        WHERE email = ? COLLATE NOCASE
        """,
        (email,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None
    if not _verify_password(password, str(row["password_hash"])):
        return None
    return {"id": int(row["id"]), "name": row["name"], "email": row["email"]}


# -----------------------------
# Classes
# -----------------------------
def add_class(name: str, faculty_id: int) -> int:
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO classes (name, faculty_id)
            VALUES (?, ?)
            """,
            (name, faculty_id),
        )
        class_id = int(cur.lastrowid)
        conn.commit()
        return class_id
    finally:
        conn.close()


def get_class_by_id(class_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, name, faculty_id, created_at
        FROM classes
        WHERE id = ?
        """,
        (class_id,),
    )
    row = cur.fetchone()
    conn.close()
    return _as_dict(row)


def get_classes_for_faculty(faculty_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT
            c.id,
            c.name,
            c.faculty_id,
            c.created_at,
            (SELECT COUNT(1) FROM students s WHERE s.class_id = c.id) AS student_count
        FROM classes c
        WHERE c.faculty_id = ?
        ORDER BY c.name
        """,
        (faculty_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [dict(r) for r in rows]


# -----------------------------
# Students / verification
# -----------------------------
VerificationCode = Literal["VERIFIED", "INVALID_TOKEN", "ALREADY_VERIFIED"]


class VerificationResult(TypedDict):
    verified: bool
    decision_code: VerificationCode
    message: str
    student_id: int | None


_STUDENT_COLUMNS = """
    id,
    name,
    roll_no,
    class_id,
    email,
    parent_email,
    is_verified,
    verification_token,
    verified_device_id,
    verified_ip_address,
    verified_subnet,
    verified_at,
    created_at
"""


def _student_from_row(row: sqlite3.Row | None) -> dict[str, Any] | None:
    student = _as_dict(row)
    if student is not None:
        student["is_verified"] = bool(student["is_verified"])
    return student


def add_student(
    *,
    name: str,
    roll_no: str,
    class_id: int,
    email: str,
    parent_email: str,
    verification_token: str,
) -> int:
    """
    Insert an unverified student holding `verification_token`.

    Raises sqlite3.IntegrityError when the email is already enrolled.
    """
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO students (
                name,
                roll_no,
                class_id,
                email,
                parent_email,
                is_verified,
                verification_token
            )
            VALUES (?, ?, ?, ?, ?, 0, ?)
            """,
            (name, roll_no, class_id, email, parent_email, verification_token),
        )
        student_id = int(cur.lastrowid)
        conn.commit()
        return student_id
    finally:
        conn.close()


def student_email_exists(email: str) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT 1 FROM students WHERE email = ? COLLATE NOCASE", (email,))
    row = cur.fetchone()
    conn.close()
    return row is not None


def get_student_by_id(student_id: int, *, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(f"SELECT {_STUDENT_COLUMNS} FROM students WHERE id = ?", (student_id,))
        return _student_from_row(cur.fetchone())
    finally:
        if owns_conn:
            active_conn.close()


def get_students_by_class(class_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_STUDENT_COLUMNS}
        FROM students
        WHERE class_id = ?
        ORDER BY roll_no, name
        """,
        (class_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [_student_from_row(r) for r in rows]


def redeem_verification_token(
    token: str,
    *,
    device_id: str,
    ip_address: str | None,
    subnet: str | None,
) -> VerificationResult:
    """
    Exchange a one-time token for a device + network binding.

    The binding is a single conditional UPDATE, so concurrent redemptions of
    the same token produce exactly one VERIFIED result.
    """
    clean_token = (token or "").strip()
    if not clean_token:
        return {
            "verified": False,
            "decision_code": "INVALID_TOKEN",
            "message": "Invalid verification token.",
            "student_id": None,
        }

    digest = _token_digest(clean_token)
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE students
            SET is_verified = 1,
                verified_device_id = ?,
                verified_ip_address = ?,
                verified_subnet = ?,
                verified_at = CURRENT_TIMESTAMP,
                consumed_token_hash = ?,
                verification_token = NULL
            WHERE verification_token = ?
              AND is_verified = 0
            """,
            (device_id, ip_address, subnet, digest, clean_token),
        )
        if cur.rowcount == 1:
            cur.execute("SELECT id FROM students WHERE consumed_token_hash = ?", (digest,))
            row = cur.fetchone()
            conn.commit()
            return {
                "verified": True,
                "decision_code": "VERIFIED",
                "message": "Student verified successfully.",
                "student_id": int(row["id"]) if row else None,
            }

        cur.execute(
            """
            SELECT id, is_verified
            FROM students
            WHERE verification_token = ?
               OR consumed_token_hash = ?
            LIMIT 1
            """,
            (clean_token, digest),
        )
        row = cur.fetchone()
        conn.commit()
    finally:
        conn.close()

    if row is not None and bool(row["is_verified"]):
        return {
            "verified": False,
            "decision_code": "ALREADY_VERIFIED",
            "message": "Student already verified.",
            "student_id": int(row["id"]),
        }
    return {
        "verified": False,
        "decision_code": "INVALID_TOKEN",
        "message": "Invalid verification token.",
        "student_id": None,
    }


def delete_student(student_id: int) -> dict[str, Any] | None:
    """Delete a student and every attendance log entry they own."""
    conn = connect_db()
    try:
        student = get_student_by_id(student_id, conn=conn)
        if not student:
            return None
        removed = delete_logs_by_student(student_id, conn=conn)
        conn.execute("DELETE FROM students WHERE id = ?", (student_id,))
        conn.commit()
        student["deleted_logs"] = removed
        return student
    finally:
        conn.close()


def get_student_attendance_history(student_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT
            s.id,
            s.scheduled_at,
            l.timestamp,
            l.photo_url
        FROM attendance_sessions s
        JOIN students st ON st.class_id = s.class_id
        LEFT JOIN attendance_logs l
               ON l.session_id = s.id
              AND l.student_id = st.id
        WHERE st.id = ?
        ORDER BY s.scheduled_at DESC, s.id DESC
        """,
        (student_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [
        {
            "session_id": r["id"],
            "scheduled_at": r["scheduled_at"],
            "status": "present" if r["timestamp"] else "absent",
            "marked_at": r["timestamp"],
            "photo_url": r["photo_url"],
        }
        for r in rows
    ]


# -----------------------------
# Attendance sessions
# -----------------------------
def create_attendance_session(
    *,
    class_id: int,
    scheduled_at: str,
    ip_address: str | None,
    subnet: str | None,
    render_qr: Callable[[int], str],
) -> int:
    """
    Insert a session and store its QR payload in one transaction.

    `render_qr` receives the new session id (the QR encodes it). Any error it
    raises rolls the insert back and propagates.
    """
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO attendance_sessions (class_id, scheduled_at, ip_address, subnet)
            VALUES (?, ?, ?, ?)
            """,
            (class_id, scheduled_at, ip_address, subnet),
        )
        session_id = int(cur.lastrowid)
        try:
            qr_code = render_qr(session_id)
        except Exception:
            conn.rollback()
            raise
        cur.execute(
            "UPDATE attendance_sessions SET qr_code = ? WHERE id = ?",
            (qr_code, session_id),
        )
        conn.commit()
        return session_id
    finally:
        conn.close()


def get_session_by_id(session_id: int, *, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            SELECT id, class_id, scheduled_at, qr_code, ip_address, subnet, created_at
            FROM attendance_sessions
            WHERE id = ?
            """,
            (session_id,),
        )
        return _as_dict(cur.fetchone())
    finally:
        if owns_conn:
            active_conn.close()


def get_sessions_by_class(class_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT
            s.id,
            s.class_id,
            s.scheduled_at,
            s.created_at,
            (SELECT COUNT(1) FROM attendance_logs l WHERE l.session_id = s.id) AS present_count
        FROM attendance_sessions s
        WHERE s.class_id = ?
        ORDER BY s.scheduled_at DESC, s.id DESC
        """,
        (class_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [dict(r) for r in rows]


def delete_session(session_id: int) -> dict[str, Any] | None:
    """Delete a session and cascade its attendance log entries."""
    conn = connect_db()
    try:
        session = get_session_by_id(session_id, conn=conn)
        if not session:
            return None
        removed = delete_logs_by_session(session_id, conn=conn)
        conn.execute("DELETE FROM attendance_sessions WHERE id = ?", (session_id,))
        conn.commit()
        session["deleted_logs"] = removed
        return session
    finally:
        conn.close()


def get_session_roster(session_id: int) -> list[dict[str, Any]]:
    """Every student of the session's class with their marking for it."""
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT
            st.id,
            st.name,
            st.roll_no,
            st.email,
            st.parent_email,
            st.is_verified,
            l.timestamp,
            l.photo_url
        FROM attendance_sessions s
        JOIN students st ON st.class_id = s.class_id
        LEFT JOIN attendance_logs l
               ON l.session_id = s.id
              AND l.student_id = st.id
        WHERE s.id = ?
        ORDER BY st.roll_no, st.name
        """,
        (session_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [
        {
            "id": r["id"],
            "name": r["name"],
            "roll_no": r["roll_no"],
            "email": r["email"],
            "parent_email": r["parent_email"],
            "is_verified": bool(r["is_verified"]),
            "has_marked": r["timestamp"] is not None,
            "marked_at": r["timestamp"],
            "photo_url": r["photo_url"],
        }
        for r in rows
    ]


# -----------------------------
# Attendance log (append-only)
# -----------------------------
def attendance_log_exists(session_id: int, student_id: int, *, conn: sqlite3.Connection | None = None) -> bool:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            SELECT 1
            FROM attendance_logs
            WHERE session_id = ? AND student_id = ?
            """,
            (session_id, student_id),
        )
        return cur.fetchone() is not None
    finally:
        if owns_conn:
            active_conn.close()


def insert_attendance_log(
    *,
    session_id: int,
    student_id: int,
    device_id: str,
    ip_address: str | None,
    subnet: str | None,
    timestamp: str,
    photo_url: str | None = None,
) -> int | None:
    """
    Append one entry. Returns the new id, or None when an entry for
    (session_id, student_id) already exists; the UNIQUE constraint decides.
    Any other integrity failure (session or student gone) propagates.
    """
    conn = connect_db()
    try:
        cur = conn.cursor()
        try:
            cur.execute(
                """
                INSERT INTO attendance_logs (
                    session_id,
                    student_id,
                    device_id,
                    ip_address,
                    subnet,
                    photo_url,
                    timestamp
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (session_id, student_id, device_id, ip_address, subnet, photo_url, timestamp),
            )
        except sqlite3.IntegrityError:
            conn.rollback()
            if attendance_log_exists(session_id, student_id, conn=conn):
                return None
            raise
        log_id = int(cur.lastrowid)
        conn.commit()
        return log_id
    finally:
        conn.close()


_LOG_COLUMNS = "id, session_id, student_id, device_id, ip_address, subnet, photo_url, timestamp"


def list_logs_by_session(session_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"SELECT {_LOG_COLUMNS} FROM attendance_logs WHERE session_id = ? ORDER BY timestamp, id",
        (session_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [dict(r) for r in rows]


def list_logs_by_student(student_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"SELECT {_LOG_COLUMNS} FROM attendance_logs WHERE student_id = ? ORDER BY timestamp, id",
        (student_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [dict(r) for r in rows]


def delete_logs_by_session(session_id: int, *, conn: sqlite3.Connection | None = None) -> int:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.execute("DELETE FROM attendance_logs WHERE session_id = ?", (session_id,))
        if owns_conn:
            active_conn.commit()
        return int(cur.rowcount)
    finally:
        if owns_conn:
            active_conn.close()


def delete_logs_by_student(student_id: int, *, conn: sqlite3.Connection | None = None) -> int:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.execute("DELETE FROM attendance_logs WHERE student_id = ?", (student_id,))
        if owns_conn:
            active_conn.commit()
        return int(cur.rowcount)
    finally:
        if owns_conn:
            active_conn.close()
