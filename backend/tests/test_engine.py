import threading
from datetime import datetime

import pytest

import backend.config as config
import database.db as db
from backend.services import eligibility, registry
from backend.services.eligibility import evaluate_attendance
from backend.services.photos import PhotoUploadError
from backend.services.qr import QrRenderError
from backend.tests.factories import OTHER_UA, STUDENT_UA, enroll, enroll_verified, jpeg_b64, open_session


def _mark(session_id: int, student_id: int, *, ip: str = "192.168.1.50", user_agent: str = STUDENT_UA, **kwargs):
    return evaluate_attendance(
        session_id=session_id,
        student_id=student_id,
        request_ip=ip,
        user_agent=user_agent,
        **kwargs,
    )


# -----------------------------
# Verification registry
# -----------------------------
def test_enroll_creates_unverified_student_with_fresh_token(faculty_class):
    student = enroll(faculty_class["class_id"], email="a@x.com")
    assert student["is_verified"] is False
    assert len(student["verification_token"]) == 64
    assert student["verified_device_id"] is None
    assert student["verified_subnet"] is None

    other = enroll(faculty_class["class_id"], email="b@x.com")
    assert other["verification_token"] != student["verification_token"]


def test_enroll_rejects_duplicate_email(faculty_class):
    enroll(faculty_class["class_id"], email="a@x.com")
    with pytest.raises(registry.DuplicateEmailError):
        enroll(faculty_class["class_id"], email="a@x.com")


def test_duplicate_email_is_global_across_classes(faculty_class):
    other_class = db.add_class("CS102", faculty_class["faculty_id"])
    enroll(faculty_class["class_id"], email="a@x.com")
    with pytest.raises(registry.DuplicateEmailError):
        enroll(other_class, email="A@X.com")


def test_enroll_into_missing_class_fails(store):
    with pytest.raises(registry.ClassNotFoundError):
        enroll(999, email="a@x.com")


def test_redeem_token_binds_device_and_network_once(faculty_class):
    student = enroll(faculty_class["class_id"], email="a@x.com")
    token = student["verification_token"]

    first = registry.redeem_token(token, user_agent=STUDENT_UA, ip="192.168.1.5")
    assert first["decision_code"] == "VERIFIED"
    assert first["student_id"] == student["id"]

    bound = db.get_student_by_id(student["id"])
    assert bound["is_verified"] is True
    assert bound["verification_token"] is None
    assert bound["verified_subnet"] == "192.168.1.0"
    assert bound["verified_ip_address"] == "192.168.1.5"
    assert bound["verified_device_id"] is not None

    replay = registry.redeem_token(token, user_agent=OTHER_UA, ip="10.0.0.5")
    assert replay["decision_code"] == "ALREADY_VERIFIED"
    assert replay["verified"] is False

    unchanged = db.get_student_by_id(student["id"])
    assert unchanged["verified_device_id"] == bound["verified_device_id"]
    assert unchanged["verified_subnet"] == "192.168.1.0"


def test_redeem_unknown_token_is_invalid(store):
    assert registry.redeem_token("nope", user_agent=STUDENT_UA, ip="192.168.1.5")["decision_code"] == "INVALID_TOKEN"
    assert registry.redeem_token("", user_agent=STUDENT_UA, ip="192.168.1.5")["decision_code"] == "INVALID_TOKEN"


def test_concurrent_redemption_has_a_single_winner(faculty_class):
    student = enroll(faculty_class["class_id"], email="a@x.com")
    token = student["verification_token"]
    workers = 8
    barrier = threading.Barrier(workers)
    results: list[str] = []
    lock = threading.Lock()

    def attempt(idx: int):
        barrier.wait()
        res = registry.redeem_token(token, user_agent=f"agent-{idx}", ip=f"10.0.{idx}.5")
        with lock:
            results.append(res["decision_code"])

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("VERIFIED") == 1
    assert results.count("ALREADY_VERIFIED") == workers - 1


# -----------------------------
# Session registry
# -----------------------------
def test_create_session_binds_creator_network_and_renders_qr(faculty_class):
    session = open_session(faculty_class["class_id"], creator_ip="192.168.1.20")
    assert session["subnet"] == "192.168.1.0"
    assert session["ip_address"] == "192.168.1.20"
    assert session["qr_code"].startswith("data:image/png;base64,")


def test_create_session_rolls_back_when_qr_fails(faculty_class, monkeypatch):
    def broken(_session_id):
        raise QrRenderError("boom")

    monkeypatch.setattr(registry, "render_session_qr", broken)
    with pytest.raises(QrRenderError):
        open_session(faculty_class["class_id"])
    assert db.get_sessions_by_class(faculty_class["class_id"]) == []


def test_create_session_for_missing_class_fails(store):
    with pytest.raises(registry.ClassNotFoundError):
        open_session(404)


# -----------------------------
# Eligibility engine
# -----------------------------
def test_unverified_student_is_rejected(faculty_class):
    session = open_session(faculty_class["class_id"])
    student = enroll(faculty_class["class_id"], email="a@x.com")
    res = _mark(session["id"], student["id"])
    assert res["decision_code"] == "NOT_VERIFIED"
    assert res["marked"] is False
    assert db.list_logs_by_session(session["id"]) == []


def test_verified_student_on_bound_device_and_network_is_marked(faculty_class):
    session = open_session(faculty_class["class_id"])
    student = enroll_verified(faculty_class["class_id"], email="a@x.com", ip="192.168.1.5")

    before = datetime.now().replace(microsecond=0)
    res = _mark(session["id"], student["id"], ip="192.168.1.50")
    after = datetime.now()

    assert res["decision_code"] == "MARKED"
    assert res["marked"] is True
    assert res["photo_url"] is None
    assert before <= datetime.fromisoformat(res["marked_at"]) <= after

    logs = db.list_logs_by_session(session["id"])
    assert len(logs) == 1
    assert logs[0]["student_id"] == student["id"]
    assert logs[0]["ip_address"] == "192.168.1.50"
    assert logs[0]["subnet"] == "192.168.1.0"
    assert logs[0]["device_id"] == student["verified_device_id"]


def test_second_attempt_is_already_marked(faculty_class):
    session = open_session(faculty_class["class_id"])
    student = enroll_verified(faculty_class["class_id"], email="a@x.com")
    assert _mark(session["id"], student["id"])["decision_code"] == "MARKED"

    again = _mark(session["id"], student["id"])
    assert again["decision_code"] == "ALREADY_MARKED"
    assert len(db.list_logs_by_session(session["id"])) == 1


def test_different_device_is_rejected(faculty_class):
    session = open_session(faculty_class["class_id"])
    student = enroll_verified(faculty_class["class_id"], email="a@x.com")
    res = _mark(session["id"], student["id"], user_agent=OTHER_UA)
    assert res["decision_code"] == "DEVICE_MISMATCH"


def test_network_outside_bound_subnet_is_rejected(faculty_class):
    session = open_session(faculty_class["class_id"])
    student = enroll_verified(faculty_class["class_id"], email="a@x.com", ip="192.168.1.5")

    assert _mark(session["id"], student["id"], ip="10.0.0.5")["decision_code"] == "NETWORK_MISMATCH"
    assert _mark(session["id"], student["id"], ip=None)["decision_code"] == "NETWORK_MISMATCH"
    assert _mark(session["id"], student["id"], ip="192.168.1.50")["decision_code"] == "MARKED"


def test_network_is_checked_against_student_binding_not_session(faculty_class):
    session = open_session(faculty_class["class_id"], creator_ip="172.16.0.10")
    student = enroll_verified(faculty_class["class_id"], email="a@x.com", ip="192.168.1.5")

    assert _mark(session["id"], student["id"], ip="172.16.0.11")["decision_code"] == "NETWORK_MISMATCH"
    assert _mark(session["id"], student["id"], ip="192.168.1.9")["decision_code"] == "MARKED"


def test_student_from_another_class_is_rejected(faculty_class):
    other_class = db.add_class("CS102", faculty_class["faculty_id"])
    session = open_session(faculty_class["class_id"])
    outsider = enroll_verified(other_class, email="a@x.com")
    assert _mark(session["id"], outsider["id"])["decision_code"] == "WRONG_CLASS"


def test_missing_session_and_student(faculty_class):
    session = open_session(faculty_class["class_id"])
    student = enroll_verified(faculty_class["class_id"], email="a@x.com")
    assert _mark(9999, student["id"])["decision_code"] == "SESSION_NOT_FOUND"
    assert _mark(session["id"], 9999)["decision_code"] == "STUDENT_NOT_FOUND"


def test_first_failing_guard_wins(faculty_class):
    other_class = db.add_class("CS102", faculty_class["faculty_id"])
    session = open_session(faculty_class["class_id"])
    outsider = enroll_verified(other_class, email="a@x.com")
    # wrong class, wrong device and wrong network at once
    res = _mark(session["id"], outsider["id"], ip="10.0.0.5", user_agent=OTHER_UA)
    assert res["decision_code"] == "WRONG_CLASS"

    member = enroll_verified(faculty_class["class_id"], email="b@x.com")
    res = _mark(session["id"], member["id"], ip="10.0.0.5", user_agent=OTHER_UA)
    assert res["decision_code"] == "DEVICE_MISMATCH"


def test_dry_run_reports_eligibility_without_writing(faculty_class):
    session = open_session(faculty_class["class_id"])
    student = enroll_verified(faculty_class["class_id"], email="a@x.com")

    res = _mark(session["id"], student["id"], dry_run=True)
    assert res["decision_code"] == "ELIGIBLE"
    assert res["marked"] is False
    assert not db.attendance_log_exists(session["id"], student["id"])


def test_concurrent_marking_yields_one_entry(faculty_class):
    session = open_session(faculty_class["class_id"])
    student = enroll_verified(faculty_class["class_id"], email="a@x.com")
    workers = 10
    barrier = threading.Barrier(workers)
    results: list[str] = []
    lock = threading.Lock()

    def attempt():
        barrier.wait()
        res = _mark(session["id"], student["id"])
        with lock:
            results.append(res["decision_code"])

    threads = [threading.Thread(target=attempt) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("MARKED") == 1
    assert results.count("ALREADY_MARKED") == workers - 1
    assert len(db.list_logs_by_session(session["id"])) == 1


def test_lost_insert_race_is_reported_as_already_marked(faculty_class, monkeypatch):
    session = open_session(faculty_class["class_id"])
    student = enroll_verified(faculty_class["class_id"], email="a@x.com")
    assert _mark(session["id"], student["id"])["decision_code"] == "MARKED"

    # Simulate the window between the existence check and the insert.
    monkeypatch.setattr(eligibility, "attendance_log_exists", lambda *_a, **_k: False)
    res = _mark(session["id"], student["id"])
    assert res["decision_code"] == "ALREADY_MARKED"
    assert len(db.list_logs_by_session(session["id"])) == 1


def test_session_deleted_before_insert_is_session_not_found(faculty_class, monkeypatch):
    session = open_session(faculty_class["class_id"])
    student = enroll_verified(faculty_class["class_id"], email="a@x.com")

    def delete_then_report_absent(session_id, student_id, **_kwargs):
        db.delete_session(session_id)
        return False

    monkeypatch.setattr(eligibility, "attendance_log_exists", delete_then_report_absent)
    res = _mark(session["id"], student["id"], photo_data=jpeg_b64())
    assert res["decision_code"] == "SESSION_NOT_FOUND"
    assert res["marked"] is False
    assert db.list_logs_by_student(student["id"]) == []
    # the photo stored for the attempt is removed again
    assert not config.PHOTOS_DIR.exists() or list(config.PHOTOS_DIR.iterdir()) == []


def test_student_deleted_before_insert_is_student_not_found(faculty_class, monkeypatch):
    session = open_session(faculty_class["class_id"])
    student = enroll_verified(faculty_class["class_id"], email="a@x.com")

    def delete_then_report_absent(session_id, student_id, **_kwargs):
        db.delete_student(student_id)
        return False

    monkeypatch.setattr(eligibility, "attendance_log_exists", delete_then_report_absent)
    res = _mark(session["id"], student["id"])
    assert res["decision_code"] == "STUDENT_NOT_FOUND"
    assert db.list_logs_by_session(session["id"]) == []


# -----------------------------
# Photos
# -----------------------------
def test_photo_is_stored_before_entry(faculty_class):
    session = open_session(faculty_class["class_id"])
    student = enroll_verified(faculty_class["class_id"], email="a@x.com")

    res = _mark(session["id"], student["id"], photo_data=jpeg_b64())
    assert res["decision_code"] == "MARKED"
    assert res["photo_url"].startswith(f"{config.PHOTO_BASE_URL}/")

    stored = config.PHOTOS_DIR / res["photo_url"].rsplit("/", 1)[-1]
    assert stored.is_file()
    assert db.list_logs_by_session(session["id"])[0]["photo_url"] == res["photo_url"]


def test_data_uri_photo_is_accepted(faculty_class):
    session = open_session(faculty_class["class_id"])
    student = enroll_verified(faculty_class["class_id"], email="a@x.com")
    res = _mark(session["id"], student["id"], photo_data=f"data:image/jpeg;base64,{jpeg_b64()}")
    assert res["decision_code"] == "MARKED"


def test_unreadable_photo_records_nothing(faculty_class):
    session = open_session(faculty_class["class_id"])
    student = enroll_verified(faculty_class["class_id"], email="a@x.com")
    res = _mark(session["id"], student["id"], photo_data="bm90LWFuLWltYWdl")
    assert res["decision_code"] == "PHOTO_INVALID"
    assert not db.attendance_log_exists(session["id"], student["id"])


def test_failed_photo_upload_records_nothing(faculty_class, monkeypatch):
    session = open_session(faculty_class["class_id"])
    student = enroll_verified(faculty_class["class_id"], email="a@x.com")

    def failing_store(_data):
        raise PhotoUploadError("disk full")

    monkeypatch.setattr(eligibility, "store_photo", failing_store)
    res = _mark(session["id"], student["id"], photo_data=jpeg_b64())
    assert res["decision_code"] == "PHOTO_UPLOAD_FAILED"
    assert not db.attendance_log_exists(session["id"], student["id"])

    # a retry without the photo still goes through
    assert _mark(session["id"], student["id"])["decision_code"] == "MARKED"


# -----------------------------
# Attendance log + cascades
# -----------------------------
def test_log_listing_and_cascading_session_delete(faculty_class):
    session_a = open_session(faculty_class["class_id"])
    session_b = open_session(faculty_class["class_id"])
    student = enroll_verified(faculty_class["class_id"], email="a@x.com")
    assert _mark(session_a["id"], student["id"])["marked"]
    assert _mark(session_b["id"], student["id"])["marked"]

    assert len(db.list_logs_by_student(student["id"])) == 2

    deleted = db.delete_session(session_a["id"])
    assert deleted["deleted_logs"] == 1
    assert db.get_session_by_id(session_a["id"]) is None
    assert db.list_logs_by_session(session_a["id"]) == []
    assert len(db.list_logs_by_student(student["id"])) == 1


def test_student_delete_cascades_entries(faculty_class):
    session = open_session(faculty_class["class_id"])
    student = enroll_verified(faculty_class["class_id"], email="a@x.com")
    keeper = enroll_verified(faculty_class["class_id"], email="b@x.com")
    assert _mark(session["id"], student["id"])["marked"]
    assert _mark(session["id"], keeper["id"])["marked"]

    deleted = db.delete_student(student["id"])
    assert deleted["deleted_logs"] == 1
    assert db.get_student_by_id(student["id"]) is None
    remaining = db.list_logs_by_session(session["id"])
    assert [r["student_id"] for r in remaining] == [keeper["id"]]


def test_delete_missing_records_returns_none(store):
    assert db.delete_session(1) is None
    assert db.delete_student(1) is None
