import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.identity as identity
import backend.main as main
import database.db as db


@pytest.fixture()
def store(tmp_path, monkeypatch):
    test_db = tmp_path / "qrattend_test.db"

    # Point DB + photo storage to temp paths for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)
    monkeypatch.setattr(config, "PHOTOS_DIR", tmp_path / "photos")
    monkeypatch.setattr(config, "SMTP_HOST", "")

    db.create_tables()
    return test_db


@pytest.fixture()
def client(store, monkeypatch):
    # TestClient's peer address is "testclient"; tests pick IPs via X-Forwarded-For.
    monkeypatch.setattr(identity, "TRUST_PROXY_HEADERS", True)
    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def auth_headers(client):
    res = client.post(
        "/auth/register",
        json={"name": "Dr. Rao", "email": "rao@college.edu", "password": "s3cret-pass"},
    )
    assert res.status_code == 200
    token = res.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def faculty_class(store):
    faculty_id = db.add_faculty("Dr. Iyer", "iyer@college.edu", "s3cret-pass")
    class_id = db.add_class("CS101", faculty_id)
    return {"faculty_id": faculty_id, "class_id": class_id}
