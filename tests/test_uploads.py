"""Tests for the upload API and stored-file serving."""
import io

import pytest
from werkzeug.security import generate_password_hash

from app.formtrack import auth, create_app
from app.formtrack.db import session_scope
from app.formtrack.models import AuditEvent, Base, SubRole, User
from app.formtrack.modules.uploads import service as uploads_service


PASSWORD = "secret123"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "UPLOAD_MAX_BYTES"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    app.config["TESTING"] = True
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    auth._login_attempts.clear()
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _seed_accounts(s):
    """Two sub-roles and one account per role; returns ids keyed by username."""
    ids = {}
    mesin = SubRole(name="Teknisi Mesin", description="Mesin")
    listrik = SubRole(name="Teknisi Listrik")
    s.add_all([mesin, listrik])
    s.flush()
    ids["sub_mesin"] = mesin.id
    ids["sub_listrik"] = listrik.id

    rows = [
        ("root", "superadmin", None),
        ("admin", "admin", None),
        ("admin2", "admin", None),
        ("tek_mesin", "teknisi", mesin.id),
        ("tek_listrik", "teknisi", listrik.id),
        ("tek_none", "teknisi", None),
    ]
    for username, role, sub_role_id in rows:
        u = User(
            name=username.replace("_", " ").title(),
            username=username,
            password_hash=generate_password_hash(PASSWORD),
            role=role,
            sub_role_id=sub_role_id,
            is_active=True,
        )
        s.add(u)
        s.flush()
        ids[username] = u.id
    return ids


@pytest.fixture()
def accounts(app):
    with session_scope(app) as s:
        return _seed_accounts(s)


def _login(client, username, password=PASSWORD):
    return client.post("/auth/login", data={"username": username, "password": password}, follow_redirects=False)


def _post(client, url, data=None, **kwargs):
    with client.session_transaction() as sess:
        token = sess.setdefault("csrf_token", "test-csrf-token")
    data = dict(data or {})
    data["csrf_token"] = token
    return client.post(url, data=data, **kwargs)


def _upload(client, name="photo.jpg", data=b"jpeg-bytes"):
    return _post(
        client,
        "/api/upload",
        {"file": (io.BytesIO(data), name)},
        content_type="multipart/form-data",
    )


def test_upload_requires_login(client, accounts):
    r = client.post("/api/upload", data={"file": (io.BytesIO(b"x"), "a.png")}, content_type="multipart/form-data")
    assert r.status_code == 401
    assert r.get_json() == {"error": "Unauthorized"}


def test_upload_requires_csrf_token_when_logged_in(client, accounts):
    _login(client, "tek_mesin")
    r = client.post("/api/upload", data={"file": (io.BytesIO(b"x"), "a.png")}, content_type="multipart/form-data")
    assert r.status_code == 400
    assert r.get_json() == {"error": "CSRF token missing or invalid"}


def test_upload_and_serve(client, app, accounts):
    _login(client, "tek_mesin")
    r = _upload(client)
    assert r.status_code == 200
    body = r.get_json()
    assert body["filename"] == "photo.jpg"
    assert body["url"].startswith("/uploads/")
    assert body["url"].endswith(".jpg")

    served = client.get(body["url"])
    assert served.status_code == 200
    assert served.data == b"jpeg-bytes"
    assert served.mimetype == "image/jpeg"

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "upload.create").one()
        assert ev.actor_username == "tek_mesin"


def test_upload_rejects_bad_type_and_missing_file(client, accounts):
    _login(client, "tek_mesin")
    r = _upload(client, name="script.sh")
    assert r.status_code == 400
    assert r.get_json() == {"error": "File type not allowed"}

    r = _post(client, "/api/upload", {}, content_type="multipart/form-data")
    assert r.status_code == 400
    assert r.get_json() == {"error": "No file provided"}


def test_upload_rejects_oversized_file(client, app, accounts):
    app.config["UPLOAD_MAX_BYTES"] = 1024 * 1024
    _login(client, "tek_mesin")
    r = _upload(client, name="big.pdf", data=b"0" * (1024 * 1024 + 1))
    assert r.status_code == 400
    assert r.get_json() == {"error": "File size exceeds 1MB limit"}


def test_serving_rejects_unknown_or_invalid_names(client, accounts):
    _login(client, "tek_mesin")
    assert client.get("/uploads/..%2Fsecret.txt").status_code == 404
    assert client.get("/uploads/not-a-uuid.png").status_code == 404
    assert client.get("/uploads/0b5f8a4e-2d1c-4c1e-9a53-3f6c1d2e4b5a.png").status_code == 404


def test_serving_requires_login(client, accounts):
    r = client.get("/uploads/0b5f8a4e-2d1c-4c1e-9a53-3f6c1d2e4b5a.png")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]


@pytest.mark.parametrize(
    "filename, ok",
    [("report.PDF", True), ("sheet.xlsx", True), ("notes.txt", True), ("archive.zip", False), ("noext", False)],
)
def test_validate_upload_extensions(filename, ok):
    if ok:
        assert uploads_service.validate_upload(filename, 10) == uploads_service.file_extension(filename)
    else:
        with pytest.raises(uploads_service.UploadError):
            uploads_service.validate_upload(filename, 10)
