import pytest
from werkzeug.security import generate_password_hash

from app.formtrack import auth, create_app
from app.formtrack.db import session_scope
from app.formtrack.models import AuditEvent, Base, SubRole, User


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


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_healthz_ok(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_index_redirects_to_login_when_anonymous(client):
    r = client.get("/")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]


def test_login_page_renders(client):
    r = client.get("/auth/login")
    assert r.status_code == 200
    assert b"Username" in r.data


def test_dashboard_requires_login(client):
    r = client.get("/dashboard")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]
    assert "next=/dashboard" in r.headers["Location"]


def test_login_and_dashboard(client, accounts):
    r = _login(client, "admin")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/dashboard")

    r = client.get("/dashboard")
    assert r.status_code == 200
    assert b"My forms" in r.data

    r = client.get("/")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/dashboard")


def test_login_respects_local_next_only(client, accounts):
    r = client.post(
        "/auth/login",
        data={"username": "admin", "password": "secret123", "next": "/forms"},
    )
    assert r.headers["Location"].endswith("/forms")

    client.get("/auth/logout")
    r = client.post(
        "/auth/login",
        data={"username": "admin", "password": "secret123", "next": "//evil.example.com/"},
    )
    assert r.headers["Location"].endswith("/dashboard")


def test_login_wrong_password(client, app, accounts):
    r = _login(client, "admin", "nope")
    assert r.status_code == 302
    r = client.get("/auth/login")
    assert b"Invalid credentials." in r.data
    with session_scope(app) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "auth.login_failed").count() == 1


def test_login_missing_fields(client, accounts):
    r = client.post("/auth/login", data={"username": "", "password": ""}, follow_redirects=True)
    assert b"Username and password are required." in r.data


def test_inactive_user_cannot_login(client, app, accounts):
    with session_scope(app) as s:
        s.get(User, accounts["tek_mesin"]).is_active = False
    r = _login(client, "tek_mesin")
    assert r.status_code == 302
    r = client.get("/auth/login")
    assert b"This account is inactive." in r.data
    r = client.get("/dashboard")
    assert "/auth/login" in r.headers["Location"]


def test_deactivated_session_is_dropped(client, app, accounts):
    _login(client, "tek_mesin")
    assert client.get("/dashboard").status_code == 200
    with session_scope(app) as s:
        s.get(User, accounts["tek_mesin"]).is_active = False
    r = client.get("/dashboard")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]


def test_logout(client, accounts):
    _login(client, "admin")
    r = client.get("/auth/logout")
    assert r.status_code == 302
    r = client.get("/dashboard")
    assert "/auth/login" in r.headers["Location"]


def test_login_rate_limit(client, accounts):
    for _ in range(auth._LOGIN_RATE_LIMIT):
        _login(client, "admin", "wrong")
    # Even the correct password is refused while throttled.
    _login(client, "admin")
    r = client.get("/dashboard")
    assert r.status_code == 302
    r = client.get("/auth/login")
    assert b"Too many login attempts" in r.data


def test_post_without_csrf_is_rejected(client, accounts):
    _login(client, "root")
    r = client.post("/admin/sub-roles/new", data={"name": "Teknisi HVAC"})
    assert r.status_code == 400
    assert b"CSRF token missing or invalid." in r.data


def test_post_with_csrf_is_accepted(client, accounts):
    _login(client, "root")
    r = _post(client, "/admin/sub-roles/new", {"name": "Teknisi HVAC"})
    assert r.status_code == 302


def test_dashboard_stats_per_role(client, accounts):
    _login(client, "root")
    r = client.get("/dashboard")
    assert b"Total users" in r.data
    assert b"Sub-roles" in r.data

    client.get("/auth/logout")
    _login(client, "tek_mesin")
    r = client.get("/dashboard")
    assert b"Available forms" in r.data
    assert b"Teknisi Mesin" in r.data


def test_unknown_page_404(client):
    r = client.get("/does-not-exist")
    assert r.status_code == 404


def test_gunicorn_argv_and_port(monkeypatch):
    from scripts import start

    argv = start.gunicorn_argv("9000", "3")
    assert argv[:2] == ["gunicorn", "app.wsgi:app"]
    assert "0.0.0.0:9000" in argv
    assert argv[argv.index("--workers") + 1] == "3"

    monkeypatch.delenv("PORT", raising=False)
    assert start._port_from_env() == "8080"
    monkeypatch.setenv("PORT", "5001")
    assert start._port_from_env() == "5001"


def test_release_requires_database_url(monkeypatch):
    from scripts import release

    monkeypatch.setattr("dotenv.load_dotenv", lambda *a, **k: False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        release.run_release()


def test_audit_trail_filters(client, accounts):
    _login(client, "root")
    _post(client, "/admin/sub-roles/new", {"name": "Teknisi HVAC"})
    r = client.get("/admin/audit?action=sub_role")
    assert r.status_code == 200
    assert b"sub_role.create" in r.data
    assert b"auth.login" not in r.data

    r = client.get("/admin/audit?date_from=yesterday", follow_redirects=True)
    assert b"date_from must be YYYY-MM-DD" in r.data

    client.get("/auth/logout")
    _login(client, "admin")
    r = client.get("/admin/audit")
    assert r.status_code == 302
