"""Tests for the Users module (superadmin account management)."""
import pytest
from werkzeug.security import check_password_hash, generate_password_hash

from app.formtrack import auth, create_app
from app.formtrack.db import session_scope
from app.formtrack.models import AuditEvent, Base, SubRole, User
from app.formtrack.modules.forms.models import Form, Question


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


def _make_form(app, created_by_id, *, title="Daily check", sub_role_id=None, is_active=True, questions=None):
    """Insert a form straight through the ORM; returns (form_id, [question_ids])."""
    if questions is None:
        questions = [{"type": "short_text", "label": "Unit number", "required": True}]
    with session_scope(app) as s:
        f = Form(title=title, sub_role_id=sub_role_id, created_by_id=created_by_id, is_active=is_active)
        for order, q in enumerate(questions):
            f.questions.append(Question(order=order, **q))
        s.add(f)
        s.flush()
        return f.id, [q.id for q in f.questions]


def _new_user(**overrides):
    data = {
        "name": "Budi",
        "username": "budi",
        "password": "budi1234",
        "role": "teknisi",
        "sub_role_id": "",
        "is_active": "1",
    }
    data.update(overrides)
    return data


def test_users_list_superadmin_only(client, accounts):
    _login(client, "admin")
    r = client.get("/admin/users")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/dashboard")

    client.get("/auth/logout")
    _login(client, "tek_mesin")
    r = client.get("/admin/users", follow_redirects=True)
    assert b"You do not have access to that page." in r.data

    client.get("/auth/logout")
    _login(client, "root")
    r = client.get("/admin/users")
    assert r.status_code == 200
    assert b"tek_listrik" in r.data


def test_create_user(client, app, accounts):
    _login(client, "root")
    r = _post(client, "/admin/users/new", _new_user(sub_role_id=accounts["sub_mesin"]), follow_redirects=True)
    assert r.status_code == 200
    assert b"User budi created." in r.data

    with session_scope(app) as s:
        u = s.query(User).filter(User.username == "budi").one()
        assert u.role == "teknisi"
        assert u.sub_role_id == accounts["sub_mesin"]
        assert check_password_hash(u.password_hash, "budi1234")
        assert s.query(AuditEvent).filter(AuditEvent.action == "user.create").count() == 1

    client.get("/auth/logout")
    assert _login(client, "budi", "budi1234").headers["Location"].endswith("/dashboard")


def test_create_user_validation(client, app, accounts):
    _login(client, "root")
    r = _post(
        client,
        "/admin/users/new",
        _new_user(username="ab", password="123", name=""),
        follow_redirects=True,
    )
    assert b"Name is required." in r.data
    assert b"Username must be at least 3 characters." in r.data
    assert b"Password must be at least 6 characters." in r.data

    r = _post(client, "/admin/users/new", _new_user(username="admin"), follow_redirects=True)
    assert b"Username is already registered." in r.data

    r = _post(client, "/admin/users/new", _new_user(role="owner"), follow_redirects=True)
    assert b"Invalid role." in r.data

    with session_scope(app) as s:
        assert s.query(User).count() == 6


def test_non_technician_has_no_sub_role(client, app, accounts):
    _login(client, "root")
    _post(client, "/admin/users/new", _new_user(role="admin", sub_role_id=accounts["sub_mesin"]))
    with session_scope(app) as s:
        u = s.query(User).filter(User.username == "budi").one()
        assert u.role == "admin"
        assert u.sub_role_id is None


def test_update_user_keeps_password_when_blank(client, app, accounts):
    _login(client, "root")
    uid = accounts["tek_mesin"]
    r = _post(
        client,
        f"/admin/users/{uid}/edit",
        {
            "name": "Renamed",
            "username": "tek_mesin",
            "password": "",
            "role": "teknisi",
            "sub_role_id": accounts["sub_listrik"],
            "is_active": "1",
        },
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        u = s.get(User, uid)
        assert u.name == "Renamed"
        assert u.sub_role_id == accounts["sub_listrik"]
        assert check_password_hash(u.password_hash, "secret123")


def test_update_user_changes_password(client, app, accounts):
    _login(client, "root")
    uid = accounts["admin"]
    _post(
        client,
        f"/admin/users/{uid}/edit",
        {"name": "Admin", "username": "admin", "password": "newpass1", "role": "admin", "is_active": "1"},
    )
    with session_scope(app) as s:
        assert check_password_hash(s.get(User, uid).password_hash, "newpass1")


def test_cannot_demote_or_deactivate_self(client, app, accounts):
    _login(client, "root")
    uid = accounts["root"]
    r = _post(
        client,
        f"/admin/users/{uid}/edit",
        {"name": "Root", "username": "root", "password": "", "role": "admin", "is_active": "1"},
        follow_redirects=True,
    )
    assert b"You cannot change your own role or deactivate your own account." in r.data
    with session_scope(app) as s:
        assert s.get(User, uid).role == "superadmin"


def test_cannot_delete_self(client, app, accounts):
    _login(client, "root")
    r = _post(client, f"/admin/users/{accounts['root']}/delete", follow_redirects=True)
    assert b"You cannot delete your own account." in r.data
    with session_scope(app) as s:
        assert s.get(User, accounts["root"]) is not None


def test_toggle_user_status(client, app, accounts):
    _login(client, "root")
    uid = accounts["tek_listrik"]
    _post(client, f"/admin/users/{uid}/toggle")
    with session_scope(app) as s:
        assert s.get(User, uid).is_active is False
    _post(client, f"/admin/users/{uid}/toggle")
    with session_scope(app) as s:
        assert s.get(User, uid).is_active is True

    r = _post(client, f"/admin/users/{accounts['root']}/toggle", follow_redirects=True)
    assert b"You cannot deactivate your own account." in r.data


def test_delete_user_removes_their_forms(client, app, accounts):
    form_id, _ = _make_form(app, accounts["admin2"])
    _login(client, "root")
    r = _post(client, f"/admin/users/{accounts['admin2']}/delete", follow_redirects=True)
    assert b"User admin2 deleted." in r.data
    with session_scope(app) as s:
        assert s.get(User, accounts["admin2"]) is None
        assert s.get(Form, form_id) is None
        ev = s.query(AuditEvent).filter(AuditEvent.action == "user.delete").one()
        assert ev.actor_username == "root"


def test_edit_unknown_user_404(client, accounts):
    _login(client, "root")
    assert client.get("/admin/users/nope/edit").status_code == 404
