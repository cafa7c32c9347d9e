import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from contextlib import contextmanager

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.formtrack.models import SubRole, User
from app.formtrack.modules.forms.models import Form, Question

SUB_ROLES = [
    ("Teknisi Mesin", "Teknisi yang menangani peralatan mesin dan mekanik"),
    ("Teknisi Listrik", "Teknisi yang menangani instalasi dan peralatan listrik"),
    ("Teknisi Elektronik", "Teknisi yang menangani peralatan elektronik dan sistem kontrol"),
    ("Teknisi HVAC", "Teknisi yang menangani sistem pendingin dan ventilasi"),
    ("Teknisi Ground Support", "Teknisi yang menangani peralatan ground support equipment"),
]

GENSET_FORM = {
    "title": "Checklist Harian Mesin Genset",
    "description": "Laporan pemeriksaan harian untuk unit Genset Utama",
    "sub_role": "Teknisi Mesin",
    "questions": [
        {"type": "short_text", "label": "Nomor Unit Genset", "description": "Masukkan nomor identifikasi unit", "required": True},
        {
            "type": "multiple_choice",
            "label": "Kondisi Oli Mesin",
            "options": ["Normal", "Kotor/Perlu Ganti", "Volume Kurang", "Bocor"],
            "required": True,
        },
        {
            "type": "rating",
            "label": "Kondisi Fisik Unit",
            "description": "Berikan penilaian kondisi fisik secara umum",
            "rating_max": 5,
            "required": True,
        },
        {"type": "file_upload", "label": "Foto Unit", "description": "Upload foto kondisi terkini unit", "required": False},
    ],
}

INCIDENT_FORM = {
    "title": "Laporan Insiden Lapangan",
    "description": "Form untuk melaporkan kejadian tidak terduga atau kerusakan mendadak",
    "sub_role": None,  # all technicians
    "questions": [
        {"type": "date", "label": "Tanggal Kejadian", "required": True},
        {"type": "time", "label": "Waktu Kejadian", "required": True},
        {
            "type": "dropdown",
            "label": "Lokasi",
            "options": ["Terminal 1", "Terminal 2", "Runway", "Hangar", "Parkir Area"],
            "required": True,
        },
        {
            "type": "paragraph",
            "label": "Kronologi Kejadian",
            "description": "Jelaskan detail kejadian secara rinci",
            "required": True,
        },
        {
            "type": "linear_scale",
            "label": "Tingkat Urgensi",
            "scale_min": 1,
            "scale_max": 5,
            "scale_min_label": "Rendah",
            "scale_max_label": "Kritis",
            "required": True,
        },
    ],
}


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()


def seed(s: Session) -> list[str]:
    """
    Idempotent seed on an open session. Existing rows (matched by name / username /
    form title) are left untouched, passwords included. Returns log lines.
    """
    log: list[str] = []

    def ensure_sub_role(name: str, description: str) -> SubRole:
        sr = s.query(SubRole).filter(SubRole.name == name).one_or_none()
        if not sr:
            sr = SubRole(name=name, description=description)
            s.add(sr)
            s.flush()
            log.append(f"Sub-role created: {name}")
        return sr

    def ensure_user(username: str, name: str, password: str, role: str, sub_role: SubRole | None = None) -> User:
        u = s.query(User).filter(User.username == username).one_or_none()
        if not u:
            u = User(
                username=username,
                name=name,
                password_hash=generate_password_hash(password),
                role=role,
                sub_role_id=sub_role.id if sub_role else None,
                is_active=True,
            )
            s.add(u)
            s.flush()
            log.append(f"User created: {username} ({role})")
        return u

    def ensure_form(data: dict, creator: User) -> Form:
        f = s.query(Form).filter(Form.title == data["title"]).one_or_none()
        if f:
            return f
        target = sub_roles.get(data["sub_role"]) if data["sub_role"] else None
        f = Form(
            title=data["title"],
            description=data["description"],
            sub_role_id=target.id if target else None,
            created_by_id=creator.id,
            is_active=True,
        )
        for order, q in enumerate(data["questions"]):
            f.questions.append(Question(order=order, **q))
        s.add(f)
        s.flush()
        log.append(f"Form created: {f.title}")
        return f

    sub_roles = {name: ensure_sub_role(name, desc) for name, desc in SUB_ROLES}

    superadmin_password = os.environ.get("SUPERADMIN_PASSWORD") or "admin123"
    ensure_user("superadmin", "Super Admin", superadmin_password, "superadmin")
    admin = ensure_user("admin", "Admin", os.environ.get("ADMIN_PASSWORD") or "admin123", "admin")

    for i, (name, _desc) in enumerate(SUB_ROLES[:3], start=1):
        ensure_user(f"teknisi{i}", f"Teknisi {name.split(' ', 1)[1]}", "teknisi123", "teknisi", sub_roles[name])

    ensure_form(GENSET_FORM, admin)
    ensure_form(INCIDENT_FORM, admin)
    return log


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed sub-roles, default accounts and sample forms in an idempotent way.
    Does NOT overwrite existing users' passwords.
    """
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///formtrack.db").strip()

    # Use direct engine/session so this can run in release without importing app.wsgi (avoids recursion).
    with _session_scope(db_url) as s:
        for line in seed(s):
            print(line)

    print("Initialized database (seed_only).")
    print("Superadmin: superadmin (password from SUPERADMIN_PASSWORD, default admin123)")
    print("Admin: admin (password from ADMIN_PASSWORD, default admin123)")
    print("Teknisi: teknisi1..teknisi3 / teknisi123")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
