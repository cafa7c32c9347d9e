from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from werkzeug.security import generate_password_hash

from app.formtrack.audit import record_event
from app.formtrack.models import SubRole, User
from app.formtrack.rbac import ROLE_TEKNISI, ROLES

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

USERNAME_MIN_LENGTH = 3
PASSWORD_MIN_LENGTH = 6


class UserAdminError(ValueError):
    pass


def validate_user_payload(s: "Session", payload: dict, *, existing: User | None = None) -> list[str]:
    """Validate account creation/update payload. Returns list of errors."""
    errors = []
    name = (payload.get("name") or "").strip()
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    role = (payload.get("role") or "").strip()
    sub_role_id = (payload.get("sub_role_id") or "").strip()

    if not name:
        errors.append("Name is required.")
    if len(username) < USERNAME_MIN_LENGTH:
        errors.append(f"Username must be at least {USERNAME_MIN_LENGTH} characters.")
    else:
        q = s.query(User).filter(User.username == username)
        if existing is not None:
            q = q.filter(User.id != existing.id)
        if q.first():
            errors.append("Username is already registered.")

    if existing is None and not password:
        errors.append("Password is required for new users.")
    elif password and len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters.")

    if role not in ROLES:
        errors.append(f"Invalid role. Must be one of: {', '.join(ROLES)}")
    elif role == ROLE_TEKNISI and sub_role_id and not s.get(SubRole, sub_role_id):
        errors.append("Selected sub-role does not exist.")
    return errors


def _sub_role_for(role: str, sub_role_id: str | None) -> str | None:
    # Only technicians carry a sub-role.
    if role != ROLE_TEKNISI:
        return None
    return (sub_role_id or "").strip() or None


def list_users(s: "Session") -> list[User]:
    return s.query(User).order_by(User.created_at.desc()).all()


def create_user(s: "Session", payload: dict, actor: User) -> User:
    now = datetime.utcnow()
    role = (payload.get("role") or ROLE_TEKNISI).strip()
    user = User(
        name=(payload.get("name") or "").strip(),
        username=(payload.get("username") or "").strip(),
        password_hash=generate_password_hash(payload["password"]),
        role=role,
        sub_role_id=_sub_role_for(role, payload.get("sub_role_id")),
        is_active=bool(payload.get("is_active", True)),
        created_at=now,
        updated_at=now,
    )
    s.add(user)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="user.create",
        entity_type="User",
        entity_id=user.id,
        metadata={"username": user.username, "role": user.role, "sub_role_id": user.sub_role_id},
    )
    return user


def update_user(s: "Session", user: User, payload: dict, actor: User) -> User:
    """Password is only replaced when a new one is supplied."""
    before = {"username": user.username, "role": user.role, "sub_role_id": user.sub_role_id, "is_active": user.is_active}
    role = (payload.get("role") or user.role).strip()
    is_active = bool(payload.get("is_active", user.is_active))
    if user.id == actor.id and (role != user.role or not is_active):
        raise UserAdminError("You cannot change your own role or deactivate your own account.")

    user.name = (payload.get("name") or "").strip()
    user.username = (payload.get("username") or "").strip()
    user.role = role
    user.sub_role_id = _sub_role_for(role, payload.get("sub_role_id"))
    user.is_active = is_active
    password = payload.get("password") or ""
    if len(password) >= PASSWORD_MIN_LENGTH:
        user.password_hash = generate_password_hash(password)
    user.updated_at = datetime.utcnow()

    record_event(
        s,
        actor=actor,
        action="user.update",
        entity_type="User",
        entity_id=user.id,
        metadata={
            "before": before,
            "after": {"username": user.username, "role": user.role, "sub_role_id": user.sub_role_id, "is_active": user.is_active},
            "password_changed": len(password) >= PASSWORD_MIN_LENGTH,
        },
    )
    return user


def delete_user(s: "Session", user: User, actor: User) -> None:
    """Deletes the account; its forms and responses go with it (FK cascade)."""
    if user.id == actor.id:
        raise UserAdminError("You cannot delete your own account.")
    record_event(
        s,
        actor=actor,
        action="user.delete",
        entity_type="User",
        entity_id=user.id,
        metadata={"username": user.username, "role": user.role},
    )
    s.delete(user)


def toggle_user_status(s: "Session", user: User, actor: User) -> User:
    if user.id == actor.id:
        raise UserAdminError("You cannot deactivate your own account.")
    user.is_active = not user.is_active
    user.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="user.toggle_status",
        entity_type="User",
        entity_id=user.id,
        metadata={"is_active": user.is_active},
    )
    return user
