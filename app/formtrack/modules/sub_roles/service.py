from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import func

from app.formtrack.audit import record_event
from app.formtrack.models import SubRole, User

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


class SubRoleError(ValueError):
    pass


class SubRoleInUseError(SubRoleError):
    pass


def validate_sub_role_payload(payload: dict) -> list[str]:
    errors = []
    name = (payload.get("name") or "").strip()
    if not name:
        errors.append("Name is required.")
    elif len(name) > 128:
        errors.append("Name must be at most 128 characters.")
    return errors


def list_sub_roles(s: "Session") -> list[tuple[SubRole, int]]:
    """All sub-roles ordered by name, each with its assigned user count."""
    counts = dict(
        s.query(User.sub_role_id, func.count(User.id))
        .filter(User.sub_role_id.isnot(None))
        .group_by(User.sub_role_id)
        .all()
    )
    rows = s.query(SubRole).order_by(SubRole.name.asc()).all()
    return [(r, int(counts.get(r.id, 0))) for r in rows]


def _name_taken(s: "Session", name: str, exclude_id: str | None = None) -> bool:
    q = s.query(SubRole).filter(func.lower(SubRole.name) == name.lower())
    if exclude_id:
        q = q.filter(SubRole.id != exclude_id)
    return s.query(q.exists()).scalar()


def create_sub_role(s: "Session", payload: dict, user: User) -> SubRole:
    name = (payload.get("name") or "").strip()
    if _name_taken(s, name):
        raise SubRoleError("A sub-role with this name already exists.")
    sub_role = SubRole(name=name, description=(payload.get("description") or "").strip() or None)
    s.add(sub_role)
    s.flush()
    record_event(
        s,
        actor=user,
        action="sub_role.create",
        entity_type="SubRole",
        entity_id=sub_role.id,
        metadata={"name": sub_role.name},
    )
    return sub_role


def update_sub_role(s: "Session", sub_role: SubRole, payload: dict, user: User) -> SubRole:
    name = (payload.get("name") or "").strip()
    if _name_taken(s, name, exclude_id=sub_role.id):
        raise SubRoleError("A sub-role with this name already exists.")
    before = {"name": sub_role.name, "description": sub_role.description}
    sub_role.name = name
    sub_role.description = (payload.get("description") or "").strip() or None
    record_event(
        s,
        actor=user,
        action="sub_role.update",
        entity_type="SubRole",
        entity_id=sub_role.id,
        metadata={"before": before, "after": {"name": sub_role.name, "description": sub_role.description}},
    )
    return sub_role


def delete_sub_role(s: "Session", sub_role: SubRole, user: User) -> None:
    """Refuses while users are assigned; forms targeting it fall back to all technicians."""
    user_count = s.query(func.count(User.id)).filter(User.sub_role_id == sub_role.id).scalar() or 0
    if user_count > 0:
        raise SubRoleInUseError(
            f"Cannot delete: {user_count} user(s) still have this sub-role."
        )
    record_event(
        s,
        actor=user,
        action="sub_role.delete",
        entity_type="SubRole",
        entity_id=sub_role.id,
        metadata={"name": sub_role.name, "forms_retargeted": len(sub_role.forms)},
    )
    for form in list(sub_role.forms):
        form.sub_role = None
    s.delete(sub_role)
