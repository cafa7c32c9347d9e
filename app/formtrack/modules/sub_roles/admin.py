from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.formtrack.db import db_session
from app.formtrack.models import SubRole, User
from app.formtrack.modules.sub_roles.service import (
    SubRoleError,
    create_sub_role,
    delete_sub_role,
    list_sub_roles,
    update_sub_role,
    validate_sub_role_payload,
)
from app.formtrack.rbac import require_permission

bp = Blueprint("sub_roles", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/sub-roles")
@require_permission("sub_roles.manage")
def sub_roles_list():
    s = db_session()
    return render_template("admin/sub_roles/list.html", rows=list_sub_roles(s))


@bp.post("/sub-roles/new")
@require_permission("sub_roles.manage")
def sub_roles_new_post():
    s = db_session()
    u = _current_user()
    payload = {"name": request.form.get("name"), "description": request.form.get("description")}

    errors = validate_sub_role_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("sub_roles.sub_roles_list"))

    try:
        sub_role = create_sub_role(s, payload, u)
    except SubRoleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("sub_roles.sub_roles_list"))
    s.commit()
    flash(f"Sub-role {sub_role.name} created.", "success")
    return redirect(url_for("sub_roles.sub_roles_list"))


@bp.get("/sub-roles/<sub_role_id>/edit")
@require_permission("sub_roles.manage")
def sub_roles_edit_get(sub_role_id: str):
    s = db_session()
    sub_role = s.get(SubRole, sub_role_id)
    if not sub_role:
        abort(404)
    return render_template("admin/sub_roles/edit.html", sub_role=sub_role)


@bp.post("/sub-roles/<sub_role_id>/edit")
@require_permission("sub_roles.manage")
def sub_roles_edit_post(sub_role_id: str):
    s = db_session()
    u = _current_user()
    sub_role = s.get(SubRole, sub_role_id)
    if not sub_role:
        abort(404)
    payload = {"name": request.form.get("name"), "description": request.form.get("description")}

    errors = validate_sub_role_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("sub_roles.sub_roles_edit_get", sub_role_id=sub_role_id))

    try:
        update_sub_role(s, sub_role, payload, u)
    except SubRoleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("sub_roles.sub_roles_edit_get", sub_role_id=sub_role_id))
    s.commit()
    flash("Sub-role updated.", "success")
    return redirect(url_for("sub_roles.sub_roles_list"))


@bp.post("/sub-roles/<sub_role_id>/delete")
@require_permission("sub_roles.manage")
def sub_roles_delete(sub_role_id: str):
    s = db_session()
    u = _current_user()
    sub_role = s.get(SubRole, sub_role_id)
    if not sub_role:
        abort(404)
    name = sub_role.name
    try:
        delete_sub_role(s, sub_role, u)
    except SubRoleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("sub_roles.sub_roles_list"))
    s.commit()
    flash(f"Sub-role {name} deleted.", "success")
    return redirect(url_for("sub_roles.sub_roles_list"))
