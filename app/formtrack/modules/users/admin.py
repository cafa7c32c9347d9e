from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.formtrack.db import db_session
from app.formtrack.models import SubRole, User
from app.formtrack.modules.users.service import (
    UserAdminError,
    create_user,
    delete_user,
    list_users,
    toggle_user_status,
    update_user,
    validate_user_payload,
)
from app.formtrack.rbac import ROLE_TEKNISI, ROLES, require_permission

bp = Blueprint("users", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload_from_request() -> dict:
    return {
        "name": request.form.get("name"),
        "username": request.form.get("username"),
        "password": request.form.get("password"),
        "role": request.form.get("role"),
        "sub_role_id": request.form.get("sub_role_id"),
        "is_active": request.form.get("is_active") == "1",
    }


def _sub_role_choices(s) -> list[SubRole]:
    return s.query(SubRole).order_by(SubRole.name.asc()).all()


@bp.get("/users")
@require_permission("users.manage")
def users_list():
    s = db_session()
    return render_template("admin/users/list.html", users=list_users(s))


@bp.get("/users/new")
@require_permission("users.manage")
def users_new_get():
    s = db_session()
    return render_template(
        "admin/users/edit.html",
        user=None,
        roles=ROLES,
        sub_roles=_sub_role_choices(s),
        default_role=ROLE_TEKNISI,
    )


@bp.post("/users/new")
@require_permission("users.manage")
def users_new_post():
    s = db_session()
    actor = _current_user()
    payload = _payload_from_request()

    errors = validate_user_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("users.users_new_get"))

    user = create_user(s, payload, actor)
    s.commit()
    flash(f"User {user.username} created.", "success")
    return redirect(url_for("users.users_list"))


@bp.get("/users/<user_id>/edit")
@require_permission("users.manage")
def users_edit_get(user_id: str):
    s = db_session()
    user = s.get(User, user_id)
    if not user:
        abort(404)
    return render_template(
        "admin/users/edit.html",
        user=user,
        roles=ROLES,
        sub_roles=_sub_role_choices(s),
        default_role=user.role,
    )


@bp.post("/users/<user_id>/edit")
@require_permission("users.manage")
def users_edit_post(user_id: str):
    s = db_session()
    actor = _current_user()
    user = s.get(User, user_id)
    if not user:
        abort(404)
    payload = _payload_from_request()

    errors = validate_user_payload(s, payload, existing=user)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("users.users_edit_get", user_id=user.id))

    try:
        update_user(s, user, payload, actor)
    except UserAdminError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("users.users_edit_get", user_id=user_id))
    s.commit()
    flash("User updated.", "success")
    return redirect(url_for("users.users_list"))


@bp.post("/users/<user_id>/delete")
@require_permission("users.manage")
def users_delete(user_id: str):
    s = db_session()
    actor = _current_user()
    user = s.get(User, user_id)
    if not user:
        abort(404)
    username = user.username
    try:
        delete_user(s, user, actor)
    except UserAdminError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("users.users_list"))
    s.commit()
    flash(f"User {username} deleted.", "success")
    return redirect(url_for("users.users_list"))


@bp.post("/users/<user_id>/toggle")
@require_permission("users.manage")
def users_toggle(user_id: str):
    s = db_session()
    actor = _current_user()
    user = s.get(User, user_id)
    if not user:
        abort(404)
    try:
        toggle_user_status(s, user, actor)
    except UserAdminError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("users.users_list"))
    s.commit()
    flash(f"User {user.username} {'activated' if user.is_active else 'deactivated'}.", "success")
    return redirect(url_for("users.users_list"))
