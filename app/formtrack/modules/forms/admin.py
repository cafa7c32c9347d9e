from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.formtrack.db import db_session
from app.formtrack.models import SubRole, User
from app.formtrack.modules.forms.models import Form
from app.formtrack.modules.forms.service import (
    QUESTION_TYPES,
    SHORT_TEXT,
    FormAccessError,
    FormNotFound,
    FormValidationError,
    blank_builder_row,
    create_form,
    delete_form,
    get_form,
    group_question_fields,
    list_forms,
    list_forms_with_counts,
    parse_form_payload,
    question_to_builder_row,
    toggle_form_status,
    update_form,
)
from app.formtrack.rbac import require_permission

bp = Blueprint("forms", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _load_managed_form(s, form_id: str) -> Form | None:
    """Returns the form, or None after flashing when the user may not manage it."""
    try:
        return get_form(s, form_id, _current_user())
    except FormNotFound:
        abort(404)
    except FormAccessError as e:
        flash(str(e), "danger")
        return None


# ---------- Builder state ----------
def _fields_from_form(form: Form | None) -> dict:
    if form is None:
        return {"title": "", "description": "", "sub_role_id": "all", "is_active": True}
    return {
        "title": form.title,
        "description": form.description or "",
        "sub_role_id": form.sub_role_id or "all",
        "is_active": form.is_active,
    }


def _fields_from_request() -> dict:
    return {
        "title": request.form.get("title") or "",
        "description": request.form.get("description") or "",
        "sub_role_id": request.form.get("sub_role_id") or "all",
        "is_active": request.form.get("is_active", "1") == "1",
    }


def _rows_from_request() -> list[dict]:
    rows = []
    for raw in group_question_fields(request.form.to_dict()):
        row = blank_builder_row(raw.get("type") or SHORT_TEXT)
        row["options"] = ""
        row.update({k: v for k, v in raw.items() if k != "required"})
        row["required"] = raw.get("required") == "1"
        rows.append(row)
    return rows


def _apply_builder_action(action: str, rows: list[dict]) -> list[dict]:
    """
    Row edits that happen before saving: add, remove, move-up, move-down.
    `action` is "add", or "<verb>-<row index>".
    """
    if action == "add":
        qtype = request.form.get("new_question_type") or SHORT_TEXT
        if qtype not in QUESTION_TYPES:
            qtype = SHORT_TEXT
        rows.append(blank_builder_row(qtype))
        return rows

    verb, _, idx_raw = action.partition("-")
    try:
        idx = int(idx_raw)
    except ValueError:
        return rows
    if not (0 <= idx < len(rows)):
        return rows
    if verb == "remove":
        rows.pop(idx)
    elif verb == "up" and idx > 0:
        rows[idx - 1], rows[idx] = rows[idx], rows[idx - 1]
    elif verb == "down" and idx < len(rows) - 1:
        rows[idx + 1], rows[idx] = rows[idx], rows[idx + 1]
    return rows


def _render_builder(s, form: Form | None, fields: dict, rows: list[dict], status: int = 200):
    sub_roles = s.query(SubRole).order_by(SubRole.name.asc()).all()
    return (
        render_template(
            "admin/forms/builder.html",
            form=form,
            fields=fields,
            rows=rows,
            sub_roles=sub_roles,
            question_types=QUESTION_TYPES,
        ),
        status,
    )


def _handle_builder_post(s, form: Form | None):
    """
    Shared POST handler for new/edit. Returns (saved_form, None) or (None, response)
    where response re-renders the builder.
    """
    fields = _fields_from_request()
    rows = _rows_from_request()
    action = (request.form.get("action") or "save").strip()

    if action != "save":
        rows = _apply_builder_action(action, rows)
        return None, _render_builder(s, form, fields, rows)

    data = {k: v for k, v in fields.items() if k != "is_active"}
    data["is_active"] = "1" if fields["is_active"] else "0"
    data["questions"] = rows
    try:
        payload = parse_form_payload(data)
        u = _current_user()
        if form is None:
            saved = create_form(s, payload, u)
        else:
            saved = update_form(s, form, payload, u)
    except FormValidationError as e:
        s.rollback()
        for msg in e.errors:
            flash(msg, "danger")
        return None, _render_builder(s, form, fields, rows, status=400)
    s.commit()
    return saved, None


# ---------- List ----------
@bp.get("/forms")
@require_permission("forms.manage")
def forms_list():
    s = db_session()
    forms = list_forms(s, _current_user())
    return render_template("admin/forms/list.html", forms=forms)


@bp.get("/admin/forms")
@require_permission("forms.overview")
def forms_overview():
    s = db_session()
    return render_template("admin/forms/overview.html", rows=list_forms_with_counts(s))


# ---------- New ----------
@bp.get("/forms/new")
@require_permission("forms.manage")
def forms_new_get():
    s = db_session()
    return _render_builder(s, None, _fields_from_form(None), [blank_builder_row()])


@bp.post("/forms/new")
@require_permission("forms.manage")
def forms_new_post():
    s = db_session()
    saved, response = _handle_builder_post(s, None)
    if response is not None:
        return response
    flash("Form created.", "success")
    return redirect(url_for("forms.forms_list"))


# ---------- Edit ----------
@bp.get("/forms/<form_id>/edit")
@require_permission("forms.manage")
def forms_edit_get(form_id: str):
    s = db_session()
    form = _load_managed_form(s, form_id)
    if form is None:
        return redirect(url_for("forms.forms_list"))
    rows = [question_to_builder_row(q) for q in form.questions]
    return _render_builder(s, form, _fields_from_form(form), rows)


@bp.post("/forms/<form_id>/edit")
@require_permission("forms.manage")
def forms_edit_post(form_id: str):
    s = db_session()
    form = _load_managed_form(s, form_id)
    if form is None:
        return redirect(url_for("forms.forms_list"))
    saved, response = _handle_builder_post(s, form)
    if response is not None:
        return response
    flash("Form updated.", "success")
    return redirect(url_for("forms.forms_list"))


# ---------- Status / delete ----------
@bp.post("/forms/<form_id>/toggle")
@require_permission("forms.manage")
def forms_toggle(form_id: str):
    s = db_session()
    form = _load_managed_form(s, form_id)
    if form is None:
        return redirect(url_for("forms.forms_list"))
    toggle_form_status(s, form, _current_user())
    s.commit()
    flash(f"Form {'activated' if form.is_active else 'deactivated'}.", "success")
    nxt = (request.form.get("next") or "").strip()
    if nxt.startswith("/") and not nxt.startswith("//"):
        return redirect(nxt)
    return redirect(url_for("forms.forms_list"))


@bp.post("/forms/<form_id>/delete")
@require_permission("forms.manage")
def forms_delete(form_id: str):
    s = db_session()
    form = _load_managed_form(s, form_id)
    if form is None:
        return redirect(url_for("forms.forms_list"))
    title = form.title
    delete_form(s, form, _current_user())
    s.commit()
    flash(f"Form {title!r} deleted.", "success")
    return redirect(url_for("forms.forms_list"))
