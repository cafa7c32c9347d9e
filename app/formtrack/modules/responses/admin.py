from __future__ import annotations

import io

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, send_file, url_for
from werkzeug.datastructures import MultiDict

from app.formtrack.audit import record_event
from app.formtrack.db import db_session
from app.formtrack.models import User
from app.formtrack.modules.forms import service as forms_service
from app.formtrack.modules.responses.service import (
    ResponseAccessError,
    ResponseNotFound,
    SubmissionError,
    checkbox_values,
    export_responses_csv,
    get_form_responses,
    get_my_responses,
    get_response,
    parse_submission,
    submit_response,
)
from app.formtrack.modules.uploads.service import DEFAULT_MAX_BYTES, UploadError, save_upload
from app.formtrack.rbac import require_permission
from app.formtrack.storage import StorageError, storage_from_config

bp = Blueprint("responses", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _load_fillable_form(s, form_id: str):
    try:
        return forms_service.get_form(s, form_id, _current_user())
    except forms_service.FormNotFound:
        abort(404)
    except forms_service.FormAccessError as e:
        flash(str(e), "danger")
        return None


def _render_fill(form, values=None, file_urls: dict[str, str] | None = None, status: int = 200):
    return (
        render_template(
            "responses/fill.html",
            form=form,
            values=values if values is not None else MultiDict(),
            file_urls=file_urls or {},
        ),
        status,
    )


def _store_direct_uploads(s, form) -> tuple[dict[str, str], list[str]]:
    """
    Save files posted straight from the fill page (`upload-<question_id>` inputs).
    Returns (question_id -> public url, errors). Each stored file is audited and
    committed right away; the submission itself may still fail validation.
    """
    urls: dict[str, str] = {}
    errors: list[str] = []
    file_questions = [q for q in form.questions if q.type == forms_service.FILE_UPLOAD]
    if not file_questions:
        return urls, errors

    storage = storage_from_config(current_app.config)
    max_bytes = int(current_app.config.get("UPLOAD_MAX_BYTES") or DEFAULT_MAX_BYTES)
    for q in file_questions:
        f = request.files.get(f"upload-{q.id}")
        if f is None or not f.filename:
            continue
        try:
            stored = save_upload(storage, f, max_bytes=max_bytes)
        except UploadError as e:
            errors.append(f'"{q.label}": {e}')
            continue
        except (StorageError, OSError):
            current_app.logger.exception("Upload error (request_id=%s)", getattr(g, "request_id", None))
            errors.append(f'"{q.label}": Failed to upload file')
            continue
        urls[q.id] = stored.url
        record_event(
            s,
            actor=_current_user(),
            action="upload.create",
            entity_type="Upload",
            entity_id=stored.storage_key,
            metadata={"filename": stored.filename, "size_bytes": stored.size_bytes, "question_id": q.id},
        )
    if urls:
        s.commit()
    return urls, errors


def _render_detail(response, back_url: str):
    return render_template(
        "responses/detail.html",
        response=response,
        form=response.form,
        back_url=back_url,
        checkbox_values=checkbox_values,
    )


# ---------- Technician: fill ----------
@bp.get("/my-forms")
@require_permission("forms.fill")
def my_forms():
    s = db_session()
    u = _current_user()
    forms = forms_service.list_forms(s, u)
    submitted = {r.form_id for r in get_my_responses(s, u)}
    return render_template("responses/my_forms.html", forms=forms, submitted=submitted)


@bp.get("/my-forms/<form_id>")
@require_permission("forms.fill")
def fill_get(form_id: str):
    s = db_session()
    form = _load_fillable_form(s, form_id)
    if form is None:
        return redirect(url_for("responses.my_forms"))
    return _render_fill(form)


@bp.post("/my-forms/<form_id>")
@require_permission("forms.fill")
def fill_post(form_id: str):
    s = db_session()
    u = _current_user()
    form = _load_fillable_form(s, form_id)
    if form is None:
        return redirect(url_for("responses.my_forms"))

    file_urls, upload_errors = _store_direct_uploads(s, form)
    # Keep files from earlier attempts (hidden file-<id> fields) unless replaced.
    for q in form.questions:
        prev = (request.form.get(f"file-{q.id}") or "").strip()
        if prev and q.id not in file_urls:
            file_urls[q.id] = prev

    if upload_errors:
        for e in upload_errors:
            flash(e, "danger")
        return _render_fill(form, values=request.form, file_urls=file_urls, status=400)

    answers = parse_submission(form, request.form, file_urls)
    try:
        response = submit_response(s, form, u, answers)
    except SubmissionError as e:
        s.rollback()
        for msg in e.errors:
            flash(msg, "danger")
        return _render_fill(form, values=request.form, file_urls=file_urls, status=400)
    s.commit()
    current_app.logger.info("Response submitted form=%s user=%s response=%s", form.id, u.username, response.id)
    flash("Response submitted. Thank you!", "success")
    return redirect(url_for("responses.my_responses"))


@bp.get("/my-responses")
@require_permission("responses.own")
def my_responses():
    s = db_session()
    return render_template("responses/my_responses.html", responses=get_my_responses(s, _current_user()))


@bp.get("/my-responses/<response_id>")
@require_permission("responses.own")
def my_response_detail(response_id: str):
    s = db_session()
    u = _current_user()
    try:
        response = get_response(s, response_id, u)
    except ResponseNotFound:
        abort(404)
    except ResponseAccessError as e:
        flash(str(e), "danger")
        return redirect(url_for("responses.my_responses"))
    if response.user_id != u.id:
        abort(404)
    return _render_detail(response, url_for("responses.my_responses"))


# ---------- Managers: review ----------
@bp.get("/forms/<form_id>/responses")
@require_permission("responses.view")
def form_responses(form_id: str):
    s = db_session()
    try:
        form, responses = get_form_responses(s, form_id, _current_user())
    except forms_service.FormNotFound:
        abort(404)
    except ResponseAccessError as e:
        flash(str(e), "danger")
        return redirect(url_for("forms.forms_list"))
    return render_template("responses/list.html", form=form, responses=responses)


@bp.get("/forms/<form_id>/responses/<response_id>")
@require_permission("responses.view")
def form_response_detail(form_id: str, response_id: str):
    s = db_session()
    try:
        response = get_response(s, response_id, _current_user())
    except ResponseNotFound:
        abort(404)
    except ResponseAccessError as e:
        flash(str(e), "danger")
        return redirect(url_for("forms.forms_list"))
    if response.form_id != form_id:
        abort(404)
    return _render_detail(response, url_for("responses.form_responses", form_id=form_id))


@bp.get("/forms/<form_id>/export.csv")
@require_permission("responses.view")
def form_responses_export(form_id: str):
    s = db_session()
    u = _current_user()
    try:
        form, responses = get_form_responses(s, form_id, u)
    except forms_service.FormNotFound:
        abort(404)
    except ResponseAccessError as e:
        flash(str(e), "danger")
        return redirect(url_for("forms.forms_list"))

    record_event(
        s,
        actor=u,
        action="response.export",
        entity_type="Form",
        entity_id=form.id,
        metadata={"rows": len(responses)},
    )
    s.commit()
    data = export_responses_csv(form, responses)
    filename = f"responses-{form.id[:8]}.csv"
    return send_file(io.BytesIO(data), mimetype="text/csv", as_attachment=True, download_name=filename, max_age=0)
