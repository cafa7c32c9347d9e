from __future__ import annotations

import mimetypes

from flask import Blueprint, abort, current_app, g, jsonify, request, send_file

from app.formtrack.audit import record_event
from app.formtrack.db import db_session
from app.formtrack.modules.uploads.service import (
    DEFAULT_MAX_BYTES,
    UploadError,
    is_valid_stored_name,
    save_upload,
    storage_key_for,
)
from app.formtrack.rbac import require_permission, user_has_permission
from app.formtrack.storage import StorageError, storage_from_config

bp = Blueprint("uploads", __name__)


@bp.post("/api/upload")
def upload_api():
    user = getattr(g, "current_user", None)
    if not user_has_permission(user, "uploads.create"):
        return jsonify({"error": "Unauthorized"}), 401

    storage = storage_from_config(current_app.config)
    max_bytes = int(current_app.config.get("UPLOAD_MAX_BYTES") or DEFAULT_MAX_BYTES)
    try:
        stored = save_upload(storage, request.files.get("file"), max_bytes=max_bytes)
    except UploadError as e:
        return jsonify({"error": str(e)}), 400
    except (StorageError, OSError):
        current_app.logger.exception("Upload error (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "Failed to upload file"}), 500

    s = db_session()
    record_event(
        s,
        actor=user,
        action="upload.create",
        entity_type="Upload",
        entity_id=stored.storage_key,
        metadata={"filename": stored.filename, "size_bytes": stored.size_bytes},
    )
    s.commit()
    return jsonify({"url": stored.url, "filename": stored.filename})


@bp.get("/uploads/<name>")
@require_permission("dashboard.view")
def uploaded_file(name: str):
    if not is_valid_stored_name(name):
        abort(404)
    storage = storage_from_config(current_app.config)
    key = storage_key_for(name)
    if not storage.exists(key):
        abort(404)
    mimetype = mimetypes.guess_type(name)[0] or "application/octet-stream"
    return send_file(storage.open(key), mimetype=mimetype, download_name=name, max_age=0)
