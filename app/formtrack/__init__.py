import os
from datetime import timedelta

from flask import Flask, g, jsonify, render_template, request, session
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect

from app.formtrack.config import load_config
from app.formtrack.db import init_db, teardown_db_session
from app.formtrack.routes import bp as routes_bp
from app.formtrack.auth import bp as auth_bp, load_current_user
from app.formtrack.dashboard import bp as dashboard_bp
from app.formtrack.modules.users.admin import bp as users_bp
from app.formtrack.modules.sub_roles.admin import bp as sub_roles_bp
from app.formtrack.modules.forms.admin import bp as forms_bp
from app.formtrack.modules.responses.admin import bp as responses_bp
from app.formtrack.modules.analytics.admin import bp as analytics_bp
from app.formtrack.modules.uploads.admin import bp as uploads_bp

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."

# Tables the running code expects; checked once at startup.
EXPECTED_TABLES = ("users", "sub_roles", "forms", "questions", "responses", "answers", "audit_events")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=7)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    # CSRF protection (minimal)
    from app.formtrack.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.formtrack.rbac import ROLE_LABELS, user_has_permission
        from app.formtrack.modules.forms.service import QUESTION_TYPE_LABELS
        from flask import g as _g

        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(_g, "current_user", None), key)

        return {
            "has_perm": has_perm,
            "role_labels": ROLE_LABELS,
            "question_type_labels": QUESTION_TYPE_LABELS,
        }

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Allow safe auth endpoints to pass through (login/logout)
            if (request.endpoint or "").startswith("auth."):
                return None
            if request.path.startswith("/api/"):
                # anonymous API calls get the route's 401, not a CSRF error
                if not session.get("user_id"):
                    return None
                if not validate_csrf(request):
                    return jsonify({"error": "CSRF token missing or invalid"}), 400
                return None
            if not validate_csrf(request):
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            try:
                from app.formtrack.storage import storage_from_config, S3Storage

                storage = storage_from_config(app.config)
                if isinstance(storage, S3Storage):
                    storage._client().head_bucket(Bucket=storage.bucket)
                    app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
            except Exception as e:
                app.logger.error("STORAGE CONFIG ERROR: Cannot access S3 bucket: %s", e)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(dashboard_bp)
    app.register_blueprint(users_bp, url_prefix="/admin")
    app.register_blueprint(sub_roles_bp, url_prefix="/admin")
    app.register_blueprint(forms_bp)
    app.register_blueprint(responses_bp)
    app.register_blueprint(analytics_bp)
    app.register_blueprint(uploads_bp)

    def _load_user_wrapper():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Schema health (lean): warn when migrations have not been applied.
    app.config.setdefault("_schema_health_missing", [])
    try:
        insp = sa_inspect(app.extensions["sqlalchemy_engine"])
        missing = [t for t in EXPECTED_TABLES if not insp.has_table(t)]
        if missing:
            app.config["_schema_health_missing"] = missing
            app.logger.warning("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))
    except Exception as e:
        app.logger.exception("Schema health check failed: %s", e)

    def _back_to_referrer():
        from flask import redirect, url_for

        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("routes.index")), 302

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        s = getattr(g, "db_session", None)
        if s is not None:
            s.rollback()
        # Failed actions go back where they came from with a generic message.
        if request.method == "POST" and getattr(g, "current_user", None):
            from flask import flash

            flash(GENERIC_ERROR_MESSAGE, "danger")
            return _back_to_referrer()
        return render_template("errors/500.html", request_id=rid), 500

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return render_template("errors/404.html"), 404

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        from flask import flash

        limit_mb = int(app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        if request.path.startswith("/api/"):
            return jsonify({"error": f"Request exceeds {limit_mb}MB limit"}), 413
        flash(f"Upload too large. Maximum request size is {limit_mb}MB.", "danger")
        return _back_to_referrer()

    # Startup logging
    import logging
    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
