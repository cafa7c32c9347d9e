from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import current_app, flash, g, redirect, request, url_for

from app.formtrack.models import User

ROLE_SUPERADMIN = "superadmin"
ROLE_ADMIN = "admin"
ROLE_TEKNISI = "teknisi"
ROLES = (ROLE_SUPERADMIN, ROLE_ADMIN, ROLE_TEKNISI)

ROLE_LABELS = {
    ROLE_SUPERADMIN: "Super Admin",
    ROLE_ADMIN: "Admin",
    ROLE_TEKNISI: "Teknisi",
}

# Role string -> permission keys. Roles are fixed; there is no role table.
ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    ROLE_SUPERADMIN: frozenset(
        {
            "dashboard.view",
            "users.manage",
            "sub_roles.manage",
            "forms.manage",
            "forms.overview",
            "responses.view",
            "responses.own",
            "analytics.view",
            "audit.view",
            "uploads.create",
        }
    ),
    ROLE_ADMIN: frozenset(
        {
            "dashboard.view",
            "forms.manage",
            "responses.view",
            "responses.own",
            "analytics.view",
            "uploads.create",
        }
    ),
    ROLE_TEKNISI: frozenset(
        {
            "dashboard.view",
            "forms.fill",
            "responses.own",
            "uploads.create",
        }
    ),
}


def is_manager(user: User | None) -> bool:
    """superadmin or admin: can build forms and read responses."""
    return bool(user and user.role in (ROLE_SUPERADMIN, ROLE_ADMIN))


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    return permission_key in ROLE_PERMISSIONS.get(user.role, frozenset())


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → redirect to login.
            if not user or not user.is_active:
                nxt = request.full_path or request.path
                # Avoid trailing '?' from full_path when there is no query string.
                if nxt.endswith("?"):
                    nxt = nxt[:-1]
                return redirect(url_for("auth.login_get", next=nxt))
            # Authenticated but unauthorized → back to the dashboard.
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                current_app.logger.warning(
                    "Forbidden: user=%s role=%s missing_permission=%s request_id=%s",
                    user.username,
                    user.role,
                    permission_key,
                    getattr(g, "request_id", None),
                )
                flash("You do not have access to that page.", "danger")
                return redirect(url_for("dashboard.index"))
            return fn(*args, **kwargs)

        return wrapped

    return decorator
