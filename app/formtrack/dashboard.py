from datetime import date, datetime, time, timedelta

from flask import Blueprint, flash, g, render_template, request
from sqlalchemy import func, or_

from app.formtrack.db import db_session
from app.formtrack.models import AuditEvent, SubRole, User
from app.formtrack.modules.forms.models import Form
from app.formtrack.modules.responses.models import Response
from app.formtrack.rbac import ROLE_ADMIN, ROLE_SUPERADMIN, require_permission

bp = Blueprint("dashboard", __name__)


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def _count(s, model, *criteria) -> int:
    q = s.query(func.count(model.id))
    for c in criteria:
        q = q.filter(c)
    return int(q.scalar() or 0)


def dashboard_stats(s, user: User) -> list[dict]:
    """Summary cards for the landing page; the set depends on the role."""
    if user.role == ROLE_SUPERADMIN:
        return [
            {"title": "Total users", "value": _count(s, User), "description": "Registered accounts"},
            {"title": "Total forms", "value": _count(s, Form), "description": "Forms created"},
            {"title": "Total responses", "value": _count(s, Response), "description": "Submissions received"},
            {"title": "Sub-roles", "value": _count(s, SubRole), "description": "Technician specialisations"},
        ]
    if user.role == ROLE_ADMIN:
        my_forms = _count(s, Form, Form.created_by_id == user.id)
        responses = int(
            s.query(func.count(Response.id))
            .join(Form, Form.id == Response.form_id)
            .filter(Form.created_by_id == user.id)
            .scalar()
            or 0
        )
        return [
            {"title": "My forms", "value": my_forms, "description": "Forms you created"},
            {"title": "Total responses", "value": responses, "description": "Responses to your forms"},
        ]

    target = Form.sub_role_id.is_(None)
    if user.sub_role_id:
        target = or_(target, Form.sub_role_id == user.sub_role_id)
    available = _count(s, Form, Form.is_active.is_(True), target)
    mine = _count(s, Response, Response.user_id == user.id)
    sub_role_name = user.sub_role.name if user.sub_role else "you"
    return [
        {"title": "Available forms", "value": available, "description": f"For {sub_role_name}"},
        {"title": "My submissions", "value": mine, "description": "Forms you have filled in"},
    ]


@bp.get("/dashboard")
@require_permission("dashboard.view")
def index():
    s = db_session()
    user = g.current_user
    return render_template("dashboard/index.html", stats=dashboard_stats(s, user))


@bp.get("/admin/audit")
@require_permission("audit.view")
def audit_list():
    """
    Audit trail (last 200 events) with simple filters:
    - action (contains)
    - actor (contains)
    - date range (YYYY-MM-DD)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor = (request.args.get("actor") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor:
        q = q.filter(AuditEvent.actor_username.like(f"%{actor}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return render_template(
        "admin/audit/list.html",
        events=events,
        action=action,
        actor=actor,
        date_from=request.args.get("date_from") or "",
        date_to=request.args.get("date_to") or "",
    )
