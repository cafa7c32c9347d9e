from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, url_for

from app.formtrack.db import db_session
from app.formtrack.modules.analytics.service import get_form_statistics
from app.formtrack.modules.forms.service import FormNotFound
from app.formtrack.modules.responses.service import ResponseAccessError
from app.formtrack.rbac import require_permission

bp = Blueprint("analytics", __name__)


@bp.get("/forms/<form_id>/analytics")
@require_permission("analytics.view")
def form_analytics(form_id: str):
    s = db_session()
    try:
        stats = get_form_statistics(s, form_id, g.current_user)
    except FormNotFound:
        abort(404)
    except ResponseAccessError as e:
        flash(str(e), "danger")
        return redirect(url_for("forms.forms_list"))
    return render_template("analytics/form.html", stats=stats, form=stats.form)
