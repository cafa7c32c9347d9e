"""
Form builder service: question schema, payload parsing/validation, CRUD and
role-based visibility.

Route handlers pass request data in as plain dicts; everything here works on a
SQLAlchemy session and never touches the request.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.formtrack.audit import record_event
from app.formtrack.models import SubRole
from app.formtrack.modules.forms.models import Form, Question
from app.formtrack.rbac import ROLE_ADMIN, ROLE_SUPERADMIN, ROLE_TEKNISI

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.formtrack.models import User


SHORT_TEXT = "short_text"
PARAGRAPH = "paragraph"
MULTIPLE_CHOICE = "multiple_choice"
CHECKBOXES = "checkboxes"
DROPDOWN = "dropdown"
DATE = "date"
TIME = "time"
DATETIME = "datetime"
FILE_UPLOAD = "file_upload"
LINEAR_SCALE = "linear_scale"
RATING = "rating"

QUESTION_TYPES = (
    SHORT_TEXT,
    PARAGRAPH,
    MULTIPLE_CHOICE,
    CHECKBOXES,
    DROPDOWN,
    DATE,
    TIME,
    DATETIME,
    FILE_UPLOAD,
    LINEAR_SCALE,
    RATING,
)

QUESTION_TYPE_LABELS = {
    SHORT_TEXT: "Short text",
    PARAGRAPH: "Paragraph",
    MULTIPLE_CHOICE: "Multiple choice",
    CHECKBOXES: "Checkboxes",
    DROPDOWN: "Dropdown",
    DATE: "Date",
    TIME: "Time",
    DATETIME: "Date & time",
    FILE_UPLOAD: "File upload",
    LINEAR_SCALE: "Linear scale",
    RATING: "Rating",
}

CHOICE_TYPES = frozenset({MULTIPLE_CHOICE, CHECKBOXES, DROPDOWN})
NUMERIC_TYPES = frozenset({LINEAR_SCALE, RATING})

DEFAULT_SCALE_MIN = 1
DEFAULT_SCALE_MAX = 5
DEFAULT_RATING_MAX = 5
SCALE_MIN_CHOICES = (0, 1)
SCALE_MAX_RANGE = (2, 10)
RATING_MAX_RANGE = (1, 10)

_QUESTION_FIELD_RE = re.compile(r"^questions-(\d+)-([a-z_]+)$")


class FormValidationError(ValueError):
    """Builder payload rejected; carries every message so the page can show them all."""

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class FormAccessError(PermissionError):
    pass


class FormNotFound(LookupError):
    pass


@dataclass
class QuestionPayload:
    type: str
    label: str
    order: int
    id: str | None = None
    description: str | None = None
    options: list[str] | None = None
    required: bool = False
    scale_min: int | None = None
    scale_max: int | None = None
    scale_min_label: str | None = None
    scale_max_label: str | None = None
    rating_max: int | None = None


@dataclass
class FormPayload:
    title: str
    description: str | None = None
    sub_role_id: str | None = None
    is_active: bool = True
    questions: list[QuestionPayload] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _clean(value: Any) -> str | None:
    s = (str(value) if value is not None else "").strip()
    return s or None


def _to_int(value: Any, field_label: str, errors: list[str]) -> int | None:
    s = _clean(value)
    if s is None:
        return None
    try:
        return int(s)
    except ValueError:
        errors.append(f"{field_label} must be a whole number.")
        return None


def _truthy(value: Any) -> bool:
    return (str(value or "").strip().lower()) in ("1", "true", "on", "yes")


def parse_options(raw: Any) -> list[str]:
    """Options arrive either as a list or as newline-separated text."""
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(x) for x in raw]
    else:
        items = str(raw).splitlines()
    return [i.strip() for i in items if i and i.strip()]


def group_question_fields(data: dict[str, Any]) -> list[dict[str, Any]]:
    """
    Collect `questions-<n>-<field>` keys into one dict per question,
    ordered by <n>. Gaps in the numbering are fine (removed rows).
    """
    rows: dict[int, dict[str, Any]] = {}
    for key, value in data.items():
        m = _QUESTION_FIELD_RE.match(key)
        if not m:
            continue
        idx, name = int(m.group(1)), m.group(2)
        rows.setdefault(idx, {})[name] = value
    return [rows[i] for i in sorted(rows)]


def parse_form_payload(data: dict[str, Any]) -> FormPayload:
    """Build a FormPayload from flat builder fields; raises FormValidationError."""
    errors: list[str] = []
    title = _clean(data.get("title"))
    if not title:
        errors.append("Form title is required.")

    sub_role_id = _clean(data.get("sub_role_id"))
    if sub_role_id == "all":
        sub_role_id = None

    raw_questions = data.get("questions")
    if raw_questions is None:
        raw_questions = group_question_fields(data)

    questions: list[QuestionPayload] = []
    for position, raw in enumerate(raw_questions):
        q, q_errors = parse_question(raw, order=position, number=position + 1)
        errors.extend(q_errors)
        if q is not None:
            questions.append(q)

    if not raw_questions:
        errors.append("A form needs at least one question.")

    if errors:
        raise FormValidationError(errors)

    return FormPayload(
        title=title or "",
        description=_clean(data.get("description")),
        sub_role_id=sub_role_id,
        is_active=_truthy(data.get("is_active")) if "is_active" in data else True,
        questions=questions,
    )


def parse_question(raw: dict[str, Any], *, order: int, number: int) -> tuple[QuestionPayload | None, list[str]]:
    """
    Validate one question row. Config that does not belong to the type is dropped,
    missing scale/rating config gets the builder defaults.
    """
    errors: list[str] = []
    prefix = f"Question {number}"

    qtype = _clean(raw.get("type")) or ""
    if qtype not in QUESTION_TYPES:
        errors.append(f"{prefix}: unknown question type {qtype!r}.")
        return None, errors

    label = _clean(raw.get("label"))
    if not label:
        errors.append(f"{prefix}: label is required.")

    required = raw.get("required")
    q = QuestionPayload(
        id=_clean(raw.get("id")),
        type=qtype,
        label=label or "",
        order=order,
        description=_clean(raw.get("description")),
        required=required if isinstance(required, bool) else _truthy(required),
    )

    if qtype in CHOICE_TYPES:
        options = parse_options(raw.get("options"))
        if not options:
            errors.append(f"{prefix}: add at least one option.")
        lowered = [o.lower() for o in options]
        if len(set(lowered)) != len(lowered):
            errors.append(f"{prefix}: options must be unique.")
        q.options = options

    elif qtype == LINEAR_SCALE:
        smin = _to_int(raw.get("scale_min"), f"{prefix}: scale minimum", errors)
        smax = _to_int(raw.get("scale_max"), f"{prefix}: scale maximum", errors)
        smin = DEFAULT_SCALE_MIN if smin is None else smin
        smax = DEFAULT_SCALE_MAX if smax is None else smax
        if smin not in SCALE_MIN_CHOICES:
            errors.append(f"{prefix}: scale minimum must be 0 or 1.")
        if not (SCALE_MAX_RANGE[0] <= smax <= SCALE_MAX_RANGE[1]):
            errors.append(f"{prefix}: scale maximum must be between {SCALE_MAX_RANGE[0]} and {SCALE_MAX_RANGE[1]}.")
        if smin >= smax:
            errors.append(f"{prefix}: scale minimum must be lower than the maximum.")
        q.scale_min = smin
        q.scale_max = smax
        q.scale_min_label = _clean(raw.get("scale_min_label"))
        q.scale_max_label = _clean(raw.get("scale_max_label"))

    elif qtype == RATING:
        rmax = _to_int(raw.get("rating_max"), f"{prefix}: rating maximum", errors)
        rmax = DEFAULT_RATING_MAX if rmax is None else rmax
        if not (RATING_MAX_RANGE[0] <= rmax <= RATING_MAX_RANGE[1]):
            errors.append(f"{prefix}: rating maximum must be between {RATING_MAX_RANGE[0]} and {RATING_MAX_RANGE[1]}.")
        q.rating_max = rmax

    return (None if errors else q), errors


# ---------------------------------------------------------------------------
# Visibility
# ---------------------------------------------------------------------------

def visible_forms_query(s: "Session", user: "User"):
    """Forms the user may see in listings (role-based filter)."""
    q = s.query(Form)
    if user.role == ROLE_SUPERADMIN:
        return q
    if user.role == ROLE_ADMIN:
        return q.filter(Form.created_by_id == user.id)
    if user.role == ROLE_TEKNISI:
        target = Form.sub_role_id.is_(None)
        if user.sub_role_id:
            target = or_(target, Form.sub_role_id == user.sub_role_id)
        return q.filter(Form.is_active.is_(True)).filter(target)
    return q.filter(False)


def can_manage_form(user: "User", form: Form) -> bool:
    if user.role == ROLE_SUPERADMIN:
        return True
    if user.role == ROLE_ADMIN:
        return form.created_by_id == user.id
    return False


def can_fill_form(user: "User", form: Form) -> bool:
    if user.role != ROLE_TEKNISI or not form.is_active:
        return False
    return form.sub_role_id is None or form.sub_role_id == user.sub_role_id


def get_form(s: "Session", form_id: str, user: "User") -> Form:
    """Load a form, enforcing the reader's visibility rules."""
    form = s.get(Form, form_id)
    if not form:
        raise FormNotFound("Form not found.")
    if user.role == ROLE_TEKNISI:
        if not can_fill_form(user, form):
            raise FormAccessError("This form is not available to you.")
    elif not can_manage_form(user, form):
        raise FormAccessError("You do not have access to this form.")
    return form


def list_forms(s: "Session", user: "User") -> list[Form]:
    return visible_forms_query(s, user).order_by(Form.created_at.desc()).all()


def list_forms_with_counts(s: "Session") -> list[tuple[Form, int]]:
    """Superadmin overview: every form with its response count."""
    from app.formtrack.modules.responses.models import Response

    counts = dict(
        s.query(Response.form_id, func.count(Response.id)).group_by(Response.form_id).all()
    )
    forms = s.query(Form).order_by(Form.created_at.desc()).all()
    return [(f, int(counts.get(f.id, 0))) for f in forms]


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

def _check_sub_role(s: "Session", sub_role_id: str | None) -> None:
    if sub_role_id and not s.get(SubRole, sub_role_id):
        raise FormValidationError(["Selected sub-role does not exist."])


def _apply_question(q: Question, p: QuestionPayload) -> None:
    q.type = p.type
    q.label = p.label
    q.description = p.description
    q.options = list(p.options) if p.options is not None else None
    q.required = p.required
    q.order = p.order
    q.scale_min = p.scale_min
    q.scale_max = p.scale_max
    q.scale_min_label = p.scale_min_label
    q.scale_max_label = p.scale_max_label
    q.rating_max = p.rating_max


def create_form(s: "Session", payload: FormPayload, user: "User") -> Form:
    _check_sub_role(s, payload.sub_role_id)
    now = datetime.utcnow()
    form = Form(
        title=payload.title,
        description=payload.description,
        sub_role_id=payload.sub_role_id,
        created_by_id=user.id,
        is_active=payload.is_active,
        created_at=now,
        updated_at=now,
    )
    for p in payload.questions:
        q = Question()
        _apply_question(q, p)
        form.questions.append(q)
    s.add(form)
    s.flush()

    record_event(
        s,
        actor=user,
        action="form.create",
        entity_type="Form",
        entity_id=form.id,
        metadata={"title": form.title, "sub_role_id": form.sub_role_id, "questions": len(form.questions)},
    )
    return form


def update_form(s: "Session", form: Form, payload: FormPayload, user: "User") -> Form:
    """
    Update form fields and reconcile questions: rows carrying a known id are
    updated in place (keeping their answers), others are inserted, and existing
    questions missing from the payload are removed along with their answers.
    """
    if not can_manage_form(user, form):
        raise FormAccessError("You do not have access to this form.")
    _check_sub_role(s, payload.sub_role_id)

    form.title = payload.title
    form.description = payload.description
    form.sub_role_id = payload.sub_role_id
    form.is_active = payload.is_active
    form.updated_at = datetime.utcnow()

    existing = {q.id: q for q in form.questions}
    kept: list[Question] = []
    for p in payload.questions:
        q = existing.pop(p.id, None) if p.id else None
        if q is None:
            q = Question()
        _apply_question(q, p)
        kept.append(q)
    form.questions = kept
    s.flush()

    record_event(
        s,
        actor=user,
        action="form.update",
        entity_type="Form",
        entity_id=form.id,
        metadata={"title": form.title, "questions": len(kept), "removed_questions": len(existing)},
    )
    return form


def delete_form(s: "Session", form: Form, user: "User") -> None:
    if not can_manage_form(user, form):
        raise FormAccessError("You do not have access to this form.")
    record_event(
        s,
        actor=user,
        action="form.delete",
        entity_type="Form",
        entity_id=form.id,
        metadata={"title": form.title},
    )
    s.delete(form)


def toggle_form_status(s: "Session", form: Form, user: "User") -> Form:
    if not can_manage_form(user, form):
        raise FormAccessError("You do not have access to this form.")
    form.is_active = not form.is_active
    form.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="form.toggle_status",
        entity_type="Form",
        entity_id=form.id,
        metadata={"is_active": form.is_active},
    )
    return form


def question_to_builder_row(q: Question) -> dict[str, Any]:
    """Shape a stored question the way the builder template expects its row."""
    return {
        "id": q.id,
        "type": q.type,
        "label": q.label,
        "description": q.description or "",
        "options": "\n".join(q.options or []),
        "required": q.required,
        "scale_min": q.scale_min if q.scale_min is not None else DEFAULT_SCALE_MIN,
        "scale_max": q.scale_max if q.scale_max is not None else DEFAULT_SCALE_MAX,
        "scale_min_label": q.scale_min_label or "",
        "scale_max_label": q.scale_max_label or "",
        "rating_max": q.rating_max if q.rating_max is not None else DEFAULT_RATING_MAX,
    }


def blank_builder_row(qtype: str = SHORT_TEXT) -> dict[str, Any]:
    return {
        "id": "",
        "type": qtype,
        "label": "",
        "description": "",
        "options": "Option 1" if qtype in CHOICE_TYPES else "",
        "required": False,
        "scale_min": DEFAULT_SCALE_MIN,
        "scale_max": DEFAULT_SCALE_MAX,
        "scale_min_label": "",
        "scale_max_label": "",
        "rating_max": DEFAULT_RATING_MAX,
    }
