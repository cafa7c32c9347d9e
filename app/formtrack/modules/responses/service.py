from __future__ import annotations

import csv
import io
import json
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import TYPE_CHECKING, Any

from app.formtrack.audit import record_event
from app.formtrack.modules.forms import service as forms_service
from app.formtrack.modules.forms.models import Form, Question
from app.formtrack.modules.responses.models import Answer, Response
from app.formtrack.modules.uploads.service import PUBLIC_URL_PREFIX, is_valid_stored_name
from app.formtrack.rbac import ROLE_ADMIN, ROLE_TEKNISI, is_manager

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.formtrack.models import User


class SubmissionError(ValueError):
    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class ResponseAccessError(PermissionError):
    pass


class ResponseNotFound(LookupError):
    pass


@dataclass
class RawAnswer:
    value: str | list[str] | None = None
    file_url: str | None = None


def _is_blank(raw: RawAnswer | None) -> bool:
    if raw is None:
        return True
    if isinstance(raw.value, list):
        has_value = any((v or "").strip() for v in raw.value)
    else:
        has_value = bool((raw.value or "").strip())
    return not has_value and not (raw.file_url or "").strip()


def _int_in_range(raw: str, lo: int, hi: int, label: str) -> tuple[str | None, str | None]:
    try:
        n = int(raw)
    except ValueError:
        return None, f'"{label}" must be a whole number.'
    if not (lo <= n <= hi):
        return None, f'"{label}" must be between {lo} and {hi}.'
    return str(n), None


def scale_bounds(q: Question) -> tuple[int, int]:
    lo = q.scale_min if q.scale_min is not None else forms_service.DEFAULT_SCALE_MIN
    hi = q.scale_max if q.scale_max is not None else forms_service.DEFAULT_SCALE_MAX
    return lo, hi


def rating_bounds(q: Question) -> tuple[int, int]:
    return 1, (q.rating_max or forms_service.DEFAULT_RATING_MAX)


def normalize_answer(q: Question, raw: RawAnswer) -> tuple[tuple[str | None, str | None] | None, str | None]:
    """
    Validate a non-blank answer against its question.
    Returns ((value, file_url), None) or (None, error message).
    """
    label = q.label
    options = q.options or []

    if q.type == forms_service.FILE_UPLOAD:
        url = (raw.file_url or "").strip()
        name = url[len(PUBLIC_URL_PREFIX):] if url.startswith(PUBLIC_URL_PREFIX) else ""
        if not is_valid_stored_name(name):
            return None, f'"{label}" has an invalid file reference.'
        return (None, url), None

    if q.type == forms_service.CHECKBOXES:
        values = raw.value if isinstance(raw.value, list) else [raw.value or ""]
        picked: list[str] = []
        for v in values:
            v = (v or "").strip()
            if not v:
                continue
            if v not in options:
                return None, f'"{label}": {v!r} is not one of the options.'
            if v not in picked:
                picked.append(v)
        return (json.dumps(picked), None), None

    value = raw.value[0] if isinstance(raw.value, list) else raw.value
    value = (value or "").strip()

    if q.type in (forms_service.MULTIPLE_CHOICE, forms_service.DROPDOWN):
        if value not in options:
            return None, f'"{label}": {value!r} is not one of the options.'
        return (value, None), None

    if q.type == forms_service.DATE:
        try:
            return (date.fromisoformat(value).isoformat(), None), None
        except ValueError:
            return None, f'"{label}" must be a date (YYYY-MM-DD).'

    if q.type == forms_service.TIME:
        try:
            return (time.fromisoformat(value).strftime("%H:%M"), None), None
        except ValueError:
            return None, f'"{label}" must be a time (HH:MM).'

    if q.type == forms_service.DATETIME:
        try:
            return (datetime.fromisoformat(value).strftime("%Y-%m-%dT%H:%M"), None), None
        except ValueError:
            return None, f'"{label}" must be a date and time.'

    if q.type == forms_service.LINEAR_SCALE:
        lo, hi = scale_bounds(q)
        v, err = _int_in_range(value, lo, hi, label)
        return ((v, None), None) if err is None else (None, err)

    if q.type == forms_service.RATING:
        lo, hi = rating_bounds(q)
        v, err = _int_in_range(value, lo, hi, label)
        return ((v, None), None) if err is None else (None, err)

    # short_text / paragraph
    return (value, None), None


def submit_response(s: "Session", form: Form, user: "User", answers: dict[str, RawAnswer]) -> Response:
    """
    Validate and persist one submission. Blank answers are not stored;
    answers keyed by unknown question ids are ignored.
    """
    if not form.is_active:
        raise SubmissionError(["This form is not active."])
    if user.role == ROLE_TEKNISI and not forms_service.can_fill_form(user, form):
        raise SubmissionError(["This form is not available to you."])

    errors: list[str] = []
    rows: list[tuple[Question, str | None, str | None]] = []
    for q in form.questions:
        raw = answers.get(q.id)
        if _is_blank(raw):
            if q.required:
                errors.append(f'Question "{q.label}" is required.')
            continue
        normalized, err = normalize_answer(q, raw)  # type: ignore[arg-type]
        if err:
            errors.append(err)
            continue
        value, file_url = normalized  # type: ignore[misc]
        if q.type == forms_service.CHECKBOXES and value == "[]":
            if q.required:
                errors.append(f'Question "{q.label}" is required.')
            continue
        rows.append((q, value, file_url))

    if errors:
        raise SubmissionError(errors)

    response = Response(form_id=form.id, user_id=user.id, submitted_at=datetime.utcnow())
    for q, value, file_url in rows:
        response.answers.append(Answer(question_id=q.id, value=value, file_url=file_url))
    s.add(response)
    s.flush()

    record_event(
        s,
        actor=user,
        action="response.submit",
        entity_type="Response",
        entity_id=response.id,
        metadata={"form_id": form.id, "answers": len(rows)},
    )
    return response


def get_form_responses(s: "Session", form_id: str, user: "User") -> tuple[Form, list[Response]]:
    if not is_manager(user):
        raise ResponseAccessError("Only admins can view form responses.")
    try:
        form = forms_service.get_form(s, form_id, user)
    except forms_service.FormAccessError as e:
        raise ResponseAccessError(str(e)) from e
    responses = (
        s.query(Response)
        .filter(Response.form_id == form.id)
        .order_by(Response.submitted_at.desc())
        .all()
    )
    return form, responses


def get_my_responses(s: "Session", user: "User") -> list[Response]:
    return (
        s.query(Response)
        .filter(Response.user_id == user.id)
        .order_by(Response.submitted_at.desc())
        .all()
    )


def get_response(s: "Session", response_id: str, user: "User") -> Response:
    response = s.get(Response, response_id)
    if not response:
        raise ResponseNotFound("Response not found.")
    if user.role == ROLE_TEKNISI and response.user_id != user.id:
        raise ResponseAccessError("You can only view your own submissions.")
    if user.role == ROLE_ADMIN and response.form.created_by_id != user.id:
        raise ResponseAccessError("You do not have access to this response.")
    return response


def checkbox_values(answer: Answer | None) -> list[str]:
    if not answer or not answer.value:
        return []
    try:
        values = json.loads(answer.value)
    except (TypeError, ValueError):
        return [answer.value]
    if not isinstance(values, list):
        return [str(values)]
    return [str(v) for v in values]


def answer_text(q: Question, answer: Answer | None) -> str:
    """Flat text rendering of an answer (CSV export and plain listings)."""
    if answer is None:
        return ""
    if q.type == forms_service.FILE_UPLOAD:
        return answer.file_url or ""
    if q.type == forms_service.CHECKBOXES:
        return "; ".join(checkbox_values(answer))
    return answer.value or ""


def export_responses_csv(form: Form, responses: list[Response]) -> bytes:
    out = io.StringIO()
    w = csv.writer(out)
    questions = list(form.questions)
    w.writerow(["Submitted At", "Name", "Username"] + [q.label for q in questions])
    for r in responses:
        row: list[Any] = [
            r.submitted_at.strftime("%Y-%m-%d %H:%M"),
            (r.user.name if r.user else "") or "",
            r.user.username if r.user else "",
        ]
        row.extend(answer_text(q, r.answer_for(q.id)) for q in questions)
        w.writerow(row)
    return out.getvalue().encode("utf-8")


def parse_submission(form: Form, data, files_urls: dict[str, str] | None = None) -> dict[str, RawAnswer]:
    """
    Map the fill page's `answer-<question_id>` fields (a werkzeug MultiDict or plain
    dict) to RawAnswer objects. `files_urls` carries files already stored by the route.
    """
    files_urls = files_urls or {}
    answers: dict[str, RawAnswer] = {}
    for q in form.questions:
        key = f"answer-{q.id}"
        if q.type == forms_service.CHECKBOXES:
            if hasattr(data, "getlist"):
                value: str | list[str] | None = data.getlist(key)
            else:
                raw = data.get(key)
                value = raw if isinstance(raw, list) else ([raw] if raw else [])
        else:
            value = data.get(key)
        file_url = files_urls.get(q.id) or data.get(f"file-{q.id}")
        answers[q.id] = RawAnswer(value=value, file_url=file_url)
    return answers
