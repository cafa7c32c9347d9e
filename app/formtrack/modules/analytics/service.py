"""
Per-question statistics for the analytics page.

Three shapes, keyed by `kind`:
- "options": count per configured option (multiple_choice, dropdown, checkboxes)
- "numeric": average + full-range distribution (rating, linear_scale)
- "text":    number of stored answers (everything else)
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from app.formtrack.modules.forms import service as forms_service
from app.formtrack.modules.forms.models import Form, Question
from app.formtrack.modules.responses.models import Answer, Response
from app.formtrack.modules.responses.service import get_form_responses

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.formtrack.models import User

# Distribution ranges when the question carries no config of its own.
STATS_RATING_MAX = 5
STATS_SCALE_MIN = 1
STATS_SCALE_MAX = 10


@dataclass
class Bucket:
    name: str
    value: int
    percent: float = 0.0


@dataclass
class QuestionStats:
    question: Question
    kind: str
    data: list[Bucket] = field(default_factory=list)
    average: float = 0.0
    count: int = 0

    @property
    def total(self) -> int:
        if self.kind == "text":
            return self.count
        return sum(b.value for b in self.data)


@dataclass
class FormStatistics:
    form: Form
    total_responses: int
    question_stats: list[QuestionStats]


def _with_percent(buckets: list[Bucket]) -> list[Bucket]:
    total = sum(b.value for b in buckets)
    for b in buckets:
        b.percent = round(b.value / total * 100, 1) if total else 0.0
    return buckets


def option_stats(q: Question, answers: list[Answer]) -> QuestionStats:
    counts: dict[str, int] = {opt: 0 for opt in (q.options or [])}
    for a in answers:
        if not a.value:
            continue
        if q.type == forms_service.CHECKBOXES:
            try:
                values = json.loads(a.value)
            except ValueError:
                continue
            if not isinstance(values, list):
                continue
            for v in values:
                if v in counts:
                    counts[v] += 1
        elif a.value in counts:
            counts[a.value] += 1
    buckets = [Bucket(name=k, value=v) for k, v in counts.items()]
    return QuestionStats(question=q, kind="options", data=_with_percent(buckets))


def numeric_stats(q: Question, answers: list[Answer]) -> QuestionStats:
    values: list[int] = []
    for a in answers:
        if not a.value:
            continue
        try:
            values.append(int(a.value))
        except ValueError:
            continue

    average = round(sum(values) / len(values), 2) if values else 0.0

    if q.type == forms_service.RATING:
        lo, hi = 1, (q.rating_max or STATS_RATING_MAX)
    else:
        lo = q.scale_min if q.scale_min is not None else STATS_SCALE_MIN
        hi = q.scale_max or STATS_SCALE_MAX

    distribution = {i: 0 for i in range(lo, hi + 1)}
    for v in values:
        if v in distribution:
            distribution[v] += 1
    buckets = [Bucket(name=str(k), value=v) for k, v in distribution.items()]
    return QuestionStats(question=q, kind="numeric", data=_with_percent(buckets), average=average)


def question_stats(q: Question, answers: list[Answer]) -> QuestionStats:
    if q.type in forms_service.CHOICE_TYPES:
        return option_stats(q, answers)
    if q.type in forms_service.NUMERIC_TYPES:
        return numeric_stats(q, answers)
    return QuestionStats(question=q, kind="text", count=len(answers))


def compute_statistics(form: Form, responses: list[Response]) -> FormStatistics:
    by_question: dict[str, list[Answer]] = {q.id: [] for q in form.questions}
    for r in responses:
        for a in r.answers:
            if a.question_id in by_question:
                by_question[a.question_id].append(a)
    stats = [question_stats(q, by_question[q.id]) for q in form.questions]
    return FormStatistics(form=form, total_responses=len(responses), question_stats=stats)


def get_form_statistics(s: "Session", form_id: str, user: "User") -> FormStatistics:
    form, responses = get_form_responses(s, form_id, user)
    return compute_statistics(form, responses)
