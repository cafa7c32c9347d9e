from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.formtrack.models import Base, User, new_id
from app.formtrack.modules.forms.models import Form, Question


class Response(Base):
    """One submission of a form by a user."""

    __tablename__ = "responses"
    __table_args__ = (
        Index("idx_responses_form", "form_id"),
        Index("idx_responses_user", "user_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    form_id: Mapped[str] = mapped_column(ForeignKey("forms.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    form: Mapped[Form] = relationship(back_populates="responses", lazy="selectin")
    user: Mapped[User] = relationship(lazy="selectin")
    answers: Mapped[list["Answer"]] = relationship(
        back_populates="response",
        cascade="all, delete-orphan",
        lazy="selectin",
        passive_deletes=True,
    )

    def answer_for(self, question_id: str) -> "Answer | None":
        for a in self.answers:
            if a.question_id == question_id:
                return a
        return None


class Answer(Base):
    __tablename__ = "answers"
    __table_args__ = (
        Index("idx_answers_response", "response_id"),
        Index("idx_answers_question", "question_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    response_id: Mapped[str] = mapped_column(ForeignKey("responses.id", ondelete="CASCADE"), nullable=False)
    question_id: Mapped[str] = mapped_column(ForeignKey("questions.id", ondelete="CASCADE"), nullable=False)

    # Plain text for most types; JSON array string for checkboxes.
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_url: Mapped[str | None] = mapped_column(String(512), nullable=True)

    response: Mapped[Response] = relationship(back_populates="answers", lazy="selectin")
    question: Mapped[Question] = relationship(lazy="selectin")
