from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.formtrack.models import Base, SubRole, User, new_id

if TYPE_CHECKING:
    from app.formtrack.modules.responses.models import Response


class Form(Base):
    __tablename__ = "forms"
    __table_args__ = (
        Index("idx_forms_sub_role", "sub_role_id"),
        Index("idx_forms_created_by", "created_by_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # NULL target = visible to every technician
    sub_role_id: Mapped[str | None] = mapped_column(ForeignKey("sub_roles.id", ondelete="SET NULL"), nullable=True)
    created_by_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    sub_role: Mapped[SubRole | None] = relationship(back_populates="forms", lazy="selectin")
    created_by: Mapped[User] = relationship(lazy="selectin")

    questions: Mapped[list["Question"]] = relationship(
        back_populates="form",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Question.order",
        passive_deletes=True,
    )
    responses: Mapped[list["Response"]] = relationship(
        back_populates="form",
        cascade="all, delete-orphan",
        lazy="select",
        passive_deletes=True,
    )

    @property
    def required_count(self) -> int:
        return sum(1 for q in self.questions if q.required)


class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        Index("idx_questions_form_order", "form_id", "order"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    form_id: Mapped[str] = mapped_column(ForeignKey("forms.id", ondelete="CASCADE"), nullable=False)

    type: Mapped[str] = mapped_column(String(32), nullable=False)
    label: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    options: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)  # choice types only
    required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False)

    # linear_scale
    scale_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    scale_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    scale_min_label: Mapped[str | None] = mapped_column(String(128), nullable=True)
    scale_max_label: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # rating
    rating_max: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    form: Mapped[Form] = relationship(back_populates="questions", lazy="selectin")
