"""initial formtrack schema

Revision ID: 4e1a7c2b9d30
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4e1a7c2b9d30'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users, sub_roles, forms, questions, responses, answers and audit_events."""
    # Check if tables already exist (idempotent)
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    if "sub_roles" not in existing_tables:
        op.create_table(
            "sub_roles",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("name", sa.String(128), nullable=False, unique=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("name", sa.String(255), nullable=True),
            sa.Column("username", sa.String(320), nullable=False, unique=True),
            sa.Column("password_hash", sa.String(255), nullable=True),
            sa.Column("role", sa.String(32), nullable=False, server_default="teknisi"),
            sa.Column("sub_role_id", sa.String(36), sa.ForeignKey("sub_roles.id", ondelete="SET NULL"), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_users_role", "users", ["role"])
        op.create_index("idx_users_sub_role", "users", ["sub_role_id"])

    if "forms" not in existing_tables:
        op.create_table(
            "forms",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("sub_role_id", sa.String(36), sa.ForeignKey("sub_roles.id", ondelete="SET NULL"), nullable=True),
            sa.Column("created_by_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_forms_sub_role", "forms", ["sub_role_id"])
        op.create_index("idx_forms_created_by", "forms", ["created_by_id"])

    if "questions" not in existing_tables:
        op.create_table(
            "questions",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("form_id", sa.String(36), sa.ForeignKey("forms.id", ondelete="CASCADE"), nullable=False),
            sa.Column("type", sa.String(32), nullable=False),
            sa.Column("label", sa.String(512), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("options", sa.JSON(), nullable=True),
            sa.Column("required", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("order", sa.Integer(), nullable=False),
            sa.Column("scale_min", sa.Integer(), nullable=True),
            sa.Column("scale_max", sa.Integer(), nullable=True),
            sa.Column("scale_min_label", sa.String(128), nullable=True),
            sa.Column("scale_max_label", sa.String(128), nullable=True),
            sa.Column("rating_max", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_questions_form_order", "questions", ["form_id", "order"])

    if "responses" not in existing_tables:
        op.create_table(
            "responses",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("form_id", sa.String(36), sa.ForeignKey("forms.id", ondelete="CASCADE"), nullable=False),
            sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("submitted_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_responses_form", "responses", ["form_id"])
        op.create_index("idx_responses_user", "responses", ["user_id"])

    if "answers" not in existing_tables:
        op.create_table(
            "answers",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("response_id", sa.String(36), sa.ForeignKey("responses.id", ondelete="CASCADE"), nullable=False),
            sa.Column("question_id", sa.String(36), sa.ForeignKey("questions.id", ondelete="CASCADE"), nullable=False),
            sa.Column("value", sa.Text(), nullable=True),
            sa.Column("file_url", sa.String(512), nullable=True),
        )
        op.create_index("idx_answers_response", "answers", ["response_id"])
        op.create_index("idx_answers_question", "answers", ["question_id"])

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("client_ip", sa.String(64), nullable=True),
            sa.Column("actor_user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("actor_username", sa.String(320), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
        op.create_index("idx_audit_events_created_at", "audit_events", ["created_at"])
        op.create_index("idx_audit_events_action", "audit_events", ["action"])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("answers")
    op.drop_table("responses")
    op.drop_table("questions")
    op.drop_table("forms")
    op.drop_table("users")
    op.drop_table("sub_roles")
