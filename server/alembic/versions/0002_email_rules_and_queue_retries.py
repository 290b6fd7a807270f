"""email rules and queue retry tracking

Revision ID: 0002_email_rules_and_queue_retries
Revises: 0001_create_portal_tables
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0002_email_rules_and_queue_retries"
down_revision = "0001_create_portal_tables"
branch_labels = None
depends_on = None

EMAIL_RULE_TRIGGER = postgresql.ENUM("insert", "update", name="email_rule_trigger", create_type=False)


def _add_enum_values(enum_name: str, values: list[str]) -> None:
    for value in values:
        op.execute(
            f"""
            DO $$
            BEGIN
                IF NOT EXISTS (
                    SELECT 1
                    FROM pg_enum e
                    JOIN pg_type t ON t.oid = e.enumtypid
                    WHERE t.typname = '{enum_name}' AND e.enumlabel = '{value}'
                ) THEN
                    ALTER TYPE {enum_name} ADD VALUE '{value}';
                END IF;
            END
            $$;
            """
        )


def upgrade() -> None:
    _add_enum_values("email_queue_status", ["processing", "rate_limited"])
    EMAIL_RULE_TRIGGER.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "email_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=150), nullable=False),
        sa.Column("template_id", sa.Integer(), sa.ForeignKey("email_templates.id", ondelete="CASCADE"), nullable=False),
        sa.Column("source_table", sa.String(length=64), nullable=False),
        sa.Column("trigger_event", EMAIL_RULE_TRIGGER, nullable=False, server_default="insert"),
        sa.Column("trigger_conditions", sa.JSON(), nullable=False),
        sa.Column("recipient_config", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_email_rules_template_id", "email_rules", ["template_id"])
    op.create_index("ix_email_rules_source_table", "email_rules", ["source_table"])

    op.add_column(
        "email_queue",
        sa.Column("rule_id", sa.Integer(), sa.ForeignKey("email_rules.id", ondelete="SET NULL"), nullable=True),
    )
    op.add_column("email_queue", sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"))
    op.add_column("email_queue", sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"))
    op.add_column("email_queue", sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("email_queue", sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    op.execute("UPDATE email_queue SET status = 'pending' WHERE status IN ('processing', 'rate_limited')")
    op.drop_column("email_queue", "last_attempt_at")
    op.drop_column("email_queue", "next_retry_at")
    op.drop_column("email_queue", "max_retries")
    op.drop_column("email_queue", "retry_count")
    op.drop_column("email_queue", "rule_id")

    op.drop_index("ix_email_rules_source_table", table_name="email_rules")
    op.drop_index("ix_email_rules_template_id", table_name="email_rules")
    op.drop_table("email_rules")
    EMAIL_RULE_TRIGGER.drop(op.get_bind(), checkfirst=True)
