"""initial newsletter schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("username", sa.String(length=70), nullable=False, unique=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False),
        sa.Column("key_prefix", sa.String(), nullable=False),
        sa.Column("key_hash", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_api_keys_user_id", "api_keys", ["user_id"], unique=False)
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"], unique=True)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("subscribed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("email", "user_id", name="uq_subscriptions_email_user_id"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=False)
    op.create_table(
        "subscription_tokens",
        sa.Column("subscription_token", sa.String(), primary_key=True),
        sa.Column(
            "subscriber_id",
            sa.String(),
            sa.ForeignKey("subscriptions.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_subscription_tokens_subscriber_id", "subscription_tokens", ["subscriber_id"], unique=False
    )

    op.create_table(
        "newsletter_issues",
        sa.Column("newsletter_issue_id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(length=70), nullable=False),
        sa.Column("slug", sa.String(length=70), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "slug", name="uq_newsletter_issues_user_id_slug"),
    )
    op.create_index("ix_newsletter_issues_user_id", "newsletter_issues", ["user_id"], unique=False)

    # Outbox of pending deliveries, one row per (issue, subscriber).
    op.create_table(
        "issue_delivery_queue",
        sa.Column(
            "newsletter_issue_id",
            sa.String(),
            sa.ForeignKey("newsletter_issues.newsletter_issue_id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("subscriber_email", sa.String(), primary_key=True),
        sa.Column("n_retries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("execute_after", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_issue_delivery_queue_execute_after", "issue_delivery_queue", ["execute_after"], unique=False
    )

    # Response snapshots for idempotent publish requests.
    op.create_table(
        "idempotency",
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.user_id", ondelete="CASCADE"), primary_key=True),
        sa.Column("idempotency_key", sa.String(length=50), primary_key=True),
        sa.Column("response_status_code", sa.Integer(), nullable=True),
        sa.Column(
            "response_headers",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=True,
        ),
        sa.Column("response_body", sa.LargeBinary(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("idempotency")
    op.drop_index("ix_issue_delivery_queue_execute_after", table_name="issue_delivery_queue")
    op.drop_table("issue_delivery_queue")
    op.drop_index("ix_newsletter_issues_user_id", table_name="newsletter_issues")
    op.drop_table("newsletter_issues")
    op.drop_index("ix_subscription_tokens_subscriber_id", table_name="subscription_tokens")
    op.drop_table("subscription_tokens")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_api_keys_key_hash", table_name="api_keys")
    op.drop_index("ix_api_keys_user_id", table_name="api_keys")
    op.drop_table("api_keys")
    op.drop_table("users")
