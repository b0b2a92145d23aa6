from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    func,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping SQLite-backed test databases working.
JSONType = JSON().with_variant(JSONB(), "postgresql")

SUBSCRIPTION_PENDING = "pending_confirmation"
SUBSCRIPTION_CONFIRMED = "confirmed"


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    username: Mapped[str] = mapped_column(String(70), unique=True)
    email: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.user_id", ondelete="CASCADE"), index=True)
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # The same address may follow several authors, but only once per author.
        UniqueConstraint("email", "user_id", name="uq_subscriptions_email_user_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.user_id", ondelete="CASCADE"), index=True)
    status: Mapped[str] = mapped_column(String, default=SUBSCRIPTION_PENDING)
    subscribed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SubscriptionToken(Base):
    __tablename__ = "subscription_tokens"

    subscription_token: Mapped[str] = mapped_column(String, primary_key=True)
    subscriber_id: Mapped[str] = mapped_column(
        String, ForeignKey("subscriptions.id", ondelete="CASCADE"), index=True
    )


class NewsletterIssue(Base):
    __tablename__ = "newsletter_issues"
    __table_args__ = (
        UniqueConstraint("user_id", "slug", name="uq_newsletter_issues_user_id_slug"),
    )

    newsletter_issue_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.user_id", ondelete="CASCADE"), index=True)
    title: Mapped[str] = mapped_column(String(70))
    slug: Mapped[str] = mapped_column(String(70))
    description: Mapped[str] = mapped_column(String(200), default="")
    # Markdown source; HTML and plain text are rendered on read and on delivery.
    content: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class IssueDeliveryQueue(Base):
    __tablename__ = "issue_delivery_queue"
    __table_args__ = (
        Index("ix_issue_delivery_queue_execute_after", "execute_after"),
    )

    # One outbox row per (issue, subscriber); written in the publish transaction.
    newsletter_issue_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("newsletter_issues.newsletter_issue_id", ondelete="CASCADE"),
        primary_key=True,
    )
    subscriber_email: Mapped[str] = mapped_column(String, primary_key=True)
    n_retries: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    execute_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Idempotency(Base):
    __tablename__ = "idempotency"

    # The composite primary key is the storage-level guard against double execution.
    user_id: Mapped[str] = mapped_column(
        String, ForeignKey("users.user_id", ondelete="CASCADE"), primary_key=True
    )
    idempotency_key: Mapped[str] = mapped_column(String(50), primary_key=True)
    # Null response fields mark a reservation whose request has not finished yet.
    response_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Ordered [name, value] pairs; latin-1 strings map 1:1 onto the raw header bytes.
    response_headers: Mapped[list[Any] | None] = mapped_column(JSONType, nullable=True)
    response_body: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
