from __future__ import annotations


class NewsletterError(Exception):
    """Base error for newsletter_api."""


class ValidationError(NewsletterError, ValueError):
    """User supplied value failed domain validation; message is safe to show."""


class IdempotencyInProgressError(NewsletterError):
    """Another request still holds the idempotency reservation for this key."""


class DatabaseError(NewsletterError):
    """Database layer failure."""


class NotFoundError(NewsletterError):
    """Requested resource does not exist for the calling user."""
