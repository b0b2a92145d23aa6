from __future__ import annotations

from dataclasses import dataclass

from email_validator import EmailNotValidError, validate_email

from newsletter_api.core.errors import ValidationError
from newsletter_api.domain.validation import (
    contains_forbidden_characters,
    is_empty_or_whitespace,
    is_too_long,
)


@dataclass(frozen=True)
class SubscriberName:
    value: str

    @classmethod
    def parse(cls, value: str) -> "SubscriberName":
        if (
            is_empty_or_whitespace(value)
            or is_too_long(value, 256)
            or contains_forbidden_characters(value)
        ):
            raise ValidationError(f"{value} is not a valid subscriber name.")
        return cls(value)


@dataclass(frozen=True)
class SubscriberEmail:
    value: str

    @classmethod
    def parse(cls, value: str) -> "SubscriberEmail":
        # Syntax only; deliverability is proven by the confirmation email.
        try:
            validate_email(value, check_deliverability=False)
        except EmailNotValidError as exc:
            raise ValidationError(f"{value} is not a valid subscriber email.") from exc
        return cls(value)


@dataclass(frozen=True)
class NewSubscriber:
    email: SubscriberEmail
    name: SubscriberName
    user_id: str
