"""Syntactic validation of stored subscriber addresses."""

from __future__ import annotations

from dataclasses import dataclass

from email_validator import EmailNotValidError, validate_email


class InvalidSubscriberEmailError(ValueError):
    """Stored contact details cannot be used as an email recipient."""


@dataclass(slots=True, frozen=True)
class SubscriberEmail:
    """Recipient address that passed syntactic validation."""

    value: str

    @classmethod
    def parse(cls, raw: str) -> SubscriberEmail:
        """Validate `raw` without any DNS lookups.

        The stored value is returned unchanged on success so that the queue
        row can still be matched by its original key.
        """

        candidate = raw.strip()
        if not candidate:
            raise InvalidSubscriberEmailError("Subscriber email is empty.")
        if candidate != raw:
            raise InvalidSubscriberEmailError(
                f"Subscriber email has surrounding whitespace: {raw!r}",
            )
        try:
            validate_email(candidate, check_deliverability=False)
        except EmailNotValidError as error:
            raise InvalidSubscriberEmailError(
                f"{raw!r} is not a valid subscriber email: {error}",
            ) from error
        return cls(value=candidate)

    def __str__(self) -> str:
        return self.value
