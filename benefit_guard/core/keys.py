"""
Query key normalization.

A benefit is identified by its owner's document number and its benefit
number. Both are reduced to digits so that "123.456.789-00" and
"12345678900" address the same benefit.
"""

import re
from dataclasses import dataclass

from .errors import ValidationError

_NON_DIGITS = re.compile(r"\D")


def sanitize_digits(value: str) -> str:
    """Strip every non-digit character."""
    return _NON_DIGITS.sub("", value)


@dataclass(frozen=True)
class QueryKey:
    """Normalized (document, benefit) pair."""
    document: str
    benefit: str

    @classmethod
    def from_raw(cls, document: object, benefit: object) -> "QueryKey":
        """Normalize raw user input.

        Raises:
            ValidationError: If either value is missing or has no digits
        """
        if not isinstance(document, str) or not document.strip():
            raise ValidationError("document number is required")
        if not isinstance(benefit, str) or not benefit.strip():
            raise ValidationError("benefit number is required")

        clean_document = sanitize_digits(document)
        clean_benefit = sanitize_digits(benefit)
        if not clean_document:
            raise ValidationError("document number must contain digits", {"document": document})
        if not clean_benefit:
            raise ValidationError("benefit number must contain digits", {"benefit": benefit})
        return cls(document=clean_document, benefit=clean_benefit)

    @property
    def value(self) -> str:
        """Dispatch key string."""
        return f"{self.document}:{self.benefit}"

    def __str__(self) -> str:
        return self.value
