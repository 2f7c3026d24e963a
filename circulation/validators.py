import math
import re
from datetime import datetime
from enum import Enum
from typing import Optional, Type, TypeVar

from circulation.errors import ValidationError

E = TypeVar("E", bound=Enum)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class NumberValidator:
    """Checks applied to ids and money before any transaction opens."""

    @staticmethod
    def require_id(value, name: str = "id") -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValidationError(f"{name} must be a positive integer")
        return value

    @staticmethod
    def require_amount(value, name: str = "amount") -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"{name} must be a number")
        if not math.isfinite(value) or value <= 0:
            raise ValidationError(f"{name} must be greater than zero")
        return float(value)

    @staticmethod
    def require_count(value, name: str = "count") -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"{name} must be a non-negative integer")
        return value


class TextValidator:

    @staticmethod
    def require_text(value: Optional[str], name: str) -> str:
        if value is None or not str(value).strip():
            raise ValidationError(f"{name} is required")
        return str(value).strip()

    @staticmethod
    def require_email(value: Optional[str]) -> str:
        email = TextValidator.require_text(value, "email").lower()
        if not _EMAIL_RE.match(email):
            raise ValidationError(f"Invalid email address: {value!r}")
        return email

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        return re.sub(r"<[^>]*>", "", text).strip()


def require_enum(enum_cls: Type[E], value, name: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError as e:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {name} {value!r}; expected one of {allowed}") from e


def require_datetime(value, name: str = "now") -> datetime:
    if not isinstance(value, datetime):
        raise ValidationError(f"{name} must be a datetime")
    return value
