from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any


class ValidationError(ValueError):
    pass


def require(value: str | None, field: str) -> None:
    if value is None or str(value).strip() == "":
        raise ValidationError(f"{field} is required.")


def validate_enum(value: str | None, allowed: Iterable[str], field: str) -> None:
    if value is None:
        return
    allowed = list(allowed)
    if value not in allowed:
        raise ValidationError(f"{field} must be one of: {', '.join(sorted(allowed))}")


def parse_datetime(value: str | None, field: str) -> datetime | None:
    """Parse ISO 8601; naive values are taken to be UTC."""
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"{field} must be ISO 8601.") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def parse_number(value: Any, field: str) -> float | None:
    """Strict numeric parsing for user-entered financial inputs."""
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return None
    number = finite_number(value)
    if number is None:
        raise ValidationError(f"{field} must be a number.")
    return number


def finite_number(value: Any) -> float | None:
    """Lenient coercion: anything that is not a finite number becomes None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number
