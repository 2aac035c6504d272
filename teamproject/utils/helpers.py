"""Shared parsing helpers used by services and blueprints."""

from datetime import date, datetime, timezone

from teamproject.core.exceptions import ValidationError


def parse_date(value):
    """Parse a date string (ISO or DD/MM/YYYY) to a date object.

    Returns None for empty input, raises ValidationError on bad input.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d/%m/%Y").date()
    except (ValueError, TypeError):
        raise ValidationError("Date invalide", details={"due_date": str(value)})


def parse_int(value, field: str):
    """Coerce ``value`` to int or raise ValidationError naming ``field``."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} doit être un entier", details={field: value})
    try:
        return int(value)
    except (ValueError, TypeError):
        raise ValidationError(f"{field} doit être un entier", details={field: value})


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite returns naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
