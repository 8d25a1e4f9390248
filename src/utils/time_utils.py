from __future__ import annotations

from datetime import datetime, timezone

from domain.errors import ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_as_of(value: str | datetime | None, *, field_name: str = "as_of") -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime; ``None`` means now.

    Naive values are read as UTC. A trailing ``Z`` is accepted.
    """
    if value is None:
        return utc_now()
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if not text:
            return utc_now()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"Invalid {field_name}: {value!r}") from exc

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
