"""Input validation applied before any lock is taken."""
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Iterable, Optional, Union

from .errors import ValidationError
from .models import NEVER, SERVICE_PROXY, SERVICE_SSH, SERVICES

USERNAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{2,19}$")

SECRET_MIN_LENGTH = 8
SECRET_MAX_LENGTH = 128

EXPIRY_MIN_DAYS = 1
EXPIRY_MAX_DAYS = 3650

_SERVICE_ALIASES = {
    "xray": (SERVICE_PROXY,),
    "both": (SERVICE_SSH, SERVICE_PROXY),
}

_DAYS_PATTERN = re.compile(r"^(\d+)\s*d?$")

ExpirySpec = Union[int, str, timedelta, datetime, None]
NormalizedExpiry = Union[timedelta, datetime, None]


def validate_username(username: str) -> str:
    if not isinstance(username, str):
        raise ValidationError("Username must be a string", field="username")
    cleaned = username.strip()
    if not USERNAME_PATTERN.match(cleaned):
        raise ValidationError(
            "Invalid username format. Must be 3-20 chars, start with a letter, "
            "and contain only a-zA-Z0-9_-",
            field="username",
        )
    return cleaned


def normalize_services(services: Union[str, Iterable[str]]) -> FrozenSet[str]:
    """Return the canonical service set, expanding ``both``/``xray`` aliases."""

    if isinstance(services, str):
        items = [part for part in re.split(r"[,\s]+", services) if part]
    else:
        items = [str(part) for part in services]

    resolved: set[str] = set()
    for item in items:
        name = item.strip().lower()
        if name in _SERVICE_ALIASES:
            resolved.update(_SERVICE_ALIASES[name])
        elif name in SERVICES:
            resolved.add(name)
        else:
            raise ValidationError(
                f"Invalid service type '{item}'. Must be one of: {', '.join(SERVICES)}",
                field="services",
            )
    if not resolved:
        raise ValidationError("At least one service must be selected", field="services")
    return frozenset(resolved)


def normalize_expiry(spec: ExpirySpec, *, now: Optional[datetime] = None) -> NormalizedExpiry:
    """Validate an expiry specification.

    Accepts a number of days (1-3650, as ``int`` or ``"30"``/``"30d"``),
    ``"never"``/``None``, a :class:`timedelta`, or an absolute future
    :class:`datetime`.
    """

    if spec is None:
        return None
    if isinstance(spec, bool):
        raise ValidationError("Expiry must be a number of days or 'never'", field="expiry")
    if isinstance(spec, datetime):
        moment = spec if spec.tzinfo is not None else spec.replace(tzinfo=timezone.utc)
        reference = now or datetime.now(timezone.utc)
        if moment <= reference:
            raise ValidationError("Expiry timestamp must be in the future", field="expiry")
        return moment
    if isinstance(spec, timedelta):
        if spec <= timedelta(0):
            raise ValidationError("Expiry duration must be positive", field="expiry")
        return spec
    if isinstance(spec, str):
        text = spec.strip().lower()
        if text == NEVER:
            return None
        match = _DAYS_PATTERN.match(text)
        if match is None:
            raise ValidationError(
                f"Invalid expiry days. Must be between {EXPIRY_MIN_DAYS}-{EXPIRY_MAX_DAYS} or 'never'",
                field="expiry",
            )
        spec = int(match.group(1))
    if isinstance(spec, int):
        if not EXPIRY_MIN_DAYS <= spec <= EXPIRY_MAX_DAYS:
            raise ValidationError(
                f"Invalid expiry days. Must be between {EXPIRY_MIN_DAYS}-{EXPIRY_MAX_DAYS} or 'never'",
                field="expiry",
            )
        return timedelta(days=spec)
    raise ValidationError("Expiry must be a number of days or 'never'", field="expiry")


def resolve_expiry(normalized: NormalizedExpiry, now: datetime) -> Optional[datetime]:
    """Turn a normalised expiry into an absolute timestamp (``None`` is never)."""

    if normalized is None:
        return None
    if isinstance(normalized, timedelta):
        return now + normalized
    return normalized


def validate_secret(secret: str) -> str:
    if not isinstance(secret, str):
        raise ValidationError("Secret must be a string", field="secret")
    cleaned = secret.replace("\r", "").replace("\n", "")
    if len(cleaned) < SECRET_MIN_LENGTH:
        raise ValidationError(
            f"Secret must be at least {SECRET_MIN_LENGTH} characters", field="secret"
        )
    if len(cleaned) > SECRET_MAX_LENGTH:
        raise ValidationError(
            f"Secret must be at most {SECRET_MAX_LENGTH} characters", field="secret"
        )
    return cleaned


__all__ = [
    "USERNAME_PATTERN",
    "ExpirySpec",
    "validate_username",
    "normalize_services",
    "normalize_expiry",
    "resolve_expiry",
    "validate_secret",
]
