"""Domain models persisted in the panel state document."""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterable, Literal, Mapping, Optional

UserStatus = Literal["active", "expired", "disabled"]

STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"
STATUS_DISABLED = "disabled"
STATUSES = (STATUS_ACTIVE, STATUS_EXPIRED, STATUS_DISABLED)

SERVICE_SSH = "ssh"
SERVICE_PROXY = "proxy"
SERVICES = (SERVICE_SSH, SERVICE_PROXY)

NEVER = "never"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def serialize_expiry(value: Optional[datetime]) -> str:
    return NEVER if value is None else serialize_datetime(value)


def parse_expiry(value: str) -> Optional[datetime]:
    return None if value == NEVER else parse_datetime(value)


def ordered_services(services: Iterable[str]) -> list[str]:
    """Return services in provisioning order (ssh before proxy)."""

    rank = {name: index for index, name in enumerate(SERVICES)}
    return sorted(set(services), key=lambda name: (rank.get(name, len(rank)), name))


@dataclass(frozen=True)
class UserRecord:
    """A managed end-user account.

    ``expiry`` is ``None`` when the account never expires.
    """

    username: str
    created_at: datetime
    expiry: Optional[datetime]
    status: str
    services: FrozenSet[str]
    last_modified: datetime
    configs_generated: int = 0
    secret_encrypted: Optional[str] = field(default=None, repr=False)

    @property
    def never_expires(self) -> bool:
        return self.expiry is None

    def is_past_due(self, now: datetime) -> bool:
        return self.expiry is not None and self.expiry < now

    def replace(self, **changes: object) -> "UserRecord":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "username": self.username,
            "created_at": serialize_datetime(self.created_at),
            "expiry": serialize_expiry(self.expiry),
            "status": self.status,
            "services": ordered_services(self.services),
            "last_modified": serialize_datetime(self.last_modified),
            "configs_generated": self.configs_generated,
        }
        if self.secret_encrypted is not None:
            payload["secret_encrypted"] = self.secret_encrypted
        return payload

    def to_public_dict(self) -> Dict[str, object]:
        payload = self.to_dict()
        payload.pop("secret_encrypted", None)
        return payload

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "UserRecord":
        """Build a record from its document form, raising ``ValueError`` if malformed."""

        required = {"username", "created_at", "expiry", "status", "services", "last_modified"}
        missing = required - set(data.keys())
        if missing:
            raise ValueError(f"User record is missing fields: {', '.join(sorted(missing))}")

        raw_services = data["services"]
        if not isinstance(raw_services, (list, tuple)):
            raise ValueError("User record services must be a list")

        configs = data.get("configs_generated", 0)
        if not isinstance(configs, int) or isinstance(configs, bool):
            raise ValueError("configs_generated must be an integer")

        secret = data.get("secret_encrypted")
        return UserRecord(
            username=str(data["username"]),
            created_at=parse_datetime(str(data["created_at"])),
            expiry=parse_expiry(str(data["expiry"])),
            status=str(data["status"]),
            services=frozenset(str(item) for item in raw_services),
            last_modified=parse_datetime(str(data["last_modified"])),
            configs_generated=configs,
            secret_encrypted=str(secret) if secret is not None else None,
        )


@dataclass(frozen=True)
class StoreMetadata:
    """Aggregate counters derived from the user map on every write."""

    total_count: int
    active_count: int
    created_at: datetime
    updated_at: datetime
    revision: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "total_count": self.total_count,
            "active_count": self.active_count,
            "created_at": serialize_datetime(self.created_at),
            "updated_at": serialize_datetime(self.updated_at),
            "revision": self.revision,
        }

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "StoreMetadata":
        return StoreMetadata(
            total_count=int(data.get("total_count", 0)),  # type: ignore[arg-type]
            active_count=int(data.get("active_count", 0)),  # type: ignore[arg-type]
            created_at=parse_datetime(str(data["created_at"])),
            updated_at=parse_datetime(str(data.get("updated_at", data["created_at"]))),
            revision=int(data.get("revision", 0)),  # type: ignore[arg-type]
        )


@dataclass(frozen=True)
class StateSnapshot:
    """Point-in-time copy of the state document."""

    users: Mapping[str, UserRecord]
    metadata: StoreMetadata

    def active_users(self) -> list[UserRecord]:
        return [record for record in self.users.values() if record.status == STATUS_ACTIVE]


__all__ = [
    "UserStatus",
    "UserRecord",
    "StoreMetadata",
    "StateSnapshot",
    "STATUSES",
    "STATUS_ACTIVE",
    "STATUS_EXPIRED",
    "STATUS_DISABLED",
    "SERVICES",
    "SERVICE_SSH",
    "SERVICE_PROXY",
    "NEVER",
    "utcnow",
    "ordered_services",
    "parse_datetime",
    "serialize_datetime",
    "parse_expiry",
    "serialize_expiry",
]
