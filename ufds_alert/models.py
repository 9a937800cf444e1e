"""Domain models for directory change notifications."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Sequence, Tuple


_GENERALIZED_TIME = re.compile(
    r"^(?P<stamp>\d{14})(?:\.(?P<fraction>\d+))?Z$"
)


def coerce_timestamp(value: Any) -> datetime:
    """Normalise an event timestamp into an aware UTC ``datetime``.

    Accepts ``datetime`` objects (naive values are assumed to be UTC), epoch
    seconds, ISO-8601 strings and LDAP generalized time strings such as
    ``20210301120000.000Z``.
    """

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, bool):
        raise ValueError(f"Unsupported timestamp value {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        match = _GENERALIZED_TIME.match(text)
        if match:
            parsed = datetime.strptime(match.group("stamp"), "%Y%m%d%H%M%S")
            fraction = match.group("fraction")
            if fraction:
                parsed = parsed.replace(microsecond=int(fraction[:6].ljust(6, "0")))
            return parsed.replace(tzinfo=timezone.utc)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"Unrecognised timestamp {value!r}") from exc
        return coerce_timestamp(parsed)
    raise ValueError(f"Unsupported timestamp value {value!r}")


def coerce_flag(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


@dataclass(frozen=True)
class UserRecord:
    """A directory account as mirrored into the local store."""

    uuid: str
    login: str
    email: Optional[str]
    status: Optional[str] = None
    operator: bool = False
    reader: bool = False
    roleoper: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def is_privileged(self) -> bool:
        return self.operator or self.reader or self.roleoper

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UserRecord":
        return cls(
            uuid=str(row["uuid"]),
            login=str(row["login"]),
            email=row["email"],
            status=row["status"],
            operator=coerce_flag(row["operator"]),
            reader=coerce_flag(row["reader"]),
            roleoper=coerce_flag(row["roleoper"]),
        )


@dataclass(frozen=True)
class KeyRecord:
    """An SSH key registered against an account."""

    uuid: str
    fingerprint: str
    name: Optional[str] = None
    comment: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "KeyRecord":
        return cls(
            uuid=str(row["uuid"]),
            fingerprint=str(row["fingerprint"]),
            name=row["name"],
            comment=row["comment"],
        )


@dataclass(frozen=True)
class KeyLocation:
    """Another account holding a key that was just added elsewhere."""

    uuid: str
    name: Optional[str]
    comment: Optional[str]
    login: str
    email: Optional[str]


@dataclass(frozen=True)
class MailMessage:
    sender: str
    to: Tuple[str, ...]
    subject: str
    text: str


class EventKind(str, Enum):
    """Directory changes the notifier knows how to report."""

    KEY_MISMATCH = "key-mismatch"
    LOGIN_CHANGED = "login-changed"
    PASSWORD_CHANGED = "password-changed"
    EMAIL_CHANGED = "email-changed"
    USER_DELETED = "user-deleted"
    KEY_ADDED = "key-added"
    KEY_DELETED = "key-deleted"
    OPERATOR_ADDED = "operator-added"
    OPERATOR_REMOVED = "operator-removed"
    READER_ADDED = "reader-added"
    READER_REMOVED = "reader-removed"
    ROLEOPER_ADDED = "roleoper-added"
    ROLEOPER_REMOVED = "roleoper-removed"
    GROUP_MEMBER_ADDED = "group-member-added"
    GROUP_MEMBER_REMOVED = "group-member-removed"


_REQUIRED_FIELDS: Mapping[EventKind, Tuple[str, ...]] = {
    EventKind.KEY_MISMATCH: ("expected_fingerprint", "key"),
    EventKind.LOGIN_CHANGED: ("uuid", "old_value", "new_value"),
    EventKind.PASSWORD_CHANGED: ("uuid",),
    EventKind.EMAIL_CHANGED: ("uuid", "old_value", "new_value"),
    EventKind.USER_DELETED: ("uuid", "user"),
    EventKind.KEY_ADDED: ("uuid", "key"),
    EventKind.KEY_DELETED: ("uuid", "key"),
    EventKind.OPERATOR_ADDED: ("uuid",),
    EventKind.OPERATOR_REMOVED: ("uuid",),
    EventKind.READER_ADDED: ("uuid",),
    EventKind.READER_REMOVED: ("uuid",),
    EventKind.ROLEOPER_ADDED: ("uuid",),
    EventKind.ROLEOPER_REMOVED: ("uuid",),
    EventKind.GROUP_MEMBER_ADDED: ("dn",),
    EventKind.GROUP_MEMBER_REMOVED: ("dn",),
}


@dataclass(frozen=True)
class NotificationEvent:
    """A single change reported by the directory watcher.

    Only the fields relevant to ``kind`` are populated. ``key`` holds the
    OpenSSH one-line form of a public key; ``user`` carries the last known
    record of a deleted account.
    """

    kind: EventKind
    when: datetime
    uuid: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    email: Optional[str] = None
    key: Optional[str] = None
    key_name: Optional[str] = None
    other_keys: Tuple[str, ...] = field(default_factory=tuple)
    user: Optional[UserRecord] = None
    group: Optional[str] = None
    dn: Optional[str] = None
    error: Optional[str] = None
    expected_fingerprint: Optional[str] = None

    def __post_init__(self) -> None:
        missing = [name for name in _REQUIRED_FIELDS[self.kind] if getattr(self, name) is None]
        if missing:
            raise ValueError(
                f"Event {self.kind.value} is missing required fields: {', '.join(missing)}"
            )

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "NotificationEvent":
        """Build an event from a JSON-style mapping."""

        raw_kind = data.get("kind")
        try:
            kind = EventKind(raw_kind)
        except ValueError as exc:
            raise ValueError(f"Unknown event kind {raw_kind!r}") from exc

        when = coerce_timestamp(data.get("when", datetime.now(timezone.utc)))

        raw_user = data.get("user")
        user: Optional[UserRecord] = None
        if isinstance(raw_user, Mapping):
            user = UserRecord(
                uuid=str(raw_user.get("uuid", data.get("uuid", ""))),
                login=str(raw_user.get("login", "")),
                email=raw_user.get("email"),
                status=raw_user.get("status"),
                operator=coerce_flag(raw_user.get("operator")),
                reader=coerce_flag(raw_user.get("reader")),
                roleoper=coerce_flag(raw_user.get("roleoper")),
            )

        other_keys: Sequence[Any] = data.get("other_keys") or ()
        return NotificationEvent(
            kind=kind,
            when=when,
            uuid=data.get("uuid"),
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
            email=data.get("email"),
            key=data.get("key"),
            key_name=data.get("key_name"),
            other_keys=tuple(str(item) for item in other_keys),
            user=user,
            group=data.get("group"),
            dn=data.get("dn"),
            error=data.get("error"),
            expected_fingerprint=data.get("expected_fingerprint"),
        )


__all__ = [
    "EventKind",
    "KeyLocation",
    "KeyRecord",
    "MailMessage",
    "NotificationEvent",
    "UserRecord",
    "coerce_flag",
    "coerce_timestamp",
]
