"""Test doubles shared by the notifier test modules."""

from __future__ import annotations

from typing import List

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from ufds_alert.database import Database, DatabaseError
from ufds_alert.mailer import MailDeliveryError
from ufds_alert.models import MailMessage, UserRecord


def make_public_key(comment: str = "alice@laptop") -> str:
    """Return a freshly generated ed25519 key in ``authorized_keys`` form."""

    private_key = ed25519.Ed25519PrivateKey.generate()
    line = private_key.public_key().public_bytes(
        serialization.Encoding.OpenSSH,
        serialization.PublicFormat.OpenSSH,
    ).decode("ascii")
    return f"{line} {comment}" if comment else line


def make_user(
    uuid: str = "u1",
    login: str = "alice",
    email: str | None = "alice@example.com",
    *,
    status: str = "active",
    operator: bool = False,
    reader: bool = False,
    roleoper: bool = False,
) -> UserRecord:
    return UserRecord(
        uuid=uuid,
        login=login,
        email=email,
        status=status,
        operator=operator,
        reader=reader,
        roleoper=roleoper,
    )


class RecordingMailer:
    """Mail transport that keeps messages instead of sending them."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.messages: List[MailMessage] = []
        self.attempts = 0

    def send_mail(self, message: MailMessage) -> str:
        self.attempts += 1
        if self.fail:
            raise MailDeliveryError("relay unavailable")
        self.messages.append(message)
        return "250 2.0.0 Ok: queued"

    def sent_to(self, address: str) -> List[MailMessage]:
        return [message for message in self.messages if address in message.to]


class BrokenDatabase(Database):
    """Database whose reads fail, optionally only for ``all`` queries.

    With ``fail_get_after`` set, the first that many ``get`` calls succeed.
    """

    def __init__(
        self,
        *args,
        fail_get: bool = True,
        fail_all: bool = True,
        fail_get_after: int | None = None,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.fail_get = fail_get
        self.fail_get_after = fail_get_after
        self.fail_all = fail_all
        self.get_calls = 0
        self.all_calls = 0

    def get(self, query, params=None):
        self.get_calls += 1
        if self.fail_get_after is not None:
            if self.get_calls > self.fail_get_after:
                raise DatabaseError("database is locked")
        elif self.fail_get:
            raise DatabaseError("database is locked")
        return super().get(query, params)

    def all(self, query, params=None):
        self.all_calls += 1
        if self.fail_all:
            raise DatabaseError("database is locked")
        return super().all(query, params)
