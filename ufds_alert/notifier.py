"""Turn directory change events into operator and user notification mail."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

import anyio
from anyio.abc import TaskGroup

from .config import NotifierConfig
from .database import Database, DatabaseError
from .keys import KeyParseError, PublicKey, parse_public_key
from .mailer import MailDeliveryError, MailTransport
from .models import (
    EventKind,
    KeyLocation,
    KeyRecord,
    MailMessage,
    NotificationEvent,
    UserRecord,
    coerce_timestamp,
)
from .templates import TemplateRenderer

logger = logging.getLogger("ufds_alert.notifier")

KEY_MISMATCH_METADATA_KEY = "last_key_mismatch"
KEY_MISMATCH_WINDOW = timedelta(hours=4)

_USER_QUERY = "SELECT * FROM users WHERE uuid = ?"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_public_key(key: Union[PublicKey, str]) -> Optional[PublicKey]:
    if isinstance(key, PublicKey):
        return key
    try:
        return parse_public_key(key)
    except KeyParseError:
        logger.exception("Ignoring event with an unparseable SSH key")
        return None


class _PipelineAbort(Exception):
    """Internal signal that a lookup stage failed and was already logged."""


class Notifier:
    """Decide who hears about a directory change and send them mail.

    Each handler reads what it needs from the row store, applies the
    whitelist/status/privilege policy and hands rendered messages to the
    mail transport. Lookup failures, missing rows and delivery failures are
    logged and drop the notification; template errors propagate.
    """

    def __init__(
        self,
        config: NotifierConfig,
        database: Database,
        mailer: MailTransport,
        *,
        renderer: Optional[TemplateRenderer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config
        self._db = database
        self._mailer = mailer
        self._renderer = renderer or TemplateRenderer(
            config.templates_dir,
            cloud_name=config.cloud_name,
            company=config.company,
        )
        self._clock = clock or _utcnow
        self._initial_sync = config.initial_sync
        self._last_key_mismatch: Optional[datetime] = None
        self._mismatch_lock = anyio.Lock()
        self._pending: Set["asyncio.Task[None]"] = set()

    @property
    def initial_sync(self) -> bool:
        return self._initial_sync

    def set_initial_sync(self, enabled: bool) -> None:
        """Toggle bulk-import mode; while enabled no mail is sent."""

        if enabled != self._initial_sync:
            logger.info("Initial sync mode %s", "enabled" if enabled else "finished")
        self._initial_sync = enabled

    @property
    def last_key_mismatch(self) -> Optional[datetime]:
        return self._last_key_mismatch

    def render(self, template: str, variables: Dict[str, Any]) -> str:
        return self._renderer.render(template, variables)

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------
    def is_whitelisted(self, uuid: str) -> bool:
        whitelist = self.config.whitelist
        return not whitelist or uuid in whitelist

    def _may_mail_user(self, user: UserRecord) -> bool:
        return self.is_whitelisted(user.uuid) and user.is_active

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------
    async def _get(self, query: str, params: Sequence[Any]):
        return await anyio.to_thread.run_sync(self._db.get, query, params)

    async def _all(self, query: str, params: Sequence[Any]):
        return await anyio.to_thread.run_sync(self._db.all, query, params)

    async def _run(self, query: str, params: Sequence[Any]) -> None:
        await anyio.to_thread.run_sync(self._db.run, query, params)

    async def _lookup_user(self, uuid: str, action: str) -> Optional[UserRecord]:
        """Fetch ``uuid`` or log why it could not be fetched and return ``None``."""

        try:
            row = await self._get(_USER_QUERY, (uuid,))
        except DatabaseError:
            logger.exception("Failed reading user %s from the database (%s)", uuid, action)
            return None
        if row is None:
            logger.error("%s for user %s, but they could not be found in the database", action, uuid)
            return None
        return UserRecord.from_row(row)

    # ------------------------------------------------------------------
    # Mail helpers
    # ------------------------------------------------------------------
    async def send_to_operators(self, subject: str, text: str) -> None:
        if self._initial_sync:
            return

        message = MailMessage(
            sender=self.config.my_email,
            to=tuple(self.config.operators),
            subject=self.config.oper_prefix + subject,
            text=text,
        )
        try:
            response = await anyio.to_thread.run_sync(self._mailer.send_mail, message)
        except MailDeliveryError:
            logger.exception("Failed sending operator mail (%s)", subject)
            return
        logger.info("Sent mail to operators: %s (%s)", subject, response)

    async def send_to_user(self, to: Union[str, Sequence[str], None], subject: str, text: str) -> None:
        if self._initial_sync:
            return

        candidates = (to,) if isinstance(to, str) or to is None else tuple(to)
        recipients = tuple(address for address in candidates if address)
        if not recipients:
            logger.warning("No email address to deliver user mail (%s)", subject)
            return

        message = MailMessage(
            sender=self.config.my_email,
            to=recipients,
            subject=self.config.user_prefix + subject,
            text=text,
        )
        try:
            response = await anyio.to_thread.run_sync(self._mailer.send_mail, message)
        except MailDeliveryError:
            logger.exception("Failed sending user mail to %s (%s)", ", ".join(recipients), subject)
            return
        logger.info("Sent mail to user %s: %s (%s)", ", ".join(recipients), subject, response)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    async def key_mismatch(self, expected_fp: str, new_key: Union[PublicKey, str]) -> None:
        """Alert operators that the directory presented an unexpected key.

        Alerts are rate limited to one per :data:`KEY_MISMATCH_WINDOW`. The
        stored timestamp is refreshed on every mismatch, including the ones
        that were suppressed.
        """

        new_key = _as_public_key(new_key)
        if new_key is None:
            return

        async with self._mismatch_lock:
            try:
                row = await self._get(
                    "SELECT value FROM metadata WHERE key = ?", (KEY_MISMATCH_METADATA_KEY,)
                )
            except DatabaseError:
                logger.exception("Failed reading key mismatch state from the database")
                return

            last = self._last_key_mismatch
            now = self._clock()
            if row is not None and row["value"]:
                try:
                    last = coerce_timestamp(row["value"])
                except ValueError:
                    logger.error(
                        "Discarding unreadable key mismatch time %r", row["value"]
                    )

            try:
                await self._run(
                    "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                    (KEY_MISMATCH_METADATA_KEY, now.isoformat()),
                )
            except DatabaseError:
                logger.exception("Failed recording key mismatch time")

            self._last_key_mismatch = now
            if last is not None and now - last <= KEY_MISMATCH_WINDOW:
                logger.info("Suppressing key mismatch alert; last alert at %s", last.isoformat())
                return

        text = self.render(
            "ufds-key-mismatch",
            {"expectedFp": str(expected_fp), "newFp": new_key.sha256_fingerprint},
        )
        await self.send_to_operators("UFDS key mismatch", text)

    async def changed_login(
        self,
        when: Any,
        uuid: str,
        old_login: str,
        new_login: str,
        email: Optional[str] = None,
    ) -> None:
        user = await self._lookup_user(uuid, "Changed login")
        if user is None or not user.is_active:
            return

        text = self.render(
            "changed-login",
            {
                "when": coerce_timestamp(when),
                "uuid": uuid,
                "oldLogin": old_login,
                "newLogin": new_login,
                "email": email,
            },
        )
        await self.send_to_operators(f"Account {old_login} login name changed", text)

    async def changed_password(self, when: Any, uuid: str, email: Optional[str] = None) -> None:
        user = await self._lookup_user(uuid, "Password change")
        if user is None:
            return

        variables = {"when": coerce_timestamp(when), "uuid": uuid, "user": user}
        if self._may_mail_user(user):
            text = self.render("pw-changed", variables)
            await self.send_to_user(user.email or email, "Your password has been changed", text)
        if user.is_privileged:
            text = self.render("oper-pw-changed", variables)
            await self.send_to_operators(f"Password changed for operator {user.login}", text)

    async def changed_email(self, when: Any, uuid: str, old_email: str, new_email: str) -> None:
        user = await self._lookup_user(uuid, "Email change")
        if user is None:
            return

        variables = {
            "when": coerce_timestamp(when),
            "uuid": uuid,
            "oldEmail": old_email,
            "newEmail": new_email,
            "user": user,
        }
        if self._may_mail_user(user):
            text = self.render("email-changed", variables)
            await self.send_to_user([old_email, new_email], "Your email address has been changed", text)
        if user.is_privileged:
            text = self.render("oper-email-changed", variables)
            await self.send_to_operators(f"Operator email change for {user.login}", text)

    async def deleted_user(self, when: Any, uuid: str, user: UserRecord) -> None:
        """Report deletion of a privileged account; ``user`` is its last known record."""

        if not user.is_privileged:
            return
        text = self.render(
            "deleted-operator",
            {"when": coerce_timestamp(when), "uuid": uuid, "user": user, "group": None},
        )
        await self.send_to_operators(f"Operator account {user.login} deleted", text)

    async def added_key(
        self,
        when: Any,
        uuid: str,
        key: Union[PublicKey, str],
        name: Optional[str] = None,
        other_keys: Sequence[Any] = (),
    ) -> None:
        """Report a new key, including any other accounts that already hold it.

        The user lookup, the fingerprint search and the per-account lookups
        run strictly in sequence; the first failure aborts the handler and
        nothing is sent.
        """

        key = _as_public_key(key)
        if key is None:
            return

        try:
            user = await self._added_key_user(uuid)
            locations = await self._added_key_locations(uuid, key)
        except _PipelineAbort:
            return

        variables = {
            "when": coerce_timestamp(when),
            "uuid": uuid,
            "key": key,
            "name": name,
            "keys": list(other_keys),
            "otherLocations": locations,
            "user": user,
        }
        if self._may_mail_user(user):
            text = self.render("added-key", variables)
            await self.send_to_user(user.email, f"New SSH key added to account {user.login}", text)
        if user.is_privileged:
            text = self.render("oper-added-key", variables)
            await self.send_to_operators(f"SSH key added to operator {user.login}", text)

    async def _added_key_user(self, uuid: str) -> UserRecord:
        user = await self._lookup_user(uuid, "Added key")
        if user is None:
            raise _PipelineAbort()
        return user

    async def _added_key_locations(self, uuid: str, key: PublicKey) -> List[KeyLocation]:
        try:
            rows = await self._all(
                "SELECT uuid, name, comment FROM keys WHERE fingerprint = ? AND uuid != ? ORDER BY uuid",
                (key.md5_fingerprint, uuid),
            )
        except DatabaseError as exc:
            logger.exception("Failed searching for other holders of key %s", key.md5_fingerprint)
            raise _PipelineAbort() from exc

        locations: List[KeyLocation] = []
        for row in rows:
            try:
                other = await self._get(_USER_QUERY, (row["uuid"],))
            except DatabaseError as exc:
                logger.exception("Failed reading user %s sharing key with %s", row["uuid"], uuid)
                raise _PipelineAbort() from exc
            if other is None:
                logger.error(
                    "Key %s is registered to user %s, but they could not be found in the database",
                    key.md5_fingerprint,
                    row["uuid"],
                )
                raise _PipelineAbort()
            locations.append(
                KeyLocation(
                    uuid=row["uuid"],
                    name=row["name"],
                    comment=row["comment"],
                    login=other["login"],
                    email=other["email"],
                )
            )
        return locations

    async def deleted_key(
        self,
        when: Any,
        uuid: str,
        key: Union[PublicKey, str],
        name: Optional[str] = None,
        other_keys: Sequence[Any] = (),
    ) -> None:
        key = _as_public_key(key)
        if key is None:
            return

        user = await self._lookup_user(uuid, "Deleted key")
        if user is None:
            return

        variables = {
            "when": coerce_timestamp(when),
            "uuid": uuid,
            "key": key,
            "name": name,
            "keys": list(other_keys),
            "user": user,
        }
        if self._may_mail_user(user):
            text = self.render("deleted-key", variables)
            await self.send_to_user(user.email, f"SSH key deleted from account {user.login}", text)
        if user.is_privileged:
            text = self.render("oper-deleted-key", variables)
            await self.send_to_operators(f"SSH key deleted from operator {user.login}", text)

    async def operator_added(self, when: Any, uuid: str, group: str = "operator") -> None:
        user = await self._lookup_user(uuid, f"Added to {group} group")
        if user is None:
            return

        try:
            rows = await self._all("SELECT * FROM keys WHERE uuid = ?", (uuid,))
        except DatabaseError:
            logger.exception("Failed reading keys for user %s", uuid)
            return

        text = self.render(
            "new-operator",
            {
                "when": coerce_timestamp(when),
                "uuid": uuid,
                "user": user,
                "group": group,
                "keys": [KeyRecord.from_row(row) for row in rows],
            },
        )
        await self.send_to_operators(f"New operator account {user.login}", text)

    async def reader_added(self, when: Any, uuid: str) -> None:
        await self.operator_added(when, uuid, "reader")

    async def roleoper_added(self, when: Any, uuid: str) -> None:
        await self.operator_added(when, uuid, "role-operator")

    async def operator_removed(self, when: Any, uuid: str, group: str = "operator") -> None:
        user = await self._lookup_user(uuid, f"Removed from {group} group")
        if user is None:
            return

        text = self.render(
            "deleted-operator",
            {"when": coerce_timestamp(when), "uuid": uuid, "user": user, "group": group},
        )
        await self.send_to_operators(f"Demoted operator account {user.login}", text)

    async def reader_removed(self, when: Any, uuid: str) -> None:
        await self.operator_removed(when, uuid, "reader")

    async def roleoper_removed(self, when: Any, uuid: str) -> None:
        await self.operator_removed(when, uuid, "role-operator")

    async def group_member_added(
        self,
        when: Any,
        dn: str,
        group: Optional[str] = None,
        error: Any = None,
    ) -> None:
        group = group or "operators"
        text = self.render(
            "new-weird-group-member",
            {"when": coerce_timestamp(when), "group": group, "dn": dn, "err": error},
        )
        await self.send_to_operators(f"Unknown DN added to group {group}", text)

    async def group_member_removed(
        self,
        when: Any,
        dn: str,
        group: Optional[str] = None,
        error: Any = None,
    ) -> None:
        group = group or "operators"
        text = self.render(
            "deleted-weird-group-member",
            {"when": coerce_timestamp(when), "group": group, "dn": dn, "err": error},
        )
        await self.send_to_operators(f"Unknown DN removed from group {group}", text)

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------
    async def handle(self, event: NotificationEvent) -> None:
        """Run the handler for ``event`` to completion."""

        kind = event.kind
        when = event.when
        if kind is EventKind.KEY_MISMATCH:
            await self.key_mismatch(event.expected_fingerprint, event.key)
        elif kind is EventKind.LOGIN_CHANGED:
            await self.changed_login(when, event.uuid, event.old_value, event.new_value, event.email)
        elif kind is EventKind.PASSWORD_CHANGED:
            await self.changed_password(when, event.uuid, event.email)
        elif kind is EventKind.EMAIL_CHANGED:
            await self.changed_email(when, event.uuid, event.old_value, event.new_value)
        elif kind is EventKind.USER_DELETED:
            await self.deleted_user(when, event.uuid, event.user)
        elif kind is EventKind.KEY_ADDED:
            await self.added_key(when, event.uuid, event.key, event.key_name, event.other_keys)
        elif kind is EventKind.KEY_DELETED:
            await self.deleted_key(when, event.uuid, event.key, event.key_name, event.other_keys)
        elif kind is EventKind.OPERATOR_ADDED:
            await self.operator_added(when, event.uuid)
        elif kind is EventKind.READER_ADDED:
            await self.reader_added(when, event.uuid)
        elif kind is EventKind.ROLEOPER_ADDED:
            await self.roleoper_added(when, event.uuid)
        elif kind is EventKind.OPERATOR_REMOVED:
            await self.operator_removed(when, event.uuid)
        elif kind is EventKind.READER_REMOVED:
            await self.reader_removed(when, event.uuid)
        elif kind is EventKind.ROLEOPER_REMOVED:
            await self.roleoper_removed(when, event.uuid)
        elif kind is EventKind.GROUP_MEMBER_ADDED:
            await self.group_member_added(when, event.dn, event.group, event.error)
        elif kind is EventKind.GROUP_MEMBER_REMOVED:
            await self.group_member_removed(when, event.dn, event.group, event.error)
        else:  # pragma: no cover - EventKind is exhaustive
            raise ValueError(f"Unhandled event kind {kind!r}")

    def dispatch(self, event: NotificationEvent, *, task_group: Optional[TaskGroup] = None) -> None:
        """Schedule ``event`` without waiting for its lookups or mail.

        With a ``task_group`` the handler is started there. Otherwise it is
        scheduled on the running event loop, or run to completion when the
        caller is not inside one.
        """

        if task_group is not None:
            task_group.start_soon(self.handle, event)
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            anyio.run(self.handle, event)
        else:
            task = loop.create_task(self.handle(event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            task.add_done_callback(_log_task_failure)


def _log_task_failure(task: "asyncio.Task[None]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Notification handler failed", exc_info=exc)


__all__ = ["KEY_MISMATCH_METADATA_KEY", "KEY_MISMATCH_WINDOW", "Notifier"]
