"""Lifecycle sagas that keep the state store and the backends in step.

Each user-facing operation holds the ``user:<name>`` write lock for its whole
duration.  The step ordering differs on purpose:

* ``create`` writes the store first and provisions backends afterwards; a
  crash in between leaves an active record without grants.
* ``update_expiry``, ``disable`` and ``delete`` change the backends first and
  write the store afterwards; a crash in between leaves the backends ahead.

Reconciliation of either window happens outside this module.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, Generator, Iterable, List, Mapping, Optional, Tuple, Union

from .audit import (
    STATUS_FAILURE,
    STATUS_SUCCESS,
    USER_CREATE_COMPLETE,
    USER_CREATE_FAILED,
    USER_DELETE_COMPLETE,
    USER_DISABLE_COMPLETE,
    USER_ENABLE_COMPLETE,
    USER_EXPIRE_COMPLETE,
    USER_EXPIRE_FAILED,
    USER_REACTIVATE_COMPLETE,
    USER_UPDATE_COMPLETE,
    AuditEvent,
    AuditSink,
)
from .backends import BackendAdapter, BackendResult
from .errors import BackendError, NotFoundError, PanelError, ValidationError
from .locks import WRITE, LockManager
from .models import (
    STATUS_ACTIVE,
    STATUS_DISABLED,
    STATUS_EXPIRED,
    StoreMetadata,
    UserRecord,
    ordered_services,
    serialize_expiry,
    utcnow,
)
from .state import StateStore
from .validation import (
    ExpirySpec,
    normalize_expiry,
    normalize_services,
    resolve_expiry,
    validate_secret,
    validate_username,
)
from .vault import SecretVault, generate_secret

logger = logging.getLogger("vpnpanel.orchestrator")

USER_LOCK_PREFIX = "user:"
DEFAULT_WARNING_WINDOW = timedelta(days=7)


@dataclass(frozen=True)
class CreatedAccount:
    record: UserRecord
    secret: str


@dataclass(frozen=True)
class AccountUpdate:
    """Result of an operation that may have re-provisioned the backends.

    ``secret`` is only set when a fresh secret had to be issued because the
    stored one was unavailable.
    """

    record: UserRecord
    reprovisioned: bool = False
    secret: Optional[str] = None


@dataclass
class _ProvisionFailure:
    service: str
    message: str
    provisioned: List[str] = field(default_factory=list)


class LifecycleOrchestrator:
    """Create, extend, expire, suspend and delete managed accounts."""

    def __init__(
        self,
        store: StateStore,
        locks: LockManager,
        backends: Mapping[str, BackendAdapter],
        audit: AuditSink,
        *,
        vault: Optional[SecretVault] = None,
        lock_timeout: Optional[float] = None,
        warning_window: timedelta = DEFAULT_WARNING_WINDOW,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._locks = locks
        self._backends: Dict[str, BackendAdapter] = dict(backends)
        self._audit = audit
        self._vault = vault if vault is not None else SecretVault()
        self._lock_timeout = lock_timeout
        self._warning_window = warning_window
        self._clock = clock

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def services(self) -> Tuple[str, ...]:
        return tuple(ordered_services(self._backends))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_user(self, username: str) -> UserRecord:
        record = self._store.get_user(username)
        if record is None:
            raise NotFoundError(username)
        return record

    def list_users(self, *, status: Optional[str] = None, pattern: Optional[str] = None) -> List[UserRecord]:
        return self._store.list_users(status=status, pattern=pattern)

    def stats(self) -> StoreMetadata:
        return self._store.stats()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------
    def create(
        self,
        username: str,
        services: Union[str, Iterable[str]],
        expiry: ExpirySpec = 30,
        secret: Optional[str] = None,
    ) -> CreatedAccount:
        username = validate_username(username)
        service_set = normalize_services(services)
        self._check_backends(service_set)
        normalized = normalize_expiry(expiry, now=self._clock())
        plain_secret = validate_secret(secret) if secret is not None else generate_secret()
        if self._store.user_exists(username):
            raise ValidationError("Username already exists", field="username")

        with self._user_lock(username):
            now = self._clock()
            record = UserRecord(
                username=username,
                created_at=now,
                expiry=resolve_expiry(normalized, now),
                status=STATUS_ACTIVE,
                services=service_set,
                last_modified=now,
                secret_encrypted=self._vault.encrypt(plain_secret),
            )

            def _insert(users: Dict[str, UserRecord]) -> None:
                if username in users:
                    raise ValidationError("Username already exists", field="username")
                users[username] = record

            self._store.write(_insert)

            failure = self._provision(username, plain_secret, service_set, record.expiry)
            if failure is not None:
                self._rollback_create(username, failure)
                self._emit(
                    USER_CREATE_FAILED,
                    username,
                    f"Provisioning failed on {failure.service}: {failure.message}",
                    STATUS_FAILURE,
                )
                raise BackendError(
                    failure.service,
                    f"Failed to provision {failure.service} access for '{username}': {failure.message}",
                )

            logger.info(
                "User created successfully: %s (services: %s, expiry: %s)",
                username,
                ",".join(ordered_services(service_set)),
                serialize_expiry(record.expiry),
            )
            self._emit(
                USER_CREATE_COMPLETE,
                username,
                f"User {username} created with services {','.join(ordered_services(service_set))}, "
                f"expiry {serialize_expiry(record.expiry)}",
            )
        return CreatedAccount(record=record, secret=plain_secret)

    def _rollback_create(self, username: str, failure: _ProvisionFailure) -> None:
        def _remove(users: Dict[str, UserRecord]) -> None:
            users.pop(username, None)

        try:
            self._store.write(_remove)
        except PanelError as exc:
            logger.error(
                "Rollback of store record for %s failed at stage %s: %s; manual cleanup required",
                username,
                exc.stage,
                exc,
            )
        self._revoke_best_effort(username, failure.provisioned)

    # ------------------------------------------------------------------
    # Expiry updates and re-activation
    # ------------------------------------------------------------------
    def update_expiry(self, username: str, expiry: ExpirySpec) -> AccountUpdate:
        username = validate_username(username)
        normalized = normalize_expiry(expiry, now=self._clock())

        with self._user_lock(username):
            record = self.get_user(username)
            now = self._clock()
            new_expiry = resolve_expiry(normalized, now)
            issued: Optional[str] = None
            reprovisioned = False

            if record.status == STATUS_ACTIVE:
                for service in ordered_services(record.services):
                    result = self._call(service, "set_expiry", username, new_expiry)
                    if not result.ok:
                        raise BackendError(
                            service,
                            f"Failed to update {service} expiry for '{username}': {result.message}",
                        )
            elif record.status == STATUS_EXPIRED:
                issued = self._reprovision(username, record, new_expiry)
                reprovisioned = True

            def _apply(users: Dict[str, UserRecord]) -> UserRecord:
                current = users.get(username)
                if current is None:
                    raise NotFoundError(username)
                changes: Dict[str, object] = {"expiry": new_expiry, "last_modified": now}
                if reprovisioned:
                    changes["status"] = STATUS_ACTIVE
                if issued is not None:
                    changes["secret_encrypted"] = self._vault.encrypt(issued)
                users[username] = current.replace(**changes)
                return users[username]

            updated = self._write_after_backends(username, _apply)

            if reprovisioned:
                logger.info("User %s re-activated until %s", username, serialize_expiry(new_expiry))
                self._emit(
                    USER_REACTIVATE_COMPLETE,
                    username,
                    f"User {username} re-activated with expiry {serialize_expiry(new_expiry)}",
                )
            else:
                logger.info("User %s expiry updated to %s", username, serialize_expiry(new_expiry))
                self._emit(
                    USER_UPDATE_COMPLETE,
                    username,
                    f"User {username} updated: expiry = {serialize_expiry(new_expiry)}",
                )
        return AccountUpdate(record=updated, reprovisioned=reprovisioned, secret=issued)

    # ------------------------------------------------------------------
    # Suspension
    # ------------------------------------------------------------------
    def disable(self, username: str) -> UserRecord:
        """Revoke every backend grant but keep the record (status ``disabled``)."""

        username = validate_username(username)
        with self._user_lock(username):
            record = self.get_user(username)
            if record.status == STATUS_DISABLED:
                return record
            if record.status == STATUS_ACTIVE:
                failures = self._revoke(username, record.services)
                if failures:
                    raise self._revoke_error(username, failures, "record kept active")

            updated = self._write_after_backends(username, self._status_setter(username, STATUS_DISABLED))
            logger.info("User %s disabled", username)
            self._emit(USER_DISABLE_COMPLETE, username, f"User {username} disabled")
        return updated

    def enable(self, username: str) -> AccountUpdate:
        """Restore a disabled account whose expiry has not passed."""

        username = validate_username(username)
        with self._user_lock(username):
            record = self.get_user(username)
            if record.status == STATUS_ACTIVE:
                return AccountUpdate(record=record)
            if record.status == STATUS_EXPIRED or record.is_past_due(self._clock()):
                raise ValidationError(
                    f"User '{username}' has expired; extend the expiry to re-activate it",
                    field="expiry",
                )

            issued = self._reprovision(username, record, record.expiry)

            def _apply(users: Dict[str, UserRecord]) -> UserRecord:
                current = users.get(username)
                if current is None:
                    raise NotFoundError(username)
                changes: Dict[str, object] = {"status": STATUS_ACTIVE, "last_modified": self._clock()}
                if issued is not None:
                    changes["secret_encrypted"] = self._vault.encrypt(issued)
                users[username] = current.replace(**changes)
                return users[username]

            updated = self._write_after_backends(username, _apply)
            logger.info("User %s enabled", username)
            self._emit(USER_ENABLE_COMPLETE, username, f"User {username} enabled")
        return AccountUpdate(record=updated, reprovisioned=True, secret=issued)

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------
    def expire_sweep(self) -> bool:
        """Expire every active user whose expiry has passed.

        Returns ``True`` when at least one record changed.  Users whose grants
        could not be revoked stay active and are retried on the next run.
        """

        now = self._clock()
        snapshot = self._store.read()
        active = snapshot.active_users()
        candidates = sorted(record.username for record in active if record.is_past_due(now))
        self._warn_expiring_soon(active, now)

        expired = 0
        failed = 0
        for username in candidates:
            try:
                if self._expire_one(username, now):
                    expired += 1
            except PanelError as exc:
                failed += 1
                logger.error("Failed to expire %s at stage %s: %s", username, exc.stage, exc)
                self._emit(USER_EXPIRE_FAILED, username, f"Expiry failed at {exc.stage}: {exc}", STATUS_FAILURE)

        logger.info("Expiry sweep completed: %d expired, %d failed", expired, failed)
        return expired > 0

    def _expire_one(self, username: str, now: datetime) -> bool:
        with self._user_lock(username):
            record = self._store.get_user(username)
            # Re-check under the lock: the snapshot may be stale.
            if record is None or record.status != STATUS_ACTIVE or not record.is_past_due(now):
                return False
            failures = self._revoke(username, record.services)
            if failures:
                raise self._revoke_error(username, failures, "record kept active")
            self._write_after_backends(username, self._status_setter(username, STATUS_EXPIRED))
            logger.info("User expired: %s", username)
            self._emit(
                USER_EXPIRE_COMPLETE,
                username,
                f"User {username} expired at {serialize_expiry(record.expiry)}",
            )
        return True

    def _warn_expiring_soon(self, records: Iterable[UserRecord], now: datetime) -> None:
        horizon = now + self._warning_window
        for record in records:
            if record.expiry is None:
                continue
            if now <= record.expiry <= horizon:
                logger.warning("User %s will expire soon: %s", record.username, serialize_expiry(record.expiry))

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------
    def delete(self, username: str, force: bool = False) -> UserRecord:
        username = validate_username(username)
        with self._user_lock(username):
            record = self.get_user(username)
            failures = self._revoke(username, record.services)
            if failures:
                if not force:
                    raise self._revoke_error(username, failures, "record kept")
                logger.warning(
                    "Force deletion of %s continues; manual cleanup required on %s",
                    username,
                    ", ".join(service for service, _ in failures),
                )

            def _remove(users: Dict[str, UserRecord]) -> None:
                if users.pop(username, None) is None:
                    raise NotFoundError(username)

            self._write_after_backends(username, _remove)
            description = f"User {username} deleted"
            if failures:
                description += f" (forced; leftovers on {', '.join(service for service, _ in failures)})"
            logger.info("User deleted successfully: %s", username)
            self._emit(USER_DELETE_COMPLETE, username, description)
        return record

    def purge_inactive(self, max_inactive_days: int = 90) -> List[str]:
        """Force-delete active users untouched for ``max_inactive_days``."""

        if max_inactive_days < 1:
            raise ValidationError("Inactivity window must be at least one day", field="days")
        cutoff = self._clock() - timedelta(days=max_inactive_days)
        stale = [
            record.username
            for record in self._store.list_users(status=STATUS_ACTIVE)
            if record.last_modified < cutoff
        ]

        removed: List[str] = []
        for username in stale:
            logger.info("Cleaning up inactive user: %s", username)
            try:
                self.delete(username, force=True)
            except PanelError as exc:
                logger.error("Failed to clean up %s at stage %s: %s", username, exc.stage, exc)
                continue
            removed.append(username)
        logger.info("Cleanup completed: %d users removed", len(removed))
        return removed

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------
    def record_config_generated(self, username: str) -> UserRecord:
        username = validate_username(username)
        with self._user_lock(username):

            def _bump(users: Dict[str, UserRecord]) -> UserRecord:
                current = users.get(username)
                if current is None:
                    raise NotFoundError(username)
                users[username] = current.replace(
                    configs_generated=current.configs_generated + 1,
                    last_modified=self._clock(),
                )
                return users[username]

            return self._store.write(_bump)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _user_lock(self, username: str) -> Generator[None, None, None]:
        with self._locks.hold(f"{USER_LOCK_PREFIX}{username}", WRITE, self._lock_timeout):
            yield

    def _check_backends(self, services: FrozenSet[str]) -> None:
        missing = [service for service in ordered_services(services) if service not in self._backends]
        if missing:
            raise ValidationError(
                f"No backend is configured for: {', '.join(missing)}", field="services"
            )

    def _call(self, service: str, operation: str, *args: object) -> BackendResult:
        adapter = self._backends.get(service)
        if adapter is None:
            return BackendResult.failure(f"No backend is configured for {service}")
        try:
            result = getattr(adapter, operation)(*args)
        except Exception as exc:
            logger.exception("%s backend raised during %s", service, operation)
            return BackendResult.failure(str(exc) or exc.__class__.__name__)
        if not isinstance(result, BackendResult):
            return BackendResult.failure(f"{service} backend returned an invalid result")
        return result

    def _provision(
        self,
        username: str,
        secret: str,
        services: FrozenSet[str],
        expiry: Optional[datetime],
    ) -> Optional[_ProvisionFailure]:
        provisioned: List[str] = []
        for service in ordered_services(services):
            result = self._call(service, "create_account", username, secret, services)
            if not result.ok:
                return _ProvisionFailure(service, result.message, provisioned)
            provisioned.append(service)
            if expiry is not None:
                result = self._call(service, "set_expiry", username, expiry)
                if not result.ok:
                    return _ProvisionFailure(service, result.message, provisioned)
        return None

    def _reprovision(self, username: str, record: UserRecord, expiry: Optional[datetime]) -> Optional[str]:
        """Recreate the grants of ``record``; returns a secret if one was issued."""

        secret = self._vault.decrypt(record.secret_encrypted)
        issued: Optional[str] = None
        if secret is None:
            secret = issued = generate_secret()
            logger.info("No stored secret for %s; issuing a new one", username)

        failure = self._provision(username, secret, record.services, expiry)
        if failure is not None:
            self._revoke_best_effort(username, failure.provisioned)
            raise BackendError(
                failure.service,
                f"Failed to re-provision {failure.service} access for '{username}': {failure.message}",
            )
        return issued

    def _revoke(self, username: str, services: Iterable[str]) -> List[Tuple[str, str]]:
        failures: List[Tuple[str, str]] = []
        for service in ordered_services(services):
            result = self._call(service, "remove_account", username)
            if not result.ok:
                logger.error("Failed to revoke %s access for %s: %s", service, username, result.message)
                failures.append((service, result.message))
        return failures

    def _revoke_best_effort(self, username: str, services: Iterable[str]) -> None:
        for service in reversed(list(services)):
            result = self._call(service, "remove_account", username)
            if not result.ok:
                logger.warning(
                    "Cleanup of %s access for %s failed: %s; manual cleanup required",
                    service,
                    username,
                    result.message,
                )

    @staticmethod
    def _revoke_error(username: str, failures: List[Tuple[str, str]], outcome: str) -> BackendError:
        names = [service for service, _ in failures]
        details = "; ".join(f"{service}: {message}" for service, message in failures)
        return BackendError(
            names,
            f"Could not revoke {', '.join(names)} access for '{username}' ({outcome}); {details}",
        )

    def _status_setter(self, username: str, status: str) -> Callable[[Dict[str, UserRecord]], UserRecord]:
        def _apply(users: Dict[str, UserRecord]) -> UserRecord:
            current = users.get(username)
            if current is None:
                raise NotFoundError(username)
            users[username] = current.replace(status=status, last_modified=self._clock())
            return users[username]

        return _apply

    def _write_after_backends(self, username: str, mutator: Callable[[Dict[str, UserRecord]], object]):
        try:
            return self._store.write(mutator)
        except PanelError as exc:
            if not isinstance(exc, NotFoundError):
                logger.error(
                    "Backends for %s were changed but the store write failed at stage %s: %s",
                    username,
                    exc.stage,
                    exc,
                )
            raise

    def _emit(self, code: str, username: str, description: str, status: str = STATUS_SUCCESS) -> None:
        event = AuditEvent(
            timestamp=self._clock(),
            event_code=code,
            username=username,
            description=description,
            status=status,
        )
        try:
            self._audit.write(event)
        except Exception:
            logger.exception("Failed to record audit event %s for %s", code, username)


__all__ = ["LifecycleOrchestrator", "CreatedAccount", "AccountUpdate", "USER_LOCK_PREFIX"]
