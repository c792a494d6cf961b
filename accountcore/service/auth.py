from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from accountcore.config import Settings, TokenPurpose
from accountcore.logging import get_logger
from accountcore.service.authenticator import RequestAuthenticator
from accountcore.service.lifecycle import AccountLifecycle, gate
from accountcore.service.passwords import PasswordCredential
from accountcore.service.result import Err, ErrorKind, Ok, Result, err
from accountcore.service.sessions import SessionManager, TokenPair
from accountcore.service.store import CredentialStore
from accountcore.service.tokens import TokenCodec
from accountcore.storage.errors import AccountNotFound, ConstraintViolation, StorageFailure
from accountcore.storage.memory import SORTABLE_FIELDS
from accountcore.storage.models import (
    Account,
    AccountRole,
    Identity,
    identity_of,
    is_admin,
    is_moderator,
    merge_preferences,
    public_projection,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

BULK_OPERATIONS = frozenset({"activate", "deactivate", "delete", "update"})
BULK_UPDATABLE_FIELDS = frozenset(
    {"full_name", "role", "is_email_verified", "avatar", "cover_image"}
)
ADMIN_DEACTIVATION_REASON = "Deactivated by administrator"
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class Registration:
    account: Dict[str, Any]
    tokens: TokenPair
    verification_token: str


@dataclass(frozen=True)
class LoginOutcome:
    account: Dict[str, Any]
    tokens: TokenPair


@dataclass(frozen=True)
class VerificationRequest:
    email: str
    # None when the address is already verified
    token: Optional[str]


def _missing(**values: Any) -> Optional[Err]:
    absent = [name for name, value in values.items() if not value or not str(value).strip()]
    if absent:
        return err(ErrorKind.INVALID_INPUT, "required fields missing", fields=absent)
    return None


def _bad_bulk_values(fields: Dict[str, Any]) -> List[str]:
    """Names of bulk-update fields whose value has the wrong type."""
    bad = []
    for name, value in fields.items():
        if name == "full_name":
            ok = isinstance(value, str) and bool(value.strip())
        elif name == "is_email_verified":
            ok = isinstance(value, bool)
        elif name in ("avatar", "cover_image"):
            ok = value is None or isinstance(value, str)
        else:
            ok = True
        if not ok:
            bad.append(name)
    return sorted(bad)


class AuthService:
    """Account registration, sessions, lifecycle and password flows.

    Each public method returns an ``Ok``/``Err`` result; nothing here raises
    for an expected failure. Storage exceptions are converted at the call
    site by ``_guard``.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        passwords: Optional[PasswordCredential] = None,
        token_clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger
        self.passwords = passwords or PasswordCredential(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )
        self.access_codec = TokenCodec.from_settings(
            settings, TokenPurpose.ACCESS, clock=token_clock
        )
        self.refresh_codec = TokenCodec.from_settings(
            settings, TokenPurpose.REFRESH, clock=token_clock
        )
        self.reset_codec = TokenCodec.from_settings(
            settings, TokenPurpose.RESET, clock=token_clock
        )
        self.verify_codec = TokenCodec.from_settings(
            settings, TokenPurpose.VERIFY, clock=token_clock
        )
        self.sessions = SessionManager(
            store,
            access_codec=self.access_codec,
            refresh_codec=self.refresh_codec,
            require_verified_email=settings.require_verified_email,
        )
        self.lifecycle = AccountLifecycle(
            store, self.passwords, self.sessions, self.verify_codec
        )
        self.authenticator = RequestAuthenticator(
            store,
            self.access_codec,
            require_verified_email=settings.require_verified_email,
        )

    def _guard(self, event: str, call: Callable[[], T]) -> Result[T]:
        try:
            return Ok(call())
        except AccountNotFound:
            return err(ErrorKind.NOT_FOUND, "account not found")
        except ConstraintViolation as exc:
            return err(ErrorKind.CONFLICT, exc.message, **exc.detail)
        except StorageFailure as exc:
            self.logger.error(event, error=str(exc))
            return err(ErrorKind.INTERNAL, "account storage unavailable")

    # -- registration and sessions -------------------------------------------------

    async def register(
        self,
        handle: str,
        email: str,
        full_name: str,
        password: str,
        *,
        avatar: Optional[str] = None,
        cover_image: Optional[str] = None,
    ) -> Result[Registration]:
        if not self.settings.allow_signup:
            return err(ErrorKind.FORBIDDEN, "signup disabled")
        invalid = _missing(handle=handle, email=email, full_name=full_name, password=password)
        if invalid:
            return invalid
        created = self._guard(
            "register_persist_failed",
            lambda: self.store.create_account(
                handle=handle,
                email=email,
                full_name=full_name.strip(),
                password_hash=self.passwords.hash(password),
                avatar=avatar,
                cover_image=cover_image,
            ),
        )
        if isinstance(created, Err):
            if created.kind == ErrorKind.CONFLICT:
                self.logger.info("register_conflict", field=created.detail.get("field"))
                return err(
                    ErrorKind.CONFLICT,
                    "account with this handle or email already exists",
                    **created.detail,
                )
            return created
        account = created.value
        self.logger.info("account_registered", account_id=account.id)
        session = self.sessions.login(identity_of(account))
        if isinstance(session, Err):
            return session
        return Ok(
            Registration(
                account=public_projection(account),
                tokens=session.value,
                verification_token=self.lifecycle.issue_verification_token(account),
            )
        )

    async def admin_create_account(
        self,
        handle: str,
        email: str,
        password: str,
        *,
        full_name: str = "Administrator",
        role: AccountRole = AccountRole.ADMIN,
    ) -> Result[Dict[str, Any]]:
        """Create a verified account for operator tooling.

        Works whether or not public signup is enabled and starts no session.
        """
        invalid = _missing(handle=handle, email=email, full_name=full_name, password=password)
        if invalid:
            return invalid
        created = self._guard(
            "admin_create_failed",
            lambda: self.store.create_account(
                handle=handle,
                email=email,
                full_name=full_name.strip(),
                password_hash=self.passwords.hash(password),
                role=AccountRole(role),
                is_email_verified=True,
            ),
        )
        if isinstance(created, Err):
            return created
        account = created.value
        self.logger.info("admin_account_created", account_id=account.id, role=account.role.value)
        return Ok(public_projection(account))

    async def login(
        self,
        password: str,
        *,
        handle: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Result[LoginOutcome]:
        if not (handle or email):
            return err(ErrorKind.INVALID_INPUT, "handle or email is required")
        invalid = _missing(password=password)
        if invalid:
            return invalid
        field, value = ("email", email) if email else ("handle", handle)
        found = self._guard("login_load_failed", lambda: self.store.find_account(field, value))
        if isinstance(found, Err):
            if found.kind == ErrorKind.NOT_FOUND:
                self.logger.info("login_failed", reason="unknown_account")
                return err(ErrorKind.INVALID_CREDENTIAL, "invalid credentials")
            return found
        account = found.value
        if not self.passwords.verify(password, account.password_hash):
            self.logger.info("login_failed", reason="bad_password", account_id=account.id)
            return err(ErrorKind.INVALID_CREDENTIAL, "invalid credentials")
        admitted = gate(account, require_verified=self.settings.require_verified_email)
        if isinstance(admitted, Err):
            # same answer as a bad password; the real reason stays in the logs
            self.logger.info("login_failed", reason=admitted.message, account_id=account.id)
            return err(ErrorKind.UNAUTHENTICATED, "invalid credentials")
        session = self.sessions.login(identity_of(account))
        if isinstance(session, Err):
            return session
        refreshed = self._guard("login_reload_failed", lambda: self.store.get_account(account.id))
        if isinstance(refreshed, Err):
            return refreshed
        self.logger.info("login_succeeded", account_id=account.id)
        return Ok(LoginOutcome(account=public_projection(refreshed.value), tokens=session.value))

    async def refresh(self, refresh_token: Optional[str]) -> Result[TokenPair]:
        if not refresh_token:
            return err(ErrorKind.UNAUTHENTICATED, "refresh token required")
        return self.sessions.refresh(refresh_token)

    async def logout(self, identity: Identity) -> Result[None]:
        return self.sessions.logout(identity)

    async def authenticate(self, access_token: Optional[str]) -> Result[Identity]:
        return self.authenticator.authenticate(access_token)

    # -- email verification ------------------------------------------------------

    async def verify_email(self, token: str) -> Result[Dict[str, Any]]:
        verified = self.lifecycle.verify_email(token)
        if isinstance(verified, Err):
            return verified
        return Ok(public_projection(verified.value))

    async def resend_verification(self, email: str) -> Result[VerificationRequest]:
        invalid = _missing(email=email)
        if invalid:
            return invalid
        found = self._guard("resend_load_failed", lambda: self.store.find_account("email", email))
        if isinstance(found, Err):
            return found
        account = found.value
        if account.is_email_verified:
            return Ok(VerificationRequest(email=account.email, token=None))
        self.logger.info("verification_reissued", account_id=account.id)
        return Ok(
            VerificationRequest(
                email=account.email,
                token=self.lifecycle.issue_verification_token(account),
            )
        )

    # -- passwords ------------------------------------------------------------------

    async def change_password(
        self, identity: Identity, old_password: str, new_password: str
    ) -> Result[None]:
        invalid = _missing(old_password=old_password, new_password=new_password)
        if invalid:
            return invalid
        loaded = self._guard("change_password_load_failed", lambda: self.store.get_account(identity.id))
        if isinstance(loaded, Err):
            return loaded
        if not self.passwords.verify(old_password, loaded.value.password_hash):
            self.logger.info("password_change_rejected", account_id=identity.id)
            return err(ErrorKind.INVALID_CREDENTIAL, "invalid credentials")
        updated = self._guard(
            "change_password_persist_failed",
            lambda: self.store.update_fields(
                identity.id, password_hash=self.passwords.hash(new_password)
            ),
        )
        if isinstance(updated, Err):
            return updated
        self.logger.info("password_changed", account_id=identity.id)
        return Ok(None)

    async def request_password_reset(self, email: str) -> Result[str]:
        invalid = _missing(email=email)
        if invalid:
            return invalid
        found = self._guard("reset_load_failed", lambda: self.store.find_account("email", email))
        if isinstance(found, Err):
            return found
        account = found.value
        token = self.reset_codec.issue({"sub": account.id, "email": account.email})
        self.logger.info("password_reset_requested", account_id=account.id)
        return Ok(token)

    async def complete_password_reset(self, token: str, new_password: str) -> Result[None]:
        invalid = _missing(token=token, new_password=new_password)
        if invalid:
            return invalid
        verified = self.reset_codec.verify(token)
        if isinstance(verified, Err):
            return err(ErrorKind.INVALID_TOKEN, "invalid or expired reset token")
        claims = verified.value
        loaded = self._guard(
            "reset_account_load_failed", lambda: self.store.get_account(str(claims.get("sub")))
        )
        if isinstance(loaded, Err):
            if loaded.kind == ErrorKind.NOT_FOUND:
                return err(ErrorKind.INVALID_TOKEN, "invalid or expired reset token")
            return loaded
        if claims.get("email") != loaded.value.email:
            return err(ErrorKind.INVALID_TOKEN, "invalid or expired reset token")
        updated = self._guard(
            "reset_persist_failed",
            lambda: self.store.update_fields(
                loaded.value.id, password_hash=self.passwords.hash(new_password)
            ),
        )
        if isinstance(updated, Err):
            return updated
        self.logger.info("password_reset_completed", account_id=loaded.value.id)
        return Ok(None)

    # -- lifecycle ------------------------------------------------------------------

    async def deactivate(
        self, identity: Identity, password: str, reason: Optional[str] = None
    ) -> Result[None]:
        invalid = _missing(password=password)
        if invalid:
            return invalid
        return self.lifecycle.deactivate(identity, password, reason)

    async def reactivate(self, email: str, password: str) -> Result[bool]:
        invalid = _missing(email=email, password=password)
        if invalid:
            return invalid
        return self.lifecycle.reactivate(email, password)

    async def delete(self, identity: Identity, password: str) -> Result[None]:
        invalid = _missing(password=password)
        if invalid:
            return invalid
        return self.lifecycle.delete(identity, password)

    # -- profile --------------------------------------------------------------------

    async def get_account(self, identity: Identity) -> Result[Dict[str, Any]]:
        loaded = self._guard("profile_load_failed", lambda: self.store.get_account(identity.id))
        if isinstance(loaded, Err):
            return loaded
        return Ok(public_projection(loaded.value))

    async def update_details(
        self,
        identity: Identity,
        *,
        full_name: Optional[str] = None,
        email: Optional[str] = None,
        avatar: Optional[str] = None,
        cover_image: Optional[str] = None,
    ) -> Result[Dict[str, Any]]:
        changes = {
            name: value
            for name, value in (
                ("full_name", full_name),
                ("email", email),
                ("avatar", avatar),
                ("cover_image", cover_image),
            )
            if value is not None
        }
        if not changes:
            return err(ErrorKind.INVALID_INPUT, "no account fields to update")
        updated = self._guard(
            "profile_persist_failed", lambda: self.store.update_fields(identity.id, **changes)
        )
        if isinstance(updated, Err):
            return updated
        self.logger.info("account_updated", account_id=identity.id, fields=sorted(changes))
        return Ok(public_projection(updated.value))

    async def get_preferences(self, identity: Identity) -> Result[Dict[str, Any]]:
        loaded = self._guard("preferences_load_failed", lambda: self.store.get_account(identity.id))
        if isinstance(loaded, Err):
            return loaded
        return Ok(loaded.value.preferences)

    async def update_preferences(
        self, identity: Identity, changes: Dict[str, Any]
    ) -> Result[Dict[str, Any]]:
        if not changes:
            return err(ErrorKind.INVALID_INPUT, "no preferences to update")
        loaded = self._guard("preferences_load_failed", lambda: self.store.get_account(identity.id))
        if isinstance(loaded, Err):
            return loaded
        merged = merge_preferences(loaded.value.preferences, changes)
        updated = self._guard(
            "preferences_persist_failed",
            lambda: self.store.update_fields(identity.id, preferences=merged),
        )
        if isinstance(updated, Err):
            return updated
        return Ok(updated.value.preferences)

    # -- administration -------------------------------------------------------------

    @staticmethod
    def _authorize(actor: Identity, check: Callable[[Identity], bool]) -> Optional[Err]:
        if not check(actor):
            logger.warning("admin_access_denied", account_id=actor.id, role=actor.role.value)
            return err(ErrorKind.FORBIDDEN, "insufficient role")
        return None

    async def list_accounts(
        self,
        actor: Identity,
        *,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Result[Dict[str, Any]]:
        denied = self._authorize(actor, is_moderator)
        if denied:
            return denied
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            return err(ErrorKind.INVALID_INPUT, "invalid pagination", page=page, limit=limit)
        if sort_by not in SORTABLE_FIELDS or sort_order not in ("asc", "desc"):
            return err(ErrorKind.INVALID_INPUT, "invalid sort", sort_by=sort_by)
        listed = self._guard(
            "admin_list_failed",
            lambda: self.store.list_accounts(
                offset=(page - 1) * limit,
                limit=limit,
                sort_by=sort_by,
                descending=sort_order == "desc",
            ),
        )
        if isinstance(listed, Err):
            return listed
        accounts, total = listed.value
        return Ok(
            {
                "accounts": [public_projection(a) for a in accounts],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": math.ceil(total / limit),
                },
            }
        )

    async def update_status(
        self,
        actor: Identity,
        account_id: str,
        *,
        is_active: Optional[bool] = None,
        is_email_verified: Optional[bool] = None,
        role: Optional[str] = None,
    ) -> Result[Dict[str, Any]]:
        denied = self._authorize(actor, is_admin)
        if denied:
            return denied
        changes: Dict[str, Any] = {}
        if is_email_verified is not None:
            changes["is_email_verified"] = is_email_verified
        if role is not None:
            try:
                changes["role"] = AccountRole(role)
            except ValueError:
                return err(ErrorKind.INVALID_INPUT, "unknown role", role=role)
        if is_active is True:
            changes.update(is_active=True, deactivation_reason=None, deactivated_at=None)
        elif is_active is False:
            changes.update(
                is_active=False,
                deactivation_reason=ADMIN_DEACTIVATION_REASON,
                deactivated_at=utcnow(),
            )
        if not changes:
            return err(ErrorKind.INVALID_INPUT, "no status fields to update")
        updated = self._guard(
            "admin_status_failed", lambda: self.store.update_fields(account_id, **changes)
        )
        if isinstance(updated, Err):
            return updated
        account: Account = updated.value
        if is_active is False:
            logged_out = self.sessions.logout(identity_of(account))
            if isinstance(logged_out, Err):
                return logged_out
        self.logger.info(
            "admin_status_updated",
            actor_id=actor.id,
            account_id=account_id,
            fields=sorted(changes),
        )
        return Ok(public_projection(account))

    async def bulk_operation(
        self,
        actor: Identity,
        operation: str,
        account_ids: Iterable[str],
        data: Optional[Dict[str, Any]] = None,
    ) -> Result[Dict[str, Any]]:
        denied = self._authorize(actor, is_admin)
        if denied:
            return denied
        ids: List[str] = [i for i in account_ids if i]
        if operation not in BULK_OPERATIONS:
            return err(ErrorKind.INVALID_INPUT, "invalid operation", operation=operation)
        if not ids:
            return err(ErrorKind.INVALID_INPUT, "account_ids must not be empty")

        if operation == "activate":
            changed = self._guard(
                "admin_bulk_failed",
                lambda: self.store.bulk_update(
                    ids, is_active=True, deactivation_reason=None, deactivated_at=None
                ),
            )
        elif operation == "deactivate":
            changed = self._guard(
                "admin_bulk_failed",
                lambda: self.store.bulk_update(
                    ids,
                    is_active=False,
                    deactivation_reason=ADMIN_DEACTIVATION_REASON,
                    deactivated_at=utcnow(),
                ),
            )
            if isinstance(changed, Ok):
                logged_out = self.sessions.logout_many(ids)
                if isinstance(logged_out, Err):
                    return logged_out
        elif operation == "delete":
            changed = self._guard("admin_bulk_failed", lambda: self.store.bulk_delete(ids))
        else:
            fields = dict(data or {})
            rejected = sorted(set(fields) - BULK_UPDATABLE_FIELDS)
            if not fields or rejected:
                return err(ErrorKind.INVALID_INPUT, "invalid update data", fields=rejected)
            mistyped = _bad_bulk_values(fields)
            if mistyped:
                return err(ErrorKind.INVALID_INPUT, "invalid update data", fields=mistyped)
            if "role" in fields:
                try:
                    fields["role"] = AccountRole(fields["role"])
                except ValueError:
                    return err(ErrorKind.INVALID_INPUT, "unknown role", role=fields["role"])
            changed = self._guard(
                "admin_bulk_failed", lambda: self.store.bulk_update(ids, **fields)
            )
        if isinstance(changed, Err):
            return changed
        self.logger.info(
            "admin_bulk_operation",
            actor_id=actor.id,
            operation=operation,
            modified=changed.value,
        )
        return Ok({"operation": operation, "modified_count": changed.value})

    async def account_activity(self, actor: Identity, account_id: str) -> Result[Dict[str, Any]]:
        denied = self._authorize(actor, is_moderator)
        if denied:
            return denied
        loaded = self._guard("admin_activity_failed", lambda: self.store.get_account(account_id))
        if isinstance(loaded, Err):
            return loaded
        account = loaded.value
        return Ok(
            {
                "account_id": account.id,
                "account_created": account.created_at,
                "last_login": account.last_login_at,
                "last_activity": account.last_activity_at,
                "total_logins": account.login_count,
            }
        )
