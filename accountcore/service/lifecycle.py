"""Account lifecycle states and the single gate every entry point consults.

    Unverified --verify_email--> Active
    Unverified/Active --deactivate--> Deactivated --reactivate--> (previous)
    any --delete--> Deleted (terminal, record removed)

Unverified accounts pass the gate unless verified email is required by
configuration.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from accountcore.logging import get_logger
from accountcore.service.passwords import PasswordCredential
from accountcore.service.result import Err, ErrorKind, Ok, Result, err
from accountcore.service.store import CredentialStore
from accountcore.service.tokens import TokenCodec
from accountcore.storage.errors import AccountNotFound, StorageFailure
from accountcore.storage.models import (
    Account,
    Identity,
    can_perform_action,
    identity_of,
    utcnow,
)

if TYPE_CHECKING:
    from accountcore.service.sessions import SessionManager

logger = get_logger(__name__)

DEFAULT_DEACTIVATION_REASON = "User requested deactivation"


class AccountState(str, Enum):
    UNVERIFIED = "unverified"
    ACTIVE = "active"
    DEACTIVATED = "deactivated"
    DELETED = "deleted"


def state_of(account: Optional[Account]) -> AccountState:
    if account is None:
        return AccountState.DELETED
    if not account.is_active:
        return AccountState.DEACTIVATED
    if not account.is_email_verified:
        return AccountState.UNVERIFIED
    return AccountState.ACTIVE


def gate(account: Optional[Account], *, require_verified: bool = False) -> Result[Account]:
    """Admit ``account`` to an authenticated operation or explain why not."""
    state = state_of(account)
    if state == AccountState.DELETED:
        return err(ErrorKind.UNAUTHENTICATED, "account no longer exists")
    if state == AccountState.DEACTIVATED:
        logger.info("gate_refused_deactivated", account_id=account.id)
        return err(ErrorKind.UNAUTHENTICATED, "account is deactivated")
    if require_verified and not can_perform_action(account):
        logger.info("gate_refused_unverified", account_id=account.id)
        return err(ErrorKind.UNAUTHENTICATED, "email address is not verified")
    return Ok(account)


class AccountLifecycle:
    """Moves accounts between lifecycle states.

    Every transition a user can trigger on their own account (deactivate,
    reactivate, delete) re-confirms the password first.
    """

    def __init__(
        self,
        store: CredentialStore,
        passwords: PasswordCredential,
        sessions: "SessionManager",
        verify_codec: TokenCodec,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.sessions = sessions
        self.verify_codec = verify_codec
        self._clock = clock

    def issue_verification_token(self, account: Account) -> str:
        return self.verify_codec.issue({"sub": account.id, "email": account.email})

    def _confirm_password(self, account_id: str, password: str) -> Result[Account]:
        try:
            account = self.store.get_account(account_id)
        except AccountNotFound:
            return err(ErrorKind.NOT_FOUND, "account not found")
        except StorageFailure as exc:
            logger.error("lifecycle_load_failed", account_id=account_id, error=str(exc))
            return err(ErrorKind.INTERNAL, "could not load account")
        if not self.passwords.verify(password, account.password_hash):
            logger.info("lifecycle_password_rejected", account_id=account_id)
            return err(ErrorKind.INVALID_CREDENTIAL, "invalid credentials")
        return Ok(account)

    def verify_email(self, token: str) -> Result[Account]:
        verified = self.verify_codec.verify(token)
        if isinstance(verified, Err):
            return err(ErrorKind.INVALID_TOKEN, "invalid or expired verification token")
        claims = verified.value
        try:
            account = self.store.get_account(str(claims.get("sub")))
        except AccountNotFound:
            return err(ErrorKind.INVALID_TOKEN, "invalid or expired verification token")
        except StorageFailure as exc:
            logger.error("verify_email_load_failed", error=str(exc))
            return err(ErrorKind.INTERNAL, "could not load account")
        if claims.get("email") != account.email:
            # the address changed after this token was mailed
            return err(ErrorKind.INVALID_TOKEN, "invalid or expired verification token")
        if account.is_email_verified:
            return Ok(account)
        try:
            account = self.store.update_fields(account.id, is_email_verified=True)
        except (AccountNotFound, StorageFailure) as exc:
            logger.error("verify_email_persist_failed", account_id=account.id, error=str(exc))
            return err(ErrorKind.INTERNAL, "could not verify email")
        logger.info("email_verified", account_id=account.id)
        return Ok(account)

    def deactivate(
        self, identity: Identity, password: str, reason: Optional[str] = None
    ) -> Result[None]:
        confirmed = self._confirm_password(identity.id, password)
        if isinstance(confirmed, Err):
            return confirmed
        try:
            self.store.update_fields(
                identity.id,
                is_active=False,
                deactivation_reason=reason or DEFAULT_DEACTIVATION_REASON,
                deactivated_at=self._clock(),
            )
        except AccountNotFound:
            return err(ErrorKind.NOT_FOUND, "account not found")
        except StorageFailure as exc:
            logger.error("deactivate_failed", account_id=identity.id, error=str(exc))
            return err(ErrorKind.INTERNAL, "could not deactivate account")
        logger.info("account_deactivated", account_id=identity.id)
        return self.sessions.logout(identity)

    def reactivate(self, email: str, password: str) -> Result[bool]:
        """Reactivate by email and password; ``Ok(False)`` if already active."""
        try:
            account = self.store.find_account("email", email)
        except AccountNotFound:
            return err(ErrorKind.INVALID_CREDENTIAL, "invalid credentials")
        except StorageFailure as exc:
            logger.error("reactivate_load_failed", error=str(exc))
            return err(ErrorKind.INTERNAL, "could not load account")
        if not self.passwords.verify(password, account.password_hash):
            return err(ErrorKind.INVALID_CREDENTIAL, "invalid credentials")
        if account.is_active:
            return Ok(False)
        try:
            self.store.update_fields(
                account.id, is_active=True, deactivation_reason=None, deactivated_at=None
            )
        except (AccountNotFound, StorageFailure) as exc:
            logger.error("reactivate_failed", account_id=account.id, error=str(exc))
            return err(ErrorKind.INTERNAL, "could not reactivate account")
        logger.info("account_reactivated", account_id=account.id)
        return Ok(True)

    def delete(self, identity: Identity, password: str) -> Result[None]:
        confirmed = self._confirm_password(identity.id, password)
        if isinstance(confirmed, Err):
            return confirmed
        logged_out = self.sessions.logout(identity_of(confirmed.value))
        if isinstance(logged_out, Err):
            return logged_out
        try:
            self.store.delete_account(identity.id)
        except AccountNotFound:
            # a concurrent delete finished first
            pass
        except StorageFailure as exc:
            logger.error("delete_failed", account_id=identity.id, error=str(exc))
            return err(ErrorKind.INTERNAL, "could not delete account")
        logger.info("account_deleted", account_id=identity.id)
        return Ok(None)
