from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

from accountcore.logging import get_logger
from accountcore.service.lifecycle import gate
from accountcore.service.result import Err, ErrorKind, Ok, Result, err
from accountcore.service.store import CredentialStore
from accountcore.service.tokens import TokenCodec
from accountcore.storage.errors import AccountNotFound, StorageFailure
from accountcore.storage.models import Identity, identity_of, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int
    token_type: str = "bearer"


class SessionManager:
    """Issues, rotates and revokes the single session each account may hold.

    The account's stored refresh token is the session: issuing a new one
    overwrites the old value, so only the most recently issued refresh token
    can ever be exchanged.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        access_codec: TokenCodec,
        refresh_codec: TokenCodec,
        require_verified_email: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.access_codec = access_codec
        self.refresh_codec = refresh_codec
        self.require_verified_email = require_verified_email
        self._clock = clock

    def _issue(self, identity: Identity) -> TokenPair:
        access = self.access_codec.issue(
            {
                "sub": identity.id,
                "email": identity.email,
                "handle": identity.handle,
                "role": identity.role.value,
            }
        )
        refresh = self.refresh_codec.issue({"sub": identity.id})
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_in=int(self.access_codec.lifetime.total_seconds()),
            refresh_expires_in=int(self.refresh_codec.lifetime.total_seconds()),
        )

    def login(self, identity: Identity) -> Result[TokenPair]:
        pair = self._issue(identity)
        try:
            self.store.record_login(identity.id, pair.refresh_token, at=self._clock())
        except AccountNotFound:
            return err(ErrorKind.UNAUTHENTICATED, "account not found")
        except StorageFailure as exc:
            logger.error("session_persist_failed", account_id=identity.id, error=str(exc))
            return err(ErrorKind.INTERNAL, "could not start session")
        logger.info("session_started", account_id=identity.id)
        return Ok(pair)

    def refresh(self, presented: str) -> Result[TokenPair]:
        verified = self.refresh_codec.verify(presented)
        if isinstance(verified, Err):
            return err(ErrorKind.UNAUTHENTICATED, "invalid refresh token")
        account_id = verified.value.get("sub")
        if not isinstance(account_id, str):
            return err(ErrorKind.UNAUTHENTICATED, "invalid refresh token")

        try:
            account = self.store.get_account(account_id)
        except AccountNotFound:
            account = None
        except StorageFailure as exc:
            logger.error("session_load_failed", account_id=account_id, error=str(exc))
            return err(ErrorKind.INTERNAL, "could not load session")
        admitted = gate(account, require_verified=self.require_verified_email)
        if isinstance(admitted, Err):
            return admitted

        if account.refresh_token != presented:
            logger.warning("refresh_token_superseded", account_id=account_id)
            return err(ErrorKind.REVOKED, "refresh token has been revoked")

        pair = self._issue(identity_of(account))
        try:
            won = self.store.swap_refresh_token(
                account_id, presented, pair.refresh_token, last_activity_at=self._clock()
            )
        except AccountNotFound:
            return err(ErrorKind.UNAUTHENTICATED, "account not found")
        except StorageFailure as exc:
            logger.error("session_rotate_failed", account_id=account_id, error=str(exc))
            return err(ErrorKind.INTERNAL, "could not rotate session")
        if not won:
            # another refresh with the same token got there first
            logger.warning("refresh_token_race_lost", account_id=account_id)
            return err(ErrorKind.REVOKED, "refresh token has been revoked")
        logger.info("session_refreshed", account_id=account_id)
        return Ok(pair)

    def logout(self, identity: Identity) -> Result[None]:
        try:
            self.store.update_fields(identity.id, refresh_token=None)
        except AccountNotFound:
            # already gone; logging out is idempotent
            pass
        except StorageFailure as exc:
            logger.error("session_revoke_failed", account_id=identity.id, error=str(exc))
            return err(ErrorKind.INTERNAL, "could not end session")
        logger.info("session_ended", account_id=identity.id)
        return Ok(None)

    def logout_many(self, account_ids: Iterable[str]) -> Result[int]:
        try:
            revoked = self.store.bulk_update(account_ids, refresh_token=None)
        except StorageFailure as exc:
            logger.error("session_bulk_revoke_failed", error=str(exc))
            return err(ErrorKind.INTERNAL, "could not end sessions")
        logger.info("sessions_ended", count=revoked)
        return Ok(revoked)
