from __future__ import annotations

from typing import Optional

from accountcore.logging import get_logger
from accountcore.service.lifecycle import gate
from accountcore.service.result import Err, ErrorKind, Ok, Result, err
from accountcore.service.store import CredentialStore
from accountcore.service.tokens import TokenCodec
from accountcore.storage.errors import AccountNotFound, StorageFailure
from accountcore.storage.models import Identity, identity_of

logger = get_logger(__name__)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class RequestAuthenticator:
    """Resolves an access token to the identity of a still-admissible account.

    The account is reloaded on every call so a deactivation or deletion takes
    effect immediately, even for access tokens that have not expired. This
    never refreshes; renewal goes through ``SessionManager.refresh``.
    """

    def __init__(
        self,
        store: CredentialStore,
        access_codec: TokenCodec,
        *,
        require_verified_email: bool = False,
    ) -> None:
        self.store = store
        self.access_codec = access_codec
        self.require_verified_email = require_verified_email

    def authenticate(self, access_token: Optional[str]) -> Result[Identity]:
        if not access_token:
            return err(ErrorKind.UNAUTHENTICATED, "authentication required")
        verified = self.access_codec.verify(access_token)
        if isinstance(verified, Err):
            return err(ErrorKind.UNAUTHENTICATED, "invalid or expired access token")
        account_id = verified.value.get("sub")
        if not isinstance(account_id, str):
            return err(ErrorKind.UNAUTHENTICATED, "invalid or expired access token")

        try:
            account = self.store.get_account(account_id)
        except AccountNotFound:
            account = None
        except StorageFailure as exc:
            logger.error("authenticate_load_failed", account_id=account_id, error=str(exc))
            return err(ErrorKind.INTERNAL, "could not load account")

        admitted = gate(account, require_verified=self.require_verified_email)
        if isinstance(admitted, Err):
            return admitted
        return Ok(identity_of(admitted.value))
