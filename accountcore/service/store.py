from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, List, Optional, Protocol, Tuple

from accountcore.storage.models import Account, AccountRole


class CredentialStore(Protocol):
    """Storage operations the account services rely on.

    Implementations raise ``AccountNotFound`` for absent ids,
    ``ConstraintViolation`` for duplicate handles or emails and
    ``StorageFailure`` when the backend is unavailable.
    """

    def create_account(
        self,
        *,
        handle: str,
        email: str,
        password_hash: str,
        full_name: str = "",
        role: AccountRole = AccountRole.STANDARD,
        avatar: Optional[str] = None,
        cover_image: Optional[str] = None,
        is_email_verified: bool = False,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Account: ...

    def find_account(self, field: str, value: str) -> Account: ...

    def update_fields(self, account_id: str, **fields: Any) -> Account: ...

    def record_login(
        self, account_id: str, refresh_token: str, *, at: datetime
    ) -> Account: ...

    def swap_refresh_token(
        self, account_id: str, expected: Optional[str], new: Optional[str], **fields: Any
    ) -> bool: ...

    def delete_account(self, account_id: str) -> None: ...

    def list_accounts(
        self,
        *,
        offset: int = 0,
        limit: int = 10,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> Tuple[List[Account], int]: ...

    def bulk_update(self, account_ids: Iterable[str], **fields: Any) -> int: ...

    def bulk_delete(self, account_ids: Iterable[str]) -> int: ...

    def ping(self) -> bool: ...
