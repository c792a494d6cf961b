from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from accountcore.logging import get_logger
from accountcore.storage.errors import (
    AccountNotFound,
    ConstraintViolation,
    StorageFailure,
)
from accountcore.storage.models import (
    UNIQUE_FIELDS,
    UPDATABLE_FIELDS,
    Account,
    AccountRole,
    default_preferences,
    normalize_identifier,
    utcnow,
)

SORTABLE_FIELDS = frozenset(
    {"created_at", "updated_at", "last_login_at", "login_count", "handle", "email"}
)


class MemoryStore:
    """In-process account store persisted to a JSON file under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/accountcore") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "account_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _require(self, account_id: str) -> Account:
        account = self.accounts.get(account_id)
        if account is None:
            raise AccountNotFound("id", account_id)
        return account

    def _check_unique(self, fields: Dict[str, Any], *, exclude_id: Optional[str] = None) -> None:
        for name in UNIQUE_FIELDS:
            if name not in fields:
                continue
            value = fields[name]
            for existing in self.accounts.values():
                if existing.id != exclude_id and getattr(existing, name) == value:
                    raise ConstraintViolation(f"{name} already exists", {"field": name})

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
    ) -> Account:
        with self._data_lock:
            normalized = {
                "handle": normalize_identifier(handle),
                "email": normalize_identifier(email),
            }
            self._check_unique(normalized)
            account = Account(
                id=str(uuid.uuid4()),
                password_hash=password_hash,
                full_name=full_name,
                role=AccountRole(role),
                avatar=avatar,
                cover_image=cover_image,
                is_email_verified=is_email_verified,
                **normalized,
            )
            staged = dict(self.accounts)
            staged[account.id] = account
            self._commit(staged)
            return copy.deepcopy(account)

    def get_account(self, account_id: str) -> Account:
        with self._data_lock:
            return copy.deepcopy(self._require(account_id))

    def find_account(self, field: str, value: str) -> Account:
        if field not in UNIQUE_FIELDS:
            raise ValueError(f"{field} is not a unique account field")
        needle = normalize_identifier(value)
        with self._data_lock:
            for account in self.accounts.values():
                if getattr(account, field) == needle:
                    return copy.deepcopy(account)
        raise AccountNotFound(field, value)

    def update_fields(self, account_id: str, **fields: Any) -> Account:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update fields: {', '.join(sorted(unknown))}")
        with self._data_lock:
            account = copy.deepcopy(self._require(account_id))
            for name in UNIQUE_FIELDS:
                if fields.get(name) is not None:
                    fields[name] = normalize_identifier(fields[name])
            self._check_unique(fields, exclude_id=account_id)
            if "role" in fields:
                fields["role"] = AccountRole(fields["role"])
            for name, value in fields.items():
                setattr(account, name, value)
            account.updated_at = utcnow()
            self._commit({**self.accounts, account_id: account})
            return copy.deepcopy(account)

    def record_login(self, account_id: str, refresh_token: str, *, at: datetime) -> Account:
        with self._data_lock:
            account = copy.deepcopy(self._require(account_id))
            account.refresh_token = refresh_token
            account.login_count += 1
            account.last_login_at = at
            account.last_activity_at = at
            account.updated_at = at
            self._commit({**self.accounts, account_id: account})
            return copy.deepcopy(account)

    def swap_refresh_token(
        self, account_id: str, expected: Optional[str], new: Optional[str], **fields: Any
    ) -> bool:
        """Replace the stored refresh token only if it still equals ``expected``."""
        with self._data_lock:
            account = self._require(account_id)
            if account.refresh_token != expected:
                return False
            account = copy.deepcopy(account)
            account.refresh_token = new
            for name, value in fields.items():
                setattr(account, name, value)
            account.updated_at = utcnow()
            self._commit({**self.accounts, account_id: account})
            return True

    def delete_account(self, account_id: str) -> None:
        with self._data_lock:
            self._require(account_id)
            staged = dict(self.accounts)
            del staged[account_id]
            self._commit(staged)

    def list_accounts(
        self,
        *,
        offset: int = 0,
        limit: int = 10,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> Tuple[List[Account], int]:
        if sort_by not in SORTABLE_FIELDS:
            raise ValueError(f"cannot sort by {sort_by}")
        with self._data_lock:
            present = [a for a in self.accounts.values() if getattr(a, sort_by) is not None]
            missing = [a for a in self.accounts.values() if getattr(a, sort_by) is None]
            present.sort(key=lambda a: getattr(a, sort_by), reverse=descending)
            ordered = present + missing
            page = ordered[offset : offset + limit]
            return [copy.deepcopy(a) for a in page], len(ordered)

    def bulk_update(self, account_ids: Iterable[str], **fields: Any) -> int:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown or set(fields) & set(UNIQUE_FIELDS):
            raise ValueError("bulk updates cannot touch unique or unknown fields")
        with self._data_lock:
            now = utcnow()
            staged = dict(self.accounts)
            changed = 0
            for account_id in set(account_ids):
                if account_id not in staged:
                    continue
                account = copy.deepcopy(staged[account_id])
                for name, value in fields.items():
                    setattr(account, name, AccountRole(value) if name == "role" else value)
                account.updated_at = now
                staged[account_id] = account
                changed += 1
            if changed:
                self._commit(staged)
            return changed

    def bulk_delete(self, account_ids: Iterable[str]) -> int:
        with self._data_lock:
            staged = dict(self.accounts)
            removed = 0
            for account_id in set(account_ids):
                if staged.pop(account_id, None) is not None:
                    removed += 1
            if removed:
                self._commit(staged)
            return removed

    def ping(self) -> bool:
        return self._state_path().parent.is_dir()

    def _commit(self, staged: Dict[str, Account]) -> None:
        # live records change only once the new state is on disk
        self._persist_state(staged)
        self.accounts = staged

    def _persist_state(self, accounts: Optional[Dict[str, Account]] = None) -> None:
        if accounts is None:
            accounts = self.accounts
        state = {"accounts": [self._serialize_account(a) for a in accounts.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", path=str(path), error=str(exc))
            raise StorageFailure(f"failed to persist account state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StorageFailure(f"failed to load account state: {exc}") from exc
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "handle": account.handle,
            "email": account.email,
            "password_hash": account.password_hash,
            "full_name": account.full_name,
            "role": account.role.value,
            "avatar": account.avatar,
            "cover_image": account.cover_image,
            "is_email_verified": account.is_email_verified,
            "is_active": account.is_active,
            "deactivation_reason": account.deactivation_reason,
            "deactivated_at": self._serialize_datetime(account.deactivated_at),
            "login_count": account.login_count,
            "last_login_at": self._serialize_datetime(account.last_login_at),
            "last_activity_at": self._serialize_datetime(account.last_activity_at),
            "refresh_token": account.refresh_token,
            "preferences": account.preferences,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            handle=data["handle"],
            email=data["email"],
            password_hash=data["password_hash"],
            full_name=data.get("full_name") or "",
            role=AccountRole(data.get("role", AccountRole.STANDARD.value)),
            avatar=data.get("avatar"),
            cover_image=data.get("cover_image"),
            is_email_verified=data.get("is_email_verified", False),
            is_active=data.get("is_active", True),
            deactivation_reason=data.get("deactivation_reason"),
            deactivated_at=self._deserialize_datetime(data.get("deactivated_at")),
            login_count=data.get("login_count", 0),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            last_activity_at=self._deserialize_datetime(data.get("last_activity_at")),
            refresh_token=data.get("refresh_token"),
            preferences=data.get("preferences") or default_preferences(),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at"))
            or self._deserialize_datetime(data["created_at"]),
        )
