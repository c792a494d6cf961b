from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union


class AccountRole(str, Enum):
    STANDARD = "standard"
    MODERATOR = "moderator"
    ADMIN = "admin"


DEFAULT_PREFERENCES: Dict[str, Any] = {
    "theme": "light",
    "language": "en",
    "notifications": {"email": True, "push": True, "marketing": False},
    "privacy": {
        "profile_visibility": "public",
        "show_email": False,
        "show_last_seen": True,
    },
    "timezone": "UTC",
}


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form every stored timestamp uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def default_preferences() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_PREFERENCES)


def merge_preferences(current: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``changes`` into ``current`` key by key, one level into nested groups."""
    merged = copy.deepcopy(current)
    for key, value in changes.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


@dataclass
class Account:
    id: str
    handle: str
    email: str
    password_hash: str
    full_name: str = ""
    role: AccountRole = AccountRole.STANDARD
    avatar: Optional[str] = None
    cover_image: Optional[str] = None
    is_email_verified: bool = False
    is_active: bool = True
    deactivation_reason: Optional[str] = None
    deactivated_at: Optional[datetime] = None
    login_count: int = 0
    last_login_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    refresh_token: Optional[str] = None
    preferences: Dict[str, Any] = field(default_factory=default_preferences)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


# Fields that never leave the service in a read projection
SECRET_FIELDS = frozenset({"password_hash", "refresh_token"})

# Fields callers may set through a generic update; secrets and counters
# have dedicated store operations
UPDATABLE_FIELDS = frozenset(
    {
        "handle",
        "email",
        "full_name",
        "role",
        "avatar",
        "cover_image",
        "is_email_verified",
        "is_active",
        "deactivation_reason",
        "deactivated_at",
        "last_activity_at",
        "password_hash",
        "refresh_token",
        "preferences",
    }
)

UNIQUE_FIELDS = ("handle", "email")


def normalize_identifier(value: str) -> str:
    return value.strip().lower()


def display_name(account: Account) -> str:
    return account.full_name or account.handle


def is_admin(account: Union[Account, "Identity"]) -> bool:
    return account.role == AccountRole.ADMIN


def is_moderator(account: Union[Account, "Identity"]) -> bool:
    return account.role in (AccountRole.MODERATOR, AccountRole.ADMIN)


def can_perform_action(account: Account) -> bool:
    return account.is_active and account.is_email_verified


def public_projection(account: Account) -> Dict[str, Any]:
    """Account fields safe to hand to a display handler."""
    data = {k: v for k, v in asdict(account).items() if k not in SECRET_FIELDS}
    data["role"] = account.role.value
    data["display_name"] = display_name(account)
    return data


@dataclass(frozen=True)
class Identity:
    """Minimal authenticated principal handed to downstream handlers."""

    id: str
    email: str
    handle: str
    role: AccountRole


def identity_of(account: Account) -> Identity:
    return Identity(
        id=account.id, email=account.email, handle=account.handle, role=account.role
    )
