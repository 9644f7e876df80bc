"""
User Directory Module

Minimal user records the ledger core needs: a display name for account
naming and ownership lookups for user-initiated transfers. Credentials and
sessions live in the authentication layer.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum

from .accounts import Account
from .audit import ActivityLog, ActivityType
from .errors import NotFound
from .ledger import LedgerStore
from .storage import StorageRecord


class UserRole(Enum):
    CLIENT = "client"
    ADMIN = "admin"


class UserStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BLOCKED = "blocked"


@dataclass
class User(StorageRecord):
    display_name: str
    email: str
    role: UserRole = UserRole.CLIENT
    status: UserStatus = UserStatus.ACTIVE

    def __post_init__(self):
        if not self.display_name or not self.display_name.strip():
            raise ValueError("Display name is required")
        if "@" not in (self.email or ""):
            raise ValueError(f"Invalid email address: {self.email!r}")
        self.email = self.email.strip().lower()

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        data = dict(data)
        data['role'] = UserRole(data.get('role', UserRole.CLIENT.value))
        data['status'] = UserStatus(data.get('status', UserStatus.ACTIVE.value))
        return super().from_dict(data)


class UserDirectory:
    """``id -> user + accounts`` lookups backed by the ledger's storage"""

    def __init__(self, ledger: LedgerStore, activity_log: Optional[ActivityLog] = None,
                 table_name: str = "users"):
        self.ledger = ledger
        self.storage = ledger.storage
        self.activity_log = activity_log
        self.table_name = table_name

    def create_user(self, display_name: str, email: str, role: UserRole = UserRole.CLIENT) -> User:
        """Create a user; email addresses are unique"""
        email = (email or "").strip().lower()
        if self.storage.find(self.table_name, {"email": email}):
            raise ValueError(f"User with email {email} already exists")

        now = datetime.now(timezone.utc)
        user = User(
            id=self.storage.next_id(self.table_name),
            created_at=now,
            updated_at=now,
            display_name=display_name.strip(),
            email=email,
            role=role,
        )
        self.storage.save(self.table_name, user.id, user.to_dict())

        if self.activity_log and not self.storage.in_transaction:
            self.activity_log.record(ActivityType.USER_CREATED, "user", user.id,
                                     {"email": user.email, "role": user.role})
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        data = self.storage.load(self.table_name, user_id)
        if data:
            return User.from_dict(data)
        return None

    def require_user(self, user_id: int) -> User:
        user = self.get_user(user_id)
        if not user:
            raise NotFound(f"User {user_id} not found", user_id=user_id)
        return user

    def get_user_accounts(self, user_id: int) -> List[Account]:
        return self.ledger.get_user_accounts(user_id)

    def owns_account(self, user_id: int, account_id: int) -> bool:
        account = self.ledger.get_account(account_id)
        return account is not None and account.user_id == user_id

    def describe(self, user_id: int) -> Dict[str, Any]:
        """Directory view: display name plus the user's accounts"""
        user = self.require_user(user_id)
        return {
            "id": user.id,
            "display_name": user.display_name,
            "accounts": [account.to_dict() for account in self.get_user_accounts(user_id)],
        }
