"""Account lookup used to resolve a subject's subscription tier."""

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..rate_limiting.policy import Tier

logger = logging.getLogger(__name__)


@dataclass
class Account:
    """The slice of an account record the quota layer cares about."""

    account_id: str
    tier: Tier = Tier.FREE
    email: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "tier": self.tier.value,
            "email": self.email,
            "created_at": self.created_at.isoformat(),
        }


class AccountDirectory:
    """Read access to the account store."""

    async def find_account_by_id(self, account_id: str) -> Optional[Account]:
        raise NotImplementedError

    async def verify_password(self, account_id: str, password: str) -> bool:
        raise NotImplementedError


class InMemoryAccountDirectory(AccountDirectory):
    """Dictionary-backed account directory for development and tests."""

    def __init__(self):
        self.accounts: Dict[str, Account] = {}
        self._password_hashes: Dict[str, str] = {}

    @staticmethod
    def _hash_password(password: str, salt: str) -> str:
        return hashlib.sha256(f"{salt}:{password}".encode()).hexdigest()

    def add_account(self, account_id: str, tier: Tier = Tier.FREE,
                    password: Optional[str] = None, email: Optional[str] = None) -> Account:
        account = Account(account_id=account_id, tier=tier, email=email)
        self.accounts[account_id] = account
        if password is not None:
            salt = secrets.token_hex(8)
            self._password_hashes[account_id] = f"{salt}${self._hash_password(password, salt)}"
        logger.debug(f"Registered account {account_id} on tier {tier.value}")
        return account

    async def find_account_by_id(self, account_id: str) -> Optional[Account]:
        return self.accounts.get(account_id)

    async def verify_password(self, account_id: str, password: str) -> bool:
        stored = self._password_hashes.get(account_id)
        if stored is None:
            return False
        salt, digest = stored.split("$", 1)
        return hmac.compare_digest(digest, self._hash_password(password, salt))
