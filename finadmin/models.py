"""Domain records exchanged between the gateway and the admin console."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


class TransactionType(str, Enum):
    """Kinds of money movement recorded by the backend."""

    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRANSFER = "TRANSFER"


class TransactionStatus(str, Enum):
    """Lifecycle state of a transaction."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Notification:
    """A message addressed to a single user."""

    id: str
    user_id: str
    message: str
    date: Optional[datetime]
    read: bool = False


@dataclass(frozen=True)
class User:
    """Application-facing view of a profile row."""

    id: str
    email: str
    full_name: str = ""
    username: str = ""
    phone_number: str = ""
    is_admin: bool = False
    is_verified: bool = False
    balance: float = 0
    notifications: Tuple[Notification, ...] = field(default_factory=tuple)
    profile_picture_url: Optional[str] = None

    @property
    def unread_notifications(self) -> int:
        return sum(1 for item in self.notifications if not item.read)


@dataclass(frozen=True)
class Transaction:
    """A deposit, withdrawal or transfer owned by a user."""

    id: str
    user_id: str
    type: TransactionType
    amount: float
    status: TransactionStatus
    date: Optional[datetime]


@dataclass(frozen=True)
class CompanyBankInfo:
    """A company bank account shown to users making deposits."""

    bank_name: str
    account_number: str
    account_holder_name: str

    def to_dict(self) -> dict:
        return {
            "bank_name": self.bank_name,
            "account_number": self.account_number,
            "account_holder_name": self.account_holder_name,
        }


__all__ = [
    "CompanyBankInfo",
    "Notification",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "User",
]
