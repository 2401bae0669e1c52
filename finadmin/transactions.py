"""Transaction moderation and admin account operations used by the console."""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from .auth_service import AuthService, NewUser, UserUpdate
from .backend import BackendClient, BackendError, NotFoundError, parse_timestamp
from .bank_accounts import CompanyBankInfoStore
from .models import CompanyBankInfo, Transaction, TransactionStatus, TransactionType, User

logger = logging.getLogger("finadmin.transactions")

TRANSACTIONS_TABLE = "transactions"

DEPOSIT_STATUSES: Tuple[TransactionStatus, ...] = (
    TransactionStatus.PENDING,
    TransactionStatus.SUCCESS,
    TransactionStatus.REJECTED,
)
WITHDRAWAL_STATUSES: Tuple[TransactionStatus, ...] = DEPOSIT_STATUSES + (
    TransactionStatus.CANCELLED,
    TransactionStatus.FAILED,
)


class BalanceOperation(str, Enum):
    """How an admin-entered amount is applied to a balance."""

    ADD = "add"
    SET = "set"


def allowed_statuses(transaction_type: TransactionType) -> Tuple[TransactionStatus, ...]:
    """Statuses an admin may move a transaction of this type to."""

    if transaction_type is TransactionType.DEPOSIT:
        return DEPOSIT_STATUSES
    if transaction_type is TransactionType.WITHDRAWAL:
        return WITHDRAWAL_STATUSES
    return ()


def apply_balance_operation(current: float, amount: float, operation: BalanceOperation) -> float:
    if not math.isfinite(amount):
        raise ValueError("Amount must be a finite number")
    if operation is BalanceOperation.ADD:
        return current + amount
    return amount


def row_to_transaction(row: Mapping[str, Any]) -> Transaction:
    try:
        transaction_type = TransactionType(str(row.get("type", "")).upper())
        status = TransactionStatus(str(row.get("status", "")).upper())
        amount = float(row.get("amount") or 0)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Malformed transaction row {row.get('id')!r}") from exc
    return Transaction(
        id=str(row.get("id") or ""),
        user_id=str(row.get("user_id") or ""),
        type=transaction_type,
        amount=amount,
        status=status,
        date=parse_timestamp(row.get("date")),
    )


def _rows_to_transactions(rows: Iterable[Mapping[str, Any]]) -> List[Transaction]:
    transactions: List[Transaction] = []
    for row in rows:
        try:
            transactions.append(row_to_transaction(row))
        except ValueError as exc:
            logger.warning("Skipping transaction: %s", exc)
    return transactions


class TransactionService:
    """Operations the admin console is injected with."""

    def __init__(
        self,
        client: BackendClient,
        gateway: AuthService,
        bank_accounts: CompanyBankInfoStore,
    ) -> None:
        self._client = client
        self._gateway = gateway
        self._bank_accounts = bank_accounts

    @property
    def _token(self) -> Optional[str]:
        session = self._gateway.session
        return session.access_token if session is not None else None

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    async def get_all_users(self) -> List[User]:
        return await self._gateway.get_all_users()

    async def update_user_verification(self, user_id: str, verified: bool) -> bool:
        logger.info("Setting verification of %s to %s", user_id, verified)
        return await self._gateway.update_user_info(UserUpdate(id=user_id, is_verified=verified))

    async def admin_create_user(self, new_user: NewUser) -> Optional[User]:
        return await self._gateway.admin_create_user(new_user)

    async def admin_update_user_balance(
        self,
        user_id: str,
        amount: float,
        operation: BalanceOperation,
    ) -> Optional[float]:
        """Apply ``amount`` to the stored balance and return the new value."""

        current = 0.0
        if operation is BalanceOperation.ADD:
            user = await self._gateway.get_user(user_id)
            if user is None:
                return None
            current = user.balance

        new_balance = apply_balance_operation(current, amount, operation)
        if not await self._gateway.update_user_balance(user_id, new_balance):
            return None
        logger.info("Balance of %s %s %s -> %s", user_id, operation.value, amount, new_balance)
        return new_balance

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    async def get_all_transactions(self) -> List[Transaction]:
        try:
            rows = await self._client.select(
                TRANSACTIONS_TABLE,
                order="date",
                descending=True,
                access_token=self._token,
            )
        except BackendError as exc:
            logger.warning("Listing transactions failed: %s", exc)
            return []
        return _rows_to_transactions(rows)

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        try:
            row = await self._client.select(
                TRANSACTIONS_TABLE,
                filters={"id": transaction_id},
                single=True,
                access_token=self._token,
            )
        except NotFoundError:
            return None
        except BackendError as exc:
            logger.warning("Loading transaction %s failed: %s", transaction_id, exc)
            return None
        try:
            return row_to_transaction(row)
        except ValueError as exc:
            logger.warning("Transaction %s is unreadable: %s", transaction_id, exc)
            return None

    async def update_deposit_status(self, transaction_id: str, status: TransactionStatus) -> bool:
        return await self._update_status(transaction_id, TransactionType.DEPOSIT, status)

    async def update_withdrawal_status(self, transaction_id: str, status: TransactionStatus) -> bool:
        return await self._update_status(transaction_id, TransactionType.WITHDRAWAL, status)

    async def _update_status(
        self,
        transaction_id: str,
        expected_type: TransactionType,
        status: TransactionStatus,
    ) -> bool:
        transaction = await self.get_transaction(transaction_id)
        if transaction is None:
            return False
        if transaction.type is not expected_type:
            raise ValueError(
                f"Transaction {transaction_id} is a {transaction.type.value}, not a {expected_type.value}"
            )
        if status not in allowed_statuses(expected_type):
            raise ValueError(f"{status.value} is not a valid {expected_type.value.lower()} status")

        try:
            await self._client.update(
                TRANSACTIONS_TABLE,
                {"status": status.value},
                filters={"id": transaction_id},
                access_token=self._token,
            )
        except BackendError as exc:
            logger.warning("Failed to set %s to %s: %s", transaction_id, status.value, exc)
            return False

        logger.info("Transaction %s moved from %s to %s", transaction_id, transaction.status.value, status.value)
        await self._gateway.add_user_notification(
            transaction.user_id,
            f"Your {expected_type.value.lower()} of {transaction.amount:,.2f} is now {status.value}.",
        )
        return True

    # ------------------------------------------------------------------
    # Company bank accounts
    # ------------------------------------------------------------------
    @property
    def company_bank_info_list(self) -> List[CompanyBankInfo]:
        return self._bank_accounts.list()

    def set_company_bank_info_list(self, entries: Iterable[CompanyBankInfo]) -> List[CompanyBankInfo]:
        return self._bank_accounts.replace(entries)


__all__ = [
    "BalanceOperation",
    "DEPOSIT_STATUSES",
    "TransactionService",
    "WITHDRAWAL_STATUSES",
    "allowed_statuses",
    "apply_balance_operation",
    "row_to_transaction",
]
