"""Shared fixtures: an in-memory stand-in for the hosted account/table service."""

from __future__ import annotations

import itertools
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from finadmin.backend import (
    AuthenticationError,
    AuthUser,
    BackendError,
    BackendSession,
    ConflictError,
    NotFoundError,
)
from finadmin.bank_accounts import CompanyBankInfoStore
from finadmin.console import create_app


class FakeBackend:
    """Mirror of :class:`finadmin.backend.BackendClient` backed by dictionaries."""

    def __init__(self, *, service_key: bool = False, auto_confirm: bool = True) -> None:
        self.accounts: Dict[str, Dict[str, str]] = {}
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            "profiles": [],
            "notifications": [],
            "transactions": [],
        }
        self.tokens: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, str] = {}
        self.calls: List[Tuple[str, str]] = []
        self.failures: Set[Tuple[str, str]] = set()
        self.deleted_users: List[str] = []
        self.signed_out: List[str] = []
        self.auto_confirm = auto_confirm
        self._service_key = service_key
        self._ids = itertools.count(1)

    # -- test helpers --------------------------------------------------
    @property
    def has_service_key(self) -> bool:
        return self._service_key

    def fail(self, operation: str, table: str = "*") -> None:
        self.failures.add((operation, table))

    def add_account(self, email: str, password: str, *, profile: bool = True, **fields: Any) -> str:
        user_id = f"user-{next(self._ids)}"
        self.accounts[email.lower()] = {"id": user_id, "email": email, "password": password}
        if profile:
            row = {
                "id": user_id,
                "email": email,
                "full_name": fields.pop("full_name", email.split("@")[0].title()),
                "username": fields.pop("username", email.split("@")[0].lower()),
                "phone_number": fields.pop("phone_number", ""),
                "is_admin": fields.pop("is_admin", False),
                "is_verified": fields.pop("is_verified", False),
                "balance": fields.pop("balance", 0),
                "profile_picture_url": fields.pop("profile_picture_url", None),
            }
            row.update(fields)
            self.tables["profiles"].append(row)
        return user_id

    def add_transaction(self, user_id: str, type_: str, amount: float, status: str = "PENDING", **fields: Any) -> str:
        transaction_id = fields.pop("id", f"trx-{next(self._ids)}")
        row = {
            "id": transaction_id,
            "user_id": user_id,
            "type": type_,
            "amount": amount,
            "status": status,
            "date": fields.pop("date", "2024-05-01T10:00:00Z"),
        }
        row.update(fields)
        self.tables["transactions"].append(row)
        return transaction_id

    def profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        for row in self.tables["profiles"]:
            if row["id"] == user_id:
                return row
        return None

    def profile_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        for row in self.tables["profiles"]:
            if row["email"] == email:
                return row
        return None

    def transaction(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        for row in self.tables["transactions"]:
            if row["id"] == transaction_id:
                return row
        return None

    def expire_access_tokens(self) -> None:
        self.tokens.clear()

    def _record(self, operation: str, table: str) -> None:
        self.calls.append((operation, table))
        if (operation, table) in self.failures or (operation, "*") in self.failures:
            raise BackendError(f"simulated {operation} failure on {table}", status_code=500)

    def _issue_session(self, account: Mapping[str, str]) -> BackendSession:
        token = f"token-{next(self._ids)}"
        self.tokens[token] = account["id"]
        self.refresh_tokens[f"refresh-{token}"] = account["id"]
        return BackendSession(
            access_token=token,
            refresh_token=f"refresh-{token}",
            expires_in=3600,
            user=AuthUser(id=account["id"], email=account["email"]),
        )

    # -- accounts ------------------------------------------------------
    async def sign_in_with_password(self, email: str, password: str) -> BackendSession:
        self._record("sign_in", "auth")
        account = self.accounts.get(email.lower())
        if account is None or account["password"] != password:
            raise AuthenticationError("Invalid login credentials", status_code=400)
        return self._issue_session(account)

    async def refresh_session(self, refresh_token: str) -> BackendSession:
        self._record("refresh", "auth")
        user_id = self.refresh_tokens.pop(refresh_token, None)
        for account in self.accounts.values():
            if account["id"] == user_id:
                return self._issue_session(account)
        raise AuthenticationError("Invalid Refresh Token", status_code=400)

    async def sign_up(self, email: str, password: str) -> Tuple[AuthUser, Optional[BackendSession]]:
        self._record("sign_up", "auth")
        if email.lower() in self.accounts:
            raise ConflictError("User already registered", status_code=422)
        user_id = f"user-{next(self._ids)}"
        account = {"id": user_id, "email": email, "password": password}
        self.accounts[email.lower()] = account
        auth_user = AuthUser(id=user_id, email=email)
        if not self.auto_confirm:
            return auth_user, None
        return auth_user, self._issue_session(account)

    async def sign_out(self, access_token: str) -> None:
        self._record("sign_out", "auth")
        self.tokens.pop(access_token, None)
        self.signed_out.append(access_token)

    async def get_user(self, access_token: str) -> AuthUser:
        self._record("get_user", "auth")
        user_id = self.tokens.get(access_token)
        if user_id is None:
            raise AuthenticationError("Invalid JWT", status_code=401)
        for account in self.accounts.values():
            if account["id"] == user_id:
                return AuthUser(id=user_id, email=account["email"])
        raise AuthenticationError("User not found", status_code=401)

    async def delete_user(self, user_id: str) -> None:
        self._record("delete_user", "auth")
        if not self._service_key:
            raise BackendError("Deleting accounts requires a service key")
        for email, account in list(self.accounts.items()):
            if account["id"] == user_id:
                del self.accounts[email]
        self.deleted_users.append(user_id)

    # -- tables --------------------------------------------------------
    @staticmethod
    def _matches(row: Mapping[str, Any], filters: Optional[Mapping[str, object]]) -> bool:
        return all(row.get(column) == value for column, value in (filters or {}).items())

    async def select(
        self,
        table: str,
        *,
        filters: Optional[Mapping[str, object]] = None,
        order: Optional[str] = None,
        descending: bool = False,
        single: bool = False,
        access_token: Optional[str] = None,
    ) -> Any:
        self._record("select", table)
        rows = [dict(row) for row in self.tables[table] if self._matches(row, filters)]
        if order:
            rows.sort(key=lambda row: str(row.get(order) or ""), reverse=descending)
        if single:
            if len(rows) != 1:
                raise NotFoundError(f"No matching row in '{table}'", status_code=406)
            return rows[0]
        return rows

    async def insert(
        self,
        table: str,
        rows: Sequence[Mapping[str, object]],
        *,
        upsert: bool = False,
        access_token: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        self._record("insert", table)
        inserted: List[Dict[str, Any]] = []
        for raw in rows:
            row = dict(raw)
            row.setdefault("id", f"{table}-{next(self._ids)}")
            existing = [item for item in self.tables[table] if item.get("id") == row["id"]]
            if existing:
                if not upsert:
                    raise ConflictError("duplicate key value violates unique constraint", status_code=409)
                existing[0].update(row)
                inserted.append(dict(existing[0]))
                continue
            self.tables[table].append(row)
            inserted.append(dict(row))
        return inserted

    async def update(
        self,
        table: str,
        values: Mapping[str, object],
        *,
        filters: Mapping[str, object],
        access_token: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        self._record("update", table)
        updated: List[Dict[str, Any]] = []
        for row in self.tables[table]:
            if self._matches(row, filters):
                row.update(values)
                updated.append(dict(row))
        return updated


ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin-password"
MEMBER_EMAIL = "member@example.com"
MEMBER_PASSWORD = "member-password"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def bank_store(tmp_path: Path) -> CompanyBankInfoStore:
    return CompanyBankInfoStore(tmp_path / "company_bank_info.yaml")


@pytest.fixture
def console_app(backend: FakeBackend, bank_store: CompanyBankInfoStore):
    return create_app(
        client=backend,  # type: ignore[arg-type]
        session_secret="tests-secret",
        bank_accounts=bank_store,
    )


@pytest.fixture
def admin_id(backend: FakeBackend) -> str:
    return backend.add_account(
        ADMIN_EMAIL,
        ADMIN_PASSWORD,
        full_name="Ada Admin",
        is_admin=True,
        is_verified=True,
    )


@pytest.fixture
def member_id(backend: FakeBackend) -> str:
    return backend.add_account(
        MEMBER_EMAIL,
        MEMBER_PASSWORD,
        full_name="Mona Member",
        balance=100000,
    )


def login(client, email: str, password: str):
    return client.post(
        "/login",
        data={"identifier": email, "password": password},
        follow_redirects=False,
    )
