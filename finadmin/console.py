"""Browser-based admin console and account pages."""
from __future__ import annotations

import logging
import math
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from fastapi import FastAPI, Form, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError
from starlette.datastructures import FormData
from starlette.middleware.sessions import SessionMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .auth_service import AuthService, DEFAULT_BALANCE, NewUser, Registration, UserUpdate
from .backend import BackendClient, BackendError, BackendSession
from .bank_accounts import CompanyBankInfoStore
from .config import Settings, load_settings
from .models import CompanyBankInfo, Transaction, TransactionStatus, TransactionType, User
from .sessions import SessionManager
from .transactions import BalanceOperation, TransactionService, allowed_statuses


TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

SESSION_KEY = "sid"
TABS = ("users", "transactions", "settings")

ACCESS_DENIED = "Access Denied: You must be an administrator to view this page."
CREATE_REQUIRED = "Name, Email, and Password are required."
CREATE_FAILED = "Failed to create user. Email might be taken."
INVALID_AMOUNT = "Please enter a valid number"
BANK_INFO_SAVED = "Company bank info updated!"

DEFAULT_CREATE_FORM: Dict[str, object] = {
    "full_name": "",
    "email": "",
    "phone_number": "",
    "balance": "13000000",
    "is_admin": False,
    "is_verified": True,
}

_BANK_FIELDS = ("bank_name", "account_number", "account_holder_name")


logger = logging.getLogger("finadmin.console")


def _trusted_proxy_hosts() -> list[str] | str:
    raw = os.getenv("FINADMIN_TRUSTED_PROXIES")
    if not raw:
        return "*"
    hosts = [item.strip() for item in raw.split(",") if item.strip()]
    return hosts or "*"


def parse_amount(text: object) -> Optional[float]:
    """Return the number typed into an amount field, or ``None`` if it is not one."""

    if text is None:
        return None
    cleaned = str(text).strip()
    if not cleaned:
        return None
    try:
        value = float(cleaned)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


def filter_transactions(
    transactions: Iterable[Transaction],
    users: Iterable[User],
    query: str,
) -> List[Transaction]:
    """Case-insensitive substring match on transaction id, owner id, email or name."""

    needle = (query or "").strip().lower()
    if not needle:
        return list(transactions)

    users_by_id = {user.id: user for user in users}
    matches: List[Transaction] = []
    for transaction in transactions:
        candidates = [transaction.id, transaction.user_id]
        owner = users_by_id.get(transaction.user_id)
        if owner is not None:
            candidates.extend([owner.email, owner.full_name])
        if any(needle in candidate.lower() for candidate in candidates if candidate):
            matches.append(transaction)
    return matches


def status_options(transaction: Transaction) -> Tuple[TransactionStatus, ...]:
    """Statuses offered in the row selector; empty for system-managed transfers."""

    return allowed_statuses(transaction.type)


def validate_create_form(full_name: str, email: str, password: str) -> Optional[str]:
    if not full_name.strip() or not email.strip() or not password:
        return CREATE_REQUIRED
    return None


def describe_owner(user_id: str, users_by_id: Mapping[str, User]) -> str:
    owner = users_by_id.get(user_id)
    if owner is None:
        return user_id
    return f"{owner.full_name} ({owner.email})"


def _format_money(value: object) -> str:
    try:
        return f"{float(value):,.2f}"  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return str(value)


def _format_datetime(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.strftime("%d %b %Y %H:%M")


def _bank_rows_from_form(form: FormData) -> List[Dict[str, str]]:
    columns = [form.getlist(field) for field in _BANK_FIELDS]
    rows: List[Dict[str, str]] = []
    for values in zip(*columns):
        rows.append({field: str(value).strip() for field, value in zip(_BANK_FIELDS, values)})
    return rows


def create_app(
    *,
    settings: Optional[Settings] = None,
    client: Optional[BackendClient] = None,
    bank_accounts: Optional[CompanyBankInfoStore] = None,
    session_manager: Optional[SessionManager] = None,
    session_secret: Optional[str] = None,
    default_balance: Optional[float] = None,
) -> FastAPI:
    """Create the admin console web application."""

    if settings is None and (client is None or session_secret is None):
        settings = load_settings()

    if client is None:
        if settings is None:
            raise RuntimeError("Backend settings are required when no client is supplied")
        client = BackendClient(
            settings.backend.url,
            settings.backend.anon_key,
            service_key=settings.backend.service_key,
            timeout=settings.backend.timeout,
        )
    if session_secret is None:
        if settings is None:
            raise RuntimeError("A session secret is required when no settings are supplied")
        session_secret = settings.session_secret
    if not session_secret:
        raise RuntimeError("FINADMIN_SESSION_SECRET must be configured to use the admin console")
    if bank_accounts is None:
        bank_accounts = CompanyBankInfoStore(settings.bank_info_path if settings is not None else None)
    if session_manager is None:
        session_manager = SessionManager()
    if default_balance is None:
        default_balance = settings.default_balance if settings is not None else DEFAULT_BALANCE
    secure_cookie = settings.secure_cookies if settings is not None else False

    app = FastAPI(
        title="Finance Admin Console",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=_trusted_proxy_hosts())
    app.add_middleware(
        SessionMiddleware,
        secret_key=session_secret,
        session_cookie="finadmin_session",
        https_only=secure_cookie,
        same_site="lax",
        max_age=60 * 60 * 8,
    )
    app.state.backend = client
    app.state.bank_accounts = bank_accounts
    app.state.sessions = session_manager

    templates = Jinja2Templates(directory=str(TEMPLATE_DIR))
    templates.env.filters["money"] = _format_money
    templates.env.filters["datetime"] = _format_datetime
    templates.env.globals["now"] = lambda: datetime.now(timezone.utc)

    def _flash(request: Request, message: str, *, category: str = "info") -> None:
        messages = request.session.get("flash_messages")
        if not isinstance(messages, list):
            messages = []
        messages.append({"message": message, "category": category})
        request.session["flash_messages"] = messages

    def _consume_flash(request: Request) -> List[Dict[str, str]]:
        messages = request.session.pop("flash_messages", [])
        if isinstance(messages, list):
            return messages
        return []

    async def _refresh(request: Request, token: str, stale: BackendSession) -> Optional[BackendSession]:
        if not stale.refresh_token:
            return stale
        try:
            renewed = await client.refresh_session(stale.refresh_token)
        except BackendError as exc:
            logger.info("Session refresh for %s failed: %s", stale.user.id, exc)
            session_manager.destroy(token)
            request.session.pop(SESSION_KEY, None)
            return None
        session_manager.update(token, renewed)
        return renewed

    async def _gateway(request: Request) -> AuthService:
        token = request.session.get(SESSION_KEY)
        backend_session = session_manager.resolve(token) if isinstance(token, str) else None
        if token and backend_session is None:
            request.session.pop(SESSION_KEY, None)
        elif backend_session is not None and session_manager.needs_refresh(token):
            backend_session = await _refresh(request, token, backend_session)
        return AuthService(client, session=backend_session, default_balance=default_balance)

    def _transactions(gateway: AuthService) -> TransactionService:
        return TransactionService(client, gateway, bank_accounts)

    async def _current_user(request: Request) -> Tuple[AuthService, Optional[User]]:
        gateway = await _gateway(request)
        user = await gateway.get_current_user()
        return gateway, user

    def _redirect(request: Request, name: str, **query: object) -> RedirectResponse:
        url = request.url_for(name)
        params = {key: value for key, value in query.items() if value not in (None, "")}
        if params:
            url = url.include_query_params(**params)
        return RedirectResponse(str(url), status_code=status.HTTP_303_SEE_OTHER)

    def _redirect_to_login(request: Request) -> RedirectResponse:
        return _redirect(request, "show_login")

    def _access_denied(request: Request, user: User) -> HTMLResponse:
        logger.warning("Non-admin %s attempted to reach %s", user.id, request.url.path)
        return templates.TemplateResponse(
            request,
            "denied.html",
            {"user": user, "message": ACCESS_DENIED},
            status_code=status.HTTP_403_FORBIDDEN,
        )

    async def _require_admin(request: Request):
        gateway, user = await _current_user(request)
        if user is None:
            return None, None, _redirect_to_login(request)
        if not user.is_admin:
            return None, None, _access_denied(request, user)
        return gateway, user, None

    def _start_session(request: Request, gateway: AuthService) -> None:
        backend_session = gateway.session
        request.session.clear()
        if backend_session is not None:
            request.session[SESSION_KEY] = session_manager.create(backend_session)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    @app.get("/", response_class=HTMLResponse)
    async def root(request: Request):
        _, user = await _current_user(request)
        if user is None:
            return _redirect_to_login(request)
        return _redirect(request, "admin" if user.is_admin else "account")

    @app.get("/login", response_class=HTMLResponse, name="show_login")
    async def login_form(request: Request):
        _, user = await _current_user(request)
        if user is not None:
            return _redirect(request, "admin" if user.is_admin else "account")
        error = request.session.pop("login_error", None)
        return templates.TemplateResponse(
            request,
            "login.html",
            {"error": error, "messages": _consume_flash(request)},
        )

    @app.post("/login", name="process_login")
    async def process_login(request: Request, identifier: str = Form(...), password: str = Form(...)):
        gateway = await _gateway(request)
        result = await gateway.login(identifier, password)
        if not result.ok or result.user is None:
            request.session["login_error"] = result.error or "Invalid login credentials"
            return _redirect_to_login(request)

        _start_session(request, gateway)
        logger.info("User %s signed in", result.user.id)
        return _redirect(request, "admin" if result.user.is_admin else "account")

    @app.get("/register", response_class=HTMLResponse, name="show_register")
    async def register_form(request: Request):
        error = request.session.pop("register_error", None)
        draft = request.session.pop("register_form", None) or {}
        return templates.TemplateResponse(
            request,
            "register.html",
            {"error": error, "form": draft},
        )

    @app.post("/register", name="process_register")
    async def process_register(
        request: Request,
        full_name: str = Form(""),
        email: str = Form(""),
        phone_number: str = Form(""),
        password: str = Form(""),
    ):
        draft = {"full_name": full_name, "email": email, "phone_number": phone_number}
        try:
            registration = Registration(
                full_name=full_name,
                email=email,
                phone_number=phone_number,
                password=password,
            )
        except ValidationError:
            request.session["register_error"] = CREATE_REQUIRED
            request.session["register_form"] = draft
            return _redirect(request, "show_register")

        gateway = await _gateway(request)
        result = await gateway.register(registration)
        if not result.ok:
            request.session["register_error"] = result.error
            request.session["register_form"] = draft
            return _redirect(request, "show_register")

        if result.session is None:
            _flash(request, "Account created. Confirm your email address, then sign in.", category="success")
            return _redirect_to_login(request)

        _start_session(request, gateway)
        return _redirect(request, "account")

    @app.get("/logout", name="logout")
    async def logout(request: Request):
        token = request.session.get(SESSION_KEY)
        gateway = await _gateway(request)
        await gateway.logout()
        if isinstance(token, str):
            session_manager.destroy(token)
        request.session.clear()
        return _redirect_to_login(request)

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------
    @app.get("/account", response_class=HTMLResponse, name="account")
    async def account(request: Request):
        _, user = await _current_user(request)
        if user is None:
            return _redirect_to_login(request)
        return templates.TemplateResponse(
            request,
            "account.html",
            {"user": user, "messages": _consume_flash(request)},
        )

    @app.post("/account/profile", name="update_profile")
    async def update_profile(
        request: Request,
        full_name: str = Form(""),
        phone_number: str = Form(""),
        profile_picture_url: str = Form(""),
    ):
        gateway, user = await _current_user(request)
        if user is None:
            return _redirect_to_login(request)

        cleaned_name = full_name.strip()
        if not cleaned_name:
            _flash(request, "Full name must not be empty.", category="error")
            return _redirect(request, "account")

        update = UserUpdate(
            id=user.id,
            full_name=cleaned_name,
            phone_number=phone_number.strip(),
            profile_picture_url=profile_picture_url.strip() or None,
        )
        if await gateway.update_user_info(update):
            _flash(request, "Account details updated.", category="success")
        else:
            _flash(request, "Account details could not be saved.", category="error")
        return _redirect(request, "account")

    @app.post("/account/notifications/{notification_id}/read", name="mark_notification_read")
    async def mark_notification_read(request: Request, notification_id: str):
        gateway, user = await _current_user(request)
        if user is None:
            return _redirect_to_login(request)
        if not await gateway.update_user_notification(user.id, notification_id, True):
            _flash(request, "Notification could not be updated.", category="error")
        return _redirect(request, "account")

    # ------------------------------------------------------------------
    # Admin console
    # ------------------------------------------------------------------
    @app.get("/admin", response_class=HTMLResponse, name="admin")
    async def admin(
        request: Request,
        tab: str = "users",
        q: str = "",
        create: bool = False,
        balance: Optional[str] = None,
    ):
        gateway, user, denied = await _require_admin(request)
        if denied is not None:
            return denied

        if tab not in TABS:
            tab = "users"

        service = _transactions(gateway)
        users = await service.get_all_users()
        transactions = await service.get_all_transactions()
        users_by_id = {entry.id: entry for entry in users}

        transaction_rows = [
            {
                "transaction": transaction,
                "owner": describe_owner(transaction.user_id, users_by_id),
                "options": [option.value for option in status_options(transaction)],
            }
            for transaction in filter_transactions(transactions, users, q)
        ]

        bank_rows = request.session.get("bank_draft")
        has_unsaved_banks = isinstance(bank_rows, list)
        if not has_unsaved_banks:
            bank_rows = [entry.to_dict() for entry in service.company_bank_info_list]

        create_form = dict(DEFAULT_CREATE_FORM)
        saved_form = request.session.pop("create_form", None)
        if isinstance(saved_form, dict):
            create_form.update(saved_form)
        create_error = request.session.pop("create_error", None)

        return templates.TemplateResponse(
            request,
            "admin.html",
            {
                "user": user,
                "tab": tab,
                "query": q,
                "users": users,
                "transaction_rows": transaction_rows,
                "bank_rows": bank_rows,
                "has_unsaved_banks": has_unsaved_banks,
                "balance_user": users_by_id.get(balance) if balance else None,
                "show_create": create or create_error is not None,
                "create_form": create_form,
                "create_error": create_error,
                "messages": _consume_flash(request),
            },
        )

    @app.post("/admin/users", name="admin_create_user")
    async def admin_create_user(
        request: Request,
        full_name: str = Form(""),
        email: str = Form(""),
        phone_number: str = Form(""),
        password: str = Form(""),
        balance: str = Form(""),
        is_admin: bool = Form(False),
        is_verified: bool = Form(False),
    ):
        gateway, _, denied = await _require_admin(request)
        if denied is not None:
            return denied

        draft = {
            "full_name": full_name,
            "email": email,
            "phone_number": phone_number,
            "balance": balance,
            "is_admin": is_admin,
            "is_verified": is_verified,
        }

        def _reopen(message: str) -> RedirectResponse:
            request.session["create_form"] = draft
            request.session["create_error"] = message
            return _redirect(request, "admin", tab="users", create=1)

        error = validate_create_form(full_name, email, password)
        if error is not None:
            return _reopen(error)

        try:
            new_user = NewUser(
                full_name=full_name,
                email=email,
                phone_number=phone_number,
                password=password,
                balance=parse_amount(balance) or 0,
                is_admin=is_admin,
                is_verified=is_verified,
            )
        except ValidationError:
            return _reopen(CREATE_FAILED)

        created = await _transactions(gateway).admin_create_user(new_user)
        if created is None:
            return _reopen(CREATE_FAILED)

        _flash(request, f"Created user {created.full_name} <{created.email}>.", category="success")
        return _redirect(request, "admin", tab="users")

    @app.post("/admin/users/{user_id}/verification", name="admin_set_verification")
    async def admin_set_verification(request: Request, user_id: str, verified: bool = Form(...)):
        gateway, _, denied = await _require_admin(request)
        if denied is not None:
            return denied

        if not await _transactions(gateway).update_user_verification(user_id, verified):
            _flash(request, "Failed to update verification status.", category="error")
        return _redirect(request, "admin", tab="users")

    @app.post("/admin/users/{user_id}/balance", name="admin_update_balance")
    async def admin_update_balance(
        request: Request,
        user_id: str,
        amount: str = Form(""),
        operation: str = Form(BalanceOperation.ADD.value),
    ):
        gateway, _, denied = await _require_admin(request)
        if denied is not None:
            return denied

        value = parse_amount(amount)
        try:
            balance_operation = BalanceOperation(operation)
        except ValueError:
            value = None
        if value is None:
            _flash(request, INVALID_AMOUNT, category="error")
            return _redirect(request, "admin", tab="users", balance=user_id)

        new_balance = await _transactions(gateway).admin_update_user_balance(user_id, value, balance_operation)
        if new_balance is None:
            _flash(request, "Failed to update balance.", category="error")
        else:
            _flash(request, f"Balance updated to {_format_money(new_balance)}.", category="success")
        return _redirect(request, "admin", tab="users")

    @app.post("/admin/transactions/{transaction_id}/status", name="admin_update_transaction_status")
    async def admin_update_transaction_status(
        request: Request,
        transaction_id: str,
        new_status: str = Form(..., alias="status"),
        q: str = Form(""),
    ):
        gateway, _, denied = await _require_admin(request)
        if denied is not None:
            return denied

        back = _redirect(request, "admin", tab="transactions", q=q)
        try:
            target = TransactionStatus(new_status.strip().upper())
        except ValueError:
            _flash(request, f"Unknown status '{new_status}'.", category="error")
            return back

        service = _transactions(gateway)
        transaction = await service.get_transaction(transaction_id)
        if transaction is None:
            _flash(request, "Transaction not found.", category="error")
            return back
        if transaction.status is target:
            return back

        try:
            if transaction.type is TransactionType.DEPOSIT:
                updated = await service.update_deposit_status(transaction_id, target)
            elif transaction.type is TransactionType.WITHDRAWAL:
                updated = await service.update_withdrawal_status(transaction_id, target)
            else:
                _flash(request, "Transfer statuses are managed automatically.", category="error")
                return back
        except ValueError as exc:
            _flash(request, str(exc), category="error")
            return back

        if not updated:
            _flash(request, "Failed to update transaction status.", category="error")
        return back

    @app.post("/admin/settings/banks", name="admin_update_banks")
    async def admin_update_banks(request: Request):
        gateway, _, denied = await _require_admin(request)
        if denied is not None:
            return denied

        form = await request.form()
        rows = _bank_rows_from_form(form)
        action = str(form.get("action") or "save")

        if action == "add":
            rows.append({field: "" for field in _BANK_FIELDS})
            request.session["bank_draft"] = rows
        elif action.startswith("remove-"):
            try:
                index = int(action.split("-", 1)[1])
            except ValueError:
                index = -1
            if 0 <= index < len(rows):
                del rows[index]
            request.session["bank_draft"] = rows
        elif action == "discard":
            request.session.pop("bank_draft", None)
        elif action == "save":
            entries = [CompanyBankInfo(**row) for row in rows]
            try:
                _transactions(gateway).set_company_bank_info_list(entries)
            except OSError:
                logger.exception("Saving company bank info failed")
                request.session["bank_draft"] = rows
                _flash(request, "Company bank info could not be saved.", category="error")
            else:
                request.session.pop("bank_draft", None)
                _flash(request, BANK_INFO_SAVED, category="success")
        else:
            _flash(request, f"Unknown action '{action}'.", category="error")

        return _redirect(request, "admin", tab="settings")

    return app


__all__ = [
    "ACCESS_DENIED",
    "BANK_INFO_SAVED",
    "CREATE_FAILED",
    "CREATE_REQUIRED",
    "INVALID_AMOUNT",
    "create_app",
    "describe_owner",
    "filter_transactions",
    "parse_amount",
    "status_options",
    "validate_create_form",
]
