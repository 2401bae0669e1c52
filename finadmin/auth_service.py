"""Gateway between application user operations and the backend account/profile tables."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from .backend import (
    AuthUser,
    BackendClient,
    BackendError,
    BackendSession,
    NotFoundError,
    parse_timestamp,
)
from .models import Notification, User

logger = logging.getLogger("finadmin.auth")

PROFILES_TABLE = "profiles"
NOTIFICATIONS_TABLE = "notifications"

DEFAULT_BALANCE = 13_000_000

PROFILE_NOT_FOUND = "Profile not found."
PROFILE_NOT_SAVED = "Account was created but the profile could not be saved."
AMBIGUOUS_USERNAME = "That username belongs to more than one account. Sign in with your email address."

# UserUpdate attribute -> profiles column
_UPDATABLE_COLUMNS = {
    "full_name": "full_name",
    "phone_number": "phone_number",
    "profile_picture_url": "profile_picture_url",
    "is_verified": "is_verified",
}


class Registration(BaseModel):
    """Self-service sign-up request."""

    full_name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1)
    phone_number: str = Field(default="", max_length=64)

    @field_validator("full_name", "email", "phone_number", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("email")
    @classmethod
    def _require_at_sign(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value

    @property
    def username(self) -> str:
        return self.email.split("@", 1)[0].lower()


class NewUser(Registration):
    """Administrator-created account with caller-chosen flags and balance."""

    balance: float = 0
    is_admin: bool = False
    is_verified: bool = False


class UserUpdate(BaseModel):
    """Sparse profile update.

    Only attributes passed to the constructor are written; passing ``""`` or
    ``None`` clears the column, leaving an attribute out keeps it unchanged.
    """

    id: str = Field(..., min_length=1)
    full_name: Optional[str] = None
    phone_number: Optional[str] = None
    profile_picture_url: Optional[str] = None
    is_verified: Optional[bool] = None

    def changes(self) -> Dict[str, object]:
        supplied = self.model_dump(exclude_unset=True, exclude={"id"})
        return {_UPDATABLE_COLUMNS[name]: value for name, value in supplied.items()}


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a login or registration attempt."""

    user: Optional[User] = None
    error: Optional[str] = None
    session: Optional[BackendSession] = None

    @property
    def ok(self) -> bool:
        return self.user is not None and self.error is None


def _text(value: object) -> str:
    if value is None:
        return ""
    return str(value)


def _number(value: object) -> float:
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0
    return int(number) if number.is_integer() else number


def row_to_notification(row: Mapping[str, Any]) -> Notification:
    return Notification(
        id=_text(row.get("id")),
        user_id=_text(row.get("user_id")),
        message=_text(row.get("message")),
        date=parse_timestamp(row.get("date")),
        read=bool(row.get("read") or False),
    )


def profile_to_user(
    profile: Mapping[str, Any],
    auth_user: Optional[AuthUser] = None,
    notifications: Iterable[Notification] = (),
) -> User:
    """Map a profiles row onto a :class:`User`, defaulting every missing field."""

    user_id = auth_user.id if auth_user is not None else _text(profile.get("id"))
    email = _text(profile.get("email")) or (auth_user.email if auth_user is not None else "")
    picture = profile.get("profile_picture_url")
    return User(
        id=user_id,
        email=email,
        full_name=_text(profile.get("full_name")),
        username=_text(profile.get("username")),
        phone_number=_text(profile.get("phone_number")),
        is_admin=bool(profile.get("is_admin") or False),
        is_verified=bool(profile.get("is_verified") or False),
        balance=_number(profile.get("balance")),
        notifications=tuple(notifications),
        profile_picture_url=str(picture) if picture else None,
    )


class AuthService:
    """Application-level user operations bound to one caller's backend session."""

    def __init__(
        self,
        client: BackendClient,
        *,
        session: Optional[BackendSession] = None,
        default_balance: float = DEFAULT_BALANCE,
    ) -> None:
        self._client = client
        self._session = session
        self._default_balance = default_balance

    @property
    def session(self) -> Optional[BackendSession]:
        return self._session

    @property
    def _token(self) -> Optional[str]:
        return self._session.access_token if self._session is not None else None

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    async def login(self, identifier: str, password: str) -> AuthResult:
        email = identifier.strip()
        if "@" not in email:
            matches = await self._emails_for_username(email)
            if len(matches) > 1:
                return AuthResult(error=AMBIGUOUS_USERNAME)
            if not matches:
                return AuthResult(error="Invalid login credentials")
            email = matches[0]

        try:
            session = await self._client.sign_in_with_password(email, password)
        except BackendError as exc:
            logger.info("Login failed for %s: %s", email, exc)
            return AuthResult(error=str(exc))

        try:
            profile = await self._client.select(
                PROFILES_TABLE,
                filters={"id": session.user.id},
                single=True,
                access_token=session.access_token,
            )
        except BackendError as exc:
            logger.warning("No profile for authenticated account %s: %s", session.user.id, exc)
            await self._sign_out_quietly(session.access_token)
            return AuthResult(error=PROFILE_NOT_FOUND)

        self._session = session
        return AuthResult(user=profile_to_user(profile, session.user), session=session)

    async def register(self, registration: Registration) -> AuthResult:
        try:
            auth_user, session = await self._client.sign_up(registration.email, registration.password)
        except BackendError as exc:
            logger.info("Registration rejected for %s: %s", registration.email, exc)
            return AuthResult(error=str(exc))

        row = {
            "id": auth_user.id,
            "email": registration.email,
            "full_name": registration.full_name,
            "username": registration.username,
            "phone_number": registration.phone_number,
            "is_admin": False,
            "is_verified": False,
            "balance": self._default_balance,
        }
        token = session.access_token if session is not None else None
        try:
            rows = await self._client.insert(PROFILES_TABLE, [row], upsert=True, access_token=token)
        except BackendError as exc:
            logger.error("Profile insert failed for new account %s: %s", auth_user.id, exc)
            await self._discard_orphan(auth_user)
            return AuthResult(error=PROFILE_NOT_SAVED)

        if session is not None:
            self._session = session
        profile = rows[0] if rows else row
        return AuthResult(user=profile_to_user(profile, auth_user), session=session)

    async def logout(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await self._sign_out_quietly(session.access_token)

    async def get_current_user(self) -> Optional[User]:
        if self._session is None:
            return None
        token = self._session.access_token
        try:
            auth_user = await self._client.get_user(token)
            profile = await self._client.select(
                PROFILES_TABLE,
                filters={"id": auth_user.id},
                single=True,
                access_token=token,
            )
        except BackendError as exc:
            logger.info("Unable to resolve current user: %s", exc)
            return None

        try:
            rows = await self._client.select(
                NOTIFICATIONS_TABLE,
                filters={"user_id": auth_user.id},
                order="date",
                descending=True,
                access_token=token,
            )
        except BackendError as exc:
            logger.warning("Notifications unavailable for %s: %s", auth_user.id, exc)
            rows = []

        notifications = [row_to_notification(row) for row in rows]
        return profile_to_user(profile, auth_user, notifications)

    async def verify_email(self, email: str) -> bool:
        return True

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    async def update_user_notification(self, user_id: str, notification_id: str, read: bool) -> bool:
        try:
            await self._client.update(
                NOTIFICATIONS_TABLE,
                {"read": read},
                filters={"id": notification_id, "user_id": user_id},
                access_token=self._token,
            )
        except BackendError as exc:
            logger.warning("Failed to update notification %s: %s", notification_id, exc)
            return False
        return True

    async def add_user_notification(self, user_id: str, message: str) -> bool:
        row = {
            "user_id": user_id,
            "message": message,
            "date": datetime.now(timezone.utc).isoformat(),
            "read": False,
        }
        try:
            await self._client.insert(NOTIFICATIONS_TABLE, [row], access_token=self._token)
        except BackendError as exc:
            logger.warning("Failed to notify user %s: %s", user_id, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------
    async def update_user_balance(self, user_id: str, new_balance: float) -> bool:
        try:
            rows = await self._client.update(
                PROFILES_TABLE,
                {"balance": new_balance},
                filters={"id": user_id},
                access_token=self._token,
            )
        except BackendError as exc:
            logger.warning("Failed to update balance for %s: %s", user_id, exc)
            return False
        if not rows:
            logger.warning("Balance update matched no profile for %s", user_id)
            return False
        return True

    async def get_all_users(self) -> List[User]:
        try:
            rows = await self._client.select(PROFILES_TABLE, access_token=self._token)
        except BackendError as exc:
            logger.warning("Listing profiles failed: %s", exc)
            return []
        return [profile_to_user(row) for row in rows]

    async def get_user(self, user_id: str) -> Optional[User]:
        try:
            row = await self._client.select(
                PROFILES_TABLE,
                filters={"id": user_id},
                single=True,
                access_token=self._token,
            )
        except NotFoundError:
            return None
        except BackendError as exc:
            logger.warning("Loading profile %s failed: %s", user_id, exc)
            return None
        return profile_to_user(row)

    async def update_user_info(self, update: UserUpdate) -> bool:
        changes = update.changes()
        if not changes:
            return True
        try:
            rows = await self._client.update(
                PROFILES_TABLE,
                changes,
                filters={"id": update.id},
                access_token=self._token,
            )
        except BackendError as exc:
            logger.warning("Failed to update profile %s: %s", update.id, exc)
            return False
        if not rows:
            logger.warning("Profile update matched no row for %s", update.id)
            return False
        return True

    async def admin_create_user(self, new_user: NewUser) -> Optional[User]:
        try:
            auth_user, _ = await self._client.sign_up(new_user.email, new_user.password)
        except BackendError as exc:
            logger.info("Admin account creation rejected for %s: %s", new_user.email, exc)
            return None

        row = {
            "id": auth_user.id,
            "email": new_user.email,
            "full_name": new_user.full_name,
            "username": new_user.username,
            "phone_number": new_user.phone_number,
            "is_admin": new_user.is_admin,
            "is_verified": new_user.is_verified,
            "balance": new_user.balance,
        }
        try:
            rows = await self._client.insert(PROFILES_TABLE, [row], access_token=self._token)
        except BackendError as exc:
            logger.error("Profile insert failed for admin-created account %s: %s", auth_user.id, exc)
            await self._discard_orphan(auth_user)
            return None

        logger.info("Created user %s <%s>", auth_user.id, new_user.email)
        return profile_to_user(rows[0] if rows else row, auth_user)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _emails_for_username(self, username: str) -> List[str]:
        # Usernames come from email local parts, so two domains can share one.
        try:
            rows = await self._client.select(PROFILES_TABLE, filters={"username": username.lower()})
        except BackendError as exc:
            logger.warning("Username lookup failed: %s", exc)
            return []
        return [email for email in (_text(row.get("email")) for row in rows) if email]

    async def _sign_out_quietly(self, access_token: str) -> None:
        try:
            await self._client.sign_out(access_token)
        except BackendError as exc:
            logger.info("Sign-out failed: %s", exc)

    async def _discard_orphan(self, auth_user: AuthUser) -> None:
        if not self._client.has_service_key:
            logger.warning(
                "Account %s <%s> has no profile row and must be removed manually",
                auth_user.id,
                auth_user.email,
            )
            return
        try:
            await self._client.delete_user(auth_user.id)
        except BackendError as exc:
            logger.error("Could not delete orphaned account %s: %s", auth_user.id, exc)
        else:
            logger.warning("Deleted orphaned account %s after profile failure", auth_user.id)


__all__ = [
    "AuthResult",
    "AuthService",
    "DEFAULT_BALANCE",
    "NewUser",
    "Registration",
    "UserUpdate",
    "profile_to_user",
    "row_to_notification",
]
