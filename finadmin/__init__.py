"""Admin console and authentication gateway for the finance application."""

from __future__ import annotations

from typing import Any

from .auth_service import AuthResult, AuthService, NewUser, Registration, UserUpdate
from .backend import BackendClient, BackendError
from .config import Settings, load_settings


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the admin console application."""

    from .console import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "AuthResult",
    "AuthService",
    "BackendClient",
    "BackendError",
    "NewUser",
    "Registration",
    "Settings",
    "UserUpdate",
    "create_app",
    "load_settings",
]
