"""Configuration for the finance admin console."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml

from .auth_service import DEFAULT_BALANCE
from .models import CompanyBankInfo


@dataclass(frozen=True)
class BackendSettings:
    """Connection details for the hosted account/table service."""

    url: str
    anon_key: str
    service_key: Optional[str] = None
    timeout: float = 10.0


@dataclass(frozen=True)
class Settings:
    """Everything the console needs at start-up."""

    backend: BackendSettings
    session_secret: str
    bank_info_path: Path
    default_balance: float = DEFAULT_BALANCE
    secure_cookies: bool = False


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _require(env: Mapping[str, str], name: str) -> str:
    value = (env.get(name) or "").strip()
    if not value:
        raise RuntimeError(f"{name} must be configured")
    return value


def resolve_bank_info_path(env_value: Optional[str]) -> Path:
    """Resolve the YAML file holding the company bank-account list."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "company_bank_info.yaml").resolve(strict=False)


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from ``FINADMIN_*`` environment variables."""

    env = os.environ if env is None else env

    raw_timeout = env.get("FINADMIN_BACKEND_TIMEOUT", "10")
    try:
        timeout = float(raw_timeout)
    except ValueError as exc:
        raise RuntimeError(f"FINADMIN_BACKEND_TIMEOUT must be a number, got {raw_timeout!r}") from exc

    raw_balance = env.get("FINADMIN_DEFAULT_BALANCE")
    try:
        default_balance = float(raw_balance) if raw_balance else DEFAULT_BALANCE
    except ValueError as exc:
        raise RuntimeError(f"FINADMIN_DEFAULT_BALANCE must be a number, got {raw_balance!r}") from exc

    backend = BackendSettings(
        url=_require(env, "FINADMIN_BACKEND_URL").rstrip("/"),
        anon_key=_require(env, "FINADMIN_BACKEND_ANON_KEY"),
        service_key=(env.get("FINADMIN_BACKEND_SERVICE_KEY") or "").strip() or None,
        timeout=timeout,
    )
    return Settings(
        backend=backend,
        session_secret=_require(env, "FINADMIN_SESSION_SECRET"),
        bank_info_path=resolve_bank_info_path(env.get("FINADMIN_BANK_INFO_PATH")),
        default_balance=default_balance,
        secure_cookies=_env_flag(env.get("FINADMIN_SESSION_SECURE"), False),
    )


def bank_info_from_dict(data: Mapping[str, object]) -> CompanyBankInfo:
    """Create a :class:`CompanyBankInfo` from raw dictionary data."""

    if not isinstance(data, Mapping):
        raise ValueError("Each bank account entry must be a mapping")
    required_fields = {"bank_name", "account_number", "account_holder_name"}
    missing = required_fields - data.keys()
    if missing:
        raise ValueError(f"Missing required bank account fields: {', '.join(sorted(missing))}")
    return CompanyBankInfo(
        bank_name=str(data["bank_name"] or ""),
        account_number=str(data["account_number"] or ""),
        account_holder_name=str(data["account_holder_name"] or ""),
    )


def load_company_bank_info(path: Path) -> List[CompanyBankInfo]:
    """Load the bank-account list from a YAML file; a missing file means no accounts."""

    if not path.exists():
        return []
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError("Bank account file must contain a mapping with an 'accounts' key")
    accounts = raw.get("accounts") or []
    if not isinstance(accounts, list):
        raise ValueError("'accounts' must be a list")
    return [bank_info_from_dict(item) for item in accounts]


def dump_company_bank_info(entries: List[CompanyBankInfo]) -> str:
    document: Dict[str, object] = {"accounts": [entry.to_dict() for entry in entries]}
    return yaml.safe_dump(document, sort_keys=False, allow_unicode=True)


__all__ = [
    "BackendSettings",
    "Settings",
    "bank_info_from_dict",
    "dump_company_bank_info",
    "load_company_bank_info",
    "load_settings",
    "resolve_bank_info_path",
]
