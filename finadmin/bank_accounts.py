"""Shared store for the company bank-account list."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Iterable, List, Optional

from .config import dump_company_bank_info, load_company_bank_info
from .models import CompanyBankInfo

logger = logging.getLogger("finadmin.bank_accounts")


class CompanyBankInfoStore:
    """Hold the bank-account list in memory and persist it as a whole.

    ``path=None`` keeps the list in memory only.
    """

    def __init__(self, path: Optional[Path] = None, *, initial: Iterable[CompanyBankInfo] = ()) -> None:
        self._path = path
        self._lock = threading.Lock()
        if path is not None and path.exists():
            self._entries: List[CompanyBankInfo] = load_company_bank_info(path)
        else:
            self._entries = list(initial)

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def list(self) -> List[CompanyBankInfo]:
        with self._lock:
            return list(self._entries)

    def replace(self, entries: Iterable[CompanyBankInfo]) -> List[CompanyBankInfo]:
        updated = list(entries)
        with self._lock:
            if self._path is not None:
                self._write(updated)
            self._entries = updated
        logger.info("Company bank info replaced (%d account(s))", len(updated))
        return list(updated)

    def _write(self, entries: List[CompanyBankInfo]) -> None:
        if self._path is None:
            raise RuntimeError("Company bank info store has no file to write")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.",
            dir=str(self._path.parent),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(dump_company_bank_info(entries))
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


__all__ = ["CompanyBankInfoStore"]
