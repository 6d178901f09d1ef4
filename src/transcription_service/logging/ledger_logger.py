from __future__ import annotations

import json
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from ..db.base import BaseDBManager
from ..models.ledger import LedgerEntry, LedgerEventType


logger = logging.getLogger(__name__)


def _plain(value: Any) -> Any:
    # Money stays exact in the ledger: Decimals are written as strings.
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


class LedgerLogger:
    """
    Audit trail for minute and money movements.

    Each event is stored as a `LedgerEntry` through the DB manager and
    mirrored to an append-only JSONL file for log shippers. The stored
    entry is the record of truth; a failed file write is only logged.
    """

    def __init__(self, db: BaseDBManager, file_path: Path) -> None:
        self._db = db
        self._file_path = file_path
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_usage(
        self,
        user_id: str,
        message: str,
        details: Mapping[str, Any],
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        """Reservations, settlements, releases and cycle resets."""
        return await self.record(LedgerEventType.USAGE, message, details, user_id, correlation_id)

    async def log_balance(
        self,
        user_id: str,
        message: str,
        details: Mapping[str, Any],
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        """Wallet, credit and pricing changes."""
        return await self.record(LedgerEventType.BALANCE, message, details, user_id, correlation_id)

    async def log_subscription(
        self,
        user_id: Optional[str],
        message: str,
        details: Mapping[str, Any],
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self.record(
            LedgerEventType.SUBSCRIPTION, message, details, user_id, correlation_id
        )

    async def log_error(
        self,
        message: str,
        details: Mapping[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self.record(LedgerEventType.ERROR, message, details, user_id, correlation_id)

    async def record(
        self,
        event_type: LedgerEventType,
        message: str,
        details: Mapping[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        entry = await self._db.add_ledger_entry(
            LedgerEntry(
                event_type=event_type,
                user_id=user_id,
                message=message,
                details=_plain(details),
                correlation_id=correlation_id,
            )
        )
        self._append_line(entry)
        return entry

    def _append_line(self, entry: LedgerEntry) -> None:
        line = json.dumps(entry.serialize_for_db(), default=str, sort_keys=True)
        try:
            with self._file_path.open("a", encoding="utf-8") as ledger_file:
                ledger_file.write(line + "\n")
        except OSError:
            logger.warning("Could not append to ledger file %s", self._file_path, exc_info=True)
