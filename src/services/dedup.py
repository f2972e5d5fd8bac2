"""
Natural-key insert-if-absent, the write path every stage goes through.

Keys are namespaced by origin so an originally-ingested item and a
back-validated copy of the same external id never collide, while a
retry of the same origin always does.
"""
import logging
import re
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional

import aiosqlite

logger = logging.getLogger(__name__)

ORIGIN_PREFIXES: Dict[str, Optional[str]] = {
    "extracted": None,
    "backvalidated": "bv",
}

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")


class InsertOutcome(str, Enum):
    INSERTED = "inserted"
    ALREADY_PRESENT = "already_present"


class InsertResult(NamedTuple):
    outcome: InsertOutcome
    row_id: Optional[int]

    @property
    def inserted(self) -> bool:
        return self.outcome is InsertOutcome.INSERTED


def natural_key(source_kind: str, external_id: str, origin: str = "extracted") -> str:
    if origin not in ORIGIN_PREFIXES:
        raise ValueError(f"Unknown origin: {origin}")
    key = f"{source_kind}_{external_id}"
    prefix = ORIGIN_PREFIXES[origin]
    return f"{prefix}_{key}" if prefix else key


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


async def insert_if_absent(
    conn: aiosqlite.Connection,
    table: str,
    natural_key: Any,
    payload: Dict[str, Any],
    key_column: str = "natural_key",
) -> InsertResult:
    """
    Insert payload keyed by natural_key unless a row with that key exists.
    The caller owns the transaction.
    """
    row = {key_column: natural_key, **payload}
    columns = [_check_identifier(c) for c in row]
    placeholders = ", ".join("?" for _ in columns)

    cursor = await conn.execute(
        f"INSERT OR IGNORE INTO {_check_identifier(table)} ({', '.join(columns)}) "
        f"VALUES ({placeholders})",
        tuple(row.values()),
    )

    if cursor.rowcount == 1:
        return InsertResult(InsertOutcome.INSERTED, cursor.lastrowid)

    logger.debug(f"{table}: {natural_key} already present")
    return InsertResult(InsertOutcome.ALREADY_PRESENT, None)
