"""
Repository pattern for profile and usage data.

The accounting core only needs read-modify-write with last-writer-wins;
serialising writers is the caller's job (see UsageMeter).
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, List, Optional

from quota_guard.core.catalog import Tier
from quota_guard.core.clock import utc_now
from quota_guard.core.ledger import UsageLedger

from .db import DEFAULT_DB_PATH, transaction
from .models import TurnUsageRecord

_RECORD_COLUMNS = (
    "completion_id", "turn_id", "user_id", "input_tokens", "output_tokens",
    "cache_writes", "cache_reads", "total_cost", "tool_calls", "provider_calls",
    "model_id", "provider", "start_time", "end_time",
)


class PersistenceError(Exception):
    """Raised when usage could not be written to the store.

    Recoverable: the in-memory state still holds the counted usage and
    the write can be retried.
    """


class ProfileStore(ABC):
    """Durable storage for user tiers, ledgers and turn records."""

    @abstractmethod
    async def get_tier(self, user_id: str) -> Optional[str]:
        """Return the stored tier name, or None for an unknown user."""
        ...

    @abstractmethod
    async def set_tier(self, user_id: str, tier: Tier) -> None:
        ...

    @abstractmethod
    async def load_ledger(self, user_id: str) -> Optional[UsageLedger]:
        """Return the stored ledger, or None if the user has none yet."""
        ...

    @abstractmethod
    async def save_ledger(self, user_id: str, ledger: UsageLedger) -> None:
        ...

    @abstractmethod
    async def append_turn_record(self, record: TurnUsageRecord) -> None:
        ...

    @abstractmethod
    async def list_turn_records(self, user_id: str, limit: int = 100) -> List[TurnUsageRecord]:
        """Turn records for a user, newest first."""
        ...


class InMemoryProfileStore(ProfileStore):
    """Profile store kept in process memory.

    Ledgers are stored in serialised form so callers never share a live
    object with the store.
    """

    def __init__(self):
        self._tiers: Dict[str, str] = {}
        self._ledgers: Dict[str, dict] = {}
        self._records: Dict[str, List[TurnUsageRecord]] = defaultdict(list)

    async def get_tier(self, user_id: str) -> Optional[str]:
        return self._tiers.get(user_id)

    async def set_tier(self, user_id: str, tier: Tier) -> None:
        self._tiers[user_id] = tier.value

    async def load_ledger(self, user_id: str) -> Optional[UsageLedger]:
        data = self._ledgers.get(user_id)
        if data is None:
            return None
        return UsageLedger.from_dict(json.loads(json.dumps(data)))

    async def save_ledger(self, user_id: str, ledger: UsageLedger) -> None:
        self._ledgers[user_id] = ledger.to_dict()

    async def append_turn_record(self, record: TurnUsageRecord) -> None:
        self._records[record.user_id].append(record)

    async def list_turn_records(self, user_id: str, limit: int = 100) -> List[TurnUsageRecord]:
        records = sorted(self._records.get(user_id, []), key=lambda r: r.end_time, reverse=True)
        return records[:limit]


class SqliteProfileStore(ProfileStore):
    """Profile store backed by SQLite.

    Each call opens its own connection and runs in a worker thread so the
    event loop is never blocked on disk I/O.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    async def get_tier(self, user_id: str) -> Optional[str]:
        return await asyncio.to_thread(self._get_tier, user_id)

    async def set_tier(self, user_id: str, tier: Tier) -> None:
        await asyncio.to_thread(self._set_tier, user_id, tier.value)

    async def load_ledger(self, user_id: str) -> Optional[UsageLedger]:
        return await asyncio.to_thread(self._load_ledger, user_id)

    async def save_ledger(self, user_id: str, ledger: UsageLedger) -> None:
        await asyncio.to_thread(self._save_ledger, user_id, json.dumps(ledger.to_dict()))

    async def append_turn_record(self, record: TurnUsageRecord) -> None:
        await asyncio.to_thread(self._append_turn_record, record)

    async def list_turn_records(self, user_id: str, limit: int = 100) -> List[TurnUsageRecord]:
        return await asyncio.to_thread(self._list_turn_records, user_id, limit)

    def _get_tier(self, user_id: str) -> Optional[str]:
        with transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT tier FROM user_profile WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row["tier"] if row else None

    def _set_tier(self, user_id: str, tier: str) -> None:
        with transaction(self.db_path) as conn:
            conn.execute("""
                INSERT INTO user_profile (user_id, tier, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    tier = excluded.tier,
                    updated_at = excluded.updated_at
            """, (user_id, tier, _timestamp()))

    def _load_ledger(self, user_id: str) -> Optional[UsageLedger]:
        with transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT ledger FROM user_profile WHERE user_id = ?", (user_id,)
            ).fetchone()
        if not row or not row["ledger"]:
            return None
        return UsageLedger.from_dict(json.loads(row["ledger"]))

    def _save_ledger(self, user_id: str, payload: str) -> None:
        with transaction(self.db_path) as conn:
            conn.execute("""
                INSERT INTO user_profile (user_id, ledger, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    ledger = excluded.ledger,
                    updated_at = excluded.updated_at
            """, (user_id, payload, _timestamp()))

    def _append_turn_record(self, record: TurnUsageRecord) -> None:
        columns = ", ".join(_RECORD_COLUMNS)
        placeholders = ", ".join(f":{name}" for name in _RECORD_COLUMNS)
        values = record.to_dict()
        with transaction(self.db_path) as conn:
            conn.execute(
                f"INSERT INTO turn_usage_record ({columns}) VALUES ({placeholders})",
                {name: values[name] for name in _RECORD_COLUMNS},
            )

    def _list_turn_records(self, user_id: str, limit: int) -> List[TurnUsageRecord]:
        columns = ", ".join(_RECORD_COLUMNS)
        with transaction(self.db_path) as conn:
            rows = conn.execute(f"""
                SELECT {columns}
                FROM turn_usage_record
                WHERE user_id = ?
                ORDER BY end_time DESC LIMIT ?
            """, (user_id, limit)).fetchall()
        return [TurnUsageRecord.from_dict(dict(row)) for row in rows]


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the profile and turn record tables if they don't exist.

    turn_usage_record is an append-only ledger of completed turns.
    No UPDATE or DELETE operations should ever be performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    with transaction(db_path) as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS user_profile (
                user_id TEXT PRIMARY KEY,
                tier TEXT,
                ledger TEXT,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS turn_usage_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                completion_id TEXT NOT NULL,
                turn_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                cache_writes INTEGER,
                cache_reads INTEGER,
                total_cost REAL,
                tool_calls INTEGER NOT NULL DEFAULT 0,
                provider_calls INTEGER NOT NULL DEFAULT 0,
                model_id TEXT,
                provider TEXT,
                start_time TEXT NOT NULL,
                end_time TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_turn_usage_record_user
            ON turn_usage_record (user_id, end_time)
        """)


def _timestamp() -> str:
    return utc_now().isoformat()
