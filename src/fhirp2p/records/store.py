"""Record store facade and its SQLite implementation."""

import json
from abc import ABC, abstractmethod
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite

from .models import TorrentRecord

# Columns a query or patch may reference
QUERY_FIELDS = frozenset({"id", "info_hash"})
PATCH_FIELDS = frozenset({
    "name",
    "description",
    "content_type",
    "magnet_uri",
    "total_size",
    "files",
    "status",
    "meta",
})
JSON_FIELDS = frozenset({"files", "status", "meta"})


class RecordStore(ABC):
    """Interface the swarm core uses to persist and read torrent records.

    Queries are equality filters on ``id`` and/or ``info_hash``.
    """

    @abstractmethod
    async def find(self, query: dict[str, Any] | None = None) -> list[TorrentRecord]:
        """Return all records matching the query (all records if empty)."""
        ...

    @abstractmethod
    async def find_one(self, query: dict[str, Any]) -> TorrentRecord | None:
        """Return the first matching record, or None."""
        ...

    @abstractmethod
    async def insert(self, record: TorrentRecord) -> str:
        """Insert a record and return its id."""
        ...

    @abstractmethod
    async def update(self, query: dict[str, Any], patch: dict[str, Any]) -> int:
        """Replace top-level fields on matching records; return count."""
        ...

    @abstractmethod
    async def remove(self, query: dict[str, Any]) -> int:
        """Delete matching records; return count."""
        ...

    async def close(self) -> None:
        """Release any underlying resources."""
        return None


def _where(query: dict[str, Any] | None) -> tuple[str, list[Any]]:
    """Build a WHERE clause from an equality query."""
    if not query:
        return "", []
    unknown = set(query) - QUERY_FIELDS
    if unknown:
        raise ValueError(f"Unsupported query fields: {sorted(unknown)}")
    clause = " AND ".join(f"{k} = ?" for k in query)
    return f" WHERE {clause}", list(query.values())


def _encode(key: str, value: Any) -> Any:
    """Encode a patch value into its column representation."""
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        value = value.to_dict() if hasattr(value, "to_dict") else asdict(value)
    if key in JSON_FIELDS:
        if isinstance(value, list):
            value = [asdict(v) if is_dataclass(v) else v for v in value]
        return json.dumps(value, default=lambda v: v.value if isinstance(v, Enum) else str(v))
    return value


class SqliteRecordStore(RecordStore):
    """SQLite database for torrent record persistence."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS torrents (
        id TEXT PRIMARY KEY,
        info_hash TEXT NOT NULL UNIQUE,
        name TEXT DEFAULT '',
        description TEXT DEFAULT '',
        content_type TEXT DEFAULT 'unknown',
        magnet_uri TEXT DEFAULT '',
        total_size INTEGER DEFAULT 0,
        created_at TIMESTAMP NOT NULL,
        files TEXT,
        status TEXT,
        meta TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_torrents_created_at ON torrents(created_at);
    """

    def __init__(self, db_path: str | Path):
        """Initialize store with database path."""
        self.db_path = Path(db_path)
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Connect to database and initialize schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.executescript(self.SCHEMA)
        await self._connection.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _get_conn(self) -> aiosqlite.Connection:
        """Get connection, connecting if needed."""
        if not self._connection:
            await self.connect()
        return self._connection  # type: ignore

    async def find(self, query: dict[str, Any] | None = None) -> list[TorrentRecord]:
        conn = await self._get_conn()
        where, params = _where(query)
        async with conn.execute(
            f"SELECT * FROM torrents{where} ORDER BY created_at ASC", params
        ) as cursor:
            rows = await cursor.fetchall()
            return [TorrentRecord.from_dict(dict(row)) for row in rows]

    async def find_one(self, query: dict[str, Any]) -> TorrentRecord | None:
        conn = await self._get_conn()
        where, params = _where(query)
        async with conn.execute(f"SELECT * FROM torrents{where} LIMIT 1", params) as cursor:
            row = await cursor.fetchone()
            if row:
                return TorrentRecord.from_dict(dict(row))
        return None

    async def insert(self, record: TorrentRecord) -> str:
        conn = await self._get_conn()
        data = record.to_row()
        columns = ", ".join(data.keys())
        placeholders = ", ".join("?" for _ in data)
        await conn.execute(
            f"INSERT INTO torrents ({columns}) VALUES ({placeholders})",
            list(data.values()),
        )
        await conn.commit()
        return record.id

    async def update(self, query: dict[str, Any], patch: dict[str, Any]) -> int:
        if not patch:
            return 0
        unknown = set(patch) - PATCH_FIELDS
        if unknown:
            raise ValueError(f"Unsupported patch fields: {sorted(unknown)}")

        conn = await self._get_conn()
        where, params = _where(query)
        set_clause = ", ".join(f"{k} = ?" for k in patch)
        values = [_encode(k, v) for k, v in patch.items()]
        cursor = await conn.execute(
            f"UPDATE torrents SET {set_clause}{where}",
            [*values, *params],
        )
        await conn.commit()
        return cursor.rowcount

    async def remove(self, query: dict[str, Any]) -> int:
        conn = await self._get_conn()
        where, params = _where(query)
        cursor = await conn.execute(f"DELETE FROM torrents{where}", params)
        await conn.commit()
        return cursor.rowcount

    async def count(self) -> int:
        """Count all records."""
        conn = await self._get_conn()
        async with conn.execute("SELECT COUNT(*) FROM torrents") as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0
