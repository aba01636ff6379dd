"""Persisted torrent records."""

from .models import ContentType, RecordFile, RecordStatus, SessionState, TorrentRecord
from .store import RecordStore, SqliteRecordStore

__all__ = [
    "ContentType",
    "RecordFile",
    "RecordStatus",
    "SessionState",
    "TorrentRecord",
    "RecordStore",
    "SqliteRecordStore",
]
