"""Persisted torrent record models."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
import json
import uuid


class ContentType(str, Enum):
    """Kind of FHIR content carried by a torrent."""

    BUNDLE = "bundle"
    NDJSON = "ndjson"
    UNKNOWN = "unknown"


class SessionState(str, Enum):
    """Mirrored session states."""

    DOWNLOADING = "downloading"
    SEEDING = "seeding"
    PAUSED = "paused"


def default_meta() -> dict[str, Any]:
    """Initial FHIR metadata for a new record."""
    return {"fhir_version": "", "resource_count": 0, "profile": ""}


@dataclass
class RecordFile:
    """A file within a torrent record."""

    name: str
    path: str
    size: int
    type: str = "application/octet-stream"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecordFile":
        return cls(
            name=data["name"],
            path=data.get("path", data["name"]),
            size=data.get("size", 0),
            type=data.get("type") or "application/octet-stream",
        )


@dataclass
class RecordStatus:
    """Live transfer metrics mirrored from a session."""

    downloaded: int = 0
    uploaded: int = 0
    download_rate: float = 0.0
    upload_rate: float = 0.0
    progress: float = 0.0
    peers: int = 0
    seeds: int = 0
    state: SessionState = SessionState.DOWNLOADING

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecordStatus":
        return cls(
            downloaded=data.get("downloaded", 0),
            uploaded=data.get("uploaded", 0),
            download_rate=data.get("download_rate", 0.0),
            upload_rate=data.get("upload_rate", 0.0),
            progress=data.get("progress", 0.0),
            peers=data.get("peers", 0),
            seeds=data.get("seeds", 0),
            state=SessionState(data.get("state", "downloading")),
        )


@dataclass
class TorrentRecord:
    """Persisted view of one swarm, keyed by info hash."""

    info_hash: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    description: str = ""
    content_type: ContentType = ContentType.UNKNOWN
    magnet_uri: str = ""
    total_size: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    files: list[RecordFile] = field(default_factory=list)
    status: RecordStatus = field(default_factory=RecordStatus)
    meta: dict[str, Any] = field(default_factory=default_meta)

    # Fields rewritten on every synchronization tick
    MUTABLE_FIELDS = ("name", "magnet_uri", "total_size", "files", "status")
    # Fields writable through an explicit metadata update
    META_FIELDS = ("description", "content_type", "meta")

    def to_dict(self) -> dict[str, Any]:
        """Convert record to a plain dictionary (JSON-compatible)."""
        return {
            "id": self.id,
            "info_hash": self.info_hash,
            "name": self.name,
            "description": self.description,
            "content_type": self.content_type.value,
            "magnet_uri": self.magnet_uri,
            "total_size": self.total_size,
            "created_at": self.created_at.isoformat(),
            "files": [asdict(f) for f in self.files],
            "status": self.status.to_dict(),
            "meta": self.meta,
        }

    def to_row(self) -> dict[str, Any]:
        """Convert record to a database row with JSON-encoded columns."""
        data = self.to_dict()
        for key in ("files", "status", "meta"):
            data[key] = json.dumps(data[key])
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TorrentRecord":
        """Create record from a dictionary or database row."""

        def _decode(value: Any, default: Any) -> Any:
            if value is None:
                return default
            if isinstance(value, str):
                return json.loads(value)
            return value

        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)

        return cls(
            id=data["id"],
            info_hash=data["info_hash"],
            name=data.get("name", ""),
            description=data.get("description", ""),
            content_type=ContentType(data.get("content_type", "unknown")),
            magnet_uri=data.get("magnet_uri", ""),
            total_size=data.get("total_size", 0),
            created_at=created_at or datetime.utcnow(),
            files=[RecordFile.from_dict(f) for f in _decode(data.get("files"), [])],
            status=RecordStatus.from_dict(_decode(data.get("status"), {})),
            meta=_decode(data.get("meta"), default_meta()),
        )
