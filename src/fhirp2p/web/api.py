"""JSON API endpoints for fhirp2p with key authentication."""

import asyncio
import base64
import binascii
import json
import logging
import secrets
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from ..errors import (
    ConfigurationError,
    EngineUnavailable,
    MalformedLocator,
    NotFound,
    SessionError,
    SwarmError,
)
from ..magnet import parse_magnet_uri
from ..records import ContentType, TorrentRecord
from ..torrent import SessionOptions, SwarmManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["api"])

STREAM_POLL_INTERVAL = 0.5


# =============================================================================
# Pydantic Models
# =============================================================================


class AddTorrentRequest(BaseModel):
    """Request to join an existing swarm."""

    locator: str = Field(..., description="Magnet URI, info hash, or .torrent path")
    name: str | None = Field(default=None, description="Display name override")
    trackers: list[str] = Field(default_factory=list, description="Extra trackers to announce to")
    paused: bool = Field(default=False, description="Add without starting the transfer")
    description: str | None = Field(default=None, description="Record description")
    content_type: ContentType | None = Field(default=None, description="bundle, ndjson, or unknown")
    meta: dict[str, Any] | None = Field(default=None, description="FHIR metadata")


class UploadedFile(BaseModel):
    """A file sent inline for seeding."""

    name: str = Field(..., description="File name")
    content: str = Field(..., description="File content")
    encoding: str = Field(default="utf-8", description="utf-8 or base64")

    def to_bytes(self) -> bytes:
        if self.encoding == "base64":
            return base64.b64decode(self.content, validate=True)
        return self.content.encode(self.encoding)


class CreateTorrentRequest(BaseModel):
    """Request to seed uploaded files as a new swarm."""

    files: list[UploadedFile] = Field(..., min_length=1, description="Files to seed")
    name: str | None = Field(default=None, description="Torrent name (also the storage folder)")
    comment: str = Field(default="", description="Torrent comment")
    trackers: list[str] = Field(default_factory=list, description="Extra trackers to announce to")
    description: str | None = Field(default=None, description="Record description")
    content_type: ContentType | None = Field(
        default=None,
        description="Expected FHIR format; files are validated against it",
    )
    meta: dict[str, Any] | None = Field(default=None, description="FHIR metadata")


class MetaUpdateRequest(BaseModel):
    """Request to edit user-facing record fields."""

    description: str | None = None
    content_type: ContentType | None = None
    meta: dict[str, Any] | None = None


class FileResponse(BaseModel):
    name: str
    path: str
    size: int
    type: str


class StatusResponse(BaseModel):
    downloaded: int
    uploaded: int
    download_rate: float
    upload_rate: float
    progress: float
    peers: int
    seeds: int
    state: str


class TorrentResponse(BaseModel):
    """Torrent record response."""

    id: str
    info_hash: str
    name: str
    description: str
    content_type: str
    magnet_uri: str
    total_size: int
    created_at: datetime
    files: list[FileResponse]
    status: StatusResponse
    meta: dict[str, Any]


class TorrentListResponse(BaseModel):
    """Response containing all torrent records."""

    torrents: list[TorrentResponse]
    total: int


class FileContentsResponse(BaseModel):
    """Text contents of a session's files, keyed by file name."""

    info_hash: str
    files: dict[str, str]


class NetworkStatsResponse(BaseModel):
    ready: bool
    sessions: int
    seeding: int
    download_rate: float
    upload_rate: float
    downloaded: int
    uploaded: int
    peers: int


class MagnetResponse(BaseModel):
    info_hash: str
    name: str | None
    trackers: list[str]


# =============================================================================
# API Key Authentication
# =============================================================================


def get_api_key_from_config(request: Request) -> str:
    """Get API key from app state config."""
    app_state = getattr(request.app, "state", None)
    if app_state and hasattr(app_state, "api_key"):
        return app_state.api_key
    return ""


async def verify_api_key(
    request: Request,
    x_api_key: str | None = Header(default=None),
    api_key: str | None = Query(default=None),
) -> str:
    """Verify API key from header or query param."""
    expected_key = get_api_key_from_config(request)

    if not expected_key:
        # No key configured - allow access (development mode)
        return ""

    provided_key = x_api_key or api_key

    if not provided_key:
        raise HTTPException(
            status_code=401,
            detail="API key required. Provide via X-API-Key header or api_key query param",
        )

    if not secrets.compare_digest(provided_key, expected_key):
        raise HTTPException(status_code=403, detail="Invalid API key")

    return provided_key


# =============================================================================
# Helpers
# =============================================================================


def _get_manager(request: Request) -> SwarmManager:
    manager: SwarmManager | None = getattr(request.app.state, "manager", None)
    if not manager:
        raise HTTPException(status_code=503, detail="Swarm manager not initialized")
    return manager


def _http_error(error: SwarmError) -> HTTPException:
    """Map a swarm error to an HTTP error."""
    if isinstance(error, NotFound):
        status_code = 404
    elif isinstance(error, MalformedLocator):
        status_code = 400
    elif isinstance(error, SessionError):
        status_code = 422
    elif isinstance(error, (EngineUnavailable, ConfigurationError)):
        status_code = 503
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail=str(error))


def _record_to_response(record: TorrentRecord) -> TorrentResponse:
    """Convert TorrentRecord to TorrentResponse."""
    return TorrentResponse.model_validate(record.to_dict())


async def _require_record(manager: SwarmManager, identifier: str) -> TorrentRecord:
    record = await manager.get_record(identifier)
    if not record:
        raise HTTPException(status_code=404, detail="Torrent not found")
    return record


# =============================================================================
# Torrent Record Endpoints
# =============================================================================


@router.get("/torrents", response_model=TorrentListResponse)
async def list_torrents(
    request: Request,
    _api_key: str = Depends(verify_api_key),
):
    """List all torrent records."""
    manager = _get_manager(request)
    records = await manager.list_records()
    return TorrentListResponse(
        torrents=[_record_to_response(r) for r in records],
        total=len(records),
    )


@router.get("/torrents/stream")
async def stream_torrents(
    request: Request,
    _api_key: str = Depends(verify_api_key),
):
    """Stream all torrent records via Server-Sent Events."""
    manager = _get_manager(request)

    async def event_generator():
        last_payload = None

        while True:
            if await request.is_disconnected():
                break

            records = await manager.list_records()
            payload = json.dumps([r.to_dict() for r in records])
            if payload != last_payload:
                last_payload = payload
                yield {"event": "snapshot", "data": payload}

            await asyncio.sleep(STREAM_POLL_INTERVAL)

    return EventSourceResponse(event_generator())


@router.get("/torrents/{identifier}", response_model=TorrentResponse)
async def get_torrent(
    request: Request,
    identifier: str,
    _api_key: str = Depends(verify_api_key),
):
    """Get a torrent record by record id or info hash."""
    manager = _get_manager(request)
    record = await _require_record(manager, identifier)
    return _record_to_response(record)


@router.get("/torrents/{identifier}/stream")
async def stream_torrent(
    request: Request,
    identifier: str,
    _api_key: str = Depends(verify_api_key),
):
    """Stream one torrent record via Server-Sent Events."""
    manager = _get_manager(request)
    await _require_record(manager, identifier)

    async def event_generator():
        last_payload = None

        while True:
            if await request.is_disconnected():
                break

            record = await manager.get_record(identifier)
            if not record:
                yield {
                    "event": "removed",
                    "data": json.dumps({"id": identifier}),
                }
                break

            payload = json.dumps(record.to_dict())
            if payload != last_payload:
                last_payload = payload
                yield {"event": "snapshot", "data": payload}

            await asyncio.sleep(STREAM_POLL_INTERVAL)

    return EventSourceResponse(event_generator())


# =============================================================================
# Lifecycle Endpoints
# =============================================================================


@router.post("/torrents", response_model=TorrentResponse)
async def add_torrent(
    request: Request,
    add_request: AddTorrentRequest,
    _api_key: str = Depends(verify_api_key),
):
    """Join a swarm by magnet URI, info hash, or .torrent path."""
    manager = _get_manager(request)
    options = SessionOptions(
        name=add_request.name,
        trackers=add_request.trackers,
        paused=add_request.paused,
        description=add_request.description,
        content_type=add_request.content_type,
        meta=add_request.meta,
    )

    try:
        handle = await manager.add_session(add_request.locator, options)
    except SwarmError as e:
        logger.warning(f"Add failed for {add_request.locator[:60]}: {e}")
        raise _http_error(e) from e

    record = await _require_record(manager, handle.id)
    return _record_to_response(record)


@router.post("/torrents/create", response_model=TorrentResponse)
async def create_torrent(
    request: Request,
    create_request: CreateTorrentRequest,
    _api_key: str = Depends(verify_api_key),
):
    """Seed uploaded files as a new swarm."""
    manager = _get_manager(request)

    try:
        uploads = [(f.name, f.to_bytes()) for f in create_request.files]
    except (binascii.Error, LookupError, UnicodeError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid file content: {e}") from e

    options = SessionOptions(
        name=create_request.name,
        comment=create_request.comment,
        trackers=create_request.trackers,
        description=create_request.description,
        content_type=create_request.content_type,
        meta=create_request.meta,
    )

    try:
        handle = await manager.create_session(uploads, options)
    except SwarmError as e:
        logger.warning(f"Create failed: {e}")
        raise _http_error(e) from e

    record = await _require_record(manager, handle.id)
    return _record_to_response(record)


@router.delete("/torrents/{info_hash}")
async def remove_torrent(
    request: Request,
    info_hash: str,
    purge: bool = Query(default=False, description="Also delete downloaded data"),
    forget: bool = Query(default=False, description="Delete the record of an inactive session"),
    _api_key: str = Depends(verify_api_key),
):
    """Remove a swarm session and its record."""
    manager = _get_manager(request)

    try:
        removed = await manager.remove_session(info_hash, purge_data=purge)
        if not removed and forget:
            await manager.delete_record(info_hash)
            return {"status": "forgotten", "info_hash": info_hash}
    except SwarmError as e:
        raise _http_error(e) from e

    return {"status": "removed" if removed else "not_active", "info_hash": info_hash}


@router.get("/torrents/{info_hash}/files", response_model=FileContentsResponse)
async def get_all_file_contents(
    request: Request,
    info_hash: str,
    _api_key: str = Depends(verify_api_key),
):
    """Read every downloaded file of an active session."""
    manager = _get_manager(request)
    try:
        contents = await manager.get_all_file_contents(info_hash)
    except SwarmError as e:
        raise _http_error(e) from e
    return FileContentsResponse(info_hash=info_hash, files=contents)


@router.get("/torrents/{info_hash}/files/{filename}", response_class=PlainTextResponse)
async def get_file_contents(
    request: Request,
    info_hash: str,
    filename: str,
    _api_key: str = Depends(verify_api_key),
):
    """Read one file of an active session as text."""
    manager = _get_manager(request)
    try:
        return await manager.get_file_contents(info_hash, filename)
    except SwarmError as e:
        raise _http_error(e) from e


@router.post("/torrents/{info_hash}/pause")
async def pause_torrent(
    request: Request,
    info_hash: str,
    _api_key: str = Depends(verify_api_key),
):
    """Pause a swarm session."""
    manager = _get_manager(request)
    try:
        await manager.pause_session(info_hash)
    except SwarmError as e:
        raise _http_error(e) from e
    return {"status": "paused", "info_hash": info_hash}


@router.post("/torrents/{info_hash}/resume")
async def resume_torrent(
    request: Request,
    info_hash: str,
    _api_key: str = Depends(verify_api_key),
):
    """Resume a paused swarm session."""
    manager = _get_manager(request)
    try:
        await manager.resume_session(info_hash)
    except SwarmError as e:
        raise _http_error(e) from e
    return {"status": "resumed", "info_hash": info_hash}


@router.patch("/torrents/{info_hash}/meta", response_model=TorrentResponse)
async def update_torrent_meta(
    request: Request,
    info_hash: str,
    meta_request: MetaUpdateRequest,
    _api_key: str = Depends(verify_api_key),
):
    """Update description, content type, or FHIR metadata of a record."""
    manager = _get_manager(request)
    try:
        record = await manager.update_meta(info_hash, **meta_request.model_dump(exclude_none=True))
    except SwarmError as e:
        raise _http_error(e) from e
    return _record_to_response(record)


# =============================================================================
# Network & Utility Endpoints
# =============================================================================


@router.get("/network", response_model=NetworkStatsResponse)
async def get_network_stats(
    request: Request,
    _api_key: str = Depends(verify_api_key),
):
    """Get aggregate transfer statistics."""
    manager = _get_manager(request)
    return NetworkStatsResponse(**manager.network_stats())


@router.get("/magnet/parse", response_model=MagnetResponse)
async def parse_magnet(
    uri: str = Query(..., description="Magnet URI to parse"),
    _api_key: str = Depends(verify_api_key),
):
    """Parse a magnet URI into its components."""
    try:
        link = parse_magnet_uri(uri)
    except SwarmError as e:
        raise _http_error(e) from e
    return MagnetResponse(info_hash=link.info_hash, name=link.name, trackers=link.trackers)
