"""Swarm session lifecycle manager."""

import asyncio
import logging
import shutil
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

from ..errors import AddFailed, CreateFailed, NotFound, RemoveFailed, SessionError, SwarmError
from ..fhir import count_resources, detect_format
from ..records.models import ContentType, TorrentRecord, default_meta
from ..records.store import RecordStore
from .engine import EngineClient, SessionHandle, SessionOptions
from .provider import ClientProvider
from .registry import SwarmRegistry
from .sync import StatusSynchronizer

logger = logging.getLogger(__name__)

# Largest file read when classifying seeded content
MAX_DETECT_BYTES = 64 * 1024 * 1024

SeedContent = str | Path | tuple[str, bytes]


class SwarmManager:
    """
    Owns the active sessions of one engine client.

    Features:
    - Add sessions by magnet URI, info hash or .torrent file
    - Seed local files or in-memory uploads as new sessions
    - Mirror live status into the record store
    - Restore persisted sessions after a restart
    - Read the files of active sessions
    """

    def __init__(
        self,
        provider: ClientProvider,
        store: RecordStore,
        registry: SwarmRegistry | None = None,
        synchronizer: StatusSynchronizer | None = None,
    ):
        self.provider = provider
        self.store = store
        self.registry = registry or SwarmRegistry()
        self.synchronizer = synchronizer or StatusSynchronizer(
            store, interval=provider.settings.sync_interval
        )
        # Set by start(); cleared once the client is up and startup work has run
        self._startup_pending = False
        self._restore_pending = False

    async def start(self, restore: bool | None = None) -> None:
        """
        Initialize the engine client and optionally restore sessions.

        If initialization fails, synchronization and the restore are
        deferred to the first call that brings the client up.
        """
        if restore is None:
            restore = self.provider.settings.restore_on_startup
        self._startup_pending = True
        self._restore_pending = restore

        await self.provider.initialize()
        await self._finish_startup()

    async def _finish_startup(self) -> None:
        if not self._startup_pending:
            return
        self._startup_pending = False
        self.synchronizer.start()

        if self._restore_pending:
            self._restore_pending = False
            await self.restore()

    async def shutdown(self) -> None:
        """Stop synchronization and close the engine client."""
        self._startup_pending = False
        self._restore_pending = False
        await self.synchronizer.stop()
        await self.provider.shutdown()
        for session_id in self.registry.ids():
            self.registry.remove(session_id)

    async def _client(self) -> EngineClient:
        client = self.provider.client
        if client is None:
            logger.info("Transfer engine not ready, waiting for initialization")
            client = await self.provider.initialize()
            if self._startup_pending:
                logger.info("Transfer engine recovered, completing deferred startup")
                await self._finish_startup()
        return client

    # Session lifecycle

    async def add_session(self, locator: str, options: SessionOptions | None = None) -> SessionHandle:
        """
        Join the swarm named by a locator and start mirroring it.

        Args:
            locator: Magnet URI, info hash, or .torrent file path
            options: Engine and record options

        Returns:
            The registered session handle

        Raises:
            EngineUnavailable: If the engine cannot be initialized
            AddFailed: If the engine rejects the locator
        """
        options = options or SessionOptions()
        client = await self._client()

        try:
            handle = await client.add(locator, options)
        except SwarmError:
            raise
        except Exception as e:
            raise AddFailed(f"Failed to add torrent: {e}", locator) from e

        logger.info(f"Added session {handle.id}")
        return await self._track(handle, options)

    async def create_session(
        self,
        content: SeedContent | list[SeedContent],
        options: SessionOptions | None = None,
    ) -> SessionHandle:
        """
        Seed local content as a new swarm and start mirroring it.

        Args:
            content: File paths and/or (filename, bytes) uploads
            options: Engine and record options. When content_type is set,
                     every file must be FHIR content of that type.

        Raises:
            EngineUnavailable: If the engine cannot be initialized
            CreateFailed: If the content is invalid or cannot be seeded
        """
        options = options or SessionOptions()
        items = content if isinstance(content, list) else [content]
        if not items:
            raise CreateFailed("No content to seed")

        paths: list[Path] = []
        uploads: list[tuple[str, bytes]] = []
        for item in items:
            if isinstance(item, tuple):
                uploads.append((Path(item[0]).name, item[1]))
            else:
                paths.append(Path(item))

        missing = [str(p) for p in paths if not p.is_file()]
        if missing:
            raise CreateFailed(f"Files not found: {', '.join(missing)}")

        client = await self._client()
        options = self._classify_content([*paths, *uploads], options)
        staged, staging = self._stage_uploads(uploads, options)
        paths.extend(staged)

        try:
            handle = await client.seed(paths, options)
        except Exception as e:
            self._discard_staging(staging)
            if isinstance(e, SwarmError):
                raise
            raise CreateFailed(f"Failed to create torrent: {e}") from e

        logger.info(f"Created session {handle.id} from {len(paths)} file(s)")
        return await self._track(handle, options)

    async def remove_session(self, session_id: str, purge_data: bool = False) -> bool:
        """
        Terminate a session and delete its record.

        Returns:
            False if the session was not registered (nothing is changed)

        Raises:
            RemoveFailed: If the engine cannot terminate the session
        """
        handle = self.registry.get(session_id)
        if handle is None:
            logger.debug(f"Remove ignored, session not registered: {session_id}")
            return False

        # Captured first; the engine may emit close (and detach) during destroy
        job = self.synchronizer.get_job(session_id)

        try:
            await handle.destroy(purge_data)
        except RemoveFailed:
            raise
        except Exception as e:
            raise RemoveFailed(f"Failed to remove torrent: {e}", session_id) from e

        self.synchronizer.detach(session_id)
        self.registry.remove(session_id)

        # Let an in-flight write land before deleting
        if job is not None:
            async with job.lock:
                pass

        await self.store.remove({"info_hash": session_id})
        logger.info(f"Removed session {session_id} (purge_data={purge_data})")
        return True

    async def delete_record(self, info_hash: str) -> None:
        """
        Delete the persisted record of a session that is not active.

        Raises:
            NotFound: If no record exists for the info hash
            SessionError: If the session is registered (use remove_session)
        """
        if info_hash in self.registry:
            raise SessionError(f"Session {info_hash} is active, remove it instead", info_hash)
        query = {"info_hash": info_hash}
        if await self.store.find_one(query) is None:
            raise NotFound(info_hash, "record")
        await self.store.remove(query)
        logger.info(f"Deleted record {info_hash}")

    async def pause_session(self, session_id: str) -> None:
        handle = self.registry.lookup(session_id)
        await handle.pause()
        await self.synchronizer.sync_now(session_id)
        logger.info(f"Paused session {session_id}")

    async def resume_session(self, session_id: str) -> None:
        handle = self.registry.lookup(session_id)
        await handle.resume()
        await self.synchronizer.sync_now(session_id)
        logger.info(f"Resumed session {session_id}")

    async def restore(self) -> int:
        """Re-add persisted sessions that carry a magnet URI.

        Returns:
            Number of sessions restored
        """
        records = await self.store.find()
        restored = 0
        for record in records:
            if record.info_hash in self.registry:
                continue
            if not record.magnet_uri:
                logger.warning(f"Record {record.info_hash} has no magnet URI, cannot restore")
                continue
            try:
                await self.add_session(record.magnet_uri)
                restored += 1
            except SwarmError as e:
                logger.error(f"Failed to restore {record.info_hash}: {e}")

        if records:
            logger.info(f"Restored {restored}/{len(records)} sessions from store")
        return restored

    # Records

    async def list_records(self) -> list[TorrentRecord]:
        return await self.store.find()

    async def get_record(self, identifier: str) -> TorrentRecord | None:
        """Find a record by info hash or record id."""
        record = await self.store.find_one({"info_hash": identifier})
        if record is None:
            record = await self.store.find_one({"id": identifier})
        return record

    async def update_meta(self, session_id: str, **fields: Any) -> TorrentRecord:
        """
        Update user-editable record fields (description, content_type, meta).

        Raises:
            NotFound: If no record exists for the info hash
        """
        patch = self._record_fields(
            description=fields.get("description"),
            content_type=fields.get("content_type"),
            meta=fields.get("meta"),
        )
        query = {"info_hash": session_id}
        if await self.store.find_one(query) is None:
            raise NotFound(session_id, "record")
        if patch:
            await self.store.update(query, patch)
        return await self.store.find_one(query)  # type: ignore[return-value]

    # File contents

    def _session_files(self, info_hash: str) -> list[tuple[str, Path]]:
        handle = self.registry.lookup(info_hash)
        root = handle.save_path or self.provider.settings.resolved_storage_path()
        return [(entry.name, root / entry.path) for entry in handle.snapshot().files]

    async def _read_text(self, info_hash: str, path: Path) -> str:
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, path.read_bytes)
        except FileNotFoundError as e:
            raise NotFound(path.name, "file") from e
        except OSError as e:
            raise SessionError(f"Failed to read {path.name}: {e}", info_hash) from e
        return data.decode("utf-8", errors="replace")

    async def get_file_contents(self, info_hash: str, filename: str) -> str:
        """
        Read one file of an active session as UTF-8 text.

        Raises:
            NotFound: If the session is not registered, or the file is not
                      part of it or not on disk yet
        """
        for name, path in self._session_files(info_hash):
            if name == filename:
                return await self._read_text(info_hash, path)
        raise NotFound(filename, "file")

    async def get_all_file_contents(self, info_hash: str) -> dict[str, str]:
        """Read every file of an active session that is on disk, keyed by file name."""
        contents: dict[str, str] = {}
        for name, path in self._session_files(info_hash):
            if not path.is_file():
                logger.debug(f"File not on disk yet: {path}")
                continue
            contents[name] = await self._read_text(info_hash, path)
        return contents

    def network_stats(self) -> dict[str, Any]:
        """Aggregate metrics across all registered sessions."""
        stats = {
            "ready": self.provider.is_ready,
            "sessions": 0,
            "seeding": 0,
            "download_rate": 0.0,
            "upload_rate": 0.0,
            "downloaded": 0,
            "uploaded": 0,
            "peers": 0,
        }
        for handle in self.registry.list_all():
            try:
                snapshot = handle.snapshot()
            except Exception as e:
                logger.warning(f"Failed to read session {handle.id}: {e}")
                continue
            stats["sessions"] += 1
            stats["seeding"] += int(snapshot.is_complete)
            stats["download_rate"] += snapshot.download_rate
            stats["upload_rate"] += snapshot.upload_rate
            stats["downloaded"] += snapshot.bytes_downloaded
            stats["uploaded"] += snapshot.bytes_uploaded
            stats["peers"] += snapshot.peer_count
        return stats

    # Helpers

    async def _track(self, handle: SessionHandle, options: SessionOptions) -> SessionHandle:
        """Register a handle, attach synchronization and write the first record."""
        session_id = handle.id
        fields = self._record_fields(options.description, options.content_type, options.meta)

        if self.registry.get(session_id) is not handle:
            self.registry.register(session_id, handle)

            def on_close() -> None:
                if self.registry.get(session_id) is handle:
                    self.registry.remove(session_id)

            handle.on("close", on_close)

        self.synchronizer.attach(handle, fields)
        await self.synchronizer.sync_now(session_id)

        if fields:
            await self.store.update({"info_hash": session_id}, fields)
        return handle

    @staticmethod
    def _record_fields(
        description: str | None = None,
        content_type: ContentType | str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        if description is not None:
            fields["description"] = description
        if content_type is not None:
            fields["content_type"] = ContentType(content_type)
        if meta is not None:
            fields["meta"] = {**default_meta(), **meta}
        return fields

    def _stage_uploads(
        self, uploads: list[tuple[str, bytes]], options: SessionOptions
    ) -> tuple[list[Path], Path | None]:
        """
        Write in-memory uploads into the storage directory.

        Returns:
            The staged file paths, and the staging directory if this call created it
        """
        if not uploads:
            return [], None

        folder = options.name or f"upload-{datetime.utcnow():%Y%m%d%H%M%S%f}"
        staging = self.provider.settings.resolved_storage_path() / folder
        created = None if staging.exists() else staging
        staged: list[Path] = []
        try:
            staging.mkdir(parents=True, exist_ok=True)
            for filename, data in uploads:
                target = staging / filename
                target.write_bytes(data)
                staged.append(target)
        except OSError as e:
            self._discard_staging(created)
            raise CreateFailed(f"Failed to stage uploaded files: {e}") from e
        return staged, created

    @staticmethod
    def _discard_staging(staging: Path | None) -> None:
        if staging is not None:
            shutil.rmtree(staging, ignore_errors=True)
            logger.debug(f"Removed staging directory {staging}")

    @staticmethod
    def _classify_content(
        sources: list[Path | tuple[str, bytes]], options: SessionOptions
    ) -> SessionOptions:
        """
        Validate or infer the FHIR content type of files to seed.

        Returns:
            A copy of options with the inferred content type and resource count
        """
        detected: list[tuple[str, ContentType]] = []
        resource_total = 0
        for source in sources:
            if isinstance(source, tuple):
                name, data = source
            elif source.stat().st_size > MAX_DETECT_BYTES:
                detected.append((source.name, ContentType.UNKNOWN))
                continue
            else:
                name, data = source.name, source.read_bytes()
            fmt = detect_format(data)
            detected.append((name, fmt))
            if fmt != ContentType.UNKNOWN:
                resource_total += count_resources(data.decode("utf-8"))["total"]

        changes: dict[str, Any] = {}
        if options.content_type is not None:
            expected = ContentType(options.content_type)
            if expected == ContentType.UNKNOWN:
                return replace(options)
            for name, fmt in detected:
                if fmt == ContentType.UNKNOWN:
                    raise CreateFailed(f"File {name} doesn't appear to be valid FHIR content")
                if fmt != expected:
                    raise CreateFailed(f"File {name} is {fmt.value} but {expected.value} was selected")
        else:
            formats = {fmt for _, fmt in detected}
            if len(formats) == 1 and ContentType.UNKNOWN not in formats:
                changes["content_type"] = formats.pop()

        if options.meta is None and resource_total:
            changes["meta"] = {"resource_count": resource_total}
        return replace(options, **changes)
