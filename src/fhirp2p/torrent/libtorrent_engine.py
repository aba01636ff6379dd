"""
Transfer engine backed by libtorrent.

libtorrent reports activity through a session-wide alert queue. A single
pump task drains it and re-emits alerts as handle events:
- torrent_finished_alert -> ``done``
- torrent_removed_alert -> ``close``
- torrent_error_alert / file_error_alert -> ``error``
- peer_connect_alert -> ``wire``
Session-level failures (listen_failed_alert, session_error_alert) are
emitted as client ``error`` events.
"""

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import Any

from ..config import EngineConfig
from ..errors import AddFailed, CreateFailed, EngineUnavailable, RemoveFailed
from ..magnet import create_magnet_uri, is_info_hash, normalize_info_hash
from .engine import EngineClient, FileEntry, SessionHandle, SessionOptions, SessionSnapshot

logger = logging.getLogger(__name__)

ALERT_POLL_INTERVAL = 0.25


def _import_libtorrent():
    try:
        import libtorrent
    except ImportError as e:
        raise EngineUnavailable(f"libtorrent is not installed: {e}") from e
    return libtorrent


async def create_libtorrent_client(config: EngineConfig) -> "LibtorrentClient":
    """Engine factory: construct a libtorrent session from configuration."""
    lt = _import_libtorrent()
    try:
        client = LibtorrentClient(lt, config)
    except RuntimeError as e:
        raise EngineUnavailable(f"Failed to start libtorrent session: {e}") from e
    client.start()
    return client


def _info_hash_of(lt_handle: Any) -> str:
    """Hex v1 info hash of a libtorrent handle."""
    hashes = getattr(lt_handle, "info_hashes", None)
    if hashes is not None:
        return str(hashes().v1)
    return str(lt_handle.info_hash())


def _alert_info_hash(alert: Any) -> str | None:
    """Info hash an alert refers to, if any."""
    hashes = getattr(alert, "info_hashes", None)
    if hashes is not None:
        return str(hashes.v1)
    info_hash = getattr(alert, "info_hash", None)
    if info_hash is not None:
        return str(info_hash)
    handle = getattr(alert, "handle", None)
    if handle is not None and handle.is_valid():
        return _info_hash_of(handle)
    return None


class LibtorrentHandle(SessionHandle):
    """Session handle wrapping a libtorrent torrent_handle."""

    def __init__(self, client: "LibtorrentClient", lt_handle: Any):
        super().__init__()
        self._client = client
        self._handle = lt_handle
        self._id = _info_hash_of(lt_handle)

    @property
    def id(self) -> str:
        return self._id

    @property
    def save_path(self) -> Path:
        return Path(self._handle.status().save_path)

    def _is_paused(self, status: Any) -> bool:
        lt = self._client.lt
        flags = getattr(status, "flags", None)
        torrent_flags = getattr(lt, "torrent_flags", None)
        if flags is not None and torrent_flags is not None:
            return bool(flags & torrent_flags.paused)
        return bool(getattr(status, "paused", False))

    def _files(self) -> tuple[list[FileEntry], int | None]:
        info = self._handle.torrent_file()
        if info is None:
            # Metadata not received yet
            return [], None

        storage = info.files()
        files = []
        for i in range(storage.num_files()):
            name = storage.file_name(i)
            files.append(FileEntry(
                name=name,
                path=storage.file_path(i),
                size=storage.file_size(i),
                type=mimetypes.guess_type(name)[0] or "application/octet-stream",
            ))
        return files, info.total_size()

    def snapshot(self) -> SessionSnapshot:
        status = self._handle.status()
        files, total_size = self._files()

        return SessionSnapshot(
            id=self._id,
            display_name=status.name or self._id,
            total_length=total_size if total_size is not None else status.total_wanted,
            files=files,
            bytes_downloaded=status.total_done,
            bytes_uploaded=status.all_time_upload,
            download_rate=status.download_rate,
            upload_rate=status.upload_rate,
            progress=status.progress,
            peer_count=status.num_peers,
            raw_peer_list_length=getattr(status, "list_peers", None),
            is_complete=bool(status.is_seeding),
            is_paused=self._is_paused(status),
            magnet_uri=self._client.lt.make_magnet_uri(self._handle),
        )

    async def destroy(self, purge_data: bool = False) -> None:
        await self._client.remove(self, purge_data)

    async def pause(self) -> None:
        lt = self._client.lt
        self._handle.unset_flags(lt.torrent_flags.auto_managed)
        self._handle.pause()

    async def resume(self) -> None:
        lt = self._client.lt
        self._handle.set_flags(lt.torrent_flags.auto_managed)
        self._handle.resume()


class LibtorrentClient(EngineClient):
    """Engine client running an in-process libtorrent session."""

    def __init__(self, lt: Any, config: EngineConfig):
        super().__init__()
        self.lt = lt
        self.config = config
        self.config.storage_path.mkdir(parents=True, exist_ok=True)

        settings = {
            "enable_dht": config.dht,
            "enable_lsd": config.lsd,
            "enable_incoming_tcp": config.tcp_pool,
            "alert_mask": lt.alert.category_t.all_categories,
            "user_agent": "fhirp2p",
        }
        if config.listen_interfaces:
            settings["listen_interfaces"] = config.listen_interfaces

        self._session = lt.session(settings)
        self._handles: dict[str, LibtorrentHandle] = {}
        self._pump_task: asyncio.Task | None = None

    @property
    def name(self) -> str:
        return "libtorrent"

    def start(self) -> None:
        """Start the alert pump."""
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump_alerts())

    async def _pump_alerts(self) -> None:
        while True:
            await asyncio.sleep(ALERT_POLL_INTERVAL)
            try:
                alerts = self._session.pop_alerts()
            except Exception as e:
                logger.error(f"Failed to read libtorrent alerts: {e}")
                continue
            for alert in alerts:
                self._dispatch(alert)

    def _dispatch(self, alert: Any) -> None:
        lt = self.lt

        if isinstance(alert, (lt.listen_failed_alert, lt.session_error_alert)):
            self.emit("error", RuntimeError(alert.message()))
            return

        info_hash = _alert_info_hash(alert)
        handle = self._handles.get(info_hash) if info_hash else None
        if handle is None:
            return

        if isinstance(alert, lt.torrent_finished_alert):
            handle.emit("done")
        elif isinstance(alert, lt.torrent_removed_alert):
            # A late alert for a removed torrent must not close its re-added successor
            removed = getattr(alert, "handle", None)
            if removed is not None and removed != handle._handle:
                return
            self._handles.pop(info_hash, None)
            handle.emit("close")
        elif isinstance(alert, (lt.torrent_error_alert, lt.file_error_alert)):
            handle.emit("error", RuntimeError(alert.message()))
        elif isinstance(alert, lt.peer_connect_alert):
            handle.emit("wire", str(alert.endpoint))

    def _apply_options(self, params: Any, options: SessionOptions) -> None:
        lt = self.lt
        params.save_path = str(options.save_path or self.config.storage_path)

        trackers = list(getattr(params, "trackers", []) or [])
        for url in [*self.config.trackers, *options.trackers]:
            if url not in trackers:
                trackers.append(url)
        params.trackers = trackers

        if options.name and not getattr(params, "name", ""):
            params.name = options.name
        if options.paused:
            params.flags |= lt.torrent_flags.paused
            params.flags &= ~lt.torrent_flags.auto_managed

    def _params_for(self, locator: str) -> Any:
        lt = self.lt
        if is_info_hash(locator):
            locator = create_magnet_uri(normalize_info_hash(locator))

        if locator.startswith("magnet:"):
            return lt.parse_magnet_uri(locator)

        path = Path(locator)
        if path.suffix == ".torrent" and path.exists():
            params = lt.add_torrent_params()
            params.ti = lt.torrent_info(str(path))
            return params

        raise AddFailed(f"Unrecognized locator: {locator[:60]}", locator)

    def _register(self, lt_handle: Any) -> LibtorrentHandle:
        info_hash = _info_hash_of(lt_handle)
        handle = self._handles.get(info_hash)
        if handle is None or handle._handle != lt_handle:
            handle = LibtorrentHandle(self, lt_handle)
            self._handles[info_hash] = handle
        return handle

    async def add(self, locator: str, options: SessionOptions) -> SessionHandle:
        try:
            params = self._params_for(locator)
            self._apply_options(params, options)
            lt_handle = await asyncio.to_thread(self._session.add_torrent, params)
        except AddFailed:
            raise
        except (RuntimeError, ValueError, OSError) as e:
            raise AddFailed(f"Engine rejected locator: {e}", locator) from e

        handle = self._register(lt_handle)
        logger.info(f"Added torrent {handle.id}")
        return handle

    def _build_torrent(self, paths: list[Path], options: SessionOptions) -> tuple[Any, Path]:
        """Hash local files into torrent metadata; returns (params, save_path)."""
        lt = self.lt
        storage = lt.file_storage()

        if len(paths) == 1:
            base = paths[0].parent
            lt.add_files(storage, str(paths[0]))
        else:
            parents = {p.parent for p in paths}
            if len(parents) != 1:
                raise CreateFailed("Seeded files must share a parent directory")
            root = parents.pop()
            base = root.parent
            for p in paths:
                storage.add_file(f"{root.name}/{p.name}", p.stat().st_size)

        if storage.num_files() == 0:
            raise CreateFailed("No files to seed")

        creator = lt.create_torrent(storage)
        for tier, url in enumerate([*self.config.trackers, *options.trackers]):
            creator.add_tracker(url, tier)
        creator.set_creator("fhirp2p")
        if options.comment:
            creator.set_comment(options.comment)
        lt.set_piece_hashes(creator, str(base))

        params = lt.add_torrent_params()
        params.ti = lt.torrent_info(creator.generate())
        params.save_path = str(base)
        params.flags |= lt.torrent_flags.seed_mode
        return params, base

    async def seed(self, paths: list[Path], options: SessionOptions) -> SessionHandle:
        missing = [str(p) for p in paths if not p.exists()]
        if not paths or missing:
            raise CreateFailed(f"Cannot seed missing files: {missing or 'no input'}")

        try:
            params, _ = await asyncio.to_thread(self._build_torrent, paths, options)
            lt_handle = await asyncio.to_thread(self._session.add_torrent, params)
        except CreateFailed:
            raise
        except (RuntimeError, ValueError, OSError) as e:
            raise CreateFailed(f"Failed to seed content: {e}") from e

        handle = self._register(lt_handle)
        logger.info(f"Seeding torrent {handle.id}")
        return handle

    async def remove(self, handle: LibtorrentHandle, purge_data: bool) -> None:
        """Remove a torrent from the session."""
        lt = self.lt
        flags = 0
        if purge_data:
            options = getattr(lt, "options_t", None) or lt.session
            flags = options.delete_files
        try:
            self._session.remove_torrent(handle._handle, flags)
        except RuntimeError as e:
            raise RemoveFailed(f"Failed to remove torrent {handle.id}: {e}") from e

        if self._handles.get(handle.id) is handle:
            del self._handles[handle.id]
        handle.emit("close")

    async def close(self) -> None:
        if self._pump_task:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

        for handle in list(self._handles.values()):
            handle.emit("close")
        self._handles.clear()
        self._session.pause()
        logger.info("libtorrent session closed")
