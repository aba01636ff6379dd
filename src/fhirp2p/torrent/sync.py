"""Periodic mirroring of live session metrics into torrent records."""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Coroutine

from ..records.models import RecordFile, RecordStatus, SessionState, TorrentRecord
from ..records.store import RecordStore
from .engine import SessionHandle, SessionSnapshot

logger = logging.getLogger(__name__)


def derive_state(snapshot: SessionSnapshot) -> SessionState:
    """Complete wins over paused; anything else is downloading."""
    if snapshot.is_complete:
        return SessionState.SEEDING
    if snapshot.is_paused:
        return SessionState.PAUSED
    return SessionState.DOWNLOADING


def derive_seeds(snapshot: SessionSnapshot) -> int:
    """Connected peers minus the raw peer list length.

    Can go negative when the peer list is longer than the connected set;
    kept as reported rather than clamped.
    """
    return snapshot.peer_count - (snapshot.raw_peer_list_length or 0)


def snapshot_fields(snapshot: SessionSnapshot) -> dict[str, Any]:
    """The record fields a synchronization tick rewrites."""
    return {
        "name": snapshot.display_name,
        "magnet_uri": snapshot.magnet_uri,
        "total_size": snapshot.total_length,
        "files": [
            RecordFile(name=f.name, path=f.path, size=f.size, type=f.type)
            for f in snapshot.files
        ],
        "status": RecordStatus(
            downloaded=snapshot.bytes_downloaded,
            uploaded=snapshot.bytes_uploaded,
            download_rate=snapshot.download_rate,
            upload_rate=snapshot.upload_rate,
            progress=snapshot.progress,
            peers=snapshot.peer_count,
            seeds=derive_seeds(snapshot),
            state=derive_state(snapshot),
        ),
    }


class SyncJob:
    """Synchronization state for one session."""

    def __init__(self, handle: SessionHandle, defaults: dict[str, Any] | None = None):
        self.handle = handle
        # Applied only when the record is first created
        self.defaults = defaults or {}
        self.lock = asyncio.Lock()
        self.cancelled = False
        self.ticks = 0
        self.skipped = 0
        self.listeners: list[tuple[str, Any]] = []

    @property
    def session_id(self) -> str:
        return self.handle.id

    @property
    def busy(self) -> bool:
        return self.lock.locked()

    def cancel(self) -> None:
        self.cancelled = True
        for event, listener in self.listeners:
            self.handle.off(event, listener)
        self.listeners.clear()


class StatusSynchronizer:
    """
    Keeps each torrent record consistent with its live session.

    A single scheduler task wakes once per interval and starts one tick per
    session. A session whose previous tick is still running is skipped for
    that round. A session's ``done`` event forces an immediate tick so the
    terminal state is written without waiting for the timer.
    """

    def __init__(self, store: RecordStore, interval: float = 1.0):
        self.store = store
        self.interval = interval
        self._jobs: dict[str, SyncJob] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._scheduler_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._scheduler_task is not None and not self._scheduler_task.done()

    def start(self) -> None:
        """Start the scheduler if it is not running."""
        if not self.running:
            self._scheduler_task = asyncio.create_task(self._scheduler_loop())
            logger.debug(f"Sync scheduler started (interval {self.interval}s)")

    async def stop(self) -> None:
        """Cancel all jobs and the scheduler, then wait for in-flight ticks."""
        for session_id in list(self._jobs):
            self.detach(session_id)

        if self._scheduler_task:
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
            self._scheduler_task = None

        await self.drain()

    async def drain(self) -> None:
        """Wait for all currently running ticks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_job(self, session_id: str) -> SyncJob | None:
        return self._jobs.get(session_id)

    def attach(self, handle: SessionHandle, defaults: dict[str, Any] | None = None) -> SyncJob:
        """Begin periodic synchronization of a session."""
        session_id = handle.id
        existing = self._jobs.get(session_id)
        if existing is not None and existing.handle is handle:
            return existing
        if existing is not None:
            self.detach(session_id)

        job = SyncJob(handle, defaults)

        def on_close() -> None:
            logger.debug(f"Session closed: {session_id}")
            if self._jobs.get(session_id) is job:
                self.detach(session_id)

        def on_done() -> None:
            logger.info(f"Session complete: {session_id}")
            self._spawn(self._tick(job, force=True))

        def on_error(error: Any = None) -> None:
            logger.warning(f"Torrent error for {session_id}: {error}")

        def on_wire(peer: Any = None) -> None:
            # Peer churn is coalesced into the next periodic tick
            logger.debug(f"Peer connected to {session_id}: {peer}")

        for event, listener in (
            ("close", on_close),
            ("done", on_done),
            ("error", on_error),
            ("wire", on_wire),
        ):
            handle.on(event, listener)
            job.listeners.append((event, listener))

        self._jobs[session_id] = job
        self.start()
        return job

    def detach(self, session_id: str) -> None:
        """Stop synchronizing a session; an in-flight tick may still finish."""
        job = self._jobs.pop(session_id, None)
        if job is not None:
            job.cancel()
            logger.debug(f"Sync detached: {session_id}")

    async def sync_now(self, session_id: str) -> bool:
        """Force a synchronization, waiting for any in-flight tick first.

        Returns:
            True if a record was written
        """
        job = self._jobs.get(session_id)
        if job is None:
            return False
        return await self._tick(job, force=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _scheduler_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            for job in list(self._jobs.values()):
                if job.busy:
                    job.skipped += 1
                    logger.debug(f"Skipping tick for {job.session_id}: previous tick in flight")
                    continue
                self._spawn(self._tick(job))

    async def _tick(self, job: SyncJob, force: bool = False) -> bool:
        if job.cancelled:
            return False
        if job.busy and not force:
            job.skipped += 1
            return False

        async with job.lock:
            if job.cancelled:
                return False
            try:
                await self.reconcile(job.handle, job.defaults)
            except Exception as e:
                logger.warning(f"Sync failed for {job.session_id}: {e}")
                return False
            job.ticks += 1
            return True

    async def reconcile(
        self,
        handle: SessionHandle,
        defaults: dict[str, Any] | None = None,
    ) -> TorrentRecord:
        """
        Upsert the record for a session from its current snapshot.

        A new record gets creation defaults; an existing one has only its
        snapshot fields replaced, leaving created_at, description,
        content_type and meta untouched.
        """
        snapshot = handle.snapshot()
        fields = snapshot_fields(snapshot)
        query = {"info_hash": snapshot.id}

        existing = await self.store.find_one(query)
        if existing is None:
            record = TorrentRecord(info_hash=snapshot.id, **fields)
            for key, value in (defaults or {}).items():
                if key in TorrentRecord.META_FIELDS and value is not None:
                    setattr(record, key, value)
            await self.store.insert(record)
            logger.info(f"Created record for {snapshot.id} ({snapshot.display_name})")
            return record

        await self.store.update(query, fields)
        return replace(existing, **fields)
