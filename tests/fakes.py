"""In-process transfer engine used by the test suite."""

import asyncio
import hashlib
from pathlib import Path
from typing import Any, Callable

from fhirp2p.config import EngineConfig
from fhirp2p.errors import AddFailed, CreateFailed, MalformedLocator
from fhirp2p.magnet import create_magnet_uri, is_info_hash, normalize_info_hash, parse_magnet_uri
from fhirp2p.torrent import EngineClient, FileEntry, SessionHandle, SessionOptions, SessionSnapshot

HASH_A = "a" * 40
HASH_B = "b" * 40


class FakeHandle(SessionHandle):
    def __init__(
        self,
        client: "FakeEngineClient | None",
        info_hash: str,
        name: str = "",
        files: list[FileEntry] | None = None,
    ) -> None:
        super().__init__()
        self.client = client
        self.info_hash = info_hash
        self.name = name or info_hash
        self.files = files or []
        self.downloaded = 0
        self.uploaded = 0
        self.download_rate = 0.0
        self.upload_rate = 0.0
        self.progress = 0.0
        self.peers = 0
        self.raw_peers: int | None = 0
        self.complete = False
        self.paused = False
        self.snapshot_error: Exception | None = None
        self.destroy_error: Exception | None = None
        self.destroyed_with: bool | None = None
        self.snapshot_calls = 0

    @property
    def id(self) -> str:
        return self.info_hash

    def snapshot(self) -> SessionSnapshot:
        self.snapshot_calls += 1
        if self.snapshot_error:
            raise self.snapshot_error
        return SessionSnapshot(
            id=self.info_hash,
            display_name=self.name,
            total_length=sum(f.size for f in self.files),
            files=list(self.files),
            bytes_downloaded=self.downloaded,
            bytes_uploaded=self.uploaded,
            download_rate=self.download_rate,
            upload_rate=self.upload_rate,
            progress=self.progress,
            peer_count=self.peers,
            raw_peer_list_length=self.raw_peers,
            is_complete=self.complete,
            is_paused=self.paused,
            magnet_uri=create_magnet_uri(self.info_hash, self.name),
        )

    async def destroy(self, purge_data: bool = False) -> None:
        if self.destroy_error:
            raise self.destroy_error
        self.destroyed_with = purge_data
        if self.client:
            self.client.handles.pop(self.info_hash, None)
        self.emit("close")

    async def pause(self) -> None:
        self.paused = True

    async def resume(self) -> None:
        self.paused = False

    def finish(self) -> None:
        """Mark the transfer complete and emit ``done``."""
        self.complete = True
        self.progress = 1.0
        self.downloaded = sum(f.size for f in self.files)
        self.emit("done")


class FakeEngineClient(EngineClient):
    def __init__(self, config: EngineConfig) -> None:
        super().__init__()
        self.config = config
        self.handles: dict[str, FakeHandle] = {}
        self.closed = False
        self.seeded: list[list[Path]] = []

    @property
    def name(self) -> str:
        return "fake"

    async def add(self, locator: str, options: SessionOptions) -> SessionHandle:
        name = options.name or ""
        if is_info_hash(locator):
            info_hash = normalize_info_hash(locator)
        else:
            try:
                link = parse_magnet_uri(locator)
            except MalformedLocator as e:
                raise AddFailed(f"Engine rejected locator: {e}", locator) from e
            info_hash = normalize_info_hash(link.info_hash)
            name = name or link.name or ""

        handle = self.handles.get(info_hash)
        if handle is None:
            handle = FakeHandle(self, info_hash, name)
            handle.paused = options.paused
            self.handles[info_hash] = handle
        return handle

    async def seed(self, paths: list[Path], options: SessionOptions) -> SessionHandle:
        if not paths:
            raise CreateFailed("No files to seed")
        digest = hashlib.sha1()
        files = []
        for path in paths:
            data = path.read_bytes()
            digest.update(path.name.encode())
            digest.update(data)
            files.append(FileEntry(name=path.name, path=str(path), size=len(data), type="application/json"))

        handle = FakeHandle(self, digest.hexdigest(), options.name or paths[0].name, files)
        handle.complete = True
        handle.progress = 1.0
        self.handles[handle.id] = handle
        self.seeded.append(list(paths))
        return handle

    async def close(self) -> None:
        self.closed = True
        for handle in list(self.handles.values()):
            handle.emit("close")
        self.handles.clear()


class FakeFactory:
    """Engine factory recording how often construction was attempted."""

    def __init__(self, delay: float = 0.0, fail_with: Exception | None = None) -> None:
        self.delay = delay
        self.fail_with = fail_with
        self.calls = 0
        self.clients: list[FakeEngineClient] = []

    async def __call__(self, config: EngineConfig) -> FakeEngineClient:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        client = FakeEngineClient(config)
        self.clients.append(client)
        return client

    @property
    def client(self) -> FakeEngineClient:
        return self.clients[-1]


async def wait_for(predicate: Callable[[], Any], timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll until predicate() (or an awaitable it returns) is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
