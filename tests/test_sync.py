import asyncio

from fakes import HASH_A, HASH_B, FakeHandle, wait_for
from fhirp2p.records import ContentType, SessionState, SqliteRecordStore
from fhirp2p.torrent import FileEntry, StatusSynchronizer, derive_seeds, derive_state


def _handle(info_hash: str = HASH_A, **attrs) -> FakeHandle:
    handle = FakeHandle(None, info_hash, "dataset", [FileEntry("a.json", "dataset/a.json", 10)])
    for key, value in attrs.items():
        setattr(handle, key, value)
    return handle


def test_derive_state_precedence() -> None:
    handle = _handle(complete=True, paused=True)
    assert derive_state(handle.snapshot()) == SessionState.SEEDING

    handle.complete = False
    assert derive_state(handle.snapshot()) == SessionState.PAUSED

    handle.paused = False
    assert derive_state(handle.snapshot()) == SessionState.DOWNLOADING


def test_seeds_can_be_negative() -> None:
    assert derive_seeds(_handle(peers=2, raw_peers=5).snapshot()) == -3
    assert derive_seeds(_handle(peers=4, raw_peers=None).snapshot()) == 4


async def test_reconcile_creates_record_with_defaults(store: SqliteRecordStore) -> None:
    sync = StatusSynchronizer(store)
    handle = _handle(peers=3, raw_peers=1, progress=0.25)

    await sync.reconcile(handle, {"description": "Synthetic patients", "content_type": ContentType.NDJSON})

    record = await store.find_one({"info_hash": HASH_A})
    assert record is not None
    assert record.name == "dataset"
    assert record.description == "Synthetic patients"
    assert record.content_type == ContentType.NDJSON
    assert record.meta == {"fhir_version": "", "resource_count": 0, "profile": ""}
    assert record.total_size == 10
    assert record.files[0].path == "dataset/a.json"
    assert record.status.peers == 3
    assert record.status.seeds == 2
    assert record.status.progress == 0.25
    assert record.status.state == SessionState.DOWNLOADING


async def test_reconcile_is_idempotent_and_preserves_user_fields(store: SqliteRecordStore) -> None:
    sync = StatusSynchronizer(store)
    handle = _handle()

    await sync.reconcile(handle)
    first = await store.find_one({"info_hash": HASH_A})
    await store.update({"info_hash": HASH_A}, {"description": "edited", "meta": {"profile": "us-core"}})

    handle.progress = 0.5
    handle.name = "renamed"
    await sync.reconcile(handle, {"description": "ignored on update"})
    await sync.reconcile(handle)

    records = await store.find()
    assert len(records) == 1
    record = records[0]
    assert record.id == first.id
    assert record.created_at == first.created_at
    assert record.description == "edited"
    assert record.meta == {"profile": "us-core"}
    assert record.name == "renamed"
    assert record.status.progress == 0.5


async def test_periodic_ticks_update_records(store: SqliteRecordStore) -> None:
    sync = StatusSynchronizer(store, interval=0.01)
    handle = _handle()
    sync.attach(handle)

    handle.progress = 0.75

    async def progressed():
        record = await store.find_one({"info_hash": HASH_A})
        return record is not None and record.status.progress == 0.75

    await wait_for(progressed)
    assert sync.get_job(HASH_A).ticks >= 1
    await sync.stop()


async def test_busy_session_is_skipped_not_queued(store: SqliteRecordStore) -> None:
    sync = StatusSynchronizer(store, interval=0.01)
    gate = asyncio.Event()
    calls = 0

    async def slow_reconcile(handle, defaults=None):
        nonlocal calls
        calls += 1
        await gate.wait()

    sync.reconcile = slow_reconcile
    job = sync.attach(_handle())

    await wait_for(lambda: job.skipped >= 3)
    assert calls == 1

    gate.set()
    await sync.stop()
    assert calls == 1


async def test_done_forces_sync_before_next_interval(store: SqliteRecordStore) -> None:
    sync = StatusSynchronizer(store, interval=60)
    handle = _handle()
    sync.attach(handle)

    handle.finish()
    await sync.drain()

    record = await store.find_one({"info_hash": HASH_A})
    assert record.status.state == SessionState.SEEDING
    assert record.status.progress == 1.0
    await sync.stop()


async def test_tick_errors_do_not_stop_other_sessions(store: SqliteRecordStore) -> None:
    sync = StatusSynchronizer(store, interval=0.01)
    broken = _handle(HASH_A, snapshot_error=RuntimeError("engine read failed"))
    healthy = _handle(HASH_B)
    sync.attach(broken)
    sync.attach(healthy)

    await wait_for(lambda: broken.snapshot_calls >= 3)
    await wait_for(lambda: store.find_one({"info_hash": HASH_B}))

    assert sync.running
    assert await store.find_one({"info_hash": HASH_A}) is None

    broken.snapshot_error = None
    await wait_for(lambda: store.find_one({"info_hash": HASH_A}))
    await sync.stop()


async def test_close_event_detaches_job(store: SqliteRecordStore) -> None:
    sync = StatusSynchronizer(store, interval=60)
    handle = _handle()
    job = sync.attach(handle)

    handle.emit("close")

    assert sync.get_job(HASH_A) is None
    assert job.cancelled
    assert await sync.sync_now(HASH_A) is False
    # Late events from the engine are ignored
    handle.emit("done")
    await sync.drain()
    assert await store.find_one({"info_hash": HASH_A}) is None
    await sync.stop()


async def test_wire_events_do_not_write(store: SqliteRecordStore) -> None:
    sync = StatusSynchronizer(store, interval=60)
    handle = _handle()
    job = sync.attach(handle)

    for _ in range(5):
        handle.emit("wire", "10.0.0.1:6881")
    await sync.drain()

    assert job.ticks == 0
    assert handle.snapshot_calls == 0
    await sync.stop()


async def test_stop_cancels_scheduler(store: SqliteRecordStore) -> None:
    sync = StatusSynchronizer(store, interval=0.01)
    sync.attach(_handle())
    assert sync.running

    await sync.stop()

    assert not sync.running
    assert sync.get_job(HASH_A) is None
