import asyncio

import pytest

from memostore.core.errors import UpstreamUnavailable, VersionConflict
from memostore.core.storage import LocalBackend
from memostore.schemas import Memory, utcnow
from memostore.services.credentials import CredentialResolver
from memostore.services.document_store import DurableDocumentStore


def _memory(memory_id: str, content: str = "something worth keeping") -> Memory:
    now = utcnow()
    return Memory(
        id=memory_id, content=content, category="General",
        embedding=[0.1, 0.2], created_at=now, updated_at=now,
    )


@pytest.mark.asyncio
async def test_concurrent_writes_for_one_user_are_serialized(orchestrator, backend, alice) -> None:
    store = orchestrator.store
    backend.put_delay = 0.005

    await asyncio.gather(*[store.put(alice, _memory(f"m{i}")) for i in range(8)])

    doc = backend.document("alice")
    assert sorted(doc["memories"]) == sorted(f"m{i}" for i in range(8))
    assert doc["metadata"]["totalMemories"] == 8
    assert len(backend.commits_for(prefix="Add memory")) == 8
    assert len(store.locks) == 0


@pytest.mark.asyncio
async def test_document_is_written_with_camel_case_keys(orchestrator, backend, alice) -> None:
    await orchestrator.store.put(alice, _memory("m1"))

    doc = backend.document("alice")
    record = doc["memories"]["m1"]
    assert doc["version"] == "1.0"
    assert {"createdAt", "updatedAt", "content", "category", "source", "tags", "embedding"} <= set(record)
    assert {"totalMemories", "lastUpdated", "description"} <= set(doc["metadata"])


@pytest.mark.asyncio
async def test_stale_version_is_retried_against_fresh_document(orchestrator, backend, alice) -> None:
    store = orchestrator.store
    await orchestrator.setup_store(alice)
    external = _memory("ext").model_dump(mode="json", by_alias=True)

    def add_external(doc: dict) -> None:
        doc["memories"]["ext"] = external

    backend.before_put = lambda creds, path: backend.external_write("alice", edit=add_external)

    await store.put(alice, _memory("m1"))

    doc = backend.document("alice")
    assert set(doc["memories"]) == {"ext", "m1"}
    assert doc["metadata"]["totalMemories"] == 2


@pytest.mark.asyncio
async def test_conflicts_beyond_retry_budget_are_raised(orchestrator, backend, alice, settings) -> None:
    store = orchestrator.store
    await orchestrator.setup_store(alice)
    attempts = settings.version_conflict_retries + 1
    backend.fail_next_puts = [VersionConflict("stale")] * attempts

    with pytest.raises(VersionConflict):
        await store.put(alice, _memory("m1"))

    assert await store.get(alice, "m1") is None


@pytest.mark.asyncio
async def test_conflicts_within_retry_budget_succeed(orchestrator, backend, alice, settings) -> None:
    store = orchestrator.store
    await orchestrator.setup_store(alice)
    backend.fail_next_puts = [VersionConflict("stale")] * settings.version_conflict_retries

    await store.put(alice, _memory("m1"))

    assert (await store.get(alice, "m1")).content == "something worth keeping"


@pytest.mark.asyncio
async def test_reads_do_not_provision(orchestrator, backend, alice) -> None:
    store = orchestrator.store

    doc = await store.load(alice)

    assert doc.memories == {}
    assert await store.list_ids(alice) == []
    assert backend.created == []


@pytest.mark.asyncio
async def test_delete_of_absent_record_writes_nothing(orchestrator, backend, alice) -> None:
    store = orchestrator.store
    await store.put(alice, _memory("m1"))
    commits = len(backend.commits)

    assert not await store.delete(alice, "missing")
    assert len(backend.commits) == commits

    assert await store.delete(alice, "m1")
    assert backend.document("alice")["metadata"]["totalMemories"] == 0


@pytest.mark.asyncio
async def test_get_many_omits_missing_ids(orchestrator, alice) -> None:
    store = orchestrator.store
    await store.put(alice, _memory("m1"))
    await store.put(alice, _memory("m2"))

    found = await store.get_many(alice, ["m2", "gone", "m1"])

    assert set(found) == {"m1", "m2"}


@pytest.mark.asyncio
async def test_slow_durable_write_times_out(orchestrator, backend, alice, settings) -> None:
    await orchestrator.setup_store(alice)
    orchestrator.store.settings = settings.model_copy(update={"durable_timeout": 0.05})
    backend.put_delay = 1.0

    with pytest.raises(UpstreamUnavailable):
        await orchestrator.store.put(alice, _memory("m1"))


@pytest.mark.asyncio
async def test_local_backend_round_trip(tmp_path, session_factory, settings, alice) -> None:
    backend = LocalBackend(str(tmp_path / "storage"))
    store = DurableDocumentStore(backend, CredentialResolver(backend, session_factory, settings), settings)

    await store.put(alice, _memory("m1"))
    await store.put(alice, _memory("m2", "second"))

    on_disk = tmp_path / "storage" / "local" / settings.memory_repo_name / settings.memories_path
    assert on_disk.exists()
    assert (tmp_path / "storage" / "local" / settings.memory_repo_name / "README.md").exists()
    assert sorted(await store.list_ids(alice)) == ["m1", "m2"]


@pytest.mark.asyncio
async def test_local_backend_rejects_stale_version(tmp_path, session_factory, settings, alice) -> None:
    backend = LocalBackend(str(tmp_path / "storage"))
    resolver = CredentialResolver(backend, session_factory, settings)
    creds = await resolver.setup_store(alice)
    snapshot = await backend.get_document(creds, settings.memories_path)

    await backend.put_document(creds, settings.memories_path, "{}", "first", expected_version=snapshot.version)

    with pytest.raises(VersionConflict):
        await backend.put_document(creds, settings.memories_path, "{}", "second", expected_version=snapshot.version)
