import pytest

from oss_token.errors import ConfigurationError, NotFound
from oss_token.models import ProjectStatus
from oss_token.store import InMemoryDocumentStore, ProjectStore

from .fakes import PROJECT_ID, seed_project


@pytest.mark.asyncio
async def test_documents_are_copied_in_and_out() -> None:
    store = InMemoryDocumentStore()
    doc = {"value": [1]}
    await store.set("things", "a", doc)
    doc["value"].append(2)
    fetched = await store.get("things", "a")
    assert fetched == {"value": [1]}
    fetched["value"].append(3)
    assert await store.get("things", "a") == {"value": [1]}


@pytest.mark.asyncio
async def test_update_requires_existing_document() -> None:
    store = InMemoryDocumentStore()
    with pytest.raises(NotFound):
        await store.update("things", "missing", {"value": 1})


@pytest.mark.asyncio
async def test_query_matches_all_fields() -> None:
    store = InMemoryDocumentStore()
    await store.set("things", "a", {"kind": "x", "status": "open"})
    await store.set("things", "b", {"kind": "x", "status": "closed"})
    await store.set("things", "c", {"kind": "y", "status": "open"})
    assert await store.query("things", kind="x", status="open") == [{"kind": "x", "status": "open"}]
    assert await store.query("empty") == []


@pytest.mark.asyncio
async def test_transaction_reads_its_own_writes_and_commits_together() -> None:
    store = InMemoryDocumentStore()
    await store.set("things", "a", {"count": 1})
    async with store.transaction() as txn:
        txn.update("things", "a", {"count": 2})
        txn.set("things", "b", {"count": 10})
        assert (await txn.get("things", "a"))["count"] == 2
        assert await txn.get("things", "c") is None
    assert (await store.get("things", "a"))["count"] == 2
    assert (await store.get("things", "b"))["count"] == 10


@pytest.mark.asyncio
async def test_transaction_discards_writes_when_block_raises() -> None:
    store = InMemoryDocumentStore()
    await store.set("things", "a", {"count": 1})
    with pytest.raises(RuntimeError):
        async with store.transaction() as txn:
            txn.update("things", "a", {"count": 2})
            txn.set("things", "b", {"count": 10})
            raise RuntimeError("abort")
    assert (await store.get("things", "a"))["count"] == 1
    assert await store.get("things", "b") is None


@pytest.mark.asyncio
async def test_require_active_checks_status_and_token_configuration() -> None:
    projects = ProjectStore(InMemoryDocumentStore())
    with pytest.raises(NotFound):
        await projects.require_active(PROJECT_ID)

    await seed_project(projects, status=ProjectStatus.DRAFT)
    with pytest.raises(ConfigurationError):
        await projects.require_active(PROJECT_ID)

    await seed_project(projects, token_code=None)
    with pytest.raises(ConfigurationError):
        await projects.require_active(PROJECT_ID)

    await seed_project(projects)
    project = await projects.require_active(PROJECT_ID)
    assert project.token_code == "OSS"
    assert [p.id for p in await projects.list_active()] == [PROJECT_ID]
