"""Tests for memory-type routing."""

import pytest

from agentmem.vector_store.base import VectorStoreConnectionError, VectorStoreError
from agentmem.vector_store.chroma import ChromaVectorStore
from agentmem.vector_store.config import ChromaConfig, InMemoryConfig
from agentmem.vector_store.manager import CollectionManager, MemoryType, parse_memory_type
from agentmem.vector_store.memory import InMemoryVectorStore
from agentmem.vector_store.pool import ConnectionPool

from .fakes import FakeChromaClient


class _UnreachableStore(InMemoryVectorStore):
    """In-memory store whose connect always fails, like a down backend."""

    async def connect(self) -> None:
        raise VectorStoreConnectionError("connection refused", backend_type="in-memory")


def _memory(collection, dimension=3):
    return InMemoryVectorStore(InMemoryConfig(collection_name=collection, dimension=dimension))


def _unreachable(collection):
    return _UnreachableStore(InMemoryConfig(collection_name=collection, dimension=3))


def _pooled_chroma(collection, pool, client):
    config = ChromaConfig(collection_name=collection, dimension=3, retry_base_delay=0.0)
    return ChromaVectorStore(config, pool=pool, client_factory=lambda config: client)


def test_parse_memory_type():
    assert parse_memory_type("knowledge") is MemoryType.KNOWLEDGE
    assert parse_memory_type(" Reflection ") is MemoryType.REFLECTION
    assert parse_memory_type(MemoryType.WORKSPACE) is MemoryType.WORKSPACE
    with pytest.raises(VectorStoreError) as excinfo:
        parse_memory_type("episodic")
    assert excinfo.value.operation == "get_store"


def test_knowledge_store_is_required():
    with pytest.raises(VectorStoreError):
        CollectionManager({MemoryType.REFLECTION: _memory("reflection")})


def test_fallback_must_have_a_store():
    with pytest.raises(VectorStoreError):
        CollectionManager({"knowledge": _memory("knowledge")}, fallback="workspace")


@pytest.mark.asyncio
async def test_routes_memory_types_to_their_stores():
    knowledge = _memory("knowledge")
    reflection = _memory("reflection")
    manager = CollectionManager({"knowledge": knowledge, "reflection": reflection})
    await manager.connect()

    assert manager.get_store("knowledge") is knowledge
    assert manager.get_store(MemoryType.REFLECTION) is reflection
    assert manager.get_store_by_collection("reflection") is reflection
    assert manager.get_store_by_collection("missing") is None
    assert manager.memory_types == [MemoryType.KNOWLEDGE, MemoryType.REFLECTION]

    await manager.get_store("knowledge").insert([[1, 0, 0]], [1], [{"memory": "knowledge"}])
    assert await reflection.get(1) is None


@pytest.mark.asyncio
async def test_types_sharing_a_store_are_connected_once():
    shared = _memory("shared")
    connects = []
    original_connect = shared.connect

    async def counting_connect():
        connects.append(1)
        await original_connect()

    shared.connect = counting_connect
    manager = CollectionManager({"knowledge": shared, "workspace": shared})
    await manager.connect()

    assert connects == [1]
    assert manager.get_store("workspace") is manager.get_store("knowledge")


@pytest.mark.asyncio
async def test_unknown_or_unconfigured_types_raise_without_fallback():
    manager = CollectionManager({"knowledge": _memory("knowledge")})
    await manager.connect()

    with pytest.raises(VectorStoreError):
        manager.get_store("episodic")
    with pytest.raises(VectorStoreError) as excinfo:
        manager.get_store("workspace")
    assert "No store configured" in str(excinfo.value)


@pytest.mark.asyncio
async def test_fallback_serves_unknown_and_unconfigured_types():
    knowledge = _memory("knowledge")
    manager = CollectionManager({"knowledge": knowledge}, fallback="knowledge")
    await manager.connect()

    assert manager.get_store("workspace") is knowledge
    assert manager.get_store("episodic") is knowledge


@pytest.mark.asyncio
async def test_failing_optional_store_is_marked_unavailable():
    knowledge = _memory("knowledge")
    manager = CollectionManager({"knowledge": knowledge, "reflection": _unreachable("reflection")})

    await manager.connect()

    assert manager.is_available("knowledge")
    assert not manager.is_available("reflection")
    with pytest.raises(VectorStoreError) as excinfo:
        manager.get_store("reflection")
    assert "unavailable" in str(excinfo.value)

    health = await manager.health_check()
    assert health == {"knowledge": True, "reflection": False, "overall": False}


@pytest.mark.asyncio
async def test_unavailable_store_falls_back_when_configured():
    knowledge = _memory("knowledge")
    manager = CollectionManager(
        {"knowledge": knowledge, "workspace": _unreachable("workspace")},
        fallback=MemoryType.KNOWLEDGE,
    )
    await manager.connect()
    assert manager.get_store("workspace") is knowledge


@pytest.mark.asyncio
async def test_knowledge_failure_is_raised_and_connected_stores_are_released():
    reflection = _memory("reflection")
    manager = CollectionManager({"knowledge": _unreachable("knowledge"), "reflection": reflection})

    with pytest.raises(VectorStoreConnectionError):
        await manager.connect()
    assert not reflection.is_connected()


@pytest.mark.asyncio
async def test_knowledge_failure_returns_pooled_references():
    pool = ConnectionPool()
    reflection = _pooled_chroma("reflection", pool, FakeChromaClient())
    workspace = _pooled_chroma("workspace", pool, FakeChromaClient())
    manager = CollectionManager({
        "knowledge": _unreachable("knowledge"),
        "reflection": reflection,
        "workspace": workspace,
    })

    with pytest.raises(VectorStoreConnectionError):
        await manager.connect()
    assert pool.ref_count(reflection._connection_key()) == 0
    assert not workspace.is_connected()


@pytest.mark.asyncio
async def test_health_and_info():
    knowledge = _memory("knowledge")
    workspace = _memory("workspace", dimension=8)
    manager = CollectionManager({"knowledge": knowledge, "workspace": workspace})

    assert (await manager.health_check())["overall"] is False
    await manager.connect()
    assert await manager.health_check() == {"knowledge": True, "workspace": True, "overall": True}

    info = manager.get_info()
    assert info["workspace"] == {
        "backend": "in-memory",
        "collection_name": "workspace",
        "dimension": 8,
        "connected": True,
        "available": True,
    }
    assert info["fallback"] is None
    assert info["overall_connected"] is True


@pytest.mark.asyncio
async def test_disconnect_closes_every_store():
    knowledge = _memory("knowledge")
    reflection = _memory("reflection")
    manager = CollectionManager({"knowledge": knowledge, "reflection": reflection})
    await manager.connect()

    await manager.disconnect()
    assert not knowledge.is_connected()
    assert not reflection.is_connected()
    assert manager.get_info()["overall_connected"] is False


@pytest.mark.asyncio
async def test_disconnect_shuts_down_an_owned_pool():
    pool = ConnectionPool()
    client = FakeChromaClient()
    manager = CollectionManager({"knowledge": _pooled_chroma("knowledge", pool, client)}, pool=pool)
    await manager.connect()
    assert len(pool) == 1

    await manager.disconnect()
    assert len(pool) == 0
    assert client.closed
