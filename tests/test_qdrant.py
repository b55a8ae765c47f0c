"""Qdrant adapter tests against the embedded local-mode client."""

import uuid

import numpy as np
import pytest
from qdrant_client import AsyncQdrantClient

from agentmem.vector_store.base import CollectionNotFoundError, VectorStoreConnectionError, VectorStoreError
from agentmem.vector_store.config import InMemoryConfig, QdrantConfig
from agentmem.vector_store.memory import InMemoryVectorStore
from agentmem.vector_store.pool import ConnectionPool
from agentmem.vector_store.qdrant import QdrantVectorStore


def _local_client(config):
    return AsyncQdrantClient(location=":memory:")


def _store(collection="memories", dimension=2, pool=None, **overrides):
    config = QdrantConfig(
        collection_name=collection,
        dimension=dimension,
        max_retries=1,
        retry_base_delay=0.0,
        **overrides
    )
    return QdrantVectorStore(config, pool=pool, client_factory=_local_client)


def _dataset(count=40, seed=3):
    rng = np.random.default_rng(seed)
    vectors = rng.normal(size=(count, 2)).tolist()
    payloads = [
        {
            "kind": ["note", "todo", "fact"][i % 3],
            "rank": i,
            "tags": ["even"] if i % 2 == 0 else ["odd", "x"],
            "user": {"name": "ada" if i < count // 2 else "grace"},
        }
        for i in range(count)
    ]
    return vectors, list(range(count)), payloads


@pytest.mark.asyncio
async def test_crud_round_trip():
    store = _store()
    await store.connect()
    try:
        payload = {"text": "remember", "tags": ["a", "b"], "user": {"name": "ada"}}
        await store.insert([[1.0, 0.0]], [1], [payload])

        result = await store.get(1)
        assert result.id == 1
        assert result.payload == payload
        assert result.vector == pytest.approx([1.0, 0.0])

        await store.update(1, [0.0, 1.0], {"replaced": True})
        assert (await store.get(1)).payload == {"replaced": True}

        await store.delete(1)
        assert await store.get(1) is None
        await store.delete(1)
    finally:
        await store.disconnect()


@pytest.mark.asyncio
async def test_uuid_ids_are_supported_and_other_text_is_rejected():
    store = _store()
    await store.connect()
    try:
        record_id = str(uuid.uuid4())
        await store.insert([[1.0, 0.0]], [record_id], [{}])
        assert (await store.get(record_id)).id == record_id

        with pytest.raises(VectorStoreError):
            await store.insert([[1.0, 0.0]], ["not-a-uuid"], [{}])
    finally:
        await store.disconnect()


@pytest.mark.asyncio
async def test_search_scores_and_order():
    store = _store(dimension=3)
    await store.connect()
    try:
        await store.insert([[1, 0, 0], [0, 1, 0], [0.9, 0.1, 0]], [1, 2, 3], [{}, {}, {}])
        results = await store.search([1, 0, 0], limit=2)
        assert [result.id for result in results] == [1, 3]
        assert results[0].score == pytest.approx(1.0, abs=1e-5)
        assert results[1].score == pytest.approx(0.9939, abs=1e-3)
    finally:
        await store.disconnect()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "filters",
    [
        {"kind": "note"},
        {"rank": {"gte": 10, "lt": 20}},
        {"tags": {"any": ["x"]}},
        {"tags": {"all": ["odd", "x"]}},
        {"user.name": "grace", "kind": {"any": ["todo", "fact"]}},
    ],
)
async def test_filtered_results_match_the_in_memory_store(filters):
    vectors, ids, payloads = _dataset()
    store = _store()
    oracle = InMemoryVectorStore(InMemoryConfig(collection_name="oracle", dimension=2))
    await store.connect()
    await oracle.connect()
    try:
        await store.insert(vectors, ids, payloads)
        await oracle.insert(vectors, ids, payloads)

        found = await store.search([0.5, 0.5], limit=100, filters=filters)
        expected = await oracle.search([0.5, 0.5], limit=100, filters=filters)
        assert {result.id for result in found} == {result.id for result in expected}

        listed, total = await store.list(filters=filters, limit=100)
        expected_listed, expected_total = await oracle.list(filters=filters, limit=100)
        assert total == expected_total
        assert {result.id for result in listed} == {result.id for result in expected_listed}
    finally:
        await store.disconnect()


@pytest.mark.asyncio
async def test_list_total_counts_beyond_limit():
    vectors, ids, payloads = _dataset(count=12)
    store = _store()
    await store.connect()
    try:
        await store.insert(vectors, ids, payloads)
        results, total = await store.list(limit=5)
        assert len(results) == 5
        assert total == 12
    finally:
        await store.disconnect()


@pytest.mark.asyncio
async def test_duplicate_ids_in_one_batch_keep_the_last():
    store = _store()
    await store.connect()
    try:
        await store.insert([[1.0, 0.0], [0.0, 1.0]], [4, 4], [{"v": "first"}, {"v": "last"}])
        assert (await store.get(4)).payload == {"v": "last"}
    finally:
        await store.disconnect()


@pytest.mark.asyncio
async def test_existing_collection_with_other_dimension_fails_to_connect():
    pool = ConnectionPool()
    first = _store(collection="shared", dimension=3, pool=pool)
    second = _store(collection="shared", dimension=4, pool=pool)

    await first.connect()
    try:
        with pytest.raises(VectorStoreConnectionError):
            await second.connect()
        assert not second.is_connected()
        # The failed store gave its pool reference back
        assert pool.ref_count(first._pool_key) == 1
    finally:
        await first.disconnect()
        await pool.shutdown()


@pytest.mark.asyncio
async def test_stores_on_the_same_server_share_a_client():
    pool = ConnectionPool()
    knowledge = _store(collection="knowledge", pool=pool)
    reflection = _store(collection="reflection", pool=pool)

    await knowledge.connect()
    await reflection.connect()
    try:
        assert knowledge.client is reflection.client
        assert len(pool) == 1

        await knowledge.insert([[1.0, 0.0]], [1], [{"memory": "knowledge"}])
        assert await reflection.get(1) is None
    finally:
        await knowledge.disconnect()
        await reflection.disconnect()
        await pool.shutdown()


@pytest.mark.asyncio
async def test_delete_collection_and_health():
    store = _store()
    assert await store.health_check() is False
    await store.connect()
    try:
        assert await store.health_check() is True
        await store.insert([[1.0, 0.0]], [1], [{}])
        await store.delete_collection()
        with pytest.raises(CollectionNotFoundError) as excinfo:
            await store.get(1)
        assert excinfo.value.collection_name == "memories"
        assert excinfo.value.operation == "get"
        with pytest.raises(CollectionNotFoundError):
            await store.search([1.0, 0.0])
    finally:
        await store.disconnect()
    assert await store.health_check() is False
