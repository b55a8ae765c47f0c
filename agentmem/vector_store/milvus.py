"""Milvus implementation of vector store.

Each collection has three fields: ``id`` (INT64 primary key), ``vector``
(FLOAT_VECTOR) and ``payload`` (JSON). Filters become boolean expressions over
the JSON field. ``pymilvus.MilvusClient`` is blocking; calls run in a worker
thread. Milvus only accepts integer ids.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from pymilvus import DataType, MilvusClient

from ..common.metrics import track_operation
from .base import (
    DEFAULT_LIST_LIMIT,
    DEFAULT_SEARCH_LIMIT,
    Payload,
    RecordId,
    SearchFilters,
    VectorStoreConnectionError,
    VectorStoreError,
    VectorStoreResult,
)
from .config import MilvusConfig
from .filters import MilvusFilterTranslator
from .pool import ConnectionKey, make_connection_key
from .remote import RemoteVectorStore
from .validation import (
    ensure_batch,
    ensure_limit,
    ensure_vector,
    last_write_indices,
    normalize_id,
    squared_euclidean_to_score,
)

logger = structlog.get_logger("vector_store.milvus")

METRIC_TYPES = {
    "cosine": "COSINE",
    "euclidean": "L2",
    "dot": "IP",
}

ID_FIELD = "id"
VECTOR_FIELD = "vector"
PAYLOAD_FIELD = "payload"
# Milvus needs a non-empty expression to query without a filter
MATCH_ALL = f"{ID_FIELD} >= 0"


class MilvusVectorStore(RemoteVectorStore):
    """Milvus-backed vector store."""

    backend_type = "milvus"

    def default_translator(self) -> MilvusFilterTranslator:
        return MilvusFilterTranslator(payload_field=PAYLOAD_FIELD)

    def _connection_key(self) -> ConnectionKey:
        config: MilvusConfig = self.config
        return make_connection_key(
            self.backend_type,
            config.resolved_uri(),
            None,
            credentials=[config.token, config.username, config.password, config.db_name],
            tls=config.secure or config.resolved_uri().startswith("https"),
        )

    def _create_client(self) -> MilvusClient:
        config: MilvusConfig = self.config
        kwargs: Dict[str, Any] = {"uri": config.resolved_uri(), "timeout": config.timeout}
        if config.token:
            kwargs["token"] = config.token
        elif config.username:
            kwargs["user"] = config.username
            kwargs["password"] = config.password or ""
        if config.db_name:
            kwargs["db_name"] = config.db_name
        return MilvusClient(**kwargs)

    async def _ensure_collection(self, client: Any) -> None:
        exists = await self._run_sync(client.has_collection, collection_name=self.collection_name)
        if not exists:
            await self._create_collection(client)
        else:
            description = await self._run_sync(client.describe_collection, collection_name=self.collection_name)
            actual = self._described_dimension(description)
            if actual != self.dimension:
                raise VectorStoreConnectionError(
                    f"Milvus collection '{self.collection_name}' has dimension {actual}, expected {self.dimension}",
                    backend_type=self.backend_type,
                )
        await self._run_sync(client.load_collection, collection_name=self.collection_name)

    async def _create_collection(self, client: Any) -> None:
        schema = MilvusClient.create_schema(auto_id=False, enable_dynamic_field=False)
        schema.add_field(field_name=ID_FIELD, datatype=DataType.INT64, is_primary=True)
        schema.add_field(field_name=VECTOR_FIELD, datatype=DataType.FLOAT_VECTOR, dim=self.dimension)
        schema.add_field(field_name=PAYLOAD_FIELD, datatype=DataType.JSON)

        index_params = client.prepare_index_params()
        index_params.add_index(field_name=VECTOR_FIELD, index_type="AUTOINDEX", metric_type=METRIC_TYPES[self.distance])

        await self._run_sync(
            client.create_collection,
            collection_name=self.collection_name,
            schema=schema,
            index_params=index_params,
            consistency_level="Strong",
        )
        logger.info("Milvus collection created", collection=self.collection_name, dimension=self.dimension)

    @staticmethod
    def _described_dimension(description: Dict[str, Any]) -> Optional[int]:
        for field in description.get("fields", []):
            if field.get("name") == VECTOR_FIELD:
                dim = (field.get("params") or {}).get("dim")
                return int(dim) if dim is not None else None
        return None

    async def _ping(self, client: Any) -> bool:
        await self._run_sync(client.list_collections)
        return True

    def _milvus_id(self, record_id: Any, operation: str) -> int:
        value = normalize_id(record_id, operation)
        if not isinstance(value, int) or value > 2 ** 63 - 1:
            raise VectorStoreError(f"Milvus ids must be integers in INT64 range, got {value!r}", operation=operation)
        return value

    def _score(self, distance: float) -> float:
        if self.distance == "euclidean":
            return squared_euclidean_to_score(distance)
        # COSINE and IP report similarity directly
        return float(distance)

    def _rows(self, ids: Sequence[RecordId], vectors: List[List[float]], payloads: Sequence[Payload], operation: str) -> List[Dict[str, Any]]:
        return [
            {ID_FIELD: self._milvus_id(record_id, operation), VECTOR_FIELD: vector, PAYLOAD_FIELD: self._encode(payload)}
            for record_id, vector, payload in zip(ids, vectors, payloads)
        ]

    @track_operation("insert")
    async def insert(
        self,
        vectors: Sequence[Sequence[float]],
        ids: Sequence[RecordId],
        payloads: Sequence[Payload]
    ) -> None:
        self._require_connected("insert")
        checked = ensure_batch(vectors, ids, payloads, self.dimension)
        milvus_ids = [self._milvus_id(record_id, "insert") for record_id in ids]
        order = last_write_indices(milvus_ids)
        rows = self._rows(
            [milvus_ids[index] for index in order],
            [checked[index] for index in order],
            [payloads[index] for index in order],
            "insert",
        )
        if not rows:
            return
        try:
            await self._run_sync(self.client.upsert, collection_name=self.collection_name, data=rows)
        except Exception as e:
            raise self._wrap_error("insert", e) from e
        logger.debug("Upserted rows", collection=self.collection_name, count=len(rows))

    @track_operation("search")
    async def search(
        self,
        query: Sequence[float],
        limit: int = DEFAULT_SEARCH_LIMIT,
        filters: Optional[SearchFilters] = None
    ) -> List[VectorStoreResult]:
        self._require_connected("search")
        query_vector = ensure_vector(query, self.dimension, "search")
        ensure_limit(limit, "search")
        translated = self._translate(filters)
        try:
            response = await self._run_sync(
                self.client.search,
                collection_name=self.collection_name,
                data=[query_vector],
                limit=limit,
                filter=translated.native or "",
                output_fields=[PAYLOAD_FIELD],
                search_params={"metric_type": METRIC_TYPES[self.distance]},
            )
        except Exception as e:
            raise self._wrap_error("search", e) from e

        hits = response[0] if response else []
        results = []
        for hit in hits:
            record_id = normalize_id(hit["id"])
            entity = hit.get("entity") or {}
            payload = self._decode_or_skip(record_id, entity.get(PAYLOAD_FIELD), "search")
            if payload is None:
                continue
            results.append(VectorStoreResult(id=record_id, score=self._score(hit["distance"]), payload=payload))
        results.sort(key=lambda result: result.score, reverse=True)
        return results

    @track_operation("get")
    async def get(self, id: RecordId) -> Optional[VectorStoreResult]:
        self._require_connected("get")
        milvus_id = self._milvus_id(id, "get")
        try:
            rows = await self._run_sync(
                self.client.get,
                collection_name=self.collection_name,
                ids=[milvus_id],
                output_fields=[PAYLOAD_FIELD, VECTOR_FIELD],
            )
        except Exception as e:
            raise self._wrap_error("get", e) from e
        if not rows:
            return None
        row = rows[0]
        vector = row.get(VECTOR_FIELD)
        return VectorStoreResult(
            id=normalize_id(row[ID_FIELD]),
            score=1.0,
            payload=self.codec.decode(row.get(PAYLOAD_FIELD)),
            vector=[float(value) for value in vector] if vector is not None else None,
        )

    @track_operation("update")
    async def update(self, id: RecordId, vector: Sequence[float], payload: Payload) -> None:
        self._require_connected("update")
        checked = ensure_vector(vector, self.dimension, "update")
        rows = self._rows([id], [checked], [payload], "update")
        try:
            await self._run_sync(self.client.upsert, collection_name=self.collection_name, data=rows)
        except Exception as e:
            raise self._wrap_error("update", e) from e

    @track_operation("delete")
    async def delete(self, id: RecordId) -> None:
        self._require_connected("delete")
        milvus_id = self._milvus_id(id, "delete")
        try:
            await self._run_sync(self.client.delete, collection_name=self.collection_name, ids=[milvus_id])
        except Exception as e:
            raise self._wrap_error("delete", e) from e

    @track_operation("delete_collection")
    async def delete_collection(self) -> None:
        self._require_connected("delete_collection")
        try:
            await self._run_sync(self.client.drop_collection, collection_name=self.collection_name)
        except Exception as e:
            raise self._wrap_error("delete_collection", e) from e
        logger.info("Milvus collection dropped", collection=self.collection_name)

    @track_operation("list")
    async def list(
        self,
        filters: Optional[SearchFilters] = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> Tuple[List[VectorStoreResult], int]:
        self._require_connected("list")
        ensure_limit(limit, "list")
        expression = self._translate(filters).native or MATCH_ALL
        try:
            rows = await self._run_sync(
                self.client.query,
                collection_name=self.collection_name,
                filter=expression,
                output_fields=[PAYLOAD_FIELD],
                limit=limit,
            )
            counted = await self._run_sync(
                self.client.query,
                collection_name=self.collection_name,
                filter=expression,
                output_fields=["count(*)"],
            )
        except Exception as e:
            raise self._wrap_error("list", e) from e

        results = []
        for row in rows:
            record_id = normalize_id(row[ID_FIELD])
            payload = self._decode_or_skip(record_id, row.get(PAYLOAD_FIELD), "list")
            if payload is not None:
                results.append(VectorStoreResult(id=record_id, score=1.0, payload=payload))
        total = int(counted[0]["count(*)"]) if counted else 0
        return results, total
