"""Pinecone implementation of vector store.

One serverless index per collection. Pinecone metadata is flat, so payloads
go through ``FlatPayloadCodec``; ids are stored as text. The SDK is blocking
and runs in a worker thread. The pooled client is the ``Pinecone`` handle
(one per API key); each adapter keeps its own ``Index`` handle.
"""

import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from pinecone import Pinecone, ServerlessSpec

from ..common.metrics import track_operation
from .base import (
    DEFAULT_LIST_LIMIT,
    DEFAULT_SEARCH_LIMIT,
    Payload,
    RecordId,
    SearchFilters,
    VectorStoreConnectionError,
    VectorStoreResult,
)
from .codec import FlatPayloadCodec, PayloadCodec
from .config import PineconeConfig
from .filters import PineconeFilterTranslator
from .pool import ConnectionKey, make_connection_key
from .remote import RemoteVectorStore
from .validation import (
    ensure_batch,
    ensure_limit,
    ensure_vector,
    id_to_text,
    last_write_indices,
    normalize_id,
    squared_euclidean_to_score,
)

logger = structlog.get_logger("vector_store.pinecone")

METRICS = {
    "cosine": "cosine",
    "euclidean": "euclidean",
    "dot": "dotproduct",
}

# Upper bound Pinecone accepts for top_k
MAX_TOP_K = 10000
UPSERT_BATCH_SIZE = 100


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from an SDK response object or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class PineconeVectorStore(RemoteVectorStore):
    """Pinecone-backed vector store."""

    backend_type = "pinecone"

    def __init__(self, config: PineconeConfig, **kwargs: Any):
        super().__init__(config, **kwargs)
        self._index: Any = None

    @property
    def namespace(self) -> str:
        return self.config.namespace

    def default_codec(self) -> PayloadCodec:
        return FlatPayloadCodec()

    def default_translator(self) -> PineconeFilterTranslator:
        return PineconeFilterTranslator()

    def _connection_key(self) -> ConnectionKey:
        return make_connection_key(self.backend_type, "api.pinecone.io", None, credentials=[self.config.api_key], tls=True)

    def _create_client(self) -> Pinecone:
        return Pinecone(api_key=self.config.api_key)

    async def _ensure_collection(self, client: Any) -> None:
        names = await self._run_sync(lambda: list(client.list_indexes().names()))
        if self.collection_name not in names:
            await self._run_sync(
                client.create_index,
                name=self.collection_name,
                dimension=self.dimension,
                metric=METRICS[self.distance],
                spec=ServerlessSpec(cloud=self.config.cloud, region=self.config.region),
            )
            logger.info("Pinecone index created", index=self.collection_name, dimension=self.dimension)
        else:
            description = await self._run_sync(client.describe_index, self.collection_name)
            actual = _field(description, "dimension")
            if actual is not None and int(actual) != self.dimension:
                raise VectorStoreConnectionError(
                    f"Pinecone index '{self.collection_name}' has dimension {actual}, expected {self.dimension}",
                    backend_type=self.backend_type,
                )
        self._index = client.Index(self.collection_name)

    async def _release_client(self) -> None:
        self._index = None
        await super()._release_client()

    async def _ping(self, client: Any) -> bool:
        await self._run_sync(client.list_indexes)
        return True

    def _score(self, raw: float) -> float:
        if self.distance == "euclidean":
            return squared_euclidean_to_score(raw)
        return float(raw)

    def _vector_record(self, text_id: str, vector: List[float], payload: Payload) -> Dict[str, Any]:
        return {"id": text_id, "values": vector, "metadata": self._encode(payload)}

    async def _upsert(self, records: List[Dict[str, Any]]) -> None:
        for start in range(0, len(records), UPSERT_BATCH_SIZE):
            await self._run_sync(
                self._index.upsert,
                vectors=records[start:start + UPSERT_BATCH_SIZE],
                namespace=self.namespace,
            )

    @track_operation("insert")
    async def insert(
        self,
        vectors: Sequence[Sequence[float]],
        ids: Sequence[RecordId],
        payloads: Sequence[Payload]
    ) -> None:
        self._require_connected("insert")
        checked = ensure_batch(vectors, ids, payloads, self.dimension)
        text_ids = [id_to_text(record_id, "insert") for record_id in ids]
        records = [
            self._vector_record(text_ids[i], checked[i], payloads[i])
            for i in last_write_indices(text_ids)
        ]
        try:
            await self._upsert(records)
        except Exception as e:
            raise self._wrap_error("insert", e) from e
        logger.debug("Upserted vectors", index=self.collection_name, count=len(records))

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
        results, _ = await self._query(query_vector, min(limit, MAX_TOP_K), filters, "search")
        results.sort(key=lambda result: result.score, reverse=True)
        return results

    async def _query(
        self,
        vector: List[float],
        top_k: int,
        filters: Optional[SearchFilters],
        operation: str,
        fixed_score: Optional[float] = None
    ) -> Tuple[List[VectorStoreResult], Any]:
        translated = self._translate(filters)
        kwargs: Dict[str, Any] = {
            "vector": vector,
            "top_k": top_k,
            "include_metadata": True,
            "namespace": self.namespace,
        }
        if translated.native:
            kwargs["filter"] = translated.native
        try:
            response = await self._run_sync(self._index.query, **kwargs)
        except Exception as e:
            raise self._wrap_error(operation, e) from e

        results = []
        for match in _field(response, "matches", []) or []:
            record_id = normalize_id(_field(match, "id"))
            payload = self._decode_or_skip(record_id, _field(match, "metadata"), operation)
            if payload is None:
                continue
            score = fixed_score if fixed_score is not None else self._score(_field(match, "score", 0.0))
            results.append(VectorStoreResult(id=record_id, score=score, payload=payload))
        return results, translated

    @track_operation("get")
    async def get(self, id: RecordId) -> Optional[VectorStoreResult]:
        self._require_connected("get")
        text_id = id_to_text(id, "get")
        try:
            response = await self._run_sync(self._index.fetch, ids=[text_id], namespace=self.namespace)
        except Exception as e:
            raise self._wrap_error("get", e) from e

        record = (_field(response, "vectors", {}) or {}).get(text_id)
        if record is None:
            return None
        values = _field(record, "values")
        return VectorStoreResult(
            id=normalize_id(text_id),
            score=1.0,
            payload=self.codec.decode(_field(record, "metadata")),
            vector=[float(value) for value in values] if values is not None else None,
        )

    @track_operation("update")
    async def update(self, id: RecordId, vector: Sequence[float], payload: Payload) -> None:
        self._require_connected("update")
        checked = ensure_vector(vector, self.dimension, "update")
        try:
            # upsert replaces metadata; Index.update would merge it
            await self._upsert([self._vector_record(id_to_text(id, "update"), checked, payload)])
        except Exception as e:
            raise self._wrap_error("update", e) from e

    @track_operation("delete")
    async def delete(self, id: RecordId) -> None:
        self._require_connected("delete")
        text_id = id_to_text(id, "delete")
        try:
            await self._run_sync(self._index.delete, ids=[text_id], namespace=self.namespace)
        except Exception as e:
            raise self._wrap_error("delete", e) from e

    @track_operation("delete_collection")
    async def delete_collection(self) -> None:
        self._require_connected("delete_collection")
        try:
            await self._run_sync(self.client.delete_index, self.collection_name)
        except Exception as e:
            raise self._wrap_error("delete_collection", e) from e
        logger.info("Pinecone index deleted", index=self.collection_name)

    @track_operation("list")
    async def list(
        self,
        filters: Optional[SearchFilters] = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> Tuple[List[VectorStoreResult], int]:
        """List records through a query with a neutral vector.

        Pinecone has no filtered scan; a uniform unit vector with the filter
        returns up to ``limit`` matches. Serverless indexes reject filters in
        ``describe_index_stats``, so a filtered ``total_count`` comes from a
        metadata-free query at ``MAX_TOP_K`` and is capped there.
        """
        self._require_connected("list")
        ensure_limit(limit, "list")
        neutral = [1.0 / math.sqrt(self.dimension)] * self.dimension
        results, translated = await self._query(neutral, min(limit, MAX_TOP_K), filters, "list", fixed_score=1.0)

        try:
            if translated.native:
                counted = await self._run_sync(
                    self._index.query,
                    vector=neutral,
                    top_k=MAX_TOP_K,
                    include_metadata=False,
                    namespace=self.namespace,
                    filter=translated.native,
                )
                total = len(_field(counted, "matches", []) or [])
            else:
                stats = await self._run_sync(self._index.describe_index_stats)
                namespaces = _field(stats, "namespaces", {}) or {}
                summary = namespaces.get(self.namespace)
                total = int(_field(summary, "vector_count", 0) or 0) if summary is not None else 0
        except Exception as e:
            raise self._wrap_error("list", e) from e

        return results, max(total, len(results))
