"""Qdrant implementation of vector store.

Uses ``qdrant_client.AsyncQdrantClient``. Payloads are stored natively (JSON),
filters translate to ``models.Filter`` with ``must`` clauses, and ids must be
unsigned integers or UUID strings, as Qdrant requires.
"""

import uuid
from typing import Any, List, Optional, Sequence, Tuple

import structlog
from qdrant_client import AsyncQdrantClient, models
from qdrant_client.http.exceptions import UnexpectedResponse

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
from .config import QdrantConfig
from .filters import QdrantFilterTranslator
from .pool import ConnectionKey, make_connection_key
from .remote import RemoteVectorStore
from .validation import (
    ensure_batch,
    ensure_limit,
    ensure_vector,
    euclidean_distance_to_score,
    last_write_indices,
    normalize_id,
)

logger = structlog.get_logger("vector_store.qdrant")

DISTANCES = {
    "cosine": models.Distance.COSINE,
    "euclidean": models.Distance.EUCLID,
    "dot": models.Distance.DOT,
}


class QdrantVectorStore(RemoteVectorStore):
    """Qdrant-backed vector store."""

    backend_type = "qdrant"

    def default_translator(self) -> QdrantFilterTranslator:
        return QdrantFilterTranslator()

    def _connection_key(self) -> ConnectionKey:
        config: QdrantConfig = self.config
        return make_connection_key(
            self.backend_type,
            config.url or config.host,
            None if config.url else config.port,
            credentials=[config.api_key],
            tls=config.https,
        )

    def _create_client(self) -> AsyncQdrantClient:
        config: QdrantConfig = self.config
        if config.url:
            return AsyncQdrantClient(
                url=config.url,
                api_key=config.api_key,
                prefer_grpc=config.prefer_grpc,
                timeout=int(config.timeout),
            )
        return AsyncQdrantClient(
            host=config.host,
            port=config.port,
            api_key=config.api_key,
            https=config.https,
            prefer_grpc=config.prefer_grpc,
            timeout=int(config.timeout),
        )

    async def _ensure_collection(self, client: Any) -> None:
        if not await client.collection_exists(self.collection_name):
            await client.create_collection(
                collection_name=self.collection_name,
                vectors_config=models.VectorParams(size=self.dimension, distance=DISTANCES[self.distance]),
            )
            logger.info("Qdrant collection created", collection=self.collection_name, dimension=self.dimension)
            return

        info = await client.get_collection(self.collection_name)
        vectors = info.config.params.vectors
        size = getattr(vectors, "size", None)
        if size != self.dimension:
            raise VectorStoreConnectionError(
                f"Qdrant collection '{self.collection_name}' has dimension {size}, expected {self.dimension}",
                backend_type=self.backend_type,
            )

    async def _ping(self, client: Any) -> bool:
        await client.get_collections()
        return True

    def _is_missing_collection(self, error: Exception) -> bool:
        if isinstance(error, UnexpectedResponse):
            return error.status_code == 404
        # local mode
        message = str(error)
        return isinstance(error, ValueError) and "not found" in message and self.collection_name in message

    def _point_id(self, record_id: Any, operation: str) -> Any:
        value = normalize_id(record_id, operation)
        if isinstance(value, str):
            try:
                return str(uuid.UUID(value))
            except ValueError as e:
                raise VectorStoreError(
                    f"Qdrant ids must be unsigned integers or UUIDs, got {value!r}",
                    operation=operation,
                    cause=e,
                ) from e
        return value

    def _score(self, raw: float) -> float:
        if self.distance == "euclidean":
            return euclidean_distance_to_score(raw)
        return float(raw)

    @track_operation("insert")
    async def insert(
        self,
        vectors: Sequence[Sequence[float]],
        ids: Sequence[RecordId],
        payloads: Sequence[Payload]
    ) -> None:
        self._require_connected("insert")
        checked = ensure_batch(vectors, ids, payloads, self.dimension)
        point_ids = [self._point_id(record_id, "insert") for record_id in ids]
        points = [
            models.PointStruct(id=point_ids[index], vector=checked[index], payload=self._encode(payloads[index]))
            for index in last_write_indices(point_ids)
        ]
        if not points:
            return
        try:
            await self.client.upsert(collection_name=self.collection_name, points=points, wait=True)
        except Exception as e:
            raise self._wrap_error("insert", e) from e
        logger.debug("Upserted points", collection=self.collection_name, count=len(points))

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
            response = await self.client.query_points(
                collection_name=self.collection_name,
                query=query_vector,
                query_filter=translated.native,
                limit=limit,
                with_payload=True,
            )
        except Exception as e:
            raise self._wrap_error("search", e) from e

        results = []
        for point in response.points:
            record_id = normalize_id(point.id)
            payload = self._decode_or_skip(record_id, point.payload, "search")
            if payload is None:
                continue
            results.append(VectorStoreResult(id=record_id, score=self._score(point.score), payload=payload))
        results.sort(key=lambda result: result.score, reverse=True)
        return results

    @track_operation("get")
    async def get(self, id: RecordId) -> Optional[VectorStoreResult]:
        self._require_connected("get")
        point_id = self._point_id(id, "get")
        try:
            points = await self.client.retrieve(
                collection_name=self.collection_name,
                ids=[point_id],
                with_payload=True,
                with_vectors=True,
            )
        except Exception as e:
            raise self._wrap_error("get", e) from e
        if not points:
            return None
        point = points[0]
        return VectorStoreResult(
            id=normalize_id(point.id),
            score=1.0,
            payload=self.codec.decode(point.payload),
            vector=[float(value) for value in point.vector] if point.vector is not None else None,
        )

    @track_operation("update")
    async def update(self, id: RecordId, vector: Sequence[float], payload: Payload) -> None:
        self._require_connected("update")
        checked = ensure_vector(vector, self.dimension, "update")
        point = models.PointStruct(id=self._point_id(id, "update"), vector=checked, payload=self._encode(payload))
        try:
            # upsert overwrites the whole payload, unlike set_payload
            await self.client.upsert(collection_name=self.collection_name, points=[point], wait=True)
        except Exception as e:
            raise self._wrap_error("update", e) from e

    @track_operation("delete")
    async def delete(self, id: RecordId) -> None:
        self._require_connected("delete")
        point_id = self._point_id(id, "delete")
        try:
            await self.client.delete(
                collection_name=self.collection_name,
                points_selector=models.PointIdsList(points=[point_id]),
                wait=True,
            )
        except Exception as e:
            raise self._wrap_error("delete", e) from e

    @track_operation("delete_collection")
    async def delete_collection(self) -> None:
        self._require_connected("delete_collection")
        try:
            await self.client.delete_collection(collection_name=self.collection_name)
        except Exception as e:
            raise self._wrap_error("delete_collection", e) from e
        logger.info("Qdrant collection deleted", collection=self.collection_name)

    @track_operation("list")
    async def list(
        self,
        filters: Optional[SearchFilters] = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> Tuple[List[VectorStoreResult], int]:
        self._require_connected("list")
        ensure_limit(limit, "list")
        translated = self._translate(filters)
        try:
            points, _next_offset = await self.client.scroll(
                collection_name=self.collection_name,
                scroll_filter=translated.native,
                limit=limit,
                with_payload=True,
                with_vectors=False,
            )
            counted = await self.client.count(
                collection_name=self.collection_name,
                count_filter=translated.native,
                exact=True,
            )
        except Exception as e:
            raise self._wrap_error("list", e) from e

        results = []
        for point in points:
            record_id = normalize_id(point.id)
            payload = self._decode_or_skip(record_id, point.payload, "list")
            if payload is not None:
                results.append(VectorStoreResult(id=record_id, score=1.0, payload=payload))
        return results, counted.count
