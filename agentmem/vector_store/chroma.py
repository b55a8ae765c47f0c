"""Chroma implementation of vector store.

Chroma metadata only holds flat scalars, so payloads pass through
``FlatPayloadCodec``. The HTTP client is blocking; calls run in a worker
thread. Ids are stored as text and read back through ``normalize_id``.

Chroma merges metadata on ``upsert`` and ``update``. To keep replace semantics
without a delete window, writes ``add`` new ids and ``update`` existing ones
with every stale metadata key set to ``None``, which Chroma removes. A failed
write leaves the stored record as it was.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import chromadb
import structlog

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
from .config import ChromaConfig
from .filters import ChromaFilterTranslator
from .pool import ConnectionKey, make_connection_key
from .remote import RemoteVectorStore
from .validation import (
    cosine_distance_to_score,
    ensure_batch,
    ensure_limit,
    ensure_vector,
    id_to_text,
    last_write_indices,
    normalize_id,
    squared_euclidean_to_score,
)

logger = structlog.get_logger("vector_store.chroma")

HNSW_SPACES = {
    "cosine": "cosine",
    "euclidean": "l2",
    "dot": "ip",
}

DIMENSION_METADATA_KEY = "dimension"


class ChromaVectorStore(RemoteVectorStore):
    """Chroma-backed vector store."""

    backend_type = "chroma"

    def __init__(self, config: ChromaConfig, **kwargs: Any):
        super().__init__(config, **kwargs)
        self._collection: Any = None

    def default_codec(self) -> PayloadCodec:
        return FlatPayloadCodec()

    def default_translator(self) -> ChromaFilterTranslator:
        return ChromaFilterTranslator()

    def _connection_key(self) -> ConnectionKey:
        config: ChromaConfig = self.config
        headers = config.headers or {}
        return make_connection_key(
            self.backend_type,
            config.host,
            config.port,
            credentials=[f"{name}={headers[name]}" for name in sorted(headers)],
            tls=config.ssl,
        )

    def _create_client(self) -> Any:
        config: ChromaConfig = self.config
        return chromadb.HttpClient(
            host=config.host,
            port=config.port,
            ssl=config.ssl,
            headers=config.headers,
        )

    async def _ensure_collection(self, client: Any) -> None:
        collection = await self._run_sync(
            client.get_or_create_collection,
            name=self.collection_name,
            metadata={"hnsw:space": HNSW_SPACES[self.distance], DIMENSION_METADATA_KEY: self.dimension},
        )
        stored = (collection.metadata or {}).get(DIMENSION_METADATA_KEY)
        if stored is not None and int(stored) != self.dimension:
            raise VectorStoreConnectionError(
                f"Chroma collection '{self.collection_name}' has dimension {stored}, expected {self.dimension}",
                backend_type=self.backend_type,
            )
        self._collection = collection

    async def _release_client(self) -> None:
        self._collection = None
        await super()._release_client()

    async def _ping(self, client: Any) -> bool:
        await self._run_sync(client.heartbeat)
        return True

    def _score(self, distance: float) -> float:
        if self.distance == "euclidean":
            return squared_euclidean_to_score(distance)
        # cosine and ip distances are both reported as 1 - similarity
        return cosine_distance_to_score(distance)

    async def _replace(self, ids: List[str], vectors: List[List[float]], payloads: Sequence[Payload]) -> None:
        metadatas = [self._encode(payload) for payload in payloads]
        existing = await self._run_sync(self._collection.get, ids=ids, include=["metadatas"])
        found = existing.get("ids") or []
        stored = dict(zip(found, existing.get("metadatas") or [None] * len(found)))

        added: List[int] = []
        updated: List[int] = []
        for index, text_id in enumerate(ids):
            if text_id not in stored:
                added.append(index)
                continue
            stale = {key: None for key in (stored[text_id] or {}) if key not in metadatas[index]}
            metadatas[index] = {**stale, **metadatas[index]}
            updated.append(index)

        if updated:
            await self._write(self._collection.update, ids, vectors, metadatas, updated)
        if added:
            await self._write(self._collection.add, ids, vectors, metadatas, added)

    async def _write(
        self,
        method: Any,
        ids: List[str],
        vectors: List[List[float]],
        metadatas: List[Dict[str, Any]],
        indices: List[int]
    ) -> None:
        # Chroma rejects empty metadata dicts; such records are written without metadata
        with_metadata = [index for index in indices if metadatas[index]]
        without_metadata = [index for index in indices if not metadatas[index]]
        if with_metadata:
            await self._run_sync(
                method,
                ids=[ids[index] for index in with_metadata],
                embeddings=[vectors[index] for index in with_metadata],
                metadatas=[metadatas[index] for index in with_metadata],
            )
        if without_metadata:
            await self._run_sync(
                method,
                ids=[ids[index] for index in without_metadata],
                embeddings=[vectors[index] for index in without_metadata],
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
        if not checked:
            return
        text_ids = [id_to_text(record_id, "insert") for record_id in ids]
        order = last_write_indices(text_ids)
        try:
            await self._replace(
                [text_ids[index] for index in order],
                [checked[index] for index in order],
                [payloads[index] for index in order],
            )
        except Exception as e:
            raise self._wrap_error("insert", e) from e
        logger.debug("Upserted records", collection=self.collection_name, count=len(order))

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
                self._collection.query,
                query_embeddings=[query_vector],
                n_results=limit,
                where=translated.native,
                include=["metadatas", "distances"],
            )
        except Exception as e:
            raise self._wrap_error("search", e) from e

        ids = (response.get("ids") or [[]])[0]
        metadatas = (response.get("metadatas") or [[]])[0] or [None] * len(ids)
        distances = (response.get("distances") or [[]])[0] or [0.0] * len(ids)

        results = []
        for text_id, metadata, distance in zip(ids, metadatas, distances):
            record_id = normalize_id(text_id)
            payload = self._decode_or_skip(record_id, metadata, "search")
            if payload is None:
                continue
            results.append(VectorStoreResult(id=record_id, score=self._score(distance), payload=payload))
        results.sort(key=lambda result: result.score, reverse=True)
        return results

    @track_operation("get")
    async def get(self, id: RecordId) -> Optional[VectorStoreResult]:
        self._require_connected("get")
        text_id = id_to_text(id, "get")
        try:
            response = await self._run_sync(
                self._collection.get,
                ids=[text_id],
                include=["metadatas", "embeddings"],
            )
        except Exception as e:
            raise self._wrap_error("get", e) from e

        ids = response.get("ids") or []
        if not ids:
            return None
        metadatas = response.get("metadatas")
        embeddings = response.get("embeddings")
        vector = embeddings[0] if embeddings is not None and len(embeddings) else None
        return VectorStoreResult(
            id=normalize_id(ids[0]),
            score=1.0,
            payload=self.codec.decode(metadatas[0] if metadatas else None),
            vector=[float(value) for value in vector] if vector is not None else None,
        )

    @track_operation("update")
    async def update(self, id: RecordId, vector: Sequence[float], payload: Payload) -> None:
        self._require_connected("update")
        checked = ensure_vector(vector, self.dimension, "update")
        try:
            await self._replace([id_to_text(id, "update")], [checked], [payload])
        except Exception as e:
            raise self._wrap_error("update", e) from e

    @track_operation("delete")
    async def delete(self, id: RecordId) -> None:
        self._require_connected("delete")
        text_id = id_to_text(id, "delete")
        try:
            await self._run_sync(self._collection.delete, ids=[text_id])
        except Exception as e:
            raise self._wrap_error("delete", e) from e

    @track_operation("delete_collection")
    async def delete_collection(self) -> None:
        self._require_connected("delete_collection")
        try:
            await self._run_sync(self.client.delete_collection, name=self.collection_name)
        except Exception as e:
            raise self._wrap_error("delete_collection", e) from e
        logger.info("Chroma collection deleted", collection=self.collection_name)

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
            response = await self._run_sync(
                self._collection.get,
                where=translated.native,
                limit=limit,
                include=["metadatas"],
            )
            if translated.native is None:
                total = await self._run_sync(self._collection.count)
            else:
                matched = await self._run_sync(self._collection.get, where=translated.native, include=[])
                total = len(matched.get("ids") or [])
        except Exception as e:
            raise self._wrap_error("list", e) from e

        ids = response.get("ids") or []
        metadatas = response.get("metadatas") or [None] * len(ids)
        results = []
        for text_id, metadata in zip(ids, metadatas):
            record_id = normalize_id(text_id)
            payload = self._decode_or_skip(record_id, metadata, "list")
            if payload is not None:
                results.append(VectorStoreResult(id=record_id, score=1.0, payload=payload))
        return results, total
