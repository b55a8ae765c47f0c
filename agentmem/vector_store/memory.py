"""Embedded in-memory vector store.

No network dependency: records live in a dict and search is exact brute
force over every stored vector with numpy. Filters are evaluated with the
reference ``filters.matches`` semantics, so this store doubles as the oracle
the networked adapters are compared against.

Vectors and payloads are deep-copied on the way in and out; callers mutating
their inputs or results never touch stored state. Mutations are serialized
by an ``asyncio.Lock``.
"""

import asyncio
import copy
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from ..common.metrics import track_operation
from .base import (
    DEFAULT_LIST_LIMIT,
    DEFAULT_SEARCH_LIMIT,
    Payload,
    RecordId,
    SearchFilters,
    VectorStore,
    VectorStoreError,
    VectorStoreResult,
)
from .config import InMemoryConfig
from .filters import parse_filters, predicate_matches
from .validation import ensure_batch, ensure_limit, ensure_vector, normalize_id

logger = structlog.get_logger("vector_store.memory")


class _Record:
    __slots__ = ("vector", "payload")

    def __init__(self, vector: np.ndarray, payload: Payload):
        self.vector = vector
        self.payload = payload


class InMemoryVectorStore(VectorStore):
    """In-process vector store bounded by ``max_vectors``."""

    backend_type = "in-memory"

    def __init__(self, config: InMemoryConfig, metrics=None):
        super().__init__(config, metrics=metrics)
        self._records: Dict[RecordId, _Record] = {}
        self._lock = asyncio.Lock()

    @property
    def max_vectors(self) -> int:
        return self.config.max_vectors

    def __len__(self) -> int:
        return len(self._records)

    async def connect(self) -> None:
        if self._connected:
            return
        self._connected = True
        logger.info(
            "In-memory vector store connected",
            collection=self.collection_name,
            dimension=self.dimension,
            max_vectors=self.max_vectors
        )

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        logger.info("In-memory vector store disconnected", collection=self.collection_name, records=len(self._records))

    @track_operation("insert")
    async def insert(
        self,
        vectors: Sequence[Sequence[float]],
        ids: Sequence[RecordId],
        payloads: Sequence[Payload]
    ) -> None:
        self._require_connected("insert")
        checked = ensure_batch(vectors, ids, payloads, self.dimension)
        record_ids = [normalize_id(record_id, "insert") for record_id in ids]
        await self._upsert(record_ids, checked, payloads, "insert")
        logger.debug("Inserted vectors", collection=self.collection_name, count=len(record_ids))

    async def _upsert(
        self,
        record_ids: List[RecordId],
        vectors: List[List[float]],
        payloads: Sequence[Payload],
        operation: str
    ) -> None:
        async with self._lock:
            new_ids = {record_id for record_id in record_ids if record_id not in self._records}
            if len(self._records) + len(new_ids) > self.max_vectors:
                raise VectorStoreError(
                    f"Maximum vector capacity exceeded: {self.max_vectors} "
                    f"(stored {len(self._records)}, inserting {len(new_ids)} new)",
                    operation=operation,
                )
            for record_id, vector, payload in zip(record_ids, vectors, payloads):
                self._records[record_id] = _Record(np.asarray(vector, dtype=np.float64), copy.deepcopy(payload))

    @track_operation("search")
    async def search(
        self,
        query: Sequence[float],
        limit: int = DEFAULT_SEARCH_LIMIT,
        filters: Optional[SearchFilters] = None
    ) -> List[VectorStoreResult]:
        self._require_connected("search")
        query_vector = np.asarray(ensure_vector(query, self.dimension, "search"), dtype=np.float64)
        ensure_limit(limit, "search")
        predicates = parse_filters(filters)

        candidates = [
            (record_id, record) for record_id, record in self._records.items()
            if all(predicate_matches(record.payload, predicate) for predicate in predicates)
        ]
        if not candidates:
            return []

        matrix = np.vstack([record.vector for _, record in candidates])
        scores = self._scores(matrix, query_vector)
        # Stable sort keeps insertion order between equal scores
        order = np.argsort(-scores, kind="stable")[:limit]

        return [
            VectorStoreResult(
                id=candidates[index][0],
                score=float(scores[index]),
                payload=copy.deepcopy(candidates[index][1].payload),
            )
            for index in order
        ]

    @track_operation("get")
    async def get(self, id: RecordId) -> Optional[VectorStoreResult]:
        self._require_connected("get")
        record_id = normalize_id(id, "get")
        record = self._records.get(record_id)
        if record is None:
            return None
        return VectorStoreResult(
            id=record_id,
            score=1.0,
            payload=copy.deepcopy(record.payload),
            vector=record.vector.tolist(),
        )

    @track_operation("update")
    async def update(self, id: RecordId, vector: Sequence[float], payload: Payload) -> None:
        self._require_connected("update")
        checked = ensure_vector(vector, self.dimension, "update")
        if not isinstance(payload, dict):
            raise VectorStoreError("Payload must be a mapping", operation="update")
        await self._upsert([normalize_id(id, "update")], [checked], [payload], "update")

    @track_operation("delete")
    async def delete(self, id: RecordId) -> None:
        self._require_connected("delete")
        record_id = normalize_id(id, "delete")
        async with self._lock:
            if self._records.pop(record_id, None) is None:
                logger.debug("Delete of missing record ignored", collection=self.collection_name, id=record_id)

    @track_operation("delete_collection")
    async def delete_collection(self) -> None:
        self._require_connected("delete_collection")
        async with self._lock:
            count = len(self._records)
            self._records.clear()
        logger.info("In-memory collection cleared", collection=self.collection_name, deleted=count)

    @track_operation("list")
    async def list(
        self,
        filters: Optional[SearchFilters] = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> Tuple[List[VectorStoreResult], int]:
        self._require_connected("list")
        ensure_limit(limit, "list")
        predicates = parse_filters(filters)

        matched = [
            (record_id, record) for record_id, record in self._records.items()
            if all(predicate_matches(record.payload, predicate) for predicate in predicates)
        ]
        results = [
            VectorStoreResult(id=record_id, score=1.0, payload=copy.deepcopy(record.payload))
            for record_id, record in matched[:limit]
        ]
        return results, len(matched)

    async def health_check(self) -> bool:
        return self._connected

    def _scores(self, matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
        if self.distance == "dot":
            return matrix @ query
        if self.distance == "euclidean":
            return 1.0 / (1.0 + np.linalg.norm(matrix - query, axis=1))

        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        # Zero-length vectors have no direction; score them 0
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(norms > 0, dots / np.where(norms > 0, norms, 1.0), 0.0)
