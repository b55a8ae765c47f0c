"""Base vector store interface.

Defines the abstract contract the agent memory components depend on,
independent of the backing implementation (embedded, Qdrant, Chroma, Milvus,
PgVector, Pinecone, OpenSearch).

All methods are asynchronous; the embedded backend wraps in-process work in
the same contract so callers never branch on the backend.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import structlog

logger = structlog.get_logger("vector_store.base")

RecordId = Union[int, str]
Payload = Dict[str, Any]
SearchFilters = Dict[str, Any]

DEFAULT_SEARCH_LIMIT = 10
DEFAULT_LIST_LIMIT = 100
DEFAULT_DIMENSION = 1536


@dataclass
class VectorStoreResult:
    """A single record returned by ``search``, ``get`` or ``list``.

    ``score`` is normalized so that 1.0 means identical to the query;
    ``get`` and ``list`` report 1.0 since no query is involved.
    """

    id: RecordId
    score: float
    payload: Payload = field(default_factory=dict)
    vector: Optional[List[float]] = None


class VectorStoreError(Exception):
    """Base exception for vector store operations.

    Parameters
    - message: Human readable description
    - operation: Contract operation that failed (``insert``, ``search``...)
    - cause: Underlying exception (vendor SDK error, decode error, ...)
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        cause: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.cause = cause


class VectorStoreConnectionError(VectorStoreError):
    """Connection to the backend could not be established."""

    def __init__(
        self,
        message: str,
        backend_type: Optional[str] = None,
        cause: Optional[BaseException] = None
    ):
        super().__init__(message, operation="connect", cause=cause)
        self.backend_type = backend_type


class VectorDimensionError(VectorStoreError):
    """Vector length does not match the collection dimension."""

    def __init__(self, expected: int, actual: int, operation: Optional[str] = None):
        super().__init__(
            f"Vector dimension mismatch: expected {expected}, got {actual}",
            operation=operation,
        )
        self.expected = expected
        self.actual = actual


class CollectionNotFoundError(VectorStoreError):
    """The remote collection backing a store does not exist."""

    def __init__(
        self,
        collection_name: str,
        operation: Optional[str] = None,
        cause: Optional[BaseException] = None
    ):
        super().__init__(f"Collection not found: {collection_name}", operation=operation, cause=cause)
        self.collection_name = collection_name


class PayloadDecodeError(VectorStoreError):
    """Stored metadata could not be decoded back into a payload."""


class VectorStore(ABC):
    """Abstract base class for vector stores.

    Implementations guarantee upsert semantics on ``insert``, full replace on
    ``update``, scores where higher is more similar, and that every operation
    raises ``VectorStoreError`` until ``connect()`` has succeeded.

    Subclasses set ``backend_type`` and receive their validated backend
    configuration (see ``agentmem.vector_store.config``).
    """

    backend_type: str = "abstract"

    def __init__(self, config: Any, metrics: Any = None):
        self.config = config
        self.metrics = metrics
        self._connected = False

    @property
    def collection_name(self) -> str:
        return self.config.collection_name

    @property
    def dimension(self) -> int:
        return self.config.dimension

    @property
    def distance(self) -> str:
        return self.config.distance

    def is_connected(self) -> bool:
        """Whether ``connect()`` succeeded and ``disconnect()`` was not called since."""
        return self._connected

    @abstractmethod
    async def connect(self) -> None:
        """Open the backend connection and ensure the collection exists.

        Idempotent. Raises ``VectorStoreConnectionError`` once retries are
        exhausted or when the existing collection has another dimension.
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the backend connection. Idempotent."""
        pass

    @abstractmethod
    async def insert(
        self,
        vectors: Sequence[Sequence[float]],
        ids: Sequence[RecordId],
        payloads: Sequence[Payload]
    ) -> None:
        """Upsert records; the three sequences must have equal length."""
        pass

    @abstractmethod
    async def search(
        self,
        query: Sequence[float],
        limit: int = DEFAULT_SEARCH_LIMIT,
        filters: Optional[SearchFilters] = None
    ) -> List[VectorStoreResult]:
        """Search for similar vectors.

        Returns
        - At most ``limit`` results sorted by descending score
        """
        pass

    @abstractmethod
    async def get(self, id: RecordId) -> Optional[VectorStoreResult]:
        """Get a record with its vector, or ``None`` when absent."""
        pass

    @abstractmethod
    async def update(self, id: RecordId, vector: Sequence[float], payload: Payload) -> None:
        """Replace vector and payload of a record (never merges)."""
        pass

    @abstractmethod
    async def delete(self, id: RecordId) -> None:
        """Delete a record. Deleting a missing id is a no-op."""
        pass

    @abstractmethod
    async def delete_collection(self) -> None:
        """Drop the whole collection including its remote schema."""
        pass

    @abstractmethod
    async def list(
        self,
        filters: Optional[SearchFilters] = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> Tuple[List[VectorStoreResult], int]:
        """List records matching ``filters``.

        Returns
        - ``(results, total_count)`` where ``total_count`` ignores ``limit``
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the vector store is reachable. Never raises."""
        pass

    def _require_connected(self, operation: str) -> None:
        if not self._connected:
            raise VectorStoreError(
                f"{self.backend_type} store '{self.collection_name}' is not connected",
                operation=operation,
            )

    def _wrap_error(self, operation: str, error: Exception) -> VectorStoreError:
        """Convert a vendor exception into the store error taxonomy."""
        if isinstance(error, VectorStoreError):
            return error
        logger.error(
            "Vector store operation failed",
            backend=self.backend_type,
            collection=self.collection_name,
            operation=operation,
            error=str(error)
        )
        return VectorStoreError(
            f"{self.backend_type} {operation} failed: {error}",
            operation=operation,
            cause=error,
        )

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(collection={self.collection_name!r}, "
            f"dimension={self.dimension}, connected={self._connected})"
        )
