"""Routing of memory types to vector stores.

The agent keeps three kinds of memory: ``knowledge`` (always present),
``reflection`` and ``workspace`` (optional). Each maps to a ``VectorStore``;
several memory types may share one store, and distinct stores may live on
different backends. Callers ask for a memory type and never see the layout.
"""

import asyncio
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog

from .base import VectorStore, VectorStoreError
from .pool import ConnectionPool

logger = structlog.get_logger("vector_store.manager")


class MemoryType(Enum):
    """Memory types the agent stores vectors for."""
    KNOWLEDGE = "knowledge"
    REFLECTION = "reflection"
    WORKSPACE = "workspace"


def parse_memory_type(value: Union[MemoryType, str]) -> MemoryType:
    """Resolve an enum member or its string tag; unknown tags raise ``VectorStoreError``."""
    if isinstance(value, MemoryType):
        return value
    try:
        return MemoryType(str(value).strip().lower())
    except ValueError:
        raise VectorStoreError(f"Unknown memory type: {value!r}", operation="get_store") from None


class CollectionManager:
    """Route memory types to their configured stores.

    Parameters
    - stores: Mapping of memory type to store; ``knowledge`` is mandatory
    - fallback: Memory type served when an unknown or unavailable type is
      requested. Without it such requests raise ``VectorStoreError``.
    - pool: Connection pool the manager owns; shut down by ``disconnect()``
    """

    def __init__(
        self,
        stores: Mapping[Union[MemoryType, str], VectorStore],
        fallback: Optional[Union[MemoryType, str]] = None,
        pool: Optional[ConnectionPool] = None
    ):
        self._stores: Dict[MemoryType, VectorStore] = {
            parse_memory_type(memory_type): store for memory_type, store in stores.items()
        }
        if MemoryType.KNOWLEDGE not in self._stores:
            raise VectorStoreError("A knowledge store is required", operation="configure")

        self.fallback = parse_memory_type(fallback) if fallback is not None else None
        if self.fallback is not None and self.fallback not in self._stores:
            raise VectorStoreError(
                f"Fallback memory type '{self.fallback.value}' has no configured store",
                operation="configure",
            )
        self._unavailable: Dict[MemoryType, str] = {}
        self.pool = pool

    @property
    def memory_types(self) -> List[MemoryType]:
        return list(self._stores)

    def _distinct_stores(self) -> List[VectorStore]:
        seen: Dict[int, VectorStore] = {}
        for store in self._stores.values():
            seen.setdefault(id(store), store)
        return list(seen.values())

    def _types_for(self, store: VectorStore) -> List[MemoryType]:
        return [memory_type for memory_type, candidate in self._stores.items() if candidate is store]

    async def connect(self) -> None:
        """Connect every distinct store concurrently.

        A knowledge store failure is raised after the stores that did connect
        are disconnected again. A failing optional store is logged and its
        memory types are marked unavailable.
        """
        stores = self._distinct_stores()
        outcomes = await asyncio.gather(*(store.connect() for store in stores), return_exceptions=True)

        knowledge_error: Optional[BaseException] = None
        connected: List[VectorStore] = []
        for store, outcome in zip(stores, outcomes):
            memory_types = self._types_for(store)
            if not isinstance(outcome, BaseException):
                connected.append(store)
                for memory_type in memory_types:
                    self._unavailable.pop(memory_type, None)
                continue

            if MemoryType.KNOWLEDGE in memory_types:
                knowledge_error = outcome
                continue
            for memory_type in memory_types:
                self._unavailable[memory_type] = str(outcome)
            logger.warning(
                "Optional memory store unavailable",
                memory_types=[memory_type.value for memory_type in memory_types],
                backend=store.backend_type,
                collection=store.collection_name,
                error=str(outcome)
            )

        if knowledge_error is not None:
            logger.error("Knowledge store failed to connect", error=str(knowledge_error))
            await self._disconnect_stores(connected)
            raise knowledge_error

        logger.info(
            "Collection manager connected",
            memory_types=[memory_type.value for memory_type in self._stores],
            unavailable=[memory_type.value for memory_type in self._unavailable]
        )

    def is_available(self, memory_type: Union[MemoryType, str]) -> bool:
        resolved = parse_memory_type(memory_type)
        return resolved in self._stores and resolved not in self._unavailable

    def get_store(self, memory_type: Union[MemoryType, str]) -> VectorStore:
        """Return the store serving ``memory_type``.

        Unknown tags, types without a store and types whose store failed to
        connect raise ``VectorStoreError`` unless a fallback is configured.
        """
        try:
            resolved = parse_memory_type(memory_type)
        except VectorStoreError:
            if self.fallback is None:
                raise
            resolved = None

        if resolved is not None and self.is_available(resolved):
            return self._stores[resolved]

        if self.fallback is None:
            if resolved in self._unavailable:
                raise VectorStoreError(
                    f"Memory store '{resolved.value}' is unavailable: {self._unavailable[resolved]}",
                    operation="get_store",
                )
            raise VectorStoreError(f"No store configured for memory type '{resolved.value}'", operation="get_store")

        logger.warning(
            "Serving memory type from fallback store",
            requested=str(getattr(resolved, "value", memory_type)),
            fallback=self.fallback.value
        )
        return self._stores[self.fallback]

    def get_store_by_collection(self, collection_name: str) -> Optional[VectorStore]:
        for store in self._distinct_stores():
            if store.collection_name == collection_name:
                return store
        return None

    async def health_check(self) -> Dict[str, bool]:
        """Per memory type health plus ``overall``.

        ``overall`` requires every configured memory type to be healthy.
        """
        stores = self._distinct_stores()
        checks = await asyncio.gather(*(store.health_check() for store in stores))
        healthy_by_store = {id(store): healthy for store, healthy in zip(stores, checks)}

        health = {
            memory_type.value: bool(healthy_by_store[id(store)]) and memory_type not in self._unavailable
            for memory_type, store in self._stores.items()
        }
        health["overall"] = all(health.values())
        return health

    def get_info(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {}
        for memory_type, store in self._stores.items():
            info[memory_type.value] = {
                "backend": store.backend_type,
                "collection_name": store.collection_name,
                "dimension": store.dimension,
                "connected": store.is_connected(),
                "available": memory_type not in self._unavailable,
            }
        info["fallback"] = self.fallback.value if self.fallback is not None else None
        info["overall_connected"] = all(store.is_connected() for store in self._distinct_stores())
        return info

    async def disconnect(self) -> None:
        """Disconnect every distinct store and shut down an owned pool.

        Failures are logged, not raised.
        """
        await self._disconnect_stores(self._distinct_stores())
        if self.pool is not None:
            await self.pool.shutdown()
        logger.info("Collection manager disconnected")

    async def _disconnect_stores(self, stores: List[VectorStore]) -> None:
        outcomes = await asyncio.gather(*(store.disconnect() for store in stores), return_exceptions=True)
        for store, outcome in zip(stores, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "Failed to disconnect memory store",
                    backend=store.backend_type,
                    collection=store.collection_name,
                    error=str(outcome)
                )
