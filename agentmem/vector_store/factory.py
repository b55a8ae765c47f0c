"""Vector store factory for creating different implementations.

Centralizes creation of concrete ``VectorStore`` backends so callers don't
depend on implementation details. New stores can be added without changing
call sites.

Entry points
- ``VectorStoreFactory.create``: typed config (or raw mapping) to an
  unconnected store
- ``create_vector_store``: create and connect, optionally degrading to the
  in-memory store when the backend is unreachable
- ``create_collection_manager``: one store per memory type from
  ``VectorStoreSettings``
- ``create_vector_store_from_env``: flat ``AGENTMEM_*`` mapping to a store
- ``collection_manager_lifespan``: configure logging from settings and hold a
  connected manager for the life of an application
"""

from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple, Type, Union

import structlog

from ..common.config import ENV_PREFIX, VectorStoreSettings, load_settings
from ..common.logging import configure_logging
from ..common.metrics import MetricsCollector
from .base import DEFAULT_DIMENSION, VectorStore, VectorStoreError
from .chroma import ChromaVectorStore
from .codec import PayloadCodec
from .config import BackendSettings, InMemoryConfig, parse_backend_config
from .manager import CollectionManager, MemoryType, parse_memory_type
from .memory import InMemoryVectorStore
from .milvus import MilvusVectorStore
from .opensearch import OpenSearchVectorStore
from .pgvector import PgVectorStore
from .pinecone import PineconeVectorStore
from .pool import ConnectionPool
from .qdrant import QdrantVectorStore
from .remote import ClientFactory, RemoteVectorStore

logger = structlog.get_logger("vector_store.factory")

BackendConfigInput = Union[BackendSettings, Mapping[str, Any]]


class VectorStoreType(Enum):
    """Supported vector store types."""
    IN_MEMORY = "in-memory"
    QDRANT = "qdrant"
    CHROMA = "chroma"
    MILVUS = "milvus"
    PGVECTOR = "pgvector"
    PINECONE = "pinecone"
    OPENSEARCH = "opensearch"


_REMOTE_STORES: Dict[VectorStoreType, Type[RemoteVectorStore]] = {
    VectorStoreType.QDRANT: QdrantVectorStore,
    VectorStoreType.CHROMA: ChromaVectorStore,
    VectorStoreType.MILVUS: MilvusVectorStore,
    VectorStoreType.PGVECTOR: PgVectorStore,
    VectorStoreType.PINECONE: PineconeVectorStore,
    VectorStoreType.OPENSEARCH: OpenSearchVectorStore,
}


class VectorStoreFactory:
    """Factory for creating vector store instances."""

    @staticmethod
    def create(
        config: BackendConfigInput,
        pool: Optional[ConnectionPool] = None,
        codec: Optional[PayloadCodec] = None,
        metrics: Optional[MetricsCollector] = None,
        client_factory: Optional[ClientFactory] = None
    ) -> VectorStore:
        """Create an unconnected vector store.

        Parameters
        - config: Backend config model, or a raw mapping with a ``type`` key
        - pool: Shared connection pool for the networked backends
        - codec: Payload codec override for the networked backends
        - metrics: Optional ``MetricsCollector``
        - client_factory: Builds the vendor client instead of the SDK default
        """
        config = parse_backend_config(config)
        store_type = VectorStoreType(config.type)

        if store_type == VectorStoreType.IN_MEMORY:
            return InMemoryVectorStore(config, metrics=metrics)

        store_class = _REMOTE_STORES[store_type]
        return store_class(
            config,
            pool=pool,
            codec=codec,
            client_factory=client_factory,
            metrics=metrics,
        )

    @staticmethod
    def create_from_config(config: Mapping[str, Any], **kwargs: Any) -> VectorStore:
        """Create vector store from configuration dictionary.

        Expects a ``type`` key and any implementation-specific fields.
        """
        store_type = config.get("type")
        try:
            VectorStoreType(store_type)
        except ValueError:
            raise VectorStoreError(f"Unsupported vector store type: {store_type}", operation="configure") from None
        return VectorStoreFactory.create(config, **kwargs)


def _memory_config_like(config: BackendSettings) -> InMemoryConfig:
    return InMemoryConfig(
        collection_name=config.collection_name,
        dimension=config.dimension,
        distance=config.distance,
    )


async def create_vector_store(
    config: BackendConfigInput,
    pool: Optional[ConnectionPool] = None,
    fallback_to_memory: bool = False,
    metrics: Optional[MetricsCollector] = None,
    codec: Optional[PayloadCodec] = None,
    client_factory: Optional[ClientFactory] = None
) -> VectorStore:
    """Create and connect a vector store.

    With ``fallback_to_memory`` a backend that cannot be connected is
    replaced by a connected ``InMemoryVectorStore`` with the same collection
    name, dimension and distance. Configuration errors are always raised.
    """
    config = parse_backend_config(config)
    store = VectorStoreFactory.create(config, pool=pool, codec=codec, metrics=metrics, client_factory=client_factory)
    try:
        await store.connect()
    except VectorStoreError as e:
        if not fallback_to_memory or isinstance(store, InMemoryVectorStore):
            raise
        logger.warning(
            "Vector store unreachable, falling back to in-memory store",
            backend=config.type,
            collection=config.collection_name,
            error=str(e)
        )
        store = InMemoryVectorStore(_memory_config_like(config), metrics=metrics)
        await store.connect()
    return store


async def create_default_vector_store(
    collection_name: str = "knowledge_memory",
    dimension: int = DEFAULT_DIMENSION
) -> VectorStore:
    """Create a connected in-memory store, for development and tests."""
    return await create_vector_store(InMemoryConfig(collection_name=collection_name, dimension=dimension))


def _backend_for(settings: VectorStoreSettings, memory_type: MemoryType) -> Tuple[str, str]:
    if memory_type == MemoryType.REFLECTION:
        return settings.reflection_backend or settings.vector_backend, settings.reflection_collection
    if memory_type == MemoryType.WORKSPACE:
        return settings.workspace_backend or settings.vector_backend, settings.workspace_collection
    return settings.vector_backend, settings.knowledge_collection


def build_backend_config(
    settings: VectorStoreSettings,
    memory_type: Union[MemoryType, str] = MemoryType.KNOWLEDGE
) -> BackendSettings:
    """Map flat settings onto the typed config of one memory type's store.

    Unset settings are left out so the backend model's defaults apply.
    """
    memory_type = parse_memory_type(memory_type)
    backend, collection_name = _backend_for(settings, memory_type)

    raw: Dict[str, Any] = {
        "type": backend,
        "collection_name": collection_name,
        "dimension": settings.vector_dimension,
        "distance": settings.vector_distance,
        "use_pool": settings.vector_use_pool,
        "timeout": settings.vector_timeout,
        "max_retries": settings.vector_max_retries,
        "retry_base_delay": settings.vector_retry_delay,
    }

    if backend == VectorStoreType.IN_MEMORY.value:
        raw["max_vectors"] = settings.vector_max_vectors
    elif backend == VectorStoreType.QDRANT.value:
        raw.update(
            url=settings.vector_url,
            host=settings.vector_host,
            port=settings.vector_port,
            api_key=settings.vector_api_key,
            https=settings.vector_ssl,
        )
    elif backend == VectorStoreType.CHROMA.value:
        raw.update(
            host=settings.vector_host,
            port=settings.vector_port,
            ssl=settings.vector_ssl,
            headers={"Authorization": f"Bearer {settings.vector_api_key}"} if settings.vector_api_key else None,
        )
    elif backend == VectorStoreType.MILVUS.value:
        raw.update(
            uri=settings.vector_url,
            host=settings.vector_host,
            port=settings.vector_port,
            secure=settings.vector_ssl,
            username=settings.vector_username,
            password=settings.vector_password,
            token=settings.vector_api_key,
            db_name=settings.vector_database,
        )
    elif backend == VectorStoreType.PGVECTOR.value:
        raw["dsn"] = settings.vector_dsn
    elif backend == VectorStoreType.PINECONE.value:
        raw.update(
            api_key=settings.vector_api_key,
            cloud=settings.pinecone_cloud,
            region=settings.pinecone_region,
            namespace=settings.pinecone_namespace,
        )
    elif backend == VectorStoreType.OPENSEARCH.value:
        raw.update(
            hosts=settings.opensearch_host_list(),
            username=settings.vector_username,
            password=settings.vector_password,
            verify_certs=settings.opensearch_verify_certs,
        )
    else:
        raise VectorStoreError(f"Unsupported vector backend: {backend}", operation="configure")

    return parse_backend_config({key: value for key, value in raw.items() if value is not None})


def _enabled_memory_types(settings: VectorStoreSettings) -> List[MemoryType]:
    memory_types = [MemoryType.KNOWLEDGE]
    if settings.reflection_enabled:
        memory_types.append(MemoryType.REFLECTION)
    if settings.workspace_enabled:
        memory_types.append(MemoryType.WORKSPACE)
    return memory_types


def create_pool(settings: VectorStoreSettings, metrics: Optional[MetricsCollector] = None) -> Optional[ConnectionPool]:
    if not settings.vector_use_pool:
        return None
    return ConnectionPool(
        max_connections=settings.pool_max_connections,
        idle_ttl=settings.pool_idle_ttl,
        health_check_interval=settings.pool_health_check_interval,
        metrics=metrics,
    )


def create_collection_manager(
    settings: Optional[VectorStoreSettings] = None,
    pool: Optional[ConnectionPool] = None,
    metrics: Optional[MetricsCollector] = None,
    client_factory: Optional[ClientFactory] = None
) -> CollectionManager:
    """Build an unconnected ``CollectionManager`` from settings.

    Memory types whose configs are identical share a single store. A pool is
    created from the settings when none is given and pooling is enabled; the
    manager owns that pool and shuts it down on ``disconnect()``. A pool passed
    in stays the caller's.
    """
    settings = settings or load_settings()
    owned_pool = None
    if pool is None:
        pool = owned_pool = create_pool(settings, metrics=metrics)

    built: List[Tuple[BackendSettings, VectorStore]] = []
    stores: Dict[MemoryType, VectorStore] = {}
    for memory_type in _enabled_memory_types(settings):
        config = build_backend_config(settings, memory_type)
        store = next((existing for existing_config, existing in built if existing_config == config), None)
        if store is None:
            store = VectorStoreFactory.create(config, pool=pool, metrics=metrics, client_factory=client_factory)
            built.append((config, store))
        stores[memory_type] = store

    logger.info(
        "Collection manager created",
        memory_types=[memory_type.value for memory_type in stores],
        stores=len(built),
        pooled=pool is not None
    )
    return CollectionManager(stores, fallback=settings.fallback_memory_type, pool=owned_pool)


@asynccontextmanager
async def collection_manager_lifespan(
    settings: Optional[VectorStoreSettings] = None,
    service_name: str = "agentmem",
    metrics: Optional[MetricsCollector] = None,
    client_factory: Optional[ClientFactory] = None
) -> AsyncIterator[CollectionManager]:
    """Configure logging from settings and yield a connected ``CollectionManager``.

    Intended for an application's startup/shutdown hook. The manager and the
    pool it owns are closed on exit.
    """
    settings = settings or load_settings()
    configure_logging(service_name, settings.log_level, settings.log_format, env=settings.env)
    logger.info("Starting vector storage", service=service_name, env=settings.env, backend=settings.vector_backend)

    manager = create_collection_manager(settings, metrics=metrics, client_factory=client_factory)
    try:
        await manager.connect()
    except Exception:
        if manager.pool is not None:
            await manager.pool.shutdown()
        raise
    try:
        yield manager
    finally:
        await manager.disconnect()
        logger.info("Vector storage stopped", service=service_name)


async def create_vector_store_from_settings(
    settings: Optional[VectorStoreSettings] = None,
    memory_type: Union[MemoryType, str] = MemoryType.KNOWLEDGE,
    pool: Optional[ConnectionPool] = None,
    metrics: Optional[MetricsCollector] = None
) -> VectorStore:
    """Create and connect the store of one memory type.

    Honors ``settings.fallback_to_memory``.
    """
    settings = settings or load_settings()
    config = build_backend_config(settings, memory_type)
    if pool is None:
        pool = create_pool(settings, metrics=metrics)
    return await create_vector_store(
        config,
        pool=pool,
        fallback_to_memory=settings.fallback_to_memory,
        metrics=metrics,
    )


def create_vector_store_from_env(env_config: Mapping[str, str]) -> VectorStore:
    """Create vector store from environment configuration.

    Parameters
    - env_config: A flat mapping of environment variable names to values;
      only ``AGENTMEM_*`` keys are read

    Returns
    - An unconnected ``VectorStore`` for the knowledge memory type
    """
    overrides = {
        key[len(ENV_PREFIX):].lower(): value
        for key, value in env_config.items()
        if key.upper().startswith(ENV_PREFIX)
    }
    settings = load_settings(**overrides)
    return VectorStoreFactory.create(build_backend_config(settings, MemoryType.KNOWLEDGE))
