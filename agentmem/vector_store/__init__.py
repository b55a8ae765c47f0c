"""Vector store adapters and utilities.

Primary components:
- ``base``: abstract ``VectorStore`` interface and common exceptions.
- ``config``: typed per-backend configuration models.
- ``codec`` / ``filters``: payload encoding and filter translation per backend.
- ``pool``: connection sharing between adapters pointed at the same server.
- ``memory``: embedded in-process implementation.
- ``qdrant``, ``chroma``, ``milvus``, ``pgvector``, ``pinecone``,
  ``opensearch``: networked implementations.
- ``manager``: routing of knowledge/reflection/workspace memory to stores.
- ``factory``: helpers to construct stores from typed config, settings or env.

Guidance:
- Prefer constructing via ``factory.create_collection_manager`` or
  ``factory.create_vector_store`` so agent code remains decoupled from
  specific backends.
"""

from .base import (
    CollectionNotFoundError,
    PayloadDecodeError,
    RecordId,
    VectorDimensionError,
    VectorStore,
    VectorStoreConnectionError,
    VectorStoreError,
    VectorStoreResult,
)
from .config import BackendConfig, parse_backend_config
from .factory import (
    VectorStoreFactory,
    VectorStoreType,
    build_backend_config,
    collection_manager_lifespan,
    create_collection_manager,
    create_default_vector_store,
    create_vector_store,
    create_vector_store_from_env,
    create_vector_store_from_settings,
)
from .manager import CollectionManager, MemoryType
from .memory import InMemoryVectorStore
from .pool import ConnectionPool

__all__ = [
    "BackendConfig",
    "CollectionManager",
    "CollectionNotFoundError",
    "ConnectionPool",
    "InMemoryVectorStore",
    "MemoryType",
    "PayloadDecodeError",
    "RecordId",
    "VectorDimensionError",
    "VectorStore",
    "VectorStoreConnectionError",
    "VectorStoreError",
    "VectorStoreFactory",
    "VectorStoreResult",
    "VectorStoreType",
    "build_backend_config",
    "collection_manager_lifespan",
    "create_collection_manager",
    "create_default_vector_store",
    "create_vector_store",
    "create_vector_store_from_env",
    "create_vector_store_from_settings",
    "parse_backend_config",
]
