"""Typed backend configuration.

One pydantic model per backend, joined into ``BackendConfig``, a union
discriminated by ``type``. Adapters receive an already validated model;
``parse_backend_config`` is the single entry point for raw mappings.

Example
>>> parse_backend_config({"type": "qdrant", "collection_name": "notes", "dimension": 768})
QdrantConfig(collection_name='notes', dimension=768, ...)
"""

import re
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from .base import DEFAULT_DIMENSION, VectorStoreError

DistanceMetric = Literal["cosine", "euclidean", "dot"]

DEFAULT_QDRANT_PORT = 6333
DEFAULT_CHROMA_PORT = 8000
DEFAULT_MILVUS_PORT = 19530
DEFAULT_MAX_VECTORS = 10000

_SQL_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


class BackendSettings(BaseModel):
    """Fields shared by every backend."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    collection_name: str = Field(min_length=1)
    dimension: int = Field(default=DEFAULT_DIMENSION, gt=0)
    distance: DistanceMetric = "cosine"
    use_pool: bool = True
    timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)


class InMemoryConfig(BackendSettings):
    type: Literal["in-memory"] = "in-memory"
    max_vectors: int = Field(default=DEFAULT_MAX_VECTORS, gt=0)


class QdrantConfig(BackendSettings):
    type: Literal["qdrant"] = "qdrant"
    url: Optional[str] = None
    host: str = "localhost"
    port: int = DEFAULT_QDRANT_PORT
    api_key: Optional[str] = None
    https: bool = False
    prefer_grpc: bool = False


class ChromaConfig(BackendSettings):
    type: Literal["chroma"] = "chroma"
    host: str = "localhost"
    port: int = DEFAULT_CHROMA_PORT
    ssl: bool = False
    headers: Optional[Dict[str, str]] = None


class MilvusConfig(BackendSettings):
    type: Literal["milvus"] = "milvus"
    uri: Optional[str] = None
    host: str = "localhost"
    port: int = DEFAULT_MILVUS_PORT
    secure: bool = False
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    db_name: Optional[str] = None

    def resolved_uri(self) -> str:
        if self.uri:
            return self.uri
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.host}:{self.port}"


class PgVectorConfig(BackendSettings):
    type: Literal["pgvector"] = "pgvector"
    dsn: str = Field(min_length=1)
    pool_size: int = Field(default=10, gt=0)
    max_queries: int = Field(default=50000, gt=0)
    command_timeout: float = Field(default=60, gt=0)

    @field_validator("collection_name")
    @classmethod
    def _table_name(cls, value: str) -> str:
        if not _SQL_IDENTIFIER.match(value):
            raise ValueError("collection_name must be a valid SQL identifier for pgvector")
        return value


class PineconeConfig(BackendSettings):
    type: Literal["pinecone"] = "pinecone"
    api_key: str = Field(min_length=1)
    cloud: str = "aws"
    region: str = "us-east-1"
    namespace: str = ""


class OpenSearchConfig(BackendSettings):
    type: Literal["opensearch"] = "opensearch"
    hosts: List[str] = Field(default_factory=lambda: ["http://localhost:9200"], min_length=1)
    username: Optional[str] = None
    password: Optional[str] = None
    verify_certs: bool = False
    ssl_assert_hostname: bool = False
    ssl_show_warn: bool = False


BackendConfig = Annotated[
    Union[
        InMemoryConfig,
        QdrantConfig,
        ChromaConfig,
        MilvusConfig,
        PgVectorConfig,
        PineconeConfig,
        OpenSearchConfig,
    ],
    Field(discriminator="type"),
]

_backend_config_adapter = TypeAdapter(BackendConfig)


def parse_backend_config(raw: Union[Mapping[str, Any], BackendSettings]) -> BackendSettings:
    """Validate a raw mapping into the matching backend config model.

    Raises ``VectorStoreError`` (``operation="configure"``) on invalid input.
    """
    if isinstance(raw, BackendSettings):
        return raw
    try:
        return _backend_config_adapter.validate_python(dict(raw))
    except ValidationError as e:
        raise VectorStoreError(f"Invalid vector store configuration: {e}", operation="configure", cause=e) from e
