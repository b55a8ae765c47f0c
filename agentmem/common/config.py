"""Environment-driven configuration for the storage layer.

Builds on ``pydantic_settings.BaseSettings`` so the deployed backend, the
collection layout for each memory type, and connection tuning can come from
environment variables, a ``.env`` file, or defaults.

Every field is read from ``AGENTMEM_<FIELD_NAME>`` (case-insensitive), e.g.
``AGENTMEM_VECTOR_BACKEND=qdrant`` or ``AGENTMEM_WORKSPACE_ENABLED=true``.

Usage
- ``settings = VectorStoreSettings()`` in the process entrypoint
- ``agentmem.vector_store.factory.create_collection_manager(settings)``
"""

from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "AGENTMEM_"


class VectorStoreSettings(BaseSettings):
    """Settings for the vector stores backing each memory type.

    The knowledge store is always configured. Reflection and workspace stores
    are opt-in; when enabled without their own backend they reuse the
    knowledge backend's connection parameters with their own collection.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    # Backend selection
    vector_backend: str = Field(default="in-memory")
    vector_dimension: int = Field(default=1536, gt=0)
    vector_distance: str = Field(default="cosine")

    # Connection parameters shared by the networked backends
    vector_host: str = Field(default="localhost")
    vector_port: Optional[int] = Field(default=None)
    vector_url: Optional[str] = Field(default=None)
    vector_api_key: Optional[str] = Field(default=None)
    vector_username: Optional[str] = Field(default=None)
    vector_password: Optional[str] = Field(default=None)
    vector_ssl: bool = Field(default=False)
    vector_dsn: Optional[str] = Field(default=None)
    vector_database: Optional[str] = Field(default=None)

    # Backend specific knobs
    vector_max_vectors: int = Field(default=10000, gt=0)
    opensearch_hosts: str = Field(default="http://localhost:9200")
    opensearch_verify_certs: bool = Field(default=False)
    pinecone_cloud: str = Field(default="aws")
    pinecone_region: str = Field(default="us-east-1")
    pinecone_namespace: str = Field(default="")

    # Connection behaviour
    vector_use_pool: bool = Field(default=True)
    vector_timeout: float = Field(default=30.0, gt=0)
    vector_max_retries: int = Field(default=3, ge=1)
    vector_retry_delay: float = Field(default=1.0, ge=0)
    pool_max_connections: int = Field(default=10, gt=0)
    pool_idle_ttl: float = Field(default=300.0, gt=0)
    pool_health_check_interval: Optional[float] = Field(default=60.0, gt=0)

    # Collections per memory type
    knowledge_collection: str = Field(default="knowledge_memory")
    reflection_enabled: bool = Field(default=False)
    reflection_collection: str = Field(default="reflection_memory")
    reflection_backend: Optional[str] = Field(default=None)
    workspace_enabled: bool = Field(default=False)
    workspace_collection: str = Field(default="workspace_memory")
    workspace_backend: Optional[str] = Field(default=None)

    # Degradation
    fallback_to_memory: bool = Field(default=False)
    fallback_memory_type: Optional[str] = Field(default=None)

    @field_validator("vector_backend", "reflection_backend", "workspace_backend")
    @classmethod
    def _normalize_backend(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip().lower()
        # Accept the historical spelling used in older deployments
        return "in-memory" if value in ("memory", "inmemory", "in_memory") else value

    @field_validator("vector_distance")
    @classmethod
    def _normalize_distance(cls, value: str) -> str:
        return value.strip().lower()

    def opensearch_host_list(self) -> List[str]:
        """Split the comma separated ``opensearch_hosts`` setting."""
        return [host.strip() for host in self.opensearch_hosts.split(",") if host.strip()]


def load_settings(**overrides: object) -> VectorStoreSettings:
    """Load settings from the environment, letting keyword overrides win."""
    return VectorStoreSettings(**overrides)
