"""Common utilities shared by the storage layer.

Includes:
- ``config``: pydantic-settings configuration read from the environment.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics helpers and the ``track_operation`` decorator.
- ``retry``: exponential backoff for connection attempts.

Import pattern:
- from agentmem.common.config import VectorStoreSettings
- from agentmem.common.logging import configure_logging
"""
