"""Vector storage layer for agent memory.

Subpackages:
- ``agentmem.common``: configuration, logging, metrics, and retry helpers.
- ``agentmem.vector_store``: the ``VectorStore`` contract, payload codec,
  filter translation, connection pooling, and concrete backends.

Usage:
- Build stores through ``agentmem.vector_store.factory`` so callers stay
  independent of the deployed vector database.
"""

__version__ = "0.4.0"
