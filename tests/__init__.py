"""Tests for the agent memory storage layer.

Everything here runs without external services: the embedded store, the
Qdrant local-mode client, and the in-process SDK fakes in ``fakes``.
Extend with integration tests where real backends are available.
"""
