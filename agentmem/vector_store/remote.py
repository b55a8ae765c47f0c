"""Shared plumbing for adapters talking to a networked vector database.

``RemoteVectorStore`` owns the parts every networked adapter needs:

- client lifecycle through an injected ``ConnectionPool`` (or a private client
  when pooling is disabled or no pool is given)
- ``connect()`` with per-attempt timeout and exponential backoff, surfacing
  ``VectorStoreConnectionError`` once retries are exhausted; ``connect()`` and
  ``disconnect()`` are serialized so overlapping calls take one pool reference
- the payload codec and filter translator, including the fallback signal
- skipping records whose payload fails to decode during ``search``/``list``
- mapping "collection does not exist" errors to ``CollectionNotFoundError``

Subclasses implement ``_connection_key``, ``_create_client`` and
``_ensure_collection`` plus the data operations.
"""

import asyncio
import functools
import inspect
from abc import abstractmethod
from typing import Any, Callable, Dict, Optional

import structlog

from ..common.retry import RetryConfig, RetryHandler
from .base import (
    CollectionNotFoundError,
    Payload,
    PayloadDecodeError,
    RecordId,
    SearchFilters,
    VectorStore,
    VectorStoreConnectionError,
    VectorStoreError,
)
from .codec import IdentityCodec, PayloadCodec
from .filters import FilterTranslator, TranslatedFilter
from .pool import ConnectionKey, ConnectionPool, close_client

logger = structlog.get_logger("vector_store.remote")

ClientFactory = Callable[[Any], Any]


class RemoteVectorStore(VectorStore):
    """Base class for networked adapters.

    Parameters
    - config: Validated backend config model
    - pool: Shared ``ConnectionPool``; ignored when ``config.use_pool`` is false
    - codec: Payload codec override (defaults to ``default_codec()``)
    - client_factory: Builds the vendor client from the config instead of
      ``_create_client`` (custom SDK setup, test doubles)
    - metrics: Optional ``MetricsCollector``
    """

    def __init__(
        self,
        config: Any,
        pool: Optional[ConnectionPool] = None,
        codec: Optional[PayloadCodec] = None,
        client_factory: Optional[ClientFactory] = None,
        metrics: Any = None
    ):
        super().__init__(config, metrics=metrics)
        self.pool = pool if config.use_pool else None
        self.codec = codec or self.default_codec()
        self.translator = self.default_translator()
        self._client_factory = client_factory
        self._client: Any = None
        self._pool_key: Optional[ConnectionKey] = None
        self._lifecycle_lock = asyncio.Lock()
        self._retry = RetryHandler(RetryConfig(
            max_attempts=config.max_retries,
            base_delay=config.retry_base_delay,
            max_delay=30.0,
            min_delay=0.0,
            retryable_exceptions=(Exception,),
            give_up_exceptions=(VectorStoreError,),
        ))

    def default_codec(self) -> PayloadCodec:
        return IdentityCodec()

    @abstractmethod
    def default_translator(self) -> FilterTranslator:
        pass

    @abstractmethod
    def _connection_key(self) -> ConnectionKey:
        """Key identifying the server, independent of collection and dimension."""
        pass

    @abstractmethod
    def _create_client(self) -> Any:
        """Build the vendor client (sync or async)."""
        pass

    @abstractmethod
    async def _ensure_collection(self, client: Any) -> None:
        """Create the collection, or verify the dimension of an existing one.

        Raise ``VectorStoreConnectionError`` on a dimension mismatch.
        """
        pass

    @property
    def client(self) -> Any:
        if self._client is None:
            raise VectorStoreError(f"{self.backend_type} client is not connected", operation="client")
        return self._client

    async def connect(self) -> None:
        async with self._lifecycle_lock:
            if self._connected:
                return

            try:
                await self._retry.execute_with_retry(
                    self._open,
                    operation_name=f"{self.backend_type}.connect",
                    timeout=self.config.timeout,
                )
            except VectorStoreError:
                raise
            except Exception as e:
                raise VectorStoreConnectionError(
                    f"Failed to connect to {self.backend_type} after {self.config.max_retries} attempt(s): "
                    f"{str(e) or type(e).__name__}",
                    backend_type=self.backend_type,
                    cause=e,
                ) from e

            self._connected = True
        logger.info(
            "Vector store connected",
            backend=self.backend_type,
            collection=self.collection_name,
            dimension=self.dimension,
            pooled=self._pool_key is not None
        )

    async def disconnect(self) -> None:
        async with self._lifecycle_lock:
            if not self._connected:
                return
            self._connected = False
            await self._release_client()
        logger.info("Vector store disconnected", backend=self.backend_type, collection=self.collection_name)

    async def health_check(self) -> bool:
        if not self._connected:
            return False
        try:
            return bool(await self._ping(self._client))
        except Exception as e:
            logger.error(
                "Health check failed",
                backend=self.backend_type,
                collection=self.collection_name,
                error=str(e)
            )
            return False

    async def _ping(self, client: Any) -> bool:
        """Server-level liveness probe; also run by the pool's maintenance task."""
        return True

    async def _open(self) -> None:
        client = await self._acquire_client()
        try:
            await self._ensure_collection(client)
        except BaseException:
            await self._release_client()
            raise

    async def _acquire_client(self) -> Any:
        if self.pool is not None:
            key = self._connection_key()
            self._client = await self.pool.acquire(key, self._build_client, probe=self._ping)
            self._pool_key = key
        else:
            self._client = await self._build_client()
        return self._client

    async def _build_client(self) -> Any:
        if self._client_factory is not None:
            client = self._client_factory(self.config)
        else:
            client = self._create_client()
        if inspect.isawaitable(client):
            client = await client
        return client

    async def _release_client(self) -> None:
        client, self._client = self._client, None
        if self._pool_key is not None:
            key, self._pool_key = self._pool_key, None
            await self.pool.release(key)
        elif client is not None:
            await close_client(client)

    async def _run_sync(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        """Run a blocking SDK call off the event loop."""
        return await asyncio.to_thread(functools.partial(func, *args, **kwargs))

    def _translate(self, filters: Optional[SearchFilters], translator: Optional[FilterTranslator] = None) -> TranslatedFilter:
        translated = (translator or self.translator).translate(
            filters,
            key_for=self.codec.field_key,
            member_key=self.codec.member_key,
        )
        if translated.used_fallback and self.metrics is not None:
            self.metrics.record_filter_fallback(self.backend_type)
        return translated

    def _encode(self, payload: Payload) -> Dict[str, Any]:
        return self.codec.encode(payload)

    def _decode_or_skip(
        self,
        record_id: RecordId,
        metadata: Any,
        operation: str,
        load: Optional[Callable[[Any], Optional[Dict[str, Any]]]] = None
    ) -> Optional[Payload]:
        """Decode stored metadata; ``None`` (logged) when it cannot be decoded.

        ``load`` turns the raw stored value into a metadata mapping first and
        may raise ``PayloadDecodeError`` itself.
        """
        try:
            if load is not None:
                metadata = load(metadata)
            return self.codec.decode(metadata)
        except PayloadDecodeError as e:
            logger.warning(
                "Skipping record with undecodable payload",
                backend=self.backend_type,
                collection=self.collection_name,
                operation=operation,
                id=record_id,
                error=str(e)
            )
            if self.metrics is not None:
                self.metrics.record_decode_failure(self.backend_type)
            return None

    def _is_missing_collection(self, error: Exception) -> bool:
        """Whether ``error`` reports that the collection no longer exists."""
        return False

    def _wrap_error(self, operation: str, error: Exception) -> VectorStoreError:
        if not isinstance(error, VectorStoreError) and self._is_missing_collection(error):
            logger.error(
                "Collection missing on backend",
                backend=self.backend_type,
                collection=self.collection_name,
                operation=operation
            )
            return CollectionNotFoundError(self.collection_name, operation=operation, cause=error)
        return super()._wrap_error(operation, error)
