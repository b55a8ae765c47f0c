"""PgVector implementation of vector store.

This implementation stores vectors in PostgreSQL using the pgvector extension,
one table per collection:

    id TEXT PRIMARY KEY, vector vector(<dimension>), payload JSONB, seq BIGSERIAL

Distances use ``<=>`` (cosine), ``<->`` (euclidean) or ``<#>`` (negative inner
product) and are converted to similarity scores.

Connection management
- The asyncpg pool is the client shared through ``ConnectionPool``; every
  adapter pointed at the same DSN reuses it
- Queries are funneled through ``_execute_query`` for uniform error handling
"""

import json
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

import asyncpg
import numpy as np
import structlog
from asyncpg import Connection, Pool
from pgvector.asyncpg import register_vector

from ..common.metrics import track_operation
from .base import (
    DEFAULT_LIST_LIMIT,
    DEFAULT_SEARCH_LIMIT,
    Payload,
    PayloadDecodeError,
    RecordId,
    SearchFilters,
    VectorStoreConnectionError,
    VectorStoreResult,
)
from .config import PgVectorConfig
from .filters import PgVectorFilterTranslator, SqlFilter
from .pool import ConnectionKey, make_connection_key
from .remote import RemoteVectorStore
from .validation import (
    cosine_distance_to_score,
    ensure_batch,
    ensure_limit,
    ensure_vector,
    euclidean_distance_to_score,
    id_to_text,
    last_write_indices,
    normalize_id,
)

logger = structlog.get_logger("vector_store.pgvector")

DISTANCE_OPERATORS = {
    "cosine": "<=>",
    "euclidean": "<->",
    "dot": "<#>",
}


async def _init_connection(conn: Connection) -> None:
    """Register pgvector codec for asyncpg connections."""
    await register_vector(conn)


class PgVectorStore(RemoteVectorStore):
    """PgVector implementation of vector store."""

    backend_type = "pgvector"

    def default_translator(self) -> PgVectorFilterTranslator:
        return PgVectorFilterTranslator()

    @property
    def table(self) -> str:
        # collection_name is validated as a plain SQL identifier
        return f'"{self.config.collection_name}"'

    def _connection_key(self) -> ConnectionKey:
        config: PgVectorConfig = self.config
        parts = urlsplit(config.dsn)
        return make_connection_key(
            self.backend_type,
            parts.hostname or "localhost",
            parts.port or 5432,
            credentials=[config.dsn],
            tls="sslmode=require" in (parts.query or ""),
        )

    async def _create_client(self) -> Pool:
        """Create the asyncpg pool.

        Each new connection registers the pgvector codec.
        """
        config: PgVectorConfig = self.config
        # The vector type must exist before pooled connections register its codec
        conn = await asyncpg.connect(config.dsn, timeout=config.timeout)
        try:
            await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
        finally:
            await conn.close()

        pool = await asyncpg.create_pool(
            config.dsn,
            min_size=1,
            max_size=config.pool_size,
            max_queries=config.max_queries,
            command_timeout=config.command_timeout,
            init=_init_connection,
        )
        logger.info("Created PgVector connection pool", pool_size=config.pool_size)
        return pool

    async def _ensure_collection(self, client: Any) -> None:
        async with client.acquire() as conn:
            column_type = await conn.fetchval(
                """
                SELECT format_type(a.atttypid, a.atttypmod)
                FROM pg_attribute a
                WHERE a.attrelid = to_regclass($1) AND a.attname = 'vector' AND NOT a.attisdropped
                """,
                self.table,
            )
            if column_type is None:
                await conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self.table} (
                        id TEXT PRIMARY KEY,
                        vector vector({self.dimension}) NOT NULL,
                        payload JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                        seq BIGSERIAL,
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
                    )
                    """
                )
                logger.info("PgVector table created", table=self.collection_name, dimension=self.dimension)
                return

        expected = f"vector({self.dimension})"
        if column_type != expected:
            raise VectorStoreConnectionError(
                f"PgVector table '{self.collection_name}' has column type {column_type}, expected {expected}",
                backend_type=self.backend_type,
            )

    async def _ping(self, client: Any) -> bool:
        async with client.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return True

    async def _execute_query(
        self,
        query: str,
        *args: Any,
        fetch: bool = False,
        fetch_one: bool = False,
        many: bool = False
    ) -> Any:
        """Execute a query on a pooled connection.

        The ``fetch``/``fetch_one``/``many`` flags control how the statement is
        run; callers wrap failures into the store error taxonomy.
        """
        async with self.client.acquire() as conn:
            if many:
                return await conn.executemany(query, *args)
            if fetch_one:
                return await conn.fetchrow(query, *args)
            if fetch:
                return await conn.fetch(query, *args)
            return await conn.execute(query, *args)

    def _score(self, distance: float) -> float:
        if self.distance == "dot":
            # <#> returns the negative inner product
            return -float(distance)
        if self.distance == "euclidean":
            return euclidean_distance_to_score(distance)
        return cosine_distance_to_score(distance)

    def _upsert_sql(self) -> str:
        return f"""
            INSERT INTO {self.table} (id, vector, payload)
            VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (id)
            DO UPDATE SET
                vector = EXCLUDED.vector,
                payload = EXCLUDED.payload,
                updated_at = CURRENT_TIMESTAMP
        """

    def _row(self, record_id: str, vector: List[float], payload: Payload) -> Tuple[str, np.ndarray, str]:
        return record_id, np.asarray(vector, dtype=np.float32), json.dumps(self._encode(payload))

    @staticmethod
    def _where(translated: Optional[SqlFilter]) -> Tuple[str, List[Any]]:
        if translated is None or not translated.clause:
            return "", []
        return f"WHERE {translated.clause}", list(translated.params)

    @staticmethod
    def _load_payload(raw: Any) -> Optional[Dict[str, Any]]:
        if raw is None or isinstance(raw, dict):
            return raw
        try:
            return json.loads(raw)
        except ValueError as e:
            raise PayloadDecodeError(f"Stored payload is not valid JSON: {e}", operation="decode", cause=e) from e

    @track_operation("insert")
    async def insert(
        self,
        vectors: Sequence[Sequence[float]],
        ids: Sequence[RecordId],
        payloads: Sequence[Payload]
    ) -> None:
        self._require_connected("insert")
        checked = ensure_batch(vectors, ids, payloads, self.dimension)
        text_ids = [id_to_text(record_id, "insert") for record_id in ids]
        rows = [self._row(text_ids[i], checked[i], payloads[i]) for i in last_write_indices(text_ids)]
        if not rows:
            return
        try:
            await self._execute_query(self._upsert_sql(), rows, many=True)
        except Exception as e:
            raise self._wrap_error("insert", e) from e
        logger.debug("Batch stored vectors", table=self.collection_name, count=len(rows))

    @track_operation("search")
    async def search(
        self,
        query: Sequence[float],
        limit: int = DEFAULT_SEARCH_LIMIT,
        filters: Optional[SearchFilters] = None
    ) -> List[VectorStoreResult]:
        self._require_connected("search")
        query_vector = np.asarray(ensure_vector(query, self.dimension, "search"), dtype=np.float32)
        ensure_limit(limit, "search")
        translated = self._translate(filters, PgVectorFilterTranslator(param_offset=1))
        where, params = self._where(translated.native)
        operator = DISTANCE_OPERATORS[self.distance]
        sql = f"""
            SELECT id, payload, vector {operator} $1 AS distance
            FROM {self.table}
            {where}
            ORDER BY vector {operator} $1
            LIMIT ${len(params) + 2}
        """
        try:
            rows = await self._execute_query(sql, query_vector, *params, limit, fetch=True)
        except Exception as e:
            raise self._wrap_error("search", e) from e

        results = []
        for row in rows:
            record_id = normalize_id(row["id"])
            payload = self._decode_or_skip(record_id, row["payload"], "search", load=self._load_payload)
            if payload is None:
                continue
            results.append(VectorStoreResult(id=record_id, score=self._score(row["distance"]), payload=payload))
        results.sort(key=lambda result: result.score, reverse=True)
        return results

    @track_operation("get")
    async def get(self, id: RecordId) -> Optional[VectorStoreResult]:
        self._require_connected("get")
        text_id = id_to_text(id, "get")
        try:
            row = await self._execute_query(
                f"SELECT id, vector, payload FROM {self.table} WHERE id = $1",
                text_id,
                fetch_one=True,
            )
        except Exception as e:
            raise self._wrap_error("get", e) from e
        if row is None:
            return None
        return VectorStoreResult(
            id=normalize_id(row["id"]),
            score=1.0,
            payload=self.codec.decode(self._load_payload(row["payload"])),
            vector=[float(value) for value in np.asarray(row["vector"]).tolist()],
        )

    @track_operation("update")
    async def update(self, id: RecordId, vector: Sequence[float], payload: Payload) -> None:
        self._require_connected("update")
        checked = ensure_vector(vector, self.dimension, "update")
        try:
            await self._execute_query(self._upsert_sql(), *self._row(id_to_text(id, "update"), checked, payload))
        except Exception as e:
            raise self._wrap_error("update", e) from e

    @track_operation("delete")
    async def delete(self, id: RecordId) -> None:
        self._require_connected("delete")
        text_id = id_to_text(id, "delete")
        try:
            result = await self._execute_query(f"DELETE FROM {self.table} WHERE id = $1", text_id)
        except Exception as e:
            raise self._wrap_error("delete", e) from e
        if result.split()[-1] == "0":
            logger.debug("Delete of missing record ignored", table=self.collection_name, id=text_id)

    @track_operation("delete_collection")
    async def delete_collection(self) -> None:
        self._require_connected("delete_collection")
        try:
            await self._execute_query(f"DROP TABLE IF EXISTS {self.table}")
        except Exception as e:
            raise self._wrap_error("delete_collection", e) from e
        logger.info("PgVector table dropped", table=self.collection_name)

    @track_operation("list")
    async def list(
        self,
        filters: Optional[SearchFilters] = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> Tuple[List[VectorStoreResult], int]:
        self._require_connected("list")
        ensure_limit(limit, "list")
        where, params = self._where(self._translate(filters).native)
        try:
            rows = await self._execute_query(
                f"SELECT id, payload FROM {self.table} {where} ORDER BY seq LIMIT ${len(params) + 1}",
                *params,
                limit,
                fetch=True,
            )
            total = await self._execute_query(
                f"SELECT COUNT(*) AS count FROM {self.table} {where}",
                *params,
                fetch_one=True,
            )
        except Exception as e:
            raise self._wrap_error("list", e) from e

        results = []
        for row in rows:
            record_id = normalize_id(row["id"])
            payload = self._decode_or_skip(record_id, row["payload"], "list", load=self._load_payload)
            if payload is not None:
                results.append(VectorStoreResult(id=record_id, score=1.0, payload=payload))
        return results, int(total["count"]) if total else 0
