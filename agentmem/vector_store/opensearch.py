"""OpenSearch vector store implementation.

One k-NN index per collection. Documents hold ``vector`` (knn_vector),
``payload`` (an ``enabled: false`` object kept only for round trips, so
payload shapes never clash with the mapping) and ``payload_terms``: one nested
document per filterable leaf with its dotted path and the value in a typed
slot (``str`` keyword, ``num`` double, ``bool``). Filters are nested queries
over those leaves, applied inside the k-NN query as an efficient filter.

``opensearch-py`` is blocking and runs in a worker thread. Writes refresh
with ``wait_for`` so they are visible to the next read.
"""

import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from opensearchpy import OpenSearch, exceptions

from ..common.metrics import track_operation
from .base import (
    DEFAULT_LIST_LIMIT,
    DEFAULT_SEARCH_LIMIT,
    Payload,
    RecordId,
    SearchFilters,
    VectorStoreConnectionError,
    VectorStoreError,
    VectorStoreResult,
)
from .config import OpenSearchConfig
from .filters import OpenSearchFilterTranslator, payload_terms
from .pool import ConnectionKey, make_connection_key
from .remote import RemoteVectorStore
from .validation import (
    ensure_batch,
    ensure_limit,
    ensure_vector,
    euclidean_distance_to_score,
    id_to_text,
    last_write_indices,
    normalize_id,
)

logger = structlog.get_logger("vector_store.opensearch")

VECTOR_FIELD = "vector"
PAYLOAD_FIELD = "payload"
TERMS_FIELD = "payload_terms"

# Longer strings are kept in the payload but not indexed for exact filters
MAX_KEYWORD_LENGTH = 8191

# distance -> (space_type, engine)
SPACES = {
    "cosine": ("cosinesimil", "lucene"),
    "euclidean": ("l2", "faiss"),
    "dot": ("innerproduct", "faiss"),
}


def _index_body(dimension: int, distance: str) -> Dict[str, Any]:
    space_type, engine = SPACES[distance]
    return {
        "settings": {
            "index": {
                "knn": True,
                "number_of_shards": 1,
                "number_of_replicas": 0
            }
        },
        "mappings": {
            "dynamic": False,
            "properties": {
                VECTOR_FIELD: {
                    "type": "knn_vector",
                    "dimension": dimension,
                    "method": {
                        "name": "hnsw",
                        "space_type": space_type,
                        "engine": engine,
                        "parameters": {
                            "ef_construction": 128,
                            "m": 24
                        }
                    }
                },
                PAYLOAD_FIELD: {"type": "object", "enabled": False},
                TERMS_FIELD: {
                    "type": "nested",
                    "properties": {
                        "path": {"type": "keyword"},
                        "str": {"type": "keyword", "ignore_above": MAX_KEYWORD_LENGTH},
                        "num": {"type": "double"},
                        "bool": {"type": "boolean"},
                        "element": {"type": "boolean"}
                    }
                }
            }
        }
    }


class OpenSearchVectorStore(RemoteVectorStore):
    """OpenSearch-based vector store implementation."""

    backend_type = "opensearch"

    def default_translator(self) -> OpenSearchFilterTranslator:
        return OpenSearchFilterTranslator(terms_field=TERMS_FIELD)

    @property
    def index_name(self) -> str:
        return self.collection_name

    def _connection_key(self) -> ConnectionKey:
        config: OpenSearchConfig = self.config
        return make_connection_key(
            self.backend_type,
            ",".join(sorted(config.hosts)),
            None,
            credentials=[config.username, config.password],
            tls=any(host.startswith("https") for host in config.hosts),
        )

    def _create_client(self) -> OpenSearch:
        config: OpenSearchConfig = self.config
        return OpenSearch(
            hosts=config.hosts,
            http_auth=(config.username, config.password) if config.username and config.password else None,
            verify_certs=config.verify_certs,
            ssl_assert_hostname=config.ssl_assert_hostname,
            ssl_show_warn=config.ssl_show_warn,
            use_ssl=config.hosts[0].startswith("https"),
            timeout=config.timeout,
        )

    async def _ensure_collection(self, client: Any) -> None:
        exists = await self._run_sync(client.indices.exists, index=self.index_name)
        if not exists:
            await self._run_sync(
                client.indices.create,
                index=self.index_name,
                body=_index_body(self.dimension, self.distance),
            )
            logger.info("OpenSearch index created", index_name=self.index_name, dimension=self.dimension)
            return

        mapping = await self._run_sync(client.indices.get_mapping, index=self.index_name)
        properties = (mapping.get(self.index_name) or {}).get("mappings", {}).get("properties", {})
        actual = (properties.get(VECTOR_FIELD) or {}).get("dimension")
        if actual is not None and int(actual) != self.dimension:
            raise VectorStoreConnectionError(
                f"OpenSearch index '{self.index_name}' has dimension {actual}, expected {self.dimension}",
                backend_type=self.backend_type,
            )

    async def _ping(self, client: Any) -> bool:
        return bool(await self._run_sync(client.ping))

    def _is_missing_collection(self, error: Exception) -> bool:
        return isinstance(error, exceptions.NotFoundError) and error.error == "index_not_found_exception"

    def _score(self, raw: float) -> float:
        """Convert an OpenSearch k-NN score back to the store's similarity."""
        raw = float(raw)
        if self.distance == "cosine":
            # score = (1 + cos) / 2
            return 2.0 * raw - 1.0
        if self.distance == "euclidean":
            # score = 1 / (1 + d^2)
            if raw <= 0:
                return 0.0
            return euclidean_distance_to_score(math.sqrt(max(1.0 / raw - 1.0, 0.0)))
        # innerproduct: ip + 1 when ip >= 0, else 1 / (1 - ip)
        if raw >= 1.0:
            return raw - 1.0
        return 1.0 - 1.0 / raw

    def _document(self, vector: List[float], payload: Payload) -> Dict[str, Any]:
        return {
            VECTOR_FIELD: vector,
            PAYLOAD_FIELD: self._encode(payload),
            TERMS_FIELD: payload_terms(payload),
        }

    async def _bulk_index(self, text_ids: List[str], vectors: List[List[float]], payloads: Sequence[Payload]) -> None:
        body: List[Dict[str, Any]] = []
        for text_id, vector, payload in zip(text_ids, vectors, payloads):
            body.append({"index": {"_index": self.index_name, "_id": text_id}})
            body.append(self._document(vector, payload))

        response = await self._run_sync(self.client.bulk, body=body, refresh="wait_for")
        if response.get("errors"):
            failed = [
                item.get("index", {}).get("_id")
                for item in response.get("items", [])
                if item.get("index", {}).get("error")
            ]
            logger.warning(
                "Some documents failed to index in OpenSearch",
                failed_count=len(failed),
                total_count=len(text_ids)
            )
            raise VectorStoreError(f"OpenSearch bulk indexing failed for ids {failed}", operation="insert")

    @track_operation("insert")
    async def insert(
        self,
        vectors: Sequence[Sequence[float]],
        ids: Sequence[RecordId],
        payloads: Sequence[Payload]
    ) -> None:
        self._require_connected("insert")
        checked = ensure_batch(vectors, ids, payloads, self.dimension)
        if not checked:
            return
        text_ids = [id_to_text(record_id, "insert") for record_id in ids]
        order = last_write_indices(text_ids)
        try:
            await self._bulk_index(
                [text_ids[index] for index in order],
                [checked[index] for index in order],
                [payloads[index] for index in order],
            )
        except VectorStoreError:
            raise
        except Exception as e:
            raise self._wrap_error("insert", e) from e
        logger.debug("Batch stored documents in OpenSearch", index_name=self.index_name, count=len(order))

    @track_operation("search")
    async def search(
        self,
        query: Sequence[float],
        limit: int = DEFAULT_SEARCH_LIMIT,
        filters: Optional[SearchFilters] = None
    ) -> List[VectorStoreResult]:
        self._require_connected("search")
        query_vector = ensure_vector(query, self.dimension, "search")
        ensure_limit(limit, "search")
        translated = self._translate(filters)
        knn: Dict[str, Any] = {"vector": query_vector, "k": limit}
        if translated.native:
            # filtered during the graph search, not after the top k
            knn["filter"] = {"bool": {"filter": translated.native}}
        body = {
            "size": limit,
            "_source": [PAYLOAD_FIELD],
            "query": {"knn": {VECTOR_FIELD: knn}}
        }
        try:
            response = await self._run_sync(self.client.search, index=self.index_name, body=body)
        except Exception as e:
            raise self._wrap_error("search", e) from e

        results = []
        for hit in response["hits"]["hits"]:
            record_id = normalize_id(hit["_id"])
            payload = self._decode_or_skip(record_id, (hit.get("_source") or {}).get(PAYLOAD_FIELD), "search")
            if payload is None:
                continue
            results.append(VectorStoreResult(id=record_id, score=self._score(hit["_score"]), payload=payload))
        results.sort(key=lambda result: result.score, reverse=True)
        return results

    @track_operation("get")
    async def get(self, id: RecordId) -> Optional[VectorStoreResult]:
        self._require_connected("get")
        text_id = id_to_text(id, "get")
        try:
            response = await self._run_sync(self.client.get, index=self.index_name, id=text_id)
        except exceptions.NotFoundError as e:
            if self._is_missing_collection(e):
                raise self._wrap_error("get", e) from e
            return None
        except Exception as e:
            raise self._wrap_error("get", e) from e

        if not response.get("found"):
            return None
        source = response.get("_source") or {}
        vector = source.get(VECTOR_FIELD)
        return VectorStoreResult(
            id=normalize_id(response["_id"]),
            score=1.0,
            payload=self.codec.decode(source.get(PAYLOAD_FIELD)),
            vector=[float(value) for value in vector] if vector is not None else None,
        )

    @track_operation("update")
    async def update(self, id: RecordId, vector: Sequence[float], payload: Payload) -> None:
        self._require_connected("update")
        checked = ensure_vector(vector, self.dimension, "update")
        try:
            # index replaces the whole document
            await self._run_sync(
                self.client.index,
                index=self.index_name,
                id=id_to_text(id, "update"),
                body=self._document(checked, payload),
                refresh="wait_for",
            )
        except Exception as e:
            raise self._wrap_error("update", e) from e

    @track_operation("delete")
    async def delete(self, id: RecordId) -> None:
        self._require_connected("delete")
        text_id = id_to_text(id, "delete")
        try:
            await self._run_sync(self.client.delete, index=self.index_name, id=text_id, refresh="wait_for")
        except exceptions.NotFoundError as e:
            if self._is_missing_collection(e):
                raise self._wrap_error("delete", e) from e
            logger.debug("Delete of missing document ignored", index_name=self.index_name, id=text_id)
        except Exception as e:
            raise self._wrap_error("delete", e) from e

    @track_operation("delete_collection")
    async def delete_collection(self) -> None:
        self._require_connected("delete_collection")
        try:
            await self._run_sync(self.client.indices.delete, index=self.index_name)
        except exceptions.NotFoundError:
            logger.debug("OpenSearch index already absent", index_name=self.index_name)
            return
        except Exception as e:
            raise self._wrap_error("delete_collection", e) from e
        logger.info("OpenSearch index deleted", index_name=self.index_name)

    @track_operation("list")
    async def list(
        self,
        filters: Optional[SearchFilters] = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> Tuple[List[VectorStoreResult], int]:
        self._require_connected("list")
        ensure_limit(limit, "list")
        clauses = self._translate(filters).native
        query = {"bool": {"filter": clauses}} if clauses else {"match_all": {}}
        body = {
            "size": limit,
            "_source": [PAYLOAD_FIELD],
            "query": query,
            "track_total_hits": True
        }
        try:
            response = await self._run_sync(self.client.search, index=self.index_name, body=body)
        except Exception as e:
            raise self._wrap_error("list", e) from e

        hits = response["hits"]
        results = []
        for hit in hits["hits"]:
            record_id = normalize_id(hit["_id"])
            payload = self._decode_or_skip(record_id, (hit.get("_source") or {}).get(PAYLOAD_FIELD), "list")
            if payload is not None:
                results.append(VectorStoreResult(id=record_id, score=1.0, payload=payload))

        total = hits.get("total", 0)
        if isinstance(total, dict):
            total = total.get("value", 0)
        return results, int(total)
