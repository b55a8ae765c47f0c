"""In-process stand-ins for vendor SDK clients.

Each fake implements only the calls the matching adapter makes, with enough
behaviour (storage, scoring, the native filter language) to exercise the
adapter end to end without a server. Where the real service rejects a request
(malformed Chroma ``where``, filtered Pinecone stats, conflicting OpenSearch
dynamic mappings) the fake rejects it too. Tests pass them through the
adapter's ``client_factory`` hook.
"""

import copy
from typing import Any, Dict, List, Optional

import numpy as np
from opensearchpy import exceptions as opensearch_exceptions

PINECONE_MAX_TOP_K = 10000


def _cosine(a: List[float], b: List[float]) -> float:
    a_arr, b_arr = np.asarray(a, dtype=float), np.asarray(b, dtype=float)
    norms = np.linalg.norm(a_arr) * np.linalg.norm(b_arr)
    return float(a_arr @ b_arr / norms) if norms else 0.0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _scalar_equal(stored: Any, operand: Any) -> bool:
    if isinstance(stored, bool) or isinstance(operand, bool):
        return isinstance(stored, bool) and isinstance(operand, bool) and stored == operand
    if _is_number(stored) and _is_number(operand):
        return stored == operand
    return type(stored) is type(operand) and stored == operand


def _equal(stored: Any, operand: Any) -> bool:
    # Pinecone string lists match when any element does
    if isinstance(stored, list):
        return any(_scalar_equal(item, operand) for item in stored)
    return _scalar_equal(stored, operand)


def _in_range(stored: Any, op: str, bound: Any) -> bool:
    if not _is_number(stored):
        return False
    return {
        "gte": stored >= bound,
        "gt": stored > bound,
        "lte": stored <= bound,
        "lt": stored < bound,
    }[op]


def _where_matches(metadata: Optional[Dict[str, Any]], where: Optional[Dict[str, Any]]) -> bool:
    """Chroma/Pinecone metadata filter: $and, $or, $eq, $in and ranges."""
    if not where:
        return True
    metadata = metadata or {}
    for key, condition in where.items():
        if key == "$and":
            if not all(_where_matches(metadata, clause) for clause in condition):
                return False
            continue
        if key == "$or":
            if not any(_where_matches(metadata, clause) for clause in condition):
                return False
            continue
        if key not in metadata:
            return False
        value = metadata[key]
        if not isinstance(condition, dict):
            condition = {"$eq": condition}
        for op, operand in condition.items():
            if op == "$eq" and not _equal(value, operand):
                return False
            if op == "$in" and not any(_equal(value, item) for item in operand):
                return False
            if op in ("$gte", "$gt", "$lte", "$lt") and not _in_range(value, op[1:], operand):
                return False
    return True


def _check_chroma_where(where: Any) -> None:
    """Reject ``where`` shapes the Chroma server refuses."""
    if not isinstance(where, dict) or len(where) != 1:
        raise ValueError(f"Expected where to have exactly one operator, got {where}")
    (key, value), = where.items()
    if key in ("$and", "$or"):
        if not isinstance(value, list) or len(value) < 2:
            raise ValueError(f"Expected where value for {key} to be a list with at least two where expressions")
        for clause in value:
            _check_chroma_where(clause)
        return
    if not isinstance(value, dict) or len(value) != 1:
        raise ValueError(f"Expected operator expression for '{key}' with exactly one operator, got {value}")
    (op, operand), = value.items()
    if op == "$in":
        if not isinstance(operand, list) or not operand:
            raise ValueError(f"Expected a non-empty list for $in on '{key}'")
    elif op == "$eq":
        if not isinstance(operand, (str, int, float, bool)):
            raise ValueError(f"Expected a scalar for $eq on '{key}', got {operand!r}")
    elif op in ("$gte", "$gt", "$lte", "$lt"):
        if not _is_number(operand):
            raise ValueError(f"Expected a number for {op} on '{key}', got {operand!r}")
    else:
        raise ValueError(f"Unsupported operator {op}")


def _check_chroma_metadata(metadata: Any, allow_none: bool = False) -> None:
    if not isinstance(metadata, dict) or not metadata:
        raise ValueError(f"Expected metadata to be a non-empty dict, got {metadata!r}")
    for key, value in metadata.items():
        if not isinstance(key, str):
            raise ValueError(f"Expected metadata key to be a str, got {key!r}")
        if value is None and allow_none:
            continue
        if not isinstance(value, (str, int, float, bool)):
            raise ValueError(f"Expected metadata value to be a str, int, float or bool, got {value!r}")


class FakeChromaCollection:
    def __init__(self, name: str, metadata: Optional[Dict[str, Any]]):
        self.name = name
        self.metadata = metadata
        self.records: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []

    def add(self, ids, embeddings, metadatas=None):
        self.calls.append("add")
        for metadata in metadatas or []:
            _check_chroma_metadata(metadata)
        for position, (text_id, embedding) in enumerate(zip(ids, embeddings)):
            if text_id in self.records:
                raise ValueError(f"duplicate id {text_id}")
            metadata = copy.deepcopy(metadatas[position]) if metadatas is not None else None
            self.records[text_id] = {"embedding": list(embedding), "metadata": metadata}

    def update(self, ids, embeddings, metadatas=None):
        """Merge metadata keys; a ``None`` value removes the key."""
        self.calls.append("update")
        for metadata in metadatas or []:
            _check_chroma_metadata(metadata, allow_none=True)
        for position, (text_id, embedding) in enumerate(zip(ids, embeddings)):
            if text_id not in self.records:
                continue
            record = self.records[text_id]
            record["embedding"] = list(embedding)
            if metadatas is not None:
                merged = dict(record["metadata"] or {})
                for key, value in metadatas[position].items():
                    if value is None:
                        merged.pop(key, None)
                    else:
                        merged[key] = copy.deepcopy(value)
                record["metadata"] = merged or None

    def delete(self, ids):
        self.calls.append("delete")
        for text_id in ids:
            self.records.pop(text_id, None)

    def count(self):
        return len(self.records)

    def get(self, ids=None, where=None, limit=None, include=None):
        if where is not None:
            _check_chroma_where(where)
        selected = [
            text_id for text_id, record in self.records.items()
            if (ids is None or text_id in ids) and _where_matches(record["metadata"], where)
        ]
        if limit is not None:
            selected = selected[:limit]
        return {
            "ids": selected,
            "metadatas": [copy.deepcopy(self.records[text_id]["metadata"]) for text_id in selected],
            "embeddings": [list(self.records[text_id]["embedding"]) for text_id in selected],
        }

    def query(self, query_embeddings, n_results, where=None, include=None):
        if where is not None:
            _check_chroma_where(where)
        query = query_embeddings[0]
        ranked = sorted(
            (
                (1.0 - _cosine(record["embedding"], query), text_id)
                for text_id, record in self.records.items()
                if _where_matches(record["metadata"], where)
            ),
            key=lambda item: item[0],
        )[:n_results]
        return {
            "ids": [[text_id for _, text_id in ranked]],
            "metadatas": [[copy.deepcopy(self.records[text_id]["metadata"]) for _, text_id in ranked]],
            "distances": [[distance for distance, _ in ranked]],
        }


class FakeChromaClient:
    def __init__(self):
        self.collections: Dict[str, FakeChromaCollection] = {}
        self.closed = False

    def get_or_create_collection(self, name, metadata=None):
        if name not in self.collections:
            self.collections[name] = FakeChromaCollection(name, metadata)
        return self.collections[name]

    def delete_collection(self, name):
        self.collections.pop(name)

    def heartbeat(self):
        return 1

    def close(self):
        self.closed = True


def _check_pinecone_metadata(metadata: Dict[str, Any]) -> None:
    for key, value in metadata.items():
        if isinstance(value, list):
            if not all(isinstance(item, str) for item in value):
                raise ValueError(f"Metadata list values must be strings, got {value!r} for '{key}'")
        elif not isinstance(value, (str, int, float, bool)):
            raise ValueError(f"Unsupported metadata value {value!r} for '{key}'")


class FakePineconeIndex:
    """Serverless index: stats cannot be filtered and ``top_k`` is capped."""

    def __init__(self):
        self.namespaces: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.stats_filters: List[Any] = []

    def upsert(self, vectors, namespace=""):
        records = self.namespaces.setdefault(namespace, {})
        for vector in vectors:
            _check_pinecone_metadata(vector.get("metadata") or {})
            records[vector["id"]] = {"values": list(vector["values"]), "metadata": copy.deepcopy(vector["metadata"])}

    def query(self, vector, top_k, include_metadata=False, namespace="", filter=None):
        if top_k > PINECONE_MAX_TOP_K:
            raise ValueError(f"top_k must be at most {PINECONE_MAX_TOP_K}")
        records = self.namespaces.get(namespace, {})
        ranked = sorted(
            (
                {"id": text_id, "score": _cosine(record["values"], vector), "metadata": record["metadata"]}
                for text_id, record in records.items()
                if _where_matches(record["metadata"], filter)
            ),
            key=lambda match: match["score"],
            reverse=True,
        )[:top_k]
        for match in ranked:
            if include_metadata:
                match["metadata"] = copy.deepcopy(match["metadata"])
            else:
                match.pop("metadata")
        return {"matches": ranked}

    def fetch(self, ids, namespace=""):
        records = self.namespaces.get(namespace, {})
        return {"vectors": {text_id: copy.deepcopy(records[text_id]) for text_id in ids if text_id in records}}

    def delete(self, ids, namespace=""):
        records = self.namespaces.get(namespace, {})
        for text_id in ids:
            records.pop(text_id, None)

    def describe_index_stats(self, filter=None):
        if filter is not None:
            self.stats_filters.append(filter)
            raise ValueError("Serverless and starter indexes do not support describing index stats with metadata filtering")
        return {
            "namespaces": {
                namespace: {"vector_count": len(records)}
                for namespace, records in self.namespaces.items()
            }
        }


class _IndexList(list):
    def names(self):
        return [index["name"] for index in self]


class FakePineconeClient:
    def __init__(self, existing: Optional[Dict[str, int]] = None):
        self.dimensions: Dict[str, int] = dict(existing or {})
        self.indexes: Dict[str, FakePineconeIndex] = {name: FakePineconeIndex() for name in self.dimensions}
        self.created: List[str] = []

    def list_indexes(self):
        return _IndexList({"name": name} for name in self.dimensions)

    def create_index(self, name, dimension, metric, spec):
        self.created.append(name)
        self.dimensions[name] = dimension
        self.indexes[name] = FakePineconeIndex()

    def describe_index(self, name):
        return {"name": name, "dimension": self.dimensions[name]}

    def delete_index(self, name):
        self.dimensions.pop(name)
        self.indexes.pop(name)

    def Index(self, name):
        return self.indexes[name]


def _index_not_found(index: str) -> opensearch_exceptions.NotFoundError:
    return opensearch_exceptions.NotFoundError(
        404,
        "index_not_found_exception",
        {"error": {"type": "index_not_found_exception", "index": index}},
    )


def _field(document: Any, field: str) -> Any:
    current = document
    for part in field.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _query_matches(document: Dict[str, Any], query: Dict[str, Any], prefix: str = "") -> bool:
    """Evaluate the OpenSearch query DSL subset the adapter emits."""
    (kind, body), = query.items()
    if kind == "match_all":
        return True
    if kind == "bool":
        required = body.get("filter", []) + body.get("must", [])
        if not all(_query_matches(document, clause, prefix) for clause in required):
            return False
        should = body.get("should", [])
        if should:
            hits = sum(_query_matches(document, clause, prefix) for clause in should)
            return hits >= body.get("minimum_should_match", 1)
        return True
    if kind == "nested":
        children = _field(document, body["path"][len(prefix):]) or []
        child_prefix = body["path"] + "."
        return any(_query_matches(child, body["query"], child_prefix) for child in children)
    if kind in ("term", "terms", "range"):
        (field, operand), = body.items()
        if not field.startswith(prefix):
            raise ValueError(f"Field {field} outside nested path {prefix!r}")
        stored = _field(document, field[len(prefix):])
        values = stored if isinstance(stored, list) else [stored]
        if kind == "term":
            return any(_scalar_equal(value, operand) for value in values)
        if kind == "terms":
            return any(_scalar_equal(value, item) for value in values for item in operand)
        return any(all(_in_range(value, op, bound) for op, bound in operand.items()) for value in values)
    raise ValueError(f"Unsupported query clause: {kind}")


class FakeOpenSearchIndices:
    def __init__(self, client: "FakeOpenSearchClient"):
        self._client = client

    def exists(self, index):
        return index in self._client.mappings

    def create(self, index, body):
        self._client.mappings[index] = body["mappings"]
        self._client.documents[index] = {}
        self._client.dynamic[index] = {}

    def get_mapping(self, index):
        if index not in self._client.mappings:
            raise _index_not_found(index)
        return {index: {"mappings": self._client.mappings[index]}}

    def delete(self, index):
        if index not in self._client.mappings:
            raise _index_not_found(index)
        self._client.mappings.pop(index)
        self._client.documents.pop(index)
        self._client.dynamic.pop(index)


class FakeOpenSearchClient:
    """Scores hits the way a ``cosinesimil`` k-NN field does: ``(1 + cos) / 2``.

    Object fields that are mapped without ``enabled: false`` get dynamic
    mappings; a document whose value shape conflicts with an earlier one is
    rejected with ``mapper_parsing_exception`` as the real cluster does.
    """

    def __init__(self):
        self.mappings: Dict[str, Dict[str, Any]] = {}
        self.documents: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.dynamic: Dict[str, Dict[str, str]] = {}
        self.indices = FakeOpenSearchIndices(self)
        self.searches: List[Dict[str, Any]] = []

    def ping(self):
        return True

    def _documents(self, index: str) -> Dict[str, Dict[str, Any]]:
        if index not in self.documents:
            raise _index_not_found(index)
        return self.documents[index]

    def _map_document(self, index: str, document: Dict[str, Any]) -> Optional[str]:
        properties = self.mappings.get(index, {}).get("properties", {})
        seen = self.dynamic.setdefault(index, {})
        for name, value in document.items():
            mapping = properties.get(name)
            if mapping is None or mapping.get("type", "object") != "object" or mapping.get("enabled", True) is False:
                continue
            error = self._map_value(seen, name, value)
            if error:
                return error
        return None

    def _map_value(self, seen: Dict[str, str], path: str, value: Any) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, list):
            for item in value:
                error = self._map_value(seen, path, item)
                if error:
                    return error
            return None
        kind = "object" if isinstance(value, dict) else "value"
        if seen.setdefault(path, kind) != kind:
            return f"failed to parse field [{path}]: mapped as {seen[path]}, got {kind}"
        if isinstance(value, dict):
            for key, child in value.items():
                error = self._map_value(seen, f"{path}.{key}", child)
                if error:
                    return error
        return None

    def bulk(self, body, refresh=None):
        items = []
        errors = False
        for action, document in zip(body[::2], body[1::2]):
            meta = action["index"]
            documents = self.documents.setdefault(meta["_index"], {})
            error = self._map_document(meta["_index"], document)
            if error:
                errors = True
                items.append({
                    "index": {
                        "_id": meta["_id"],
                        "status": 400,
                        "error": {"type": "mapper_parsing_exception", "reason": error},
                    }
                })
                continue
            documents[meta["_id"]] = copy.deepcopy(document)
            items.append({"index": {"_id": meta["_id"], "status": 201}})
        return {"errors": errors, "items": items}

    def index(self, index, id, body, refresh=None):
        error = self._map_document(index, body)
        if error:
            raise opensearch_exceptions.RequestError(400, "mapper_parsing_exception", {"reason": error})
        self.documents.setdefault(index, {})[id] = copy.deepcopy(body)
        return {"result": "created"}

    def get(self, index, id):
        documents = self._documents(index)
        if id not in documents:
            raise opensearch_exceptions.NotFoundError(404, "not_found", {"found": False})
        return {"_id": id, "found": True, "_source": copy.deepcopy(documents[id])}

    def delete(self, index, id, refresh=None):
        documents = self._documents(index)
        if id not in documents:
            raise opensearch_exceptions.NotFoundError(404, "not_found", {"result": "not_found"})
        documents.pop(id)
        return {"result": "deleted"}

    def search(self, index, body):
        self.searches.append(copy.deepcopy(body))
        documents = self._documents(index)
        query = body["query"]
        knn = query.get("knn", {}).get("vector")
        condition = knn.get("filter") if knn is not None else query
        size = body["size"] if knn is None else min(body["size"], knn["k"])

        hits = []
        for doc_id, document in documents.items():
            if condition is not None and not _query_matches(document, condition):
                continue
            score = 1.0 if knn is None else (1.0 + _cosine(document["vector"], knn["vector"])) / 2.0
            source = {field: copy.deepcopy(document[field]) for field in body.get("_source", document) if field in document}
            hits.append({"_id": doc_id, "_score": score, "_source": source})
        hits.sort(key=lambda hit: hit["_score"], reverse=True)
        return {"hits": {"total": {"value": len(hits), "relation": "eq"}, "hits": hits[:size]}}


class FlakyFactory:
    """Client factory failing ``failures`` times before returning ``client``."""

    def __init__(self, client: Any, failures: int = 0, error: Exception = None):
        self.client = client
        self.failures = failures
        self.error = error or ConnectionError("connection refused")
        self.calls = 0

    def __call__(self, config: Any) -> Any:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.client
