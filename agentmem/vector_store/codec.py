"""Payload codecs.

Backends with rich JSON metadata (Qdrant, Milvus, PgVector, OpenSearch and the
embedded store) keep payloads as they are through ``IdentityCodec``. Chroma
and Pinecone only accept flat scalar metadata, so ``FlatPayloadCodec`` maps a
nested payload onto flat keys and records what it did in one reserved
metadata key so that decoding is the exact inverse:

- scalars pass through untouched
- non-empty arrays of one scalar type are joined with ``delimiter``
- nested objects are flattened with ``separator`` (``user.name`` -> ``user_name``)
  down to ``max_depth`` key segments
- anything else (``None``, empty or mixed arrays, arrays of objects, objects
  nested too deeply, keys colliding after flattening, strings containing the
  delimiter) is stored as one JSON string

A joined array or a JSON string cannot be told apart from a plain string on
the backend, and cannot answer "does this list contain x". So every scalar
value reachable by a dotted path, array elements included, also gets a value
marker: a boolean key derived from the path and the value (see
``member_key``). Filter translators test equality and membership through
these markers only. Markers are dropped on decode.

Example
>>> codec = FlatPayloadCodec(index_members=False)
>>> codec.encode({"tags": ["a", "b"], "user": {"name": "x"}})
{'tags': 'a,b', 'user_name': 'x', '__codec__': '{"tags":{"kind":"list:str"},"user_name":{"path":["user","name"]}}'}
"""

import copy
import hashlib
import json
import math
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from .base import Payload, PayloadDecodeError, VectorStoreError
from .filters import reachable_values

CODEC_KEY = "__codec__"
MEMBER_PREFIX = "__has__"

_KIND_JSON = "json"
_LIST_KINDS = {
    bool: "list:bool",
    int: "list:int",
    float: "list:float",
    str: "list:str",
}


class PayloadCodec(ABC):
    """Maps caller payloads to backend metadata and back."""

    @abstractmethod
    def encode(self, payload: Payload) -> Dict[str, Any]:
        pass

    @abstractmethod
    def decode(self, metadata: Optional[Dict[str, Any]]) -> Payload:
        pass

    def field_key(self, path: str) -> str:
        """Stored metadata key for a dotted filter field path."""
        return path

    def member_key(self, path: str, value: Any) -> Optional[str]:
        """Marker key set when the value at ``path`` is or contains ``value``.

        ``None`` when the codec stores arrays natively or writes no markers.
        """
        return None


class IdentityCodec(PayloadCodec):
    """Deep copies payloads in both directions."""

    def encode(self, payload: Payload) -> Dict[str, Any]:
        return copy.deepcopy(dict(payload))

    def decode(self, metadata: Optional[Dict[str, Any]]) -> Payload:
        return copy.deepcopy(dict(metadata or {}))


class FlatPayloadCodec(PayloadCodec):
    """Codec for backends whose metadata values must be flat scalars.

    Parameters
    - delimiter: Joins scalar array elements into one string
    - separator: Joins nested key segments into one flat key
    - max_depth: Deepest flattened key, in segments; deeper objects become JSON
    - index_members: Write value markers for scalar values and array elements
    """

    def __init__(
        self,
        delimiter: str = ",",
        separator: str = "_",
        max_depth: int = 3,
        index_members: bool = True
    ):
        if not delimiter or not separator:
            raise ValueError("delimiter and separator must be non-empty")
        if max_depth < 1:
            raise ValueError("max_depth must be at least 1")
        self.delimiter = delimiter
        self.separator = separator
        self.max_depth = max_depth
        self.index_members = index_members

    def encode(self, payload: Payload) -> Dict[str, Any]:
        for key in payload:
            if key == CODEC_KEY or (isinstance(key, str) and key.startswith(MEMBER_PREFIX)):
                raise VectorStoreError(f"Payload key '{key}' is reserved", operation="encode")

        metadata: Dict[str, Any] = {}
        tags: Dict[str, Dict[str, Any]] = {}
        # Top-level keys win over keys produced by flattening
        taken = set(payload) | {CODEC_KEY}

        for key, value in payload.items():
            if not isinstance(key, str):
                raise VectorStoreError(f"Payload keys must be strings, got {key!r}", operation="encode")

            if isinstance(value, dict) and value:
                entries = self._flatten([key], value)
                if entries is not None and self._can_place(entries, taken):
                    for flat_key, path, leaf in entries:
                        stored, kind = self._encode_leaf(leaf)
                        metadata[flat_key] = stored
                        tag: Dict[str, Any] = {"path": path}
                        if kind:
                            tag["kind"] = kind
                        tags[flat_key] = tag
                        taken.add(flat_key)
                else:
                    metadata[key] = _dump_json(value)
                    tags[key] = {"kind": _KIND_JSON}
                continue

            stored, kind = self._encode_leaf(value)
            metadata[key] = stored
            if kind:
                tags[key] = {"kind": kind}

        if tags:
            metadata[CODEC_KEY] = _dump_json(tags)
        if self.index_members:
            metadata.update(self._member_markers(payload))
        return metadata

    def decode(self, metadata: Optional[Dict[str, Any]]) -> Payload:
        metadata = {
            key: value for key, value in (metadata or {}).items()
            if not key.startswith(MEMBER_PREFIX)
        }
        raw_tags = metadata.pop(CODEC_KEY, None)
        if raw_tags is None:
            return copy.deepcopy(metadata)

        try:
            tags = json.loads(raw_tags)
        except (TypeError, ValueError) as e:
            raise PayloadDecodeError(f"Malformed codec tags: {e}", operation="decode", cause=e) from e
        if not isinstance(tags, dict):
            raise PayloadDecodeError("Malformed codec tags: expected an object", operation="decode")

        payload: Payload = {}
        for key, value in metadata.items():
            tag = tags.get(key)
            if tag is None:
                _assign(payload, [key], copy.deepcopy(value))
                continue
            if not isinstance(tag, dict):
                raise PayloadDecodeError(f"Malformed codec tag for '{key}'", operation="decode")
            path = tag.get("path") or [key]
            if not isinstance(path, list) or not all(isinstance(part, str) for part in path):
                raise PayloadDecodeError(f"Malformed key path for '{key}'", operation="decode")
            _assign(payload, path, self._decode_leaf(key, value, tag.get("kind")))
        return payload

    def field_key(self, path: str) -> str:
        return path.replace(".", self.separator)

    def member_key(self, path: str, value: Any) -> Optional[str]:
        if not self.index_members:
            return None
        token = json.dumps([path, _canonical(value)], separators=(",", ":"), ensure_ascii=False)
        return MEMBER_PREFIX + hashlib.blake2b(token.encode("utf-8"), digest_size=12).hexdigest()

    def _member_markers(self, payload: Payload) -> Dict[str, bool]:
        """Markers for every scalar value and array element reachable by a dotted path."""
        markers: Dict[str, bool] = {}

        def mark(path: str, value: Any) -> None:
            if _is_member(value):
                markers[self.member_key(path, value)] = True

        for path, value in reachable_values(payload):
            if isinstance(value, list):
                for item in value:
                    mark(path, item)
            else:
                mark(path, value)
        return markers

    def _flatten(self, path: List[str], value: Dict[str, Any]) -> Optional[List[Tuple[str, List[str], Any]]]:
        """Flatten ``value`` below ``path``; ``None`` when a key is not a string."""
        entries: List[Tuple[str, List[str], Any]] = []
        for key, child in value.items():
            if not isinstance(key, str):
                return None
            child_path = path + [key]
            if isinstance(child, dict) and child and len(child_path) < self.max_depth:
                nested = self._flatten(child_path, child)
                if nested is None:
                    return None
                entries.extend(nested)
            else:
                entries.append((self.separator.join(child_path), child_path, child))
        return entries

    @staticmethod
    def _can_place(entries: List[Tuple[str, List[str], Any]], taken: set) -> bool:
        flat_keys = [flat_key for flat_key, _, _ in entries]
        if len(set(flat_keys)) != len(flat_keys):
            return False
        if any(flat_key.startswith(MEMBER_PREFIX) for flat_key in flat_keys):
            return False
        return not any(flat_key in taken for flat_key in flat_keys)

    def _encode_leaf(self, value: Any) -> Tuple[Any, Optional[str]]:
        if isinstance(value, (str, bool, int, float)):
            return value, None

        if isinstance(value, list) and value:
            kind = self._list_kind(value)
            if kind == "list:bool":
                return self.delimiter.join("true" if item else "false" for item in value), kind
            if kind is not None:
                return self.delimiter.join(repr(item) if isinstance(item, float) else str(item) for item in value), kind

        return _dump_json(value), _KIND_JSON

    def _list_kind(self, values: List[Any]) -> Optional[str]:
        element_type = type(values[0])
        if element_type not in _LIST_KINDS:
            return None
        if any(type(item) is not element_type for item in values):
            return None
        if element_type is str and any(self.delimiter in item for item in values):
            return None
        return _LIST_KINDS[element_type]

    def _decode_leaf(self, key: str, value: Any, kind: Optional[str]) -> Any:
        if kind is None:
            return copy.deepcopy(value)

        if not isinstance(value, str):
            raise PayloadDecodeError(f"Tagged field '{key}' is not a string", operation="decode")

        try:
            if kind == _KIND_JSON:
                return json.loads(value)
            parts = value.split(self.delimiter)
            if kind == "list:str":
                return parts
            if kind == "list:int":
                return [int(part) for part in parts]
            if kind == "list:float":
                return [float(part) for part in parts]
            if kind == "list:bool":
                if any(part not in ("true", "false") for part in parts):
                    raise ValueError(f"invalid boolean list {value!r}")
                return [part == "true" for part in parts]
        except ValueError as e:
            raise PayloadDecodeError(f"Cannot decode field '{key}': {e}", operation="decode", cause=e) from e

        raise PayloadDecodeError(f"Unknown codec kind '{kind}' for '{key}'", operation="decode")


def _dump_json(value: Any) -> str:
    try:
        return json.dumps(value, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise VectorStoreError(f"Payload value is not JSON serializable: {e}", operation="encode", cause=e) from e


def _assign(payload: Payload, path: List[str], value: Any) -> None:
    target = payload
    for part in path[:-1]:
        existing = target.setdefault(part, {})
        if not isinstance(existing, dict):
            raise PayloadDecodeError(f"Key path {'.'.join(path)} conflicts with a stored value", operation="decode")
        target = existing
    if path[-1] in target:
        raise PayloadDecodeError(f"Duplicate key path {'.'.join(path)}", operation="decode")
    target[path[-1]] = value


def _is_member(value: Any) -> bool:
    if isinstance(value, float):
        return math.isfinite(value)
    return isinstance(value, (str, int, bool))


def _canonical(value: Any) -> Any:
    # 1 and 1.0 compare equal in filters and must share a marker
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value

