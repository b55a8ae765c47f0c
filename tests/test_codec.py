"""Tests for payload codecs."""

import json

import pytest

from agentmem.vector_store.base import PayloadDecodeError, VectorStoreError
from agentmem.vector_store.codec import CODEC_KEY, MEMBER_PREFIX, FlatPayloadCodec, IdentityCodec


@pytest.fixture
def codec():
    return FlatPayloadCodec()


def _is_flat(metadata):
    return all(isinstance(value, (str, int, float, bool)) for value in metadata.values())


def _without_markers(metadata):
    return {key: value for key, value in metadata.items() if not key.startswith(MEMBER_PREFIX)}


def test_scalars_pass_through_untagged(codec):
    payload = {"text": "hello", "count": 3, "score": 0.5, "done": False}
    encoded = codec.encode(payload)
    assert _without_markers(encoded) == payload
    assert encoded[codec.member_key("count", 3)] is True
    assert encoded[codec.member_key("done", False)] is True
    assert codec.decode(encoded) == payload


def test_nested_objects_are_flattened(codec):
    payload = {"user": {"name": "ada", "profile": {"age": 36}}, "kind": "note"}
    encoded = codec.encode(payload)

    assert encoded["user_name"] == "ada"
    assert encoded["user_profile_age"] == 36
    assert _is_flat(encoded)
    assert codec.decode(encoded) == payload


def test_scalar_lists_keep_element_types(codec):
    payload = {
        "tags": ["a", "b"],
        "ids": [1, 2, 3],
        "weights": [0.1, 2.5],
        "flags": [True, False],
    }
    encoded = codec.encode(payload)

    assert encoded["tags"] == "a,b"
    assert encoded["ids"] == "1,2,3"
    assert encoded[codec.member_key("tags", "b")] is True
    assert encoded[codec.member_key("ids", 3)] is True
    assert _is_flat(encoded)
    assert codec.decode(encoded) == payload


def test_values_without_a_flat_form_fall_back_to_json(codec):
    payload = {
        "nothing": None,
        "empty": [],
        "mixed": [1, "a"],
        "records": [{"a": 1}],
        "commas": ["a,b", "c"],
    }
    encoded = codec.encode(payload)

    assert _is_flat(encoded)
    assert json.loads(encoded["commas"]) == ["a,b", "c"]
    assert codec.decode(encoded) == payload


def test_objects_deeper_than_max_depth_are_stored_as_json():
    codec = FlatPayloadCodec(max_depth=2)
    payload = {"a": {"b": {"c": {"d": 1}}}}
    encoded = codec.encode(payload)

    assert json.loads(encoded["a_b"]) == {"c": {"d": 1}}
    assert codec.decode(encoded) == payload


def test_flattened_key_colliding_with_top_level_key(codec):
    payload = {"user_name": "top", "user": {"name": "nested"}}
    encoded = codec.encode(payload)

    assert encoded["user_name"] == "top"
    assert json.loads(encoded["user"]) == {"name": "nested"}
    assert codec.decode(encoded) == payload


def test_empty_payload_has_no_tags(codec):
    assert codec.encode({}) == {}
    assert codec.decode({}) == {}
    assert codec.decode(None) == {}


def test_reserved_keys_are_rejected(codec):
    with pytest.raises(VectorStoreError):
        codec.encode({CODEC_KEY: "x"})
    with pytest.raises(VectorStoreError):
        codec.encode({MEMBER_PREFIX + "abc": True})


def test_unserializable_value_is_rejected(codec):
    with pytest.raises(VectorStoreError):
        codec.encode({"when": object()})


@pytest.mark.parametrize(
    "metadata",
    [
        {CODEC_KEY: "not json"},
        {CODEC_KEY: "[1, 2]"},
        {"ids": "1,x", CODEC_KEY: '{"ids": {"kind": "list:int"}}'},
        {"flags": "yes", CODEC_KEY: '{"flags": {"kind": "list:bool"}}'},
        {"blob": 5, CODEC_KEY: '{"blob": {"kind": "json"}}'},
        {"x": "1", CODEC_KEY: '{"x": {"kind": "list:complex"}}'},
    ],
)
def test_malformed_metadata_raises_decode_error(codec, metadata):
    with pytest.raises(PayloadDecodeError):
        codec.decode(metadata)


def test_field_key_follows_flattening(codec):
    assert codec.field_key("user.name") == "user_name"
    assert FlatPayloadCodec(separator="__").field_key("a.b.c") == "a__b__c"


def test_custom_delimiter():
    codec = FlatPayloadCodec(delimiter="|")
    payload = {"tags": ["a,b", "c"]}
    encoded = codec.encode(payload)
    assert encoded["tags"] == "a,b|c"
    assert codec.decode(encoded) == payload


def test_identity_codec_copies():
    codec = IdentityCodec()
    payload = {"tags": ["a"], "user": {"name": "ada"}}
    encoded = codec.encode(payload)
    encoded["tags"].append("b")
    assert payload["tags"] == ["a"]

    decoded = codec.decode(encoded)
    decoded["user"]["name"] = "grace"
    assert encoded["user"]["name"] == "ada"
    assert codec.decode(None) == {}


def test_scalar_values_and_list_elements_get_markers(codec):
    payload = {
        "kind": "note",
        "nothing": None,
        "tags": ["a", "b"],
        "mixed": [1, "x", {"skip": True}],
        "user": {"roles": ["admin"], "deep": {"deeper": {"ids": [7.0]}}},
    }
    encoded = codec.encode(payload)
    markers = {key for key in encoded if key.startswith(MEMBER_PREFIX)}

    assert markers == {
        codec.member_key("kind", "note"),
        codec.member_key("tags", "a"),
        codec.member_key("tags", "b"),
        codec.member_key("mixed", 1),
        codec.member_key("mixed", "x"),
        codec.member_key("user.roles", "admin"),
        codec.member_key("user.deep.deeper.ids", 7),
    }
    assert codec.decode(encoded) == payload


def test_member_keys_follow_filter_equality(codec):
    assert codec.member_key("ids", 1) == codec.member_key("ids", 1.0)
    assert codec.member_key("ids", 1) != codec.member_key("ids", True)
    assert codec.member_key("ids", 1) != codec.member_key("ids", "1")
    assert codec.member_key("a", "b") != codec.member_key("b", "a")


def test_literal_dotted_key_shadows_nested_members(codec):
    encoded = codec.encode({"user.tags": ["top"], "user": {"tags": ["nested"]}})
    assert codec.member_key("user.tags", "top") in encoded
    assert codec.member_key("user.tags", "nested") not in encoded


def test_markers_follow_dotted_path_resolution(codec):
    encoded = codec.encode({
        "a.b": {"c": "under-literal"},
        "a": {"b": {"c": "walked"}, "x.y": "dotted-child"},
    })
    # the literal "a.b" shadows only its own path; "a.b.c" still walks the nesting
    assert codec.member_key("a.b.c", "walked") in encoded
    assert codec.member_key("a.b.c", "under-literal") not in encoded
    assert codec.member_key("a.x.y", "dotted-child") not in encoded


def test_markers_can_be_disabled():
    codec = FlatPayloadCodec(index_members=False)
    encoded = codec.encode({"tags": ["a", "b"]})
    assert not any(key.startswith(MEMBER_PREFIX) for key in encoded)
    assert codec.member_key("tags", "a") is None
    assert codec.decode(encoded) == {"tags": ["a", "b"]}
