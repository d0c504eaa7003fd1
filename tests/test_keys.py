"""Tests for path helpers, key encoding and push ids."""

import pytest

from threadline.keys import (
    PushIdGenerator,
    decode_key,
    encode_key,
    is_descendant,
    join_path,
    split_path,
)


@pytest.mark.parametrize("key", ["👍", "thumbs.up", "a/b", "$[x]#", "100%", "tab\there", "ünïcødé"])
def test_encode_decode_restores_key(key):
    encoded = encode_key(key)
    assert decode_key(encoded) == key
    assert not set(".#$[]/") & set(encoded)
    assert "\t" not in encoded


def test_plain_keys_are_not_escaped():
    assert encode_key("alice") == "alice"
    assert encode_key("❤️") == "❤️"


def test_encode_rejects_empty_key():
    with pytest.raises(ValueError):
        encode_key("")


def test_decode_leaves_stray_percent_alone():
    assert decode_key("50%off") == "50%off"
    assert decode_key("%zz") == "%zz"


def test_split_and_join_ignore_extra_slashes():
    assert split_path("/rooms//r1/channels/") == ["rooms", "r1", "channels"]
    assert join_path("rooms/r1", "/channels/", "c1") == "rooms/r1/channels/c1"
    assert join_path("") == ""


def test_is_descendant():
    assert is_descendant("rooms/r1/channels", "rooms/r1")
    assert is_descendant("rooms/r1", "rooms/r1")
    assert is_descendant("rooms", "")
    assert not is_descendant("rooms/r10", "rooms/r1")
    assert not is_descendant("rooms", "rooms/r1")


def test_push_ids_sort_by_creation_time():
    gen = PushIdGenerator()
    first = gen(1_000)
    second = gen(2_000)
    assert len(first) == len(second) == 20
    assert first < second


def test_push_ids_are_monotonic_within_one_millisecond():
    gen = PushIdGenerator()
    ids = [gen(5_000) for _ in range(200)]
    assert ids == sorted(ids)
    assert len(set(ids)) == len(ids)


@pytest.mark.parametrize("segment", ["%FF", "ok%C3", "%E2%9D"])
def test_decode_rejects_invalid_utf8(segment):
    with pytest.raises(ValueError, match="undecodable"):
        decode_key(segment)
