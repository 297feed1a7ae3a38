import hashlib

import pytest

from keyward.service.codec import (
    CodecError,
    base32_decode,
    base32_encode,
    hash_token,
    random_bytes,
    random_token,
)


def test_random_bytes_length_and_uniqueness():
    first = random_bytes(20)
    assert len(first) == 20
    assert first != random_bytes(20)


@pytest.mark.parametrize("count", [0, -1])
def test_random_bytes_rejects_non_positive(count):
    with pytest.raises(ValueError):
        random_bytes(count)


def test_random_token_is_hex_of_requested_entropy():
    token = random_token(32)
    assert len(token) == 64
    int(token, 16)


def test_base32_encode_strips_padding():
    assert base32_encode(b"12345678901234567890") == "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
    assert base32_encode(b"f") == "MY"


def test_base32_decode_accepts_lowercase_spaces_and_missing_padding():
    assert base32_decode("my") == b"f"
    assert base32_decode("MY======") == b"f"
    assert base32_decode("gezd gnbv gy3t qojq gezd gnbv gy3t qojq") == b"12345678901234567890"


@pytest.mark.parametrize("value", ["", "MZ1", "AB!C", "====MY"])
def test_base32_decode_rejects_invalid_input(value):
    with pytest.raises(CodecError):
        base32_decode(value)


def test_hash_token_is_sha256_hex():
    assert hash_token("abc") == hashlib.sha256(b"abc").hexdigest()
    assert hash_token("abc") != hash_token("abd")
