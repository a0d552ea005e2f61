from __future__ import annotations

import base64
import json
from datetime import datetime, timezone

import pytest

from eventlens.query_token import QueryTokenError, cache_key_for, decode_query_token, encode_query_token


def test_cache_key_is_a_pure_function_of_the_pair() -> None:
    key = cache_key_for("ord_uvw789", "orderId")

    assert key == cache_key_for("ord_uvw789", "orderId")
    assert len(key) == 16
    int(key, 16)
    assert key != cache_key_for("ord_uvw789", "requestId")
    assert key != cache_key_for("ord_uvw780", "orderId")


def test_tokens_differ_over_time_but_share_the_cache_key() -> None:
    first = encode_query_token("ord_uvw789", "orderId", now=datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc))
    second = encode_query_token("ord_uvw789", "orderId", now=datetime(2024, 5, 1, 11, 0, tzinfo=timezone.utc))

    assert first != second
    assert decode_query_token(first).cache_key == decode_query_token(second).cache_key


def test_decode_restores_search_parameters() -> None:
    token = encode_query_token("alice@example.com", "email", now=datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc))

    decoded = decode_query_token(token)

    assert decoded.identifier == "alice@example.com"
    assert decoded.identifier_type == "email"
    assert decoded.timestamp == "2024-05-01T10:00:00Z"
    assert decoded.cache_key == cache_key_for("alice@example.com", "email")


def test_decode_accepts_standard_base64() -> None:
    body = {"identifier": "ord_1", "identifierType": "orderId", "timestamp": "2024-05-01T10:00:00.000Z"}
    token = base64.b64encode(json.dumps(body).encode("utf-8")).decode("ascii")

    decoded = decode_query_token(token)

    assert decoded.identifier == "ord_1"
    assert decoded.cache_key == cache_key_for("ord_1", "orderId")


@pytest.mark.parametrize(
    "token",
    [
        "",
        "not base64!",
        base64.b64encode(b"not json").decode("ascii"),
        base64.b64encode(b"[1, 2]").decode("ascii"),
        base64.b64encode(json.dumps({"identifier": "ord_1"}).encode("utf-8")).decode("ascii"),
    ],
)
def test_decode_rejects_invalid_tokens(token: str) -> None:
    with pytest.raises(QueryTokenError):
        decode_query_token(token)
