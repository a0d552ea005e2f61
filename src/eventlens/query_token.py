"""Opaque, replayable tokens describing an exact identifier search."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone


class QueryTokenError(ValueError):
    """Raised when a query token cannot be decoded."""


def cache_key_for(identifier: str, identifier_type: str) -> str:
    """Return the 16 hex character key shared by every search for the same pair."""

    canonical = json.dumps(
        {"identifier": identifier, "identifierType": identifier_type},
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


@dataclass(slots=True, frozen=True)
class QueryToken:
    identifier: str
    identifier_type: str
    timestamp: str
    cache_key: str


def encode_query_token(
    identifier: str,
    identifier_type: str,
    *,
    now: datetime | None = None,
) -> str:
    moment = now or datetime.now(timezone.utc)
    body = {
        "identifier": identifier,
        "identifierType": identifier_type,
        "timestamp": moment.isoformat().replace("+00:00", "Z"),
        "cacheKey": cache_key_for(identifier, identifier_type),
    }
    raw = json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_query_token(token: str) -> QueryToken:
    """Decode a token produced by :func:`encode_query_token`.

    Both the URL-safe and the standard base64 alphabets are accepted.
    """

    if not token or not token.strip():
        raise QueryTokenError("Query token is empty")

    text = token.strip().replace("-", "+").replace("_", "/")
    text += "=" * (-len(text) % 4)
    try:
        body = json.loads(base64.b64decode(text, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise QueryTokenError(f"Invalid query token: {exc}") from exc

    if not isinstance(body, dict):
        raise QueryTokenError("Invalid query token: expected an object")
    identifier = body.get("identifier")
    identifier_type = body.get("identifierType")
    if not isinstance(identifier, str) or not identifier:
        raise QueryTokenError("Invalid query token: missing identifier")
    if not isinstance(identifier_type, str) or not identifier_type:
        raise QueryTokenError("Invalid query token: missing identifierType")

    return QueryToken(
        identifier=identifier,
        identifier_type=identifier_type,
        timestamp=str(body.get("timestamp") or ""),
        cache_key=str(body.get("cacheKey") or cache_key_for(identifier, identifier_type)),
    )
