"""Activity event and log chunk records accepted by the indexer."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Final, Mapping, Sequence

ACTIVITY_EVENT_SCHEMA_VERSION: Final[str] = "1.0.0"

CATEGORIES: Final[frozenset[str]] = frozenset(
    {"tech", "logistics", "finance", "security", "support", "product", "ops", "hr", "unknown"}
)
OUTCOMES: Final[frozenset[str]] = frozenset({"success", "failure", "unknown"})

_ACTOR_FIELDS: Final[frozenset[str]] = frozenset({"userId", "emailHash", "serviceName", "role"})
_OBJECT_FIELDS: Final[frozenset[str]] = frozenset(
    {"orderId", "requestId", "sessionId", "ticketId", "resourceId"}
)
_CORRELATION_FIELDS: Final[frozenset[str]] = frozenset(
    {"traceId", "spanId", "correlationId", "parentEventId"}
)
_EVENT_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "schemaVersion",
        "tenantId",
        "eventId",
        "occurredAt",
        "category",
        "action",
        "outcome",
        "source",
        "actor",
        "object",
        "correlation",
        "title",
        "summary",
        "message",
        "metadata",
        "embedding",
    }
)

# Read-side fallbacks for documents written before canonical fields existed.
TIMESTAMP_FIELDS: Final[tuple[str, ...]] = ("timestamp", "occurredAt")
LEVEL_FIELDS: Final[tuple[str, ...]] = ("level", "outcome")
SERVICE_FIELDS: Final[tuple[str, ...]] = ("service", "source")


class ActivityEventValidationError(ValueError):
    """Raised when a raw activity event does not satisfy the event schema."""

    def __init__(self, problems: Sequence[str]) -> None:
        self.problems = list(problems)
        super().__init__("Invalid activity event: " + "; ".join(self.problems))


def parse_iso_datetime(value: str) -> datetime:
    """Parse an ISO-8601 string, accepting a trailing ``Z``."""

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def first_present(payload: Mapping[str, Any], fields: Sequence[str]) -> Any:
    for name in fields:
        value = payload.get(name)
        if value not in (None, ""):
            return value
    return None


@dataclass(slots=True)
class ActivityEvent:
    """A business activity emitted by an upstream producer."""

    tenant_id: str
    event_id: str
    occurred_at: str
    category: str
    action: str
    outcome: str
    source: str
    schema_version: str = ACTIVITY_EVENT_SCHEMA_VERSION
    actor: dict[str, str] | None = None
    object: dict[str, str] | None = None
    correlation: dict[str, str] | None = None
    title: str | None = None
    summary: str | None = None
    message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: list[float] | None = None

    @property
    def partition_day(self) -> str:
        return parse_iso_datetime(self.occurred_at).strftime("%Y-%m-%d")

    def embedding_text(self) -> str:
        """Text used to embed the event when no vector was supplied."""

        parts = [self.title, self.summary, self.message, f"{self.action} {self.outcome}"]
        return "\n".join(part for part in parts if part)


@dataclass(slots=True)
class LogChunk:
    """A single log line or knowledge-base passage stored in the main index."""

    id: str
    timestamp: str
    level: str
    service: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)


def _check_uuid(value: Any, name: str, problems: list[str]) -> None:
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError):
        problems.append(f"{name} must be a UUID")


def _check_sub_object(
    data: Mapping[str, Any], name: str, allowed: frozenset[str], problems: list[str]
) -> dict[str, str] | None:
    value = data.get(name)
    if value is None:
        return None
    if not isinstance(value, Mapping):
        problems.append(f"{name} must be an object")
        return None
    unknown = sorted(set(value) - allowed)
    if unknown:
        problems.append(f"{name} has unknown fields: {', '.join(unknown)}")
    for key, item in value.items():
        if item is not None and not isinstance(item, str):
            problems.append(f"{name}.{key} must be a string")
    if name == "correlation" and value.get("parentEventId") is not None:
        _check_uuid(value["parentEventId"], "correlation.parentEventId", problems)
    return {key: item for key, item in value.items() if item is not None}


def validate_activity_event(data: Mapping[str, Any]) -> ActivityEvent:
    """Validate a wire-format (camelCase) event and build an :class:`ActivityEvent`."""

    problems: list[str] = []
    unknown = sorted(set(data) - _EVENT_FIELDS)
    if unknown:
        problems.append(f"unknown fields: {', '.join(unknown)}")

    if data.get("schemaVersion") != ACTIVITY_EVENT_SCHEMA_VERSION:
        problems.append(f"schemaVersion must be {ACTIVITY_EVENT_SCHEMA_VERSION!r}")
    _check_uuid(data.get("tenantId"), "tenantId", problems)
    _check_uuid(data.get("eventId"), "eventId", problems)

    occurred_at = data.get("occurredAt")
    try:
        if not isinstance(occurred_at, str) or "T" not in occurred_at:
            raise ValueError(occurred_at)
        parse_iso_datetime(occurred_at)
    except ValueError:
        problems.append("occurredAt must be a valid ISO 8601 datetime string")

    if data.get("category") not in CATEGORIES:
        problems.append(f"category must be one of: {', '.join(sorted(CATEGORIES))}")
    if data.get("outcome") not in OUTCOMES:
        problems.append(f"outcome must be one of: {', '.join(sorted(OUTCOMES))}")
    for name in ("action", "source"):
        value = data.get(name)
        if not isinstance(value, str) or not value:
            problems.append(f"{name} must be a non-empty string")

    actor = _check_sub_object(data, "actor", _ACTOR_FIELDS, problems)
    obj = _check_sub_object(data, "object", _OBJECT_FIELDS, problems)
    correlation = _check_sub_object(data, "correlation", _CORRELATION_FIELDS, problems)

    metadata = data.get("metadata")
    if metadata is not None and not isinstance(metadata, Mapping):
        problems.append("metadata must be an object")

    if problems:
        raise ActivityEventValidationError(problems)

    return ActivityEvent(
        tenant_id=str(data["tenantId"]),
        event_id=str(data["eventId"]),
        occurred_at=occurred_at,
        category=data["category"],
        action=data["action"],
        outcome=data["outcome"],
        source=data["source"],
        schema_version=data["schemaVersion"],
        actor=actor,
        object=obj,
        correlation=correlation,
        title=data.get("title"),
        summary=data.get("summary"),
        message=data.get("message"),
        metadata=dict(metadata or {}),
        embedding=list(data["embedding"]) if data.get("embedding") is not None else None,
    )
