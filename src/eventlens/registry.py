"""Per-tenant metadata field-type registry and its read-through cache."""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

from .observability import MetricsRecorder

logger = logging.getLogger(__name__)


class MetadataType(str, Enum):
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    KEYWORD = "keyword"
    TEXT = "text"


class PromotionTarget(str, Enum):
    META_NUM = "meta_num"
    META_DATE = "meta_date"
    META_BOOL = "meta_bool"
    META_KW = "meta_kw"
    META_TEXT = "meta_text"


PROMOTION_FOR_TYPE: Mapping[MetadataType, PromotionTarget] = {
    MetadataType.NUMBER: PromotionTarget.META_NUM,
    MetadataType.DATE: PromotionTarget.META_DATE,
    MetadataType.BOOLEAN: PromotionTarget.META_BOOL,
    MetadataType.KEYWORD: PromotionTarget.META_KW,
    MetadataType.TEXT: PromotionTarget.META_TEXT,
}


class RegistryValidationError(ValueError):
    """Raised when a registry entry is malformed or internally inconsistent."""


class RegistryConflictError(RegistryValidationError):
    """Raised when registering a key that already exists for the tenant."""


class RegistryKeyNotFoundError(KeyError):
    """Raised when deleting a key the tenant never registered."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "metadata key not found"


def _parse_type(value: Any) -> MetadataType:
    try:
        return MetadataType(value)
    except ValueError:
        allowed = ", ".join(item.value for item in MetadataType)
        raise RegistryValidationError(f"Invalid metadata type {value!r}; expected one of: {allowed}") from None


def _parse_promotion(value: Any) -> PromotionTarget:
    try:
        return PromotionTarget(value)
    except ValueError:
        allowed = ", ".join(item.value for item in PromotionTarget)
        raise RegistryValidationError(
            f"Invalid promotion target {value!r}; expected one of: {allowed}"
        ) from None


def check_promotion(metadata_type: MetadataType, promote_to: PromotionTarget) -> None:
    """Raise when ``promote_to`` is not the namespace that stores ``metadata_type``."""

    expected = PROMOTION_FOR_TYPE[metadata_type]
    if promote_to is not expected:
        raise RegistryValidationError(
            f"promoteTo ({promote_to.value}) does not match type ({metadata_type.value}). "
            f"Expected: {expected.value}"
        )


@dataclass(slots=True, frozen=True)
class RegistryEntry:
    """Declared type and typed namespace of one tenant metadata key."""

    tenant_id: str
    key: str
    type: MetadataType
    promote_to: PromotionTarget
    constraints: dict[str, Any] | None = None
    created_at: str | None = None

    def __post_init__(self) -> None:
        if not self.key or not self.key.strip():
            raise RegistryValidationError("key must be a non-empty string")
        object.__setattr__(self, "type", _parse_type(self.type))
        object.__setattr__(self, "promote_to", _parse_promotion(self.promote_to))
        check_promotion(self.type, self.promote_to)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RegistryEntry":
        return cls(
            tenant_id=str(data.get("tenant_id") or data.get("tenantId") or ""),
            key=str(data.get("key") or ""),
            type=data.get("type"),
            promote_to=data.get("promote_to") or data.get("promoteTo"),
            constraints=data.get("constraints") or data.get("constraintsJson"),
            created_at=data.get("created_at") or data.get("createdAt"),
        )

    def to_dict(self) -> dict[str, Any]:
        record = asdict(self)
        record["type"] = self.type.value
        record["promote_to"] = self.promote_to.value
        return record


class RegistryLookup(Protocol):
    def get_registry_for_tenant(self, tenant_id: str) -> Mapping[str, Any]: ...


class MetadataRegistryStore:
    """File-based registry of typed metadata keys, one JSON document per tenant."""

    _SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]")

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def list_keys(self, tenant_id: str) -> list[RegistryEntry]:
        with self._lock:
            return self._read(tenant_id)

    def get_registry_for_tenant(self, tenant_id: str) -> dict[str, RegistryEntry]:
        return {entry.key: entry for entry in self.list_keys(tenant_id)}

    def register_key(
        self,
        tenant_id: str,
        key: str,
        metadata_type: MetadataType | str,
        constraints: dict[str, Any] | None = None,
        promote_to: PromotionTarget | str | None = None,
    ) -> RegistryEntry:
        """Register ``key`` for the tenant, deriving the promotion target from the type."""

        parsed_type = _parse_type(metadata_type)
        target = _parse_promotion(promote_to) if promote_to else PROMOTION_FOR_TYPE[parsed_type]
        entry = RegistryEntry(
            tenant_id=tenant_id,
            key=key,
            type=parsed_type,
            promote_to=target,
            constraints=constraints,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        with self._lock:
            entries = self._read(tenant_id)
            if any(existing.key == key for existing in entries):
                raise RegistryConflictError(f'Metadata key "{key}" already exists for this tenant')
            entries.append(entry)
            self._write(tenant_id, entries)
        logger.info(
            "registry.key.registered tenant=%s key=%s type=%s promote_to=%s",
            tenant_id,
            key,
            entry.type.value,
            entry.promote_to.value,
        )
        return entry

    def delete_key(self, tenant_id: str, key: str) -> None:
        with self._lock:
            entries = self._read(tenant_id)
            remaining = [entry for entry in entries if entry.key != key]
            if len(remaining) == len(entries):
                raise RegistryKeyNotFoundError(f'Metadata key "{key}" not found for this tenant')
            self._write(tenant_id, remaining)
        logger.info("registry.key.deleted tenant=%s key=%s", tenant_id, key)

    def _path(self, tenant_id: str) -> Path:
        safe = self._SAFE_NAME_RE.sub("_", tenant_id.strip()) or "_"
        return self._root / f"{safe}.json"

    def _read(self, tenant_id: str) -> list[RegistryEntry]:
        path = self._path(tenant_id)
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8") as handle:
            items = json.load(handle)
        return [RegistryEntry.from_dict(item) for item in items]

    def _write(self, tenant_id: str, entries: list[RegistryEntry]) -> None:
        path = self._path(tenant_id)
        tmp_path = path.with_suffix(".json.tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump([entry.to_dict() for entry in entries], handle, indent=2)
        tmp_path.replace(path)


@dataclass(slots=True)
class _CachedRegistry:
    registry: dict[str, RegistryEntry]
    captured_at: float


class TenantRegistryCache:
    """Read-through cache of tenant registries bounded by age and entry count.

    Expired entries are always dropped first; if the cache is still above
    ``max_entries`` the entries captured earliest go next. Lookups for
    different tenants proceed independently: the shared lock only guards
    in-memory bookkeeping and is never held while the lookup runs.
    """

    def __init__(
        self,
        lookup: RegistryLookup | None,
        *,
        ttl_seconds: float = 300.0,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be a positive integer")
        self._lookup = lookup
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._metrics = metrics
        self._entries: dict[str, _CachedRegistry] = {}
        self._guard = threading.Lock()
        self._fetch_locks: dict[str, threading.Lock] = {}
        # Bumped by invalidate/clear; a fetch started before a bump is not cached.
        self._generation = 0

    @property
    def enabled(self) -> bool:
        return self._lookup is not None

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def __contains__(self, tenant_id: object) -> bool:
        with self._guard:
            return tenant_id in self._entries

    def get_registry(self, tenant_id: str) -> dict[str, RegistryEntry] | None:
        """Return the tenant's registry, or ``None`` when no lookup is configured."""

        if self._lookup is None:
            return None

        with self._guard:
            self._evict(self._clock())
            cached = self._entries.get(tenant_id)
            if cached is not None:
                self._count("registry.cache.hit")
                return cached.registry
            fetch_lock = self._fetch_locks.setdefault(tenant_id, threading.Lock())

        with fetch_lock:
            with self._guard:
                cached = self._entries.get(tenant_id)
                if cached is not None and not self._expired(cached, self._clock()):
                    self._count("registry.cache.hit")
                    return cached.registry
                generation = self._generation

            self._count("registry.cache.miss")
            try:
                registry = self._normalize(tenant_id, self._lookup.get_registry_for_tenant(tenant_id))
                captured_at = self._clock()
                with self._guard:
                    if generation == self._generation:
                        self._entries[tenant_id] = _CachedRegistry(registry=registry, captured_at=captured_at)
                    self._evict(captured_at)
            finally:
                with self._guard:
                    self._fetch_locks.pop(tenant_id, None)
        logger.debug("registry.cache.loaded tenant=%s keys=%s", tenant_id, len(registry))
        return registry

    def invalidate(self, tenant_id: str) -> None:
        with self._guard:
            self._entries.pop(tenant_id, None)
            self._generation += 1

    def clear(self) -> None:
        with self._guard:
            self._entries.clear()
            self._generation += 1

    def _expired(self, cached: _CachedRegistry, now: float) -> bool:
        return now - cached.captured_at > self._ttl

    def _evict(self, now: float) -> None:
        for tenant_id in [key for key, cached in self._entries.items() if self._expired(cached, now)]:
            del self._entries[tenant_id]

        overflow = len(self._entries) - self._max_entries
        if overflow > 0:
            oldest = sorted(self._entries.items(), key=lambda item: item[1].captured_at)
            for tenant_id, _ in oldest[:overflow]:
                del self._entries[tenant_id]

    @staticmethod
    def _normalize(tenant_id: str, raw: Mapping[str, Any] | None) -> dict[str, RegistryEntry]:
        registry: dict[str, RegistryEntry] = {}
        for key, value in (raw or {}).items():
            if isinstance(value, RegistryEntry):
                registry[key] = value
            else:
                data = {"tenant_id": tenant_id, "key": key, **dict(value)}
                registry[key] = RegistryEntry.from_dict(data)
        return registry

    def _count(self, metric: str) -> None:
        if self._metrics is not None:
            self._metrics.increment(metric)
