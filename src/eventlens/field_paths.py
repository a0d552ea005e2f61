"""Expand an identifier type into the document field paths that may carry it.

Events arrive from many producers and the same business key shows up as
``order_id``, ``orderId``, ``order-id`` or ``OrderId``, either at the top level
or nested under ``metadata``/``object``/``correlation``/``actor``.  The
resolver combines naming conventions, container prefixes, a small alias table
and explicit per-type overrides into one deterministic candidate list.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

_WORD_RE = re.compile(r"[A-Z]?[a-z0-9]+|[A-Z]+(?![a-z])")

DEFAULT_METADATA_PATHS: tuple[str, ...] = ("metadata",)
DEFAULT_OBJECT_PATHS: tuple[str, ...] = ("object", "correlation", "actor")
DEFAULT_ALIASES: Mapping[str, str] = {"shipmentId": "resourceId"}


def split_words(value: str) -> list[str]:
    """Split an identifier written in any supported case style into words."""

    return _WORD_RE.findall(value)


def to_snake_case(value: str) -> str:
    return "_".join(word.lower() for word in split_words(value))


def to_kebab_case(value: str) -> str:
    return "-".join(word.lower() for word in split_words(value))


def to_camel_case(value: str) -> str:
    words = split_words(value)
    if not words:
        return ""
    head, *tail = words
    return head.lower() + "".join(word.capitalize() for word in tail)


def to_pascal_case(value: str) -> str:
    return "".join(word.capitalize() for word in split_words(value))


def _unique(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


@dataclass(slots=True)
class FieldMappingConfig:
    """Naming conventions and containers used to build candidate field paths."""

    explicit: dict[str, list[str]] = field(default_factory=dict)
    snake_case: bool = True
    camel_case: bool = True
    kebab_case: bool = True
    pascal_case: bool = True
    metadata_paths: Sequence[str] = DEFAULT_METADATA_PATHS
    object_paths: Sequence[str] = DEFAULT_OBJECT_PATHS
    aliases: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_ALIASES))


class FieldPathResolver:
    """Resolve identifier types (``orderId``, ``traceId`` ...) to field paths."""

    def __init__(self, config: FieldMappingConfig | None = None) -> None:
        self._config = config or FieldMappingConfig()

    @property
    def config(self) -> FieldMappingConfig:
        return self._config

    def leaf_names(self, identifier_type: str) -> list[str]:
        """Return the field names produced by each enabled naming convention."""

        config = self._config
        names: list[str] = []
        if config.snake_case:
            names.append(to_snake_case(identifier_type))
        if config.camel_case:
            names.append(to_camel_case(identifier_type))
        if config.kebab_case:
            names.append(to_kebab_case(identifier_type))
        if config.pascal_case:
            names.append(to_pascal_case(identifier_type))
        return _unique(names)

    def resolve_paths(self, identifier_type: str) -> list[str]:
        """Return every field path that might hold a value of ``identifier_type``.

        Explicit overrides win outright. An empty list means no field can match.
        """

        config = self._config
        explicit = config.explicit.get(identifier_type)
        if explicit:
            return _unique(explicit)

        names = self.leaf_names(identifier_type)
        if names:
            # The identifier type as written is a field name too (``orderID``).
            names = _unique([*names, identifier_type])
        paths = list(names)
        for container in config.metadata_paths:
            paths.extend(f"{container}.{name}" for name in names)
        for container in config.object_paths:
            paths.extend(f"{container}.{name}" for name in names)

        alias = config.aliases.get(identifier_type)
        if alias:
            alias_names: list[str] = []
            if config.camel_case:
                alias_names.append(to_camel_case(alias))
            if config.snake_case:
                alias_names.append(to_snake_case(alias))
            for container in config.object_paths:
                paths.extend(f"{container}.{name}" for name in _unique(alias_names))

        return _unique(paths)
