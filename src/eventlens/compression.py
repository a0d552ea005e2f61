"""Pattern-based reduction of large event timelines into a bounded digest."""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, List, Mapping, Sequence

logger = logging.getLogger(__name__)

DEFAULT_BUDGET = 30
CLUSTER_MIN_SIZE = 3
CRITICAL_LEVELS = frozenset({"error", "critical", "failure"})

SELECTION_LABEL = "pattern-compressed (critical events + patterns + temporal distribution)"

# Applied in order; earlier masks must win over later, broader ones.
_MASKS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"\b[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}\b", re.IGNORECASE),
        "<uuid>",
    ),
    (re.compile(r"\b[0-9a-f]{32,}\b", re.IGNORECASE), "<hash>"),
    (re.compile(r"\b\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}"), "<timestamp>"),
    (re.compile(r"\b[\w.-]+@[\w.-]+\.\w+\b"), "<email>"),
    (
        re.compile(r"\b(?:ord_|req_|ship_|ticket_|trace_|checkout_|user_)[a-z0-9_]+\b", re.IGNORECASE),
        "<id>",
    ),
    (re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"), "<ip>"),
    (re.compile(r"\b\d+\b"), "<number>"),
)


@dataclass(slots=True)
class StoryEvent:
    """The fields of a hit needed to tell an identifier's story."""

    id: str
    timestamp: str
    level: str
    service: str
    message: str

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "StoryEvent":
        return cls(
            id=str(data.get("id") or ""),
            timestamp=str(data.get("timestamp") or ""),
            level=str(data.get("level") or ""),
            service=str(data.get("service") or ""),
            message=str(data.get("message") or ""),
        )

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


@dataclass(slots=True)
class PatternCluster:
    pattern: str
    members: List[StoryEvent]

    @property
    def count(self) -> int:
        return len(self.members)

    @property
    def samples(self) -> List[StoryEvent]:
        """First, middle and last member, without repeats."""

        picks = (0, len(self.members) // 2, len(self.members) - 1)
        seen: set[int] = set()
        samples = []
        for position in picks:
            if position not in seen:
                seen.add(position)
                samples.append(self.members[position])
        return samples


@dataclass(slots=True)
class PatternCompression:
    clusters: List[PatternCluster] = field(default_factory=list)
    uncategorized: List[StoryEvent] = field(default_factory=list)


def extract_pattern(message: str) -> str:
    """Mask dynamic values so messages with the same shape share one signature."""

    for regex, placeholder in _MASKS:
        message = regex.sub(placeholder, message)
    return message


def is_critical(event: StoryEvent) -> bool:
    return event.level.lower() in CRITICAL_LEVELS


def sort_events_by_timestamp(events: Iterable[StoryEvent]) -> List[StoryEvent]:
    return sorted(events, key=lambda event: event.timestamp)


def cluster_by_pattern(events: Sequence[StoryEvent]) -> PatternCompression:
    """Group events by message signature.

    Groups of at least three become clusters; smaller groups are returned as
    uncategorized events, in first-seen order.
    """

    groups: dict[str, list[StoryEvent]] = {}
    for event in events:
        groups.setdefault(extract_pattern(event.message), []).append(event)

    result = PatternCompression()
    for pattern, members in groups.items():
        if len(members) >= CLUSTER_MIN_SIZE:
            result.clusters.append(PatternCluster(pattern=pattern, members=members))
        else:
            result.uncategorized.extend(members)
    return result


def _strided(positions: Sequence[int], slots: int) -> list[int]:
    if slots <= 0 or not positions:
        return []
    step = max(1, len(positions) // slots)
    return list(positions[::step])


def select_representative(
    events: Sequence[StoryEvent],
    budget: int = DEFAULT_BUDGET,
) -> List[StoryEvent]:
    """Pick at most ``budget`` events that still tell the whole story.

    Critical events come first, then the opening events, cluster samples,
    uncategorized events, the closing events and a spread over the middle of
    the timeline. Remaining slots are filled evenly from whatever was not yet
    picked. The result keeps the input order.
    """

    if budget <= 0:
        return []
    if len(events) <= budget:
        return list(events)

    total = len(events)
    position_of = {id(event): index for index, event in enumerate(events)}
    chosen: set[int] = set()

    def take(positions: Iterable[int]) -> None:
        for position in positions:
            if len(chosen) >= budget:
                return
            chosen.add(position)

    compression = cluster_by_pattern(events)

    take(index for index, event in enumerate(events) if is_critical(event))
    take(range(min(3, total)))
    for cluster in compression.clusters:
        if len(chosen) >= budget:
            break
        take(position_of[id(sample)] for sample in cluster.samples)
    take(position_of[id(event)] for event in compression.uncategorized)
    take(range(max(0, total - 3), total))

    middle = [
        index for index in range(int(total * 0.3), int(total * 0.7)) if index not in chosen
    ]
    take(_strided(middle, budget - len(chosen)))

    rest = [index for index in range(total) if index not in chosen]
    while rest and len(chosen) < budget:
        take(_strided(rest, budget - len(chosen)))
        rest = [index for index in rest if index not in chosen]

    return [events[index] for index in sorted(chosen)]


@dataclass(slots=True)
class Digest:
    """Bounded, consumer-friendly view of an exact-search timeline."""

    total: int
    events: List[StoryEvent]
    level_distribution: dict[str, int]
    service_distribution: dict[str, int]
    critical_count: int
    compressed: bool = False
    clusters: List[PatternCluster] = field(default_factory=list)
    unique_events: int = 0
    time_range: dict[str, str | None] = field(default_factory=dict)
    query_token: str | None = None
    truncated: bool = False

    @property
    def shown(self) -> int:
        return len(self.events)

    @property
    def omitted(self) -> int:
        return self.total - self.shown

    def to_dict(self) -> dict[str, Any]:
        statistics = {
            "level_distribution": dict(self.level_distribution),
            "service_distribution": dict(self.service_distribution),
            "critical_count": self.critical_count,
        }
        if not self.compressed:
            return {
                "total": self.total,
                "events": [event.to_dict() for event in self.events],
                "query_token": self.query_token,
                "truncated": self.truncated,
                "statistics": statistics,
            }
        return {
            "total": self.total,
            "shown": self.shown,
            "selection": SELECTION_LABEL,
            "time_range": dict(self.time_range),
            "events": [event.to_dict() for event in self.events],
            "patterns": [
                {"pattern": cluster.pattern, "count": cluster.count, "sample": cluster.members[0].to_dict()}
                for cluster in self.clusters
            ],
            "summary": {
                "omitted": self.omitted,
                "patterns_compressed": len(self.clusters),
                "unique_events": self.unique_events,
                "note": (
                    f"Selected {self.shown} representative events from {self.total} total. "
                    "Includes all critical events, pattern summaries, and evenly distributed "
                    "samples across the timeline."
                ),
            },
            "statistics": statistics,
            "query_token": self.query_token,
            "truncated": self.truncated,
        }


def build_digest(
    events: Sequence[StoryEvent],
    budget: int = DEFAULT_BUDGET,
    *,
    query_token: str | None = None,
    truncated: bool = False,
) -> Digest:
    """Sort, compress when over ``budget`` and describe the full timeline."""

    ordered = sort_events_by_timestamp(events)
    digest = Digest(
        total=len(ordered),
        events=ordered,
        level_distribution=dict(Counter(event.level for event in ordered)),
        service_distribution=dict(Counter(event.service for event in ordered)),
        critical_count=sum(1 for event in ordered if is_critical(event)),
        query_token=query_token,
        truncated=truncated,
    )
    if len(ordered) <= budget:
        return digest

    compression = cluster_by_pattern(ordered)
    digest.events = select_representative(ordered, budget)
    digest.compressed = True
    digest.clusters = compression.clusters
    digest.unique_events = len(compression.uncategorized)
    digest.time_range = {"start": ordered[0].timestamp, "end": ordered[-1].timestamp}
    logger.info(
        "digest.compressed total=%s shown=%s clusters=%s",
        digest.total,
        digest.shown,
        len(compression.clusters),
    )
    return digest
