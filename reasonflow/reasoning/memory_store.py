"""Process-wide memory for the reasoning pipeline.

Holds every long-lived thing the pipeline remembers between sessions:

- conversation history (bounded, older exchanges compressed into summaries)
- the conversation flow: which topics the user moved between, and why
- project state with a change history
- the user model (expertise, style, success patterns, difficulty areas)
- domain knowledge, episodic and semantic items
- a working set bounded by a fixed cognitive-load ceiling

All access goes through ``MemoryStore``'s async API under a reader/writer
lock. Size is bounded by byte and item ceilings; ``maintain()`` applies a
forgetting curve, compresses conversation, and evicts the least retained
items until the store is back under its bound.
"""

from __future__ import annotations

import math
import uuid
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger

from reasonflow.config import MemoryConfig
from reasonflow.models.persistent_store import PersistentStore
from reasonflow.reasoning.reasoning_types import ContextSource, clamp01
from reasonflow.utils.errors import MemoryOverflow
from reasonflow.utils.rwlock import AsyncRWLock
from reasonflow.utils.scoring import tokenize

# Sources that live as MemoryItems (project state and user model are singletons)
ITEM_SOURCES = (
    ContextSource.CONVERSATION,
    ContextSource.DOMAIN_KNOWLEDGE,
    ContextSource.EPISODIC,
    ContextSource.SEMANTIC,
    ContextSource.WORKING,
)

EPISODIC_KEYWORDS = ("error", "problem", "fail", "bug", "broken")
PROJECT_HISTORY_LIMIT = 50
PATTERN_LIMIT = 50
FLOW_HISTORY_LIMIT = 20

_ITEMS_NS = "memory_items"
_META_NS = "memory_meta"


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


# =============================================================================
# Records
# =============================================================================


@dataclass
class MemoryItem:
    """A single remembered thing with retention bookkeeping."""

    id: str
    kind: ContextSource
    content: str
    domain: str
    timestamp: datetime
    importance: float = 0.5
    access_count: int = 0
    last_accessed: datetime | None = None
    tags: tuple[str, ...] = ()

    @property
    def size_bytes(self) -> int:
        return len(self.content.encode())

    def retention(self, now: datetime, half_life_hours: float) -> float:
        """Forgetting-curve retention in [0, 1].

        ``importance * exp(-age / half_life)``, with each access extending
        the effective half-life by 25% up to double.
        """
        reference = self.last_accessed or self.timestamp
        age_hours = max(0.0, (now - reference).total_seconds() / 3600)
        boost = 1.0 + min(self.access_count, 4) * 0.25
        return clamp01(self.importance * math.exp(-age_hours / (half_life_hours * boost)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "content": self.content,
            "domain": self.domain,
            "timestamp": self.timestamp.isoformat(),
            "importance": self.importance,
            "access_count": self.access_count,
            "last_accessed": self.last_accessed.isoformat() if self.last_accessed else None,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryItem:
        last = data.get("last_accessed")
        return cls(
            id=data["id"],
            kind=ContextSource(data["kind"]),
            content=data["content"],
            domain=data.get("domain", "general"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            importance=float(data.get("importance", 0.5)),
            access_count=int(data.get("access_count", 0)),
            last_accessed=datetime.fromisoformat(last) if last else None,
            tags=tuple(data.get("tags", ())),
        )


@dataclass(frozen=True)
class MemoryCandidate:
    """Read-only view of a memory entry handed to context assembly."""

    id: str
    source: ContextSource
    content: str
    domain: str
    timestamp: datetime
    importance: float


@dataclass
class ProjectChange:
    timestamp: datetime
    description: str
    changes: dict[str, Any]


@dataclass
class ProjectState:
    """Current project facts plus a bounded history of what changed."""

    attributes: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None
    history: list[ProjectChange] = field(default_factory=list)

    def summary(self) -> str:
        if not self.attributes:
            return ""
        parts = [f"{k}: {v}" for k, v in sorted(self.attributes.items())]
        text = "Project state. " + "; ".join(parts)
        if self.history and self.history[-1].description:
            text += f". Last change: {self.history[-1].description}"
        return text


@dataclass(frozen=True)
class TopicTransition:
    """One switch of conversation topic between consecutive interactions."""

    from_topic: str
    to_topic: str
    trigger: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_topic": self.from_topic,
            "to_topic": self.to_topic,
            "trigger": self.trigger,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TopicTransition:
        return cls(
            from_topic=data["from_topic"],
            to_topic=data["to_topic"],
            trigger=data["trigger"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


def _transition_trigger(previous: str, current: str) -> str:
    prev_domain, _, prev_goal = previous.partition("/")
    domain, _, goal = current.partition("/")
    if prev_domain != domain and prev_goal != goal:
        return "topic_change"
    if prev_domain != domain:
        return "domain_change"
    return "goal_change"


@dataclass
class ConversationFlow:
    """Sequence of ``domain/goal`` topics the conversation has moved through.

    Coherence is the share of consecutive interactions that stayed on the
    same topic; the flow pattern is a coarse reading of it.
    """

    current_topic: str = ""
    topic_history: list[str] = field(default_factory=list)
    transitions: list[TopicTransition] = field(default_factory=list)

    def advance(self, topic: str, when: datetime) -> TopicTransition | None:
        """Move to ``topic``, recording a transition when it differs from the last one."""
        previous = self.current_topic
        self.current_topic = topic
        self.topic_history.append(topic)
        del self.topic_history[:-FLOW_HISTORY_LIMIT]
        if not previous or previous == topic:
            return None
        transition = TopicTransition(
            from_topic=previous,
            to_topic=topic,
            trigger=_transition_trigger(previous, topic),
            timestamp=when,
        )
        self.transitions.append(transition)
        del self.transitions[:-FLOW_HISTORY_LIMIT]
        return transition

    @property
    def coherence(self) -> float:
        pairs = list(zip(self.topic_history, self.topic_history[1:]))
        if not pairs:
            return 1.0
        return sum(1 for a, b in pairs if a == b) / len(pairs)

    @property
    def flow_pattern(self) -> str:
        if len(self.topic_history) < 2:
            return "opening"
        if self.coherence >= 0.7:
            return "focused"
        if self.coherence >= 0.4:
            return "branching"
        return "exploratory"

    def summary(self) -> str:
        if not self.current_topic:
            return ""
        text = f"Conversation is {self.flow_pattern}, currently on {self.current_topic}"
        if self.transitions:
            last = self.transitions[-1]
            text += f". Moved from {last.from_topic} ({last.trigger.replace('_', ' ')})"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_topic": self.current_topic,
            "topic_history": list(self.topic_history),
            "transitions": [t.to_dict() for t in self.transitions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationFlow:
        return cls(
            current_topic=data.get("current_topic", ""),
            topic_history=list(data.get("topic_history", []))[-FLOW_HISTORY_LIMIT:],
            transitions=[
                TopicTransition.from_dict(t) for t in data.get("transitions", [])
            ][-FLOW_HISTORY_LIMIT:],
        )


@dataclass
class UserModel:
    """What the pipeline has learned about its user."""

    expertise: float = 0.5
    preferred_style: str = "balanced"
    communication_style: str = "neutral"
    technical_focus: list[str] = field(default_factory=list)
    goals: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    success_patterns: dict[str, int] = field(default_factory=dict)
    difficulty_areas: dict[str, int] = field(default_factory=dict)
    interactions: int = 0
    updated_at: datetime | None = None

    @property
    def expertise_level(self) -> str:
        if self.expertise >= 0.7:
            return "expert"
        if self.expertise <= 0.3:
            return "beginner"
        return "intermediate"

    def summary(self) -> str:
        focus = ", ".join(self.technical_focus[:5]) or "none recorded"
        return (
            f"User is {self.expertise_level}, prefers {self.preferred_style} answers. "
            f"Focus: {focus}."
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserModel:
        data = dict(data)
        updated = data.pop("updated_at", None)
        model = cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})
        model.updated_at = datetime.fromisoformat(updated) if updated else None
        return model


@dataclass(frozen=True)
class MemorySnapshot:
    """Point-in-time read-only summary used by the intent analyzer."""

    user_expertise: str
    preferred_style: str
    technical_focus: tuple[str, ...]
    recent_turns: tuple[str, ...]
    known_domains: tuple[str, ...]
    project_summary: str
    item_count: int
    size_bytes: int
    current_topic: str = ""
    flow_pattern: str = "opening"


@dataclass
class MaintenanceReport:
    """What a maintenance cycle did."""

    forgotten: int = 0
    compressed: int = 0
    merged: int = 0
    evicted: int = 0
    size_before: int = 0
    size_after: int = 0
    items_before: int = 0
    items_after: int = 0
    forced: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# =============================================================================
# Store
# =============================================================================


class MemoryStore:
    """Bounded, lock-protected memory shared by all sessions.

    Args:
        config: Size bounds, capacities and half-life.
        store: Optional durable backend. When None the store is in-memory only.
        clock: Time source, injectable for tests.

    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        store: PersistentStore | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config or MemoryConfig()
        self._persistent = store
        self._clock = clock
        self._lock = AsyncRWLock()
        self._items: dict[str, MemoryItem] = {}
        self._project = ProjectState()
        self._user = UserModel()
        self._flow = ConversationFlow()
        self._dirty: set[str] = set()
        self._deleted: set[str] = set()
        self._meta_dirty = False
        self.writes = 0
        self.maintenance_runs = 0
        self.overflows = 0

    # ------------------------------------------------------------------
    # Size accounting
    # ------------------------------------------------------------------

    def size_bytes(self) -> int:
        return sum(item.size_bytes for item in self._items.values())

    def item_count(self) -> int:
        return len(self._items)

    def _items_of(self, kind: ContextSource) -> list[MemoryItem]:
        return [i for i in self._items.values() if i.kind == kind]

    @property
    def cognitive_load(self) -> float:
        """Working-set occupancy relative to its capacity."""
        capacity = max(1, self.config.working_capacity)
        return len(self._items_of(ContextSource.WORKING)) / capacity

    def needs_maintenance(self) -> bool:
        """True when the store exceeds its byte or item bound."""
        return (
            self.size_bytes() > self.config.max_bytes
            or self.item_count() > self.config.max_items
            or len(self._items_of(ContextSource.CONVERSATION)) > self.config.conversation_limit
        )

    def _check_bounds(self) -> None:
        if self.size_bytes() > self.config.max_bytes or self.item_count() > self.config.max_items:
            raise MemoryOverflow(self.size_bytes(), self.item_count())

    # ------------------------------------------------------------------
    # Internal mutation helpers (caller holds the write lock)
    # ------------------------------------------------------------------

    def _put(self, item: MemoryItem) -> None:
        self._items[item.id] = item
        self._dirty.add(item.id)
        self._deleted.discard(item.id)
        self.writes += 1

    def _drop(self, item_id: str) -> None:
        if self._items.pop(item_id, None) is not None:
            self._dirty.discard(item_id)
            self._deleted.add(item_id)
            self.writes += 1

    def _add_working(self, content: str, domain: str, importance: float) -> None:
        """Add to the working set, displacing the least important item at capacity.

        Displaced items that still matter are consolidated into episodic memory.
        """
        now = self._clock()
        self._put(
            MemoryItem(
                id=_new_id(),
                kind=ContextSource.WORKING,
                content=content,
                domain=domain,
                timestamp=now,
                importance=importance,
            )
        )
        working = self._items_of(ContextSource.WORKING)
        while len(working) > self.config.working_capacity:
            victim = min(working, key=lambda i: (i.importance, i.timestamp))
            working.remove(victim)
            self._drop(victim.id)
            if victim.importance >= 0.5:
                self._put(
                    MemoryItem(
                        id=_new_id(),
                        kind=ContextSource.EPISODIC,
                        content=victim.content,
                        domain=victim.domain,
                        timestamp=victim.timestamp,
                        importance=victim.importance * 0.9,
                        tags=("consolidated",),
                    )
                )

    def _enforce_bounds(self) -> None:
        """Force compression on overflow. Never raises."""
        try:
            self._check_bounds()
        except MemoryOverflow as e:
            self.overflows += 1
            logger.warning(f"{e}; forcing compression")
            self._compress(force=True)

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    async def store_interaction(
        self,
        user_text: str,
        response_text: str,
        *,
        domain: str = "general",
        goal: str = "",
        quality: float = 0.5,
        session_id: str | None = None,
    ) -> TopicTransition | None:
        """Record one request/response exchange.

        The exchange always enters conversation history and the working set.
        It is also kept as an episode when it was high quality, when the
        working set is under load, or when it talks about errors or problems.

        Returns:
            The topic transition the exchange caused, if the ``domain/goal``
            topic differs from the previous exchange.

        """
        async with self._lock.write():
            now = self._clock()
            tags = (session_id,) if session_id else ()
            self._put(
                MemoryItem(
                    id=_new_id(),
                    kind=ContextSource.CONVERSATION,
                    content=f"User: {user_text}",
                    domain=domain,
                    timestamp=now,
                    importance=0.4,
                    tags=tags,
                )
            )
            self._put(
                MemoryItem(
                    id=_new_id(),
                    kind=ContextSource.CONVERSATION,
                    content=f"Assistant: {response_text}",
                    domain=domain,
                    timestamp=now,
                    importance=clamp01(0.3 + 0.4 * quality),
                    tags=tags,
                )
            )
            self._add_working(user_text, domain, importance=clamp01(0.5 + 0.3 * quality))

            lowered = f"{user_text} {response_text}".lower()
            if (
                quality > 0.8
                or self.cognitive_load > 0.7
                or any(word in lowered for word in EPISODIC_KEYWORDS)
            ):
                self._put(
                    MemoryItem(
                        id=_new_id(),
                        kind=ContextSource.EPISODIC,
                        content=f"{user_text} -> {response_text}",
                        domain=domain,
                        timestamp=now,
                        importance=clamp01(0.5 + 0.4 * quality),
                        tags=tags,
                    )
                )

            transition = self._flow.advance(f"{domain}/{goal or 'general'}", now)
            if transition is not None:
                logger.debug(
                    f"Topic {transition.from_topic} -> {transition.to_topic} ({transition.trigger})"
                )

            self._user.interactions += 1
            self._user.updated_at = now
            self._meta_dirty = True
            self._enforce_bounds()
            return transition

    async def add_knowledge(
        self,
        content: str,
        *,
        domain: str = "general",
        importance: float = 0.6,
        semantic: bool = False,
    ) -> str:
        """Store a domain fact or a general semantic item.

        A semantic item whose content duplicates an existing one is merged
        into it instead of stored twice.

        Returns:
            Id of the stored (or merged-into) item.

        """
        kind = ContextSource.SEMANTIC if semantic else ContextSource.DOMAIN_KNOWLEDGE
        async with self._lock.write():
            normalized = " ".join(content.lower().split())
            for existing in self._items_of(kind):
                if " ".join(existing.content.lower().split()) == normalized:
                    existing.importance = clamp01(max(existing.importance, importance) + 0.05)
                    existing.access_count += 1
                    self._dirty.add(existing.id)
                    self.writes += 1
                    return existing.id
            item = MemoryItem(
                id=_new_id(),
                kind=kind,
                content=content,
                domain=domain,
                timestamp=self._clock(),
                importance=clamp01(importance),
            )
            self._put(item)
            self._enforce_bounds()
            return item.id

    async def update_project_state(
        self, updates: dict[str, Any], description: str = ""
    ) -> list[str]:
        """Merge ``updates`` into project state, recording what changed.

        Returns:
            Keys whose values actually changed. Nothing is recorded when empty.

        """
        async with self._lock.write():
            changed = {
                k: v for k, v in updates.items() if self._project.attributes.get(k, object()) != v
            }
            if not changed:
                return []
            now = self._clock()
            self._project.attributes.update(changed)
            self._project.updated_at = now
            self._project.history.append(
                ProjectChange(
                    timestamp=now,
                    description=description or f"updated {', '.join(sorted(changed))}",
                    changes=changed,
                )
            )
            del self._project.history[:-PROJECT_HISTORY_LIMIT]
            self._meta_dirty = True
            self.writes += 1
            return sorted(changed)

    async def learn_from_interaction(self, domain: str, pattern: str, success: bool) -> None:
        """Record a success pattern or a difficulty area in the user model."""
        async with self._lock.write():
            bucket = self._user.success_patterns if success else self._user.difficulty_areas
            key = f"{domain}:{pattern}"
            bucket[key] = bucket.get(key, 0) + 1
            if len(bucket) > PATTERN_LIMIT:
                rarest = min(bucket, key=lambda k: bucket[k])
                del bucket[rarest]
            if success and domain not in self._user.technical_focus:
                self._user.technical_focus.append(domain)
                del self._user.technical_focus[:-10]
            self._user.updated_at = self._clock()
            self._meta_dirty = True
            self.writes += 1

    async def update_user_model(
        self,
        *,
        expertise: float | None = None,
        preferred_style: str | None = None,
        communication_style: str | None = None,
        goals: Iterable[str] | None = None,
        constraints: Iterable[str] | None = None,
    ) -> UserModel:
        """Apply learned adjustments to the user model.

        Returns:
            A copy of the updated model.

        """
        async with self._lock.write():
            if expertise is not None:
                self._user.expertise = clamp01(expertise)
            if preferred_style:
                self._user.preferred_style = preferred_style
            if communication_style:
                self._user.communication_style = communication_style
            if goals is not None:
                self._user.goals = list(dict.fromkeys([*self._user.goals, *goals]))[-20:]
            if constraints is not None:
                self._user.constraints = list(
                    dict.fromkeys([*self._user.constraints, *constraints])
                )[-20:]
            self._user.updated_at = self._clock()
            self._meta_dirty = True
            self.writes += 1
            return UserModel.from_dict(self._user.to_dict())

    async def touch(self, item_ids: Iterable[str]) -> None:
        """Mark items as used by a session, slowing their decay."""
        async with self._lock.write():
            now = self._clock()
            for item_id in item_ids:
                item = self._items.get(item_id)
                if item is not None:
                    item.access_count += 1
                    item.last_accessed = now
                    self._dirty.add(item_id)

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    async def candidates(self) -> list[MemoryCandidate]:
        """Every entry eligible for context assembly, as read-only views."""
        async with self._lock.read():
            result = [
                MemoryCandidate(
                    id=item.id,
                    source=item.kind,
                    content=item.content,
                    domain=item.domain,
                    timestamp=item.timestamp,
                    importance=item.importance,
                )
                for item in self._items.values()
            ]
            if self._project.attributes:
                result.append(
                    MemoryCandidate(
                        id="project_state",
                        source=ContextSource.PROJECT_STATE,
                        content=self._project.summary(),
                        domain="project",
                        timestamp=self._project.updated_at or self._clock(),
                        importance=0.8,
                    )
                )
            if self._user.interactions or self._user.updated_at:
                result.append(
                    MemoryCandidate(
                        id="user_model",
                        source=ContextSource.USER_MODEL,
                        content=self._user.summary(),
                        domain="user",
                        timestamp=self._user.updated_at or self._clock(),
                        importance=0.7,
                    )
                )
            if self._flow.current_topic:
                result.append(
                    MemoryCandidate(
                        id="conversation_flow",
                        source=ContextSource.CONVERSATION,
                        content=self._flow.summary(),
                        domain=self._flow.current_topic.partition("/")[0],
                        timestamp=self._user.updated_at or self._clock(),
                        importance=0.5,
                    )
                )
            return result

    async def conversation_flow(self) -> ConversationFlow:
        """Copy of the conversation's topic flow."""
        async with self._lock.read():
            return ConversationFlow.from_dict(self._flow.to_dict())

    async def snapshot(self) -> MemorySnapshot:
        """Read-only summary for intent analysis."""
        async with self._lock.read():
            conversation = sorted(
                self._items_of(ContextSource.CONVERSATION), key=lambda i: i.timestamp
            )
            domains = sorted({i.domain for i in self._items_of(ContextSource.DOMAIN_KNOWLEDGE)})
            return MemorySnapshot(
                user_expertise=self._user.expertise_level,
                preferred_style=self._user.preferred_style,
                technical_focus=tuple(self._user.technical_focus),
                recent_turns=tuple(i.content for i in conversation[-6:]),
                known_domains=tuple(domains),
                project_summary=self._project.summary(),
                item_count=self.item_count(),
                size_bytes=self.size_bytes(),
                current_topic=self._flow.current_topic,
                flow_pattern=self._flow.flow_pattern,
            )

    async def user_model(self) -> UserModel:
        """Copy of the current user model."""
        async with self._lock.read():
            return UserModel.from_dict(self._user.to_dict())

    def stats(self) -> dict[str, Any]:
        """Sizes and counters. Lock-free; values may be momentarily stale."""
        by_kind = Counter(i.kind.value for i in self._items.values())
        return {
            "items": self.item_count(),
            "size_bytes": self.size_bytes(),
            "max_items": self.config.max_items,
            "max_bytes": self.config.max_bytes,
            "by_kind": dict(by_kind),
            "cognitive_load": round(self.cognitive_load, 3),
            "writes": self.writes,
            "maintenance_runs": self.maintenance_runs,
            "overflows": self.overflows,
            "project_changes": len(self._project.history),
            "user_interactions": self._user.interactions,
            "topic_transitions": len(self._flow.transitions),
            "flow_pattern": self._flow.flow_pattern,
        }

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def maintain(self, *, force: bool = False) -> MaintenanceReport:
        """Run one maintenance cycle.

        Args:
            force: Compress down to the compression target even when the
                store is within its bounds.

        Returns:
            Report of what was forgotten, compressed and evicted. The store is
            within its configured bounds when this returns.

        """
        async with self._lock.write():
            report = self._compress(force=force)
        logger.debug(f"Memory maintenance: {report.to_dict()}")
        return report

    def _compress(self, *, force: bool) -> MaintenanceReport:
        now = self._clock()
        report = MaintenanceReport(
            size_before=self.size_bytes(), items_before=self.item_count(), forced=force
        )
        half_life = self.config.half_life_hours

        # 1. Forget items that have decayed to nothing
        for item in list(self._items.values()):
            if item.kind != ContextSource.WORKING and item.retention(now, half_life) < 0.01:
                self._drop(item.id)
                report.forgotten += 1

        # 2. Compress the oldest conversation into a summary
        conversation = sorted(self._items_of(ContextSource.CONVERSATION), key=lambda i: i.timestamp)
        limit = self.config.conversation_limit
        if force:
            limit = max(2, limit // 2)
        if len(conversation) > limit:
            overflow = conversation[: len(conversation) - limit]
            self._put(self._summarize(overflow, now))
            for item in overflow:
                self._drop(item.id)
            report.compressed += len(overflow)

        # 3. Merge near-duplicate semantic items
        report.merged += self._merge_semantic()

        # 4. Evict by retention until under target
        target_bytes = self.config.max_bytes
        target_items = self.config.max_items
        if force:
            target_bytes = int(target_bytes * self.config.compression_target)
            target_items = int(target_items * self.config.compression_target)
        if self.size_bytes() > target_bytes or self.item_count() > target_items:
            ranked = sorted(self._items.values(), key=lambda i: i.retention(now, half_life))
            size = self.size_bytes()
            count = self.item_count()
            for item in ranked:
                if size <= target_bytes and count <= target_items:
                    break
                size -= item.size_bytes
                count -= 1
                self._drop(item.id)
                report.evicted += 1

        self.maintenance_runs += 1
        report.size_after = self.size_bytes()
        report.items_after = self.item_count()
        return report

    def _summarize(self, items: list[MemoryItem], now: datetime) -> MemoryItem:
        words: Counter[str] = Counter()
        domains: Counter[str] = Counter()
        for item in items:
            words.update(tokenize(item.content) - {"user", "assistant"})
            domains[item.domain] += 1
        top = ", ".join(w for w, _ in words.most_common(8))
        domain = domains.most_common(1)[0][0] if domains else "general"
        return MemoryItem(
            id=_new_id(),
            kind=ContextSource.SEMANTIC,
            content=f"Summary of {len(items)} earlier turns about {domain}: {top}",
            domain=domain,
            timestamp=now,
            importance=clamp01(max((i.importance for i in items), default=0.3)),
            tags=("summary",),
        )

    def _merge_semantic(self) -> int:
        merged = 0
        seen: dict[frozenset[str], MemoryItem] = {}
        for item in sorted(self._items_of(ContextSource.SEMANTIC), key=lambda i: i.timestamp):
            key = frozenset(tokenize(item.content))
            if key and key in seen:
                keeper = seen[key]
                keeper.importance = clamp01(max(keeper.importance, item.importance))
                keeper.access_count += item.access_count
                self._dirty.add(keeper.id)
                self._drop(item.id)
                merged += 1
            else:
                seen[key] = item
        return merged

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> int:
        """Load items and metadata from the durable backend.

        Returns:
            Number of items loaded (0 without a backend).

        """
        if self._persistent is None:
            return 0
        raw_items = await self._persistent.load_all(_ITEMS_NS)
        meta = await self._persistent.load_all(_META_NS)
        async with self._lock.write():
            for key, data in raw_items.items():
                try:
                    item = MemoryItem.from_dict(data)
                except (KeyError, ValueError) as e:
                    logger.warning(f"Skipping unreadable memory item {key}: {e}")
                    continue
                self._items[item.id] = item
            if user := meta.get("user_model"):
                self._user = UserModel.from_dict(user)
            if project := meta.get("project_state"):
                self._project.attributes = dict(project.get("attributes", {}))
            if flow := meta.get("conversation_flow"):
                self._flow = ConversationFlow.from_dict(flow)
            self._dirty.clear()
            self._deleted.clear()
            self._meta_dirty = False
        logger.info(f"Loaded {len(self._items)} memory items")
        return len(self._items)

    async def flush(self) -> int:
        """Write pending changes to the durable backend.

        Returns:
            Number of documents written or deleted.

        """
        if self._persistent is None:
            return 0
        async with self._lock.read():
            dirty = [self._items[i].to_dict() for i in self._dirty if i in self._items]
            deleted = list(self._deleted)
            meta = (
                {
                    "user_model": self._user.to_dict(),
                    "project_state": {"attributes": dict(self._project.attributes)},
                    "conversation_flow": self._flow.to_dict(),
                }
                if self._meta_dirty
                else {}
            )
        for data in dirty:
            await self._persistent.put(_ITEMS_NS, data["id"], data)
        for item_id in deleted:
            await self._persistent.delete(_ITEMS_NS, item_id)
        for key, value in meta.items():
            await self._persistent.put(_META_NS, key, value)
        async with self._lock.write():
            self._dirty.difference_update(d["id"] for d in dirty)
            self._deleted.difference_update(deleted)
            if meta:
                self._meta_dirty = False
        return len(dirty) + len(deleted) + len(meta)
