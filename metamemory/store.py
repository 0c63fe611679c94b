"""Topic thread store: the topic catalog, per-message tags and topic threads.

All mutation goes through ``apply_tagging_result``, ``apply_compaction`` and a
few small setters. Multi-step updates are applied to a working copy that is
validated before it replaces the live maps, so a failure never leaves a
half-applied state behind.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping

from .errors import CompactionRefusedError, InvariantViolationError
from .types import (
    CompactionLevelName,
    MergeProposal,
    Message,
    TaggedMessage,
    TaggingResult,
    TaggingStats,
    ThreadSummary,
    Topic,
    TopicClass,
    TopicThread,
)

logger = logging.getLogger(__name__)

# Tags with these literal names get the matching class when the model uses them undeclared.
WELL_KNOWN_TAGS: dict[str, TopicClass] = {"core": "core", "ephemeral": "ephemeral"}

_RESURRECTABLE: frozenset[str] = frozenset({"idle", "archived"})


class TopicThreadStore:
    """In-memory store keyed by normalized topic tag and message id."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.topics: dict[str, Topic] = {}
        self.tagged_messages: dict[str, TaggedMessage] = {}
        self.threads: dict[str, TopicThread] = {}

    # -- Lookups --------------------------------------------------------------

    def get_topic(self, tag: str) -> Topic | None:
        return self.topics.get(tag)

    def get_thread(self, tag: str) -> TopicThread | None:
        return self.threads.get(tag)

    def get_threads(self, tags: Iterable[str]) -> list[TopicThread]:
        return [self.threads[tag] for tag in tags if tag in self.threads]

    def get_related_threads(self, tag: str) -> list[TopicThread]:
        """Threads of the broader topics a topic is part of."""
        topic = self.topics.get(tag)
        return self.get_threads(topic.related_topics) if topic else []

    def get_tagged_message(self, message_id: str) -> TaggedMessage | None:
        return self.tagged_messages.get(message_id)

    def list_topics(self, topic_class: TopicClass | None = None) -> list[Topic]:
        """List catalog topics, optionally only those of one lifecycle class."""
        if topic_class is None:
            return list(self.topics.values())
        return [t for t in self.topics.values() if t.topic_class == topic_class]

    def threads_by_class(self, topic_class: TopicClass) -> list[TopicThread]:
        return [
            thread
            for tag, thread in self.threads.items()
            if tag in self.topics and self.topics[tag].topic_class == topic_class
        ]

    def thread_class(self, tag: str) -> TopicClass | None:
        topic = self.topics.get(tag)
        return topic.topic_class if topic else None

    # -- Tagging --------------------------------------------------------------

    def apply_tagging_result(
        self, result: TaggingResult, messages: Mapping[str, Message]
    ) -> TaggingStats:
        """Apply one tagging pass.

        Order: upsert topics, upsert tagged messages, apply merge proposals,
        then attach the window's messages to their threads.

        Args:
            result: Reconciled tagger output
            messages: The window's messages by id, used to populate threads

        Returns:
            TaggingStats for the pass (all zero when the result was not parsed)

        Raises:
            InvariantViolationError: If the updated state is inconsistent. The
                store keeps its previous state.
        """
        if not result.parsed:
            return TaggingStats()

        work = self._clone()
        stats = work._apply_tagging(result, messages)
        work.validate()
        self._adopt(work)
        return stats

    def _apply_tagging(
        self, result: TaggingResult, messages: Mapping[str, Message]
    ) -> TaggingStats:
        now = self.clock()
        new_tags: set[str] = set()
        updated_tags: set[str] = set()
        new_message_ids: set[str] = set()
        updated_message_ids: set[str] = set()
        declared = set(result.topics)

        for tag, incoming in result.topics.items():
            existing = self.topics.get(tag)
            if existing is None:
                self.topics[tag] = incoming.model_copy()
                new_tags.add(tag)
                continue

            topic_class = incoming.topic_class
            if existing.topic_class == "core" and topic_class != "core":
                logger.info("Topic %s is core, ignoring reclassification to %s", tag, topic_class)
                topic_class = "core"
            description = incoming.description or existing.description
            if topic_class != existing.topic_class or description != existing.description:
                self._set_class(tag, topic_class, now, description=description)
                updated_tags.add(tag)

        for message_id, incoming in result.tagged_messages.items():
            for tag in incoming.topic_tags:
                if tag not in self.topics:
                    self.topics[tag] = Topic(
                        tag=tag,
                        topic_class=WELL_KNOWN_TAGS.get(tag, "active"),
                        created_at=now,
                        updated_at=now,
                    )
                    new_tags.add(tag)

            existing = self.tagged_messages.get(message_id)
            if existing is None:
                self.tagged_messages[message_id] = incoming.model_copy()
                new_message_ids.add(message_id)
            elif (
                set(existing.topic_tags) != set(incoming.topic_tags)
                or existing.summary != incoming.summary
            ):
                self.tagged_messages[message_id] = incoming.model_copy()
                updated_message_ids.add(message_id)

        merged_count = 0
        for proposal in result.merge_proposals:
            if self._apply_merge(proposal, now):
                merged_count += 1
                declared.add(proposal.merged_tag)
                updated_tags.add(proposal.merged_tag)

        for relationship in result.relationships:
            self._relate(relationship.child, relationship.parent, now)

        for tag, thread in self.threads.items():
            thread.messages = [m for m in thread.messages if tag in self._tags_of(m.id)]

        for message_id in result.tagged_messages:
            message = messages.get(message_id)
            tagged = self.tagged_messages.get(message_id)
            if message is None or tagged is None:
                continue
            for tag in tagged.topic_tags:
                if self._attach(tag, message) and tag not in declared:
                    if self.topics[tag].topic_class in _RESURRECTABLE:
                        logger.info(
                            "Topic %s resurrected from %s by message %s",
                            tag,
                            self.topics[tag].topic_class,
                            message_id,
                        )
                        self._set_class(tag, "active", now)
                        updated_tags.add(tag)

        for tag, topic in self.topics.items():
            thread = self.threads.get(tag)
            if topic.topic_class == "ephemeral" and thread is not None and thread.messages:
                logger.debug(
                    "Dropping %d raw messages of ephemeral topic %s", len(thread.messages), tag
                )
                thread.messages = []

        return TaggingStats(
            new_topic_count=len(new_tags & set(self.topics)),
            updated_topic_count=len((updated_tags - new_tags) & set(self.topics)),
            new_message_count=len(new_message_ids),
            updated_message_count=len(updated_message_ids),
            merged_topic_count=merged_count,
        )

    def _tags_of(self, message_id: str) -> list[str]:
        tagged = self.tagged_messages.get(message_id)
        return tagged.topic_tags if tagged else []

    def _attach(self, tag: str, message: Message) -> bool:
        """Add a message to a topic's thread. Returns True if it was not there before."""
        if self.topics[tag].topic_class == "ephemeral":
            return False

        thread = self.threads.get(tag)
        if thread is None:
            thread = TopicThread(
                name=tag, last_active=message.timestamp, created_at=message.timestamp
            )
            self.threads[tag] = thread

        if message.id in thread.compacted_message_ids or message.id in thread.message_ids:
            return False

        thread.messages.append(message.model_copy())
        thread.messages.sort(key=lambda m: m.timestamp)
        thread.last_active = max(thread.last_active, message.timestamp)
        return True

    def _relate(self, child: str, parent: str, now: float) -> None:
        """Record that ``child`` is part of ``parent``. Unknown tags are skipped."""
        if child not in self.topics or parent not in self.topics:
            logger.debug("Skipping relationship %s -> %s: unknown topic", parent, child)
            return
        topic = self.topics[child]
        if parent == child or parent in topic.related_topics:
            return
        self.topics[child] = topic.model_copy(
            update={"related_topics": [*topic.related_topics, parent], "updated_at": now}
        )

    def _apply_merge(self, proposal: MergeProposal, now: float) -> bool:
        merged = proposal.merged_tag
        sources = [tag for tag in proposal.source_tags if tag != merged]

        missing = [tag for tag in proposal.source_tags if tag not in self.topics]
        if missing:
            logger.warning(
                "Rejecting merge into %s: unknown source tags %s", merged, ", ".join(missing)
            )
            return False
        if not sources:
            logger.warning("Rejecting merge into %s: no source differs from the merged tag", merged)
            return False

        involved = [self.topics[tag] for tag in proposal.source_tags]
        if merged in self.topics:
            involved.append(self.topics[merged])
        topic_class = (
            "core" if any(t.topic_class == "core" for t in involved) else proposal.topic_class
        )

        logger.info(
            "Merging topics %s into %s: %s", ", ".join(sources), merged, proposal.justification
        )

        source_set = set(sources)
        for tagged in self.tagged_messages.values():
            if not source_set.intersection(tagged.topic_tags):
                continue
            retagged: list[str] = []
            for tag in tagged.topic_tags:
                replacement = merged if tag in source_set else tag
                if replacement not in retagged:
                    retagged.append(replacement)
            tagged.topic_tags = retagged
            tagged.updated_at = now

        existing = self.topics.get(merged)
        self.topics[merged] = Topic(
            tag=merged,
            topic_class=topic_class,
            description=proposal.description or (existing.description if existing else ""),
            created_at=min(t.created_at for t in involved),
            updated_at=now,
            related_topics=[tag for t in involved for tag in t.related_topics],
        )
        for tag in sources:
            del self.topics[tag]
        for tag, topic in self.topics.items():
            related = _replace_related(topic.related_topics, source_set, merged, tag)
            if related != topic.related_topics:
                self.topics[tag] = topic.model_copy(update={"related_topics": related})

        threads = [self.threads.pop(tag) for tag in [merged, *sources] if tag in self.threads]
        if threads:
            self.threads[merged] = _merge_threads(merged, threads)
        return True

    # -- Compaction -----------------------------------------------------------

    def apply_compaction(
        self,
        tag: str,
        message_ids: list[str],
        summary: str,
        level: CompactionLevelName,
    ) -> TopicThread:
        """Replace a thread's oldest raw messages with a summary.

        The ids must still be the thread's raw prefix and must all be tagged
        with this topic, otherwise nothing changes.

        Raises:
            CompactionRefusedError: If the safety check fails
        """
        thread = self.threads.get(tag)
        if thread is None:
            raise CompactionRefusedError(tag, "thread does not exist")
        if not message_ids:
            raise CompactionRefusedError(tag, "no messages to compact")
        if thread.message_ids[: len(message_ids)] != message_ids:
            raise CompactionRefusedError(tag, "thread changed since the messages were selected")
        for message_id in message_ids:
            tagged = self.tagged_messages.get(message_id)
            if tagged is None or tag not in tagged.topic_tags:
                raise CompactionRefusedError(tag, f"message {message_id} is not tagged with {tag}")

        updated = thread.model_copy(deep=True)
        updated.summaries.append(
            ThreadSummary(
                level=level,
                text=summary,
                message_ids=list(message_ids),
                created_at=self.clock(),
            )
        )
        updated.compacted_message_ids.extend(message_ids)
        updated.messages = updated.messages[len(message_ids) :]
        updated.compacted_class = self.thread_class(tag)
        self.threads[tag] = updated
        return updated

    def mark_compacted(self, tag: str) -> None:
        """Record that a thread is up to date for its current class."""
        thread = self.threads.get(tag)
        if thread is not None:
            thread.compacted_class = self.thread_class(tag)

    # -- Lifecycle ------------------------------------------------------------

    def set_topic_class(self, tag: str, topic_class: TopicClass, create: bool = False) -> Topic:
        """Set a topic's lifecycle class directly (host override).

        Args:
            tag: Normalized topic tag
            topic_class: New lifecycle class
            create: Create the topic if it does not exist

        Raises:
            KeyError: If the topic does not exist and create is False
        """
        now = self.clock()
        if tag not in self.topics:
            if not create:
                raise KeyError(tag)
            self.topics[tag] = Topic(
                tag=tag, topic_class=topic_class, created_at=now, updated_at=now
            )
            return self.topics[tag]

        self._set_class(tag, topic_class, now)
        if topic_class == "ephemeral" and tag in self.threads:
            self.threads[tag].messages = []
        return self.topics[tag]

    def _set_class(
        self, tag: str, topic_class: TopicClass, now: float, description: str | None = None
    ) -> None:
        topic = self.topics[tag]
        self.topics[tag] = topic.model_copy(
            update={
                "topic_class": topic_class,
                "description": topic.description if description is None else description,
                "updated_at": now,
            }
        )

    # -- Consistency ----------------------------------------------------------

    def validate(self) -> None:
        """Check the store invariants.

        Raises:
            InvariantViolationError: On the first violation found
        """
        for tag, topic in self.topics.items():
            for related in topic.related_topics:
                if related == tag or related not in self.topics:
                    raise InvariantViolationError(
                        f"topic {tag} is related to unknown topic {related}"
                    )

        for message_id, tagged in self.tagged_messages.items():
            if not tagged.topic_tags:
                raise InvariantViolationError(f"message {message_id} has no topic tags")
            for tag in tagged.topic_tags:
                if tag not in self.topics:
                    raise InvariantViolationError(
                        f"message {message_id} references unknown topic {tag}"
                    )

        for tag, thread in self.threads.items():
            if tag not in self.topics:
                raise InvariantViolationError(f"thread {tag} has no catalog topic")
            ids = thread.message_ids
            if len(ids) != len(set(ids)):
                raise InvariantViolationError(f"thread {tag} contains duplicate messages")
            if self.topics[tag].topic_class == "ephemeral" and ids:
                raise InvariantViolationError(f"ephemeral thread {tag} retains raw messages")
            for message_id in ids:
                tagged = self.tagged_messages.get(message_id)
                if tagged is None or tag not in tagged.topic_tags:
                    raise InvariantViolationError(
                        f"thread {tag} holds message {message_id} not tagged with it"
                    )

    # -- Snapshots ------------------------------------------------------------

    def snapshot(
        self,
    ) -> tuple[dict[str, Topic], dict[str, TaggedMessage], dict[str, TopicThread]]:
        """Deep copies of the three maps."""
        clone = self._clone()
        return clone.topics, clone.tagged_messages, clone.threads

    def restore(
        self,
        topics: Mapping[str, Topic],
        tagged_messages: Mapping[str, TaggedMessage],
        threads: Mapping[str, TopicThread],
    ) -> None:
        """Replace the store contents with deep copies of the given maps.

        Raises:
            InvariantViolationError: If the maps are inconsistent. The store
                keeps its previous state.
        """
        work = TopicThreadStore(clock=self.clock)
        work.topics = {k: v.model_copy(deep=True) for k, v in topics.items()}
        work.tagged_messages = {k: v.model_copy(deep=True) for k, v in tagged_messages.items()}
        work.threads = {k: v.model_copy(deep=True) for k, v in threads.items()}
        work.validate()
        self._adopt(work)

    def _clone(self) -> TopicThreadStore:
        clone = TopicThreadStore(clock=self.clock)
        clone.topics = {k: v.model_copy(deep=True) for k, v in self.topics.items()}
        clone.tagged_messages = {
            k: v.model_copy(deep=True) for k, v in self.tagged_messages.items()
        }
        clone.threads = {k: v.model_copy(deep=True) for k, v in self.threads.items()}
        return clone

    def _adopt(self, other: TopicThreadStore) -> None:
        self.topics = other.topics
        self.tagged_messages = other.tagged_messages
        self.threads = other.threads


def _merge_threads(name: str, threads: list[TopicThread]) -> TopicThread:
    messages: dict[str, Message] = {}
    for thread in threads:
        for message in thread.messages:
            messages.setdefault(message.id, message)

    compacted: list[str] = []
    for thread in threads:
        for message_id in thread.compacted_message_ids:
            if message_id not in compacted:
                compacted.append(message_id)

    return TopicThread(
        name=name,
        messages=sorted(
            (m for m in messages.values() if m.id not in compacted), key=lambda m: m.timestamp
        ),
        summaries=sorted(
            (s for thread in threads for s in thread.summaries), key=lambda s: s.created_at
        ),
        compacted_message_ids=compacted,
        last_active=max(t.last_active for t in threads),
        created_at=min(t.created_at for t in threads),
    )


def _replace_related(related: list[str], sources: set[str], merged: str, owner: str) -> list[str]:
    result: list[str] = []
    for tag in related:
        replacement = merged if tag in sources else tag
        if replacement != owner and replacement not in result:
            result.append(replacement)
    return result
