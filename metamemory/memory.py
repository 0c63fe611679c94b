"""Host-facing metamemory engine.

``Metamemory`` owns one store and schedules tagging and compaction passes
against it. Each kind of pass is single-flight: triggers that arrive while a
pass runs coalesce into one follow-up pass. Passes never raise into the host;
failures are logged and reported as zero counts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from opentelemetry import trace

from .compactor import CompactionOrchestrator
from .config import MetamemoryConfig, NormalizedMetamemoryConfig, normalize_config
from .context import ContextAssembler
from .errors import MetamemoryTimeoutError
from .llm.providers.base import LLMProvider, get_provider
from .normalizer import normalize_entries, require_ids
from .search import InMemorySimilaritySearch
from .store import TopicThreadStore
from .summarizer import ThreadSummarizer
from .tagger import TopicTagger, normalize_topic_tag
from .tokens import estimate_messages_tokens
from .types import (
    CompactionCycleReport,
    CompactionLevelName,
    ContextAssemblyOptions,
    HistoryCompactionMetadata,
    HistoryCompactionResult,
    MemoryStats,
    MetamemoryState,
    TaggableUnit,
    TaggingStats,
    Topic,
)
from .utils.single_flight import SingleFlight

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Conversation entries retained for tagging, as a multiple of the sliding window
HISTORY_WINDOW_MULTIPLIER = 4


class Metamemory:
    """Topic-threaded memory for a long-running agent conversation.

    Example:
        memory = Metamemory(config=MetamemoryConfig(processing_interval=5))
        memory.notify(new_entries)               # background tagging every 5 entries
        context = await memory.build_context(conversation)
        result = await memory.compact_history(conversation)
    """

    def __init__(
        self,
        provider: LLMProvider | None = None,
        config: MetamemoryConfig | NormalizedMetamemoryConfig | None = None,
        search: InMemorySimilaritySearch | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if isinstance(config, NormalizedMetamemoryConfig):
            self.config = config
        else:
            self.config = normalize_config(config)
        self.clock = clock
        self.provider = provider or get_provider(self.config.provider)

        self.store = TopicThreadStore(clock=clock)
        self.search = search if search is not None else InMemorySimilaritySearch()
        self.tagger = TopicTagger(
            self.provider,
            self.config.model,
            max_content_chars=self.config.max_tagging_content_chars,
            clock=clock,
        )
        self.summarizer = ThreadSummarizer(self.provider, self.config.model)
        self.compactor = CompactionOrchestrator(
            self.store, self.summarizer, self.config, search=self.search, clock=clock
        )
        self.assembler = ContextAssembler(self.store, self.search)

        self._history: list[dict[str, Any]] = []
        # Unit ids already sent to the tagger while untagged
        self._offered: set[str] = set()
        self._pending_count = 0
        self._tagging: SingleFlight[TaggingStats] = SingleFlight(
            self._tagging_pass, name="tagging"
        )
        self._compaction: SingleFlight[CompactionCycleReport] = SingleFlight(
            self._compaction_pass, name="compaction"
        )

    # -- Tagging --------------------------------------------------------------

    async def process_messages(self, new_messages: list[dict[str, Any]]) -> TaggingStats:
        """Record new conversation entries and tag everything not yet tagged.

        Returns:
            TaggingStats for the pass that covered these entries (all zero if
            the pass failed or nothing needed tagging)

        Raises:
            MissingMessageIdError: If any entry lacks an id. Nothing is recorded.
        """
        require_ids(new_messages)
        self._record(new_messages)
        return await self._tagging.run()

    def notify(self, new_messages: list[dict[str, Any]]) -> bool:
        """Record new entries and start a background tagging pass every few entries.

        Must be called from a running event loop.

        Returns:
            True if a tagging pass was triggered

        Raises:
            MissingMessageIdError: If any entry lacks an id. Nothing is recorded.
        """
        require_ids(new_messages)
        self._pending_count += self._record(new_messages)
        if self._pending_count < self.config.processing_interval:
            return False
        self._tagging.trigger()
        return True

    def _record(self, entries: list[dict[str, Any]], extra_capacity: int = 0) -> int:
        """Add entries to the history buffer, replacing same-id entries.

        Args:
            entries: Conversation entries with ids
            extra_capacity: Entries to retain beyond the usual buffer size

        Returns:
            Number of entries that were not in the buffer before
        """
        positions = {entry["id"]: i for i, entry in enumerate(self._history)}
        added = 0
        for entry in entries:
            position = positions.get(entry["id"])
            if position is not None:
                self._history[position] = entry
                continue
            positions[entry["id"]] = len(self._history)
            self._history.append(entry)
            added += 1

        limit = self.config.sliding_window_size * HISTORY_WINDOW_MULTIPLIER + extra_capacity
        if len(self._history) > limit:
            del self._history[: len(self._history) - limit]
            self._offered.intersection_update(entry["id"] for entry in self._history)
        return added

    def _needs_tagging(self, unit: TaggableUnit) -> bool:
        return not unit.is_tagged and unit.id not in self._offered

    def _next_window(
        self, units: list[TaggableUnit], start: int
    ) -> tuple[list[TaggableUnit], int]:
        """Window ending past the oldest unit at or after ``start`` that needs tagging.

        The window holds up to ``sliding_window_size`` units, so earlier units
        ride along as already-tagged context where there is room.

        Returns:
            The window (empty when nothing needs tagging) and the position
            just past it
        """
        for index in range(start, len(units)):
            if self._needs_tagging(units[index]):
                break
        else:
            return [], len(units)

        size = self.config.sliding_window_size
        end = min(index + size, len(units))
        return units[max(end - size, 0) : end], end

    async def _tagging_pass(self) -> TaggingStats:
        """Tag every untagged unit in the history buffer, oldest window first."""
        self._pending_count = 0
        entries = list(self._history)
        totals = TaggingStats()
        windows = 0
        position = 0

        while True:
            units = normalize_entries(entries, self.store.tagged_messages, clock=self.clock)
            window, position = self._next_window(units, position)
            if not window:
                break
            stats = await self._tag_window(window)
            if stats is None:
                break
            windows += 1
            totals = TaggingStats(
                **{key: value + getattr(stats, key) for key, value in totals.model_dump().items()}
            )

        if windows:
            logger.info(
                "Tagging pass over %d windows: %d new / %d updated topics, "
                "%d new / %d updated messages, %d merges",
                windows,
                totals.new_topic_count,
                totals.updated_topic_count,
                totals.new_message_count,
                totals.updated_message_count,
                totals.merged_topic_count,
            )
            if self.compactor.eligible_threads():
                self._compaction.trigger()
        return totals

    async def _tag_window(self, window: list[TaggableUnit]) -> TaggingStats | None:
        """Tag one window and apply the result. Returns None if the window failed."""
        with tracer.start_as_current_span("metamemory.tagging_window") as span:
            span.set_attribute("metamemory.window_size", len(window))
            try:
                result = await self.tagger.tag(
                    window, self.store.topics, self.store.tagged_messages
                )
                messages = {unit.id: unit.unit.to_message() for unit in window}
                stats = self.store.apply_tagging_result(result, messages)
            except Exception:
                logger.exception("Tagging pass failed, keeping previous state")
                return None
            if not result.parsed:
                return None

            self._offered.update(unit.id for unit in window if not unit.is_tagged)
            self.compactor.sync_archive_index()
            for key, value in stats.model_dump().items():
                span.set_attribute(f"metamemory.{key}", value)
        return stats

    # -- Compaction -----------------------------------------------------------

    async def _compaction_pass(self) -> CompactionCycleReport:
        try:
            return await self.compactor.run_cycle()
        except Exception:
            logger.exception("Compaction cycle failed, keeping previous state")
            return CompactionCycleReport()

    async def force_compaction(self) -> CompactionCycleReport:
        """Run a compaction cycle now (coalesced with any cycle already running)."""
        return await self._compaction.run()

    async def compact_thread(self, tag: str, level: CompactionLevelName) -> int:
        """Compact one thread at a given level.

        Returns:
            Number of raw messages folded into the summary

        Raises:
            KeyError: If no thread has this tag
        """
        return await self.compactor.compact_thread(normalize_topic_tag(tag), level)

    async def compact_history(
        self,
        all_messages: list[dict[str, Any]],
        options: ContextAssemblyOptions | None = None,
    ) -> HistoryCompactionResult:
        """Bring memory up to date with a full conversation and return its bounded form.

        Untagged entries are tagged first, in window-sized batches oldest
        first, then a compaction cycle runs, then the context is assembled
        from the updated threads.

        Raises:
            MissingMessageIdError: If any entry lacks an id
        """
        require_ids(all_messages)
        self._record(all_messages, extra_capacity=len(all_messages))

        units = normalize_entries(all_messages, self.store.tagged_messages, clock=self.clock)
        if any(self._needs_tagging(unit) for unit in units):
            await self._tagging.run()
        await self._compaction.run()

        messages = await self.build_context(all_messages, options)
        preserved = [t.name for t in self.store.threads_by_class("core")]
        preserved += [t.name for t in self.store.threads_by_class("active")]

        metadata = HistoryCompactionMetadata(
            original_count=len(all_messages),
            compacted_count=len(messages),
            threads_preserved=preserved,
            threads_summarized=self._summarized_topics(messages),
            original_tokens=estimate_messages_tokens(all_messages),
            compacted_tokens=estimate_messages_tokens(messages),
        )
        logger.info(
            "Compacted history from %d to %d entries (%d -> %d tokens)",
            metadata.original_count,
            metadata.compacted_count,
            metadata.original_tokens,
            metadata.compacted_tokens,
        )
        return HistoryCompactionResult(messages=messages, metadata=metadata)

    def _summarized_topics(self, messages: list[dict[str, Any]]) -> list[str]:
        """Idle and archived topics whose summaries appear in an assembled context."""
        system_text = "\n".join(
            str(m.get("content", "")) for m in messages if m.get("role") == "system"
        )
        names = []
        for thread in self.store.threads_by_class("idle"):
            if f"=== IDLE TOPIC: {thread.name} ===" in system_text:
                names.append(thread.name)
        for name in self.search.topic_names():
            if f"Topic: {name} (relevance" in system_text:
                names.append(name)
        return names

    # -- Context --------------------------------------------------------------

    async def build_context(
        self,
        recent_messages: list[dict[str, Any]],
        options: ContextAssemblyOptions | None = None,
    ) -> list[dict[str, Any]]:
        """Assemble the bounded context for the primary agent. Read-only."""
        return await self.assembler.build_context(recent_messages, options)

    def get_memory_stats(self) -> MemoryStats:
        return self.assembler.get_memory_stats()

    def mark_topic_as_core(self, tag: str) -> Topic:
        """Pin a topic as core, creating it if needed."""
        normalized = normalize_topic_tag(tag)
        if not normalized:
            raise ValueError(f"Invalid topic tag: {tag!r}")
        topic = self.store.set_topic_class(normalized, "core", create=True)
        self.compactor.sync_archive_index()
        logger.info("Topic %s marked as core", normalized)
        return topic

    # -- Join points ----------------------------------------------------------

    async def wait_until_ready(
        self, timeout: float | None = None, raise_on_timeout: bool = False
    ) -> bool:
        """Wait for in-flight tagging and compaction to finish.

        Args:
            timeout: Seconds to wait in total (defaults to processing_timeout)
            raise_on_timeout: Raise instead of returning False on timeout

        Returns:
            True if everything finished, False if the timeout elapsed first.
            Background work keeps running after a timeout.

        Raises:
            MetamemoryTimeoutError: If raise_on_timeout is set and the timeout
                elapsed
        """
        timeout = self.config.processing_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        ready = await self._tagging.wait_idle(max(deadline - loop.time(), 0))
        if ready:
            ready = await self._compaction.wait_idle(max(deadline - loop.time(), 0))
        if not ready and raise_on_timeout:
            raise MetamemoryTimeoutError(timeout)
        if not ready:
            logger.warning(
                "Metamemory still processing after %.1fs, continuing; "
                "compaction may complete in the background",
                timeout,
            )
        return ready

    # -- Persistence ----------------------------------------------------------

    def get_state(self) -> MetamemoryState:
        """Snapshot the store and the archived-summary index."""
        topics, tagged_messages, threads = self.store.snapshot()
        return MetamemoryState(
            topics=topics,
            tagged_messages=tagged_messages,
            threads=threads,
            embeddings=self.search.export_embeddings(),
        )

    def restore_state(self, state: MetamemoryState | dict[str, Any]) -> None:
        """Replace memory with a snapshot from get_state (or its JSON form).

        Raises:
            InvariantViolationError: If the snapshot is inconsistent. Current
                memory is kept.
        """
        if not isinstance(state, MetamemoryState):
            state = MetamemoryState.model_validate(state)

        self.store.restore(state.topics, state.tagged_messages, state.threads)
        self._offered.clear()
        self.search.load_embeddings(state.embeddings)
        self.compactor.sync_archive_index()
        logger.info(
            "Restored metamemory state: %d topics, %d tagged messages, %d threads",
            len(state.topics),
            len(state.tagged_messages),
            len(state.threads),
        )
