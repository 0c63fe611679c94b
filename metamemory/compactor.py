"""Compaction orchestration: pick eligible threads and fold their oldest messages into summaries."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from opentelemetry import trace

from .config import LEVEL_BY_CLASS, NormalizedMetamemoryConfig
from .errors import CompactionRefusedError
from .search import InMemorySimilaritySearch
from .store import TopicThreadStore
from .summarizer import ThreadSummarizer
from .types import CompactionCycleReport, CompactionLevelName

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_NEVER_COMPACTED = frozenset({"core", "ephemeral"})


class CompactionOrchestrator:
    """Runs compaction cycles against a TopicThreadStore."""

    def __init__(
        self,
        store: TopicThreadStore,
        summarizer: ThreadSummarizer,
        config: NormalizedMetamemoryConfig,
        search: InMemorySimilaritySearch | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.summarizer = summarizer
        self.config = config
        self.search = search
        self.clock = clock

    def eligible_threads(self) -> list[tuple[str, CompactionLevelName]]:
        """Threads to compact this cycle with their level, least recently active first.

        A thread is eligible when its raw message count exceeds its class
        threshold, when it moved to idle/archived since it was last compacted,
        or when it has been inactive longer than the inactivity timeout.
        """
        now = self.clock()
        eligible = []

        for tag, thread in self.store.threads.items():
            topic_class = self.store.thread_class(tag)
            if topic_class is None or topic_class in _NEVER_COMPACTED:
                continue

            level = LEVEL_BY_CLASS[topic_class]
            if len(thread.messages) <= self.config.compaction_level(level).preserve_latest_messages:
                # Nothing beyond the retained tail to fold in.
                continue

            threshold = self.config.compaction_thresholds.get(topic_class, 0)
            if len(thread.messages) > threshold:
                reason = "size"
            elif topic_class in ("idle", "archived") and thread.compacted_class != topic_class:
                reason = "transition"
            elif now - thread.last_active > self.config.thread_inactivity_timeout:
                reason = "inactivity"
            else:
                continue

            logger.debug("Thread %s eligible for compaction (%s, %s)", tag, topic_class, reason)
            eligible.append((thread.last_active, tag, level))

        eligible.sort()
        selected = eligible[: self.config.max_threads_per_pass]
        if len(eligible) > len(selected):
            logger.debug(
                "Deferring %d eligible threads to the next cycle", len(eligible) - len(selected)
            )
        return [(tag, level) for _, tag, level in selected]

    async def run_cycle(self) -> CompactionCycleReport:
        """Compact every eligible thread.

        Failures are isolated per thread: a refused or failed thread is left
        unchanged and reported, and the cycle moves on.
        """
        report = CompactionCycleReport()

        with tracer.start_as_current_span("metamemory.compaction_cycle") as span:
            for tag, level in self.eligible_threads():
                try:
                    compacted = await self._compact(tag, level)
                except CompactionRefusedError as e:
                    logger.warning("%s", e)
                    report.threads_refused.append(tag)
                    continue
                except Exception:
                    logger.exception("Compaction of thread %s failed, will retry next cycle", tag)
                    report.threads_failed.append(tag)
                    continue

                if compacted is None:
                    report.threads_failed.append(tag)
                elif compacted > 0:
                    report.threads_compacted.append(tag)
                    report.messages_compacted += compacted

            self.sync_archive_index()

            span.set_attribute("metamemory.threads_compacted", len(report.threads_compacted))
            span.set_attribute("metamemory.messages_compacted", report.messages_compacted)
            span.set_attribute("metamemory.threads_refused", len(report.threads_refused))
            span.set_attribute("metamemory.threads_failed", len(report.threads_failed))

        if report.threads_compacted or report.threads_refused or report.threads_failed:
            logger.info(
                "Compaction cycle: %d messages from %d threads (%d refused, %d failed)",
                report.messages_compacted,
                len(report.threads_compacted),
                len(report.threads_refused),
                len(report.threads_failed),
            )
        return report

    async def compact_thread(self, tag: str, level: CompactionLevelName) -> int:
        """Compact one thread at the given level regardless of eligibility.

        Returns:
            Number of raw messages folded into the summary

        Raises:
            KeyError: If the thread does not exist
            ValueError: If the topic is core
            CompactionRefusedError: If the thread changed while summarizing
        """
        if self.store.get_thread(tag) is None:
            raise KeyError(tag)
        if self.store.thread_class(tag) == "core":
            raise ValueError(f"Topic '{tag}' is core and is never compacted")

        compacted = await self._compact(tag, level)
        self.sync_archive_index()
        return compacted or 0

    async def _compact(self, tag: str, level_name: CompactionLevelName) -> int | None:
        """Summarize a thread's oldest messages and apply the result.

        Returns the number of messages compacted, or None if the summarizer
        produced nothing.
        """
        thread = self.store.get_thread(tag)
        if thread is None:
            raise CompactionRefusedError(tag, "thread no longer exists")
        level = self.config.compaction_level(level_name)
        count = len(thread.messages) - level.preserve_latest_messages
        if count <= 0:
            self.store.mark_compacted(tag)
            return 0

        snapshot = thread.model_copy(deep=True)
        message_ids = snapshot.message_ids[:count]
        summary = await self.summarizer.summarize(snapshot, count, level)
        if not summary:
            logger.warning("Summarizer returned nothing for thread %s, leaving it unchanged", tag)
            return None

        self.store.apply_compaction(tag, message_ids, summary, level_name)
        logger.info(
            "Compacted %d messages from thread %s (%s), kept %d",
            count,
            tag,
            level_name,
            level.preserve_latest_messages,
        )
        return count

    def sync_archive_index(self) -> None:
        """Index archived threads with a summary and drop entries for threads that left archived."""
        if self.search is None:
            return

        for name in self.search.topic_names():
            if self.store.thread_class(name) != "archived":
                logger.info("Removing %s from the archive index", name)
                self.search.remove_thread(name)

        for thread in self.store.threads_by_class("archived"):
            if thread.summary and not self._indexed_current(thread.name, thread.summary):
                logger.info("Indexing archived thread %s", thread.name)
                self.search.add_thread(thread)

    def _indexed_current(self, name: str, summary: str) -> bool:
        entry = self.search.get(name)
        return entry is not None and entry.summary == summary
