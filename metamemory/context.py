"""Context assembly: a bounded, prioritized view of memory for the primary agent."""

from __future__ import annotations

import logging
from typing import Any

from .search import SimilaritySearch
from .store import TopicThreadStore
from .tokens import entry_text, estimate_message_tokens
from .types import (
    ContextAssemblyOptions,
    MemoryStats,
    SearchResult,
    TopicThread,
    format_timestamp,
)

logger = logging.getLogger(__name__)

CORE_HEADER = "=== CORE INSTRUCTIONS ==="
ARCHIVED_HEADER = "=== RELEVANT ARCHIVED TOPICS ==="
RECENT_HEADER = "=== RECENT CONVERSATION ==="

# Number of trailing conversation entries used to build the archived search query
ARCHIVED_QUERY_MESSAGES = 5


def system_entry(content: str) -> dict[str, Any]:
    return {"type": "message", "role": "system", "content": content}


class ContextAssembler:
    """Builds the context sent to the primary agent. Never mutates the store."""

    def __init__(self, store: TopicThreadStore, search: SimilaritySearch | None = None):
        self.store = store
        self.search = search

    async def build_context(
        self,
        recent_messages: list[dict[str, Any]],
        options: ContextAssemblyOptions | None = None,
    ) -> list[dict[str, Any]]:
        """Assemble core, active, idle, archived and recent sections, then trim to budget.

        Sections are emitted in that fixed order. Trimming walks backward from
        the newest entry, so the recent conversation survives longest; the core
        section is always kept.
        """
        options = options or ContextAssemblyOptions()
        recent_count = min(max(options.recent_message_count, 0), len(recent_messages))
        recent = recent_messages[len(recent_messages) - recent_count :]
        recent_ids = {entry.get("id") for entry in recent if entry.get("id")}

        core = self._core_section()
        sections: list[dict[str, Any]] = []

        active = sorted(self.store.threads_by_class("active"), key=lambda t: t.last_active)
        for thread in active:
            sections.extend(
                self._active_thread_block(thread, options.recent_message_count, recent_ids)
            )

        if options.include_idle_summaries:
            sections.extend(self._idle_section())

        if options.include_archived_search and self.search is not None:
            results = await self._search_archived(recent_messages, options.archived_search_top_k)
            if results:
                sections.append(system_entry(_format_archived(results)))

        sections.append(system_entry(RECENT_HEADER))
        sections.extend(recent)

        return trim_to_budget(core, sections, options.max_tokens)

    def _core_section(self) -> list[dict[str, Any]]:
        parts = []
        for thread in self.store.threads_by_class("core"):
            if thread.summary:
                parts.append(thread.summary)
            parts.extend(m.content for m in thread.messages)
        if not parts:
            return []
        return [system_entry(CORE_HEADER + "\n" + "\n".join(parts))]

    def _active_thread_block(
        self, thread: TopicThread, recent_message_count: int, exclude_ids: set[str]
    ) -> list[dict[str, Any]]:
        tail = thread.messages[-recent_message_count:] if recent_message_count > 0 else []
        tail = [m for m in tail if m.id not in exclude_ids]

        header = f"=== ACTIVE TOPIC: {thread.name} ==="
        if thread.summary:
            header += f"\nSummary of earlier discussion:\n{thread.summary}"
        footer = f"=== END TOPIC: {thread.name} ==="

        if not tail:
            return [system_entry(f"{header}\n{footer}")]

        block = [system_entry(header)]
        block.extend(
            {"type": "message", "role": m.role, "content": m.content, "id": m.id} for m in tail
        )
        block.append(system_entry(footer))
        return block

    def _idle_section(self) -> list[dict[str, Any]]:
        block = []
        for thread in self.store.threads_by_class("idle"):
            topic = self.store.get_topic(thread.name)
            text = thread.summary or (topic.description if topic else "")
            if not text:
                continue
            block.append(
                system_entry(
                    f"=== IDLE TOPIC: {thread.name} ===\n"
                    f"Last Active: {format_timestamp(thread.last_active)}\n"
                    f"Summary: {text}"
                )
            )
        return block

    async def _search_archived(
        self, recent_messages: list[dict[str, Any]], top_k: int
    ) -> list[SearchResult]:
        texts = [entry_text(entry) for entry in recent_messages[-ARCHIVED_QUERY_MESSAGES:]]
        query = " ".join(t for t in texts if t)
        if not query:
            return []
        try:
            return await self.search.search(query, top_k)
        except Exception:
            logger.exception("Archived topic search failed, continuing without it")
            return []

    def get_memory_stats(self) -> MemoryStats:
        """Thread counts per lifecycle class plus raw message and token totals."""
        stats = MemoryStats()
        for tag, thread in self.store.threads.items():
            topic_class = self.store.thread_class(tag)
            if topic_class is not None:
                field = f"{topic_class}_threads"
                setattr(stats, field, getattr(stats, field) + 1)
            stats.total_messages += len(thread.messages)
            stats.total_tokens += thread.token_count
        return stats


def _format_archived(results: list[SearchResult]) -> str:
    lines = [ARCHIVED_HEADER, ""]
    for result in results:
        lines.append(f"Topic: {result.topic_name} (relevance: {result.relevance_score:.2f})")
        lines.append(f"Summary: {result.summary}")
        lines.append("")
    return "\n".join(lines).rstrip()


def trim_to_budget(
    core: list[dict[str, Any]], sections: list[dict[str, Any]], max_tokens: int
) -> list[dict[str, Any]]:
    """Keep the core entries plus the longest newest-first run of sections that fits.

    Core tokens are reserved first and core is kept even when it alone
    exceeds the budget.
    """
    remaining = max_tokens - sum(estimate_message_tokens(entry) for entry in core)
    kept: list[dict[str, Any]] = []

    for entry in reversed(sections):
        tokens = estimate_message_tokens(entry)
        if tokens > remaining:
            logger.debug(
                "Context budget reached, dropping %d older entries", len(sections) - len(kept)
            )
            break
        kept.append(entry)
        remaining -= tokens

    kept.reverse()
    return core + kept
