"""Unit tests for metamemory.compactor module."""

import pytest
from conftest import FakeProvider

from metamemory.compactor import CompactionOrchestrator
from metamemory.config import MetamemoryConfig, normalize_config
from metamemory.search import InMemorySimilaritySearch
from metamemory.store import TopicThreadStore
from metamemory.summarizer import ThreadSummarizer
from metamemory.types import MergeProposal, Message, TaggedMessage, TaggingResult, Topic

T0 = 1_700_000_000.0


def seed(store, tag, count, topic_class="active", start=0):
    """Add a topic with `count` messages named {tag}-{i}, timestamped T0 + start + i."""
    messages = [
        Message(
            id=f"{tag}-{i}", role="user", content=f"{tag} message {i}", timestamp=T0 + start + i
        )
        for i in range(count)
    ]
    store.apply_tagging_result(
        TaggingResult(
            topics={
                tag: Topic(tag=tag, topic_class=topic_class, created_at=T0, updated_at=T0)
            },
            tagged_messages={
                m.id: TaggedMessage(message_id=m.id, topic_tags=[tag], updated_at=T0)
                for m in messages
            },
        ),
        {m.id: m for m in messages},
    )
    return messages


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def store(clock):
    return TopicThreadStore(clock=clock)


def make_orchestrator(store, provider, clock, search=None, **config):
    return CompactionOrchestrator(
        store,
        ThreadSummarizer(provider, "test-model"),
        normalize_config(MetamemoryConfig(**config)),
        search=search,
        clock=clock,
    )


class TestCompactThread:
    """Tests for compacting a single thread."""

    @pytest.mark.asyncio
    async def test_light_compaction_keeps_recent_tail(self, store, provider, clock):
        seed(store, "t", 8)
        provider.queue({"summary": "First five messages."})
        orchestrator = make_orchestrator(store, provider, clock, min_recent_messages=3)

        compacted = await orchestrator.compact_thread("t", "light")

        assert compacted == 5
        thread = store.get_thread("t")
        assert thread.message_ids == ["t-5", "t-6", "t-7"]
        assert thread.summary == "First five messages."
        assert thread.summaries[0].level == "light"
        assert thread.compacted_message_ids == ["t-0", "t-1", "t-2", "t-3", "t-4"]
        assert "t message 4" in provider.prompts[0]
        assert "t message 5" not in provider.prompts[0]

    @pytest.mark.asyncio
    async def test_tail_floor_is_noop(self, store, provider, clock):
        seed(store, "t", 3)
        orchestrator = make_orchestrator(store, provider, clock, min_recent_messages=3)

        assert await orchestrator.compact_thread("t", "light") == 0

        assert store.get_thread("t").message_ids == ["t-0", "t-1", "t-2"]
        assert store.get_thread("t").compacted_class == "active"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_archival_keeps_nothing(self, store, provider, clock):
        seed(store, "old", 4, topic_class="archived")
        provider.queue({"summary": "Final record."})
        orchestrator = make_orchestrator(store, provider, clock)

        assert await orchestrator.compact_thread("old", "archival") == 4
        assert store.get_thread("old").messages == []

    @pytest.mark.asyncio
    async def test_unknown_thread(self, store, provider, clock):
        orchestrator = make_orchestrator(store, provider, clock)
        with pytest.raises(KeyError):
            await orchestrator.compact_thread("nope", "light")

    @pytest.mark.asyncio
    async def test_core_thread_rejected(self, store, provider, clock):
        seed(store, "rules", 5, topic_class="core")
        orchestrator = make_orchestrator(store, provider, clock, min_recent_messages=0)
        with pytest.raises(ValueError):
            await orchestrator.compact_thread("rules", "light")
        assert len(store.get_thread("rules").messages) == 5


class TestEligibility:
    """Tests for eligible_threads."""

    def test_size_threshold(self, store, provider, clock):
        seed(store, "big", 6)
        seed(store, "small", 2, start=10)
        orchestrator = make_orchestrator(
            store, provider, clock, compaction_thresholds={"active": 5}, min_recent_messages=2
        )
        assert orchestrator.eligible_threads() == [("big", "light")]

    def test_transition_to_idle(self, store, provider, clock):
        seed(store, "paused", 5, topic_class="idle")
        orchestrator = make_orchestrator(store, provider, clock)
        assert orchestrator.eligible_threads() == [("paused", "heavy")]

        store.mark_compacted("paused")
        assert orchestrator.eligible_threads() == []

    def test_inactivity(self, store, provider, clock):
        seed(store, "quiet", 2)
        orchestrator = make_orchestrator(
            store, provider, clock, thread_inactivity_timeout=60, min_recent_messages=1
        )
        assert orchestrator.eligible_threads() == []

        clock.advance(120)
        assert orchestrator.eligible_threads() == [("quiet", "light")]

    def test_core_and_ephemeral_never_eligible(self, store, provider, clock):
        seed(store, "rules", 50, topic_class="core")
        seed(store, "hello", 2, topic_class="ephemeral")
        clock.advance(10_000)
        orchestrator = make_orchestrator(store, provider, clock)
        assert orchestrator.eligible_threads() == []

    def test_least_recent_first_and_capped(self, store, provider, clock):
        seed(store, "newer", 3, start=100)
        seed(store, "older", 3, start=0)
        seed(store, "middle", 3, start=50)
        orchestrator = make_orchestrator(
            store,
            provider,
            clock,
            compaction_thresholds={"active": 1},
            max_threads_per_pass=2,
            min_recent_messages=1,
        )
        assert orchestrator.eligible_threads() == [("older", "light"), ("middle", "light")]

    def test_threads_within_retained_tail_skipped(self, store, provider, clock):
        seed(store, "stale", 2)
        seed(store, "paused", 2, topic_class="idle")
        seed(store, "big", 50, start=100)
        clock.advance(10_000)
        orchestrator = make_orchestrator(
            store, provider, clock, max_threads_per_pass=1, idle_recent_messages=3
        )
        assert orchestrator.eligible_threads() == [("big", "light")]


class TestRunCycle:
    """Tests for run_cycle."""

    @pytest.mark.asyncio
    async def test_compacts_eligible_threads(self, store, provider, clock):
        seed(store, "a", 6)
        seed(store, "b", 6, start=10)
        provider.queue({"summary": "a summary"}, {"summary": "b summary"})
        orchestrator = make_orchestrator(
            store, provider, clock, compaction_thresholds={"active": 5}, min_recent_messages=2
        )

        report = await orchestrator.run_cycle()

        assert report.threads_compacted == ["a", "b"]
        assert report.messages_compacted == 8
        assert report.compacted is True
        assert store.get_thread("b").summary == "b summary"

    @pytest.mark.asyncio
    async def test_summarizer_failure_isolated(self, store, provider, clock):
        seed(store, "a", 6)
        seed(store, "b", 6, start=10)
        provider.queue(RuntimeError("provider down"), {"summary": "b summary"})
        orchestrator = make_orchestrator(
            store, provider, clock, compaction_thresholds={"active": 5}, min_recent_messages=2
        )

        report = await orchestrator.run_cycle()

        assert report.threads_failed == ["a"]
        assert report.threads_compacted == ["b"]
        assert len(store.get_thread("a").messages) == 6
        assert store.get_thread("a").summaries == []

    @pytest.mark.asyncio
    async def test_empty_summary_leaves_thread(self, store, provider, clock):
        seed(store, "a", 6)
        provider.queue("   ")
        orchestrator = make_orchestrator(
            store, provider, clock, compaction_thresholds={"active": 5}, min_recent_messages=2
        )

        report = await orchestrator.run_cycle()

        assert report.threads_failed == ["a"]
        assert len(store.get_thread("a").messages) == 6

    @pytest.mark.asyncio
    async def test_thread_changed_while_summarizing_is_refused(self, store, clock):
        seed(store, "a", 6)

        class RetaggingProvider(FakeProvider):
            async def generate(self, messages, model, **kwargs):
                # A tagging pass lands while the summary is being generated.
                store.apply_tagging_result(
                    TaggingResult(
                        topics={
                            "b": Topic(tag="b", topic_class="active", created_at=T0, updated_at=T0)
                        },
                        tagged_messages={
                            "a-0": TaggedMessage(message_id="a-0", topic_tags=["b"], updated_at=T0)
                        },
                    ),
                    {},
                )
                return await super().generate(messages, model, **kwargs)

        provider = RetaggingProvider({"summary": "stale"})
        orchestrator = make_orchestrator(
            store, provider, clock, compaction_thresholds={"active": 5}, min_recent_messages=2
        )

        report = await orchestrator.run_cycle()

        assert report.threads_refused == ["a"]
        thread = store.get_thread("a")
        assert thread.summaries == []
        assert thread.message_ids == ["a-1", "a-2", "a-3", "a-4", "a-5"]

    @pytest.mark.asyncio
    async def test_thread_merged_away_mid_cycle_is_refused(self, store, clock):
        seed(store, "a", 6)
        seed(store, "b", 6, start=10)

        class MergingProvider(FakeProvider):
            async def generate(self, messages, model, **kwargs):
                store.apply_tagging_result(
                    TaggingResult(
                        merge_proposals=[
                            MergeProposal(source_tags=["b"], merged_tag="c", topic_class="active")
                        ]
                    ),
                    {},
                )
                return await super().generate(messages, model, **kwargs)

        provider = MergingProvider({"summary": "a summary"})
        orchestrator = make_orchestrator(
            store, provider, clock, compaction_thresholds={"active": 5}, min_recent_messages=2
        )

        report = await orchestrator.run_cycle()

        assert report.threads_compacted == ["a"]
        assert report.threads_refused == ["b"]
        assert report.threads_failed == []
        assert len(store.get_thread("c").messages) == 6

    @pytest.mark.asyncio
    async def test_small_stale_threads_do_not_starve_large_ones(self, store, provider, clock):
        seed(store, "stale", 2)
        seed(store, "big", 50, start=100)
        clock.advance(10_000)
        provider.queue({"summary": "big summary"})
        orchestrator = make_orchestrator(store, provider, clock, max_threads_per_pass=1)

        report = await orchestrator.run_cycle()

        assert report.threads_compacted == ["big"]
        assert report.messages_compacted == 40
        assert len(store.get_thread("big").messages) == 10
        assert len(store.get_thread("stale").messages) == 2

    @pytest.mark.asyncio
    async def test_nothing_eligible(self, store, provider, clock):
        seed(store, "a", 2)
        report = await make_orchestrator(store, provider, clock).run_cycle()
        assert report.compacted is False
        assert provider.calls == []


class TestArchiveIndex:
    """Tests for keeping the archived-summary index in sync."""

    @pytest.mark.asyncio
    async def test_archived_thread_indexed_after_compaction(self, store, provider, clock):
        seed(store, "old_project", 3, topic_class="archived")
        provider.queue({"summary": "Migrated billing to Stripe"})
        search = InMemorySimilaritySearch()
        orchestrator = make_orchestrator(store, provider, clock, search=search)

        await orchestrator.run_cycle()

        assert search.get("old_project").summary == "Migrated billing to Stripe"

    @pytest.mark.asyncio
    async def test_resurrected_thread_removed_from_index(self, store, provider, clock):
        seed(store, "old_project", 3, topic_class="archived")
        provider.queue({"summary": "Migrated billing to Stripe"})
        search = InMemorySimilaritySearch()
        orchestrator = make_orchestrator(store, provider, clock, search=search)
        await orchestrator.run_cycle()

        store.set_topic_class("old_project", "active")
        orchestrator.sync_archive_index()

        assert search.size() == 0

    def test_sync_without_search_is_noop(self, store, provider, clock):
        seed(store, "old", 1, topic_class="archived")
        make_orchestrator(store, provider, clock).sync_archive_index()
