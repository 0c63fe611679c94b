"""Types for the metamemory engine.

Three layers of state:
- Conversation units: what the host hands us, normalized into a closed set of kinds
- Tagging metadata: the topic catalog and per-message topic tags
- Topic threads: the message-sequence view of each topic, compacted over time
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Annotated, Literal, Union, get_args

from pydantic import BaseModel, Field

from .tokens import estimate_tokens

TopicClass = Literal["core", "active", "idle", "archived", "ephemeral"]
CompactionLevelName = Literal["light", "heavy", "archival"]
Role = Literal["system", "user", "assistant", "developer"]

TOPIC_CLASSES: tuple[str, ...] = get_args(TopicClass)
COMPACTION_LEVELS: tuple[str, ...] = get_args(CompactionLevelName)


def format_timestamp(timestamp: float) -> str:
    """Render a unix timestamp as ISO-8601 in UTC."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class Message(BaseModel):
    """One turn unit as stored in a topic thread."""

    id: str
    role: Role
    content: str
    timestamp: float


# -- Conversation units -------------------------------------------------------


class _UnitBase(BaseModel, ABC):
    id: str
    timestamp: float

    @abstractmethod
    def text(self) -> str:
        """Plain-text rendering used in prompts and thread messages."""
        pass

    def speaker(self) -> Role:
        return "assistant"

    def to_message(self) -> Message:
        return Message(
            id=self.id, role=self.speaker(), content=self.text(), timestamp=self.timestamp
        )


class MessageUnit(_UnitBase):
    """A plain role/content message."""

    kind: Literal["message"] = "message"
    role: Role
    content: str

    def text(self) -> str:
        return self.content

    def speaker(self) -> Role:
        return self.role


class FunctionCallUnit(_UnitBase):
    """A tool call whose output is not (yet) in the window."""

    kind: Literal["function_call"] = "function_call"
    name: str
    call_id: str | None = None
    arguments: str = ""

    def text(self) -> str:
        return f"[tool call] {self.name}({self.arguments})"


class FunctionCallOutputUnit(_UnitBase):
    """A tool result whose call is not directly before it."""

    kind: Literal["function_call_output"] = "function_call_output"
    call_id: str | None = None
    output: str = ""

    def text(self) -> str:
        return f"[tool output] {self.output}"


class FunctionCallWithOutputUnit(_UnitBase):
    """A tool call merged with the result that immediately followed it.

    The unit takes the id of the result entry.
    """

    kind: Literal["function_call_with_output"] = "function_call_with_output"
    name: str
    call_id: str | None = None
    arguments: str = ""
    output: str = ""

    def text(self) -> str:
        return f"[tool call] {self.name}({self.arguments}) -> {self.output}"


ConversationUnit = Annotated[
    Union[MessageUnit, FunctionCallUnit, FunctionCallOutputUnit, FunctionCallWithOutputUnit],
    Field(discriminator="kind"),
]


class TaggableUnit(BaseModel):
    """A conversation unit plus whatever tagging it already received."""

    unit: ConversationUnit
    topic_tags: list[str] = Field(default_factory=list)
    summary: str | None = None

    @property
    def id(self) -> str:
        return self.unit.id

    @property
    def is_tagged(self) -> bool:
        return bool(self.topic_tags)


# -- Tagging metadata ---------------------------------------------------------


class Topic(BaseModel):
    """Catalog entry for a normalized topic tag."""

    tag: str
    topic_class: TopicClass
    description: str = ""
    created_at: float
    updated_at: float
    # Broader topics this one is part of
    related_topics: list[str] = Field(default_factory=list)


class TaggedMessage(BaseModel):
    """Tagging metadata for one message id."""

    message_id: str
    topic_tags: list[str]
    summary: str = ""
    updated_at: float


class TopicRelationship(BaseModel):
    """A model-proposed link from a subtopic to the broader topic it belongs to."""

    parent: str
    child: str


class MergeProposal(BaseModel):
    """A model-proposed merge of several topics into one."""

    source_tags: list[str]
    merged_tag: str
    topic_class: TopicClass
    description: str = ""
    justification: str = ""


class TaggingResult(BaseModel):
    """Reconciled output of one tagging pass, keyed by normalized tag / message id."""

    topics: dict[str, Topic] = Field(default_factory=dict)
    tagged_messages: dict[str, TaggedMessage] = Field(default_factory=dict)
    merge_proposals: list[MergeProposal] = Field(default_factory=list)
    relationships: list[TopicRelationship] = Field(default_factory=list)
    parsed: bool = True


class TaggingStats(BaseModel):
    """Counts reported after applying a tagging pass."""

    new_topic_count: int = 0
    updated_topic_count: int = 0
    new_message_count: int = 0
    updated_message_count: int = 0
    merged_topic_count: int = 0


# -- Topic threads ------------------------------------------------------------


class ThreadSummary(BaseModel):
    """One compaction output appended to a thread."""

    level: CompactionLevelName
    text: str
    message_ids: list[str] = Field(default_factory=list)
    created_at: float


class TopicThread(BaseModel):
    """Message-sequence view of a topic."""

    name: str
    messages: list[Message] = Field(default_factory=list)
    summaries: list[ThreadSummary] = Field(default_factory=list)
    compacted_message_ids: list[str] = Field(default_factory=list)
    # Class the thread was last compacted for; a mismatch means a transition happened since.
    compacted_class: TopicClass | None = None
    last_active: float
    created_at: float

    @property
    def summary(self) -> str:
        return "\n\n".join(s.text for s in self.summaries if s.text)

    @property
    def message_ids(self) -> list[str]:
        return [m.id for m in self.messages]

    @property
    def token_count(self) -> int:
        text = " ".join(m.content for m in self.messages)
        return estimate_tokens(text + " " + self.summary)


class CompactionLevel(BaseModel):
    """Summarization intensity with its output budget and retained tail."""

    name: CompactionLevelName
    max_tokens: int
    preserve_latest_messages: int


class CompactionCycleReport(BaseModel):
    """What one compaction cycle did."""

    threads_compacted: list[str] = Field(default_factory=list)
    messages_compacted: int = 0
    threads_refused: list[str] = Field(default_factory=list)
    threads_failed: list[str] = Field(default_factory=list)

    @property
    def compacted(self) -> bool:
        return self.messages_compacted > 0


# -- Context assembly ---------------------------------------------------------


class ContextAssemblyOptions(BaseModel):
    """Options for building the bounded context."""

    recent_message_count: int = 30
    include_idle_summaries: bool = True
    include_archived_search: bool = True
    max_tokens: int = 100000
    archived_search_top_k: int = 3


class SearchResult(BaseModel):
    """A ranked archived-thread match."""

    topic_name: str
    summary: str
    relevance_score: float


class IndexedSummary(BaseModel):
    """An archived summary with its embedding."""

    topic_name: str
    summary: str
    embedding: list[float]


class HistoryCompactionMetadata(BaseModel):
    original_count: int
    compacted_count: int
    threads_preserved: list[str] = Field(default_factory=list)
    threads_summarized: list[str] = Field(default_factory=list)
    original_tokens: int | None = None
    compacted_tokens: int | None = None


class HistoryCompactionResult(BaseModel):
    """Result from Metamemory.compact_history."""

    messages: list[dict]
    metadata: HistoryCompactionMetadata


class MemoryStats(BaseModel):
    core_threads: int = 0
    active_threads: int = 0
    idle_threads: int = 0
    archived_threads: int = 0
    ephemeral_threads: int = 0
    total_messages: int = 0
    total_tokens: int = 0


class MetamemoryState(BaseModel):
    """Serializable snapshot of the store and the archived-summary index."""

    topics: dict[str, Topic] = Field(default_factory=dict)
    tagged_messages: dict[str, TaggedMessage] = Field(default_factory=dict)
    threads: dict[str, TopicThread] = Field(default_factory=dict)
    embeddings: dict[str, IndexedSummary] = Field(default_factory=dict)
