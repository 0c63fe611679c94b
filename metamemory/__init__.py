"""Metamemory - topic-threaded memory for long-running agent conversations."""

__version__ = "0.1.0"

from .compactor import CompactionOrchestrator
from .config import (
    MetamemoryConfig,
    NormalizedMetamemoryConfig,
    load_config_from_env,
    normalize_config,
)
from .context import ContextAssembler
from .errors import (
    CompactionRefusedError,
    InvariantViolationError,
    MetamemoryError,
    MetamemoryTimeoutError,
    MissingMessageIdError,
)
from .memory import Metamemory
from .normalizer import normalize_entries
from .search import InMemorySimilaritySearch, SimilaritySearch
from .store import TopicThreadStore
from .summarizer import ThreadSummarizer
from .tagger import TopicTagger, normalize_topic_tag
from .tokens import estimate_message_tokens, estimate_messages_tokens, estimate_tokens
from .types import (
    CompactionCycleReport,
    CompactionLevel,
    ContextAssemblyOptions,
    HistoryCompactionMetadata,
    HistoryCompactionResult,
    MemoryStats,
    Message,
    MetamemoryState,
    SearchResult,
    TaggableUnit,
    TaggedMessage,
    TaggingResult,
    TaggingStats,
    Topic,
    TopicRelationship,
    TopicThread,
)

__all__ = [
    "CompactionCycleReport",
    "CompactionLevel",
    "CompactionOrchestrator",
    "CompactionRefusedError",
    "ContextAssembler",
    "ContextAssemblyOptions",
    "HistoryCompactionMetadata",
    "HistoryCompactionResult",
    "InMemorySimilaritySearch",
    "InvariantViolationError",
    "MemoryStats",
    "Message",
    "Metamemory",
    "MetamemoryConfig",
    "MetamemoryError",
    "MetamemoryState",
    "MetamemoryTimeoutError",
    "MissingMessageIdError",
    "NormalizedMetamemoryConfig",
    "SearchResult",
    "SimilaritySearch",
    "TaggableUnit",
    "TaggedMessage",
    "TaggingResult",
    "TaggingStats",
    "ThreadSummarizer",
    "Topic",
    "TopicRelationship",
    "TopicTagger",
    "TopicThread",
    "TopicThreadStore",
    "estimate_message_tokens",
    "estimate_messages_tokens",
    "estimate_tokens",
    "load_config_from_env",
    "normalize_config",
    "normalize_entries",
    "normalize_topic_tag",
]
