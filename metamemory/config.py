"""Configuration for the metamemory engine."""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .types import CompactionLevel, CompactionLevelName, TopicClass

logger = logging.getLogger(__name__)

DEFAULT_COMPACTION_THRESHOLDS: dict[str, int] = {"active": 40, "idle": 10, "archived": 0}
DEFAULT_SUMMARY_MAX_TOKENS: dict[str, int] = {"light": 1000, "heavy": 500, "archival": 300}

LEVEL_BY_CLASS: dict[str, CompactionLevelName] = {
    "active": "light",
    "idle": "heavy",
    "archived": "archival",
}


class MetamemoryConfig(BaseModel):
    """User-facing configuration. Unset fields fall back to defaults."""

    sliding_window_size: int | None = None
    processing_interval: int | None = None
    compaction_thresholds: dict[TopicClass, int] | None = None
    thread_inactivity_timeout: float | None = None
    max_threads_per_pass: int | None = None
    min_recent_messages: int | None = None
    idle_recent_messages: int | None = None
    summary_max_tokens: dict[CompactionLevelName, int] | None = None
    processing_timeout: float | None = None
    max_tagging_content_chars: int | None = None
    provider: str | None = None
    model: str | None = None


class NormalizedMetamemoryConfig(BaseModel):
    """Internal - all fields resolved to concrete values."""

    sliding_window_size: int = Field(default=20, ge=1)
    processing_interval: int = Field(default=5, ge=1)
    compaction_thresholds: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_COMPACTION_THRESHOLDS)
    )
    thread_inactivity_timeout: float = Field(default=3600.0, gt=0)
    max_threads_per_pass: int = Field(default=50, ge=1)
    min_recent_messages: int = Field(default=10, ge=0)
    idle_recent_messages: int = Field(default=3, ge=0)
    summary_max_tokens: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_SUMMARY_MAX_TOKENS)
    )
    processing_timeout: float = Field(default=30.0, gt=0)
    max_tagging_content_chars: int = Field(default=500, ge=1)
    provider: str = "openai"
    model: str = "gpt-4o-mini"

    def compaction_level(self, name: CompactionLevelName) -> CompactionLevel:
        """Resolve a named compaction level to its budget and retained tail."""
        preserve = {
            "light": self.min_recent_messages,
            "heavy": self.idle_recent_messages,
            "archival": 0,
        }[name]
        return CompactionLevel(
            name=name,
            max_tokens=self.summary_max_tokens[name],
            preserve_latest_messages=preserve,
        )


def normalize_config(config: MetamemoryConfig | None = None) -> NormalizedMetamemoryConfig:
    """Resolve a user-facing config to concrete values."""
    if config is None:
        return NormalizedMetamemoryConfig()

    values = config.model_dump(exclude_none=True)

    # Partial per-class / per-level maps are merged over the defaults.
    if "compaction_thresholds" in values:
        values["compaction_thresholds"] = {
            **DEFAULT_COMPACTION_THRESHOLDS,
            **values["compaction_thresholds"],
        }
    if "summary_max_tokens" in values:
        values["summary_max_tokens"] = {
            **DEFAULT_SUMMARY_MAX_TOKENS,
            **values["summary_max_tokens"],
        }

    return NormalizedMetamemoryConfig(**values)


_ENV_FIELDS: dict[str, tuple[str, type]] = {
    "METAMEMORY_SLIDING_WINDOW_SIZE": ("sliding_window_size", int),
    "METAMEMORY_PROCESSING_INTERVAL": ("processing_interval", int),
    "METAMEMORY_THREAD_INACTIVITY_TIMEOUT": ("thread_inactivity_timeout", float),
    "METAMEMORY_MAX_THREADS_PER_PASS": ("max_threads_per_pass", int),
    "METAMEMORY_MIN_RECENT_MESSAGES": ("min_recent_messages", int),
    "METAMEMORY_PROCESSING_TIMEOUT": ("processing_timeout", float),
    "METAMEMORY_PROVIDER": ("provider", str),
    "METAMEMORY_MODEL": ("model", str),
}


def load_config_from_env() -> MetamemoryConfig:
    """Build a MetamemoryConfig from METAMEMORY_* environment variables (and a .env file)."""
    load_dotenv()

    values = {}
    for env_name, (field_name, cast) in _ENV_FIELDS.items():
        env_value = os.getenv(env_name)
        if not env_value:
            continue
        try:
            values[field_name] = cast(env_value)
        except ValueError:
            logger.warning("Invalid %s value '%s', using default", env_name, env_value)

    return MetamemoryConfig(**values)
