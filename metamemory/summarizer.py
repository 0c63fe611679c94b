"""Thread summarization at light / heavy / archival intensity."""

from __future__ import annotations

import json
import logging

from pydantic import BaseModel, Field, ValidationError

from .llm.generate import generate_structured
from .llm.providers.base import LLMProvider
from .tokens import CHARS_PER_TOKEN, estimate_tokens
from .types import CompactionLevel, Message, TopicThread, format_timestamp

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n[Summary truncated]"

_PREAMBLE = (
    "You are an expert AI archivist. Your task is to summarize a conversational "
    "thread. Your summary should be dense with facts, decisions, key findings, "
    "and open questions.\n"
    "\n"
    "Thread Topic: {topic_name}\n"
)

SUMMARIZATION_PROMPTS: dict[str, str] = {
    "light": _PREAMBLE
    + "Current State: Active (Light Compaction)\n"
    "Reason for Compaction: Routine compaction of an active thread\n"
    "\n"
    "INSTRUCTIONS:\n"
    "- You are summarizing the OLDEST part of an ongoing conversation.\n"
    "- Focus on retaining specific facts, data points, and decisions.\n"
    "- Provide key points as a list for easy reference.\n"
    "- Note any open questions that remain unresolved.\n"
    '- Include a "current_status" that BRIEFLY sets the stage for the more recent, '
    "un-summarized messages that will follow.\n"
    "\n"
    "Conversation to Summarize:\n"
    "{messages}",
    "heavy": _PREAMBLE
    + "Current State: Idle (Heavy Compaction)\n"
    "Reason for Compaction: Thread is no longer in focus\n"
    "\n"
    "INSTRUCTIONS:\n"
    "- You are summarizing a thread that is not currently in focus.\n"
    "- Create a concise brief that can quickly bring the assistant up to speed "
    "if it returns to this topic.\n"
    "- Focus on: What was the goal? What was accomplished? What were the key "
    "learnings or blocking issues?\n"
    "- Include clear next_steps for if this topic is resumed.\n"
    "\n"
    "Conversation to Summarize:\n"
    "{messages}",
    "archival": _PREAMBLE
    + "Current State: Archived (Archival Summary)\n"
    "Reason for Compaction: Creating final record for long-term storage\n"
    "\n"
    "INSTRUCTIONS:\n"
    "- You are creating a final, definitive record of a completed or abandoned topic.\n"
    "- This summary is for long-term memory. It should be a comprehensive overview.\n"
    "- Include the initial goal, the process followed, the final outcome, and any "
    "key data or code snippets that were produced.\n"
    "- If the topic was abandoned, note why in the next_steps field.\n"
    "\n"
    "Conversation to Summarize:\n"
    "{messages}",
}


class ThreadSummaryResponse(BaseModel):
    summary: str = Field(description="The main summary text of the thread")
    key_points: list[str] = Field(
        default_factory=list, description="Key points, decisions, or findings"
    )
    open_questions: list[str] = Field(
        default_factory=list, description="Unresolved questions or issues"
    )
    next_steps: str = Field(default="", description="Suggested next steps if the topic is resumed")
    current_status: str = Field(
        default="", description="Brief status of where the conversation left off"
    )


def format_messages(messages: list[Message]) -> str:
    """Render messages with role and timestamp for the summarization prompt."""
    blocks = [
        f"[{index}] {message.role.upper()} ({format_timestamp(message.timestamp)}):\n"
        f"{message.content}\n"
        for index, message in enumerate(messages, start=1)
    ]
    return "\n---\n\n".join(blocks)


def format_summary(response: ThreadSummaryResponse) -> str:
    """Flatten a structured summary into one text block."""
    text = response.summary
    if response.key_points:
        text += "\n\nKey Points:\n" + "\n".join(f"• {p}" for p in response.key_points)
    if response.open_questions:
        text += "\n\nOpen Questions:\n" + "\n".join(f"• {q}" for q in response.open_questions)
    if response.next_steps:
        text += "\n\nNext Steps: " + response.next_steps
    if response.current_status:
        text += "\n\nCurrent Status: " + response.current_status
    return text


def truncate_summary(summary: str, max_tokens: int) -> str:
    """Trim a summary to its token budget, marking the cut.

    A truncated summary is exactly ``max_tokens * 4`` characters long and ends
    with TRUNCATION_MARKER.
    """
    cleaned = summary.strip()
    if estimate_tokens(cleaned) <= max_tokens:
        return cleaned
    max_chars = max_tokens * CHARS_PER_TOKEN
    return cleaned[: max(max_chars - len(TRUNCATION_MARKER), 0)] + TRUNCATION_MARKER


class ThreadSummarizer:
    """Summarizes the oldest messages of a topic thread."""

    def __init__(self, provider: LLMProvider, model: str):
        self.provider = provider
        self.model = model

    async def summarize(
        self, thread: TopicThread, messages_to_summarize: int, level: CompactionLevel
    ) -> str:
        """Summarize the oldest ``messages_to_summarize`` raw messages of a thread.

        Returns:
            The formatted summary, truncated to the level's budget. Empty if
            there is nothing to summarize. If the response is not the expected
            JSON, the raw response text is used instead.
        """
        messages = thread.messages[: max(messages_to_summarize, 0)]
        if not messages:
            return ""

        prompt = (
            SUMMARIZATION_PROMPTS[level.name]
            .replace("{topic_name}", thread.name)
            .replace("{messages}", format_messages(messages))
        )

        raw = await generate_structured(
            self.provider,
            model=self.model,
            prompt=prompt,
            schema=ThreadSummaryResponse,
            max_tokens=level.max_tokens,
            step=f"summarizer.{level.name}",
        )

        try:
            response = ThreadSummaryResponse.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(
                "Failed to parse %s summary for thread %s, using raw response: %s",
                level.name,
                thread.name,
                e,
            )
            return truncate_summary(raw, level.max_tokens)

        return truncate_summary(format_summary(response), level.max_tokens)
