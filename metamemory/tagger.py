"""Topic tagging of conversation units via a structured LLM request.

One request covers a whole window: the model sees the topic catalog, the
units it tagged before (so it may revise them) and the untagged units, and
returns per-message tags and topic declarations. Merge proposals and
subtopic relationships are optional.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .errors import MissingMessageIdError
from .llm.generate import generate_structured
from .llm.providers.base import LLMProvider
from .types import (
    MergeProposal,
    TaggableUnit,
    TaggedMessage,
    TaggingResult,
    Topic,
    TopicClass,
    TopicRelationship,
)

logger = logging.getLogger(__name__)

# -- Constants ----------------------------------------------------------------

TAGGER_PROMPT = (
    "You are an expert AI librarian and conversation analyst. Your task is to "
    "organize a conversation into topic threads by assigning one or more topic "
    "tags to each message.\n"
    "\n"
    "Guidelines:\n"
    "- Be consistent: reuse an existing topic tag whenever a message continues "
    "that topic. Use the same tag for the same underlying concept.\n"
    "- Be granular: good tags name a distinct task, goal or theme, like "
    "database_schema_design or user_feedback_analysis. Bad tags are generic, "
    "like chat or work.\n"
    "- Tags use lowercase letters, digits and underscores only.\n"
    "- For every message, write a 2-10 word summary of what it contributes.\n"
    "- You may revise the tags or summary of previously tagged messages if the "
    "newer context shows they were wrong. Omit messages whose tags are still right.\n"
    "\n"
    "For every topic you introduce or whose status changed, declare its type:\n"
    "- core: foundational instructions, goals or constraints that must always be remembered\n"
    "- active: topics currently being worked on or discussed\n"
    "- idle: topics no longer in focus that may be resumed\n"
    "- archived: topics that are completed or abandoned\n"
    "- ephemeral: greetings, filler and trivial one-off queries\n"
    "Give each declared topic a one-sentence description of what it covers. "
    "A core topic stays core.\n"
    "\n"
    "If two or more existing topics clearly cover the same subject, propose a "
    "merge: list the source tags, the merged tag, its type, description and a "
    "short justification. Leave topic_merges empty otherwise.\n"
    "\n"
    "If a topic is a narrower part of a broader topic, add a relationship with "
    "the broader tag as parent and the narrower tag as child. Leave "
    "relationships empty otherwise.\n"
    "\n"
    "Existing topics:\n"
    "{known_topics}\n"
    "\n"
    "Previously tagged messages (may be revised):\n"
    "{tagged_messages}\n"
    "\n"
    "New messages to tag:\n"
    "{untagged_messages}"
)

# -- Response schema ----------------------------------------------------------


class TaggedMessageItem(BaseModel):
    message_id: str = Field(description="Id of the message being tagged")
    topic_tags: list[str] = Field(description="One or more topic tags for the message")
    summary: str = Field(description="2-10 word summary of the message")


class TopicTagTypeItem(BaseModel):
    topic_tag: str = Field(description="Topic tag being declared or revised")
    type: TopicClass = Field(description="Lifecycle type of the topic")
    description: str = Field(description="One sentence describing what the topic covers")


class TopicMergeItem(BaseModel):
    source_tags: list[str] = Field(description="Existing tags to merge")
    merged_tag: str = Field(description="Tag that replaces the source tags")
    type: TopicClass = Field(description="Lifecycle type of the merged topic")
    description: str = Field(description="One sentence describing the merged topic")
    justification: str = Field(description="Why these topics are the same subject")


class TopicRelationshipItem(BaseModel):
    parent: str = Field(description="Broader topic tag")
    child: str = Field(description="Narrower topic tag that is part of the parent")


class MetamemoryTaggerResponse(BaseModel):
    messages: list[TaggedMessageItem]
    topic_tag_types: list[TopicTagTypeItem]
    topic_merges: list[TopicMergeItem]
    relationships: list[TopicRelationshipItem] = Field(default_factory=list)


# -- Helpers ------------------------------------------------------------------

_WHITESPACE = re.compile(r"\s+")
_INVALID_TAG_CHARS = re.compile(r"[^a-z0-9_]")


def normalize_topic_tag(tag: str) -> str:
    """Normalize a topic tag to its catalog key.

    Lower-cases, replaces internal whitespace with underscores and strips every
    character outside [a-z0-9_]. Normalizing twice equals normalizing once.
    """
    lowered = tag.strip().lower()
    return _INVALID_TAG_CHARS.sub("", _WHITESPACE.sub("_", lowered))


def normalize_topic_tags(tags: list[str]) -> list[str]:
    """Normalize a tag list, dropping empty results and duplicates (first occurrence wins)."""
    result: list[str] = []
    for tag in tags:
        normalized = normalize_topic_tag(tag)
        if normalized and normalized not in result:
            result.append(normalized)
    return result


def format_known_topics(known_topics: Mapping[str, Topic]) -> str:
    """Render the topic catalog for the tagging prompt."""
    if not known_topics:
        return "(none)"
    lines = []
    for tag, topic in known_topics.items():
        line = f"- {tag} [{topic.topic_class}]"
        if topic.related_topics:
            line += f" (part of {', '.join(topic.related_topics)})"
        if topic.description:
            line += f": {topic.description}"
        lines.append(line)
    return "\n".join(lines)


def format_units(units: list[dict[str, Any]]) -> str:
    if not units:
        return "(none)"
    return json.dumps(units, indent=2, ensure_ascii=False)


# -- Tagger -------------------------------------------------------------------


class TopicTagger:
    """Assigns topic tags to conversation units with one LLM request per window."""

    def __init__(
        self,
        provider: LLMProvider,
        model: str,
        max_content_chars: int = 500,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.model = model
        self.max_content_chars = max_content_chars
        self.clock = clock

    async def tag(
        self,
        units: list[TaggableUnit],
        known_topics: Mapping[str, Topic],
        known_tagged_messages: Mapping[str, TaggedMessage],
    ) -> TaggingResult:
        """Tag a window of units.

        Returns:
            TaggingResult with the reconciled topics, tagged messages and merge
            proposals. ``parsed`` is False (and everything else empty) when the
            model response could not be parsed.

        Raises:
            ValueError: If units is empty
            MissingMessageIdError: If any unit has no id
        """
        if not units:
            raise ValueError("tag() requires at least one unit")
        for index, unit in enumerate(units):
            if not unit.id:
                raise MissingMessageIdError(index=index, entry_type=unit.unit.kind)

        prompt = self.build_prompt(units, known_topics, known_tagged_messages)
        raw = await generate_structured(
            self.provider,
            model=self.model,
            prompt=prompt,
            schema=MetamemoryTaggerResponse,
            step="tagger",
        )
        return self.parse_response(raw, units, known_topics)

    def build_prompt(
        self,
        units: list[TaggableUnit],
        known_topics: Mapping[str, Topic],
        known_tagged_messages: Mapping[str, TaggedMessage],
    ) -> str:
        tagged: list[dict[str, Any]] = []
        untagged: list[dict[str, Any]] = []

        for unit in units:
            entry: dict[str, Any] = {
                "id": unit.id,
                "kind": unit.unit.kind,
                "role": unit.unit.speaker(),
                "content": unit.unit.text()[: self.max_content_chars],
            }
            tags = unit.topic_tags
            summary = unit.summary
            existing = known_tagged_messages.get(unit.id)
            if not tags and existing is not None:
                tags = existing.topic_tags
                summary = existing.summary
            if tags:
                entry["topic_tags"] = list(tags)
                entry["summary"] = summary or ""
                tagged.append(entry)
            else:
                untagged.append(entry)

        return (
            TAGGER_PROMPT.replace("{known_topics}", format_known_topics(known_topics))
            .replace("{tagged_messages}", format_units(tagged))
            .replace("{untagged_messages}", format_units(untagged))
        )

    def parse_response(
        self,
        raw: str,
        units: list[TaggableUnit],
        known_topics: Mapping[str, Topic],
    ) -> TaggingResult:
        """Reconcile a raw model response into a TaggingResult.

        A response that is not a JSON object of the expected shape is rejected
        as a whole. Individual items that fail validation are skipped.
        """
        try:
            parsed = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Tagger response is not valid JSON, ignoring pass: %s", e)
            return TaggingResult(parsed=False)

        if not isinstance(parsed, dict) or not isinstance(parsed.get("messages"), list):
            logger.warning("Tagger response does not match the expected schema, ignoring pass")
            return TaggingResult(parsed=False)

        topic_items = parsed.get("topic_tag_types") or []
        merge_items = parsed.get("topic_merges") or []
        relationship_items = parsed.get("relationships") or []
        if not isinstance(topic_items, list) or not isinstance(merge_items, list):
            logger.warning("Tagger response has malformed topic sections, ignoring pass")
            return TaggingResult(parsed=False)

        now = self.clock()
        window_ids = {unit.id for unit in units}
        result = TaggingResult()

        for item in topic_items:
            declaration = _validate_item(TopicTagTypeItem, item)
            if declaration is None:
                continue
            tag = normalize_topic_tag(declaration.topic_tag)
            if not tag:
                logger.warning("Skipping topic with empty tag: %r", declaration.topic_tag)
                continue
            existing = known_topics.get(tag)
            result.topics[tag] = Topic(
                tag=tag,
                topic_class=declaration.type,
                description=declaration.description.strip(),
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )

        for item in parsed["messages"]:
            tagged_item = _validate_item(TaggedMessageItem, item)
            if tagged_item is None:
                continue
            if tagged_item.message_id not in window_ids:
                logger.warning(
                    "Skipping tags for message %s which is not in the window",
                    tagged_item.message_id,
                )
                continue
            tags = normalize_topic_tags(tagged_item.topic_tags)
            if not tags:
                logger.warning("Skipping message %s with no usable tags", tagged_item.message_id)
                continue
            result.tagged_messages[tagged_item.message_id] = TaggedMessage(
                message_id=tagged_item.message_id,
                topic_tags=tags,
                summary=tagged_item.summary.strip(),
                updated_at=now,
            )

        for item in merge_items:
            merge = _validate_item(TopicMergeItem, item)
            if merge is None:
                continue
            merged_tag = normalize_topic_tag(merge.merged_tag)
            source_tags = normalize_topic_tags(merge.source_tags)
            if not merged_tag or not source_tags:
                logger.warning("Skipping merge proposal with empty tags: %s", merge.model_dump())
                continue
            result.merge_proposals.append(
                MergeProposal(
                    source_tags=source_tags,
                    merged_tag=merged_tag,
                    topic_class=merge.type,
                    description=merge.description.strip(),
                    justification=merge.justification.strip(),
                )
            )

        if not isinstance(relationship_items, list):
            logger.warning("Ignoring malformed relationships section in tagger response")
            relationship_items = []
        for item in relationship_items:
            relationship = _validate_item(TopicRelationshipItem, item)
            if relationship is None:
                continue
            parent = normalize_topic_tag(relationship.parent)
            child = normalize_topic_tag(relationship.child)
            if not parent or not child or parent == child:
                logger.debug(
                    "Skipping relationship %s -> %s", relationship.parent, relationship.child
                )
                continue
            result.relationships.append(TopicRelationship(parent=parent, child=child))

        return result


def _validate_item(model: type[BaseModel], item: Any) -> Any:
    try:
        return model.model_validate(item)
    except ValidationError as e:
        logger.warning(
            "Skipping invalid %s in tagger response: %s", model.__name__, e.errors()[0]["msg"]
        )
        return None
