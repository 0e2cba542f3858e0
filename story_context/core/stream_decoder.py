"""
Stream decoding.

Consumes the provider's chunk stream, keeps thoughts apart from the JSON
body, previews fields while the object is still incomplete, and produces
the final structured result. A broken body degrades to best-effort text;
the turn is never dropped.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Callable, Dict, List, Optional, Tuple

from story_context.core.errors import DecodeDegraded
from story_context.core.json_repair import parse_tolerant, process_model_field
from story_context.core.locales import get_locale
from story_context.core.postprocess import Fields, PostProcessor
from story_context.core.token_counter import merge_sticky
from story_context.logger import get_logger, truncate
from story_context.storage.models import Part, UsageRecord

log = get_logger(__name__)

_LOG_NAMES = ("character_log", "inventory_log", "quest_log", "world_log")


@dataclass
class DecodeResult:
    """Final fields and metadata of one decoded response."""
    analysis: str = ""
    story: str = ""
    summary: str = ""
    character_log: Tuple[str, ...] = ()
    inventory_log: Tuple[str, ...] = ()
    quest_log: Tuple[str, ...] = ()
    world_log: Tuple[str, ...] = ()
    is_correction: bool = False
    thought: str = ""
    thought_signature: Optional[str] = None
    function_calls: List[Dict[str, Any]] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: UsageRecord = field(default_factory=UsageRecord)
    degraded: bool = False
    error: Optional[DecodeDegraded] = None
    cancelled: bool = False

    def to_parts(self) -> Tuple[Part, ...]:
        """Parts of the model turn as replayed on the next request.

        Function calls come first, then the thought text, then the
        analysis as a thought, then the story carrying the signature.
        """
        parts: List[Part] = [Part(function_call=fc) for fc in self.function_calls]
        if self.thought:
            parts.append(Part(text=self.thought, thought=True))
        if self.analysis:
            parts.append(Part(text=self.analysis, thought=True))
        parts.append(Part(text=self.story, thought_signature=self.thought_signature))
        return tuple(parts)


def _string_list(value: Any) -> Tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(process_model_field(v) for v in value if isinstance(v, str))


def _response_section(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Normalize nested and legacy flat shapes to the ``response`` dict."""
    response = data.get("response")
    if isinstance(response, dict):
        return response
    if any(k in data for k in ("story", "summary", "correction")):
        flat = {
            "story": data.get("story"),
            "summary": data.get("summary"),
        }
        for name in _LOG_NAMES:
            if name in data:
                flat[name] = data[name]
        correction = data.get("correction")
        flat["isCorrection"] = isinstance(correction, str) and bool(correction.strip())
        return flat
    return None


class StreamDecoder:
    """Decode one response stream.

    Args:
        language: Output language, used for the format-error placeholder
        post_processor: Rules applied to the final fields
        on_thought: Called with the accumulated thought text on each thought chunk
        on_preview: Called with ``(analysis, story)`` whenever a preview changes
    """

    def __init__(
        self,
        language: str = "en",
        post_processor: Optional[PostProcessor] = None,
        on_thought: Optional[Callable[[str], None]] = None,
        on_preview: Optional[Callable[[str, str], None]] = None,
    ):
        self.language = language
        self.post_processor = post_processor or PostProcessor(language=language)
        self.on_thought = on_thought
        self.on_preview = on_preview

    def _preview(self, buffer: str, analysis: str, story: str) -> Tuple[str, str]:
        partial, _ = parse_tolerant(buffer)
        new_analysis, new_story = analysis, story
        if isinstance(partial.get("analysis"), str) and partial["analysis"]:
            new_analysis = process_model_field(partial["analysis"])
        section = _response_section(partial)
        if section and isinstance(section.get("story"), str) and section["story"]:
            new_story = process_model_field(section["story"])
        if (new_analysis, new_story) != (analysis, story) and self.on_preview:
            self.on_preview(
                self.post_processor.safe_text(new_analysis),
                self.post_processor.safe_text(new_story),
            )
        return new_analysis, new_story

    async def consume(
        self,
        stream: AsyncIterable[Any],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DecodeResult:
        """Consume ``stream`` to completion (or cancellation).

        Args:
            stream: Async iterable of StreamChunk-like objects
            cancel_event: Stops consumption once set; state already
                accumulated is kept and finalized

        Returns:
            DecodeResult
        """
        result = DecodeResult()
        json_buffer = ""
        thought_buffer = ""
        analysis_preview = ""
        story_preview = ""

        async for chunk in stream:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                log.info("stream cancelled after %d chars", len(json_buffer))
                break

            if chunk.thought_signature:
                result.thought_signature = chunk.thought_signature
            if chunk.finish_reason:
                result.finish_reason = chunk.finish_reason
            if chunk.function_call:
                result.function_calls.append(chunk.function_call)

            if chunk.text:
                if chunk.thought:
                    thought_buffer += chunk.text
                    if self.on_thought:
                        self.on_thought(thought_buffer)
                else:
                    json_buffer += chunk.text
                    analysis_preview, story_preview = self._preview(
                        json_buffer, analysis_preview, story_preview
                    )

            result.usage = merge_sticky(result.usage, chunk.usage)

        result.thought = thought_buffer
        self._finalize(result, json_buffer, story_preview)
        return result

    def _finalize(self, result: DecodeResult, buffer: str, story_preview: str) -> None:
        data, complete = parse_tolerant(buffer)
        section = _response_section(data)

        story = story_preview
        summary = ""
        logs: Dict[str, Tuple[str, ...]] = {name: () for name in _LOG_NAMES}

        if section is None or not isinstance(section.get("story"), str):
            result.degraded = True
            result.error = DecodeDegraded(
                "structured response could not be parsed", raw_excerpt=truncate(buffer)
            )
            log.warning("decode degraded: %s", result.error.raw_excerpt)
            result.analysis = ""
            story = story_preview or get_locale(self.language).format_error
        else:
            if not complete:
                log.info("response repaired before decoding: %s", truncate(buffer, 80))
            if isinstance(data.get("analysis"), str):
                result.analysis = process_model_field(data["analysis"])
            if section.get("story"):
                story = process_model_field(section["story"])
            if isinstance(section.get("summary"), str):
                summary = process_model_field(section["summary"])
            for name in _LOG_NAMES:
                logs[name] = _string_list(section.get(name))
            result.is_correction = bool(section.get("isCorrection"))

        processed = self.post_processor.process(Fields(
            story=story,
            summary=summary,
            character_log=logs["character_log"],
            inventory_log=logs["inventory_log"],
            quest_log=logs["quest_log"],
            world_log=logs["world_log"],
        ))
        result.story = processed.story
        result.summary = processed.summary
        result.character_log = processed.character_log
        result.inventory_log = processed.inventory_log
        result.quest_log = processed.quest_log
        result.world_log = processed.world_log
