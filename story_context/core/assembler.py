"""
Context assembly.

Turns the stored history into the ordered role/parts list sent to the
model: sealed summary blocks first, then the leftover summary and the
recent turns, with the act-start header placed exactly once.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence

from story_context.core.history import ContextMode, filter_history, split_window
from story_context.core.locales import (
    ACT_START_TITLE,
    FILE_CONTENT_SEPARATOR,
    INJECTED_MARKERS,
    local_init_markers,
    strip_save_points,
)
from story_context.core.summary import SUMMARY_BLOCK_SIZE, compress, detail_fields
from story_context.logger import get_logger
from story_context.storage.models import ROLE_MODEL, ROLE_USER, Turn

log = get_logger(__name__)

RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "analysis": {"type": "string"},
        "response": {
            "type": "object",
            "properties": {
                "story": {"type": "string"},
                "summary": {"type": "string"},
                "character_log": {"type": "array", "items": {"type": "string"}},
                "inventory_log": {"type": "array", "items": {"type": "string"}},
                "quest_log": {"type": "array", "items": {"type": "string"}},
                "world_log": {"type": "array", "items": {"type": "string"}},
                "isCorrection": {"type": "boolean"},
            },
            "required": ["story", "summary"],
        },
    },
    "required": ["analysis", "response"],
}


@dataclass
class AssembledContext:
    """Ordered contents plus the bookkeeping of how they were built."""
    contents: List[Dict[str, Any]] = field(default_factory=list)
    archived_count: int = 0
    recent_count: int = 0
    sealed_count: int = 0
    leftover_count: int = 0
    header_placed: bool = False


@dataclass
class GenerationRequest:
    """Everything the provider needs for one generation call."""
    model: str
    contents: List[Dict[str, Any]]
    system_instruction: str
    config: Dict[str, Any] = field(default_factory=dict)


def _last_text_index(parts: List[Dict[str, Any]]) -> int:
    for i in range(len(parts) - 1, -1, -1):
        if "text" in parts[i] and not parts[i].get("thought"):
            return i
    return -1


def _first_text_part(parts: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for part in parts:
        if "text" in part:
            return part
    return None


def _prepend_text(content: Dict[str, Any], prefix: str) -> None:
    target = _first_text_part(content["parts"])
    if target is not None:
        target["text"] = prefix + target["text"]
    else:
        content["parts"].insert(0, {"text": prefix})


def _append_to_last_text(parts: List[Dict[str, Any]], suffix: str, fallback: str) -> None:
    index = _last_text_index(parts)
    if index != -1:
        parts[index] = {**parts[index], "text": parts[index]["text"] + suffix}
    else:
        parts.append({"text": fallback})


def turn_to_content(turn: Turn) -> Dict[str, Any]:
    """Map a stored turn to wire content for the recent section.

    Unsigned thoughts and previously injected knowledge/system text are
    dropped, save points are stripped, and a model turn's own state delta
    is re-appended so the model does not emit it again.
    """
    parts: List[Dict[str, Any]] = []
    for part in turn.parts:
        if part.thought and not part.thought_signature:
            continue
        if part.text and part.text.startswith(INJECTED_MARKERS):
            continue
        data = part.to_dict()
        if part.text is not None:
            data["text"] = strip_save_points(part.text)
        parts.append(data)

    if not parts and turn.content:
        parts.append({"text": strip_save_points(turn.content)})

    if turn.role == ROLE_MODEL:
        lines = detail_fields(turn)
        if lines:
            body = "\n".join(lines)
            _append_to_last_text(parts, f"\n\n---\n{body}\n---", f"\n---\n{body}\n---")

    return {"role": turn.role, "parts": parts}


def assemble_context(
    turns: Sequence[Turn],
    act_header: str,
    mode: ContextMode = ContextMode.SMART,
    init_markers: Optional[FrozenSet[str]] = None,
    block_size: int = SUMMARY_BLOCK_SIZE,
    windows: Optional[dict] = None,
    predicate: Optional[Callable[[Turn], bool]] = None,
) -> AssembledContext:
    """Build the ordered context for the next generation call.

    The act-start header lands on the first sealed block if there is one,
    otherwise after the local-init anchor turn, otherwise in front of the
    first recent message.

    Args:
        turns: Full stored history, oldest first
        act_header: Localized act-start header
        mode: Context mode deciding the recent window
        init_markers: Analysis strings identifying the anchor turn
        block_size: Delta-bearing turns per sealed block
        windows: Optional per-mode recent window overrides
        predicate: Optional replacement for the default history filter

    Returns:
        AssembledContext with contents ready to send
    """
    header = act_header.strip()
    markers = init_markers if init_markers is not None else local_init_markers()

    filtered = filter_history(turns, predicate)
    archived, recent = split_window(filtered, mode, windows)

    result = AssembledContext(archived_count=len(archived), recent_count=len(recent))

    sealed_contents: List[Dict[str, Any]] = []
    leftover = ""
    if mode != ContextMode.FULL and archived:
        summary = compress(archived, header, block_size)
        sealed_contents = [block.to_content() for block in summary.sealed_blocks]
        leftover = summary.leftover_text
        result.sealed_count = len(summary.sealed_blocks)
        result.leftover_count = summary.leftover_count
        result.header_placed = summary.header_placed

    contents: List[Dict[str, Any]] = []
    for turn in recent:
        content = turn_to_content(turn)
        if (
            not result.header_placed
            and turn.role == ROLE_MODEL
            and turn.analysis in markers
        ):
            _append_to_last_text(content["parts"], "\n\n" + header, header)
            result.header_placed = True
        contents.append(content)

    if leftover.strip():
        prefix = "" if result.header_placed else header + "\n"
        if contents:
            _prepend_text(contents[0], prefix + leftover)
        else:
            contents.append({"role": ROLE_USER, "parts": [{"text": prefix + leftover}]})
        result.header_placed = True
    elif not result.header_placed and contents:
        _prepend_text(contents[0], header + "\n")
        result.header_placed = True

    if sealed_contents:
        log.debug(
            "built %d summary blocks for %d archived turns",
            len(sealed_contents), len(archived),
        )
    result.contents = sealed_contents + contents
    return result


def has_act_header(contents: Sequence[Dict[str, Any]]) -> bool:
    return any(
        ACT_START_TITLE in (part.get("text") or "")
        for content in contents
        for part in content.get("parts", [])
    )


def wrap_user_message(text: str, history: Sequence[Dict[str, Any]], act_header: str) -> str:
    """Prefix the act header to ``text`` when the history does not carry it yet."""
    if has_act_header(history):
        return text
    return act_header.strip() + "\n\n" + text


def inline_knowledge(system_instruction: str, kb_text: str) -> str:
    """System instruction with the knowledge base appended."""
    if not kb_text:
        return system_instruction
    return f"{system_instruction}\n\n{FILE_CONTENT_SEPARATOR}\n{kb_text}"


def inject_knowledge_parts(
    contents: Sequence[Dict[str, Any]],
    parts: Sequence[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Return contents with ``parts`` leading the first user message.

    When the history starts with a model turn (or is empty), the parts
    become a message of their own.
    """
    updated = [dict(c, parts=list(c["parts"])) for c in contents]
    if not parts:
        return updated
    if updated and updated[0]["role"] == ROLE_USER:
        updated[0]["parts"] = list(parts) + updated[0]["parts"]
    else:
        updated.insert(0, {"role": ROLE_USER, "parts": list(parts)})
    return updated


def build_request(
    history: Sequence[Dict[str, Any]],
    user_text: str,
    model_id: str,
    system_instruction: str,
    act_header: str,
    kb_text: str = "",
    cached_content_name: Optional[str] = None,
    file_uri: Optional[str] = None,
    intent_prefix: str = "",
) -> GenerationRequest:
    """Build the payload for one generation call.

    With an active cache the knowledge base is referenced by name. With an
    uploaded file it is referenced as a leading file part. Otherwise it is
    inlined into the system instruction.
    """
    message = wrap_user_message(intent_prefix + strip_save_points(user_text), history, act_header)
    contents = list(history) + [{"role": ROLE_USER, "parts": [{"text": message}]}]

    config: Dict[str, Any] = {
        "responseMimeType": "application/json",
        "responseSchema": RESPONSE_SCHEMA,
    }
    instruction = system_instruction
    if cached_content_name:
        config["cachedContentName"] = cached_content_name
    elif file_uri:
        contents = inject_knowledge_parts(
            contents, [{"fileData": {"fileUri": file_uri, "mimeType": "text/plain"}}]
        )
    else:
        instruction = inline_knowledge(system_instruction, kb_text)

    return GenerationRequest(
        model=model_id,
        contents=contents,
        system_instruction=instruction,
        config=config,
    )
