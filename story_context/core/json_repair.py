"""
Tolerant JSON parsing for streamed model output.

``parse_tolerant(text) -> (PartialResult, complete)`` never raises. Repair
rules, applied in order:

1. Markdown code fences (```json ... ```) are stripped, and anything before
   the first ``{`` or ``[`` is ignored.
2. An unterminated string is closed. A dangling escape at the end of the
   text is dropped first. An unterminated object *key* is removed entirely.
3. A truncated literal is completed (``tru`` -> ``true``) or cut back to
   its last digit for numbers.
4. A key without a value gets ``null``; a trailing comma is removed.
5. A root object closed early, followed by ``,`` and more members, is
   reopened (chunks sometimes arrive as ``{"a":1}`` then ``,"b":2}``).
6. Open arrays and objects are closed innermost first.

If the repaired text still does not decode, the known string fields are
pulled out with targeted extraction so a preview is still possible.
``complete`` is true only when the input decoded without any repair.
"""

import json
import re
from typing import Any, Dict, List, Optional, Tuple, Union

from story_context.logger import get_logger, truncate

log = get_logger(__name__)

PartialResult = Dict[str, Any]

_LITERALS = ("true", "false", "null")
_STRUCTURAL = set("{}[],:")


def strip_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, tolerating a missing closer."""
    text = text.strip()
    if not text.startswith("```"):
        return text
    lines = text.split("\n")
    content = "\n".join(lines[1:])
    if content.rstrip().endswith("```"):
        content = content.rstrip()[:-3]
    return content.strip()


class _Frame:
    __slots__ = ("kind", "state")

    def __init__(self, kind: str, state: str):
        self.kind = kind
        self.state = state


def _after_value(stack: List[_Frame]) -> None:
    if stack:
        stack[-1].state = "comma"


def _complete_literal(token: str) -> str:
    for literal in _LITERALS:
        if literal.startswith(token):
            return literal
    trimmed = token
    while trimmed and not trimmed[-1].isdigit():
        trimmed = trimmed[:-1]
    return trimmed or "null"


def repair(text: str) -> str:
    """Close a truncated JSON document so it has a chance to decode.

    Args:
        text: JSON text, possibly cut off mid-token

    Returns:
        Repaired text (unchanged when nothing needed closing)
    """
    stack: List[_Frame] = []
    in_string = False
    is_key = False
    escape = False
    string_start = -1
    escape_start = -1
    literal_start = -1
    root_close = -1
    dropped = set()

    for i, char in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
                escape_start = i
            elif char == '"':
                in_string = False
                if stack and stack[-1].kind == "{" and is_key:
                    stack[-1].state = "colon"
                else:
                    _after_value(stack)
            continue

        if literal_start != -1 and (char in _STRUCTURAL or char.isspace() or char == '"'):
            literal_start = -1
            _after_value(stack)

        if char == '"':
            in_string = True
            string_start = i
            is_key = bool(stack) and stack[-1].kind == "{" and stack[-1].state == "key"
        elif char == "{":
            stack.append(_Frame("{", "key"))
        elif char == "[":
            stack.append(_Frame("[", "value"))
        elif char in "}]":
            if stack:
                closed = stack.pop()
                if not stack and closed.kind == "{":
                    root_close = i
            _after_value(stack)
        elif char == ":":
            if stack:
                stack[-1].state = "value"
        elif char == ",":
            if stack:
                stack[-1].state = "key" if stack[-1].kind == "{" else "value"
            elif root_close != -1:
                # Root object closed early and more members follow: reopen it
                dropped.add(root_close)
                root_close = -1
                stack.append(_Frame("{", "key"))
        elif not char.isspace() and literal_start == -1:
            literal_start = i

    end = len(text)
    tail = ""
    if in_string:
        if is_key:
            end = string_start
        else:
            if escape:
                end = escape_start
            else:
                # A \uXXXX escape cut short
                partial_unicode = re.search(r"\\u[0-9a-fA-F]{0,3}$", text)
                if partial_unicode:
                    end = partial_unicode.start()
            tail = '"'
            _after_value(stack)
    elif literal_start != -1:
        end = literal_start
        tail = _complete_literal(text[literal_start:])
        _after_value(stack)

    out = "".join(ch for i, ch in enumerate(text[:end]) if i not in dropped) + tail
    out = out.rstrip()
    if stack:
        top = stack[-1]
        if top.state == "colon":
            out += ":null"
        elif top.state == "value" and top.kind == "{":
            out += "null"
        elif out.endswith(","):
            out = out[:-1]

    for frame in reversed(stack):
        out += "}" if frame.kind == "{" else "]"
    return out


def read_string_at(text: str, index: int) -> str:
    """Read a JSON string body starting just after its opening quote.

    Stops at the closing quote or the end of text, decoding escapes.
    """
    chars: List[str] = []
    escaping = False
    hex_chars = "0123456789abcdefABCDEF"
    while index < len(text):
        char = text[index]
        if escaping:
            if char == "n":
                chars.append("\n")
            elif char == "r":
                chars.append("\r")
            elif char == "t":
                chars.append("\t")
            elif char in {'"', "\\", "/"}:
                chars.append(char)
            elif char == "u":
                digits = text[index + 1:index + 5]
                if len(digits) < 4 or not all(c in hex_chars for c in digits):
                    break
                chars.append(chr(int(digits, 16)))
                index += 4
            else:
                chars.append(char)
            escaping = False
            index += 1
            continue
        if char == "\\":
            escaping = True
            index += 1
            continue
        if char == '"':
            break
        chars.append(char)
        index += 1
    return "".join(chars)


def _extract_field(text: str, name: str) -> Optional[str]:
    match = re.search(r'"%s"\s*:\s*"' % re.escape(name), text)
    if match is None:
        return None
    return read_string_at(text, match.end())


def extract_partial_fields(text: str) -> PartialResult:
    """Pull ``analysis``, ``story`` and ``summary`` out of unparseable text.

    Returns the nested response shape with whichever fields were found.
    """
    result: PartialResult = {}
    analysis = _extract_field(text, "analysis")
    if analysis is not None:
        result["analysis"] = analysis
    response: Dict[str, Any] = {}
    for name in ("story", "summary"):
        value = _extract_field(text, name)
        if value is not None:
            response[name] = value
    if response:
        result["response"] = response
    return result


def parse_tolerant(text: Union[str, bytes]) -> Tuple[PartialResult, bool]:
    """Parse possibly truncated JSON.

    Args:
        text: Accumulated model output

    Returns:
        ``(data, complete)``: the best object recoverable ({} if none) and
        whether the input decoded without repair
    """
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    if not text or not text.strip():
        return {}, False

    clean = strip_fences(text)
    starts = [i for i in (clean.find("{"), clean.find("[")) if i != -1]
    if starts:
        clean = clean[min(starts):]

    try:
        data = json.loads(clean)
        if isinstance(data, dict):
            return data, True
    except json.JSONDecodeError:
        pass

    repaired = repair(clean)
    try:
        data = json.loads(repaired)
        if isinstance(data, dict):
            return data, False
    except json.JSONDecodeError as e:
        log.debug("repair failed (%s): %s", e, truncate(repaired))

    return extract_partial_fields(clean), False


def process_model_field(text: Optional[str]) -> str:
    """Trim a model string field and unescape double-escaped sequences."""
    if not text:
        return ""
    return (
        text.strip()
        .replace("\\n", "\n")
        .replace("\\r", "\r")
        .replace("\\t", "\t")
        .replace('\\"', '"')
        .replace("\\\\", "\\")
    )
