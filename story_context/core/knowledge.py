"""
Knowledge-base text construction and hashing.

The knowledge base is the set of static reference documents sent ahead of
the conversation, either as a remote cache or inline.
"""

import hashlib
import re
from pathlib import Path
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from story_context.core.locales import FILE_CONTENT_SEPARATOR, story_outline_paths

SYSTEM_DIR_PREFIX = "system_files/"
SYSTEM_PROMPT_FILE = "system_prompt.md"
SYSTEM_PROMPT_PATH = SYSTEM_DIR_PREFIX + SYSTEM_PROMPT_FILE

_LAST_SCENE_RE = re.compile(r"(?:^|\n)[#*_\s]*last[_-]?scene[#*_\s]*[:：]?[\s\S]*$", re.IGNORECASE)
# Captures everything after the marker: "# last_scene", "**last_scene**:", "last-scene:" ...
_LAST_SCENE_BODY_RE = re.compile(r"(?:^|\n)(?:[#*_\s]*last[_-]?scene[#*_\s]*[:：]?\s*)([\s\S]*)$", re.IGNORECASE)


def _is_knowledge_file(path: str) -> bool:
    return not path.startswith(SYSTEM_DIR_PREFIX) and path != SYSTEM_PROMPT_FILE


def strip_last_scene(content: str) -> str:
    """Drop the trailing "last scene" section of an outline document."""
    return _LAST_SCENE_RE.sub("", content).strip()


def extract_last_scene(content: str) -> str:
    """Text of the trailing "last scene" section, "" when there is no marker."""
    if not content:
        return ""
    match = _LAST_SCENE_BODY_RE.search(content)
    if not match:
        return ""
    return match.group(1).strip()


def find_story_outline(
    files: Mapping[str, str],
    outline_paths: Optional[FrozenSet[str]] = None,
) -> Tuple[str, Optional[str]]:
    """Return ``(path, content)`` of the loaded story outline.

    The path is "" and the content None when no outline was loaded.
    """
    outlines = outline_paths if outline_paths is not None else story_outline_paths()
    for path in sorted(outlines):
        if path in files:
            return path, files[path]
    return "", None


def build_knowledge_base_text(
    files: Mapping[str, str],
    outline_paths: Optional[FrozenSet[str]] = None,
) -> str:
    """Concatenate knowledge files in path order.

    System files are excluded (they travel as the system instruction).
    The outline document loses its trailing last-scene section, which is
    replayed as a turn instead.

    Args:
        files: Mapping of relative path to file content
        outline_paths: Paths treated as the story outline

    Returns:
        Knowledge-base text, "" when no knowledge files are present
    """
    outlines = outline_paths if outline_paths is not None else story_outline_paths()
    chunks: List[str] = []
    for path in sorted(files):
        if not _is_knowledge_file(path):
            continue
        content = files[path]
        if path in outlines:
            content = strip_last_scene(content)
        chunks.append(f"{FILE_CONTENT_SEPARATOR} [{path}] ---\n{content}\n\n")
    return "".join(chunks)


def normalize_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n")


def calculate_kb_hash(kb_text: str, model_id: str, system_instruction: str) -> str:
    """Digest identifying a remote cache's content.

    Any change to the knowledge text, model id or system instruction yields a
    different hash; file insertion order does not, since the text is built
    in sorted path order.
    """
    raw = (kb_text or "") + "\x00" + (model_id or "") + "\x00" + (system_instruction or "")
    normalized = normalize_line_endings(raw).strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def load_knowledge_dir(directory: str) -> Dict[str, str]:
    """Read every markdown/text file under ``directory`` keyed by relative POSIX path."""
    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"Knowledge base directory not found: {directory}")
    files: Dict[str, str] = {}
    for path in sorted(root.rglob("*")):
        if path.is_file() and path.suffix.lower() in (".md", ".txt"):
            files[path.relative_to(root).as_posix()] = path.read_text(encoding="utf-8")
    return files
