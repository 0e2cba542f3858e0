"""
Language-dependent strings the engine injects into context.

Only the strings that affect context assembly and decoding live here;
user-facing UI text belongs to the client.
"""

import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Tuple


# Markers that identify text the engine itself injected into earlier turns
FILE_CONTENT_SEPARATOR = "--- 檔案內容"
SYSTEM_RULE_SEPARATOR = "--- 系統規則"
INJECTED_MARKERS: Tuple[str, ...] = (FILE_CONTENT_SEPARATOR, SYSTEM_RULE_SEPARATOR)

SAVE_POINT_MARKER = "<possible save point>"
_SAVE_POINT_RE = re.compile(re.escape(SAVE_POINT_MARKER), re.IGNORECASE)

ACT_START_TITLE = "--- ACT START ---"


@dataclass(frozen=True)
class Locale:
    """Strings for one output language."""
    id: str
    act_header: str
    local_init_analysis: str
    format_error: str
    story_outline: str
    intro_text: str
    adult_declaration: str
    marker_not_found: str


_EN_ACT_HEADER = """
--- ACT START ---
[Important] The following is the dialogue and state-change log for this ACT.
All prior state (characters, items, landmarks) is defined by the knowledge base files.
Every `*_log` entry from this block until the end of the conversation is an incremental change for this ACT.
When executing a <Save> command, synchronize only these changes against the current file contents.
----------------
"""

_ZH_TW_ACT_HEADER = """
--- ACT START ---
[重要說明] 以下是本次 ACT 的劇情對白與狀態變動日誌。
所有先前的狀態（包括人物、物品、地標等）皆應以知識庫檔案為準。
本區塊以後、直到對話結尾的所有 `*_log` 內容，代表本次 ACT 的增量變動。
在進行 <存檔> 指令時，請僅依據本區塊後的變動與目前檔案內容進行比對同步。
----------------
"""

LOCALES: Dict[str, Locale] = {
    "en": Locale(
        id="en",
        act_header=_EN_ACT_HEADER,
        local_init_analysis="Local system initialization: last scene loaded from the story outline.",
        format_error="Model output format error, please retry.",
        story_outline="2.Story_Outline.md",
        intro_text="The story begins. Set the last scene.",
        adult_declaration=(
            "*All scenes involving intimacy, sexuality, nudity, or sexual innuendo imply that all "
            "characters have reached the age of majority (18+ or as defined by local laws), and all "
            "acts are consensual. This story is purely fictional and unrelated to reality.*\n\n***\n\n"
        ),
        marker_not_found=(
            "Failed to load the save: no `last_scene` marker found in `{file_name}`, "
            "or the file is invalid. The load state has been reset."
        ),
    ),
    "zh-TW": Locale(
        id="zh-TW",
        act_header=_ZH_TW_ACT_HEADER,
        local_init_analysis="系統本地初始化：已從劇情綱要讀取最後場景。",
        format_error="模型輸出格式異常，請重試。",
        story_outline="2.劇情綱要.md",
        intro_text="劇情開始，建構最後的場景",
        adult_declaration=(
            "*所有涉及情慾、性愛、裸露或性暗示之場景,角色皆已達成年年齡(滿18歲或當地法律定義之成年),"
            "且行為都經雙方同意,此劇情為完全虛構,無涉任何事實。*\n\n***\n\n"
        ),
        marker_not_found="❌ 存檔載入失敗：在 `{file_name}` 中找不到 `last_scene` 標記，或檔案內容無效。已重設載入狀態。",
    ),
}

DEFAULT_LANGUAGE = "en"


def get_locale(language: str = DEFAULT_LANGUAGE) -> Locale:
    """Return the locale for ``language``, falling back to English."""
    return LOCALES.get(language, LOCALES[DEFAULT_LANGUAGE])


def local_init_markers() -> FrozenSet[str]:
    """Analysis strings of the locally generated act-start anchor turn, in every language."""
    return frozenset(locale.local_init_analysis for locale in LOCALES.values())


def locale_for_outline(path: str) -> Optional[Locale]:
    """Locale whose story outline lives at ``path``."""
    for locale in LOCALES.values():
        if locale.story_outline == path:
            return locale
    return None


def story_outline_paths() -> FrozenSet[str]:
    """Knowledge-base paths that hold the story outline, in every language."""
    return frozenset(locale.story_outline for locale in LOCALES.values())


def strip_save_points(text: str) -> str:
    """Remove save-point markers the model may have emitted."""
    if not text:
        return ""
    return _SAVE_POINT_RE.sub("", text)
