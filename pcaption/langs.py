"""Per-language label patterns used to recognise and build figure labels."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class LangSet:
    """Label vocabulary for a single language."""

    img_pattern: str
    inter_word_space: bool


LANG_SETS: Dict[str, LangSet] = {
    "en": LangSet(img_pattern="fig(?:ure)?|illust|photo", inter_word_space=True),
    "ja": LangSet(img_pattern="図|イラスト|写真", inter_word_space=False),
}
