"""Label recognition, label resolution and language detection."""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Any, Dict, Mapping, Optional

from .langs import LANG_SETS
from .models import CaptionDecision, LabelConfig
from .utils import is_ascii_only, is_blank

logger = logging.getLogger("pcaption")

MARK_AFTER_NUM = r"[A-Z0-9]{1,6}(?:[.-][A-Z0-9]{1,6}){0,5}"
JOINT = "[.:．。：　]"
JOINT_FULL_WIDTH = "[．。：　]"
JOINT_HALF_WIDTH = "[.:]"

# Joint rules for languages that separate words with spaces (e.g. "Figure 1. Text").
MARK_AFTER_SPACED = (
    "(?:"
    " *(?:"
    + JOINT_HALF_WIDTH + "(?:(?=[ ]+)|$)|"
    + JOINT_FULL_WIDTH + "|"
    "(?=[ ]+[^0-9a-zA-Z])"
    ")|"
    " *(" + MARK_AFTER_NUM + ")(?:"
    + JOINT_HALF_WIDTH + "(?:(?=[ ]+)|$)|"
    + JOINT_FULL_WIDTH + "|"
    "(?=[ ]+[^a-z])|$"
    ")|"
    "[.](" + MARK_AFTER_NUM + ")(?:"
    + JOINT + "|(?=[ ]+[^a-z])|$"
    ")"
    ")"
)

# Joint rules for languages written without inter-word spaces (e.g. "図1　テキスト").
MARK_AFTER_UNSPACED = (
    "(?:"
    " *(?:"
    + JOINT_HALF_WIDTH + "(?:(?=[ ]+)|$)|"
    + JOINT_FULL_WIDTH + "|"
    "(?=[ ]+)"
    ")|"
    " *(" + MARK_AFTER_NUM + ")(?:"
    + JOINT_HALF_WIDTH + "(?:(?=[ ]+)|$)|"
    + JOINT_FULL_WIDTH + "|"
    "(?=[ ]+)|$"
    ")"
    ")"
)

DEFAULT_LABEL_CONFIG_MAP: Dict[str, LabelConfig] = {
    "en": LabelConfig(label="Figure", joint=".", space=" "),
    "ja": LabelConfig(label="図", joint="　", space=""),
}
FALLBACK_LANG = "en"

_LOWER_ASCII = re.compile(r"[a-z]")


def _case_folded(pattern: str) -> str:
    return _LOWER_ASCII.sub(lambda m: "[" + m.group(0) + m.group(0).upper() + "]", pattern)


def _label_pattern(lang: str) -> str:
    data = LANG_SETS[lang]
    if data.inter_word_space:
        return _case_folded(data.img_pattern)
    return data.img_pattern


def build_mark_reg(langs=None) -> Optional[re.Pattern]:
    """Compile the "label + optional number + joint" pattern for ``langs``."""
    parts = []
    for lang in langs or LANG_SETS:
        if lang not in LANG_SETS:
            continue
        mark_after = MARK_AFTER_SPACED if LANG_SETS[lang].inter_word_space else MARK_AFTER_UNSPACED
        parts.append("(?:" + _label_pattern(lang) + ")" + mark_after)
    if not parts:
        return None
    return re.compile("^(?:" + "|".join(parts) + ")")


def build_label_only_reg(langs=None) -> Optional[re.Pattern]:
    """Compile the pattern for captions that are nothing but "Figure 2"."""
    patterns = [_label_pattern(lang) for lang in (langs or LANG_SETS) if lang in LANG_SETS]
    if not patterns:
        return None
    return re.compile("^(" + "|".join(patterns) + ")([ .]?" + MARK_AFTER_NUM + ")?$")


CAPTION_MARK_REG = build_mark_reg()
LABEL_ONLY_REG = build_label_only_reg()
JOINT_SUFFIX_REG = re.compile(JOINT + "$")


def match_label(text: str) -> Optional[re.Match]:
    """Return the match when ``text`` starts with a label followed by a joint."""
    if not text or CAPTION_MARK_REG is None:
        return None
    return CAPTION_MARK_REG.match(text)


def match_label_only(text: str) -> Optional[re.Match]:
    """Return the match when ``text`` is only a label and optional number."""
    if not text or LABEL_ONLY_REG is None:
        return None
    return LABEL_ONLY_REG.match(text)


def _is_japanese_code_point(code: int) -> bool:
    return (
        0x3040 <= code <= 0x30FF
        or 0x31F0 <= code <= 0x31FF
        or 0x4E00 <= code <= 0x9FFF
        or 0xFF66 <= code <= 0xFF9F
    )


def detect_auto_lang(value: str) -> Optional[str]:
    """Guess the label language from caption text.

    Any kana or CJK ideograph means ``"ja"``. Text whose only letters are
    ASCII means ``"en"``. Anything else, including text without letters,
    returns None so the configured language stays in effect.
    """
    has_ascii_letter = False
    for ch in value or "":
        code = ord(ch)
        if _is_japanese_code_point(code):
            return "ja"
        if code <= 0x7F:
            if ch.isalpha():
                has_ascii_letter = True
            continue
        if unicodedata.category(ch).startswith("L"):
            return None
    return "en" if has_ascii_letter else None


def _normalize_label_override(value: Any) -> Optional[Dict[str, str]]:
    if not isinstance(value, Mapping):
        return None
    config: Dict[str, str] = {}
    label = value.get("label")
    if not isinstance(label, str):
        label = value.get("lable")
    if isinstance(label, str):
        config["label"] = label
    if "joint" in value:
        config["joint"] = "" if value["joint"] is None else str(value["joint"])
    for key in ("space", "spacing"):
        if key in value:
            config["space"] = "" if value[key] is None else str(value[key])
            break
    return config or None


def resolve_label_config(label_lang: str, label_set: Optional[Mapping[str, Any]] = None) -> LabelConfig:
    """Merge built-in defaults with per-language and flat label overrides."""
    base = DEFAULT_LABEL_CONFIG_MAP.get(label_lang)
    fields: Dict[str, Optional[str]] = {"label": None, "joint": None, "space": None}
    if base is not None:
        fields.update(label=base.label, joint=base.joint, space=base.space)
    else:
        fields["label"] = DEFAULT_LABEL_CONFIG_MAP[FALLBACK_LANG].label

    if isinstance(label_set, Mapping):
        single = _normalize_label_override(label_set)
        if single is None:
            mapped = _normalize_label_override(label_set.get(label_lang))
            if mapped:
                fields.update(mapped)
        else:
            fields.update(single)

    if not fields["label"]:
        fields["label"] = DEFAULT_LABEL_CONFIG_MAP[FALLBACK_LANG].label

    if fields["joint"] is None or fields["space"] is None:
        lang = LANG_SETS.get(label_lang)
        spaced = lang.inter_word_space if lang is not None else is_ascii_only(fields["label"])
        if fields["joint"] is None:
            fields["joint"] = "." if spaced else "　"
        if fields["space"] is None:
            fields["space"] = " " if spaced else "　"
    return LabelConfig(label=fields["label"], joint=fields["joint"], space=fields["space"])


def build_label_prefix(config: LabelConfig, has_caption: bool) -> str:
    """Render the label prefix, e.g. "Figure. " or a bare "Figure."."""
    prefix = config.label or ""
    joint = config.joint or ""
    space = config.space or ""

    if joint and (has_caption or not is_blank(joint)):
        if not prefix.endswith(joint):
            prefix += joint

    if has_caption and space and not prefix.endswith(space):
        if not (space == joint and prefix.endswith(joint)):
            prefix += space
    return prefix


def decide_caption(text: str, source: str, config: LabelConfig) -> CaptionDecision:
    """Pick the caption and attribute changes for one image.

    ``source`` is ``"alt"`` or ``"title"``, naming the attribute the caption
    text came from.
    """
    text = text or ""
    from_title = source == "title"
    cleared_alt = None if from_title else ""

    if match_label(text):
        return CaptionDecision(caption=text, replacement_alt=cleared_alt, clears_title=from_title)

    label_only = match_label_only(text)
    if label_only:
        token = JOINT_SUFFIX_REG.sub("", label_only.group(0))
        return CaptionDecision(caption=text, replacement_alt=token, clears_title=from_title)

    caption = build_label_prefix(config, bool(text)) + text
    logger.debug("Synthesized label for caption %r -> %r", text, caption)
    return CaptionDecision(caption=caption, replacement_alt=cleared_alt, clears_title=from_title)
