"""Configuration objects and constants for caption conversion."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, Mapping, Optional

from .utils import coerce_bool

DEFAULT_LABEL_LANG = "en"
DEFAULT_FIGURE_CLASS = "f-img"
META_NAME = "markdown-frontmatter"
SCOPES = ("all", "standalone", "figure-only")

_BOOL_KEYS = {
    "imgAltCaption": "img_alt_caption",
    "img_alt_caption": "img_alt_caption",
    "imgTitleCaption": "img_title_caption",
    "img_title_caption": "img_title_caption",
    "autoLangDetection": "auto_lang_detection",
    "auto_lang_detection": "auto_lang_detection",
    "readMeta": "read_meta",
    "read_meta": "read_meta",
    "observe": "observe",
}
_META_FLAGS = (
    ("imgAltCaption", "img_alt_caption"),
    ("imgTitleCaption", "img_title_caption"),
)


@dataclass
class CaptionOptions:
    """Normalized settings shared by the Markdown and live-document pipelines."""

    img_alt_caption: bool = True
    img_title_caption: bool = False
    auto_lang_detection: bool = True
    label_lang: str = DEFAULT_LABEL_LANG
    label_set: Optional[Dict[str, Any]] = None
    scope: str = "all"
    figure_class: str = DEFAULT_FIGURE_CLASS
    read_meta: bool = False
    observe: bool = False
    explicit: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def caption_source(self) -> Optional[str]:
        """Return "title", "alt" or None; title wins when both are enabled."""
        if self.img_title_caption:
            return "title"
        if self.img_alt_caption:
            return "alt"
        return None

    @classmethod
    def from_option(cls, option: Optional[Mapping[str, Any]] = None) -> "CaptionOptions":
        """Build options from a loosely typed mapping, dropping invalid values."""
        opts = cls()
        if not option or not isinstance(option, Mapping):
            return opts

        explicit = set()
        for key, value in option.items():
            if key in _BOOL_KEYS:
                flag = coerce_bool(value)
                if flag is None:
                    continue
                setattr(opts, _BOOL_KEYS[key], flag)
                explicit.add(_BOOL_KEYS[key])
            elif key in ("labelLang", "label_lang"):
                if isinstance(value, str) and value.strip():
                    opts.label_lang = value.strip()
            elif key in ("labelSet", "label_set"):
                if isinstance(value, Mapping):
                    opts.label_set = dict(value)
            elif key == "scope":
                if value in SCOPES:
                    opts.scope = value
            elif key in ("figureClass", "figureClassName", "figure_class"):
                if isinstance(value, str):
                    opts.figure_class = value
        opts.explicit = frozenset(explicit)
        return opts

    def with_meta(self, meta: Optional[Mapping[str, Any]]) -> "CaptionOptions":
        """Overlay caption flags read from a front-matter payload.

        Only boolean ``imgAltCaption``/``imgTitleCaption`` values are used,
        first from the top level and then from ``_extensionSettings``. Flags
        passed explicitly by the caller are never overridden.
        """
        if not meta or not isinstance(meta, Mapping):
            return self
        extension = meta.get("_extensionSettings")
        if not isinstance(extension, Mapping):
            extension = None

        changes: Dict[str, bool] = {}
        for key, attr in _META_FLAGS:
            if attr in self.explicit:
                continue
            flag = coerce_bool(meta.get(key))
            if flag is None and extension is not None:
                flag = coerce_bool(extension.get(key))
            if flag is not None:
                changes[attr] = flag
        if not changes:
            return self
        return replace(self, **changes)
