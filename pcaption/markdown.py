"""Markdown transformation turning image alt/title text into caption paragraphs."""

from __future__ import annotations

import logging
import re
from typing import Any, List, Mapping, Optional, Tuple

from .config import CaptionOptions
from .fences import FenceTracker, is_isolated_line
from .labels import decide_caption, detect_auto_lang, resolve_label_config
from .models import CaptionDecision, ImageReference, LabelConfig

logger = logging.getLogger("pcaption")

LINE_BREAK_PATTERN = re.compile(r"\r\n|\n")
IMAGE_LINE_PATTERN = re.compile(r"^([ \t]*?)!\[ *(.*?) *\]\((.*?)\)( *(?:\{.*?\})?)$")
QUOTED_TITLE_PATTERN = re.compile(r"""^(.*?)\s+(["'])((?:\\.|(?!\2).)*)\2$""")
PAREN_TITLE_PATTERN = re.compile(r"^(.*?)\s+\((.*)\)$")
ESCAPED_QUOTE_PATTERN = re.compile(r"""\\(["'])""")
WHITESPACE_PATTERN = re.compile(r"\s")


def split_destination(inner: str) -> Optional[Tuple[str, str]]:
    """Split the text between an image's parentheses into (href, title).

    Returns None when the destination is ambiguous, i.e. it contains
    whitespace without being wrapped in angle brackets.
    """
    inner = inner.strip()
    href, title = inner, ""

    quoted = QUOTED_TITLE_PATTERN.match(inner)
    if quoted:
        href = quoted.group(1)
        title = ESCAPED_QUOTE_PATTERN.sub(r"\1", quoted.group(3))
    else:
        paren = PAREN_TITLE_PATTERN.match(inner)
        if paren:
            href, title = paren.group(1), paren.group(2)

    href = href.strip()
    wrapped = href.startswith("<") and href.endswith(">")
    if not wrapped and WHITESPACE_PATTERN.search(href):
        return None
    return href, title


def parse_image_line(line: str) -> Optional[ImageReference]:
    """Parse an isolated ``![alt](dest "title"){attrs}`` line."""
    match = IMAGE_LINE_PATTERN.match(line)
    if not match:
        return None
    destination = split_destination(match.group(3))
    if destination is None:
        return None
    href, title = destination
    return ImageReference(
        indent=match.group(1),
        alt_text=match.group(2),
        href=href,
        title=title,
        trailing_attrs=match.group(4),
    )


def _looks_like_image(line: str) -> bool:
    start = line.find("![")
    return start != -1 and line.find("](", start) != -1


def render_caption_lines(
    image: ImageReference,
    decision: CaptionDecision,
    br: str,
) -> str:
    """Render the caption paragraph followed by the rewritten image line."""
    alt = image.alt_text if decision.replacement_alt is None else decision.replacement_alt
    image_line = f"{image.indent}![{alt}]({image.href}){image.trailing_attrs}"
    return image.indent + decision.caption + br + br + image_line


class MarkdownCaptionConverter:
    """Single pass over a Markdown document converting isolated image lines."""

    def __init__(self, options: CaptionOptions) -> None:
        self.options = options
        self._label_config: Optional[LabelConfig] = None

    def _caption_text(self, image: ImageReference) -> str:
        if self.options.caption_source == "title":
            return image.title
        return image.alt_text

    def _resolve_label(self, image: ImageReference) -> LabelConfig:
        if self._label_config is not None:
            return self._label_config
        lang = self.options.label_lang
        if self.options.auto_lang_detection:
            sample = self._caption_text(image) or image.alt_text
            detected = detect_auto_lang(sample)
            if detected:
                logger.debug("Detected label language %s from %r", detected, sample)
                lang = detected
        self._label_config = resolve_label_config(lang, self.options.label_set)
        return self._label_config

    def convert_line(self, line: str, br: str) -> Optional[str]:
        """Return the replacement text for ``line`` or None to keep it."""
        if not _looks_like_image(line):
            return None
        image = parse_image_line(line)
        if image is None:
            return None
        label_config = self._resolve_label(image)
        decision = decide_caption(self._caption_text(image), self.options.caption_source, label_config)
        return render_caption_lines(image, decision, br)

    def convert(self, markdown: str) -> str:
        lines = LINE_BREAK_PATTERN.split(markdown)
        breaks = LINE_BREAK_PATTERN.findall(markdown)
        br = breaks[0] if breaks else "\n"

        fences = FenceTracker()
        changed = False
        for index, line in enumerate(lines):
            if fences.feed(line):
                continue
            if not is_isolated_line(lines, index):
                continue
            replacement = self.convert_line(line, br)
            if replacement is None:
                continue
            lines[index] = replacement
            changed = True

        if not changed:
            return markdown

        parts: List[str] = []
        for index, line in enumerate(lines):
            parts.append(line)
            if index < len(breaks):
                parts.append(breaks[index])
        return "".join(parts)


def set_markdown_img_attr_to_p_caption(
    markdown: str,
    option: Optional[Mapping[str, Any]] = None,
) -> str:
    """Convert isolated image lines into a caption paragraph plus the image.

    The input string itself is returned when nothing needs converting.
    """
    if not markdown:
        return markdown
    options = option if isinstance(option, CaptionOptions) else CaptionOptions.from_option(option)
    if options.caption_source is None:
        return markdown
    return MarkdownCaptionConverter(options).convert(markdown)
