"""Data models shared by the Markdown and live-document pipelines."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional


@dataclass(frozen=True)
class ImageReference:
    """Structural parts of a single Markdown image line."""

    indent: str
    alt_text: str
    href: str
    title: str
    trailing_attrs: str


@dataclass
class LabelConfig:
    """Resolved label text, joint punctuation and caption spacing."""

    label: str
    joint: str
    space: str


@dataclass(frozen=True)
class CaptionDecision:
    """Caption to display and the attribute changes that go with it."""

    caption: str
    replacement_alt: Optional[str]
    clears_title: bool


@dataclass
class SourceEntry:
    """Original alt/title values remembered for one tracked image.

    ``element_ref`` is a weak reference so the cache never keeps a document
    alive. ``written`` holds the values the synchronizer itself last set.
    """

    element_ref: Callable[[], Any]
    sources: Dict[str, str] = field(default_factory=dict)
    written: Dict[str, Optional[str]] = field(default_factory=dict)
