"""Live-document caption synchronisation over BeautifulSoup trees."""

from __future__ import annotations

import asyncio
import json
import logging
import weakref
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from .config import META_NAME, CaptionOptions
from .labels import decide_caption, detect_auto_lang, resolve_label_config
from .models import CaptionDecision, LabelConfig, SourceEntry
from .utils import is_blank

logger = logging.getLogger("pcaption")

FRAME_DELAY_SECONDS = 0.05
CAPTION_ATTRIBUTES = ("alt", "title")


@dataclass
class MutationRecord:
    """A change notification delivered by the host's document observer."""

    type: str
    target: Any = None
    attribute_name: Optional[str] = None
    added_nodes: Sequence[Any] = ()
    removed_nodes: Sequence[Any] = ()


class MutationObserverLike(Protocol):
    def observe(self, root: Any, **options: Any) -> None: ...

    def disconnect(self) -> None: ...


MutationCallback = Callable[[List[MutationRecord]], None]
ObserverFactory = Callable[[MutationCallback], MutationObserverLike]
Scheduler = Callable[[Callable[[], None]], Any]


def _is_image(node: Any) -> bool:
    return isinstance(node, Tag) and node.name == "img"


def _is_meta(node: Any) -> bool:
    return isinstance(node, Tag) and node.name == "meta" and node.get("name") == META_NAME


def _get_attr(element: Tag, name: str) -> str:
    value = element.get(name)
    if value is None:
        return ""
    if isinstance(value, list):
        return " ".join(value)
    return str(value)


def _is_attached(node: Tag, document: BeautifulSoup) -> bool:
    return any(parent is document for parent in node.parents)


def _inside_figure(img: Tag) -> bool:
    return img.find_parent("figure") is not None


def _is_standalone(img: Tag) -> bool:
    if _inside_figure(img):
        return True
    parent = img.parent
    if parent is None:
        return False
    for sibling in parent.children:
        if sibling is img or isinstance(sibling, Comment):
            continue
        if isinstance(sibling, NavigableString) and is_blank(str(sibling)):
            continue
        return False
    return True


def in_scope(img: Tag, scope: str) -> bool:
    """Return True when ``img`` is eligible for conversion under ``scope``."""
    if scope == "figure-only":
        return _inside_figure(img)
    if scope == "standalone":
        return _is_standalone(img)
    return True


def read_meta_frontmatter(document: BeautifulSoup) -> Optional[Dict[str, Any]]:
    """Return the JSON object carried by ``<meta name="markdown-frontmatter">``."""
    meta = document.find("meta", attrs={"name": META_NAME})
    if meta is None:
        return None
    content = _get_attr(meta, "content")
    if not content:
        return None
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None
        if "&quot;" in content:
            try:
                parsed = json.loads(content.replace("&quot;", '"'))
            except json.JSONDecodeError:
                logger.debug("Ignoring malformed front-matter meta content")
    return parsed if isinstance(parsed, dict) else None


class DocumentState:
    """Caches and watcher bookkeeping scoped to one document."""

    def __init__(self, document: BeautifulSoup) -> None:
        self.document_ref = weakref.ref(document)
        self.sources: Dict[int, SourceEntry] = {}
        self.tags: Dict[Tuple[int, str], Optional[str]] = {}
        self.watcher: Optional["FigureCaptionWatcher"] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.detected_lang: Optional[str] = None
        self.detection_done = False
        self._anchor_ref: Optional[weakref.ref] = None
        self._flush_loop: Optional[asyncio.AbstractEventLoop] = None

    def usable_loop(self) -> Optional[asyncio.AbstractEventLoop]:
        """Return the running loop, else the last seen loop if it is still open."""
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            pass
        if self.loop is not None and not self.loop.is_closed():
            return self.loop
        return None

    @property
    def anchor(self) -> Optional[Tag]:
        """The image whose caption text drove the last language detection."""
        return self._anchor_ref() if self._anchor_ref is not None else None

    @anchor.setter
    def anchor(self, img: Optional[Tag]) -> None:
        self._anchor_ref = weakref.ref(img) if img is not None else None

    def entry_for(self, img: Tag) -> SourceEntry:
        entry = self.sources.get(id(img))
        if entry is None or entry.element_ref() is not img:
            entry = SourceEntry(
                element_ref=weakref.ref(img),
                sources={name: _get_attr(img, name) for name in CAPTION_ATTRIBUTES},
            )
            self.sources[id(img)] = entry
        return entry

    def forget(self, img: Tag) -> None:
        self.sources.pop(id(img), None)

    def prune(self, live_images: Iterable[Tag]) -> None:
        """Drop cached sources for images no longer in the document."""
        live_ids = {id(img) for img in live_images}
        for key in [key for key in self.sources if key not in live_ids]:
            del self.sources[key]

    def record_external_change(self, img: Tag, name: str) -> None:
        entry = self.entry_for(img)
        entry.sources[name] = _get_attr(img, name)
        entry.written.pop(name, None)

    def invalidate_detection(self) -> None:
        self.detection_done = False
        self.detected_lang = None

    def tag_self_write(self, img: Tag, name: str, value: Optional[str]) -> None:
        self.tags[(id(img), name)] = value
        if self._flush_loop is not None and not self._flush_loop.is_closed():
            return
        # Without an open loop the tag stays until its mutation record consumes it.
        loop = self.usable_loop()
        self._flush_loop = loop
        if loop is not None:
            loop.call_soon(self.clear_tags)

    def is_self_write(self, img: Tag, name: str) -> bool:
        """Consume the tag for ``(img, name)``; True if it matches the live value."""
        key = (id(img), name)
        if key not in self.tags:
            return False
        tagged = self.tags.pop(key)
        return img.get(name) == tagged

    def clear_tags(self) -> None:
        self.tags.clear()
        self._flush_loop = None


_DOCUMENT_STATES: Dict[int, DocumentState] = {}


def _state_for(document: BeautifulSoup) -> DocumentState:
    key = id(document)
    state = _DOCUMENT_STATES.get(key)
    if state is not None and state.document_ref() is document:
        return state
    state = DocumentState(document)
    _DOCUMENT_STATES[key] = state
    weakref.finalize(document, _DOCUMENT_STATES.pop, key, None)
    return state


def release_document(document: BeautifulSoup) -> None:
    """Disconnect any watcher and drop every cache kept for ``document``."""
    state = _DOCUMENT_STATES.pop(id(document), None)
    if state is None:
        return
    if state.watcher is not None:
        state.watcher.disconnect()
        state.watcher = None
    state.clear_tags()
    state.sources.clear()


class FigureCaptionSynchronizer:
    """Apply caption decisions to the ``<img>`` elements of one document."""

    def __init__(self, document: BeautifulSoup, state: DocumentState, options: CaptionOptions) -> None:
        self._document_ref = weakref.ref(document)
        self.state = state
        self.options = options

    @property
    def document(self) -> Optional[BeautifulSoup]:
        return self._document_ref()

    def current_options(self) -> CaptionOptions:
        document = self.document
        if not self.options.read_meta or document is None:
            return self.options
        return self.options.with_meta(read_meta_frontmatter(document))

    def find_anchor(self, options: CaptionOptions) -> Optional[Tag]:
        """Return the first eligible image, which drives language detection."""
        for img in self.document.find_all("img"):
            if in_scope(img, options.scope):
                return img
        return None

    def read_source(self, img: Tag, name: str) -> str:
        """Prefer the live attribute, falling back to the cached original."""
        entry = self.state.entry_for(img)
        live = _get_attr(img, name)
        if live and live != entry.written.get(name):
            entry.sources[name] = live
        return entry.sources.get(name, live)

    def _detection_sample(self, img: Tag, source: str) -> str:
        text = self.read_source(img, source)
        if not text and source == "title":
            text = self.read_source(img, "alt")
        return text

    def label_config(self, options: CaptionOptions) -> LabelConfig:
        lang = options.label_lang
        if options.auto_lang_detection:
            anchor = self.find_anchor(options)
            if anchor is not None:
                if anchor is not self.state.anchor or not self.state.detection_done:
                    self.state.anchor = anchor
                    self.state.detected_lang = detect_auto_lang(
                        self._detection_sample(anchor, options.caption_source)
                    )
                    self.state.detection_done = True
                    logger.debug("Detected label language: %s", self.state.detected_lang)
                if self.state.detected_lang:
                    lang = self.state.detected_lang
        return resolve_label_config(lang, options.label_set)

    def _write_attr(self, img: Tag, name: str, value: Optional[str]) -> None:
        entry = self.state.entry_for(img)
        entry.written[name] = value
        if img.get(name) == value:
            return
        if value is None:
            del img[name]
        else:
            img[name] = value
        self.state.tag_self_write(img, name, value)

    def _new_caption(self, text: str) -> Tag:
        caption = self.document.new_tag("figcaption")
        caption.string = text
        return caption

    def _update_figure(self, img: Tag, caption: str, options: CaptionOptions) -> None:
        figure = img.find_parent("figure")
        if figure is not None:
            figcaption = figure.find("figcaption")
            if is_blank(caption):
                if figcaption is not None:
                    figcaption.decompose()
                return
            if figcaption is None:
                figure.append(self._new_caption(caption))
            elif figcaption.get_text() != caption:
                figcaption.string = caption
            return

        if is_blank(caption) or img.parent is None:
            return
        figure = self.document.new_tag("figure")
        if options.figure_class:
            figure["class"] = options.figure_class.split()
        img.wrap(figure)
        figure.append(self._new_caption(caption))

    def apply(self, img: Tag, decision: CaptionDecision, options: CaptionOptions) -> None:
        if decision.replacement_alt is not None:
            self._write_attr(img, "alt", decision.replacement_alt)
        if decision.clears_title:
            self._write_attr(img, "title", None)
        self._update_figure(img, decision.caption, options)

    def run(self, targets: Optional[Iterable[Tag]] = None) -> List[Tag]:
        """Process every eligible image, or only ``targets`` when given."""
        document = self.document
        if document is None:
            return []
        options = self.current_options()
        source = options.caption_source
        if source is None:
            logger.debug("Caption conversion disabled; skipping pass")
            return []

        if targets is None:
            all_images = document.find_all("img")
            self.state.prune(all_images)
            images = [img for img in all_images if in_scope(img, options.scope)]
        else:
            images = [
                img
                for img in targets
                if _is_attached(img, document) and in_scope(img, options.scope)
            ]

        label_config = self.label_config(options)
        processed: List[Tag] = []
        for img in images:
            text = self.read_source(img, source)
            decision = decide_caption(text, source, label_config)
            self.apply(img, decision, options)
            processed.append(img)
        logger.debug("Processed %d image(s)", len(processed))
        return processed


class FigureCaptionWatcher:
    """React to document mutations by re-running the synchronizer.

    Passes are scheduled rather than run inside the observer callback, so a
    burst of changes collapses into one pass. Changes that arrive while a
    pass is running are drained by follow-up iterations of the same loop.
    """

    def __init__(
        self,
        synchronizer: FigureCaptionSynchronizer,
        observer_factory: ObserverFactory,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.synchronizer = synchronizer
        self.state = synchronizer.state
        self._observer_factory = observer_factory
        self._scheduler = scheduler
        self.observer: Optional[MutationObserverLike] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._scheduled = False
        self._running = False
        self._pending = False
        self._pending_all = False
        self._pending_images: Dict[int, Tag] = {}

    @property
    def connected(self) -> bool:
        return self.observer is not None

    def connect(self) -> None:
        attribute_filter = list(CAPTION_ATTRIBUTES)
        if self.synchronizer.options.read_meta:
            attribute_filter.append("content")
        self.observer = self._observer_factory(self.handle_mutations)
        self.observer.observe(
            self.synchronizer.document,
            child_list=True,
            subtree=True,
            attributes=True,
            attribute_filter=attribute_filter,
        )

    def disconnect(self) -> None:
        if self.observer is not None:
            self.observer.disconnect()
            self.observer = None
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._scheduled = False
        self._pending = False
        self._pending_all = False
        self._pending_images.clear()

    def _add_image(self, img: Tag) -> None:
        self._pending_images[id(img)] = img

    def _collect_images(self, nodes: Iterable[Any]) -> None:
        for node in nodes or ():
            if not isinstance(node, Tag) or node.name == "figcaption":
                continue
            if _is_image(node):
                self._add_image(node)
                continue
            for img in node.find_all("img"):
                self._add_image(img)

    def _forget_images(self, nodes: Iterable[Any]) -> bool:
        """Evict removed images; return True if the anchor was among them."""
        anchor_removed = False
        for node in nodes or ():
            if not isinstance(node, Tag):
                continue
            images = [node] if _is_image(node) else node.find_all("img")
            for img in images:
                if img is self.state.anchor:
                    anchor_removed = True
                self.state.forget(img)
        return anchor_removed

    def _has_meta(self, nodes: Iterable[Any]) -> bool:
        if not self.synchronizer.options.read_meta:
            return False
        for node in nodes or ():
            if not isinstance(node, Tag):
                continue
            if _is_meta(node) or node.find("meta", attrs={"name": META_NAME}) is not None:
                return True
        return False

    def handle_mutations(self, records: Sequence[MutationRecord]) -> None:
        if not self.connected or self.synchronizer.document is None:
            return
        should_schedule = False
        meta_changed = False
        anchor_touched = False

        for record in records:
            if record is None:
                continue
            if record.type == "attributes":
                target = record.target
                name = record.attribute_name
                if _is_image(target) and name in CAPTION_ATTRIBUTES:
                    if self.state.is_self_write(target, name):
                        logger.debug("Ignoring self-inflicted %s change", name)
                        continue
                    self.state.record_external_change(target, name)
                    self._add_image(target)
                    if target is self.state.anchor:
                        anchor_touched = True
                    should_schedule = True
                elif self.synchronizer.options.read_meta and _is_meta(target) and name == "content":
                    meta_changed = True
                    should_schedule = True
                continue

            if record.type != "childList":
                continue
            before = len(self._pending_images)
            self._collect_images(record.added_nodes)
            if isinstance(record.target, Tag):
                for child in record.target.children:
                    if _is_image(child):
                        self._add_image(child)
            if len(self._pending_images) > before:
                should_schedule = True
            if self._forget_images(record.removed_nodes):
                anchor_touched = True
                should_schedule = True
            if self._has_meta(record.added_nodes) or self._has_meta(record.removed_nodes):
                meta_changed = True
                should_schedule = True

        options = self.synchronizer.current_options()
        if options.auto_lang_detection and self.state.detection_done:
            if self.synchronizer.find_anchor(options) is not self.state.anchor:
                anchor_touched = True
                should_schedule = True

        if meta_changed or anchor_touched:
            self.state.invalidate_detection()
            self._pending_all = True
            self._pending_images.clear()
        if should_schedule:
            self.schedule()

    def schedule(self) -> None:
        if self._scheduled:
            return
        self._scheduled = True

        def run() -> None:
            self._scheduled = False
            self._handle = None
            self.drain()

        if self._scheduler is not None:
            self._scheduler(run)
            return
        loop = self.state.usable_loop()
        if loop is None:
            run()
            return
        self._handle = loop.call_later(FRAME_DELAY_SECONDS, run)

    def drain(self) -> None:
        """Run passes until no further changes are pending."""
        if not self.connected:
            logger.debug("Watcher disconnected; dropping scheduled pass")
            return
        if self._running:
            self._pending = True
            return
        self._running = True
        try:
            while True:
                self._pending = False
                targets = None if self._pending_all else list(self._pending_images.values())
                self._pending_all = False
                self._pending_images.clear()
                self.synchronizer.run(targets)
                if not self._pending or not self.connected:
                    break
        finally:
            self._running = False


async def set_img_figure_caption(
    document: Any,
    option: Optional[Mapping[str, Any]] = None,
    *,
    observer_factory: Optional[ObserverFactory] = None,
    scheduler: Optional[Scheduler] = None,
) -> List[Tag]:
    """Wrap captioned images of ``document`` in ``<figure>`` with a ``<figcaption>``.

    With ``observe`` enabled and an ``observer_factory`` supplied, a watcher
    keeps captions in sync with later changes until the next call for the
    same document. Returns the images processed by the initial pass.
    """
    if not isinstance(document, BeautifulSoup):
        return []

    options = CaptionOptions.from_option(option)
    state = _state_for(document)
    state.loop = asyncio.get_running_loop()
    if state.watcher is not None:
        state.watcher.disconnect()
        state.watcher = None
        state.clear_tags()
    state.invalidate_detection()

    synchronizer = FigureCaptionSynchronizer(document, state, options)
    if options.observe:
        if observer_factory is None:
            logger.debug("No document observer available; running a single pass")
        else:
            watcher = FigureCaptionWatcher(synchronizer, observer_factory, scheduler)
            watcher.connect()
            state.watcher = watcher
    return synchronizer.run()
