import asyncio
import gc
import json
import weakref

import pytest
from bs4 import BeautifulSoup

from pcaption.document import (
    MutationRecord,
    read_meta_frontmatter,
    release_document,
    set_img_figure_caption,
)


class RecordingObserver:
    def __init__(self, callback):
        self.callback = callback
        self.disconnected = False
        self.observed = None

    def observe(self, root, **options):
        self.observed = (root, options)

    def disconnect(self):
        self.disconnected = True

    def trigger(self, records):
        if not self.disconnected:
            self.callback(records)


class ObserverFactory:
    def __init__(self):
        self.instances = []

    def __call__(self, callback):
        observer = RecordingObserver(callback)
        self.instances.append(observer)
        return observer


@pytest.fixture
def observers():
    return ObserverFactory()


def run_now(callback):
    callback()


def make_doc(body):
    return BeautifulSoup(f"<html><head></head><body>{body}</body></html>", "html.parser")


def caption_of(img):
    return img.find_parent("figure").find("figcaption").get_text()


def add_meta(doc, content):
    meta = doc.new_tag("meta")
    meta["name"] = "markdown-frontmatter"
    meta["content"] = content
    doc.body.append(meta)
    return meta


def test_wraps_image_and_caption():
    doc = make_doc('<img alt="Caption">')
    img = doc.find("img")

    processed = asyncio.run(set_img_figure_caption(doc, {"imgAltCaption": True}))

    figure = doc.body.find("figure")
    assert figure is not None
    assert figure.get("class") == ["f-img"]
    assert figure.find("figcaption").get_text() == "Figure. Caption"
    assert figure.contents[0] is img
    assert img["alt"] == ""
    assert len(processed) == 1 and processed[0] is img


def test_updates_existing_caption():
    doc = make_doc('<figure><img alt="New caption"><figcaption>Old caption</figcaption></figure>')
    img = doc.find("img")

    asyncio.run(set_img_figure_caption(doc))

    assert len(doc.find_all("figcaption")) == 1
    assert caption_of(img) == "Figure. New caption"
    assert img["alt"] == ""


def test_blank_alt_keeps_label_only_caption():
    doc = make_doc('<figure><img alt=""><figcaption>To remove</figcaption></figure>')
    asyncio.run(set_img_figure_caption(doc))
    assert caption_of(doc.find("img")) == "Figure."


def test_title_caption_clears_title_attribute():
    doc = make_doc('<img alt="ALT text" title="A title caption">')
    img = doc.find("img")

    asyncio.run(
        set_img_figure_caption(doc, {"imgTitleCaption": True, "autoLangDetection": False, "labelLang": "en"})
    )

    assert caption_of(img) == "Figure. A title caption"
    assert img["alt"] == "ALT text"
    assert img.get("title") is None


def test_ignores_non_boolean_img_title_caption_option():
    doc = make_doc('<img alt="ALT text" title="Title text">')
    img = doc.find("img")

    asyncio.run(set_img_figure_caption(doc, {"imgTitleCaption": "false", "labelLang": "en"}))

    assert caption_of(img) == "Figure. ALT text"
    assert img["alt"] == ""
    assert img["title"] == "Title text"


def test_ignores_non_boolean_img_alt_caption_option():
    doc = make_doc('<img alt="Caption">')
    img = doc.find("img")
    asyncio.run(set_img_figure_caption(doc, {"imgAltCaption": "false", "imgTitleCaption": False}))
    assert caption_of(img) == "Figure. Caption"


def test_skips_processing_when_both_caption_modes_are_disabled():
    doc = make_doc('<img alt="Caption">')
    processed = asyncio.run(set_img_figure_caption(doc, {"imgAltCaption": False, "imgTitleCaption": False}))
    assert processed == []
    assert doc.find("figure") is None
    assert doc.find("img")["alt"] == "Caption"


def test_scope_figure_only():
    doc = make_doc('<img alt="Outside"><figure><img alt="Inside"></figure>')
    outside, inside = doc.find_all("img")

    asyncio.run(set_img_figure_caption(doc, {"scope": "figure-only"}))

    assert outside.find_parent("figure") is None
    assert outside["alt"] == "Outside"
    assert caption_of(inside) == "Figure. Inside"
    assert inside["alt"] == ""


def test_scope_standalone_skips_inline_images():
    doc = make_doc(
        '<p><!-- note --> <img alt="Standalone"> </p>'
        '<p><img alt="Inline"><span>text</span></p>'
    )
    standalone, inline = doc.find_all("img")

    asyncio.run(set_img_figure_caption(doc, {"scope": "standalone"}))

    assert caption_of(standalone) == "Figure. Standalone"
    assert standalone.find_parent("p") is not None
    assert inline.find_parent("figure") is None
    assert inline["alt"] == "Inline"


def test_custom_figure_class():
    doc = make_doc('<img alt="Caption">')
    asyncio.run(set_img_figure_caption(doc, {"figureClass": "custom-figure"}))
    assert doc.find("figure").get("class") == ["custom-figure"]


def test_label_set_override():
    doc = make_doc('<img alt="Caption">')
    option = {
        "autoLangDetection": False,
        "labelLang": "en",
        "labelSet": {"label": "Fig", "joint": ":", "space": " "},
    }
    asyncio.run(set_img_figure_caption(doc, option))
    assert caption_of(doc.find("img")) == "Fig: Caption"


def test_existing_label_and_label_only_captions():
    doc = make_doc('<img alt="Fig. 3: Results"><img alt="Figure">')
    labeled, label_only = doc.find_all("img")

    asyncio.run(set_img_figure_caption(doc))

    assert caption_of(labeled) == "Fig. 3: Results"
    assert labeled["alt"] == ""
    assert caption_of(label_only) == "Figure"
    assert label_only["alt"] == "Figure"


def test_read_meta_can_disable_conversion():
    doc = make_doc('<img alt="Caption">')
    add_meta(doc, json.dumps({"imgAltCaption": False, "imgTitleCaption": False}))
    asyncio.run(set_img_figure_caption(doc, {"readMeta": True}))
    assert doc.find("figure") is None


def test_explicit_options_override_read_meta():
    doc = make_doc('<img alt="Caption">')
    add_meta(doc, json.dumps({"imgAltCaption": False, "imgTitleCaption": False}))
    asyncio.run(set_img_figure_caption(doc, {"readMeta": True, "imgAltCaption": True}))
    assert doc.find("figure") is not None


def test_non_boolean_explicit_options_do_not_block_meta():
    doc = make_doc('<img alt="Caption">')
    add_meta(doc, json.dumps({"imgAltCaption": False, "imgTitleCaption": False}))
    asyncio.run(set_img_figure_caption(doc, {"readMeta": True, "imgAltCaption": "false"}))
    assert doc.find("figure") is None


def test_read_meta_tolerates_escaped_quotes_and_extension_settings():
    doc = make_doc('<img alt="Caption">')
    add_meta(doc, "{&quot;imgAltCaption&quot;:false,&quot;imgTitleCaption&quot;:false}")
    asyncio.run(set_img_figure_caption(doc, {"readMeta": True}))
    assert doc.find("figure") is None

    doc = make_doc('<img alt="Caption">')
    add_meta(doc, json.dumps({"_extensionSettings": {"imgAltCaption": False, "imgTitleCaption": False}}))
    asyncio.run(set_img_figure_caption(doc, {"readMeta": True}))
    assert doc.find("figure") is None


def test_read_meta_ignores_non_booleans_and_bad_json():
    doc = make_doc('<img alt="Caption">')
    add_meta(doc, json.dumps({"imgAltCaption": "false"}))
    asyncio.run(set_img_figure_caption(doc, {"readMeta": True}))
    assert doc.find("figure") is not None

    broken = make_doc("")
    add_meta(broken, "{not json")
    assert read_meta_frontmatter(broken) is None


def test_title_mode_detects_language_from_alt_when_title_is_empty():
    doc = make_doc('<img alt="猫" title="">')
    img = doc.find("img")
    asyncio.run(set_img_figure_caption(doc, {"imgTitleCaption": True, "autoLangDetection": True}))
    assert caption_of(img) == "図"
    assert img["alt"] == "猫"


def test_repeated_runs_recover_caption_from_source_cache():
    doc = make_doc('<p><img alt="Caption"></p>')
    img = doc.find("img")

    asyncio.run(set_img_figure_caption(doc))
    asyncio.run(set_img_figure_caption(doc))

    assert len(doc.find_all("figure")) == 1
    assert caption_of(img) == "Figure. Caption"
    assert img["alt"] == ""


def test_release_document_drops_source_cache():
    doc = make_doc('<img alt="Caption">')
    img = doc.find("img")

    asyncio.run(set_img_figure_caption(doc))
    release_document(doc)
    asyncio.run(set_img_figure_caption(doc))

    assert caption_of(img) == "Figure."


def test_missing_document_capability_returns_empty_result():
    assert asyncio.run(set_img_figure_caption(None)) == []
    assert asyncio.run(set_img_figure_caption({"body": "<img>"})) == []


def test_observe_without_observer_runs_a_single_pass():
    doc = make_doc('<img alt="Caption">')
    processed = asyncio.run(set_img_figure_caption(doc, {"observe": True}))
    assert len(processed) == 1
    assert caption_of(doc.find("img")) == "Figure. Caption"


def test_observe_picks_up_external_alt_update_right_after_init(observers):
    async def scenario():
        doc = make_doc('<img alt="Initial">')
        img = doc.find("img")
        await set_img_figure_caption(doc, {"observe": True}, observer_factory=observers, scheduler=run_now)

        img["alt"] = "External"
        observers.instances[0].trigger([MutationRecord(type="attributes", target=img, attribute_name="alt")])

        assert caption_of(img) == "Figure. External"
        assert img["alt"] == ""

    asyncio.run(scenario())


def test_observe_ignores_self_inflicted_attribute_changes(observers):
    async def scenario():
        doc = make_doc('<img alt="Caption">')
        img = doc.find("img")
        scheduled = []
        await set_img_figure_caption(
            doc, {"observe": True}, observer_factory=observers, scheduler=scheduled.append
        )
        root, options = observers.instances[0].observed
        assert root is doc
        assert options["attribute_filter"] == ["alt", "title"]

        observers.instances[0].trigger([MutationRecord(type="attributes", target=img, attribute_name="alt")])

        assert scheduled == []
        assert caption_of(img) == "Figure. Caption"

    asyncio.run(scenario())


def test_observe_respects_scope_for_attribute_mutations(observers):
    async def scenario():
        doc = make_doc('<p><img alt="Standalone"></p><p><img alt="Inline"><span></span></p>')
        standalone, inline = doc.find_all("img")
        await set_img_figure_caption(
            doc, {"scope": "standalone", "observe": True}, observer_factory=observers, scheduler=run_now
        )
        assert inline.find_parent("figure") is None

        inline["alt"] = "Inline changed"
        observers.instances[0].trigger([MutationRecord(type="attributes", target=inline, attribute_name="alt")])

        assert inline.find_parent("figure") is None
        assert caption_of(standalone) == "Figure. Standalone"

    asyncio.run(scenario())


def test_observe_rechecks_standalone_scope_on_sibling_removal(observers):
    async def scenario():
        doc = make_doc('<p><img alt="Caption"><span>x</span></p>')
        container = doc.find("p")
        img = doc.find("img")
        await set_img_figure_caption(
            doc, {"scope": "standalone", "observe": True}, observer_factory=observers, scheduler=run_now
        )
        assert container.find("figure") is None

        sibling = container.find("span").extract()
        observers.instances[0].trigger(
            [MutationRecord(type="childList", target=container, removed_nodes=[sibling])]
        )

        assert container.find("figure") is not None
        assert caption_of(img) == "Figure. Caption"

    asyncio.run(scenario())


def test_observe_reprocesses_when_meta_content_changes(observers):
    async def scenario():
        doc = make_doc('<img alt="Caption">')
        meta = add_meta(doc, json.dumps({"imgAltCaption": False}))
        await set_img_figure_caption(
            doc, {"readMeta": True, "observe": True}, observer_factory=observers, scheduler=run_now
        )
        assert doc.find("figure") is None

        meta["content"] = json.dumps({"imgAltCaption": True})
        observers.instances[0].trigger(
            [MutationRecord(type="attributes", target=meta, attribute_name="content")]
        )

        assert caption_of(doc.find("img")) == "Figure. Caption"

    asyncio.run(scenario())


def test_repeated_observe_calls_replace_the_observer(observers):
    async def scenario():
        doc = make_doc('<img alt="Caption">')
        await set_img_figure_caption(doc, {"observe": True}, observer_factory=observers)
        assert len(observers.instances) == 1
        first = observers.instances[0]
        assert first.disconnected is False

        await set_img_figure_caption(doc, {"observe": True}, observer_factory=observers)
        assert len(observers.instances) == 2
        assert first.disconnected is True

    asyncio.run(scenario())


def test_disabling_observe_disconnects_the_observer(observers):
    async def scenario():
        doc = make_doc('<img alt="Caption">')
        img = doc.find("img")
        await set_img_figure_caption(doc, {"observe": True}, observer_factory=observers, scheduler=run_now)
        first = observers.instances[0]

        await set_img_figure_caption(doc, {"observe": False}, observer_factory=observers)
        assert first.disconnected is True
        assert len(observers.instances) == 1

        img["alt"] = "Changed"
        first.trigger([MutationRecord(type="attributes", target=img, attribute_name="alt")])
        assert caption_of(img) == "Figure. Caption"

    asyncio.run(scenario())


def test_observe_redetects_language_when_first_image_changes(observers):
    async def scenario():
        doc = make_doc('<img alt="猫"><img alt="Dog">')
        img_ja, img_en = doc.find_all("img")
        await set_img_figure_caption(doc, {"observe": True}, observer_factory=observers, scheduler=run_now)
        assert caption_of(img_ja) == "図　猫"
        assert caption_of(img_en) == "図　Dog"

        img_first = doc.new_tag("img", attrs={"alt": "Cat"})
        doc.body.insert(0, img_first)
        observers.instances[0].trigger([MutationRecord(type="childList", added_nodes=[img_first])])

        assert caption_of(img_first) == "Figure. Cat"
        assert caption_of(img_ja) == "Figure. 猫"
        assert caption_of(img_en) == "Figure. Dog"

    asyncio.run(scenario())


def test_observe_redetects_language_when_anchor_is_removed(observers):
    async def scenario():
        doc = make_doc('<img alt="猫"><img alt="Dog">')
        img_ja, img_en = doc.find_all("img")
        await set_img_figure_caption(doc, {"observe": True}, observer_factory=observers, scheduler=run_now)

        figure = img_ja.find_parent("figure").extract()
        observers.instances[0].trigger(
            [MutationRecord(type="childList", target=doc.body, removed_nodes=[figure])]
        )

        assert caption_of(img_en) == "Figure. Dog"

    asyncio.run(scenario())


def test_observe_syncs_source_when_alt_is_externally_cleared(observers):
    async def scenario():
        doc = make_doc('<img alt="Caption">')
        img = doc.find("img")
        await set_img_figure_caption(doc, {"observe": True}, observer_factory=observers, scheduler=run_now)
        await asyncio.sleep(0)

        img["alt"] = ""
        observers.instances[0].trigger([MutationRecord(type="attributes", target=img, attribute_name="alt")])

        assert caption_of(img) == "Figure."

    asyncio.run(scenario())


def test_observe_coalesces_batches_into_one_pass(observers):
    async def scenario():
        doc = make_doc('<img alt="One"><img alt="Two">')
        img_one, img_two = doc.find_all("img")
        scheduled = []
        await set_img_figure_caption(
            doc, {"observe": True}, observer_factory=observers, scheduler=scheduled.append
        )
        observer = observers.instances[0]

        img_two["alt"] = "Changed"
        observer.trigger([MutationRecord(type="attributes", target=img_two, attribute_name="alt")])
        img_three = doc.new_tag("img", attrs={"alt": "Three"})
        doc.body.append(img_three)
        observer.trigger([MutationRecord(type="childList", target=doc.body, added_nodes=[img_three])])

        assert len(scheduled) == 1
        assert img_three.find_parent("figure") is None

        scheduled[0]()

        assert caption_of(img_one) == "Figure. One"
        assert caption_of(img_two) == "Figure. Changed"
        assert caption_of(img_three) == "Figure. Three"

    asyncio.run(scenario())


def test_observe_default_scheduler_runs_on_the_event_loop(observers):
    async def scenario():
        doc = make_doc('<img alt="Caption">')
        img = doc.find("img")
        await set_img_figure_caption(doc, {"observe": True}, observer_factory=observers)
        await asyncio.sleep(0)

        img["alt"] = "Later"
        observers.instances[0].trigger([MutationRecord(type="attributes", target=img, attribute_name="alt")])
        assert caption_of(img) == "Figure. Caption"

        await asyncio.sleep(0.2)
        assert caption_of(img) == "Figure. Later"

    asyncio.run(scenario())


def test_scheduled_pass_is_dropped_after_disconnect(observers):
    async def scenario():
        doc = make_doc('<img alt="Caption">')
        img = doc.find("img")
        scheduled = []
        await set_img_figure_caption(
            doc,
            {"observe": True, "labelSet": {"label": "Old"}},
            observer_factory=observers,
            scheduler=scheduled.append,
        )

        img["alt"] = "Changed"
        observers.instances[0].trigger([MutationRecord(type="attributes", target=img, attribute_name="alt")])
        assert len(scheduled) == 1

        await set_img_figure_caption(doc, {"observe": False, "labelSet": {"label": "New"}})
        assert caption_of(img) == "New. Changed"

        scheduled[0]()
        assert caption_of(img) == "New. Changed"

    asyncio.run(scenario())


def test_observed_change_after_event_loop_closed(observers):
    doc = make_doc('<img alt="Caption">')
    img = doc.find("img")
    asyncio.run(
        set_img_figure_caption(doc, {"observe": True}, observer_factory=observers, scheduler=run_now)
    )
    observer = observers.instances[0]

    img["alt"] = "Later"
    observer.trigger([MutationRecord(type="attributes", target=img, attribute_name="alt")])
    assert caption_of(img) == "Figure. Later"
    assert img["alt"] == ""

    # The record for the synchronizer's own write is still recognised.
    observer.trigger([MutationRecord(type="attributes", target=img, attribute_name="alt")])
    assert caption_of(img) == "Figure. Later"


def test_default_scheduler_without_event_loop_runs_immediately(observers):
    doc = make_doc('<img alt="Caption">')
    img = doc.find("img")
    asyncio.run(set_img_figure_caption(doc, {"observe": True}, observer_factory=observers))

    img["alt"] = "Later"
    observers.instances[0].trigger([MutationRecord(type="attributes", target=img, attribute_name="alt")])
    assert caption_of(img) == "Figure. Later"


class DetachedObserver:
    """Observer that, like a DOM observer, does not keep its target alive."""

    def __init__(self, callback):
        self.callback = callback

    def observe(self, root, **options):
        pass

    def disconnect(self):
        pass


def test_watched_document_can_be_garbage_collected():
    async def scenario():
        doc = make_doc('<p><img alt="Caption"></p>')
        await set_img_figure_caption(doc, {"observe": True}, observer_factory=DetachedObserver, scheduler=run_now)
        return weakref.ref(doc)

    doc_ref = asyncio.run(scenario())
    gc.collect()
    assert doc_ref() is None
