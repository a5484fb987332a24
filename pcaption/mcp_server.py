"""MCP server exposing the caption converters as tools."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from bs4 import BeautifulSoup
from mcp.server.fastmcp import FastMCP

from .config import DEFAULT_FIGURE_CLASS, DEFAULT_LABEL_LANG
from .document import release_document, set_img_figure_caption
from .markdown import set_markdown_img_attr_to_p_caption

logger = logging.getLogger("pcaption.mcp")
logger.setLevel(logging.ERROR)

mcp = FastMCP(name="pcaption")


def _base_option(
    use_title: bool,
    label_lang: str,
    auto_lang_detection: bool,
    label_set: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    option: Dict[str, Any] = {
        "imgTitleCaption": use_title,
        "labelLang": label_lang,
        "autoLangDetection": auto_lang_detection,
    }
    if label_set:
        option["labelSet"] = label_set
    return option


@mcp.tool()
async def caption_markdown(
    markdown: str,
    use_title: bool = False,
    label_lang: str = DEFAULT_LABEL_LANG,
    auto_lang_detection: bool = True,
    label_set: Optional[Dict[str, Any]] = None,
) -> str:
    """Turn standalone Markdown images into a labeled caption paragraph plus the image."""
    option = _base_option(use_title, label_lang, auto_lang_detection, label_set)
    return set_markdown_img_attr_to_p_caption(markdown, option)


@mcp.tool()
async def caption_html(
    html: str,
    use_title: bool = False,
    label_lang: str = DEFAULT_LABEL_LANG,
    auto_lang_detection: bool = True,
    label_set: Optional[Dict[str, Any]] = None,
    scope: str = "all",
    figure_class: str = DEFAULT_FIGURE_CLASS,
) -> str:
    """Wrap HTML images in <figure> elements with a labeled <figcaption>."""
    option = _base_option(use_title, label_lang, auto_lang_detection, label_set)
    option["scope"] = scope
    option["figureClass"] = figure_class
    soup = BeautifulSoup(html, "html.parser")
    try:
        await set_img_figure_caption(soup, option)
        return str(soup)
    finally:
        release_document(soup)


def main() -> None:
    """Entry point for running the MCP server."""
    logging.basicConfig(level=logging.ERROR)
    mcp.run()


if __name__ == "__main__":
    main()
