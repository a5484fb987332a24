"""Command-line entry point for caption conversion."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence

from bs4 import BeautifulSoup

from .config import DEFAULT_FIGURE_CLASS, SCOPES
from .document import set_img_figure_caption
from .markdown import set_markdown_img_attr_to_p_caption

logger = logging.getLogger("pcaption.cli")


def _ensure_command_prefix(argv: Sequence[str], commands: Iterable[str]) -> Sequence[str]:
    if not argv:
        return argv
    first = argv[0]
    if first in commands or first.startswith("-"):
        return argv
    return ("markdown", *argv)


def _label_set(value: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise argparse.ArgumentTypeError(f"invalid JSON for --label-set: {exc}") from exc
    if not isinstance(parsed, dict):
        raise argparse.ArgumentTypeError("--label-set must be a JSON object")
    return parsed


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("input", type=Path, help="File to convert")
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Write the converted document here instead of STDOUT",
    )
    parser.add_argument(
        "--title",
        action="store_true",
        help="Use the image title instead of the alt text as the caption source",
    )
    parser.add_argument(
        "--no-alt",
        action="store_true",
        help="Do not use the alt text as a caption source",
    )
    parser.add_argument(
        "--label-lang",
        default=None,
        help="Label language used when auto-detection is off or inconclusive (default: en)",
    )
    parser.add_argument(
        "--no-auto-lang",
        action="store_true",
        help="Disable label language detection from caption text",
    )
    parser.add_argument(
        "--label-set",
        type=_label_set,
        default=None,
        help='Label override as JSON, e.g. \'{"label": "Fig", "joint": ":"}\'',
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )


def _add_html_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--scope",
        choices=SCOPES,
        default="all",
        help="Which images are eligible for conversion",
    )
    parser.add_argument(
        "--figure-class",
        default=DEFAULT_FIGURE_CLASS,
        help="Class applied to newly created <figure> elements",
    )
    parser.add_argument(
        "--read-meta",
        action="store_true",
        help="Read caption flags from <meta name=\"markdown-frontmatter\">",
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Turn image alt/title text into labeled figure captions.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    markdown_parser = subparsers.add_parser(
        "markdown", help="Convert isolated Markdown image lines into caption paragraphs"
    )
    _add_common_arguments(markdown_parser)

    html_parser = subparsers.add_parser(
        "html", help="Wrap HTML images in <figure> with a <figcaption>"
    )
    _add_common_arguments(html_parser)
    _add_html_arguments(html_parser)

    argv = list(sys.argv[1:] if argv is None else argv)
    argv = list(_ensure_command_prefix(argv, subparsers.choices.keys()))
    return parser.parse_args(argv)


def build_option(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate CLI flags into the option mapping used by the converters."""
    option: Dict[str, Any] = {}
    if args.no_alt:
        option["imgAltCaption"] = False
    if args.title:
        option["imgTitleCaption"] = True
    if args.label_lang:
        option["labelLang"] = args.label_lang
    if args.no_auto_lang:
        option["autoLangDetection"] = False
    if args.label_set is not None:
        option["labelSet"] = args.label_set
    if args.command == "html":
        option["scope"] = args.scope
        option["figureClass"] = args.figure_class
        if args.read_meta:
            option["readMeta"] = True
    return option


def _read_input(path: Path) -> str:
    source = path.expanduser()
    if not source.exists():
        raise FileNotFoundError(f"Input path does not exist: {source}")
    return source.read_text(encoding="utf-8")


def _write_output(text: str, output: Optional[Path]) -> None:
    if output is None:
        sys.stdout.write(text)
        sys.stdout.flush()
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text, encoding="utf-8")
    logger.info("Saved output to %s", output)


def convert_html(html: str, option: Dict[str, Any]) -> str:
    soup = BeautifulSoup(html, "html.parser")
    processed = asyncio.run(set_img_figure_caption(soup, option))
    logger.debug("Captioned %d image(s)", len(processed))
    return str(soup)


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )

    start = time.perf_counter()
    text = _read_input(args.input)
    option = build_option(args)
    if args.command == "markdown":
        converted = set_markdown_img_attr_to_p_caption(text, option)
    else:
        converted = convert_html(text, option)
    _write_output(converted, args.output)
    logger.debug(
        "Converted %s in %.3fs (%s)",
        args.input,
        time.perf_counter() - start,
        "changed" if converted != text else "unchanged",
    )


if __name__ == "__main__":
    main()
