"""Line-oriented tracking of code and math fences in Markdown."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from .utils import is_blank_line

# kind -> (marker char, minimum run, whether text may follow the opener)
FENCE_KINDS: Dict[str, tuple] = {
    "backtick": ("`", 3, True),
    "tilde": ("~", 3, True),
    "math": ("$", 2, False),
}


@dataclass
class OpenFence:
    """The fence currently suppressing caption conversion."""

    kind: str
    marker: str
    count: int


class FenceTracker:
    """Feed lines in order; ``feed`` reports whether a line is fenced.

    Fences do not nest: while one kind is open, only its own closer is
    recognised.
    """

    def __init__(self) -> None:
        self.open: Optional[OpenFence] = None
        self._openers = {
            kind: re.compile(
                r"^[ \t]*(" + re.escape(marker) + "{" + str(minimum) + r",})"
                + (r"(.*)$" if info else r"[ \t]*$")
            )
            for kind, (marker, minimum, info) in FENCE_KINDS.items()
        }

    def _closes(self, line: str) -> bool:
        fence = self.open
        match = re.match(r"^[ \t]*(" + re.escape(fence.marker) + r"+)[ \t]*$", line)
        return bool(match) and len(match.group(1)) >= fence.count

    def _opens(self, line: str) -> Optional[OpenFence]:
        for kind, pattern in self._openers.items():
            match = pattern.match(line)
            if not match:
                continue
            marker = FENCE_KINDS[kind][0]
            # A backtick info string may not contain backticks.
            if kind == "backtick" and marker in match.group(2):
                continue
            return OpenFence(kind=kind, marker=marker, count=len(match.group(1)))
        return None

    def feed(self, line: str) -> bool:
        """Advance over ``line``; return True when it belongs to a fence."""
        if self.open is not None:
            if self._closes(line):
                self.open = None
            return True
        opened = self._opens(line)
        if opened is not None:
            self.open = opened
            return True
        return False


def is_isolated_line(lines: Sequence[str], index: int) -> bool:
    """True when the neighbours of ``lines[index]`` are blank or absent."""
    before = lines[index - 1] if index > 0 else None
    after = lines[index + 1] if index + 1 < len(lines) else None
    return is_blank_line(before) and is_blank_line(after)
