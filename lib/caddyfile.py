"""
Caddyfile route table

Parses the edge config into the route blocks of one domain plus the untouched
remainder, and renders it back with exactly one canonical block for that
domain. All switching logic works on this structure; raw text only exists at
the file boundary (see lib/edge_config.py).

Block boundaries are found by brace depth, never by line count, so nested
directives such as ``reverse_proxy x { header_down ... }`` stay inside their
block.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Tuple

from lib.models import Color, RouteBlock, Slot, SwitchMode

logger = logging.getLogger(__name__)

POSITIONS = ("prepend", "append")

_REVERSE_PROXY = re.compile(r"^\s*reverse_proxy\s+(\S+)", re.IGNORECASE)
_GLOBAL_OPTIONS = re.compile(r"^\s*\{\s*$")


def header_pattern(domain: str) -> re.Pattern:
    """Site header for the domain: tolerates leading whitespace, a scheme and a port"""
    return re.compile(rf"^\s*(?:https?://)?{re.escape(domain)}(?::\d+)?\s*\{{")


def brace_delta(line: str) -> int:
    return line.count("{") - line.count("}")


def _is_blank(line: str) -> bool:
    return line.strip() == ""


def _strip_leading_blank(lines: List[str]) -> List[str]:
    i = 0
    while i < len(lines) and _is_blank(lines[i]):
        i += 1
    return lines[i:]


def _strip_trailing_blank(lines: List[str]) -> List[str]:
    end = len(lines)
    while end > 0 and _is_blank(lines[end - 1]):
        end -= 1
    return lines[:end]


def _terminated(lines: List[str]) -> List[str]:
    if lines and not lines[-1].endswith("\n"):
        return lines[:-1] + [lines[-1] + "\n"]
    return lines


def upstream_forms(slot: Slot) -> Dict[SwitchMode, List[str]]:
    """Every spelling of a slot upstream we recognise in a reverse_proxy line"""
    return {
        SwitchMode.service: [slot.upstream(SwitchMode.service)],
        SwitchMode.port: [f"127.0.0.1:{slot.port}", f"localhost:{slot.port}"],
    }


def _mentions(text: str, forms: Iterable[str]) -> bool:
    for form in forms:
        if re.search(rf"(?im)^\s*reverse_proxy\s+{re.escape(form)}\b", text):
            return True
    return False


class Caddyfile:
    """Route table for one domain: its blocks and everything else, in order"""

    def __init__(self, domain: str, remainder: List[str], blocks: List[RouteBlock]):
        self.domain = domain
        self.remainder = remainder
        self.blocks = blocks

    @classmethod
    def parse(cls, text: str, domain: str, slot_header: str = "X-Edge-Slot") -> "Caddyfile":
        """Split text into the domain's route blocks and the remainder.

        Every block for the domain is extracted, not just the first one; stale
        duplicates from earlier runs all end up in ``blocks``. Blank lines right
        after a removed block are dropped with it. A block that never closes
        runs to the end of the file.
        """
        lines = text.splitlines(keepends=True)
        start = header_pattern(domain)
        header_re = re.compile(rf"(?i)^\s*header\s+{re.escape(slot_header)}\s+(blue|green)\b")

        remainder: List[str] = []
        blocks: List[RouteBlock] = []
        i = 0
        while i < len(lines):
            line = lines[i]
            if not start.match(line):
                remainder.append(line)
                i += 1
                continue

            consumed = [line]
            depth = brace_delta(line)
            i += 1
            while i < len(lines) and depth > 0:
                depth += brace_delta(lines[i])
                consumed.append(lines[i])
                i += 1
            while i < len(lines) and _is_blank(lines[i]):
                i += 1

            upstream = None
            color = None
            for raw in consumed[1:]:
                m = _REVERSE_PROXY.match(raw)
                if m and upstream is None:
                    upstream = m.group(1).rstrip("{")
                h = header_re.match(raw)
                if h and color is None:
                    color = Color(h.group(1).lower())
            blocks.append(
                RouteBlock(domain=domain, upstream=upstream, color=color, slot_header=slot_header, lines=consumed)
            )

        if len(blocks) > 1:
            logger.debug(f"Found {len(blocks)} route blocks for {domain}")
        return cls(domain, remainder, blocks)

    @property
    def text(self) -> str:
        """Current content without re-rendering (blocks are not reinserted)"""
        return "".join(self.remainder) + "".join("".join(b.lines) for b in self.blocks)

    def pin(self, block: RouteBlock) -> int:
        """Replace all blocks for the domain with ``block``. Returns how many were removed."""
        if block.domain != self.domain:
            raise ValueError(f"Block for {block.domain} cannot be pinned in a table for {self.domain}")
        removed = len(self.blocks)
        self.blocks = [block]
        return removed

    def retarget(self, old_forms: Iterable[str], new_upstream: str) -> int:
        """Point reverse_proxy lines outside the domain blocks from an old upstream to a new one"""
        count = 0
        patterns = [re.compile(rf"(?i)^(\s*reverse_proxy\s+){re.escape(form)}(?=\s|\{{|$)") for form in old_forms]
        updated = []
        for line in self.remainder:
            for pattern in patterns:
                line, n = pattern.subn(lambda m: m.group(1) + new_upstream, line)
                count += n
            updated.append(line)
        self.remainder = updated
        return count

    def _split_global_options(self) -> Tuple[List[str], List[str]]:
        """Leading comments plus a global options block must stay at the top of a Caddyfile"""
        i = 0
        while i < len(self.remainder) and (
            _is_blank(self.remainder[i]) or self.remainder[i].lstrip().startswith("#")
        ):
            i += 1
        if i >= len(self.remainder) or not _GLOBAL_OPTIONS.match(self.remainder[i]):
            return [], self.remainder

        depth = 0
        while i < len(self.remainder):
            depth += brace_delta(self.remainder[i])
            i += 1
            if depth <= 0:
                break
        return self.remainder[:i], self.remainder[i:]

    def render(self, position: str = "prepend") -> str:
        """Serialize with the domain's blocks at the requested position.

        ``prepend`` puts the block first (after a global options block, which
        Caddy requires to lead the file) so it wins over catch-all sites;
        ``append`` puts it last.
        """
        if position not in POSITIONS:
            raise ValueError(f"Unknown block position: {position}")

        rendered = [b.render() if not b.lines else "".join(_terminated(b.lines)) for b in self.blocks]
        section = "\n".join(rendered)

        if position == "append":
            rest = _terminated(_strip_trailing_blank(self.remainder))
            if not rest:
                return section
            return "".join(rest) + ("\n" + section if section else "")

        head, body = self._split_global_options()
        head = _terminated(_strip_trailing_blank(head))
        body = _terminated(_strip_leading_blank(body))
        parts = []
        if head:
            parts.append("".join(head))
        if section:
            parts.append(section)
        if body:
            parts.append("".join(body))
        return "\n".join(parts)

    def active_color(self, slots: Iterable[Slot]) -> Optional[Color]:
        """Which slot the file routes the domain to, if it can tell.

        Slot header directive first, then the upstream of the domain blocks
        (newest block last in the file wins), then any reverse_proxy line in the
        whole file.
        """
        slots = list(slots)
        for block in reversed(self.blocks):
            if block.color is not None:
                return block.color

        for block in reversed(self.blocks):
            text = "".join(block.lines) or block.render()
            for slot in slots:
                forms = upstream_forms(slot)
                if _mentions(text, forms[SwitchMode.service] + forms[SwitchMode.port]):
                    return slot.color

        text = self.text
        for slot in slots:
            forms = upstream_forms(slot)
            if _mentions(text, forms[SwitchMode.service] + forms[SwitchMode.port]):
                return slot.color
        return None

    def switch_mode(self, slots: Iterable[Slot]) -> SwitchMode:
        """Addressing mode the domain currently uses: service names or loopback ports"""
        slots = list(slots)
        scan = "".join("".join(b.lines) or b.render() for b in self.blocks) or self.text
        if any(_mentions(scan, upstream_forms(s)[SwitchMode.service]) for s in slots):
            return SwitchMode.service
        if any(_mentions(scan, upstream_forms(s)[SwitchMode.port]) for s in slots):
            return SwitchMode.port
        return SwitchMode.unknown

    def points_to(self, upstream: str) -> bool:
        """Exactly one domain block exists and it proxies to ``upstream``"""
        return len(self.blocks) == 1 and self.blocks[0].upstream == upstream


def rewrite_config_text(
    text: str,
    block: RouteBlock,
    position: str = "prepend",
    retarget_from: Optional[Iterable[str]] = None,
) -> Tuple[str, int]:
    """Return ``text`` with every block for ``block.domain`` replaced by ``block``.

    Applying it again to its own output changes nothing. ``retarget_from`` lists
    old upstream spellings to repoint at the new upstream elsewhere in the file.

    Returns:
        (new text, number of blocks removed)
    """
    table = Caddyfile.parse(text, block.domain, slot_header=block.slot_header)
    if retarget_from and block.upstream:
        moved = table.retarget(retarget_from, block.upstream)
        if moved:
            logger.debug(f"Retargeted {moved} reverse_proxy line(s) to {block.upstream}")
    removed = table.pin(block)
    return table.render(position), removed
