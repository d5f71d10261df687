"""
Document Block Matcher

Locates the passage of an FAQ document that backs a bot answer.

Blocks use the Notion shape (``{"id", "type", <type>: {"rich_text": [...]}}``)
with already-fetched nested blocks under ``"children"``. The tree is walked
with an explicit depth bound and flattened to path/text entries; the best
containing block wins and its top-level ancestor is reported, since
toggles and headings are the unit an edit replaces.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

DEFAULT_MAX_DEPTH = 3

_WHITESPACE = re.compile(r"\s+")


@dataclass
class BlockEntry:
    """One block of a flattened document tree"""
    path: Tuple[str, ...]  # ancestor ids from top level down to this block
    block_id: str
    block_type: str
    text: str

    @property
    def depth(self) -> int:
        return len(self.path) - 1

    @property
    def top_level_id(self) -> str:
        return self.path[0]


@dataclass
class BlockMatch:
    """Best match for a set of snippets"""
    block_id: str  # top-level ancestor, the block to edit
    matched_block_id: str
    matched_text: str
    snippet: str
    score: float
    depth: int


def normalize_text(text: Optional[str]) -> str:
    """Lowercase and collapse whitespace"""
    return _WHITESPACE.sub(" ", (text or "").lower()).strip()


def block_text(block: Dict[str, Any]) -> str:
    """Plain text of a block's rich text"""
    block_type = block.get("type", "")
    content = block.get(block_type) or {}
    if not isinstance(content, dict):
        return ""
    rich_text = content.get("rich_text") or content.get("text") or []
    return "".join(part.get("plain_text") or part.get("text", {}).get("content", "") for part in rich_text)


def flatten_blocks(blocks: Iterable[Dict[str, Any]], max_depth: int = DEFAULT_MAX_DEPTH) -> List[BlockEntry]:
    """
    Flatten a block tree in document order.

    Depth 0 is the top level; children deeper than ``max_depth`` are ignored.
    """
    entries: List[BlockEntry] = []
    stack: List[Tuple[Dict[str, Any], Tuple[str, ...]]] = [
        (block, ()) for block in reversed(list(blocks or []))
    ]

    while stack:
        block, parent_path = stack.pop()
        block_id = block.get("id")
        if not block_id:
            continue
        path = parent_path + (block_id,)
        entries.append(
            BlockEntry(
                path=path,
                block_id=block_id,
                block_type=block.get("type", ""),
                text=block_text(block),
            )
        )
        if len(path) - 1 < max_depth:
            for child in reversed(block.get("children") or []):
                stack.append((child, path))

    return entries


def match_block(
    blocks: Iterable[Dict[str, Any]],
    snippets: Iterable[str],
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Optional[BlockMatch]:
    """
    Find the block that best contains one of ``snippets``.

    Score is ``len(snippet) / len(block text)`` over normalized text, so a
    block that is mostly the snippet beats a long block that mentions it.
    Ties keep the earliest block in document order.

    Returns:
        BlockMatch naming the top-level ancestor, or None
    """
    needles = [n for n in (normalize_text(s) for s in snippets or []) if n]
    if not needles:
        return None

    best: Optional[BlockMatch] = None
    for entry in flatten_blocks(blocks, max_depth=max_depth):
        haystack = normalize_text(entry.text)
        if not haystack:
            continue
        for needle in needles:
            if needle not in haystack:
                continue
            score = len(needle) / len(haystack)
            if best is None or score > best.score:
                best = BlockMatch(
                    block_id=entry.top_level_id,
                    matched_block_id=entry.block_id,
                    matched_text=entry.text,
                    snippet=needle,
                    score=score,
                    depth=entry.depth,
                )

    return best
