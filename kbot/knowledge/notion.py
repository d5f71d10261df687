"""
Notion Document Store

Async client for the Notion REST API covering what the FAQ lifecycle needs:
reading a page as text, detecting its Q&A layout, appending entries,
locating and rewriting the block behind an answer, and leaving audit
comments.

Usage:
    store = NotionDocumentStore(api_key="secret_...")
    content = await store.fetch_content("https://notion.so/FAQ-0123...")
    url = await store.append_entry(page_id, "How do refunds work?", "...", style)
    await store.close()
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import httpx

from .block_matcher import DEFAULT_MAX_DEPTH, block_text, match_block

logger = logging.getLogger("kbot.knowledge.notion")

NOTION_API_URL = "https://api.notion.com/v1"
RICH_TEXT_LIMIT = 2000  # Notion rejects longer text objects

_RAW_ID = re.compile(r"^([a-f0-9]{32})$", re.IGNORECASE)
_UUID = re.compile(r"^([a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12})$", re.IGNORECASE)
_URL_ID = re.compile(r"([a-f0-9]{32})(?:[?#]|$)", re.IGNORECASE)
_URL_UUID = re.compile(r"([a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12})", re.IGNORECASE)

_QUESTIONISH = re.compile(r"^(q|question)[:\s]", re.IGNORECASE)
_ANSWERISH = re.compile(r"^(a|answer)[:\s]", re.IGNORECASE)
_HEADINGS = ("heading_1", "heading_2", "heading_3")


class DocumentStoreError(Exception):
    """Error reading or writing a Notion document."""
    pass


@dataclass
class FormatStyle:
    """Q&A layout of an existing FAQ page"""
    layout: str = "flat"  # "flat" or "toggle"
    question_block_type: str = "heading_3"
    answer_block_type: str = "paragraph"  # "paragraph" or "toggle_child"
    question_prefix: str = "Q: "
    answer_prefix: str = "A: "


@dataclass
class BlockLocation:
    """Block found by content search"""
    page_id: str
    block_id: str
    block_url: str
    matched_text: str


def extract_page_id(ref: Optional[str]) -> Optional[str]:
    """
    Extract a 32-hex page id from a Notion URL or id.

    Accepts a raw id, a dashed UUID, or a URL ending in either form.

    Returns:
        The undashed id, or None if ``ref`` holds no id
    """
    if not ref:
        return None
    text = ref.strip()

    match = _RAW_ID.match(text)
    if match:
        return match.group(1).lower()

    match = _UUID.match(text)
    if match:
        return match.group(1).replace("-", "").lower()

    match = _URL_ID.search(text)
    if match:
        return match.group(1).lower()

    match = _URL_UUID.search(text)
    if match:
        return match.group(1).replace("-", "").lower()

    return None


def block_url(page_id: Optional[str], block_id: str) -> str:
    raw_block = block_id.replace("-", "")
    if page_id:
        return f"https://notion.so/{page_id.replace('-', '')}#{raw_block}"
    return f"https://notion.so/{raw_block}"


def page_url(page_id: str) -> str:
    return f"https://notion.so/{page_id.replace('-', '')}"


def _rich_text(content: str) -> List[Dict[str, Any]]:
    chunks = [content[i:i + RICH_TEXT_LIMIT] for i in range(0, len(content), RICH_TEXT_LIMIT)] or [""]
    return [{"type": "text", "text": {"content": chunk}} for chunk in chunks]


def _text_block(block_type: str, content: str) -> Dict[str, Any]:
    return {"object": "block", "type": block_type, block_type: {"rich_text": _rich_text(content)}}


def block_to_markdown(block: Dict[str, Any]) -> str:
    """Render one block as a markdown-ish line"""
    text = block_text(block)
    block_type = block.get("type", "")

    if block_type == "heading_1":
        return f"# {text}"
    if block_type == "heading_2":
        return f"## {text}"
    if block_type == "heading_3":
        return f"### {text}"
    if block_type == "bulleted_list_item":
        return f"- {text}"
    if block_type == "numbered_list_item":
        return f"1. {text}"
    if block_type in ("quote", "toggle"):
        return f"> {text}"
    if block_type == "code":
        return f"```\n{text}\n```"
    if block_type == "divider":
        return "---"
    if block_type == "callout":
        emoji = ((block.get("callout") or {}).get("icon") or {}).get("emoji", "")
        return f"{emoji} {text}".strip()
    return text


def render_blocks(blocks: Iterable[Dict[str, Any]], indent: int = 0) -> List[str]:
    lines = []
    pad = "  " * indent
    for block in blocks:
        line = block_to_markdown(block)
        if line:
            lines.append("\n".join(pad + part for part in line.split("\n")))
        if block.get("children"):
            lines.extend(render_blocks(block["children"], indent + 1))
    return lines


def detect_format(blocks: List[Dict[str, Any]]) -> FormatStyle:
    """Infer the Q&A layout from the most recent question-looking block."""
    style = FormatStyle()

    for i in range(len(blocks) - 1, -1, -1):
        block = blocks[i]
        text = block_text(block).strip()
        if not text or not _QUESTIONISH.match(text):
            continue

        if block.get("type") == "toggle":
            style.layout = "toggle"
            style.question_block_type = "toggle"
            style.answer_block_type = "toggle_child"
            prefix = re.match(r"^q:\s*", text, re.IGNORECASE)
            if prefix:
                style.question_prefix = prefix.group(0)
            return style

        if block.get("type") in _HEADINGS:
            style.question_block_type = block["type"]
            for follower in blocks[i + 1:]:
                if follower.get("type") == "divider":
                    continue
                follower_text = block_text(follower).strip()
                if not follower_text:
                    continue
                if _ANSWERISH.match(follower_text) and follower.get("type") == "paragraph":
                    prefix = re.match(r"^a:\s*", follower_text, re.IGNORECASE)
                    if prefix:
                        style.answer_prefix = prefix.group(0)
                break
            return style

    return style


class NotionDocumentStore:
    """
    Async Notion API client for FAQ pages.

    The HTTP client is created lazily on first use and reused; pass a
    ``transport`` to route requests elsewhere (e.g. ``httpx.MockTransport``).
    """

    def __init__(
        self,
        api_key: str,
        api_version: str = "2022-06-28",
        base_url: str = NOTION_API_URL,
        max_depth: int = DEFAULT_MAX_DEPTH,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key
        self._api_version = api_version
        self._base_url = base_url
        self._max_depth = max_depth
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Notion-Version": self._api_version,
                    "Content-Type": "application/json",
                },
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        client = self._ensure_client()
        try:
            response = await client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            raise DocumentStoreError(f"Notion {method} {path} failed: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            raise DocumentStoreError(f"Notion {method} {path} returned {response.status_code}: {detail}")

        return response.json() if response.content else {}

    @staticmethod
    def _require_page_id(ref: str) -> str:
        page_id = extract_page_id(ref)
        if not page_id:
            raise DocumentStoreError(f"Invalid Notion page reference: {ref}")
        return page_id

    async def list_children(self, block_id: str) -> List[Dict[str, Any]]:
        """All direct children of a block or page, following pagination"""
        results: List[Dict[str, Any]] = []
        cursor = None
        while True:
            params = {"page_size": 100}
            if cursor:
                params["start_cursor"] = cursor
            data = await self._request("GET", f"/blocks/{block_id}/children", params=params)
            results.extend(data.get("results", []))
            if not data.get("has_more"):
                return results
            cursor = data.get("next_cursor")

    async def fetch_tree(self, block_id: str, depth: int = 0) -> List[Dict[str, Any]]:
        """Children of ``block_id`` with nested children attached up to ``max_depth``"""
        blocks = await self.list_children(block_id)
        if depth >= self._max_depth:
            return blocks
        for block in blocks:
            if block.get("has_children") and block.get("type") != "child_page":
                try:
                    block["children"] = await self.fetch_tree(block["id"], depth + 1)
                except DocumentStoreError as e:
                    logger.warning("Skipping children of %s: %s", block["id"][:8], e)
        return blocks

    async def fetch_content(self, ref: str) -> str:
        """Page content as markdown-ish text"""
        page_id = self._require_page_id(ref)
        blocks = await self.fetch_tree(page_id)
        content = "\n\n".join(render_blocks(blocks))
        logger.info("Fetched page %s: %d blocks, %d chars", page_id[:8], len(blocks), len(content))
        return content

    async def analyze_format(self, ref: str) -> FormatStyle:
        """Detect the page's Q&A layout; defaults to flat headings on failure."""
        try:
            page_id = self._require_page_id(ref)
            blocks = await self.list_children(page_id)
        except DocumentStoreError as e:
            logger.warning("Format analysis failed, using defaults: %s", e)
            return FormatStyle()

        style = detect_format(blocks)
        logger.info(
            "FAQ style for %s: layout=%s question=%s", page_id[:8], style.layout, style.question_block_type
        )
        return style

    async def append_entry(
        self,
        ref: str,
        question: str,
        answer: str,
        style: Optional[FormatStyle] = None,
    ) -> str:
        """
        Append a Q&A entry after a divider, matching the page's layout.

        Returns:
            URL of the new question block
        """
        page_id = self._require_page_id(ref)
        style = style or FormatStyle()

        children = [{"object": "block", "type": "divider", "divider": {}}]
        if style.layout == "toggle":
            toggle = _text_block("toggle", f"{style.question_prefix}{question}")
            toggle["toggle"]["children"] = [_text_block("paragraph", f"{style.answer_prefix}{answer}")]
            children.append(toggle)
        else:
            heading = style.question_block_type if style.question_block_type in _HEADINGS else "heading_3"
            children.append(_text_block(heading, f"{style.question_prefix}{question}"))
            children.append(_text_block("paragraph", f"{style.answer_prefix}{answer}"))

        data = await self._request("PATCH", f"/blocks/{page_id}/children", json={"children": children})
        created = data.get("results", [])
        question_block = next((b for b in created if b.get("type") != "divider"), created[0] if created else None)
        if not question_block:
            raise DocumentStoreError("Notion append returned no blocks")

        url = block_url(page_id, question_block["id"])
        logger.info("Appended FAQ entry to %s: %s", page_id[:8], url)
        return url

    async def find_block(self, ref: str, snippets: Iterable[str]) -> Optional[BlockLocation]:
        """Locate the top-level block containing one of ``snippets``."""
        page_id = self._require_page_id(ref)
        snippets = [s for s in snippets or [] if s and s.strip()]
        if not snippets:
            logger.warning("No snippets to search for in %s", page_id[:8])
            return None

        blocks = await self.fetch_tree(page_id)
        match = match_block(blocks, snippets, max_depth=self._max_depth)
        if match is None:
            logger.info("No block in %s matched %d snippet(s)", page_id[:8], len(snippets))
            return None

        location = BlockLocation(
            page_id=page_id,
            block_id=match.block_id,
            block_url=block_url(page_id, match.block_id),
            matched_text=match.matched_text,
        )
        logger.info("Matched block %s (depth %d, score %.2f)", match.block_id[:8], match.depth, match.score)
        return location

    async def update_block(self, block_id: str, text: str) -> str:
        """
        Replace a block's answer content.

        Toggles get their children replaced by one paragraph per blank-line
        separated chunk; other blocks get their rich text replaced.

        Returns:
            URL of the updated block
        """
        if not block_id:
            raise DocumentStoreError("No block id provided")

        block = await self._request("GET", f"/blocks/{block_id}")
        block_type = block.get("type", "paragraph")

        if block_type == "toggle":
            for child in await self.list_children(block_id):
                await self._request("DELETE", f"/blocks/{child['id']}")
            paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]
            await self._request(
                "PATCH",
                f"/blocks/{block_id}/children",
                json={"children": [_text_block("paragraph", p) for p in paragraphs]},
            )
        else:
            await self._request("PATCH", f"/blocks/{block_id}", json={block_type: {"rich_text": _rich_text(text)}})

        page_id = await self._owning_page(block)
        url = block_url(page_id, block_id)
        logger.info("Updated block %s: %s", block_id[:8], url)
        return url

    async def _owning_page(self, block: Dict[str, Any]) -> Optional[str]:
        parent = block.get("parent") or {}
        if parent.get("type") == "page_id":
            return parent["page_id"]
        if parent.get("type") == "block_id":
            try:
                grandparent = await self._request("GET", f"/blocks/{parent['block_id']}")
            except DocumentStoreError:
                return None
            gp_parent = grandparent.get("parent") or {}
            if gp_parent.get("type") == "page_id":
                return gp_parent["page_id"]
        return None

    async def annotate(self, block_id: str, text: str) -> Optional[str]:
        """
        Leave a comment on a block.

        Returns:
            Comment id, or None when there is nothing to post
        """
        if not block_id or not text or not text.strip():
            return None
        data = await self._request(
            "POST",
            "/comments",
            json={"parent": {"block_id": block_id}, "rich_text": _rich_text(text)},
        )
        logger.info("Commented on block %s", block_id[:8])
        return data.get("id")
