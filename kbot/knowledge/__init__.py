"""
Knowledge

FAQ documents and the directory of knowledge areas that own them.
"""

from .block_matcher import match_block, flatten_blocks, normalize_text, BlockMatch, BlockEntry
from .notion import (
    NotionDocumentStore,
    DocumentStoreError,
    FormatStyle,
    BlockLocation,
    extract_page_id,
)
from .cache import DocumentCache
from .directory import KnowledgeDirectory, KnowledgeDomain, DirectoryError

__all__ = [
    "match_block",
    "flatten_blocks",
    "normalize_text",
    "BlockMatch",
    "BlockEntry",
    "NotionDocumentStore",
    "DocumentStoreError",
    "FormatStyle",
    "BlockLocation",
    "extract_page_id",
    "DocumentCache",
    "KnowledgeDirectory",
    "KnowledgeDomain",
    "DirectoryError",
]
