# =============================================================================
# Recursive Text Chunker
# =============================================================================
#
# Splits page text into overlapping windows for embedding.
#
# Splitting is delegated to langchain's RecursiveCharacterTextSplitter:
# it descends ("\n\n", "\n", ". ", " ", "") until pieces fit, merges them
# greedily up to chunk_size and carries up to chunk_overlap of trailing
# pieces into the next window. Separators stay at the start of the
# following piece.
#
# DESIGN DECISION: Length unit is configurable. "characters" (default) keeps
# window sizes predictable for mixed prose and tables; "tokens" measures
# with tiktoken cl100k_base, the embedding model's tokenizer. Either way,
# each chunk's token_count is the exact tiktoken count.
#
# DESIGN DECISION: Pages are split independently so every chunk has one
# page_number; chunk_index runs across the whole document from 0.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

import tiktoken
from langchain_text_splitters import RecursiveCharacterTextSplitter

from app.config import settings

logger = logging.getLogger(__name__)

DEFAULT_SEPARATORS: tuple[str, ...] = ("\n\n", "\n", ". ", " ", "")
TOKEN_ENCODING = "cl100k_base"


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ChunkResult:
    """A single chunk ready for embedding and storage."""

    content: str
    page_number: int  # 1-indexed page this chunk came from
    chunk_index: int  # 0-indexed position within the document
    token_count: int  # Exact token count (tiktoken)
    metadata: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Tiktoken Encoder — Cached Singleton
# ---------------------------------------------------------------------------

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding(TOKEN_ENCODING)
    return _encoder


def count_tokens(text: str) -> int:
    return len(_get_encoder().encode(text))


# ---------------------------------------------------------------------------
# Splitter
# ---------------------------------------------------------------------------


class RecursiveTextSplitter:
    """Validated front for RecursiveCharacterTextSplitter with a length unit."""

    def __init__(
        self,
        chunk_size: int = 512,
        chunk_overlap: int = 100,
        separators: Sequence[str] = DEFAULT_SEPARATORS,
        length_unit: str = "characters",
    ) -> None:
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError(
                f"chunk_overlap must be in [0, chunk_size), got {chunk_overlap} "
                f"for chunk_size {chunk_size}"
            )
        if length_unit not in ("characters", "tokens"):
            raise ValueError(
                f"length_unit must be 'characters' or 'tokens', got '{length_unit}'"
            )

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = tuple(separators)
        self.length_unit = length_unit

        if length_unit == "tokens":
            self._splitter = RecursiveCharacterTextSplitter.from_tiktoken_encoder(
                encoding_name=TOKEN_ENCODING,
                chunk_size=chunk_size,
                chunk_overlap=chunk_overlap,
                separators=list(self.separators),
            )
        else:
            self._splitter = RecursiveCharacterTextSplitter(
                chunk_size=chunk_size,
                chunk_overlap=chunk_overlap,
                length_function=len,
                separators=list(self.separators),
            )

    def split_text(self, text: str) -> list[str]:
        if not text or not text.strip():
            return []
        return [chunk for chunk in self._splitter.split_text(text) if chunk.strip()]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def chunk_pages(
    pages: Sequence[tuple[int, str]],
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
    length_unit: str | None = None,
) -> list[ChunkResult]:
    """
    Split each (page_number, text) pair independently and number the
    resulting chunks 0..n-1 across the whole document.

    Pipeline position: ingestion step 2 (parse → chunk → embed → store).
    """
    splitter = RecursiveTextSplitter(
        chunk_size=chunk_size or settings.chunk_size,
        chunk_overlap=settings.chunk_overlap if chunk_overlap is None else chunk_overlap,
        length_unit=length_unit or settings.chunk_length_unit,
    )

    results: list[ChunkResult] = []
    for page_number, text in pages:
        for content in splitter.split_text(text):
            results.append(ChunkResult(
                content=content,
                page_number=page_number,
                chunk_index=len(results),
                token_count=count_tokens(content),
                metadata={"char_length": len(content)},
            ))

    logger.info(
        "Chunked %d pages into %d chunks (size=%d %s, overlap=%d)",
        len(pages), len(results), splitter.chunk_size,
        splitter.length_unit, splitter.chunk_overlap,
    )
    return results
