"""Text chunking with overlap for RAG pipeline.

Implements token-window chunking. A token is a run of non-whitespace
characters together with the whitespace that follows it, so every chunk is
an exact slice of the source text and no content is ever dropped.
"""
import re
from typing import List, Optional, Tuple

import structlog

from docqa import config
from docqa.models import Chunk, ChunkingConfig, make_chunk_id

logger = structlog.get_logger()

TOKEN_PATTERN = re.compile(r"\S+\s*")


def token_spans(text: str) -> List[Tuple[int, int]]:
    """Return (start, end) character spans for each token of ``text``.

    Leading whitespace is attached to the first token.
    """
    spans = [m.span() for m in TOKEN_PATTERN.finditer(text)]
    if spans:
        spans[0] = (0, spans[0][1])
    return spans


def count_tokens(text: str) -> int:
    """Count tokens the same way the chunker does."""
    return len(TOKEN_PATTERN.findall(text))


class TextChunker:
    """Token-window chunker with overlap support."""

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Tokens per chunk (default from config)
            chunk_overlap: Tokens shared between neighbouring chunks (default from config)

        Raises:
            InvalidConfiguration: If overlap >= chunk size or sizes are negative
        """
        self.config = ChunkingConfig(
            target_size=config.CHUNK_SIZE if chunk_size is None else chunk_size,
            overlap=config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap,
        )

        logger.debug(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    @classmethod
    def from_config(cls, chunking: ChunkingConfig) -> "TextChunker":
        return cls(chunk_size=chunking.target_size, chunk_overlap=chunking.overlap)

    @property
    def chunk_size(self) -> int:
        return self.config.target_size

    @property
    def chunk_overlap(self) -> int:
        return self.config.overlap

    def chunk_text(self, text: str, source_document: str = "") -> List[Chunk]:
        """Split text into overlapping token windows.

        Windows hold ``chunk_size`` tokens and start ``chunk_size - chunk_overlap``
        tokens apart. The last window may be shorter and is always emitted.

        Args:
            text: Text to chunk
            source_document: Identifier of the document the text came from

        Returns:
            List of Chunk objects, sequence numbers starting at 0
        """
        spans = token_spans(text or "")
        if not spans:
            return []

        total_tokens = len(spans)
        step = self.config.step
        chunks = []
        start = 0

        while True:
            end = min(start + self.chunk_size, total_tokens)
            char_start = spans[start][0]
            char_end = spans[end - 1][1]
            sequence_number = len(chunks)

            chunks.append(
                Chunk(
                    id=make_chunk_id(source_document, sequence_number),
                    source_document=source_document,
                    sequence_number=sequence_number,
                    text=text[char_start:char_end],
                    token_count=end - start,
                    char_start=char_start,
                    char_end=char_end,
                )
            )

            if end >= total_tokens:
                break
            start += step

        logger.debug(
            "text_chunked",
            source_document=source_document,
            token_count=total_tokens,
            chunk_count=len(chunks),
        )

        return chunks

    def get_chunk_stats(self, chunks: List[Chunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of Chunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_tokens": 0,
                "avg_chunk_tokens": 0,
                "min_chunk_tokens": 0,
                "max_chunk_tokens": 0,
            }

        sizes = [c.token_count for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_tokens": sum(sizes),
            "avg_chunk_tokens": sum(sizes) // len(chunks),
            "min_chunk_tokens": min(sizes),
            "max_chunk_tokens": max(sizes),
            "overlap": self.chunk_overlap,
        }


def merge_chunks(chunks: List[Chunk]) -> str:
    """Rebuild the source text from its chunks, dropping the overlapping parts."""
    parts = []
    covered_until = 0
    for chunk in sorted(chunks, key=lambda c: c.sequence_number):
        skip = max(0, covered_until - chunk.char_start)
        parts.append(chunk.text[skip:])
        covered_until = max(covered_until, chunk.char_end)
    return "".join(parts)


def chunk(
    text: str,
    target_size: int,
    overlap: int,
    source_document: str = "",
) -> List[Chunk]:
    """Chunk text with explicit window parameters (convenience function)."""
    return TextChunker(chunk_size=target_size, chunk_overlap=overlap).chunk_text(
        text, source_document=source_document
    )
