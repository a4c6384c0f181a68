"""Core data types shared by the chunker, index and orchestrator."""
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from docqa import config
from docqa.errors import InvalidConfiguration

EmbeddingVector = List[float]

# Fixed namespace so chunk ids are reproducible across processes and machines
CHUNK_ID_NAMESPACE = uuid.UUID("6f1c2a8e-3b7d-5e90-9a41-d2c5b8e7f013")

CONTEXT_SYSTEM_TEMPLATE = """You are a helpful assistant answering questions about the user's documents.

CONTEXT:
{context}

INSTRUCTIONS:
- Answer using only the context above
- If the context does not contain the answer, say that you don't know
- Be concise"""

NO_CONTEXT_SYSTEM_TEMPLATE = """You are a helpful assistant answering questions about the user's documents.

No relevant context was found in the indexed documents for this question.

INSTRUCTIONS:
- Tell the user that no relevant context was found in their documents
- Do not invent an answer"""


def make_chunk_id(source_document: str, sequence_number: int) -> str:
    """Deterministic chunk id derived from its source and position."""
    return str(uuid.uuid5(CHUNK_ID_NAMESPACE, f"{source_document}:{sequence_number}"))


@dataclass(frozen=True)
class Chunk:
    """A contiguous slice of a source document, sized for embedding."""

    id: str
    source_document: str
    sequence_number: int
    text: str
    token_count: int
    char_start: int = 0
    char_end: int = 0


@dataclass(frozen=True)
class IndexRecord:
    """A chunk with its embedding, as stored in one collection."""

    chunk: Chunk
    vector: EmbeddingVector
    collection: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.chunk.id


@dataclass(frozen=True)
class RetrievalResult:
    """A single retrieved chunk with its similarity score and 1-based rank."""

    chunk: Chunk
    score: float
    rank: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def source(self) -> str:
        """Get a formatted source string for display."""
        return f"{self.chunk.source_document}#{self.chunk.sequence_number}"


@dataclass(frozen=True)
class ChunkingConfig:
    """Chunk window parameters, measured in tokens."""

    target_size: int = config.CHUNK_SIZE
    overlap: int = config.CHUNK_OVERLAP

    def __post_init__(self):
        if self.target_size <= 0:
            raise InvalidConfiguration(
                f"Chunk size must be positive, got {self.target_size}"
            )
        if self.overlap < 0:
            raise InvalidConfiguration(
                f"Overlap must not be negative, got {self.overlap}"
            )
        if self.overlap >= self.target_size:
            raise InvalidConfiguration(
                f"Overlap ({self.overlap}) must be less than "
                f"chunk size ({self.target_size})"
            )

    @property
    def step(self) -> int:
        return self.target_size - self.overlap


@dataclass
class IngestReport:
    """Outcome of ingesting one document."""

    source_id: str
    collection: str
    chunks_written: int
    stale_chunks_removed: int = 0


@dataclass
class BatchIngestReport:
    """Per-document outcome counts for a bulk ingestion run."""

    documents_succeeded: int = 0
    documents_failed: int = 0
    documents_skipped: int = 0
    chunks_written: int = 0
    failures: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def documents_total(self) -> int:
        return self.documents_succeeded + self.documents_failed + self.documents_skipped


@dataclass(frozen=True)
class AugmentedPrompt:
    """User query plus retrieved context, in descending-score order."""

    context: List[str]
    query: str

    @property
    def has_context(self) -> bool:
        return bool(self.context)

    def render_context(self) -> str:
        return "\n\n".join(
            f"[Source {i}]\n{text.strip()}" for i, text in enumerate(self.context, 1)
        )

    def to_messages(self) -> List[Dict[str, str]]:
        """Render the prompt as chat messages (system + user)."""
        if self.context:
            system_content = CONTEXT_SYSTEM_TEMPLATE.format(context=self.render_context())
        else:
            system_content = NO_CONTEXT_SYSTEM_TEMPLATE

        return [
            {"role": "system", "content": system_content},
            {"role": "user", "content": self.query},
        ]


@dataclass
class QueryAnswer:
    """Generation output returned unmodified, with the prompt and sources used."""

    prompt: AugmentedPrompt
    answer: str
    results: List[RetrievalResult] = field(default_factory=list)
    model: Optional[str] = None


@dataclass
class SourceDocument:
    """Already-extracted plain text of one document."""

    source_id: str
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class StreamingAnswer:
    """Streamed generation output: a finite, single-use sequence of text fragments."""

    def __init__(
        self,
        prompt: AugmentedPrompt,
        results: List[RetrievalResult],
        fragments: AsyncIterator[str],
    ):
        self.prompt = prompt
        self.results = results
        self._fragments = fragments
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("Streaming answer can only be consumed once")
        self._consumed = True
        return self._fragments.__aiter__()
