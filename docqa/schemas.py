"""Pydantic models for the OpenAI-compatible wire format."""
from typing import List, Optional

from pydantic import BaseModel, Field


class EmbeddingItem(BaseModel):
    index: int
    embedding: List[float]


class EmbeddingResponse(BaseModel):
    """Response body of ``POST /embeddings``."""

    data: List[EmbeddingItem]
    model: Optional[str] = None

    def ordered_vectors(self) -> List[List[float]]:
        """Vectors sorted by their ``index`` field (servers may reorder)."""
        return [item.embedding for item in sorted(self.data, key=lambda i: i.index)]


class ChatMessage(BaseModel):
    role: str
    content: Optional[str] = None


class ChatChoice(BaseModel):
    index: int = 0
    message: ChatMessage
    finish_reason: Optional[str] = None


class ChatCompletionResponse(BaseModel):
    """Response body of ``POST /chat/completions`` (non-streaming)."""

    model: Optional[str] = None
    choices: List[ChatChoice] = Field(min_length=1)

    @property
    def content(self) -> str:
        return self.choices[0].message.content or ""


class ChatDelta(BaseModel):
    content: Optional[str] = None


class ChatChunkChoice(BaseModel):
    index: int = 0
    delta: ChatDelta = Field(default_factory=ChatDelta)
    finish_reason: Optional[str] = None


class ChatCompletionChunk(BaseModel):
    """One server-sent event of a streamed chat completion."""

    choices: List[ChatChunkChoice] = Field(default_factory=list)

    @property
    def content(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].delta.content or ""


class ModelInfo(BaseModel):
    id: str


class ModelList(BaseModel):
    """Response body of ``GET /models``."""

    data: List[ModelInfo] = Field(default_factory=list)
