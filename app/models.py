from __future__ import annotations

from typing import Annotated, Optional, List
from pydantic import BaseModel, StringConstraints, Field

class ChatRequest(BaseModel):
    question: Annotated[
        str,
        StringConstraints(strip_whitespace=True, min_length=1, max_length=4000)
    ] = Field(
        description="The user's question, answered from the ingested library.",
        json_schema_extra={"example": "What is the meaning of the heart sutra?"}
    )

class ChatResponse(BaseModel):
    answer: str = Field(
        description="Formatted answer (may contain basic HTML), or a fixed fallback message.",
        json_schema_extra={"example": "**Assistant:**\n\nThe heart sutra teaches ..."}
    )

class IngestDocument(BaseModel):
    text: Annotated[str, StringConstraints(min_length=1)] = Field(
        description="Raw document text to chunk and index."
    )
    source: Annotated[str, StringConstraints(min_length=1)] = Field(
        description="Unique source identifier, usually the page URL.",
        json_schema_extra={"example": "https://example.org/posts/42"}
    )

class IngestRequest(BaseModel):
    paths: Optional[List[str]] = Field(
        default=None,
        description="File or directory paths (inside docs_dir) to ingest.",
        json_schema_extra={"example": ["data/docs/sample.md"]}
    )
    documents: List[IngestDocument] = Field(
        default_factory=list,
        description="Documents posted inline, e.g. by a feed importer.",
    )

class IngestResponse(BaseModel):
    ingested_chunks: int = Field(
        description="Number of document chunks embedded and stored.",
        json_schema_extra={"example": 12}
    )

class PassageOut(BaseModel):
    content: str
    source: str
    score: Optional[float] = None

# --- Telegram webhook (only the fields we read) ---

class TelegramChat(BaseModel):
    id: int

class TelegramMessage(BaseModel):
    message_id: int
    chat: TelegramChat
    text: Optional[str] = None
    reply_to_message: Optional[TelegramMessage] = None

class TelegramUpdate(BaseModel):
    update_id: int
    message: Optional[TelegramMessage] = None

TelegramMessage.model_rebuild()
