"""Pydantic models for context assembly, chat and conversation sessions."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import SearchHitPayload


class ContextRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str
    session_id: Optional[str] = Field(default=None, alias="session_id")
    token_budget: Optional[int] = Field(default=None, alias="token_budget", ge=0)


class ContextBlockPayload(BaseModel):
    tier: str
    text: str
    tokens: int
    sources: List[str] = Field(default_factory=list)


class ContextResponsePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    context: str
    blocks: List[ContextBlockPayload] = Field(default_factory=list)
    usage: Dict[str, int] = Field(default_factory=dict)
    total_tokens: int = Field(alias="total_tokens")
    token_budget: int = Field(alias="token_budget")
    degraded: bool = False
    skipped: Dict[str, List[str]] = Field(default_factory=dict)
    retrieved: List[SearchHitPayload] = Field(default_factory=list)


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str
    session_id: Optional[str] = Field(default=None, alias="session_id")
    token_budget: Optional[int] = Field(default=None, alias="token_budget", ge=0)


class ChatResponsePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    answer: str
    available: bool = True
    reason: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="session_id")
    context_tokens: int = Field(default=0, alias="context_tokens")
    degraded: bool = False


class ConversationTurnPayload(BaseModel):
    role: str
    content: str
    timestamp: float = 0.0


class SessionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    messages: List[ConversationTurnPayload] = Field(default_factory=list)
    selected_document_ids: List[str] = Field(default_factory=list, alias="selected_document_ids")
    created_at: float = 0.0
    updated_at: float = 0.0


class SessionsResponsePayload(BaseModel):
    sessions: List[SessionPayload] = Field(default_factory=list)


class CreateSessionRequest(BaseModel):
    title: str = "New conversation"


class SelectionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_ids: List[str] = Field(default_factory=list, alias="document_ids")


class RebuildResponsePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    documents: int
    chunks: int


class StatsResponsePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    documents_observed: int = Field(alias="documents_observed")
    vocabulary_size: int = Field(alias="vocabulary_size")
    chunk_count: int = Field(alias="chunk_count")
    indexed_notes: int = Field(alias="indexed_notes")
    embedding_dim: int = Field(alias="embedding_dim")
    similarity_threshold: float = Field(alias="similarity_threshold")
