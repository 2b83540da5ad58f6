"""Shared backend models for the journal context service."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class NoteKind(str, Enum):
    NOTE = "note"
    FOLDER = "folder"


def _timestamp() -> float:
    return time.time()


@dataclass
class NoteRecord:
    """Represents a stored note or folder."""

    id: str
    title: str
    kind: NoteKind
    content: str = ""
    parent_id: Optional[str] = None
    children: List[str] = field(default_factory=list)
    pinned: bool = False
    created_at: float = field(default_factory=_timestamp)
    updated_at: float = field(default_factory=_timestamp)


@dataclass(frozen=True)
class ConversationTurn:
    """One role-tagged message in a conversation session."""

    role: str
    content: str
    timestamp: float = field(default_factory=_timestamp)


# API payloads

class NoteNodePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    kind: NoteKind = Field(alias="type")
    children: List[str] = Field(default_factory=list)
    pinned: bool = False


class NoteContentPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    note_id: str = Field(alias="note_id")
    title: Optional[str] = None
    content: str
    pinned: bool = False
    updated_at: float = 0.0


class SearchHitPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    note_id: str = Field(alias="note_id")
    chunk_id: str = Field(alias="chunk_id")
    ordinal: int = 0
    text: str
    score: float


class SearchResponsePayload(BaseModel):
    results: List[SearchHitPayload] = Field(default_factory=list)


class NotesResponsePayload(BaseModel):
    notes: List[NoteNodePayload] = Field(default_factory=list)


class CreateFolderResponsePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    folder_id: str = Field(alias="folder_id")
    folder: NoteNodePayload
    success: bool = True


# Request payloads

class SearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str
    top_k: Optional[int] = Field(default=None, alias="top_k", ge=1, le=100)


class UpdateNoteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    note_id: str = Field(alias="note_id")
    content: str
    parent_id: Optional[str] = Field(default=None, alias="parent_id")


class CreateNoteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    note_id: str = Field(alias="note_id")
    title: str
    content: str = ""
    parent_id: Optional[str] = Field(default=None, alias="parent_id")


class CreateFolderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    folder_path: str = Field(alias="folder_path")


class DeleteNoteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    note_id: str = Field(alias="note_id")


class PinRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    note_id: str = Field(alias="note_id")
    pinned: bool = True
