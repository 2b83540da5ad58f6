"""Conversation sessions stored as one JSON file per session."""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from errors import StorageWriteError
from models import ConversationTurn

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant")


@dataclass
class ConversationSession:
    id: str
    title: str
    messages: List[ConversationTurn] = field(default_factory=list)
    selected_document_ids: List[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def recent(self, limit: int) -> List[ConversationTurn]:
        if limit <= 0:
            return []
        return list(self.messages[-limit:])


class ConversationStore:
    """Sessions with ordered role-tagged messages and a per-session selection."""

    def __init__(self, root: Optional[Path] = None):
        base_dir = Path(root) if root else Path(__file__).resolve().parent / "storage" / "conversations"
        base_dir.mkdir(parents=True, exist_ok=True)
        self.sessions_dir = base_dir
        self._lock = threading.Lock()

    def create_session(self, title: str = "New conversation") -> ConversationSession:
        session = ConversationSession(id=uuid.uuid4().hex, title=(title or "").strip() or "New conversation")
        with self._lock:
            self._write(session)
        logger.info("Created conversation %s", session.id)
        return session

    def get_session(self, session_id: str) -> ConversationSession:
        path = self._path(session_id)
        if not path.exists():
            raise FileNotFoundError(f"Conversation not found: {session_id}")
        return self._read(path)

    def list_sessions(self) -> List[ConversationSession]:
        sessions: List[ConversationSession] = []
        for path in self.sessions_dir.glob("*.json"):
            try:
                sessions.append(self._read(path))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable conversation %s: %s", path.name, exc)
        return sorted(sessions, key=lambda s: -s.updated_at)

    def append_message(self, session_id: str, role: str, content: str) -> ConversationTurn:
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role}")
        turn = ConversationTurn(role=role, content=content)
        with self._lock:
            session = self.get_session(session_id)
            session.messages.append(turn)
            session.updated_at = turn.timestamp
            self._write(session)
        return turn

    def set_selection(self, session_id: str, document_ids: Iterable[str]) -> ConversationSession:
        """Replace the documents explicitly selected for a session, keeping first-seen order."""
        ordered: List[str] = []
        for document_id in document_ids:
            document_id = (document_id or "").strip().strip("/")
            if document_id and document_id not in ordered:
                ordered.append(document_id)
        with self._lock:
            session = self.get_session(session_id)
            session.selected_document_ids = ordered
            session.updated_at = time.time()
            self._write(session)
        return session

    def delete_session(self, session_id: str) -> bool:
        path = self._path(session_id)
        with self._lock:
            if not path.exists():
                return False
            path.unlink()
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _path(self, session_id: str) -> Path:
        safe = "".join(ch for ch in (session_id or "") if ch.isalnum() or ch in "-_")
        if not safe:
            raise FileNotFoundError(f"Conversation not found: {session_id}")
        return self.sessions_dir / f"{safe}.json"

    def _read(self, path: Path) -> ConversationSession:
        with open(path, "r", encoding="utf-8") as handle:
            raw: Dict = json.load(handle)
        messages = [
            ConversationTurn(
                role=str(item.get("role", "user")),
                content=str(item.get("content", "")),
                timestamp=float(item.get("timestamp", 0.0)),
            )
            for item in raw.get("messages", [])
            if isinstance(item, dict)
        ]
        return ConversationSession(
            id=str(raw.get("id") or path.stem),
            title=str(raw.get("title") or "New conversation"),
            messages=messages,
            selected_document_ids=[str(d) for d in raw.get("selected_document_ids", [])],
            created_at=float(raw.get("created_at", 0.0)),
            updated_at=float(raw.get("updated_at", 0.0)),
        )

    def _write(self, session: ConversationSession):
        payload = {
            "id": session.id,
            "title": session.title,
            "messages": [
                {"role": m.role, "content": m.content, "timestamp": m.timestamp} for m in session.messages
            ],
            "selected_document_ids": session.selected_document_ids,
            "created_at": session.created_at,
            "updated_at": session.updated_at,
        }
        path = self._path(session.id)
        try:
            with open(path, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
        except OSError as exc:
            raise StorageWriteError(str(path), exc) from exc
