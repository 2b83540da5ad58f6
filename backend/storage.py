"""Filesystem-backed journal entries and folders.

Each entry or folder is one JSON file under the notes directory. Ids are
path-style (`travel/alps`) and map to file stems with `/` replaced by `__`.
Entries and folders can be pinned so the context builder always includes them.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from errors import StorageWriteError
from models import NoteKind, NoteNodePayload, NoteRecord, NotesResponsePayload

logger = logging.getLogger(__name__)


class NoteStorage:
    """Local JSON storage with hierarchical helpers."""

    def __init__(self, root: Optional[Path] = None):
        base_dir = Path(root) if root else Path(__file__).resolve().parent / "storage" / "notes"
        base_dir.mkdir(parents=True, exist_ok=True)
        self.notes_dir = base_dir

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get_tree(self) -> NotesResponsePayload:
        records = self._load_all_records()
        nodes = {rid: self._to_node(record) for rid, record in records.items()}

        # Children are derived from parent ids; stored lists may be stale.
        for node in nodes.values():
            node.children = []
        for record in records.values():
            if record.parent_id and record.parent_id in nodes:
                nodes[record.parent_id].children.append(record.id)

        for node in nodes.values():
            node.children = sorted(set(node.children), key=lambda cid: nodes[cid].title.lower())

        all_nodes = sorted(nodes.values(), key=lambda n: n.title.lower())
        return NotesResponsePayload(notes=all_nodes)

    def list_notes(self) -> List[NoteRecord]:
        records = self._load_all_records()
        return sorted(
            (record for record in records.values() if record.kind == NoteKind.NOTE),
            key=lambda record: record.id,
        )

    def get_note(self, note_id: str) -> NoteRecord:
        normalized = self._normalize_id(note_id)
        for path, kind in self._candidate_paths(normalized):
            if path.exists():
                return self._read_record(path, normalized, kind)
        raise FileNotFoundError(f"Note not found: {note_id}")

    def save_note_content(
        self, note_id: str, content: str, parent_id: Optional[str] = None, title: Optional[str] = None
    ) -> Tuple[NoteRecord, bool]:
        normalized = self._normalize_id(note_id)
        if not normalized:
            raise ValueError("Note id is empty")
        try:
            record = self.get_note(normalized)
            is_new = False
        except FileNotFoundError:
            record = NoteRecord(
                id=normalized,
                title=title or self._title_from_id(normalized),
                kind=NoteKind.NOTE,
            )
            is_new = True

        if record.kind == NoteKind.FOLDER:
            raise ValueError(f"Cannot write content to folder: {note_id}")

        record.content = content
        if title:
            record.title = title
        record.parent_id = (
            self._normalize_id(parent_id) if parent_id else record.parent_id or self._derive_parent_id(normalized)
        )
        record.updated_at = time.time()

        self._write_record(record)
        self._ensure_parent_link(record)
        return record, is_new

    def create_folder(self, folder_path: str) -> Tuple[NoteRecord, bool]:
        normalized = self._normalize_id(folder_path)
        if not normalized:
            raise ValueError("Folder path is empty")
        try:
            folder = self.get_note(normalized)
            is_new = False
        except FileNotFoundError:
            folder = NoteRecord(id=normalized, title=self._title_from_id(normalized), kind=NoteKind.FOLDER)
            is_new = True

        if folder.kind != NoteKind.FOLDER:
            raise ValueError(f"A note already exists at {folder_path}")

        folder.parent_id = self._derive_parent_id(normalized)
        folder.updated_at = time.time()

        self._write_record(folder)
        self._ensure_parent_link(folder)
        return folder, is_new

    def delete_item(self, note_id: str) -> List[str]:
        """Delete a note or a folder with everything below it; returns the deleted ids."""
        normalized = self._normalize_id(note_id)
        records = self._load_all_records()
        if normalized not in records:
            raise FileNotFoundError(f"Note or folder not found: {note_id}")

        targets = {rid for rid in self._collect_descendants(normalized, records) if rid in records}

        for record in records.values():
            if record.id in targets or not record.children:
                continue
            remaining = [cid for cid in record.children if cid not in targets]
            if remaining != record.children:
                record.children = remaining
                self._write_record(record)

        deleted_ids: List[str] = []
        for target_id in sorted(targets):
            for path, _ in self._candidate_paths(target_id):
                if path.exists():
                    path.unlink()
            deleted_ids.append(target_id)

        logger.info("Deleted %s (%d item(s))", normalized, len(deleted_ids))
        return deleted_ids

    # ------------------------------------------------------------------
    # Pins
    # ------------------------------------------------------------------
    def set_pinned(self, note_id: str, pinned: bool) -> NoteRecord:
        record = self.get_note(note_id)
        if record.pinned != pinned:
            record.pinned = pinned
            record.updated_at = time.time()
            self._write_record(record)
        return record

    def pinned_notes(self) -> List[NoteRecord]:
        """Directly pinned entries, most recently modified first."""
        records = self._load_all_records().values()
        pinned = [r for r in records if r.pinned and r.kind == NoteKind.NOTE]
        return sorted(pinned, key=lambda r: (-r.updated_at, r.id))

    def pinned_folders(self) -> List[NoteRecord]:
        records = self._load_all_records().values()
        return sorted((r for r in records if r.pinned and r.kind == NoteKind.FOLDER), key=lambda r: r.id)

    def notes_in_folder(self, folder_id: str) -> List[NoteRecord]:
        """Every entry below a folder, at any depth, most recently modified first."""
        normalized = self._normalize_id(folder_id)
        records = self._load_all_records()
        if normalized not in records:
            return []
        descendants = set(self._collect_descendants(normalized, records))
        descendants.discard(normalized)
        notes = [records[rid] for rid in descendants if rid in records and records[rid].kind == NoteKind.NOTE]
        return sorted(notes, key=lambda r: (-r.updated_at, r.id))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _normalize_id(self, raw_id: str) -> str:
        return (raw_id or "").strip().strip("/")

    def _safe_stem(self, note_id: str) -> str:
        return self._normalize_id(note_id).replace("/", "__")

    def _derive_parent_id(self, note_id: str) -> Optional[str]:
        normalized = self._normalize_id(note_id)
        if "/" not in normalized:
            return None
        return normalized.rsplit("/", 1)[0]

    def _title_from_id(self, note_id: str) -> str:
        leaf = self._normalize_id(note_id).rsplit("/", 1)[-1]
        return leaf.replace("_", " ").strip() or "Untitled"

    def _candidate_paths(
        self, note_id: str, kind: Optional[NoteKind] = None
    ) -> List[Tuple[Path, NoteKind]]:
        stem = self._safe_stem(note_id)
        paths: List[Tuple[Path, NoteKind]] = []
        if kind in (None, NoteKind.NOTE):
            paths.append((self.notes_dir / f"{stem}.json", NoteKind.NOTE))
        if kind in (None, NoteKind.FOLDER):
            paths.append((self.notes_dir / f"{stem}.folder.json", NoteKind.FOLDER))
        return paths

    def _load_all_records(self) -> Dict[str, NoteRecord]:
        records: Dict[str, NoteRecord] = {}
        for path in sorted(self.notes_dir.glob("*.json")):
            if path.name.endswith(".folder.json"):
                kind = NoteKind.FOLDER
                stem = path.name[: -len(".folder.json")]
            else:
                kind = NoteKind.NOTE
                stem = path.stem
            try:
                record = self._read_record(path, stem.replace("__", "/"), kind)
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable record %s: %s", path.name, exc)
                continue
            records[record.id] = record
        return records

    def _read_record(self, path: Path, note_id: str, kind: NoteKind) -> NoteRecord:
        with open(path, "r", encoding="utf-8") as handle:
            raw = json.load(handle)
        if not isinstance(raw, dict):
            raise ValueError("record is not a JSON object")

        record_id = self._normalize_id(raw.get("id") or note_id)
        parent_id = raw.get("parent_id") or self._derive_parent_id(record_id)
        if kind == NoteKind.FOLDER:
            parent_id = self._derive_parent_id(record_id)

        return NoteRecord(
            id=record_id,
            title=raw.get("title") or self._title_from_id(record_id),
            kind=kind,
            content=raw.get("content", "") if kind == NoteKind.NOTE else "",
            parent_id=parent_id,
            children=list(raw.get("children", [])),
            pinned=bool(raw.get("pinned", False)),
            created_at=float(raw.get("created_at", 0.0)),
            updated_at=float(raw.get("updated_at", 0.0)),
        )

    def _write_record(self, record: NoteRecord):
        payload = {
            "id": record.id,
            "title": record.title,
            "type": record.kind.value,
            "parent_id": record.parent_id,
            "children": record.children,
            "pinned": record.pinned,
            "content": record.content if record.kind == NoteKind.NOTE else "",
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }
        path = self._candidate_paths(record.id, record.kind)[0][0]
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
        except OSError as exc:
            raise StorageWriteError(str(path), exc) from exc

    def _ensure_parent_link(self, record: NoteRecord):
        parent_id = record.parent_id
        if not parent_id:
            return

        try:
            parent = self.get_note(parent_id)
        except FileNotFoundError:
            parent = NoteRecord(id=parent_id, title=self._title_from_id(parent_id), kind=NoteKind.FOLDER)
            parent.parent_id = self._derive_parent_id(parent_id)
            self._write_record(parent)
            self._ensure_parent_link(parent)

        if record.id not in parent.children:
            parent.children.append(record.id)
            self._write_record(parent)

    def _collect_descendants(self, root_id: str, records: Dict[str, NoteRecord]) -> List[str]:
        adjacency: Dict[str, List[str]] = {}
        for record in records.values():
            if record.parent_id:
                adjacency.setdefault(record.parent_id, []).append(record.id)
            if record.children:
                adjacency.setdefault(record.id, []).extend(record.children)

        to_visit = [root_id]
        seen: Set[str] = set()
        while to_visit:
            current = to_visit.pop()
            if current in seen:
                continue
            seen.add(current)
            to_visit.extend(adjacency.get(current, []))
        return list(seen)

    def _to_node(self, record: NoteRecord) -> NoteNodePayload:
        return NoteNodePayload(
            id=record.id,
            title=record.title,
            kind=record.kind,
            children=list(record.children),
            pinned=record.pinned,
        )
