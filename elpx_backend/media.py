"""Media records: the host-side view of one uploaded package.

The extraction core only needs an id, the stored filename and a string map
it can merge two keys into. MediaRepository keeps those records as small
JSON files next to the raw uploads, the same way the host CMS would keep
them in its own database.
"""
from __future__ import annotations

import json
import re
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional

from .config import HASH_DATA_KEY, MEDIA_SUBDIR, ORIGINAL_SUBDIR, PREVIEW_DATA_KEY
from .security import is_safe_basename, is_valid_content_hash


_SUFFIX_RE = re.compile(r"\.[A-Za-z0-9]{1,10}")


@dataclass
class MediaRecord:
    id: int
    filename: str
    title: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    def merge_data(self, values: Mapping[str, Any]) -> None:
        self.data = {**self.data, **values}


@dataclass(frozen=True)
class ArtifactMetadata:
    """Typed view of the two keys the core owns in MediaRecord.data."""

    extracted_hash: Optional[str] = None
    has_preview: bool = False

    @classmethod
    def from_data(cls, data: Any) -> "ArtifactMetadata":
        # Anything missing or garbled reads as "no hash" / "no preview".
        if not isinstance(data, Mapping):
            return cls()
        raw_hash = data.get(HASH_DATA_KEY)
        extracted_hash = raw_hash.lower() if is_valid_content_hash(raw_hash) else None
        raw_preview = data.get(PREVIEW_DATA_KEY)
        has_preview = raw_preview is True or raw_preview == "1"
        return cls(extracted_hash=extracted_hash, has_preview=has_preview)

    def to_data(self) -> dict[str, str]:
        data = {PREVIEW_DATA_KEY: "1" if self.has_preview else "0"}
        if self.extracted_hash:
            data[HASH_DATA_KEY] = self.extracted_hash
        return data


def original_file_path(files_root: Path, filename: str) -> Path:
    """Where the host keeps a record's raw bytes: <files>/original/<filename>."""
    return files_root / ORIGINAL_SUBDIR / filename


def _stored_filename(source_name: str) -> str:
    suffix = Path(source_name or "").suffix.lower()
    if not _SUFFIX_RE.fullmatch(suffix):
        suffix = ""
    return f"{uuid.uuid4().hex}{suffix}"


class MediaRepository:
    def __init__(self, files_root: Path) -> None:
        self.files_root = files_root
        self.original_dir = files_root / ORIGINAL_SUBDIR
        self.media_dir = files_root / MEDIA_SUBDIR
        self._lock = threading.Lock()

    def ensure_dirs(self) -> None:
        self.original_dir.mkdir(parents=True, exist_ok=True)
        self.media_dir.mkdir(parents=True, exist_ok=True)

    def _record_path(self, media_id: int) -> Path:
        return self.media_dir / f"{int(media_id)}.json"

    @staticmethod
    def _from_json(payload: dict) -> MediaRecord:
        data = payload.get("data")
        return MediaRecord(
            id=int(payload["id"]),
            filename=str(payload["filename"]),
            title=str(payload.get("title") or ""),
            data=dict(data) if isinstance(data, dict) else {},
        )

    @staticmethod
    def _to_json(record: MediaRecord) -> str:
        payload = {
            "id": record.id,
            "filename": record.filename,
            "title": record.title,
            "data": record.data,
        }
        return json.dumps(payload, indent=2, sort_keys=True)

    def _load(self, path: Path) -> Optional[MediaRecord]:
        try:
            return self._from_json(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def get(self, media_id: int) -> Optional[MediaRecord]:
        if media_id < 1:
            return None
        return self._load(self._record_path(media_id))

    def all(self) -> Iterator[MediaRecord]:
        if not self.media_dir.exists():
            return
        for child in sorted(self.media_dir.glob("*.json")):
            record = self._load(child)
            if record is not None:
                yield record

    def original_path(self, record: MediaRecord) -> Path:
        return original_file_path(self.files_root, record.filename)

    def create(self, source_name: str, content: bytes) -> MediaRecord:
        """Store raw bytes under a fresh filename and register a record for them."""
        self.ensure_dirs()
        filename = _stored_filename(source_name)
        title = Path((source_name or "").replace("\\", "/")).name or filename
        original_file_path(self.files_root, filename).write_bytes(content)

        with self._lock:
            existing = [int(p.stem) for p in self.media_dir.glob("*.json") if p.stem.isdigit()]
            media_id = max(existing, default=0) + 1
            while True:
                record = MediaRecord(id=media_id, filename=filename, title=title)
                try:
                    # 'x' guards against another process taking the same id.
                    with open(self._record_path(media_id), "x", encoding="utf-8") as fh:
                        fh.write(self._to_json(record))
                except FileExistsError:
                    media_id += 1
                    continue
                return record

    def merge_data(self, record: MediaRecord, values: Mapping[str, Any]) -> MediaRecord:
        """Merge values into the persisted data map, keeping unrelated keys."""
        with self._lock:
            stored = self.get(record.id)
            if stored is not None:
                record.data = {**stored.data, **record.data}
            record.merge_data(values)
            self._record_path(record.id).write_text(self._to_json(record), encoding="utf-8")
        return record

    def delete(self, record: MediaRecord) -> None:
        with self._lock:
            self._record_path(record.id).unlink(missing_ok=True)
        if is_safe_basename(record.filename):
            self.original_path(record).unlink(missing_ok=True)
