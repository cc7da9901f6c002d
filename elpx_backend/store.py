"""Artifact bookkeeping: which extracted directory belongs to which media record.

Every extraction goes into a brand-new base/<hash>/ directory. Nothing is
ever extracted over an existing artifact, so readers of an old artifact are
unaffected while a replacement is being unpacked next to it.
"""
from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .config import PREVIEW_FILENAME
from .errors import CopyError, ExtractionError, InvalidArchive, SourceMissing
from .media import ArtifactMetadata, MediaRecord, MediaRepository, original_file_path
from .security import is_safe_basename, is_valid_content_hash
from .zip_utils import ensure_access_denied, extract_archive, validate_archive


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessResult:
    hash: str
    has_preview: bool


def generate_hash(source_path: Path) -> str:
    """Fresh artifact id. Random, not a content digest: same bytes, new id."""
    seed = f"{source_path}{time.time_ns()}".encode("utf-8") + os.urandom(16)
    return hashlib.sha1(seed).hexdigest()


def _remove_entry(remove, target: Path) -> None:
    try:
        remove(target)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not delete %s: %s", target, exc)


def delete_tree(path: Path) -> None:
    """Best-effort recursive delete.

    Missing entries are fine; per-entry failures are logged and skipped.
    Symlinks are unlinked, never followed.
    """
    if not path.is_dir() or path.is_symlink():
        return
    for root, dirs, files in os.walk(path, topdown=False):
        for name in files:
            _remove_entry(os.unlink, Path(root, name))
        for name in dirs:
            entry = Path(root, name)
            _remove_entry(os.unlink if entry.is_symlink() else os.rmdir, entry)
    _remove_entry(os.rmdir, path)


class ArtifactStore:
    def __init__(self, base_dir: Path, files_root: Path, repository: MediaRepository) -> None:
        self.base_dir = base_dir
        self.files_root = files_root
        self.repository = repository

    def artifact_path(self, content_hash: str) -> Path:
        return self.base_dir / content_hash.lower()

    def preview_path(self, content_hash: str) -> Path:
        return self.artifact_path(content_hash) / PREVIEW_FILENAME

    def media_file_path(self, record: MediaRecord) -> Path:
        return original_file_path(self.files_root, record.filename)

    def get_hash(self, record: MediaRecord) -> Optional[str]:
        return ArtifactMetadata.from_data(record.data).extracted_hash

    def has_preview(self, record: MediaRecord) -> bool:
        return ArtifactMetadata.from_data(record.data).has_preview

    def _prepare_base_dir(self) -> None:
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ExtractionError("Failed to create base directory") from exc
        # Checked on every call so installs that predate the marker get one.
        ensure_access_denied(self.base_dir)

    def _extract_new_artifact(self, source_path: Path) -> ProcessResult:
        self._prepare_base_dir()
        content_hash = generate_hash(source_path)
        extract_path = self.artifact_path(content_hash)
        logger.info("Extracting %s into artifact %s", source_path.name, content_hash)
        try:
            extract_archive(source_path, extract_path)
        except ExtractionError:
            delete_tree(extract_path)
            raise
        has_preview = self.preview_path(content_hash).is_file()
        logger.info("Artifact %s has preview: %s", content_hash, "yes" if has_preview else "no")
        return ProcessResult(hash=content_hash, has_preview=has_preview)

    def _save_metadata(self, record: MediaRecord, result: ProcessResult) -> None:
        metadata = ArtifactMetadata(extracted_hash=result.hash, has_preview=result.has_preview)
        self.repository.merge_data(record, metadata.to_data())

    def process(self, record: MediaRecord) -> ProcessResult:
        """Extract the record's stored package and attach the new artifact to it.

        Extraction is unconditional: an archive without index.html simply
        yields has_preview=False.
        """
        logger.info("Processing media %d", record.id)
        if not is_safe_basename(record.filename):
            raise SourceMissing(f"Media file not found for media {record.id}")
        source_path = self.media_file_path(record)
        if not source_path.is_file():
            raise SourceMissing(f"Media file not found for media {record.id}")

        result = self._extract_new_artifact(source_path)
        try:
            self._save_metadata(record, result)
        except OSError as exc:
            delete_tree(self.artifact_path(result.hash))
            raise ExtractionError(f"Failed to record artifact for media {record.id}") from exc
        return result

    def replace_file(self, record: MediaRecord, new_file_path: str | Path) -> ProcessResult:
        """Swap in a new package for record.

        The new artifact is fully extracted before the stored file is touched,
        and the old artifact is only removed once the metadata points at the
        new one. Any failure before that leaves the record as it was.
        """
        new_file_path = Path(new_file_path)
        old_hash = self.get_hash(record)

        if not validate_archive(new_file_path):
            raise InvalidArchive("Invalid eXeLearning file")
        if not is_safe_basename(record.filename):
            raise CopyError("Failed to replace file")

        result = self._extract_new_artifact(new_file_path)
        new_artifact = self.artifact_path(result.hash)

        original_path = self.media_file_path(record)
        try:
            self._copy_over(new_file_path, original_path)
        except OSError as exc:
            delete_tree(new_artifact)
            raise CopyError("Failed to replace file") from exc

        try:
            self._save_metadata(record, result)
        except OSError as exc:
            delete_tree(new_artifact)
            raise ExtractionError(f"Failed to record artifact for media {record.id}") from exc

        if old_hash and old_hash != result.hash:
            delete_tree(self.artifact_path(old_hash))
        return result

    @staticmethod
    def _copy_over(source: Path, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".replace-", dir=str(destination.parent))
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as dst, open(source, "rb") as src:
                shutil.copyfileobj(src, dst)
            os.replace(tmp_path, destination)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

    def cleanup(self, record: MediaRecord) -> None:
        content_hash = self.get_hash(record)
        if not content_hash:
            return
        logger.info("Cleaning up artifact %s for media %d", content_hash, record.id)
        delete_tree(self.artifact_path(content_hash))

    def sweep_orphans(self, known_hashes: Iterable[str], min_age_seconds: float) -> int:
        """Delete artifact directories no record points at.

        Only directories older than min_age_seconds are touched, so an
        extraction whose metadata write is still in flight survives.
        Returns the number of deleted artifacts.
        """
        if not self.base_dir.is_dir():
            return 0
        keep = {h.lower() for h in known_hashes if h}
        now = time.time()
        deleted = 0
        for child in self.base_dir.iterdir():
            if not is_valid_content_hash(child.name) or child.name.lower() in keep:
                continue
            if not child.is_dir() or child.is_symlink():
                continue
            try:
                age = now - child.stat().st_mtime
            except OSError:
                continue
            if age < max(0.0, min_age_seconds):
                continue
            delete_tree(child)
            deleted += 1
        if deleted:
            logger.info("Removed %d orphaned artifacts", deleted)
        return deleted
