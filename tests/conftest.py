"""Shared test fixtures for the elpx backend."""

from __future__ import annotations

import io
import zipfile
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from elpx_backend.gateway import ContentGateway
from elpx_backend.media import MediaRecord, MediaRepository
from elpx_backend.store import ArtifactStore


API_TOKEN = "test-token"


def build_zip(entries: dict[str, str | bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buf.getvalue()


@pytest.fixture
def files_root(tmp_path: Path) -> Path:
    return tmp_path / "files"


@pytest.fixture
def content_root(files_root: Path) -> Path:
    return files_root / "exelearning"


@pytest.fixture
def make_zip(tmp_path: Path) -> Callable[..., Path]:
    """Factory fixture: write a zip with the given entries and return its path."""
    counter = iter(range(1, 10_000))

    def _factory(entries: dict[str, str | bytes], name: str | None = None) -> Path:
        path = tmp_path / (name or f"package-{next(counter)}.elpx")
        path.write_bytes(build_zip(entries))
        return path

    return _factory


@pytest.fixture
def repository(files_root: Path) -> MediaRepository:
    repo = MediaRepository(files_root)
    repo.ensure_dirs()
    return repo


@pytest.fixture
def store(content_root: Path, files_root: Path, repository: MediaRepository) -> ArtifactStore:
    return ArtifactStore(content_root, files_root, repository)


@pytest.fixture
def gateway(content_root: Path) -> ContentGateway:
    return ContentGateway(content_root)


@pytest.fixture
def make_record(repository: MediaRepository) -> Callable[..., MediaRecord]:
    """Factory fixture: register a media record whose stored file is a zip of entries."""

    def _factory(entries: dict[str, str | bytes], source_name: str = "course.elpx") -> MediaRecord:
        return repository.create(source_name, build_zip(entries))

    return _factory


@pytest.fixture
def client(files_root: Path) -> Iterator[TestClient]:
    import server

    server.configure_services(
        server.app,
        files_root=files_root,
        api_token=API_TOKEN,
        sweep_interval_seconds=0,
    )
    with TestClient(server.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"X-API-Key": API_TOKEN}
