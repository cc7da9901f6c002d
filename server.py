from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exception_handlers import http_exception_handler, request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from elpx_backend.config import (
    API_TOKEN,
    CONTENT_ROOT,
    FILES_ROOT,
    LOG_LEVEL,
    MAX_UPLOAD_BYTES,
    ORPHAN_GRACE_SECONDS,
    ORPHAN_SWEEP_INTERVAL_SECONDS,
    PREVIEW_FILENAME,
)
from elpx_backend.errors import CopyError, ElpxError, ExtractionError, InvalidArchive
from elpx_backend.gateway import ContentGateway
from elpx_backend.media import MediaRecord, MediaRepository
from elpx_backend.security import is_safe_basename, require_editor
from elpx_backend.store import ArtifactStore
from elpx_backend.zip_utils import ensure_access_denied, is_elpx_filename


logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("elpx.server")


@dataclass
class Services:
    repository: MediaRepository
    store: ArtifactStore
    gateway: ContentGateway
    api_token: Optional[str]
    max_upload_bytes: int
    sweep_interval_seconds: int
    orphan_grace_seconds: int


class SaveResponse(BaseModel):
    success: bool = True
    message: str
    media_id: int
    preview_url: Optional[str] = None


class MediaDataResponse(BaseModel):
    success: bool = True
    id: int
    url: str
    title: str
    filename: str
    hasPreview: bool
    previewUrl: Optional[str] = None


class ErrorResponse(BaseModel):
    success: bool = False
    message: str


# Client-facing text per failure; exception text can carry filesystem paths.
SAVE_ERROR_MESSAGES = {
    ExtractionError: "Save failed: Failed to extract file",
    CopyError: "Save failed: Failed to replace file",
}


def _save_error_message(exc: ElpxError) -> str:
    for error_class, message in SAVE_ERROR_MESSAGES.items():
        if isinstance(exc, error_class):
            return message
    return "Save failed"


def configure_services(
    app: FastAPI,
    files_root: Path = FILES_ROOT,
    content_root: Optional[Path] = None,
    api_token: Optional[str] = API_TOKEN,
    max_upload_bytes: int = MAX_UPLOAD_BYTES,
    sweep_interval_seconds: int = ORPHAN_SWEEP_INTERVAL_SECONDS,
    orphan_grace_seconds: int = ORPHAN_GRACE_SECONDS,
) -> Services:
    """Wire repository, store and gateway onto app.state."""
    if content_root is None:
        content_root = CONTENT_ROOT if files_root == FILES_ROOT else files_root / "exelearning"
    repository = MediaRepository(files_root)
    services = Services(
        repository=repository,
        store=ArtifactStore(content_root, files_root, repository),
        gateway=ContentGateway(content_root),
        api_token=api_token,
        max_upload_bytes=max_upload_bytes,
        sweep_interval_seconds=sweep_interval_seconds,
        orphan_grace_seconds=orphan_grace_seconds,
    )
    app.state.services = services
    return services


def _services(request: Request) -> Services:
    return request.app.state.services


def _sweep_once(services: Services) -> int:
    known = [services.store.get_hash(record) for record in services.repository.all()]
    return services.store.sweep_orphans(
        [h for h in known if h], min_age_seconds=services.orphan_grace_seconds
    )


async def _sweep_worker(services: Services) -> None:
    # Periodically collect artifacts leaked by concurrent replaces.
    while True:
        await asyncio.sleep(max(60, services.sweep_interval_seconds))
        try:
            await run_in_threadpool(_sweep_once, services)
        except Exception:
            logger.exception("Orphan sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Services = app.state.services
    services.repository.ensure_dirs()
    services.store.base_dir.mkdir(parents=True, exist_ok=True)
    ensure_access_denied(services.store.base_dir)
    try:
        _sweep_once(services)
    except Exception:
        logger.exception("Startup orphan sweep failed")

    task = None
    if services.sweep_interval_seconds > 0:
        task = asyncio.create_task(_sweep_worker(services))
    app.state._sweep_task = task
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


app = FastAPI(lifespan=lifespan)
configure_services(app)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(ErrorResponse(message=message).model_dump(), status_code=status_code)


@app.exception_handler(StarletteHTTPException)
async def _api_http_error(request: Request, exc: StarletteHTTPException) -> Response:
    # API clients always get {success, message}; other routes keep the default shape.
    if request.url.path.startswith("/api/"):
        return _error(exc.status_code, str(exc.detail))
    return await http_exception_handler(request, exc)


@app.exception_handler(RequestValidationError)
async def _api_validation_error(request: Request, exc: RequestValidationError) -> Response:
    if request.url.path.startswith("/api/"):
        return _error(400, "Invalid request")
    return await request_validation_exception_handler(request, exc)


def _preview_url(request: Request, content_hash: Optional[str], has_preview: bool) -> Optional[str]:
    if not content_hash or not has_preview:
        return None
    return str(request.app.url_path_for("serve_content", content_hash=content_hash, file_path=PREVIEW_FILENAME))


def _original_url(request: Request, record: MediaRecord) -> str:
    return str(request.app.url_path_for("get_original_file", filename=record.filename))


async def _read_upload(file: Optional[UploadFile], limit: int) -> bytes:
    if file is None:
        raise HTTPException(status_code=400, detail="No file uploaded")
    # Read one extra byte so oversized uploads are detected without buffering them.
    data = await file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(status_code=400, detail="File too large")
    if not data:
        raise HTTPException(status_code=400, detail="Upload failed: empty file")
    return data


def _write_temp_upload(directory: Path, data: bytes) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix=".upload-", suffix=".elpx", dir=str(directory))
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)
    return Path(name)


@app.get("/content/{content_hash}", name="serve_content_root")
@app.get("/content/{content_hash}/{file_path:path}", name="serve_content")
async def serve_content(content_hash: str, request: Request, file_path: str = "") -> Response:
    """Serve one file from an extracted package (see elpx_backend.gateway)."""
    result = await run_in_threadpool(_services(request).gateway.serve, content_hash, file_path)
    return Response(content=result.body, status_code=result.status, headers=result.headers)


@app.get("/files/original/{filename}", name="get_original_file")
async def get_original_file(filename: str, request: Request) -> Response:
    """Hand the stored package back to the browser-side editor."""
    if not is_safe_basename(filename):
        raise HTTPException(status_code=404, detail="Not found")
    path = _services(request).repository.original_dir / filename
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Not found")
    return FileResponse(
        path,
        media_type="application/zip",
        headers={"Cache-Control": "no-store", "X-Content-Type-Options": "nosniff"},
    )


@app.post("/api/save/{media_id}")
async def save_media(media_id: int, request: Request, file: Optional[UploadFile] = File(None)) -> JSONResponse:
    """Replace a media record's package with an edited one from the editor."""
    services = _services(request)
    require_editor(request, services.api_token)

    record = services.repository.get(media_id)
    if record is None:
        return _error(404, "Media not found")

    data = await _read_upload(file, services.max_upload_bytes)
    try:
        tmp_path = await run_in_threadpool(_write_temp_upload, services.repository.files_root / "tmp", data)
    except OSError as exc:
        logger.error("Could not stage upload for media %d: %s", media_id, exc)
        return _error(500, "Save failed: could not store upload")
    try:
        result = await run_in_threadpool(services.store.replace_file, record, tmp_path)
    except InvalidArchive as exc:
        return _error(400, str(exc))
    except ElpxError as exc:
        logger.error("Save failed for media %d: %s", media_id, exc)
        return _error(500, _save_error_message(exc))
    finally:
        tmp_path.unlink(missing_ok=True)

    payload = SaveResponse(
        message="File saved successfully",
        media_id=media_id,
        preview_url=_preview_url(request, result.hash, result.has_preview),
    )
    return JSONResponse(payload.model_dump())


@app.get("/api/data/{media_id}")
async def media_data(media_id: int, request: Request) -> JSONResponse:
    services = _services(request)
    record = services.repository.get(media_id)
    if record is None:
        return _error(404, "Media not found")

    content_hash = services.store.get_hash(record)
    has_preview = services.store.has_preview(record)
    payload = MediaDataResponse(
        id=record.id,
        url=_original_url(request, record),
        title=record.title or record.filename,
        filename=record.filename,
        hasPreview=has_preview,
        previewUrl=_preview_url(request, content_hash, has_preview),
    )
    return JSONResponse(payload.model_dump())


@app.post("/api/media", status_code=201)
async def create_media(request: Request, file: Optional[UploadFile] = File(None)) -> JSONResponse:
    """Store a new package and unpack it.

    Unpacking failures don't fail the upload: the record is kept and simply
    has no preview until it is replaced with a working package.
    """
    services = _services(request)
    require_editor(request, services.api_token)

    if file is not None and not is_elpx_filename(file.filename):
        return _error(400, "Unsupported file type")
    data = await _read_upload(file, services.max_upload_bytes)

    try:
        record = await run_in_threadpool(services.repository.create, file.filename or "", data)
    except OSError as exc:
        logger.error("Could not store upload %r: %s", file.filename, exc)
        return _error(500, "Upload failed: could not store file")
    content_hash: Optional[str] = None
    has_preview = False
    try:
        result = await run_in_threadpool(services.store.process, record)
        content_hash, has_preview = result.hash, result.has_preview
    except ElpxError:
        logger.exception("Failed to process uploaded file for media %d", record.id)

    payload = {
        "success": True,
        "message": "File uploaded",
        "media_id": record.id,
        "title": record.title,
        "filename": record.filename,
        "hasPreview": has_preview,
        "previewUrl": _preview_url(request, content_hash, has_preview),
    }
    return JSONResponse(payload, status_code=201)


@app.delete("/api/media/{media_id}")
async def delete_media(media_id: int, request: Request) -> JSONResponse:
    services = _services(request)
    require_editor(request, services.api_token)

    record = services.repository.get(media_id)
    if record is None:
        return _error(404, "Media not found")

    services.store.cleanup(record)
    services.repository.delete(record)
    return JSONResponse({"success": True, "message": "Media deleted", "media_id": media_id})


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    port = int(os.environ.get("PORT", "8010"))
    uvicorn.run("server:app", host="127.0.0.1", port=port, reload=False)
