"""Serve single files out of an extracted artifact.

Security:
- the content id must be a 40-char hex token; it is never looked up, only
  used as a directory name
- any '..' in the requested path rejects the request outright
- the resolved target must live inside the resolved artifact dir (symlinks)
- HTML gets a CSP; everything gets nosniff and SAMEORIGIN framing
Every failure is a plain 404 so callers can't tell which check tripped.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import CACHE_CONTROL
from .errors import AccessDenied, NotFound
from .security import is_valid_content_hash, is_within, sanitize_path


MIME_TYPES = {
    "html": "text/html",
    "htm": "text/html",
    "css": "text/css",
    "js": "application/javascript",
    "json": "application/json",
    "xml": "application/xml",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "svg": "image/svg+xml",
    "webp": "image/webp",
    "ico": "image/x-icon",
    "woff": "font/woff",
    "woff2": "font/woff2",
    "ttf": "font/ttf",
    "eot": "application/vnd.ms-fontobject",
    "mp3": "audio/mpeg",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "ogg": "audio/ogg",
    "ogv": "video/ogg",
    "pdf": "application/pdf",
    "zip": "application/zip",
    "txt": "text/plain",
}
DEFAULT_MIME_TYPE = "application/octet-stream"

# Course content relies on inline and eval'd scripts.
CONTENT_SECURITY_POLICY = "; ".join(
    [
        "default-src 'self'",
        "script-src 'self' 'unsafe-inline' 'unsafe-eval'",
        "style-src 'self' 'unsafe-inline'",
        "img-src 'self' data: blob:",
        "media-src 'self' data: blob:",
        "font-src 'self' data:",
        "connect-src 'self'",
        "frame-src 'self'",
        "frame-ancestors 'self'",
        "form-action 'none'",
        "base-uri 'self'",
    ]
)
PERMISSIONS_POLICY = "geolocation=(), microphone=(), camera=(), payment=()"


@dataclass(frozen=True)
class ContentResponse:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


def guess_mime_type(filename: str) -> str:
    suffix = Path(filename).suffix.lower().lstrip(".")
    return MIME_TYPES.get(suffix, DEFAULT_MIME_TYPE)


def security_headers(mime_type: str) -> dict[str, str]:
    headers = {
        "X-Frame-Options": "SAMEORIGIN",
        "X-Content-Type-Options": "nosniff",
    }
    if "text/html" in mime_type:
        headers["Content-Security-Policy"] = CONTENT_SECURITY_POLICY
        headers["Referrer-Policy"] = "same-origin"
        headers["Permissions-Policy"] = PERMISSIONS_POLICY
    return headers


def not_found(message: str = "Not found") -> ContentResponse:
    return ContentResponse(
        status=404,
        headers={"Content-Type": "text/plain"},
        body=message.encode("utf-8"),
    )


class ContentGateway:
    """Stateless: the filesystem layout under base_dir is the only input."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = base_dir

    def resolve(self, content_hash: str, relative_path: Optional[str] = None) -> Path:
        """Map (hash, path) to a regular file inside the artifact or raise."""
        if not is_valid_content_hash(content_hash):
            raise NotFound("Invalid content identifier")

        file_path = sanitize_path(relative_path)
        if file_path is None:
            raise NotFound("Invalid file path")

        artifact_dir = self.base_dir / content_hash.lower()
        full_path = artifact_dir / file_path
        try:
            if not full_path.is_file():
                raise NotFound("File not found")
        except (OSError, ValueError) as exc:
            raise NotFound("File not found") from exc

        # String checks can't see symlinks pointing out of the artifact.
        if not is_within(artifact_dir, full_path):
            raise AccessDenied("Access denied")
        return full_path

    def serve(self, content_hash: str, relative_path: Optional[str] = None) -> ContentResponse:
        try:
            full_path = self.resolve(content_hash, relative_path)
            content = full_path.read_bytes()
        except (NotFound, AccessDenied) as exc:
            return not_found(str(exc))
        except OSError:
            return not_found("File not found")

        mime_type = guess_mime_type(full_path.name)
        headers = {
            "Content-Type": mime_type,
            "Content-Length": str(len(content)),
        }
        headers.update(security_headers(mime_type))
        headers["Cache-Control"] = CACHE_CONTROL
        return ContentResponse(status=200, headers=headers, body=content)
