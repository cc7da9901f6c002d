from __future__ import annotations

import hmac
import re
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

from fastapi import HTTPException, Request

from .config import PREVIEW_FILENAME


_CONTENT_HASH_RE = re.compile(r"[0-9a-fA-F]{40}")

_LOOPBACK_HOSTS = {"127.0.0.1", "::1", "localhost"}


def is_valid_content_hash(content_hash: object) -> bool:
    """Artifact ids are 40 hex chars (SHA1-shaped), any case."""
    return isinstance(content_hash, str) and bool(_CONTENT_HASH_RE.fullmatch(content_hash))


def is_safe_basename(name: str) -> bool:
    """Allow only simple filenames (no directories)."""
    if not isinstance(name, str) or not name:
        return False
    if name != Path(name).name:
        return False
    if "/" in name or "\\" in name:
        return False
    if name in (".", ".."):
        return False
    return True


def sanitize_path(path: Optional[str]) -> Optional[str]:
    """Turn a request path into a relative path safe to join under an artifact.

    Returns None if any segment is '..' (after decoding); no traversal is
    tolerated, even one that would stay inside the artifact. An empty result
    falls back to index.html.
    """
    if not path:
        return PREVIEW_FILENAME
    path = unquote(path)
    path = path.replace("\0", "")
    path = path.replace("\\", "/")

    safe_parts: list[str] = []
    for part in path.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            return None
        safe_parts.append(part)

    if not safe_parts:
        return PREVIEW_FILENAME
    return "/".join(safe_parts)


def is_within(base_dir: Path, candidate: Path) -> bool:
    """True if candidate resolves (symlinks included) to a path inside base_dir."""
    try:
        base = base_dir.resolve(strict=True)
        resolved = candidate.resolve(strict=True)
    except (OSError, RuntimeError):
        return False
    return resolved != base and base in resolved.parents


def safe_join(base_dir: Path, *parts: str) -> Path:
    """Join paths and ensure the result stays within base_dir.

    This defends against path traversal when extracting archive members.
    """
    base_dir = base_dir.resolve()
    candidate = base_dir
    for part in parts:
        candidate = candidate / part
    resolved = candidate.resolve()
    if resolved == base_dir:
        return resolved
    if base_dir not in resolved.parents:
        raise ValueError("Path traversal attempt")
    return resolved


def _presented_token(request: Request) -> Optional[str]:
    token = request.headers.get("x-api-key")
    if token:
        return token.strip()
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return None


def require_editor(request: Request, api_token: Optional[str]) -> None:
    """Yes/no access decision for write endpoints.

    With a configured token the caller must present it (401 when absent, 403
    when wrong). Without one, only loopback clients may write.
    """
    if api_token:
        presented = _presented_token(request)
        if not presented:
            raise HTTPException(status_code=401, detail="Unauthorized")
        if not hmac.compare_digest(presented.encode("utf-8"), api_token.encode("utf-8")):
            raise HTTPException(status_code=403, detail="Forbidden")
        return

    host = getattr(request.client, "host", "") if request.client else ""
    if host not in _LOOPBACK_HOSTS:
        raise HTTPException(status_code=403, detail="Forbidden")
