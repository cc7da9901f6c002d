from __future__ import annotations

import logging
import re
import shutil
import zipfile
import zlib
from pathlib import Path, PurePosixPath

from .config import ACCESS_MARKER_FILENAME, ELPX_EXTENSIONS, MARKER_ENTRIES
from .errors import ExtractionError
from .security import safe_join


logger = logging.getLogger(__name__)

_DRIVE_RE = re.compile(r"^[A-Za-z]:")

# Errors zipfile/zlib can raise while reading a damaged or unsupported member.
_ZIP_READ_ERRORS = (
    OSError,
    EOFError,
    ValueError,
    RuntimeError,
    NotImplementedError,
    zipfile.BadZipFile,
    zlib.error,
)

ACCESS_MARKER_CONTENT = """\
# Block direct access to extracted eXeLearning content.
# Everything must go through the content gateway, which adds
# the security headers (CSP, X-Frame-Options, ...).

<IfModule mod_authz_core.c>
    Require all denied
</IfModule>
<IfModule !mod_authz_core.c>
    Order deny,allow
    Deny from all
</IfModule>

<IfModule mod_rewrite.c>
    RewriteEngine On
    RewriteRule ^ - [F,L]
</IfModule>
"""


def is_elpx_filename(filename: str | None) -> bool:
    if not filename:
        return False
    return Path(filename).suffix.lower() in ELPX_EXTENSIONS


def validate_archive(path: str | Path) -> bool:
    """Decide whether a file is plausibly an eXeLearning package.

    Fails closed: a missing file, something that is not a zip, or a zip with
    none of the marker entries (exact, case-sensitive names) is rejected.
    Nothing beyond the presence of one marker is checked.
    """
    path = Path(path)
    if not path.is_file():
        return False
    try:
        with zipfile.ZipFile(path) as zf:
            names = set(zf.namelist())
    except Exception:
        return False
    return any(marker in names for marker in MARKER_ENTRIES)


def _member_parts(name: str) -> tuple[str, ...]:
    return PurePosixPath(name.replace("\\", "/")).parts


def _is_bad_zip_member(name: str) -> bool:
    # Zip Slip defenses.
    if not name or name.strip() == "":
        return True
    if name.startswith("/") or name.startswith("\\"):
        return True
    if _DRIVE_RE.match(name):
        return True
    if "\0" in name:
        return True
    parts = _member_parts(name)
    if not parts or any(p == ".." for p in parts):
        return True
    return False


def extract_archive(zip_path: str | Path, destination: Path) -> None:
    """Unpack every entry of zip_path into destination, keeping the tree.

    The destination must be a fresh directory: extracting twice into the
    same place mixes contents. No marker validation happens here.
    """
    try:
        destination.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ExtractionError(f"Failed to create extract directory: {destination.name}") from exc

    try:
        zf = zipfile.ZipFile(zip_path)
    except _ZIP_READ_ERRORS as exc:
        raise ExtractionError(f"Failed to open ZIP file: {exc}") from exc

    with zf:
        members = zf.infolist()
        for info in members:
            name = info.filename
            if _is_bad_zip_member(name):
                raise ExtractionError(f"Unsafe path in ZIP: {name!r}")
            try:
                target = safe_join(destination, *_member_parts(name))
            except ValueError as exc:
                raise ExtractionError(f"Unsafe path in ZIP: {name!r}") from exc

            try:
                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
            except _ZIP_READ_ERRORS as exc:
                raise ExtractionError(f"Failed to extract {name!r}: {exc}") from exc

    logger.info("Extracted %d entries into %s", len(members), destination.name)


def ensure_access_denied(base_dir: Path) -> None:
    """Create the deny-all marker in base_dir if it is missing.

    Safe to call on every extraction; an existing marker is left alone. A
    failed write is logged, not raised.
    """
    marker = base_dir / ACCESS_MARKER_FILENAME
    if marker.exists():
        return
    try:
        marker.write_text(ACCESS_MARKER_CONTENT, encoding="utf-8")
    except OSError as exc:
        logger.warning("Failed to create access marker in %s: %s", base_dir, exc)
        return
    logger.info("Created access marker in %s", base_dir)
