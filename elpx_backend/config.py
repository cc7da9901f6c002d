from __future__ import annotations

import os
from pathlib import Path


# Host files directory: raw packages live in original/, media records in media/.
# Default: project-local ./files. Override with env var ELPX_FILES_ROOT.
_files_raw = os.environ.get("ELPX_FILES_ROOT")
if _files_raw and _files_raw.strip():
    FILES_ROOT = Path(_files_raw)
else:
    # elpx_backend/ -> project root
    FILES_ROOT = Path(__file__).resolve().parent.parent / "files"
FILES_ROOT = FILES_ROOT.resolve()

# Extracted artifacts, one <hash>/ directory each.
_content_raw = os.environ.get("ELPX_CONTENT_ROOT")
if _content_raw and _content_raw.strip():
    CONTENT_ROOT = Path(_content_raw).resolve()
else:
    CONTENT_ROOT = FILES_ROOT / "exelearning"

# Upload limit for the save/create endpoints (best-effort; proxies usually enforce too).
MAX_UPLOAD_BYTES = int(os.environ.get("ELPX_MAX_UPLOAD_BYTES", str(200 * 1024 * 1024)))  # 200MB

# Shared secret for write endpoints. Unset: loopback clients only.
API_TOKEN = os.environ.get("ELPX_API_TOKEN") or None

# Orphaned artifact sweep. Interval 0 disables the periodic task.
ORPHAN_SWEEP_INTERVAL_SECONDS = int(os.environ.get("ELPX_ORPHAN_SWEEP_INTERVAL_SECONDS", "3600"))
ORPHAN_GRACE_SECONDS = int(os.environ.get("ELPX_ORPHAN_GRACE_SECONDS", "3600"))

LOG_LEVEL = os.environ.get("ELPX_LOG_LEVEL", "INFO").upper()

ORIGINAL_SUBDIR = "original"
MEDIA_SUBDIR = "media"
ACCESS_MARKER_FILENAME = ".htaccess"
PREVIEW_FILENAME = "index.html"

# Entries that identify an archive as an eXeLearning package (exact names).
MARKER_ENTRIES = ("contentv3.xml", "content.xml", "index.html")
ELPX_EXTENSIONS = {".elpx", ".zip"}

# Keys the host stores in a media record's data map.
HASH_DATA_KEY = "exelearning_extracted_hash"
PREVIEW_DATA_KEY = "exelearning_has_preview"

CACHE_CONTROL = "public, max-age=3600"
