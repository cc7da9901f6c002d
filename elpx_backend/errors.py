"""Error taxonomy for the extraction and delivery core.

Platform errors (OSError, zipfile.BadZipFile, ...) are caught where the
operation starts and re-raised as one of these, so callers never see raw
filesystem exceptions.
"""
from __future__ import annotations


class ElpxError(Exception):
    """Base class for all package errors."""


class SourceMissing(ElpxError):
    """The media record's raw stored file does not exist."""


class InvalidArchive(ElpxError):
    """The candidate file is not a recognizable eXeLearning package."""


class ExtractionError(ElpxError):
    """The archive could not be opened or unpacked into the destination."""


class CopyError(ElpxError):
    """The replacement raw file could not be written over the stored one."""


class AccessDenied(ElpxError):
    pass


class NotFound(ElpxError):
    pass
