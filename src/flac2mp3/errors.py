"""Error types shared across the conversion pipeline.

`EnumerationError` is the only fatal class: it aborts the whole run.
Everything deriving from `ConversionError` belongs to a single work item and
is logged at the worker boundary without affecting sibling items.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence


class Flac2Mp3Error(Exception):
    """Base class for all errors raised by flac2mp3."""


class EnumerationError(Flac2Mp3Error):
    """Walking the source tree or statting a file failed."""

    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.path = path


class ConversionError(Flac2Mp3Error):
    """A single item failed to convert."""

    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.path = path


class TagParseError(ConversionError):
    def __init__(self, line_no: int, line: str, path: Optional[Path] = None) -> None:
        super().__init__(f"invalid tag line {line_no}: {line!r}", path)
        self.line_no = line_no
        self.line = line


class ExternalOperationError(ConversionError):
    """An external tool failed to start or exited with a non-zero status."""

    def __init__(
        self,
        message: str,
        *,
        cmd: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        path: Optional[Path] = None,
    ) -> None:
        super().__init__(message, path)
        self.cmd = list(cmd) if cmd is not None else None
        self.returncode = returncode


class OperationCancelled(ExternalOperationError):
    """The operation was refused or terminated because its scope was cancelled."""


class PipeSetupError(ConversionError):
    """Connecting the decoder output to the encoder input failed."""


class TagVerificationError(ConversionError):
    def __init__(self, discrepancies: Sequence[str], path: Optional[Path] = None) -> None:
        super().__init__("tag verification failed: " + "; ".join(discrepancies), path)
        self.discrepancies = list(discrepancies)
