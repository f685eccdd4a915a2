"""Source scanner for FLAC files (standard library only)."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Iterator, Union

from .errors import EnumerationError
from .paths import is_source_file


def _raise_walk_error(exc: OSError) -> None:
    path = Path(exc.filename) if exc.filename else None
    raise EnumerationError(f"cannot read directory {exc.filename}: {exc.strerror or exc}", path) from exc


def iter_flac_files(root: Union[str, Path], *, recurse: bool = True) -> Iterator[Path]:
    """Yield `.flac` files under `root` in sorted, top-down order.

    Directory read errors (including a missing root) raise EnumerationError.
    With recurse=False only the files directly inside `root` are yielded.
    """
    root_p = Path(root)
    for dirpath, dirnames, filenames in os.walk(root_p, onerror=_raise_walk_error):
        if recurse:
            dirnames.sort()
        else:
            dirnames[:] = []
        d = Path(dirpath)
        for name in sorted(filenames):
            if is_source_file(name):
                yield d / name
