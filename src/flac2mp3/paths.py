from __future__ import annotations

from pathlib import Path
from typing import Union


OUTPUT_SUFFIX = ".mp3"
SOURCE_SUFFIX = ".flac"

# ':' is not allowed on FAT/NTFS/SMB targets.
_UNSAFE_CHAR = ":"
_REPLACEMENT = "-"


def output_name_for(name: str) -> str:
    """Return the hidden output file name for a source leaf name.

    The whole leaf (extension included) is kept, so `track:01.flac` becomes
    `.track-01.flac.mp3`.
    """
    return "." + name.replace(_UNSAFE_CHAR, _REPLACEMENT) + OUTPUT_SUFFIX


def output_path_for(src: Union[str, Path]) -> Path:
    """Map a source path to its output path in the same directory."""
    src_p = Path(src)
    return src_p.with_name(output_name_for(src_p.name))


def is_source_file(path: Union[str, Path]) -> bool:
    return Path(path).suffix == SOURCE_SUFFIX
