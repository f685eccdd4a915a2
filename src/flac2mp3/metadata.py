"""Tag export from FLAC masters and post-encode ID3 verification.

Tags are read by running `metaflac --export-tags-to=-`, which prints one
Vorbis comment per line as NAME=VALUE. Verification reads the encoded MP3
back with mutagen.
"""
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Union

from .cancel import CancellationScope
from .errors import TagParseError
from .logging import truncate


TagMapping = Dict[str, str]

# Vorbis comment -> EasyID3 key, for the tags passed to the encoder.
VERIFIED_TAGS: Dict[str, str] = {
    "TITLE": "title",
    "TRACKNUMBER": "tracknumber",
    "GENRE": "genre",
    "ARTIST": "artist",
    "ALBUM": "album",
    "DATE": "date",
}


def build_export_tags_cmd(src: Path, *, metaflac: str = "metaflac") -> List[str]:
    return [metaflac, "--export-tags-to=-", str(src)]


def parse_tags(text: str, path: Optional[Path] = None) -> TagMapping:
    """Parse NAME=VALUE lines into a mapping.

    Splits on the first '='; the value may contain more. Blank lines are
    ignored, any other line without '=' raises TagParseError.
    """
    tags: TagMapping = {}
    for line_no, raw in enumerate(text.split("\n"), start=1):
        line = raw.rstrip("\r")
        if not line:
            continue
        name, sep, value = line.partition("=")
        if not sep:
            raise TagParseError(line_no, truncate(line, max_len=200, max_lines=1), path)
        tags[name] = value
    return tags


def extract_tags(
    src: Union[str, Path],
    scope: CancellationScope,
    *,
    metaflac: str = "metaflac",
) -> TagMapping:
    """Export the Vorbis comments of `src` through the tag tool."""
    src_p = Path(src)
    cmd = build_export_tags_cmd(src_p, metaflac=metaflac)
    # stderr stays attached to ours
    proc = scope.spawn(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE)
    out = scope.finish(proc, capture=True) or b""
    return parse_tags(out.decode("utf-8", errors="surrogateescape"), src_p)


def tag_value(tags: TagMapping, name: str) -> Optional[str]:
    """Look a tag up exactly, then case-insensitively."""
    if name in tags:
        return tags[name]
    wanted = name.casefold()
    for key, value in tags.items():
        if key.casefold() == wanted:
            return value
    return None


def verify_tags_flac_vs_mp3(tags: TagMapping, mp3_path: Path) -> List[str]:
    """Compare the encoder-tagged fields of `tags` against the MP3's ID3 tags.

    Returns a list of human-readable discrepancies (empty when all match).
    """
    from mutagen.easyid3 import EasyID3
    from mutagen.id3 import ID3NoHeaderError

    try:
        id3 = EasyID3(str(mp3_path))
    except ID3NoHeaderError:
        id3 = {}

    problems: List[str] = []
    for vorbis_key, id3_key in VERIFIED_TAGS.items():
        expected = tag_value(tags, vorbis_key)
        if not expected:
            continue
        actual = id3.get(id3_key)
        got = actual[0] if actual else None
        if got is None:
            problems.append(f"{id3_key}: missing (expected {expected!r})")
        elif got != expected:
            problems.append(f"{id3_key}: {got!r} != {expected!r}")
    return problems
