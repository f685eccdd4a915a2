"""Encoder command construction and execution.

The decoder (`flac -c -d`) writes WAV to an OS pipe that is the encoder's
(`lame`) stdin. Both run in one OperationGroup: when either fails or the
run is cancelled the other is terminated, and the partially written output
is removed so the next run picks the item up again.
"""
from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Union

from loguru import logger

from .cancel import CancellationScope, OperationGroup
from .config import DEFAULT_BITRATE
from .errors import ConversionError, PipeSetupError
from .metadata import TagMapping, tag_value
from .paths import output_path_for


# lame option -> Vorbis comment, in the order they are passed.
LAME_TAG_OPTIONS = (
    ("--tt", "TITLE"),
    ("--tn", "TRACKNUMBER"),
    ("--tg", "GENRE"),
    ("--ta", "ARTIST"),
    ("--tl", "ALBUM"),
    ("--ty", "DATE"),
)


def build_flac_decode_cmd(src: Path, *, flac: str = "flac") -> List[str]:
    """Decode `src` to WAV on stdout."""
    return [flac, "-c", "-d", str(src)]


def build_lame_encode_cmd(
    out_path: Path,
    tags: TagMapping,
    *,
    lame: str = "lame",
    bitrate: int = DEFAULT_BITRATE,
) -> List[str]:
    """Build lame command to read WAV from stdin and write an ID3v2-tagged MP3.

    Only tags present in `tags` are passed; an empty value is passed as-is.
    """
    cmd = [lame, "-b", str(bitrate), "-h"]
    for option, name in LAME_TAG_OPTIONS:
        value = tag_value(tags, name)
        if value is not None:
            cmd.extend([option, value])
    cmd.extend(["--add-id3v2", "-", str(out_path)])
    return cmd


def remove_partial_output(path: Path) -> None:
    """Best-effort removal; never raises."""
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.debug(f"Could not remove partial output {path}: {exc}")


def run_flac_pipe_to_lame(
    src: Path,
    out_path: Path,
    tags: TagMapping,
    scope: CancellationScope,
    *,
    flac: str = "flac",
    lame: str = "lame",
    bitrate: int = DEFAULT_BITRATE,
) -> None:
    """Run flac decoding into lame; raise the first failure of the pair."""
    decode_cmd = build_flac_decode_cmd(src, flac=flac)
    encode_cmd = build_lame_encode_cmd(out_path, tags, lame=lame, bitrate=bitrate)

    try:
        read_fd, write_fd = os.pipe()
    except OSError as exc:
        raise PipeSetupError(f"cannot create decode pipe: {exc}", src) from exc

    with OperationGroup(scope) as group:
        try:
            group.start(decode_cmd, stdin=subprocess.DEVNULL, stdout=write_fd)
            group.start(encode_cmd, stdin=read_fd)
        finally:
            # The children hold their own copies; ours would keep the pipe open.
            os.close(write_fd)
            os.close(read_fd)


def transcode(
    src: Union[str, Path],
    tags: TagMapping,
    scope: CancellationScope,
    *,
    flac: str = "flac",
    lame: str = "lame",
    bitrate: int = DEFAULT_BITRATE,
    verify: Optional[Callable[[Path], None]] = None,
) -> Path:
    """Convert `src` to its hidden MP3 sibling and return the output path.

    `verify`, when given, is called with the output path after a successful
    encode and may raise ConversionError. On any failure the output file is
    removed before the error propagates.
    """
    src_p = Path(src)
    out_path = output_path_for(src_p)
    try:
        run_flac_pipe_to_lame(src_p, out_path, tags, scope, flac=flac, lame=lame, bitrate=bitrate)
        if verify is not None:
            verify(out_path)
    except BaseException as exc:
        remove_partial_output(out_path)
        if isinstance(exc, ConversionError) and exc.path is None:
            exc.path = src_p
        raise
    return out_path
