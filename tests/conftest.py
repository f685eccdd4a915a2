import os
import stat
import sys
from pathlib import Path

import pytest
from loguru import logger

from flac2mp3.config import ConverterSettings


# Stand-ins for the real tools. `flac` just copies the source to stdout and
# `lame` copies stdin to the output path, so a successful conversion leaves
# an MP3 whose bytes equal the FLAC's.
FAKE_METAFLAC = """#!/bin/sh
# metaflac --export-tags-to=- FILE
case "$(basename "$2")" in
  *missingtags*) exit 0 ;;
  *bad*) printf 'TITLE=Broken\\nthis line has no separator\\n'; exit 0 ;;
  *metafail*) echo "metaflac: cannot read $2" >&2; exit 1 ;;
  *latin1*) printf 'TITLE=caf\\351\\n'; exit 0 ;;
esac
printf 'TITLE=Song\\nARTIST=Band=Name\\nALBUM=Record\\nTRACKNUMBER=3\\nGENRE=Rock\\nDATE=1999\\n'
"""

FAKE_FLAC = """#!/bin/sh
# flac -c -d FILE
case "$(basename "$3")" in
  *decodefail*) printf 'partial'; exit 3 ;;
  *slow*) exec sleep 30 ;;
esac
exec cat "$3"
"""

FAKE_LAME = """#!/bin/sh
# lame ... - OUT
for a in "$@"; do out="$a"; done
if [ -n "$FAKE_LAME_LOG" ]; then
  printf '%s\\n' "$@" >> "$FAKE_LAME_LOG"
fi
case "$(basename "$out")" in
  *encodefail*) cat > "$out"; exit 1 ;;
esac
exec cat > "$out"
"""


def _write_tool(path: Path, body: str) -> Path:
    path.write_text(body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def fake_tools(tmp_path):
    """Write fake metaflac/flac/lame scripts and return their paths."""
    if sys.platform.startswith("win"):
        pytest.skip("fake tools are POSIX shell scripts")
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    return {
        "metaflac": _write_tool(bin_dir / "metaflac", FAKE_METAFLAC),
        "flac": _write_tool(bin_dir / "flac", FAKE_FLAC),
        "lame": _write_tool(bin_dir / "lame", FAKE_LAME),
    }


@pytest.fixture
def settings(fake_tools):
    return ConverterSettings(
        workers=4,
        metaflac_bin=str(fake_tools["metaflac"]),
        flac_bin=str(fake_tools["flac"]),
        lame_bin=str(fake_tools["lame"]),
    )


@pytest.fixture
def music_dir(tmp_path):
    root = tmp_path / "music"
    root.mkdir()
    return root


def make_flac(path: Path, data: bytes = b"fLaC fake audio") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


@pytest.fixture
def log_messages():
    """Capture loguru messages (WARNING and above) as plain strings."""
    messages = []
    sink_id = logger.add(lambda m: messages.append(m.record["message"]), level="WARNING", format="{message}")
    yield messages
    logger.remove(sink_id)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("FLAC2MP3_"):
            monkeypatch.delenv(key)
