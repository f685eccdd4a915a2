import threading
import time

import pytest

from flac2mp3.cancel import CancellationScope
from flac2mp3.encoder import (
    build_flac_decode_cmd,
    build_lame_encode_cmd,
    remove_partial_output,
    transcode,
)
from flac2mp3.errors import (
    ExternalOperationError,
    OperationCancelled,
    TagVerificationError,
)
from flac2mp3.paths import output_path_for

from conftest import make_flac


TAGS = {
    "TITLE": "Song",
    "TRACKNUMBER": "3",
    "GENRE": "Rock",
    "ARTIST": "Band=Name",
    "ALBUM": "Record",
    "DATE": "1999",
    "COMMENT": "not passed",
}


def test_build_flac_decode_cmd(tmp_path):
    src = tmp_path / "a.flac"
    assert build_flac_decode_cmd(src) == ["flac", "-c", "-d", str(src)]


def test_build_lame_encode_cmd_passes_tags_in_order(tmp_path):
    out = tmp_path / ".a.flac.mp3"
    cmd = build_lame_encode_cmd(out, TAGS, lame="/usr/bin/lame", bitrate=256)
    assert cmd == [
        "/usr/bin/lame", "-b", "256", "-h",
        "--tt", "Song",
        "--tn", "3",
        "--tg", "Rock",
        "--ta", "Band=Name",
        "--tl", "Record",
        "--ty", "1999",
        "--add-id3v2", "-", str(out),
    ]


def test_build_lame_encode_cmd_omits_missing_tags(tmp_path):
    out = tmp_path / ".a.flac.mp3"
    cmd = build_lame_encode_cmd(out, {"title": "lower-case key", "DATE": ""})
    assert cmd == ["lame", "-b", "192", "-h", "--tt", "lower-case key", "--ty", "", "--add-id3v2", "-", str(out)]


def test_remove_partial_output_ignores_missing(tmp_path):
    remove_partial_output(tmp_path / "nothing.mp3")


@pytest.fixture
def tools(fake_tools):
    return {"flac": str(fake_tools["flac"]), "lame": str(fake_tools["lame"])}


def test_transcode_pipes_decoder_into_encoder(tools, music_dir, tmp_path, monkeypatch):
    lame_log = tmp_path / "lame-args.txt"
    monkeypatch.setenv("FAKE_LAME_LOG", str(lame_log))
    src = make_flac(music_dir / "Disc:1.flac", b"x" * 200_000)

    out = transcode(src, TAGS, CancellationScope(), **tools)

    assert out == music_dir / ".Disc-1.flac.mp3"
    assert out.read_bytes() == src.read_bytes()
    args = lame_log.read_text().splitlines()
    assert args[-2:] == ["-", str(out)]
    assert args[args.index("--ta") + 1] == "Band=Name"
    assert "not passed" not in args


def test_encode_failure_removes_output(tools, music_dir):
    src = make_flac(music_dir / "encodefail.flac")
    with pytest.raises(ExternalOperationError) as ei:
        transcode(src, TAGS, CancellationScope(), **tools)
    assert ei.value.returncode == 1
    assert ei.value.path == src
    assert not output_path_for(src).exists()


def test_decode_failure_removes_output(tools, music_dir):
    src = make_flac(music_dir / "decodefail.flac")
    with pytest.raises(ExternalOperationError) as ei:
        transcode(src, TAGS, CancellationScope(), **tools)
    # lame finished fine on the truncated stream; the decoder's failure wins.
    assert ei.value.returncode == 3
    assert "flac" in str(ei.value)
    assert not output_path_for(src).exists()


def test_encoder_that_cannot_start_tears_down_decoder(fake_tools, music_dir, tmp_path):
    src = make_flac(music_dir / "slow.flac")
    t0 = time.monotonic()
    with pytest.raises(ExternalOperationError, match="failed to start"):
        transcode(
            src,
            TAGS,
            CancellationScope(),
            flac=str(fake_tools["flac"]),
            lame=str(tmp_path / "no-such-lame"),
        )
    assert time.monotonic() - t0 < 10
    assert not output_path_for(src).exists()


def test_nul_byte_in_tag_is_a_start_failure(tools, music_dir):
    src = make_flac(music_dir / "song.flac")
    with pytest.raises(ExternalOperationError, match="failed to start") as ei:
        transcode(src, {"TITLE": "a\x00b"}, CancellationScope(), **tools)
    assert not isinstance(ei.value, OperationCancelled)
    assert ei.value.path == src
    assert not output_path_for(src).exists()


def test_cancellation_mid_conversion(tools, music_dir):
    src = make_flac(music_dir / "slow.flac")
    scope = CancellationScope()
    threading.Timer(0.3, scope.cancel).start()
    t0 = time.monotonic()
    with pytest.raises(OperationCancelled):
        transcode(src, TAGS, scope, **tools)
    assert time.monotonic() - t0 < 10
    assert not output_path_for(src).exists()


def test_cancelled_scope_starts_nothing(tools, music_dir):
    src = make_flac(music_dir / "song.flac")
    scope = CancellationScope()
    scope.cancel()
    with pytest.raises(OperationCancelled):
        transcode(src, TAGS, scope, **tools)
    assert not output_path_for(src).exists()


def test_failed_verification_removes_output(tools, music_dir):
    src = make_flac(music_dir / "song.flac")

    def verify(out):
        assert out.exists()
        raise TagVerificationError(["title: missing"])

    with pytest.raises(TagVerificationError) as ei:
        transcode(src, TAGS, CancellationScope(), verify=verify, **tools)
    assert ei.value.path == src
    assert not output_path_for(src).exists()


def test_existing_output_is_replaced(tools, music_dir):
    src = make_flac(music_dir / "song.flac", b"new audio")
    output_path_for(src).write_bytes(b"old audio, much longer than the new one")
    out = transcode(src, TAGS, CancellationScope(), **tools)
    assert out.read_bytes() == b"new audio"
