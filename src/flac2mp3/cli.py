from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from . import __version__
from .config import ConverterSettings, cli_overrides_from_args
from .convert_dir import EXIT_OK, cmd_convert_dir
from .logging import bind_run, configure_logging, shutdown


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="flac2mp3",
        description="Convert FLAC files to hidden MP3 siblings, skipping ones that are up to date.",
    )
    p.add_argument("dir", nargs="?", default=".", help="Root directory to scan (default: current directory)")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument(
        "--recurse",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Whether to walk into child directories (default: yes)",
    )
    p.add_argument("-j", "--workers", type=int, default=None, help="Parallel conversions, also the queue size (default 32)")
    p.add_argument("-b", "--bitrate", type=int, default=None, help="MP3 bitrate in kbps (default 192)")
    p.add_argument("--force", action="store_const", const=True, default=None, help="Reconvert regardless of timestamps")
    p.add_argument(
        "--dry-run",
        action="store_true",
        help="Show plan (convert/skip/reasons) and exit without encoding",
    )
    p.add_argument(
        "--verify-tags",
        action="store_const",
        const=True,
        default=None,
        help="After encoding, verify a subset of tags persisted to the MP3",
    )
    p.add_argument(
        "--verify-strict",
        action="store_const",
        const=True,
        default=None,
        help="Treat any tag verification discrepancy as a failure",
    )
    p.add_argument("--log-level", default=None, help="Console log level (default INFO)")
    p.add_argument("--log-json", default=None, help="Write structured JSON lines to this path")
    p.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default ~/.config/flac2mp3/config.toml)",
    )
    p.add_argument("--write-config", action="store_true", help="Write the effective config and exit")
    return p


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    overrides = cli_overrides_from_args(args)
    config_path = Path(args.config_path).expanduser() if args.config_path else None
    try:
        cfg = ConverterSettings.load(config_path=config_path, overrides=overrides)
    except ValidationError as exc:
        parser.error(str(exc))

    if args.write_config:
        written = cfg.write(config_path)
        print(f"Config written to: {written}")
        return EXIT_OK

    configure_logging(cfg.log_level, cfg.log_json)
    bind_run()
    try:
        exit_code, _ = cmd_convert_dir(cfg, args.dir, dry_run=args.dry_run)
    finally:
        shutdown()
    return exit_code


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
