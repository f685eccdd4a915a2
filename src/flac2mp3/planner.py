"""Incremental planner: decide per source whether its MP3 is stale.

Stateless; decisions come from filesystem timestamps on every run.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional, Union

from .errors import EnumerationError
from .paths import output_path_for


Action = Literal["convert", "skip"]


@dataclass(frozen=True)
class PlanItem:
    action: Action
    reason: str
    src_path: Path
    output_path: Path


def _stat_mtime_ns(path: Path) -> Optional[int]:
    """Return st_mtime_ns, None when the path does not exist."""
    try:
        return path.stat().st_mtime_ns
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise EnumerationError(f"cannot stat {path}: {exc}", path) from exc


def plan_item(
    src: Union[str, Path],
    out: Optional[Union[str, Path]] = None,
    *,
    force: bool = False,
) -> PlanItem:
    """Plan one source.

    - Convert: output missing, output older than the source, or forced.
    - Skip: output mtime is not earlier than the source's.

    Stat failures other than not-found raise EnumerationError.
    """
    src_p = Path(src)
    out_p = Path(out) if out is not None else output_path_for(src_p)
    if force:
        return PlanItem("convert", "force", src_p, out_p)

    out_mtime = _stat_mtime_ns(out_p)
    if out_mtime is None:
        return PlanItem("convert", "missing output", src_p, out_p)

    src_mtime = _stat_mtime_ns(src_p)
    if src_mtime is None:
        raise EnumerationError(f"source disappeared during scan: {src_p}", src_p)
    if out_mtime < src_mtime:
        return PlanItem("convert", "source newer", src_p, out_p)
    return PlanItem("skip", "up to date", src_p, out_p)


def needs_conversion(src: Union[str, Path], out: Optional[Union[str, Path]] = None) -> bool:
    return plan_item(src, out).action == "convert"
