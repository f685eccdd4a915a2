"""Preflight checks for the external tools.

Uses only the Python standard library.
"""
from __future__ import annotations

import shutil
from dataclasses import dataclass
from typing import Dict, Optional

from .config import ConverterSettings


@dataclass
class ToolStatus:
    name: str
    available: bool
    path: Optional[str] = None
    error: Optional[str] = None


def probe_tool(name: str) -> ToolStatus:
    """Resolve a tool by name or path without running it."""
    path = shutil.which(name)
    if not path:
        return ToolStatus(name=name, available=False, error=f"{name} not found in PATH")
    return ToolStatus(name=name, available=True, path=path)


def probe_tools(cfg: ConverterSettings) -> Dict[str, ToolStatus]:
    """Probe the tag export, decode and encode tools configured in `cfg`."""
    return {
        "metaflac": probe_tool(cfg.metaflac_bin),
        "flac": probe_tool(cfg.flac_bin),
        "lame": probe_tool(cfg.lame_bin),
    }
