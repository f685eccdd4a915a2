"""flac2mp3

Core package for converting a tree of FLAC masters into hidden MP3 files
that sit next to their sources. See `DESIGN.md` for the architecture.
"""

__all__ = [
    "__version__",
]

# Keep in sync with pyproject.toml
__version__ = "0.1.0"
