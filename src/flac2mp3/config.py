from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover - Python <3.11 not supported per pyproject
    tomllib = None  # type: ignore

from tomlkit import dumps as toml_dumps


DEFAULT_CONFIG_PATH = Path("~/.config/flac2mp3/config.toml").expanduser()
ENV_PREFIX = "FLAC2MP3_"

# Queue capacity and worker count are the same number.
DEFAULT_WORKERS = 32
DEFAULT_BITRATE = 192


class ConverterSettings(BaseSettings):
    """Global settings for flac2mp3.

    Priority (lowest -> highest):
    - Class defaults below
    - TOML file at `config_path` (default: ~/.config/flac2mp3/config.toml)
    - Environment variables with prefix FLAC2MP3_
    - CLI overrides passed to `load(overrides=...)`
    """

    # Logging
    log_level: str = Field(default="INFO", description="Console log level")
    log_json: Optional[str] = Field(default=None, description="Path for structured JSON log file")

    # Run
    workers: int = Field(default=DEFAULT_WORKERS, ge=1, description="Parallel workers (also the queue capacity)")
    bitrate: int = Field(default=DEFAULT_BITRATE, ge=8, le=320, description="MP3 bitrate in kbps passed to lame -b")
    recurse: bool = Field(default=True, description="Walk into child directories")
    force: bool = Field(default=False, description="Reconvert regardless of timestamps")
    verify_tags: bool = Field(default=False, description="After encoding, verify a subset of ID3 tags were written")
    verify_strict: bool = Field(default=False, description="Treat any verification discrepancy as a failure")

    # External tools
    metaflac_bin: str = Field(default="metaflac", description="Tag export tool")
    flac_bin: str = Field(default="flac", description="FLAC decoder")
    lame_bin: str = Field(default="lame", description="MP3 encoder")

    # Config source/path (not persisted as part of effective config when writing)
    config_path: Path = Field(default=DEFAULT_CONFIG_PATH, exclude=True)

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    @classmethod
    def _toml_file_source(cls, config_path: Path) -> Dict[str, Any]:
        """Read settings from a TOML file if it exists; return dict values.

        Unknown keys are ignored by pydantic via extra="ignore".
        """
        if not config_path or not config_path.exists():
            return {}
        if tomllib is None:
            return {}
        with config_path.open("rb") as f:
            data = tomllib.load(f)
        if not isinstance(data, dict):
            return {}
        return data  # type: ignore[return-value]

    @classmethod
    def load(
        cls,
        *,
        config_path: Optional[Path] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "ConverterSettings":
        """Load settings from defaults + TOML + env + CLI overrides.

        - config_path: path to TOML config; defaults to ~/.config/flac2mp3/config.toml
        - overrides: dict of CLI values (None values are ignored)
        """
        cp = config_path or DEFAULT_CONFIG_PATH
        file_values = cls._toml_file_source(cp)
        # Init kwargs beat env in pydantic-settings, so let env win over the file here.
        base = cls(**file_values)
        env_values = cls().model_dump(exclude_unset=True)
        merged = base.model_dump()
        merged.update(env_values)
        if overrides:
            merged.update({k: v for k, v in overrides.items() if v is not None})
        settings = cls(**merged)
        settings.config_path = cp
        return settings

    def to_toml(self) -> str:
        """Serialize effective settings (excluding ephemeral fields) to TOML string."""
        data = self.model_dump(exclude={"config_path"}, exclude_none=True)
        return toml_dumps(data)

    def write(self, path: Optional[Path] = None) -> Path:
        """Write effective config to TOML at `path` (or default path). Creates parent dirs.

        Returns the path written.
        """
        target = path or self.config_path or DEFAULT_CONFIG_PATH
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.to_toml(), encoding="utf-8")
        return target


def cli_overrides_from_args(args: Any) -> Dict[str, Any]:
    """Extract known settings keys from argparse Namespace into an overrides dict.

    Unknown keys are ignored; None values are preserved for filtering by `load()`.
    """
    keys = {
        "log_level",
        "log_json",
        "workers",
        "bitrate",
        "recurse",
        "force",
        "verify_tags",
        "verify_strict",
        "metaflac_bin",
        "flac_bin",
        "lame_bin",
    }
    result: Dict[str, Any] = {}
    for k in keys:
        if hasattr(args, k):
            result[k] = getattr(args, k)
    return result
