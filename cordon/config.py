"""
Quarantine Configuration

Defines the QuarantineConfig model and loading logic.
Configuration is stored in ~/.cordon/config.yaml under the 'quarantine' key.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from cordon import CONFIG_PATH, DEFAULT_QUARANTINE_DIR
from cordon.errors import ConfigError


SECTION_KEY = "quarantine"

# Files above this size are flagged as large-files
DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024


class QuarantineConfig(BaseModel):
    """Configuration for the quarantine gate, store and scanner."""

    enabled: bool = True
    quarantine_path: Path = Field(default=DEFAULT_QUARANTINE_DIR)
    autoscan: bool = True

    # Exposed for integrators; only enforced when auto_reject_over_threshold is set
    risk_threshold: int = Field(default=70, ge=0, le=100)
    auto_reject_over_threshold: bool = False

    # Scanner limits
    scan_timeout_seconds: float = Field(default=60.0, gt=0)
    max_file_size_bytes: int = Field(default=DEFAULT_MAX_FILE_SIZE, gt=0)
    max_archive_members: int = Field(default=10_000, gt=0)
    max_unpacked_bytes: int = Field(default=512 * 1024 * 1024, gt=0)
    max_walk_depth: int = Field(default=32, gt=0)
    max_walk_files: int = Field(default=20_000, gt=0)

    # Gate policies
    deny_rejected: bool = True
    log_pending_denials: bool = False
    fail_open_on_store_error: bool = True

    blocked_log_limit: int = Field(default=1000, gt=0)

    # Administrative server
    host: str = "127.0.0.1"
    port: int = Field(default=4874, gt=0, lt=65536)

    model_config = {"extra": "ignore"}

    @field_validator("quarantine_path", mode="before")
    @classmethod
    def expand_path(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    @property
    def scratch_path(self) -> Path:
        """Root under which per-scan extraction directories are created."""
        return self.quarantine_path / "scratch"

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump()
        data["quarantine_path"] = str(self.quarantine_path)
        return data


def config_from_dict(data: Dict[str, Any]) -> QuarantineConfig:
    """Build a QuarantineConfig from a dict, raising ConfigError on bad values."""
    try:
        return QuarantineConfig(**data)
    except ValidationError as e:
        issues = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(f"Invalid quarantine configuration: {issues}") from e


def load_config(config_path: Optional[Path] = None) -> QuarantineConfig:
    """
    Load quarantine configuration from ~/.cordon/config.yaml.

    Falls back to defaults if the file is missing or the section is absent.
    A file that exists but cannot be parsed, or values that fail validation,
    raise ConfigError.

    Args:
        config_path: Override config file path (for testing)

    Returns:
        QuarantineConfig with loaded or default values
    """
    if config_path is None:
        config_path = CONFIG_PATH

    if not config_path.exists():
        return QuarantineConfig()

    try:
        with open(config_path) as f:
            full_config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}") from e

    if not isinstance(full_config, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    section = full_config.get(SECTION_KEY) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{SECTION_KEY}' section must be a mapping")

    return config_from_dict(section)
