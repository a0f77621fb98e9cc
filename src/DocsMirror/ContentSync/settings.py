# === NAVMAP v1 ===
# {
#   "module": "DocsMirror.ContentSync.settings",
#   "purpose": "Pydantic v2 settings for the content sync engine.",
#   "sections": [
#     {
#       "id": "loglevel",
#       "name": "LogLevel",
#       "anchor": "class-loglevel",
#       "kind": "class"
#     },
#     {
#       "id": "logformat",
#       "name": "LogFormat",
#       "anchor": "class-logformat",
#       "kind": "class"
#     },
#     {
#       "id": "appcfg",
#       "name": "AppCfg",
#       "anchor": "class-appcfg",
#       "kind": "class"
#     },
#     {
#       "id": "assetcfg",
#       "name": "AssetCfg",
#       "anchor": "class-assetcfg",
#       "kind": "class"
#     },
#     {
#       "id": "runnercfg",
#       "name": "RunnerCfg",
#       "anchor": "class-runnercfg",
#       "kind": "class"
#     },
#     {
#       "id": "settings",
#       "name": "Settings",
#       "anchor": "class-settings",
#       "kind": "class"
#     },
#     {
#       "id": "load-settings",
#       "name": "load_settings",
#       "anchor": "function-load-settings",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""
Pydantic v2 settings for the content sync engine.

Every group reads ``CONTENTSYNC_``-prefixed environment variables, so a CI
job can pin behaviour without touching code:

- ``AppCfg``: project root, cache directory, logging, failure log
- ``AssetCfg``: download, resize and compression knobs for assets
- ``RunnerCfg``: concurrency override, timeouts, retry attempts, prefetch size
- ``Settings``: root aggregation returned by :func:`load_settings`
"""

from __future__ import annotations

import hashlib
import json
import os
from enum import Enum
from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# ============================================================================
# Enums for validated choices
# ============================================================================


class LogLevel(str, Enum):
    """Supported logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class LogFormat(str, Enum):
    """Supported log output formats."""

    CONSOLE = "console"
    JSON = "json"


def _running_in_ci() -> bool:
    return os.environ.get("CI") == "true" or os.environ.get("GITHUB_ACTIONS") == "true"


# ============================================================================
# Global configuration (AppCfg)
# ============================================================================


class AppCfg(BaseSettings):
    """Global application-level configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CONTENTSYNC_",
        case_sensitive=False,
        extra="ignore",
    )

    project_root: Path = Field(
        Path("."), description="Root against which relative output paths are resolved"
    )
    cache_dir: Path = Field(Path(".cache"), description="Directory for durable caches")
    log_level: LogLevel = Field(LogLevel.INFO, description="Root logging level")
    log_format: LogFormat = Field(
        LogFormat.CONSOLE, description="Pretty console or structured JSON"
    )
    failure_log_path: Path = Field(
        Path("image-failures.json"), description="Bounded JSON log of asset failures"
    )
    failure_logging: bool = Field(
        default_factory=lambda: not _running_in_ci(),
        description="Write the failure log (disabled on CI by default)",
    )

    @field_validator("project_root", "cache_dir", "failure_log_path", mode="before")
    @classmethod
    def expand_paths(cls, v: Any) -> Any:
        """Expand user home directories."""
        if isinstance(v, str):
            return Path(v).expanduser()
        if isinstance(v, Path):
            return v.expanduser()
        return v

    @property
    def asset_index_dir(self) -> Path:
        """Directory holding one JSON record per cached asset."""
        return self.cache_dir / "images"

    @property
    def ledger_path(self) -> Path:
        """Location of the incremental-sync ledger."""
        return self.cache_dir / "page-metadata.json"


# ============================================================================
# Asset pipeline configuration (AssetCfg)
# ============================================================================


class AssetCfg(BaseSettings):
    """Download, resize and compression settings for embedded assets."""

    model_config = SettingsConfigDict(
        env_prefix="CONTENTSYNC_ASSET_",
        case_sensitive=False,
        extra="ignore",
    )

    assets_dir: Path = Field(Path("static/images"), description="Where asset binaries live")
    public_prefix: str = Field("/images", description="Prefix of rewritten local references")
    max_width: int = Field(1280, description="Resize threshold in pixels", ge=1)
    min_size_for_processing: int = Field(
        50 * 1024, description="Assets smaller than this are stored unmodified", ge=0
    )
    compress_timeout_s: float = Field(45.0, description="Compression time budget", gt=0)
    download_timeout_s: float = Field(30.0, description="HTTP timeout per attempt", gt=0)
    download_attempts: int = Field(3, description="Download attempts per asset", ge=1)
    backoff_base_s: float = Field(1.0, description="Exponential backoff multiplier", ge=0)
    backoff_max_s: float = Field(4.0, description="Backoff ceiling", ge=0)
    jpeg_quality: int = Field(82, description="Re-encode quality for JPEG/WebP", ge=1, le=100)
    allowed_schemes: Annotated[tuple[str, ...], NoDecode] = Field(
        ("http", "https"), description="URL scheme allow-list"
    )
    allowed_hosts: Annotated[tuple[str, ...], NoDecode] = Field(
        (), description="Optional host allow-list; empty allows any host"
    )
    user_agent: str = Field("docsmirror-contentsync/1.0", description="User-Agent header")
    cache_ttl_days: int = Field(30, description="TTL for entries without a source stamp", ge=1)

    @field_validator("allowed_schemes", "allowed_hosts", mode="before")
    @classmethod
    def split_csv(cls, v: Any) -> Any:
        """Accept comma separated strings from the environment."""
        if isinstance(v, str):
            return tuple(part.strip().lower() for part in v.split(",") if part.strip())
        return v


# ============================================================================
# Runner configuration (RunnerCfg)
# ============================================================================


class RunnerCfg(BaseSettings):
    """Batch execution and retry settings."""

    model_config = SettingsConfigDict(
        env_prefix="CONTENTSYNC_",
        case_sensitive=False,
        extra="ignore",
    )

    concurrency_override: str | None = Field(
        None, description='Per-class override, e.g. "images:5,pages:10,blocks:20"'
    )
    per_item_timeout_s: float = Field(
        0, description="Per-item timeout for page pipelines (0 = disabled)", ge=0
    )
    max_retry_attempts: int = Field(3, description="Transform attempts per document", ge=1)
    retry_enabled: bool = Field(True, description="Use the multi-attempt transform loop")
    prefetch_max_size: int = Field(1000, description="Prefetch LRU capacity")
    max_concurrent_images: int = Field(5, description="Asset downloads per document", ge=1)

    @field_validator("prefetch_max_size", mode="before")
    @classmethod
    def clamp_prefetch(cls, v: Any) -> int:
        """Clamp prefetch capacity to [1, 10000]; invalid input keeps the default."""
        try:
            parsed = int(v)
        except (TypeError, ValueError):
            return 1000
        if parsed < 1:
            return 1000
        return min(parsed, 10000)


OUTPUT_SHAPING_FIELDS = frozenset(
    {"max_width", "jpeg_quality", "public_prefix", "min_size_for_processing"}
)


class Settings(BaseModel):
    """Aggregated configuration for every content sync component."""

    app: AppCfg = Field(default_factory=AppCfg)
    assets: AssetCfg = Field(default_factory=AssetCfg)
    runner: RunnerCfg = Field(default_factory=RunnerCfg)

    def compute_hash(self) -> str:
        """Stable short hash of the settings that influence generated output."""
        data = self.assets.model_dump(include=set(OUTPUT_SHAPING_FIELDS), mode="json")
        json_str = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()[:12]


def load_settings(**overrides: Any) -> Settings:
    """Build :class:`Settings` from the environment with optional group overrides.

    ``overrides`` maps group names (``app``, ``assets``, ``runner``) to dicts
    of field values that win over the environment.
    """

    groups = {"app": AppCfg, "assets": AssetCfg, "runner": RunnerCfg}
    kwargs: dict[str, Any] = {}
    for name, cfg_cls in groups.items():
        values = overrides.get(name) or {}
        kwargs[name] = cfg_cls(**values)
    return Settings(**kwargs)


__all__ = [
    "AppCfg",
    "AssetCfg",
    "LogFormat",
    "LogLevel",
    "RunnerCfg",
    "Settings",
    "load_settings",
]
