# === NAVMAP v1 ===
# {
#   "module": "DocsMirror.ContentSync.resources",
#   "purpose": "Host resource inspection and adaptive concurrency limits per operation class",
#   "sections": [
#     {
#       "id": "resourcesnapshot",
#       "name": "ResourceSnapshot",
#       "anchor": "class-resourcesnapshot",
#       "kind": "class"
#     },
#     {
#       "id": "resourceprovider",
#       "name": "ResourceProvider",
#       "anchor": "class-resourceprovider",
#       "kind": "class"
#     },
#     {
#       "id": "psutilresourceprovider",
#       "name": "PsutilResourceProvider",
#       "anchor": "class-psutilresourceprovider",
#       "kind": "class"
#     },
#     {
#       "id": "parse-concurrency-override",
#       "name": "parse_concurrency_override",
#       "anchor": "function-parse-concurrency-override",
#       "kind": "function"
#     },
#     {
#       "id": "detect-optimal-concurrency",
#       "name": "detect_optimal_concurrency",
#       "anchor": "function-detect-optimal-concurrency",
#       "kind": "function"
#     },
#     {
#       "id": "resourcemanager",
#       "name": "ResourceManager",
#       "anchor": "class-resourcemanager",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Adaptive concurrency limits derived from host CPU and memory.

**Model:**

Each operation class declares a ``[min, max]`` concurrency window and an
estimated memory cost per concurrent unit. On every decision the manager
reads a fresh :class:`ResourceSnapshot` and computes::

    memory_bound = floor(free_gb * 0.7 / cost_per_unit)
    cpu_bound    = max(2, floor(cores * 0.75))
    limit        = clamp(min(memory_bound, cpu_bound), min, max)

An explicit override (``"images:5,pages:10"``) wins over the computed value so
CI runs stay deterministic. A rate-limit multiplier in ``[0.1, 1.0]`` scales
the final limit down after upstream throttling, never below one.

**Testing:**

The host is reached only through a :class:`ResourceProvider`, so tests pass
a stub provider instead of patching :mod:`psutil`.
"""

from __future__ import annotations

import logging
import math
import os
import threading
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Protocol

import psutil

from .errors import FatalConfigError

__all__ = [
    "ConcurrencyConfig",
    "DEFAULT_CONCURRENCY_CONFIGS",
    "PsutilResourceProvider",
    "ResourceManager",
    "ResourceProvider",
    "ResourceSnapshot",
    "detect_optimal_concurrency",
    "parse_concurrency_override",
]

logger = logging.getLogger(__name__)

_GB = 1024**3
MEMORY_HEADROOM = 0.7
CPU_SHARE = 0.75
OVERRIDE_ENV_VAR = "CONTENTSYNC_CONCURRENCY_OVERRIDE"


@dataclass(frozen=True)
class ResourceSnapshot:
    """Point-in-time view of host resources."""

    cpu_cores: int
    free_memory_gb: float
    total_memory_gb: float


class ResourceProvider(Protocol):
    """Source of host resource readings."""

    def get_cpu_cores(self) -> int: ...

    def get_free_memory_gb(self) -> float: ...

    def get_total_memory_gb(self) -> float: ...


class PsutilResourceProvider:
    """Reads CPU count and memory from the running host via :mod:`psutil`."""

    def get_cpu_cores(self) -> int:
        return psutil.cpu_count(logical=True) or os.cpu_count() or 1

    def get_free_memory_gb(self) -> float:
        return psutil.virtual_memory().available / _GB

    def get_total_memory_gb(self) -> float:
        return psutil.virtual_memory().total / _GB


@dataclass(frozen=True)
class ConcurrencyConfig:
    """Concurrency window and memory footprint for one operation class."""

    min_concurrency: int
    max_concurrency: int
    memory_per_operation_gb: float

    def __post_init__(self) -> None:
        if self.min_concurrency < 1:
            raise FatalConfigError(f"min_concurrency must be >= 1, got {self.min_concurrency}")
        if self.max_concurrency < self.min_concurrency:
            raise FatalConfigError(
                f"max_concurrency ({self.max_concurrency}) < min_concurrency "
                f"({self.min_concurrency})"
            )
        if self.memory_per_operation_gb <= 0:
            raise FatalConfigError("memory_per_operation_gb must be > 0")


DEFAULT_CONCURRENCY_CONFIGS: Dict[str, ConcurrencyConfig] = {
    # Image decode/resize is memory heavy.
    "images": ConcurrencyConfig(min_concurrency=3, max_concurrency=10, memory_per_operation_gb=0.5),
    "pages": ConcurrencyConfig(min_concurrency=3, max_concurrency=15, memory_per_operation_gb=0.2),
    "blocks": ConcurrencyConfig(min_concurrency=5, max_concurrency=30, memory_per_operation_gb=0.05),
}


def parse_concurrency_override(raw: Optional[str]) -> Dict[str, int]:
    """Parse ``"class:value,class:value"`` into a mapping.

    Empty input yields an empty mapping. Entries are stripped; a value that
    is not a positive integer is a configuration error.

    Raises:
        FatalConfigError: On a malformed pair or a non-positive value.

    Examples:
        >>> parse_concurrency_override("images:5, pages:10")
        {'images': 5, 'pages': 10}
    """

    overrides: Dict[str, int] = {}
    if not raw or not raw.strip():
        return overrides
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        key, sep, value = pair.partition(":")
        key = key.strip()
        if not sep or not key:
            raise FatalConfigError(f"Malformed concurrency override entry: {pair!r}")
        try:
            parsed = int(value.strip())
        except ValueError as exc:
            raise FatalConfigError(
                f"Concurrency override for {key!r} is not an integer: {value!r}"
            ) from exc
        if parsed < 1:
            raise FatalConfigError(f"Concurrency override for {key!r} must be >= 1, got {parsed}")
        overrides[key] = parsed
    return overrides


def detect_optimal_concurrency(config: ConcurrencyConfig, snapshot: ResourceSnapshot) -> int:
    """Compute the clamped concurrency for ``config`` under ``snapshot``."""

    free_gb = max(0.0, float(snapshot.free_memory_gb))
    if math.isnan(free_gb):
        free_gb = 0.0
    memory_bound = math.floor(free_gb * MEMORY_HEADROOM / config.memory_per_operation_gb)
    cpu_bound = max(2, math.floor(max(0, snapshot.cpu_cores) * CPU_SHARE))
    return max(config.min_concurrency, min(config.max_concurrency, memory_bound, cpu_bound))


class ResourceManager:
    """Decides concurrency per operation class from live host resources.

    Example:
        >>> manager = ResourceManager(overrides="images:4")
        >>> manager.get_concurrency("images")
        4
    """

    def __init__(
        self,
        provider: Optional[ResourceProvider] = None,
        *,
        configs: Optional[Mapping[str, ConcurrencyConfig]] = None,
        overrides: Optional[str | Mapping[str, int]] = None,
    ) -> None:
        self.provider: ResourceProvider = provider or PsutilResourceProvider()
        self.configs: Dict[str, ConcurrencyConfig] = dict(configs or DEFAULT_CONCURRENCY_CONFIGS)
        if overrides is None:
            overrides = os.environ.get(OVERRIDE_ENV_VAR)
        if isinstance(overrides, Mapping):
            self.overrides = parse_concurrency_override(
                ",".join(f"{k}:{v}" for k, v in overrides.items())
            )
        else:
            self.overrides = parse_concurrency_override(overrides)
        self._rate_limit_multiplier = 1.0
        self._lock = threading.Lock()

    def snapshot(self) -> ResourceSnapshot:
        """Read a fresh :class:`ResourceSnapshot` from the provider."""

        return ResourceSnapshot(
            cpu_cores=int(self.provider.get_cpu_cores() or 0),
            free_memory_gb=float(self.provider.get_free_memory_gb() or 0.0),
            total_memory_gb=float(self.provider.get_total_memory_gb() or 0.0),
        )

    def base_concurrency(self, op_class: str) -> int:
        """Concurrency before the rate-limit multiplier is applied."""

        if op_class in self.overrides:
            return self.overrides[op_class]
        config = self.configs.get(op_class)
        if config is None:
            raise FatalConfigError(f"Unknown operation class: {op_class!r}")
        return detect_optimal_concurrency(config, self.snapshot())

    def get_concurrency(self, op_class: str) -> int:
        """Return the concurrency to use for ``op_class`` right now."""

        base = self.base_concurrency(op_class)
        with self._lock:
            multiplier = self._rate_limit_multiplier
        return max(1, math.floor(base * multiplier))

    def set_rate_limit_multiplier(self, multiplier: float) -> None:
        """Scale future limits by ``multiplier`` clamped to ``[0.1, 1.0]``."""

        clamped = max(0.1, min(1.0, float(multiplier)))
        with self._lock:
            self._rate_limit_multiplier = clamped
        logger.info("Rate-limit multiplier set to %.2f", clamped)

    def reset_rate_limit_multiplier(self) -> None:
        with self._lock:
            self._rate_limit_multiplier = 1.0

    @property
    def rate_limit_multiplier(self) -> float:
        with self._lock:
            return self._rate_limit_multiplier

    def summary(self) -> str:
        """Human readable resource summary for logs."""

        snap = self.snapshot()
        return (
            f"{snap.cpu_cores} CPU cores, "
            f"{snap.free_memory_gb:.1f}/{snap.total_memory_gb:.1f} GB RAM free"
        )

    def log_concurrency_config(self) -> None:
        """Log the resource summary and the limit chosen for every class."""

        limits = ", ".join(f"{name}={self.get_concurrency(name)}" for name in sorted(self.configs))
        logger.info(
            "System resources: %s; adaptive concurrency: %s",
            self.summary(),
            limits,
            extra={"extra_fields": {"overrides": dict(self.overrides)}},
        )
