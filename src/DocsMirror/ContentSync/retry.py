# === NAVMAP v1 ===
# {
#   "module": "DocsMirror.ContentSync.retry",
#   "purpose": "Transform-then-verify retry loop that removes forbidden references from documents",
#   "sections": [
#     {
#       "id": "retryoutcome",
#       "name": "RetryOutcome",
#       "anchor": "class-retryoutcome",
#       "kind": "class"
#     },
#     {
#       "id": "passstats",
#       "name": "PassStats",
#       "anchor": "class-passstats",
#       "kind": "class"
#     },
#     {
#       "id": "retryattemptrecord",
#       "name": "RetryAttemptRecord",
#       "anchor": "class-retryattemptrecord",
#       "kind": "class"
#     },
#     {
#       "id": "retryreport",
#       "name": "RetryReport",
#       "anchor": "class-retryreport",
#       "kind": "class"
#     },
#     {
#       "id": "retrymetrics",
#       "name": "RetryMetrics",
#       "anchor": "class-retrymetrics",
#       "kind": "class"
#     },
#     {
#       "id": "retryorchestrator",
#       "name": "RetryOrchestrator",
#       "anchor": "class-retryorchestrator",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Transform-then-verify retry orchestration.

Responsibilities
----------------
- Run an opaque single-pass transform over a document until an opaque
  validity predicate ("no forbidden references remain") holds.
- Stop early when an attempt returns its input unchanged: a reference that
  failed permanently reproduces identical output, so another pass cannot
  help. This ``STUCK`` outcome is distinct from running out of attempts.
- Return the best text obtained on every path, together with a
  :class:`RetryReport` whose ``saved_bytes`` sums all attempts.

Design Notes
------------
- The orchestrator never looks inside the text; diagnostics come from the
  optional ``count_forbidden`` callable.
- ``retries`` is always ``attempts_used - 1``.
- Exceptions raised by the transform propagate. The batch layer isolates
  them per item.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import Callable, List, Optional, Tuple

__all__ = [
    "PassStats",
    "RetryAttemptRecord",
    "RetryMetrics",
    "RetryOrchestrator",
    "RetryOutcome",
    "RetryReport",
    "Transform",
]

LOGGER = logging.getLogger(__name__)


class RetryOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    STUCK = "stuck"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class PassStats:
    """Counts reported by one transform pass."""

    successes: int = 0
    failures: int = 0
    saved_bytes: int = 0


Transform = Callable[[str], Tuple[str, PassStats]]


@dataclass(frozen=True)
class RetryAttemptRecord:
    attempt: int
    valid: bool
    remaining_forbidden: Optional[int]
    successes: int
    failures: int


@dataclass(frozen=True)
class RetryReport:
    """Result of :meth:`RetryOrchestrator.run`."""

    text: str
    outcome: RetryOutcome
    attempts_used: int
    contains_forbidden_refs: bool
    saved_bytes: int
    attempts: Tuple[RetryAttemptRecord, ...] = ()

    @property
    def retries(self) -> int:
        return max(0, self.attempts_used - 1)

    @property
    def succeeded(self) -> bool:
        return self.outcome is RetryOutcome.SUCCEEDED


@dataclass
class RetryMetrics:
    """Aggregate retry statistics across documents of one run."""

    total_pages_with_retries: int = 0
    total_retry_attempts: int = 0
    successful_retries: int = 0
    failed_retries: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def average_attempts_per_page(self) -> float:
        if self.total_pages_with_retries == 0:
            return 0.0
        return self.total_retry_attempts / self.total_pages_with_retries

    def record(self, report: RetryReport) -> None:
        """Fold ``report`` in; documents that needed no retry are not counted."""

        if report.retries == 0:
            return
        with self._lock:
            self.total_pages_with_retries += 1
            self.total_retry_attempts += report.retries
            if report.succeeded:
                self.successful_retries += 1
            else:
                self.failed_retries += 1

    def as_dict(self) -> dict:
        return {
            "total_pages_with_retries": self.total_pages_with_retries,
            "total_retry_attempts": self.total_retry_attempts,
            "successful_retries": self.successful_retries,
            "failed_retries": self.failed_retries,
            "average_attempts_per_page": round(self.average_attempts_per_page, 2),
        }


class RetryOrchestrator:
    """Bounded transform-then-verify loop.

    Args:
        max_attempts: Upper bound on transform passes.
        enabled: ``False`` selects single-pass mode.
        count_forbidden: Optional counter used only for diagnostics.
        metrics: Optional aggregate updated after each run.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        enabled: bool = True,
        count_forbidden: Optional[Callable[[str], int]] = None,
        metrics: Optional[RetryMetrics] = None,
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.enabled = enabled
        self.count_forbidden = count_forbidden
        self.metrics = metrics

    def run(
        self,
        text: str,
        transform: Transform,
        is_valid: Callable[[str], bool],
        *,
        label: str = "document",
    ) -> RetryReport:
        """Transform ``text`` until ``is_valid`` holds or no progress is possible."""

        limit = self.max_attempts if self.enabled else 1
        records: List[RetryAttemptRecord] = []
        saved_bytes = 0
        current = text
        best = text
        outcome = RetryOutcome.EXHAUSTED
        valid = False

        for attempt in range(1, limit + 1):
            output, stats = transform(current)
            saved_bytes += stats.saved_bytes
            valid = is_valid(output)
            remaining = self.count_forbidden(output) if self.count_forbidden else None
            records.append(
                RetryAttemptRecord(
                    attempt=attempt,
                    valid=valid,
                    remaining_forbidden=remaining,
                    successes=stats.successes,
                    failures=stats.failures,
                )
            )
            best = output
            if not valid or attempt > 1:
                LOGGER.info(
                    "[%s] attempt %d: remaining forbidden=%s, successes=%d, failures=%d",
                    label,
                    attempt,
                    remaining if remaining is not None else ("0" if valid else "some"),
                    stats.successes,
                    stats.failures,
                )

            if valid:
                outcome = RetryOutcome.SUCCEEDED
                if attempt > 1:
                    LOGGER.info("[%s] all forbidden references replaced after %d attempts", label, attempt)
                break
            if output == current:
                outcome = RetryOutcome.STUCK
                LOGGER.warning(
                    "[%s] no progress in attempt %d, aborting further attempts", label, attempt
                )
                break
            if attempt < limit:
                LOGGER.warning("[%s] retrying (attempt %d/%d)", label, attempt + 1, limit)
            current = output

        if outcome is RetryOutcome.EXHAUSTED:
            LOGGER.warning(
                "[%s] forbidden references remain after %d attempt(s)",
                label,
                len(records),
                extra={"extra_fields": {"attempts": [asdict(r) for r in records]}},
            )

        report = RetryReport(
            text=best,
            outcome=outcome,
            attempts_used=len(records),
            contains_forbidden_refs=not valid,
            saved_bytes=saved_bytes,
            attempts=tuple(records),
        )
        if self.metrics is not None:
            self.metrics.record(report)
        return report
