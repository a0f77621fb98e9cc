"""Executor factory used by the content sync batch windows."""

from __future__ import annotations

from concurrent import futures
from typing import Optional, Tuple

Executor = futures.Executor


def create_executor(
    policy: str, workers: int, *, name: str = "contentsync"
) -> Tuple[Optional[Executor], bool]:
    """
    Return an executor configured for the given policy.

    Args:
        policy: Execution policy; ``"inline"`` runs work on the calling thread
            (no executor), anything else selects a thread pool suitable for
            IO-bound work such as downloads and file writes.
        workers: Desired concurrency level.
        name: Thread name prefix, visible in log records and debuggers.

    Returns:
        Tuple of (executor, needs_shutdown). Caller is responsible for shutting
        down the returned executor when ``needs_shutdown`` is ``True``. A
        ``None`` executor means the caller should run work inline.
    """
    normalized = (policy or "io").lower()
    if normalized == "inline" or workers < 1:
        return None, False
    return futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix=name), True
