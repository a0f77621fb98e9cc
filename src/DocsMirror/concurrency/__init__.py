# === NAVMAP v1 ===
# {
#   "module": "DocsMirror.concurrency.__init__",
#   "purpose": "Concurrency helpers shared across DocsMirror components.",
#   "sections": []
# }
# === /NAVMAP ===

"""
Concurrency helpers shared across DocsMirror components.

Exposes :func:`create_executor`, which hands out one thread pool per batch
window so abandoned work from a previous window never occupies a slot of the
next one.
"""

from .executors import create_executor

__all__ = ["create_executor"]
