"""
External Worker Invocation.

Normalized access to remote classifiers, with bounded timeouts and a small
error taxonomy.
"""

from credit_batcher.worker.interface import WorkerInterface, classify_error
from credit_batcher.worker.invoker import WorkerInvoker
from credit_batcher.worker.http import HttpClassifierAdapter

__all__ = [
    "WorkerInterface",
    "WorkerInvoker",
    "HttpClassifierAdapter",
    "classify_error",
]
