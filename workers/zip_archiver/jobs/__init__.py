"""
The three stages of an archival run: split, build, merge.
"""

from .batch_worker import BatchOutcome, BatchResult, BatchWorker
from .finalizer import FinalizeResult, Finalizer
from .splitter import JobSplitter, SplitResult, partition

__all__ = [
    "JobSplitter",
    "SplitResult",
    "partition",
    "BatchWorker",
    "BatchOutcome",
    "BatchResult",
    "Finalizer",
    "FinalizeResult",
]
