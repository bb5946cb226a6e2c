"""Batch package — chunked bulk work over Graph."""

from .processor import (
    BatchFailure,
    BatchProcessor,
    BatchResult,
    ItemOutcome,
    chunked,
    run_batch,
)

__all__ = [
    "BatchFailure",
    "BatchProcessor",
    "BatchResult",
    "ItemOutcome",
    "chunked",
    "run_batch",
]
