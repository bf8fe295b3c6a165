"""
Batch module for stateset-gateway.

Groups same-operation work items and dispatches them together.
"""

from stateset_gateway.batch.processor import (
    BATCH_ERROR,
    BATCH_PROCESSED,
    BatchConfig,
    BatchEvent,
    BatchHealth,
    BatchItem,
    BatchProcessor,
    BatchStats,
)

__all__ = [
    "BATCH_ERROR",
    "BATCH_PROCESSED",
    "BatchConfig",
    "BatchEvent",
    "BatchHealth",
    "BatchItem",
    "BatchProcessor",
    "BatchStats",
]
