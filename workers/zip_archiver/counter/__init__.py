"""
Run counter store for the zip archiver.

Backends:
- DynamoDB (production)
- In-memory (for testing)
"""

from .base import CounterStore, DecrementResult, RunRecord
from .dynamodb import DynamoDbCounterStore
from .memory import InMemoryCounterStore

__all__ = [
    # Protocol and types
    "CounterStore",
    "RunRecord",
    "DecrementResult",
    # Implementations
    "DynamoDbCounterStore",
    "InMemoryCounterStore",
]
