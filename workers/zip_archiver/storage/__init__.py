"""
Object store abstraction for the zip archiver.

This module provides a pluggable object store interface supporting:
- S3 (and S3-compatible stores such as MinIO)
- In-memory (for testing)

Invariants:
    - Uploads are streamed, never buffered whole
    - Failed uploads leave no visible object behind
"""

from .base import ByteSource, ObjectReader, ObjectStore
from .memory import InMemoryObjectStore
from .s3 import S3ObjectStore

__all__ = [
    # Protocol and types
    "ObjectStore",
    "ObjectReader",
    "ByteSource",
    # Implementations
    "S3ObjectStore",
    "InMemoryObjectStore",
]
