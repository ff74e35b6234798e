"""
In-memory object store implementation for testing.

This module provides a simple in-memory object store for:
- Unit tests
- Integration tests of the full split/build/merge flow
- Local development without S3

Invariants:
    - All data is lost on process exit
    - Listing order is lexicographic, like S3
    - put() stores the object only after the source reached EOF

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the ObjectStore protocol
    - Add failure hooks here rather than monkeypatching in tests
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional

from ..errors import ObjectNotFoundError, ObjectStoreError
from .base import ByteSource

logger = logging.getLogger(__name__)


@dataclass
class StoredObject:
    """An object held by the in-memory store."""

    data: bytes
    content_type: str


class InMemoryObjectReader:
    """Read stream over an in-memory object."""

    def __init__(
        self,
        key: str,
        data: bytes,
        chunk_size: int,
        fail_after: Optional[int] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.key = key
        self.content_length: Optional[int] = len(data)
        self.closed = False
        self._data = data
        self._chunk_size = chunk_size
        self._fail_after = fail_after
        self._error = error

    async def chunks(self) -> AsyncIterator[bytes]:
        for offset in range(0, len(self._data), self._chunk_size):
            if self._fail_after is not None and offset >= self._fail_after:
                raise self._error or ObjectStoreError(f"Injected read failure: {self.key}", key=self.key)
            await asyncio.sleep(0)
            yield self._data[offset : offset + self._chunk_size]

    async def close(self) -> None:
        self.closed = True


class InMemoryObjectStore:
    """In-memory implementation of ObjectStore for testing.

    Example:
        >>> store = InMemoryObjectStore()
        >>> await store.connect()
        >>> store.put_bytes("images/a.jpg", b"...")
        >>> reader = await store.get("images/a.jpg")
    """

    def __init__(self, read_chunk_bytes: int = 64 * 1024) -> None:
        """Initialize the store.

        Args:
            read_chunk_bytes: Size of chunks yielded by readers
        """
        self.read_chunk_bytes = read_chunk_bytes
        self._objects: Dict[str, StoredObject] = {}
        self._connected = False

        # Failure injection
        self._list_error: Optional[Exception] = None
        self._get_errors: Dict[str, Exception] = {}
        self._read_failures: Dict[str, tuple[int, Optional[Exception]]] = {}
        self._delete_errors: Dict[str, Exception] = {}
        self._put_failure: Optional[tuple[int, Exception]] = None

        # Observations
        self.readers: List[InMemoryObjectReader] = []
        self.deleted_keys: List[str] = []
        self.put_keys: List[str] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryObjectStore connected")

    async def close(self) -> None:
        self._connected = False
        logger.debug("InMemoryObjectStore closed")

    async def list_pages(self, prefix: str, page_size: int = 1000) -> AsyncIterator[List[str]]:
        if self._list_error is not None:
            raise self._list_error

        keys = sorted(key for key in self._objects if key.startswith(prefix))
        for start in range(0, len(keys), page_size):
            await asyncio.sleep(0)
            yield keys[start : start + page_size]

    async def get(self, key: str) -> InMemoryObjectReader:
        if key in self._get_errors:
            raise self._get_errors[key]

        stored = self._objects.get(key)
        if stored is None:
            raise ObjectNotFoundError(key)

        fail_after, error = self._read_failures.get(key, (None, None))
        reader = InMemoryObjectReader(key, stored.data, self.read_chunk_bytes, fail_after, error)
        self.readers.append(reader)
        return reader

    async def put(
        self,
        key: str,
        source: ByteSource,
        content_type: str = "application/octet-stream",
    ) -> int:
        buffer = bytearray()
        while True:
            chunk = await source.read()
            if not chunk:
                break
            buffer += chunk
            if self._put_failure is not None and len(buffer) >= self._put_failure[0]:
                _, error = self._put_failure
                raise error

        self._objects[key] = StoredObject(bytes(buffer), content_type)
        self.put_keys.append(key)
        return len(buffer)

    async def delete(self, key: str) -> None:
        if key in self._delete_errors:
            raise self._delete_errors[key]
        self._objects.pop(key, None)
        self.deleted_keys.append(key)

    # Testing helpers

    def put_bytes(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        """Store an object directly (testing helper)."""
        self._objects[key] = StoredObject(data, content_type)

    def get_bytes(self, key: str) -> bytes:
        """Return an object's bytes (testing helper)."""
        return self._objects[key].data

    def get_content_type(self, key: str) -> str:
        return self._objects[key].content_type

    def exists(self, key: str) -> bool:
        return key in self._objects

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(key for key in self._objects if key.startswith(prefix))

    def fail_list(self, error: Exception) -> None:
        """Make every listing raise error."""
        self._list_error = error

    def fail_get(self, key: str, error: Exception) -> None:
        """Make get(key) raise error."""
        self._get_errors[key] = error

    def fail_read(self, key: str, after_bytes: int = 0, error: Optional[Exception] = None) -> None:
        """Make reading key fail once after_bytes have been yielded."""
        self._read_failures[key] = (after_bytes, error)

    def fail_put_after(self, after_bytes: int, error: Exception) -> None:
        """Make every upload fail once it has consumed after_bytes."""
        self._put_failure = (after_bytes, error)

    def fail_delete(self, key: str, error: Exception) -> None:
        """Make delete(key) raise error."""
        self._delete_errors[key] = error
