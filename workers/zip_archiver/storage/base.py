"""
Base protocol and types for the object store abstraction.

The object store holds the source objects, the interim archives and the
final archive. Components only see this protocol, so tests substitute the
in-memory backend for S3.

Invariants:
    - list_pages() yields keys in the store's listing order
    - get() returns a reader that must always be closed
    - put() consumes its source until EOF and only then makes the object visible
    - delete() of an absent key is not an error

How to change safely:
    - Protocol changes require updating all implementations
    - put() must keep reading through ByteSource.read(), never buffer the
      whole source, or archives stop being bounded in memory
"""

from __future__ import annotations

from abc import abstractmethod
from typing import AsyncIterator, Optional, Protocol, runtime_checkable


@runtime_checkable
class ByteSource(Protocol):
    """Anything an upload can drain: read() returns b"" at EOF."""

    async def read(self) -> bytes:
        ...


@runtime_checkable
class ObjectReader(Protocol):
    """Read stream over one stored object.

    Attributes:
        key: Object key
        content_length: Size in bytes, if known up front
    """

    key: str
    content_length: Optional[int]

    def chunks(self) -> AsyncIterator[bytes]:
        """Yield the object's bytes in order."""
        ...

    async def close(self) -> None:
        """Release the underlying connection."""
        ...


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol for object store backends.

    Example:
        >>> store = S3ObjectStore(s3_config)
        >>> await store.connect()
        >>> async for page in store.list_pages("images/"):
        ...     print(page)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend. Must be called before any other operation."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release client resources."""
        ...

    @abstractmethod
    def list_pages(self, prefix: str, page_size: int = 1000) -> AsyncIterator[list[str]]:
        """Yield pages of object keys under a prefix.

        Raises:
            ObjectStoreError: If a listing request fails
        """
        ...

    @abstractmethod
    async def get(self, key: str) -> ObjectReader:
        """Open a read stream for an object.

        Raises:
            ObjectNotFoundError: If the key does not exist
            ObjectStoreError: For other failures
        """
        ...

    @abstractmethod
    async def put(
        self,
        key: str,
        source: ByteSource,
        content_type: str = "application/octet-stream",
    ) -> int:
        """Upload everything read from source as one object.

        Returns:
            Number of bytes uploaded

        Raises:
            ObjectStoreError: If the upload fails. Errors raised by
                source.read() propagate unchanged.
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete an object. Deleting an absent key succeeds.

        Raises:
            ObjectStoreError: If the backend rejects the delete
        """
        ...
