"""
Streaming Transfer primitive.

Connects an ordered archive producer to a single uploading consumer through
a bounded pipe, see streaming.py.
"""

from .pipe import BytePipe
from .streaming import StreamingTransfer, TransferEntry, TransferResult
from .zipstream import ArchiveWriter, ZipStreamWriter

__all__ = [
    "BytePipe",
    "ArchiveWriter",
    "ZipStreamWriter",
    "StreamingTransfer",
    "TransferEntry",
    "TransferResult",
]
