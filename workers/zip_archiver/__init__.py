"""
Zip Archiver - fan-out/fan-in archival of an object store prefix.

This package turns every matching object under a storage prefix into one
zip archive, using many short-lived workers that never talk to each other:

    ┌──────────────┐     ┌─────────────────┐     ┌──────────────────┐
    │ Job Splitter │────▶│ Message Channel │────▶│ Batch Worker x N │
    └──────┬───────┘     │  (SNS / Kafka)  │     └────────┬─────────┘
           │             └─────────────────┘              │ decrement
           │ create                ▲                      ▼
           │             ┌─────────┴───────┐     ┌──────────────────┐
           └────────────▶│  Counter Store  │◀────│ last worker only │
                         │   (DynamoDB)    │     │ publishes signal │
                         └─────────────────┘     └────────┬─────────┘
                                                          ▼
                                                 ┌──────────────────┐
                                                 │    Finalizer     │
                                                 └──────────────────┘

Every archive (one per batch, then the final merge) is produced by a
StreamingTransfer: a producer task writes zip entries into a bounded
in-memory pipe while a consumer task uploads the pipe to the object store.

Invariants:
    - A run record exists before any batch message is published
    - Exactly one worker per run observes the counter reach zero
    - A batch is counted at most once, however often it is delivered
    - No archive is ever held whole in memory

How to change safely:
    - Wire payload field names and storage key layout are fixed
    - New collaborator backends must implement the protocols in
      storage.base, counter.base and channel.base
    - Test with the in-memory backends before touching AWS-backed ones
"""

from ._version import __version__

__all__ = ["__version__"]
