"""
zip-archiver test suite.

This package contains:
- unit/: Unit tests (in-memory collaborators and stub AWS clients)
- integration/: Pipeline tests wiring all stages through ArchiveRuntime
"""
