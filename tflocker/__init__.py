"""
tflocker - Remote State Backend
===============================

An HTTP state backend for infrastructure-as-code tools:
- Versioned, append-only storage of opaque state blobs
- Single-writer locking with client-supplied lock tokens
- Row-locked transactions on SQLite or PostgreSQL (in-memory for tests)
"""

__version__ = "0.1.0"
__author__ = "tflocker Team"
