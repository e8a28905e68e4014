"""
Planora - Observability Package.

Provides:
- Commit trace logging (JSONL per run)
"""

from planora.observability.commit_logger import (
    CommitLogger,
    close_commit_logger,
    get_commit_logger,
    init_commit_logger,
)

__all__ = [
    "CommitLogger",
    "get_commit_logger",
    "init_commit_logger",
    "close_commit_logger",
]
