"""
Planora - Commit Logger.

Trace log for onboarding completion commits.

Features:
- One JSONL file per run (easy to parse, tail -f friendly)
- Commit start/end with timing
- Phase transitions and per-store results
- Retries, verification reports, reconciliation passes
- Truncation of large values (records, metadata bundles)

Usage:
    from planora.observability.commit_logger import init_commit_logger

    trace = init_commit_logger()
    trace.commit_start(user_id, key="3f2a...", attempt=1)
    trace.store_write(user_id, "primary", "succeeded", applied=True)
    trace.commit_end(user_id, "completed")
    trace.close()

Log format (JSONL):
    {"ts": "2026-01-01T17:30:00", "event": "store_write", "user": "5b1c9e0a", ...}
"""

import json
import time
from datetime import datetime
from pathlib import Path
from typing import Any


# =============================================================================
# Configuration
# =============================================================================

LOG_DIR = Path("commit_logs")

MAX_STRING_LEN = 200
MAX_LIST_ITEMS = 5
MAX_DICT_KEYS = 12

# Never written to the trace
SECRET_FIELDS = {"access_token", "refresh_token", "authorization", "password"}


# =============================================================================
# Truncation
# =============================================================================


def _truncate_value(value: Any, depth: int = 0) -> Any:
    """
    Truncate values for logging.

    - Strings > MAX_STRING_LEN get truncated with "..."
    - Lists > MAX_LIST_ITEMS show first N + count
    - Dicts > MAX_DICT_KEYS show first N keys + count
    - Secret keys are masked
    """
    if depth > 3:
        return "<nested>"

    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        if len(value) > MAX_STRING_LEN:
            return value[:MAX_STRING_LEN] + f"... ({len(value)} chars)"
        return value

    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else list(value)
        truncated = [_truncate_value(v, depth + 1) for v in items[:MAX_LIST_ITEMS]]
        if len(items) > MAX_LIST_ITEMS:
            truncated.append(f"... +{len(items) - MAX_LIST_ITEMS} more")
        return truncated

    if isinstance(value, dict):
        result = {}
        for k in list(value.keys())[:MAX_DICT_KEYS]:
            if str(k).lower() in SECRET_FIELDS:
                result[k] = "***"
            else:
                result[k] = _truncate_value(value[k], depth + 1)
        if len(value) > MAX_DICT_KEYS:
            result["_truncated"] = f"+{len(value) - MAX_DICT_KEYS} keys"
        return result

    if hasattr(value, "value") and not callable(value.value):
        return _truncate_value(value.value, depth)
    if hasattr(value, "model_dump"):
        return _truncate_value(value.model_dump(mode="json", by_alias=True), depth)
    if hasattr(value, "to_dict"):
        return _truncate_value(value.to_dict(), depth)

    return str(value)[:MAX_STRING_LEN]


def _short(user_id: str) -> str:
    return user_id[:8]


# =============================================================================
# Commit Logger
# =============================================================================


class CommitLogger:
    """
    Per-run logger that writes JSONL to a file.

    Disabled instances accept every call and write nothing.
    """

    def __init__(
        self,
        run_id: str | None = None,
        enabled: bool = True,
        log_dir: Path | None = None,
    ):
        self.enabled = enabled
        self._commit_start_times: dict[str, float] = {}
        self._commit_count = 0

        if not enabled:
            self.log_file = None
            return

        log_dir = log_dir or LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)

        if run_id is None:
            run_id = datetime.now().strftime("%Y%m%d_%H%M%S")

        self.run_id = run_id
        self.log_path = log_dir / f"commits_{run_id}.jsonl"
        self.log_file = open(self.log_path, "a", encoding="utf-8")

        self._write({"event": "run_start", "run_id": run_id})

    def _write(self, data: dict) -> None:
        if not self.enabled or self.log_file is None:
            return

        entry = {
            "ts": datetime.now().isoformat(),
            **data,
        }
        self.log_file.write(json.dumps(entry, default=str) + "\n")
        self.log_file.flush()

    # =========================================================================
    # Commit Events
    # =========================================================================

    def commit_start(self, user_id: str, key: str, attempt: int | None = None) -> None:
        self._commit_count += 1
        self._commit_start_times[user_id] = time.time()
        self._write({
            "event": "commit_start",
            "user": _short(user_id),
            "key": key[:12],
            "attempt": attempt,
        })

    def phase(self, user_id: str, old_phase: str, new_phase: str) -> None:
        self._write({
            "event": "phase",
            "user": _short(user_id),
            "from": old_phase,
            "to": new_phase,
        })

    def store_write(
        self,
        user_id: str,
        store: str,
        status: str,
        applied: bool | None = None,
        error: str | None = None,
        payload: dict | None = None,
    ) -> None:
        self._write({
            "event": "store_write",
            "user": _short(user_id),
            "store": store,
            "status": status,
            "applied": applied,
            "error": error,
            "payload": _truncate_value(payload) if payload else None,
        })

    def retry(self, user_id: str, store: str, attempt: int, error: str) -> None:
        self._write({
            "event": "retry",
            "user": _short(user_id),
            "store": store,
            "attempt": attempt,
            "error": error[:MAX_STRING_LEN],
        })

    def commit_end(
        self,
        user_id: str,
        status: str,
        pending: list[str] | None = None,
        reason: str | None = None,
    ) -> None:
        start = self._commit_start_times.pop(user_id, None)
        duration_ms = int((time.time() - start) * 1000) if start else None
        self._write({
            "event": "commit_end",
            "user": _short(user_id),
            "status": status,
            "pending": pending or [],
            "reason": reason,
            "duration_ms": duration_ms,
        })

    # =========================================================================
    # Verification Events
    # =========================================================================

    def verify(self, user_id: str, report: dict) -> None:
        self._write({
            "event": "verify",
            "user": _short(user_id),
            **_truncate_value(report),
        })

    def reconcile(self, user_id: str, pass_number: int, consistent: bool, error: str | None = None) -> None:
        self._write({
            "event": "reconcile",
            "user": _short(user_id),
            "pass": pass_number,
            "consistent": consistent,
            "error": error,
        })

    def log(self, event_type: str, **kwargs) -> None:
        """Log custom event."""
        self._write({
            "event": event_type,
            **_truncate_value(kwargs),
        })

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> str | None:
        """Close the log file. Returns log path."""
        if self.log_file:
            self._write({"event": "run_end", "total_commits": self._commit_count})
            self.log_file.close()
            self.log_file = None
            return str(self.log_path)
        return None


# =============================================================================
# Global Instance
# =============================================================================

_global_logger: CommitLogger | None = None


def get_commit_logger() -> CommitLogger:
    """Get or create the global commit logger."""
    global _global_logger
    if _global_logger is None:
        _global_logger = CommitLogger(enabled=False)  # Disabled by default
    return _global_logger


def init_commit_logger(run_id: str | None = None, log_dir: Path | None = None) -> CommitLogger:
    """Initialize a new global commit logger."""
    global _global_logger
    if _global_logger is not None:
        _global_logger.close()
    _global_logger = CommitLogger(run_id=run_id, enabled=True, log_dir=log_dir)
    return _global_logger


def close_commit_logger() -> str | None:
    """Close the global commit logger."""
    global _global_logger
    if _global_logger is not None:
        path = _global_logger.close()
        _global_logger = None
        return path
    return None
