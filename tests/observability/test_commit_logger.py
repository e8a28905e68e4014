"""
Tests for the JSONL commit trace.
"""

import json

from planora.observability.commit_logger import (
    MAX_STRING_LEN,
    CommitLogger,
    _truncate_value,
    close_commit_logger,
    get_commit_logger,
    init_commit_logger,
)


def read_events(path):
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f]


class TestCommitLogger:

    def test_commit_events(self, tmp_path, user_id):
        trace = CommitLogger(run_id="t1", log_dir=tmp_path)
        trace.commit_start(user_id, key="0123456789abcdef", attempt=1)
        trace.phase(user_id, "idle", "validating")
        trace.store_write(user_id, "primary", "succeeded", applied=True)
        trace.retry(user_id, "identity", 1, "timeout")
        trace.commit_end(user_id, "completed")
        path = trace.close()

        events = read_events(path)
        assert [e["event"] for e in events] == [
            "run_start", "commit_start", "phase", "store_write", "retry", "commit_end", "run_end",
        ]
        assert events[1]["user"] == user_id[:8]
        assert events[1]["key"] == "0123456789ab"
        assert events[5]["duration_ms"] is not None
        assert events[6]["total_commits"] == 1

    def test_disabled_writes_nothing(self, tmp_path, user_id):
        trace = CommitLogger(enabled=False, log_dir=tmp_path)
        trace.commit_start(user_id, key="k")

        assert trace.close() is None
        assert list(tmp_path.iterdir()) == []

    def test_global_logger(self, tmp_path):
        assert not get_commit_logger().enabled

        trace = init_commit_logger(run_id="g", log_dir=tmp_path)
        assert get_commit_logger() is trace

        assert close_commit_logger() == str(tmp_path / "commits_g.jsonl")
        assert not get_commit_logger().enabled


class TestTruncation:

    def test_long_string(self):
        assert len(_truncate_value("x" * 500)) < 500
        assert _truncate_value("x" * MAX_STRING_LEN) == "x" * MAX_STRING_LEN

    def test_secrets_masked(self):
        masked = _truncate_value({"access_token": "eyJ...", "user": "ada"})
        assert masked == {"access_token": "***", "user": "ada"}

    def test_sets_sorted(self):
        assert _truncate_value(frozenset({"hotel", "apartment"})) == ["apartment", "hotel"]
