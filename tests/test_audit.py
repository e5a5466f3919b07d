"""Tests for the append-only audit log."""

from pathlib import Path

import pytest

from runguard.core.exceptions import CheckpointError
from runguard.engine.audit import AuditLog


class TestAuditLog:
    """Tests for AuditLog."""

    def test_entries_are_read_back_in_order(self, tmp_path: Path):
        log = AuditLog(tmp_path / "audit")
        log.record("run-1", "run_started", procedure="resize-db")
        log.record("run-1", "action_attempt", "backup", attempt=1)

        entries = log.read("run-1")

        assert [e.event for e in entries] == ["run_started", "action_attempt"]
        assert entries[1].step_id == "backup"
        assert entries[1].detail["attempt"] == 1

    def test_entries_survive_a_new_instance(self, tmp_path: Path):
        AuditLog(tmp_path / "audit").record("run-1", "gate_confirmed", "a", token="ok")

        entries = AuditLog(tmp_path / "audit").read("run-1")

        assert entries[0].detail["token"] == "ok"

    def test_operator_is_attached(self, tmp_path: Path):
        log = AuditLog(tmp_path / "audit", operator="alice")
        log.record("run-1", "gate_confirmed")

        assert log.read("run-1")[0].detail["operator"] == "alice"

    def test_runs_are_kept_apart(self, tmp_path: Path):
        log = AuditLog(tmp_path / "audit")
        log.record("run-1", "run_started")
        log.record("run-2", "run_started")

        assert len(log.read("run-1")) == 1
        assert log.read("run-3") == []

    def test_torn_final_line_is_skipped(self, tmp_path: Path):
        log = AuditLog(tmp_path / "audit")
        log.record("run-1", "run_started")
        with open(tmp_path / "audit" / "run-1.jsonl", "a") as f:
            f.write('{"run_id": "run-1", "ev')

        assert [e.event for e in log.read("run-1")] == ["run_started"]

    def test_invalid_run_id(self, tmp_path: Path):
        log = AuditLog(tmp_path / "audit")

        with pytest.raises(CheckpointError):
            log.record("../escape", "run_started")

    def test_in_memory_log(self):
        log = AuditLog()
        log.record("run-1", "run_started")

        assert [e.event for e in log.read("run-1")] == ["run_started"]

