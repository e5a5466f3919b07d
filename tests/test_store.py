"""Tests for run checkpoints and resource locks."""

import json
import threading
from pathlib import Path

import pytest

from runguard.core.exceptions import CheckpointError, ResourceBusy, RunNotFound
from runguard.engine.schema import Run, RunStatus, StepPhase
from runguard.engine.store import CheckpointStore


@pytest.fixture
def store(tmp_path: Path) -> CheckpointStore:
    return CheckpointStore(tmp_path / "state")


def make_run(status: RunStatus = RunStatus.RUNNING, **kwargs) -> Run:
    return Run(procedure_id="proc", resource_key="db-1", status=status, **kwargs)


class TestCheckpoints:
    """Tests for saving and loading run snapshots."""

    def test_save_and_load(self, store: CheckpointStore):
        run = make_run(step_index=2, phase=StepPhase.EXIT_GATE, outputs={"a": {"id": 1}})
        store.save(run)

        loaded = store.load(run.id)

        assert loaded.status == RunStatus.RUNNING
        assert loaded.step_index == 2
        assert loaded.phase == StepPhase.EXIT_GATE
        assert loaded.outputs == {"a": {"id": 1}}

    def test_save_leaves_no_temporary_files(self, store: CheckpointStore):
        run = make_run()
        store.save(run)
        store.save(run)

        files = sorted(p.name for p in (store.state_dir / "runs").iterdir())
        assert files == [f"{run.id}.json"]

    def test_save_overwrites_previous_snapshot(self, store: CheckpointStore):
        run = make_run()
        store.save(run)
        run.step_index = 3
        store.save(run)

        assert store.load(run.id).step_index == 3

    def test_load_missing_run(self, store: CheckpointStore):
        with pytest.raises(RunNotFound):
            store.load("doesnotexist")

    def test_load_rejects_path_like_ids(self, store: CheckpointStore):
        with pytest.raises(RunNotFound):
            store.load("../etc/passwd")

    def test_load_corrupt_snapshot(self, store: CheckpointStore):
        (store.state_dir / "runs" / "broken.json").write_text("{not json")

        with pytest.raises(CheckpointError):
            store.load("broken")

    def test_list_filters_and_orders(self, store: CheckpointStore):
        first = make_run(RunStatus.COMPLETED)
        second = make_run(RunStatus.WAITING_ON_GATE)
        second.created_at = first.created_at.replace(year=first.created_at.year + 1)
        store.save(first)
        store.save(second)

        assert [r.id for r in store.list()] == [second.id, first.id]
        assert [r.id for r in store.list(status=RunStatus.COMPLETED)] == [first.id]
        assert [r.id for r in store.list_resumable()] == [second.id]

    def test_list_skips_unreadable_snapshots(self, store: CheckpointStore):
        store.save(make_run())
        (store.state_dir / "runs" / "broken.json").write_text("")

        assert len(store.list()) == 1

    def test_cleanup_old_removes_only_old_terminal_runs(self, store: CheckpointStore):
        old_done = make_run(RunStatus.COMPLETED)
        old_waiting = make_run(RunStatus.WAITING_ON_GATE)
        recent_done = make_run(RunStatus.ABORTED)
        for run in (old_done, old_waiting):
            run.created_at = run.created_at.replace(year=run.created_at.year - 1)
        for run in (old_done, old_waiting, recent_done):
            store.save(run)

        assert store.cleanup_old(days=30) == 1
        assert {r.id for r in store.list()} == {old_waiting.id, recent_done.id}


class TestLocks:
    """Tests for resource-key mutual exclusion."""

    def test_acquire_and_release(self, store: CheckpointStore):
        store.acquire_lock("db-1", "run-a")
        assert store.lock_holder("db-1") == "run-a"

        assert store.release_lock("db-1", "run-a") is True
        assert store.lock_holder("db-1") is None

    def test_acquire_is_reentrant(self, store: CheckpointStore):
        store.acquire_lock("db-1", "run-a")
        store.acquire_lock("db-1", "run-a")

        assert store.lock_holder("db-1") == "run-a"

    def test_busy_resource(self, store: CheckpointStore):
        holder = make_run(RunStatus.WAITING_ON_GATE)
        store.save(holder)
        store.acquire_lock("db-1", holder.id)

        with pytest.raises(ResourceBusy) as exc_info:
            store.acquire_lock("db-1", "run-b")

        assert exc_info.value.holder == holder.id
        assert exc_info.value.resource_key == "db-1"

    def test_lock_of_terminated_run_is_reclaimed(self, store: CheckpointStore):
        holder = make_run(RunStatus.ABORTED)
        store.save(holder)
        store.acquire_lock("db-1", holder.id)

        store.acquire_lock("db-1", "run-b")

        assert store.lock_holder("db-1") == "run-b"

    def test_lock_of_unknown_run_is_reclaimed(self, store: CheckpointStore):
        store.acquire_lock("db-1", "vanished")

        store.acquire_lock("db-1", "run-b")

        assert store.lock_holder("db-1") == "run-b"

    def test_release_by_other_run_is_ignored(self, store: CheckpointStore):
        store.acquire_lock("db-1", "run-a")

        assert store.release_lock("db-1", "run-b") is False
        assert store.lock_holder("db-1") == "run-a"

    def test_keys_with_separators(self, store: CheckpointStore):
        store.acquire_lock("aws/rds/db-1", "run-a")

        assert store.lock_holder("aws/rds/db-1") == "run-a"
        assert store.lock_holder("aws") is None

    def test_lock_file_records_holder(self, store: CheckpointStore):
        store.acquire_lock("db-1", "run-a")

        data = json.loads((store.state_dir / "locks" / "db-1.lock").read_text())
        assert data["run_id"] == "run-a"

    def test_stale_reclaim_waits_for_guard(self, store: CheckpointStore):
        store.acquire_lock("db-1", "vanished")
        other = CheckpointStore(store.state_dir)
        contender = threading.Thread(target=other.acquire_lock, args=("db-1", "run-b"))

        with store._guard():
            contender.start()
            contender.join(timeout=0.2)
            assert contender.is_alive()
            assert store.lock_holder("db-1") == "vanished"

        contender.join(timeout=5)
        assert not contender.is_alive()
        assert store.lock_holder("db-1") == "run-b"

    def test_concurrent_reclaim_has_one_winner(self, store: CheckpointStore):
        store.acquire_lock("db-1", "vanished")
        contenders = [make_run() for _ in range(8)]
        for run in contenders:
            store.save(run)

        barrier = threading.Barrier(len(contenders))
        winners: list[str] = []
        refused: list[str] = []

        def contend(run_id: str) -> None:
            own = CheckpointStore(store.state_dir)
            barrier.wait()
            try:
                own.acquire_lock("db-1", run_id)
                winners.append(run_id)
            except ResourceBusy:
                refused.append(run_id)

        threads = [threading.Thread(target=contend, args=(run.id,)) for run in contenders]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert len(winners) == 1
        assert len(refused) == len(contenders) - 1
        assert store.lock_holder("db-1") == winners[0]
