"""Run checkpoint persistence and resource-key locks."""

from __future__ import annotations

import asyncio
import fcntl
import json
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator
from urllib.parse import quote

from runguard.core.exceptions import CheckpointError, ResourceBusy, RunNotFound
from runguard.core.logging import StructuredLogger
from runguard.engine.backoff import Clock, Sleep, default_clock, default_sleep
from runguard.engine.schema import Run, RunStatus, utcnow

logger = StructuredLogger(__name__)


class CheckpointStore:
    """Durable run snapshots plus the per-resource mutual-exclusion locks.

    Layout under ``state_dir``::

        runs/<run_id>.json          latest snapshot of each run
        locks/<resource_key>.lock   id of the run holding the resource
        locks/.guard                flock serialising lock changes across processes
    """

    def __init__(self, state_dir: str | Path):
        """Initialize checkpoint store.

        Args:
            state_dir: Directory to store run state
        """
        self._state_dir = Path(state_dir)
        self._runs_dir = self._state_dir / "runs"
        self._locks_dir = self._state_dir / "locks"
        self._runs_dir.mkdir(parents=True, exist_ok=True)
        self._locks_dir.mkdir(parents=True, exist_ok=True)

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def _run_path(self, run_id: str) -> Path:
        if not run_id or "/" in run_id or run_id.startswith("."):
            raise RunNotFound(f"Invalid run id: {run_id!r}")
        return self._runs_dir / f"{run_id}.json"

    @staticmethod
    def _write_atomic(path: Path, data: dict[str, Any]) -> None:
        tmp = path.with_name(f".{path.name}.tmp")
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    # ------------------------------------------------------------------
    # Checkpoints

    def save(self, run: Run) -> None:
        """Persist a run snapshot; returns only once it is durable.

        Args:
            run: Run to save
        """
        run.updated_at = utcnow()
        try:
            self._write_atomic(self._run_path(run.id), run.to_dict())
        except OSError as e:
            raise CheckpointError(f"Failed to save run checkpoint: {e}", run_id=run.id)

        logger.debug("Saved checkpoint", run_id=run.id, status=run.status.value, step=run.step_index)

    async def save_async(self, run: Run) -> None:
        """:meth:`save` with the write and fsync run off the event loop."""
        await asyncio.to_thread(self.save, run)

    def load(self, run_id: str) -> Run:
        """Load a run snapshot.

        Args:
            run_id: Run ID

        Returns:
            Loaded Run
        """
        path = self._run_path(run_id)
        if not path.exists():
            raise RunNotFound(f"Run not found: {run_id}", details={"run_id": run_id})

        try:
            with open(path) as f:
                return Run.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            raise CheckpointError(f"Failed to load run checkpoint: {e}", run_id=run_id)

    def list(
        self,
        status: RunStatus | None = None,
        resource_key: str | None = None,
        procedure_id: str | None = None,
        limit: int | None = 50,
    ) -> list[Run]:
        """List runs, newest first.

        Args:
            status: Filter by status
            resource_key: Filter by resource key
            procedure_id: Filter by procedure
            limit: Maximum runs to return (None for all)

        Returns:
            List of Runs
        """
        runs: list[Run] = []

        for state_file in self._runs_dir.glob("*.json"):
            try:
                with open(state_file) as f:
                    run = Run.from_dict(json.load(f))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Failed to load run {state_file}: {e}")
                continue

            if status and run.status != status:
                continue
            if resource_key and run.resource_key != resource_key:
                continue
            if procedure_id and run.procedure_id != procedure_id:
                continue

            runs.append(run)

        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs if limit is None else runs[:limit]

    def list_resumable(self) -> list[Run]:
        """Runs left in a non-terminal state, e.g. by a crash or a pending human gate."""
        return [r for r in self.list(limit=None) if not r.is_terminal]

    def cleanup_old(self, days: int = 30) -> int:
        """Remove snapshots of terminal runs older than ``days``.

        Returns:
            Number of runs removed
        """
        cutoff = datetime.now(timezone.utc).timestamp() - (days * 86400)
        removed = 0

        for run in self.list(limit=None):
            if not run.is_terminal:
                continue
            if run.created_at.timestamp() < cutoff:
                self._run_path(run.id).unlink(missing_ok=True)
                removed += 1

        if removed > 0:
            logger.info(f"Cleaned up {removed} old runs")

        return removed

    # ------------------------------------------------------------------
    # Resource locks

    def _lock_path(self, resource_key: str) -> Path:
        return self._locks_dir / f"{quote(resource_key, safe='')}.lock"

    @contextmanager
    def _guard(self) -> Iterator[None]:
        """Hold the exclusive guard under which lock files are created or removed.

        Not re-entrant: a second ``_guard`` in the same thread deadlocks.
        """
        with open(self._locks_dir / ".guard", "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def lock_holder(self, resource_key: str) -> str | None:
        """Run id currently holding ``resource_key``, if any."""
        path = self._lock_path(resource_key)
        try:
            with open(path) as f:
                return json.load(f).get("run_id")
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            # Half-written lock file: treat the key as held by an unknown run
            return ""

    def _is_stale(self, holder: str) -> bool:
        if not holder:
            return False
        try:
            return self.load(holder).is_terminal
        except RunNotFound:
            return True

    def _try_create_lock(self, resource_key: str, run_id: str) -> bool:
        path = self._lock_path(resource_key)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False

        with os.fdopen(fd, "w") as f:
            json.dump({"run_id": run_id, "acquired_at": utcnow().isoformat()}, f)
            f.flush()
            os.fsync(f.fileno())
        return True

    def acquire_lock(self, resource_key: str, run_id: str) -> None:
        """Take the lock for ``resource_key`` or fail fast.

        Re-acquiring a lock the same run already holds is a no-op. A lock left
        behind by a run that has since terminated is reclaimed. The whole
        check-reclaim-create sequence runs under the store guard, so two
        processes can never both reclaim the same stale lock.

        Raises:
            ResourceBusy: another active run holds the key
        """
        with self._guard():
            if self._try_create_lock(resource_key, run_id):
                logger.debug("Acquired lock", resource=resource_key, run_id=run_id)
                return

            holder = self.lock_holder(resource_key)
            if holder == run_id:
                return

            if holder is None or self._is_stale(holder):
                if holder:
                    logger.warning("Reclaiming stale lock", resource=resource_key, stale_holder=holder)
                    self._lock_path(resource_key).unlink(missing_ok=True)
                if self._try_create_lock(resource_key, run_id):
                    return
                holder = self.lock_holder(resource_key)

        raise ResourceBusy(
            f"Resource '{resource_key}' is locked by run {holder or 'unknown'}",
            resource_key=resource_key,
            holder=holder,
        )

    async def wait_for_lock(
        self,
        resource_key: str,
        run_id: str,
        timeout: float,
        interval: float = 1.0,
        sleep: Sleep = default_sleep,
        clock: Clock = default_clock,
    ) -> None:
        """Block (cooperatively) until the lock is free or ``timeout`` elapses."""
        deadline = clock() + timeout
        while True:
            try:
                await asyncio.to_thread(self.acquire_lock, resource_key, run_id)
                return
            except ResourceBusy:
                if clock() >= deadline:
                    raise
            await sleep(interval)

    def release_lock(self, resource_key: str, run_id: str) -> bool:
        """Release the lock if ``run_id`` holds it.

        Returns:
            True if a lock was removed
        """
        with self._guard():
            if self.lock_holder(resource_key) != run_id:
                return False
            self._lock_path(resource_key).unlink(missing_ok=True)
        logger.debug("Released lock", resource=resource_key, run_id=run_id)
        return True
