"""Append-only audit log of run events."""

import asyncio
import json
import os
import re
from pathlib import Path
from typing import Any

from runguard.core.exceptions import CheckpointError
from runguard.core.logging import StructuredLogger
from runguard.engine.schema import AuditEntry

logger = StructuredLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class AuditLog:
    """Record every gate evaluation, attempt, rollback and operator input.

    Entries go to one JSON-lines file per run, fsync'd on append, so the trail
    survives a crash that happens right after. The engine only ever appends;
    reading exists for post-incident review.
    """

    def __init__(self, log_dir: str | Path | None = None, operator: str | None = None):
        """Initialize audit log.

        Args:
            log_dir: Directory for audit files; None keeps entries in memory only
            operator: Operator name attached to every entry
        """
        if log_dir:
            self._log_dir: Path | None = Path(log_dir)
            self._log_dir.mkdir(parents=True, exist_ok=True)
        else:
            self._log_dir = None

        self._operator = operator
        self._memory: dict[str, list[AuditEntry]] = {}

    def _path(self, run_id: str) -> Path:
        if not _SAFE_ID.match(run_id):
            raise CheckpointError(f"Invalid run id: {run_id}", run_id=run_id)
        return Path(self._log_dir or ".") / f"{run_id}.jsonl"

    def record(
        self,
        run_id: str,
        event: str,
        step_id: str | None = None,
        **detail: Any,
    ) -> AuditEntry:
        """Append an entry.

        Args:
            run_id: Run the event belongs to
            event: Event kind (e.g. ``action_attempt``)
            step_id: Step the event concerns, if any
            **detail: Free-form JSON-compatible detail

        Returns:
            The appended entry
        """
        if self._operator and "operator" not in detail:
            detail["operator"] = self._operator

        entry = AuditEntry(run_id=run_id, event=event, step_id=step_id, detail=detail)

        if self._log_dir:
            line = json.dumps(entry.to_dict(), default=str)
            try:
                with open(self._path(run_id), "a") as f:
                    f.write(line + "\n")
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise CheckpointError(f"Failed to append audit entry: {e}", run_id=run_id)
        else:
            self._memory.setdefault(run_id, []).append(entry)

        logger.debug(f"audit {event}", run_id=run_id, step=step_id or "-")
        return entry

    async def record_async(
        self,
        run_id: str,
        event: str,
        step_id: str | None = None,
        **detail: Any,
    ) -> AuditEntry:
        """:meth:`record` with the append and fsync run off the event loop."""
        return await asyncio.to_thread(self.record, run_id, event, step_id, **detail)

    def read(self, run_id: str) -> list[AuditEntry]:
        """Get all entries for a run, in append order."""
        if not self._log_dir:
            return list(self._memory.get(run_id, []))

        path = self._path(run_id)
        if not path.exists():
            return []

        entries: list[AuditEntry] = []
        with open(path) as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    entries.append(AuditEntry.from_dict(json.loads(line)))
                except (ValueError, KeyError) as e:
                    # Torn final line after a crash
                    logger.warning(f"Skipping unreadable audit line {lineno} in {path}: {e}")
        return entries
