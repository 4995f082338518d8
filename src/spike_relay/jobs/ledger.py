"""File-per-job durable ledger.

Each job is one JSON document written atomically (temp file + rename), so a
reader never observes a half-written ledger. The ledger has no locking and no
merge logic: concurrent resume attempts on the same job from separate
processes are not guarded against.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from spike_relay.errors import LedgerIOError
from spike_relay.jobs.models import JobRecord
from spike_relay.timeutil import utc_now

logger = logging.getLogger(__name__)

LEDGER_FILE_MODE = 0o600


class JobLedger:
    """Stores one :class:`JobRecord` per job id under ``root_dir``."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def path_for(self, job_id: str) -> Path:
        if not job_id or job_id in {".", ".."} or "/" in job_id or "\\" in job_id:
            raise ValueError(f"Invalid job id for ledger storage: {job_id!r}")
        return self.root_dir / f"{job_id}.json"

    def save(self, record: JobRecord) -> None:
        """Persist the whole record; ``updated_at`` changes only once the write lands."""

        path = self.path_for(record.job_id)
        saved_at = utc_now()
        document = record.to_dict()
        document["updatedAt"] = saved_at.isoformat()
        payload = json.dumps(document, ensure_ascii=False, indent=2) + "\n"
        try:
            self.root_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.root_dir,
                prefix=f".{record.job_id}.",
                suffix=".tmp",
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.chmod(tmp_name, LEDGER_FILE_MODE)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as error:
            raise LedgerIOError(f"Could not write job ledger {path}: {error}") from error
        record.updated_at = saved_at
        logger.debug("Saved ledger for job %s (%d subtasks)", record.job_id, len(record.subtasks))

    def load(self, job_id: str) -> JobRecord | None:
        """Return the stored record, or ``None`` when the job was never saved."""

        path = self.path_for(job_id)
        try:
            raw = json.loads(path.read_text("utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as error:
            raise LedgerIOError(f"Could not read job ledger {path}: {error}") from error
        if not isinstance(raw, dict):
            raise LedgerIOError(f"Expected JSON object in {path}")
        try:
            return JobRecord.from_dict(raw)
        except (TypeError, ValueError) as error:
            raise LedgerIOError(f"Invalid job ledger {path}: {error}") from error

    def list_job_ids(self) -> list[str]:
        """Job ids with a stored ledger, sorted by most recent modification first."""

        if not self.root_dir.is_dir():
            return []
        paths = [path for path in self.root_dir.glob("*.json") if not path.name.startswith(".")]
        paths.sort(key=lambda path: path.stat().st_mtime, reverse=True)
        return [path.stem for path in paths]
