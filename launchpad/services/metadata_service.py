"""
Metadata Service
================
Mirrors run state to the two external metadata collaborators.

Write order:
    1. Relational record (primary)
    2. Blob copy at meta/<id>.json (fallback)

Read order is the same: record first, blob when the record store is
unavailable or has no entry.

Both writes are best-effort. A failure is logged and the fields are kept
as pending so the next write for the same run carries them again. The
workload's real state always wins over the mirror; nothing here raises
into the run lifecycle.
"""
import logging
import threading
from typing import Dict, Optional

from launchpad.core.errors import RunNotFound
from launchpad.models.run_record import RunRecord
from launchpad.services.archive_store import ArchiveStore, meta_key
from launchpad.services.record_store import RecordStore
from launchpad.utils.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

_WRITE_POLICY = RetryPolicy(interval=0.05, max_attempts=2)


class MetadataService:

    def __init__(self, records: RecordStore, archive: ArchiveStore,
                 write_policy: RetryPolicy = _WRITE_POLICY) -> None:
        self.records = records
        self.archive = archive
        self.write_policy = write_policy
        self._pending_record: Dict[str, dict] = {}
        self._pending_blob: set[str] = set()
        self._snapshots: Dict[str, RunRecord] = {}
        self._blob_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create(self, record: RunRecord) -> None:
        with self._lock:
            self._snapshots[record.deployment_id] = record
        try:
            call_with_retry(lambda: self.records.create(record), self.write_policy)
        except Exception as exc:
            logger.warning("Record create failed for %s: %s", record.deployment_id, exc)
            with self._lock:
                self._pending_record[record.deployment_id] = record.model_dump(exclude={"deployment_id"})
        self._write_blob(record.deployment_id)

    def update(self, deployment_id: str, **fields) -> None:
        """Apply ``fields`` to the mirror; never raises."""
        with self._lock:
            snapshot = self._snapshots.get(deployment_id) or RunRecord(deployment_id=deployment_id)
            snapshot = snapshot.model_copy(update=fields)
            self._snapshots[deployment_id] = snapshot
            pending = self._pending_record.pop(deployment_id, {})
        merged = {**pending, **fields}

        def _write():
            try:
                return self.records.update(deployment_id, **merged)
            except RunNotFound:
                return self.records.create(snapshot)

        try:
            call_with_retry(_write, self.write_policy)
        except Exception as exc:
            logger.warning("Record update failed for %s (will retry on next write): %s",
                           deployment_id, exc)
            with self._lock:
                self._pending_record[deployment_id] = {
                    **self._pending_record.get(deployment_id, {}), **merged,
                }
        self._write_blob(deployment_id)

    def _blob_lock(self, deployment_id: str) -> threading.Lock:
        with self._lock:
            lock = self._blob_locks.get(deployment_id)
            if lock is None:
                lock = self._blob_locks[deployment_id] = threading.Lock()
            return lock

    def _write_blob(self, deployment_id: str) -> None:
        # One writer per blob; the snapshot is taken under the same lock so
        # a slow earlier put can never land after a newer one.
        with self._blob_lock(deployment_id):
            with self._lock:
                snapshot = self._snapshots.get(deployment_id)
            if snapshot is None:
                return
            try:
                call_with_retry(
                    lambda: self.archive.put_json(meta_key(deployment_id), snapshot.model_dump(mode="json")),
                    self.write_policy,
                )
                with self._lock:
                    self._pending_blob.discard(deployment_id)
            except Exception as exc:
                logger.warning("Meta blob write failed for %s: %s", deployment_id, exc)
                with self._lock:
                    self._pending_blob.add(deployment_id)

    def has_pending(self, deployment_id: str) -> bool:
        with self._lock:
            return deployment_id in self._pending_record or deployment_id in self._pending_blob

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def read_record(self, deployment_id: str) -> Optional[RunRecord]:
        try:
            return self.records.get(deployment_id)
        except Exception as exc:
            logger.warning("Record store unavailable for %s: %s", deployment_id, exc)
            return None

    def read_blob(self, deployment_id: str) -> Optional[dict]:
        try:
            return self.archive.get_json(meta_key(deployment_id))
        except Exception as exc:
            logger.warning("Meta blob read failed for %s: %s", deployment_id, exc)
            return None

    def read(self, deployment_id: str) -> Optional[dict]:
        """Record first, blob copy second."""
        record = self.read_record(deployment_id)
        if record is not None:
            return record.model_dump(mode="json")
        return self.read_blob(deployment_id)
