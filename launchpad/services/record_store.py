"""
Record Store
============
Narrow create/update/get contract for the relational run record.

The pipeline only ever writes whole fields keyed by deployment id, so
any relational backend can sit behind ``RecordStore``. The in-memory
implementation is the default for a single-host deployment and for tests.
"""
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

from launchpad.core.errors import RunNotFound
from launchpad.models.run_record import RunRecord

logger = logging.getLogger(__name__)


class RecordStore(ABC):

    @abstractmethod
    def create(self, record: RunRecord) -> RunRecord:
        ...

    @abstractmethod
    def update(self, deployment_id: str, **fields) -> RunRecord:
        """Apply ``fields`` to an existing record; raise RunNotFound if absent."""

    @abstractmethod
    def get(self, deployment_id: str) -> Optional[RunRecord]:
        ...


class InMemoryRecordStore(RecordStore):
    """Thread-safe dictionary of RunRecords."""

    def __init__(self) -> None:
        self._records: Dict[str, RunRecord] = {}
        self._lock = threading.Lock()

    def create(self, record: RunRecord) -> RunRecord:
        with self._lock:
            self._records[record.deployment_id] = record
        return record

    def update(self, deployment_id: str, **fields) -> RunRecord:
        with self._lock:
            current = self._records.get(deployment_id)
            if current is None:
                raise RunNotFound(f"no record for deployment {deployment_id}")
            fields["updated_at"] = datetime.now(timezone.utc)
            updated = current.model_copy(update=fields)
            self._records[deployment_id] = updated
        return updated

    def get(self, deployment_id: str) -> Optional[RunRecord]:
        with self._lock:
            return self._records.get(deployment_id)
