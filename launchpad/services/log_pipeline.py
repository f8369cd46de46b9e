"""
Log Pipeline
============
Captures build and runtime output per run and serves it to any number
of readers as a resumable byte stream.

Writer side:
    Every append goes to a local append-only file immediately (cheap,
    fresh tailing). The whole log is mirrored to the archive at
    logs/<id>.log at most once per flush interval, and always when a phase
    ends or the stream closes.

Reader side:
    ``read_from(offset)`` serves the local file while it exists. Once the
    stream is closed and archived, the local file is retired and reads are
    served from the archive with a ranged get. Offsets are byte counts in
    both places, so a reader that crosses the transition sees no gap and
    no repeat.

Invariants:
    - Length only grows; appends after ``close`` are dropped.
    - Readers never mutate writer state.
"""
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from launchpad.core.config import LOG_DIR, LOG_FLUSH_INTERVAL, LOG_TRIM_LOCAL
from launchpad.core.errors import RunNotFound
from launchpad.services.archive_store import ArchiveStore, log_key
from launchpad.utils.log_excerpt import tail_lines
from launchpad.utils.naming import is_valid_run_id, validate_run_id

logger = logging.getLogger(__name__)

FlushCallback = Callable[[str, int], None]


@dataclass
class LogChunk:
    data: bytes
    next_offset: int
    at_end: bool
    source: str

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


class LogStream:
    """Append-only log of one run."""

    def __init__(
        self,
        run_id: str,
        local_path: str,
        archive: ArchiveStore,
        flush_interval: float = LOG_FLUSH_INTERVAL,
        trim_local: bool = LOG_TRIM_LOCAL,
        on_flush: Optional[FlushCallback] = None,
    ) -> None:
        self.run_id = run_id
        self.local_path = local_path
        self.archive = archive
        self.flush_interval = flush_interval
        self.trim_local = trim_local
        self.on_flush = on_flush

        self._length = 0
        self._archived_length = -1
        self._last_flush = time.monotonic()
        self._closed = False
        self._retired = False
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()

        os.makedirs(os.path.dirname(local_path), exist_ok=True)
        # Truncate: a run id owns exactly one stream
        with open(local_path, "wb"):
            pass

    # ------------------------------------------------------------------
    # Writer
    # ------------------------------------------------------------------
    @property
    def length(self) -> int:
        return self._length

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def retired(self) -> bool:
        return self._retired

    def append(self, text: str) -> int:
        """Append ``text`` verbatim; return the new length in bytes."""
        data = text.encode("utf-8")
        if not data:
            return self._length
        with self._lock:
            if self._closed:
                logger.debug("Dropping %d bytes appended to closed log %s", len(data), self.run_id)
                return self._length
            with open(self.local_path, "ab") as f:
                f.write(data)
            self._length += len(data)
        self.flush(force=False)
        return self._length

    def write_line(self, line: str) -> int:
        if not line.endswith("\n"):
            line += "\n"
        return self.append(line)

    def flush(self, force: bool = True) -> bool:
        """
        Mirror the log to the archive.

        Without ``force`` the write only happens when the flush interval has
        elapsed since the previous one. Returns True if a write happened.
        """
        with self._flush_lock:
            now = time.monotonic()
            if not force and now - self._last_flush < self.flush_interval:
                return False
            with self._lock:
                if self._retired:
                    return False
                length = self._length
                if length == self._archived_length:
                    self._last_flush = now
                    return False
                data = self._read_local(0, length)
            try:
                self.archive.put(log_key(self.run_id), data, "text/plain")
            except Exception as exc:
                logger.warning("Log flush for %s failed (local copy kept): %s", self.run_id, exc)
                return False
            self._archived_length = length
            self._last_flush = now
        if self.on_flush is not None:
            try:
                self.on_flush(self.run_id, length)
            except Exception as exc:
                logger.warning("Log flush callback for %s failed: %s", self.run_id, exc)
        return True

    def close(self) -> None:
        """Stop accepting appends, archive everything, retire the local copy."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.flush(force=True)
        if not self.trim_local:
            return
        with self._flush_lock, self._lock:
            if self._archived_length != self._length:
                logger.warning("Keeping local log for %s: archive is behind", self.run_id)
                return
            try:
                os.remove(self.local_path)
            except FileNotFoundError:
                pass
            self._retired = True
        logger.info("Retired local log for %s (%d bytes archived)", self.run_id, self._length)

    # ------------------------------------------------------------------
    # Reader
    # ------------------------------------------------------------------
    def _read_local(self, start: int, end: int) -> bytes:
        with open(self.local_path, "rb") as f:
            f.seek(start)
            return f.read(end - start)

    def read_from(self, offset: int) -> Tuple[bytes, int, bool]:
        """
        Return ``(chunk, next_offset, at_end)`` starting at byte ``offset``.

        ``at_end`` is True only once the stream is closed and the chunk
        reaches its final byte.
        """
        offset = max(0, offset)
        with self._lock:
            length = self._length
            start = min(offset, length)
            if not self._retired:
                chunk = self._read_local(start, length)
                return chunk, start + len(chunk), self._closed
        chunk = self.archive.get(log_key(self.run_id), start=start) or b""
        chunk = chunk[: max(0, length - start)]
        return chunk, start + len(chunk), True

    def text(self) -> str:
        chunk, _, _ = self.read_from(0)
        return chunk.decode("utf-8", errors="replace")

    def tail(self, count: int = 40) -> str:
        return tail_lines(self.text(), count)


class LogPipeline:
    """Registry of LogStreams keyed by run id."""

    def __init__(
        self,
        archive: ArchiveStore,
        log_dir: str = LOG_DIR,
        flush_interval: float = LOG_FLUSH_INTERVAL,
        trim_local: bool = LOG_TRIM_LOCAL,
        on_flush: Optional[FlushCallback] = None,
    ) -> None:
        self.archive = archive
        self.log_dir = os.path.abspath(log_dir)
        self.flush_interval = flush_interval
        self.trim_local = trim_local
        self.on_flush = on_flush
        self._streams: Dict[str, LogStream] = {}
        self._lock = threading.Lock()

    def local_path(self, run_id: str) -> str:
        return os.path.join(self.log_dir, f"{validate_run_id(run_id)}.log")

    def open(self, run_id: str) -> LogStream:
        with self._lock:
            if run_id in self._streams:
                raise ValueError(f"log stream for {run_id} already exists")
            stream = LogStream(
                run_id,
                self.local_path(run_id),
                self.archive,
                flush_interval=self.flush_interval,
                trim_local=self.trim_local,
                on_flush=self.on_flush,
            )
            self._streams[run_id] = stream
        return stream

    def get(self, run_id: str) -> Optional[LogStream]:
        with self._lock:
            return self._streams.get(run_id)

    def read(self, run_id: str, offset: int = 0) -> LogChunk:
        """
        Read a run's log from ``offset`` wherever it currently lives.

        Raises
        ------
        RunNotFound
            No stream, no local file and no archived copy exist.
        """
        if not is_valid_run_id(run_id):
            raise RunNotFound(f"no log for run {run_id!r}")
        stream = self.get(run_id)
        if stream is not None:
            data, next_offset, at_end = stream.read_from(offset)
            return LogChunk(data, next_offset, at_end, "archive" if stream.retired else "local")

        offset = max(0, offset)
        path = self.local_path(run_id)
        if os.path.isfile(path):
            # Written by an earlier process that never archived it
            with open(path, "rb") as f:
                size = os.fstat(f.fileno()).st_size
                start = min(offset, size)
                f.seek(start)
                data = f.read()
            return LogChunk(data, start + len(data), False, "local")

        data = self.archive.get(log_key(run_id), start=offset)
        if data is None:
            raise RunNotFound(f"no log for run {run_id}")
        return LogChunk(data, offset + len(data), True, "archive")
