"""
Orchestrator
============
Composition root: drives one run per BuildRequest through

    checkout → build → port allocation → start → RUNNING

with the run's LogStream attached from submission to teardown.

Core behaviour:
    - Runs are independent asyncio tasks; blocking steps (git, image
      build, container start, archive writes) run in worker threads.
    - Status changes happen only on the event loop, so transitions for
      one run are strictly ordered.
    - Every transition appends a marker line to the run log and updates
      the metadata mirror. Mirror failures are logged, never fatal.
    - Entering FAILED from any phase releases the port and tears the
      workload down, even when it never fully started.
    - stop() is idempotent. A stop during QUEUED/BUILDING fails the run
      and the build task discards whatever it produced afterwards.
    - A liveness watch fails a RUNNING run whose workload died and
      flushes due log batches.
    - Each run builds from its own copy of the cached checkout. The copy
      is removed at teardown (containers: as soon as the image exists).
    - Terminal listeners hear about STOPPED/FAILED before the port is
      released, so routing caches never outlive the run they point at.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from launchpad.core.config import ARCHIVE_ARTIFACTS, WATCH_INTERVAL
from launchpad.core.errors import LaunchpadError, RunNotFound, RuntimeCrash, StopFailed
from launchpad.executor.runtime import Runtime, create_runtime
from launchpad.models.build_request import BuildRequest
from launchpad.models.run import BuildArtifact, RunHandle, RunStatus, Workspace
from launchpad.models.run_record import RunRecord
from launchpad.runs.state_machine import check_transition
from launchpad.services.archive_store import ArchiveStore, create_archive_store, log_key
from launchpad.services.artifact_packer import archive_workspace
from launchpad.services.log_pipeline import LogChunk, LogPipeline, LogStream
from launchpad.services.metadata_service import MetadataService
from launchpad.services.port_allocator import PortAllocator
from launchpad.services.record_store import InMemoryRecordStore, RecordStore
from launchpad.services.workspace_service import WorkspaceService
from launchpad.utils.naming import is_valid_run_id
from launchpad.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

TerminalListener = Callable[[str], None]


@dataclass
class Run:
    """In-process state of one run. Only the event loop mutates ``status``."""
    request: BuildRequest
    log: LogStream
    status: RunStatus = RunStatus.QUEUED
    workspace: Optional[Workspace] = None
    artifact: Optional[BuildArtifact] = None
    handle: Optional[RunHandle] = None
    port: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    log_tail: str = ""
    cancelled: bool = False
    start_attempted: bool = False
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    watch_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def run_id(self) -> str:
        return self.request.correlation_id

    def snapshot(self) -> dict:
        return {
            "deploymentId": self.run_id,
            "owner": self.request.owner,
            "repo": self.request.repo,
            "branch": self.request.branch,
            "status": self.status.value,
            "hostPort": self.port,
            "handle": self.handle.target if self.handle else None,
            "image": self.artifact.reference if self.artifact and self.artifact.kind == "image" else None,
            "error": self.error,
            "logLength": self.log.length,
        }


class Orchestrator:

    def __init__(
        self,
        runtime: Runtime,
        workspaces: WorkspaceService,
        ports: PortAllocator,
        logs: LogPipeline,
        metadata: MetadataService,
        archive: ArchiveStore,
        archive_artifacts: bool = ARCHIVE_ARTIFACTS,
        watch_interval: float = WATCH_INTERVAL,
    ) -> None:
        self.runtime = runtime
        self.workspaces = workspaces
        self.ports = ports
        self.logs = logs
        self.metadata = metadata
        self.archive = archive
        self.archive_artifacts = archive_artifacts
        self.watch_interval = watch_interval
        self._runs: Dict[str, Run] = {}
        self._terminal_listeners: List[TerminalListener] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get(self, run_id: str) -> Optional[Run]:
        return self._runs.get(run_id)

    def add_terminal_listener(self, listener: TerminalListener) -> None:
        """Call ``listener(run_id)`` on the loop whenever a run enters STOPPED or FAILED."""
        self._terminal_listeners.append(listener)

    async def submit(self, request: BuildRequest) -> Run:
        """
        Register a run and start it in the background.

        Raises
        ------
        ValueError
            A run with the same correlation id already exists.
        """
        run_id = request.correlation_id
        if run_id in self._runs:
            raise ValueError(f"run {run_id} already exists")

        stream = self.logs.open(run_id)
        run = Run(request=request, log=stream)
        self._runs[run_id] = run

        record = RunRecord(
            deployment_id=run_id,
            owner=request.owner,
            repo=request.repo,
            branch=request.branch,
            status=RunStatus.QUEUED,
            log_ref=log_key(run_id),
        )
        await asyncio.to_thread(self.metadata.create, record)
        await asyncio.to_thread(
            stream.write_line, f"==> Queued {request.owner}/{request.repo}#{request.branch} as {run_id}"
        )
        logger.info("Run %s queued for %s/%s#%s", run_id, request.owner, request.repo, request.branch)

        run.task = asyncio.create_task(self._execute(run), name=f"run-{run_id}")
        return run

    async def execute(self, request: BuildRequest) -> Run:
        """Submit and wait until the run is RUNNING or has failed."""
        run = await self.submit(request)
        await run.task
        return run

    async def stop(self, run_id: str) -> RunStatus:
        """
        Stop a run. Safe to call any number of times.

        Raises
        ------
        RunNotFound
            ``run_id`` is not a valid run id, so no run can carry it.
        """
        run = self._runs.get(run_id)
        if run is None:
            if not is_valid_run_id(run_id):
                raise RunNotFound(f"unknown run {run_id!r}")
            return await self._stop_unknown(run_id)

        if run.status.is_terminal:
            logger.info("Stop for %s ignored: already %s", run_id, run.status.value)
            return run.status

        if run.status is RunStatus.RUNNING:
            await self._transition(run, RunStatus.STOPPED, message="stopped by request")
            await self._cleanup(run)
            return run.status

        # QUEUED / BUILDING: the build task keeps running in its thread
        run.cancelled = True
        await self._fail(run, LaunchpadError("stopped by request before the run started"))
        return run.status

    def status(self, run_id: str) -> dict:
        """
        Current view of a run: live state first, metadata mirror second.

        Raises
        ------
        RunNotFound
        """
        run = self._runs.get(run_id)
        if run is not None:
            return run.snapshot()
        if not is_valid_run_id(run_id):
            raise RunNotFound(f"unknown run {run_id!r}")
        mirrored = self.metadata.read(run_id)
        if mirrored is None:
            raise RunNotFound(f"unknown run {run_id}")
        return {
            "deploymentId": run_id,
            "owner": mirrored.get("owner"),
            "repo": mirrored.get("repo"),
            "branch": mirrored.get("branch"),
            "status": mirrored.get("status"),
            "hostPort": mirrored.get("host_port"),
            "handle": mirrored.get("handle"),
            "image": mirrored.get("image"),
            "error": mirrored.get("error"),
            "logLength": mirrored.get("log_length", 0),
        }

    def resolve_target(self, run_id: str) -> Optional[int]:
        """
        Host port serving ``run_id``, or None when it is not running.

        Raises
        ------
        RunNotFound
        """
        view = self.status(run_id)
        if view["status"] != RunStatus.RUNNING.value:
            return None
        return view["hostPort"]

    def read_log(self, run_id: str, offset: int = 0) -> LogChunk:
        return self.logs.read(run_id, offset)

    async def shutdown(self) -> None:
        """Cancel background tasks. Workloads keep running and can be stopped by id later."""
        tasks = [t for run in self._runs.values() for t in (run.task, run.watch_task)
                 if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------
    async def _execute(self, run: Run) -> None:
        request = run.request
        run_id = run.run_id
        sink = run.log.write_line
        if run.cancelled:
            return
        try:
            await self._transition(run, RunStatus.BUILDING)

            run.workspace = await asyncio.to_thread(
                self.workspaces.prepare, run_id, request.owner, request.repo, request.branch, sink,
            )
            if run.cancelled:
                await self._cleanup(run)
                return

            run.artifact = await asyncio.to_thread(
                self.runtime.builder.build, run_id, run.workspace, dict(request.env), sink,
            )
            # Mirror the build output now so a crash later still leaves it retrievable
            await asyncio.to_thread(run.log.flush)
            if run.cancelled:
                await self._cleanup(run)
                return

            run.port = await asyncio.to_thread(self.ports.allocate, run_id)
            if run.cancelled:
                await self._cleanup(run)
                return
            await asyncio.to_thread(sink, f"==> Allocated host port {run.port}")

            run.start_attempted = True
            run.handle = await asyncio.to_thread(
                self.runtime.supervisor.start, run_id, run.artifact, run.port, dict(request.env), sink,
            )
            if run.cancelled:
                await self._cleanup(run)
                return

            await self._transition(
                run,
                RunStatus.RUNNING,
                host_port=run.port,
                handle=run.handle.target,
                image=run.artifact.reference if run.artifact.kind == "image" else None,
            )
        except asyncio.CancelledError:
            raise
        except LaunchpadError as exc:
            await self._fail(run, exc)
            return
        except Exception as exc:
            logger.exception("Unexpected error in run %s", run_id)
            await self._fail(run, exc)
            return

        if self.runtime.containerized and self.archive_artifacts and run.workspace is not None:
            ok = await asyncio.to_thread(archive_workspace, run_id, run.workspace.path, self.archive)
            if not ok:
                await asyncio.to_thread(sink, "WARN: artifact upload failed")

        if self.runtime.containerized and run.workspace is not None:
            # The image carries everything the container needs
            await asyncio.to_thread(self.workspaces.release, run.workspace)

        if self.watch_interval > 0 and run.status is RunStatus.RUNNING:
            run.watch_task = asyncio.create_task(self._watch(run), name=f"watch-{run_id}")

    async def _transition(self, run: Run, target: RunStatus, message: Optional[str] = None, **fields) -> None:
        previous = run.status
        check_transition(previous, target)
        run.status = target
        if target.is_terminal:
            self._notify_terminal(run.run_id)

        line = f"==> Status: {previous.value} -> {target.value}"
        if message:
            line += f" ({message})"
        logger.info("Run %s: %s -> %s%s", run.run_id, previous.value, target.value,
                    f" ({message})" if message else "")

        def _mirror() -> None:
            run.log.write_line(line)
            self.metadata.update(
                run.run_id, status=target, error=run.error, log_length=run.log.length, **fields,
            )

        await asyncio.to_thread(_mirror)

    def _notify_terminal(self, run_id: str) -> None:
        for listener in self._terminal_listeners:
            try:
                listener(run_id)
            except Exception:
                logger.exception("Terminal listener failed for %s", run_id)

    async def _fail(self, run: Run, exc: BaseException) -> None:
        if not run.status.is_terminal:
            kind = getattr(exc, "kind", type(exc).__name__)
            run.error_kind = kind
            run.error = f"{kind}: {exc}"
            run.log_tail = getattr(exc, "log_tail", "") or await asyncio.to_thread(run.log.tail)
            await asyncio.to_thread(run.log.write_line, f"ERROR: {run.error}")
            await self._transition(run, RunStatus.FAILED, message=str(exc))
        await self._cleanup(run)

    async def _cleanup(self, run: Run) -> None:
        """Idempotent teardown of whatever the run holds."""
        if run.watch_task is not None and run.watch_task is not asyncio.current_task():
            run.watch_task.cancel()

        if run.start_attempted:
            try:
                await asyncio.to_thread(self.runtime.supervisor.stop, run.run_id, run.handle)
            except StopFailed as exc:
                logger.warning("Stop for %s unconfirmed, treating as stopped: %s", run.run_id, exc)
                await asyncio.to_thread(run.log.write_line, f"WARN: {exc}")

        if run.artifact is not None:
            await asyncio.to_thread(self.runtime.builder.discard, run.artifact)

        if run.port is not None and self.ports.release(run.port, owner=run.run_id):
            logger.info("Released port %d for %s", run.port, run.run_id)

        # A build thread may still be reading the tree; its own cleanup removes it
        if run.workspace is not None and not _task_in_flight(run):
            await asyncio.to_thread(self.workspaces.release, run.workspace)

        if run.status.is_terminal:
            await asyncio.to_thread(run.log.close)

    async def _stop_unknown(self, run_id: str) -> RunStatus:
        mirrored = await asyncio.to_thread(self.metadata.read, run_id)
        if mirrored is not None:
            status = RunStatus(mirrored.get("status", RunStatus.QUEUED.value))
            if status.is_terminal:
                return status

        logger.info("Stopping run %s by name (no live handle)", run_id)
        try:
            await asyncio.to_thread(self.runtime.supervisor.stop, run_id, None)
        except StopFailed as exc:
            logger.warning("Stop for %s unconfirmed, treating as stopped: %s", run_id, exc)
        await asyncio.to_thread(self.metadata.update, run_id, status=RunStatus.STOPPED)
        return RunStatus.STOPPED

    async def _watch(self, run: Run) -> None:
        policy = RetryPolicy(interval=self.watch_interval, max_attempts=None)
        async for attempt in policy.async_attempts():
            if run.status is not RunStatus.RUNNING:
                return
            if attempt == 1:
                continue
            await asyncio.to_thread(run.log.flush, False)
            alive = await asyncio.to_thread(self.runtime.supervisor.is_alive, run.handle)
            if run.status is not RunStatus.RUNNING:
                return
            if not alive:
                logger.warning("Workload for %s is no longer alive", run.run_id)
                await self._fail(run, RuntimeCrash("workload exited unexpectedly"))
                return


def _task_in_flight(run: Run) -> bool:
    task = run.task
    return task is not None and not task.done() and task is not asyncio.current_task()


def create_orchestrator(
    runtime: Optional[Runtime] = None,
    archive: Optional[ArchiveStore] = None,
    records: Optional[RecordStore] = None,
    workspaces: Optional[WorkspaceService] = None,
    ports: Optional[PortAllocator] = None,
    **kwargs,
) -> Orchestrator:
    """Wire an Orchestrator from configuration, overriding any collaborator passed in."""
    archive = archive or create_archive_store()
    metadata = MetadataService(records or InMemoryRecordStore(), archive)
    logs = LogPipeline(
        archive,
        on_flush=lambda run_id, length: metadata.update(run_id, log_length=length),
    )
    return Orchestrator(
        runtime=runtime or create_runtime(),
        workspaces=workspaces or WorkspaceService(),
        ports=ports or PortAllocator(),
        logs=logs,
        metadata=metadata,
        archive=archive,
        **kwargs,
    )
