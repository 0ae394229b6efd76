"""
Job submission and tracking.

Submitting a job validates the upload, builds its workspace, and queues
it on a bounded worker pool; the caller gets a handle back immediately
and polls ``status()`` or registers a callback.
"""

import shutil
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel
from rich.console import Console
from rich.markup import escape

from utils.validation import sha256_file

from .artifacts import ArtifactDownload, ArtifactLocator
from .cleaner import Cleaner, RetentionPolicy
from .config import EngineConfig
from .intake import UploadItem, materialize, validate_upload
from .orchestrator import PipelineOrchestrator, PipelineOutcome
from .runner import StageRunner
from .stages import Modality
from .workspace import JobStatus, Workspace, WorkspaceError, WorkspaceManager, new_job_id

console = Console()

RECORD_NAME = "job.json"


class JobSnapshot(BaseModel):
    """
    Caller-facing view of a job. Never contains filesystem paths.

    A job reads as RUNNING until its record is complete, so a polling
    caller never sees a terminal status without the result fields.
    """
    job_id: str
    modality: Modality
    status: JobStatus
    outcome: Optional[JobStatus] = None
    current_stage: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    failed_stage: Optional[str] = None
    artifact_url: Optional[str] = None
    artifact_sha256: Optional[str] = None
    created_at: datetime
    finished_at: Optional[datetime] = None
    stage_durations: Dict[str, float] = {}
    total_duration_seconds: Optional[float] = None


class JobHandle(BaseModel):
    job_id: str
    modality: Modality


class UnknownJob(KeyError):
    """No job with this id was submitted to this service."""
    pass


class _Job:
    """Service-side bookkeeping for one job."""

    def __init__(self, workspace: Workspace, modality: Modality):
        self.workspace = workspace
        self.modality = modality
        self.cancel = threading.Event()
        self.current_stage: Optional[str] = None
        self.outcome: Optional[PipelineOutcome] = None
        self.crash: Optional[str] = None
        self.artifact_sha256: Optional[str] = None
        self.finished_at: Optional[datetime] = None
        self.future: Optional[Future] = None


def build_orchestrator(
    config: EngineConfig,
    heavy_slots: Optional[threading.BoundedSemaphore] = None,
) -> PipelineOrchestrator:
    """Wire runner, cleaner and orchestrator from one config."""
    runner = StageRunner(
        config.platform,
        tail_lines=config.output_tail_lines,
        echo=config.echo_output,
    )
    policy = RetentionPolicy(
        names=frozenset(config.retain_names),
        prefixes=tuple(config.retain_prefixes),
    )
    cleaner = Cleaner(policy, config.artifact_name)
    return PipelineOrchestrator(config, runner, cleaner, heavy_slots=heavy_slots)


class JobService:
    """Accepts jobs and runs them on a bounded pool of workers."""

    def __init__(self, config: EngineConfig):
        self.config = config
        self.workspaces = WorkspaceManager(config.workspace_root)
        self.locator = ArtifactLocator(
            self.workspaces, config.server_base, config.route_prefix, config.public_prefixes
        )
        self.orchestrator = build_orchestrator(
            config, threading.BoundedSemaphore(config.max_heavy_stages)
        )
        self._executor = ThreadPoolExecutor(
            max_workers=config.max_concurrent_jobs,
            thread_name_prefix="splat-job",
        )
        self._jobs: Dict[str, _Job] = {}
        self._callbacks: List[Callable[[JobSnapshot], None]] = []
        self._lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()

    def submit(self, items: Sequence[UploadItem], job_id: Optional[str] = None) -> JobHandle:
        """
        Validate an upload and queue a job for it.

        Raises:
            ValidationError: before anything touches the disk
            WorkspaceError: the workspace could not be created; nothing queued
        """
        modality = validate_upload(items)
        job_id = job_id or new_job_id()
        workspace = self.workspaces.create(job_id)
        try:
            materialize(workspace, items, modality)
        except OSError as e:
            shutil.rmtree(workspace.root, ignore_errors=True)
            raise WorkspaceError(f"Could not store the upload for job {job_id}: {e.strerror or e}")

        job = _Job(workspace, modality)
        with self._lock:
            self._jobs[job_id] = job
        self._persist(job)
        job.future = self._executor.submit(self._run, job)
        console.print(f"[blue]Queued job {job_id} ({modality.value})[/blue]")
        return JobHandle(job_id=job_id, modality=modality)

    def _run(self, job: _Job) -> Optional[PipelineOutcome]:
        def stage_started(name: str):
            job.current_stage = name
            self._persist(job)

        try:
            job.outcome = self.orchestrator.run(
                job.workspace, job.modality, cancel=job.cancel, on_stage=stage_started,
            )
            if job.outcome.succeeded and job.outcome.artifact is not None:
                job.artifact_sha256 = sha256_file(job.outcome.artifact)
        except Exception as e:
            job.crash = f"{type(e).__name__}: {e}"
            console.print(f"[red]Job {job.workspace.job_id} raised "
                          f"{escape(type(e).__name__)}[/red]")
        finally:
            job.current_stage = None
            # Publishes the terminal status; everything above must be set first
            job.finished_at = datetime.now(timezone.utc)
            self._persist(job)
            self._notify(job)
        return job.outcome

    def _get(self, job_id: str) -> _Job:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise UnknownJob(job_id)
        return job

    def status(self, job_id: str) -> JobSnapshot:
        return self._snapshot(self._get(job_id))

    def jobs(self) -> List[JobSnapshot]:
        with self._lock:
            jobs = list(self._jobs.values())
        return [self._snapshot(job) for job in jobs]

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobSnapshot:
        """Block until the job has finished (for CLIs and tests)."""
        job = self._get(job_id)
        if job.future is not None:
            job.future.result(timeout=timeout)
        return self._snapshot(job)

    def cancel(self, job_id: str) -> bool:
        """Ask a job to stop. Returns False if it already finished."""
        job = self._get(job_id)
        if job.finished_at is not None:
            return False
        job.cancel.set()
        console.print(f"[yellow]Cancelling job {job_id}[/yellow]")
        return True

    def add_done_callback(self, callback: Callable[[JobSnapshot], None]) -> None:
        with self._lock:
            self._callbacks.append(callback)

    def open_artifact(self, job_id: str, relative: str) -> ArtifactDownload:
        return self.locator.open(job_id, relative)

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        if cancel_running:
            with self._lock:
                jobs = list(self._jobs.values())
            for job in jobs:
                job.cancel.set()
        self._executor.shutdown(wait=wait)

    def _snapshot(self, job: _Job) -> JobSnapshot:
        workspace = job.workspace
        # finished_at is written last by _run; read it first
        finished_at = job.finished_at
        status = workspace.status
        if finished_at is None:
            if status != JobStatus.CREATED:
                status = JobStatus.RUNNING
            return JobSnapshot(
                job_id=workspace.job_id,
                modality=job.modality,
                status=status,
                current_stage=job.current_stage,
                created_at=workspace.created_at,
            )

        outcome = job.outcome
        snapshot = JobSnapshot(
            job_id=workspace.job_id,
            modality=job.modality,
            status=status,
            outcome=workspace.outcome,
            current_stage=job.current_stage,
            created_at=workspace.created_at,
            finished_at=finished_at,
        )
        if outcome is not None:
            snapshot.error_kind = outcome.error_kind
            snapshot.error_message = outcome.error_message
            snapshot.failed_stage = outcome.failed_stage
            stats = outcome.stats.to_dict()
            snapshot.total_duration_seconds = stats["total_duration_seconds"]
            snapshot.stage_durations = {
                name: info["duration_seconds"] for name, info in stats["stages"].items()
            }
            if outcome.succeeded and outcome.artifact is not None:
                snapshot.artifact_url = self.locator.url_for(
                    workspace.job_id, workspace.relative(outcome.artifact)
                )
                snapshot.artifact_sha256 = job.artifact_sha256
        elif job.crash is not None:
            snapshot.error_kind = "internal_error"
            snapshot.error_message = "Internal error while running the pipeline"
        return snapshot

    def _persist(self, job: _Job) -> None:
        """Write the job record next to the stage logs for operator tooling."""
        record = self._snapshot(job)
        path = job.workspace.logs_dir / RECORD_NAME
        try:
            path.write_text(record.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            console.print(f"[yellow]Could not write job record for {job.workspace.job_id}: "
                          f"{escape(str(e))}[/yellow]")

    def _notify(self, job: _Job) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        snapshot = self._snapshot(job)
        for callback in callbacks:
            try:
                callback(snapshot)
            except Exception as e:
                console.print(f"[yellow]Job callback failed for {job.workspace.job_id}: "
                              f"{escape(str(e))}[/yellow]")


def load_record(workspaces: WorkspaceManager, job_id: str) -> JobSnapshot:
    """Read the persisted record of a job (raises FileNotFoundError)."""
    path = workspaces.path_for(job_id) / "logs" / RECORD_NAME
    return JobSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
