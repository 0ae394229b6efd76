"""
Pipeline Orchestrator

Runs a job's stage list strictly in order, stops at the first failure,
checks that every stage left its promised output behind, and always
cleans the workspace afterwards.
"""

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

from rich.console import Console
from rich.markup import escape

from .cleaner import Cleaner, CleanupReport
from .config import EngineConfig
from .errors import EngineError
from .runner import (
    StageCancelled,
    StageError,
    StageRunner,
    activation_prefix,
    build_environment,
)
from .stages import Modality, StageDescriptor, build_stages, trained_artifact_path
from .workspace import JobStatus, Workspace

console = Console()


class ArtifactMissing(EngineError):
    """A stage exited 0 but its declared output (or a required input) is absent."""

    kind = "artifact_missing"

    def __init__(self, message: str, stage: str = "", path: str = ""):
        super().__init__(message)
        self.stage = stage
        self.path = path


@dataclass
class PipelineStats:
    """Wall-clock timings for one job, on the monotonic clock."""
    started: float = 0.0
    stopped: Optional[float] = None
    stages: Dict[str, Dict] = field(default_factory=dict)

    def start(self):
        self.started = time.monotonic()

    def stop(self):
        self.stopped = time.monotonic()

    def record_stage(self, name: str, started: float, **details):
        self.stages[name] = {"duration_seconds": time.monotonic() - started, **details}

    @property
    def total_duration(self) -> float:
        end = self.stopped if self.stopped is not None else time.monotonic()
        return end - self.started

    def to_dict(self) -> Dict:
        """Timings as stored in the job record."""
        return {
            "total_duration_seconds": round(self.total_duration, 3),
            "stages": {
                name: {**info, "duration_seconds": round(info["duration_seconds"], 3)}
                for name, info in self.stages.items()
            },
        }


@dataclass
class PipelineOutcome:
    """What happened to one job."""
    job_id: str
    status: JobStatus
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    failed_stage: Optional[str] = None
    diagnostics: str = ""
    artifact: Optional[Path] = None
    stats: PipelineStats = field(default_factory=PipelineStats)
    cleanup: Optional[CleanupReport] = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED


def redact(text: str, workspace: Workspace) -> str:
    """Hide the workspace location from messages shown to callers."""
    if not text:
        return text
    for root in {str(workspace.root.resolve()), str(workspace.root)}:
        text = text.replace(root, "<workspace>")
    return text


def path_ready(path: Path) -> bool:
    """A file exists, or a directory exists and is not empty."""
    if path.is_dir():
        return any(path.iterdir())
    return path.is_file()


class PipelineOrchestrator:
    """Sequences the stages of one job at a time (one call per job)."""

    def __init__(
        self,
        config: EngineConfig,
        runner: StageRunner,
        cleaner: Cleaner,
        heavy_slots: Optional[threading.BoundedSemaphore] = None,
    ):
        self.config = config
        self.runner = runner
        self.cleaner = cleaner
        self.heavy_slots = heavy_slots

    def run(
        self,
        workspace: Workspace,
        modality: Modality,
        cancel: Optional[threading.Event] = None,
        on_stage: Optional[Callable[[str], None]] = None,
    ) -> PipelineOutcome:
        """
        Run the pipeline for a job that is in CREATED state.

        Stage failures are recorded in the returned outcome. Any other
        exception is re-raised after the job is marked FAILED and cleaned.

        Args:
            workspace: The job's workspace (status CREATED)
            modality: Input modality; selects the stage list
            cancel: Set to kill the running stage and stop the job
            on_stage: Called with each stage name before it starts

        Returns:
            PipelineOutcome with status SUCCEEDED or FAILED
        """
        outcome = PipelineOutcome(job_id=workspace.job_id, status=JobStatus.RUNNING)
        stats = outcome.stats
        stats.start()
        artifact_source = trained_artifact_path(workspace, self.config)

        workspace.transition(JobStatus.RUNNING)
        console.print(f"\n[bold]Job {workspace.job_id}: {modality.value} pipeline, "
                      f"{self.config.iterations} iterations[/bold]")
        try:
            stages = build_stages(workspace, modality, self.config)
            for index, stage in enumerate(stages, 1):
                console.print(f"[bold]Stage {index}/{len(stages)}: {stage.name}[/bold]")
                if on_stage is not None:
                    on_stage(stage.name)
                stage_start = time.monotonic()
                self._run_stage(workspace, stage, cancel)
                stats.record_stage(stage.name, stage_start, heavy=stage.heavy)

            workspace.transition(JobStatus.SUCCEEDED)
        except (StageError, ArtifactMissing) as e:
            outcome.error_kind = e.kind
            outcome.error_message = redact(str(e), workspace)
            outcome.failed_stage = e.stage or None
            outcome.diagnostics = getattr(e, "output", "")
            console.print(f"[bold red]Job {workspace.job_id} failed:[/bold red] "
                          f"{escape(outcome.error_message)}")
            workspace.transition(JobStatus.FAILED)
        except Exception as e:
            outcome.error_kind = "internal_error"
            outcome.error_message = redact(f"{type(e).__name__}: {e}", workspace)
            console.print(f"[bold red]Job {workspace.job_id} crashed:[/bold red] "
                          f"{escape(outcome.error_message)}")
            raise
        finally:
            if workspace.status == JobStatus.RUNNING:
                workspace.transition(JobStatus.FAILED)
            outcome.status = workspace.status
            stats.stop()
            outcome.cleanup = self._cleanup(workspace, artifact_source)

        if outcome.succeeded:
            outcome.artifact = outcome.cleanup.artifact if outcome.cleanup else None
            console.print(f"[bold green]Job {workspace.job_id} complete[/bold green] "
                          f"in {stats.total_duration:.1f}s")
        return outcome

    def _run_stage(
        self,
        workspace: Workspace,
        stage: StageDescriptor,
        cancel: Optional[threading.Event],
    ) -> None:
        for required in stage.requires:
            if not path_ready(required):
                raise ArtifactMissing(
                    f"Stage {stage.name} is missing its input {workspace.relative(required)}",
                    stage=stage.name,
                    path=workspace.relative(required),
                )

        argv = activation_prefix(self.config.conda_executable, stage.conda_env) + stage.argv
        env = build_environment(stage.env, self.config.path_prepend)
        log_path = workspace.logs_dir / f"{stage.name}.log"

        slot = self.heavy_slots if stage.heavy else None
        self._acquire(slot, stage, cancel)
        try:
            self.runner.execute(
                argv,
                stage.cwd,
                env,
                stage.timeout,
                stage=stage.name,
                log_path=log_path,
                cancel=cancel,
            )
        finally:
            if slot is not None:
                slot.release()

        if stage.produces is not None and not path_ready(stage.produces):
            raise ArtifactMissing(
                f"Stage {stage.name} exited cleanly but did not produce "
                f"{workspace.relative(stage.produces)}",
                stage=stage.name,
                path=workspace.relative(stage.produces),
            )

    def _acquire(
        self,
        slot: Optional[threading.BoundedSemaphore],
        stage: StageDescriptor,
        cancel: Optional[threading.Event],
    ) -> None:
        """Wait for a heavy-stage slot, giving up if the job is cancelled."""
        if cancel is not None and cancel.is_set():
            raise StageCancelled(f"Stage {stage.name} was cancelled", stage=stage.name)
        if slot is None:
            return
        waited = False
        while not slot.acquire(timeout=0.5):
            if not waited:
                console.print(f"[dim]Stage {stage.name} waiting for a free compute slot[/dim]")
                waited = True
            if cancel is not None and cancel.is_set():
                raise StageCancelled(f"Stage {stage.name} was cancelled", stage=stage.name)

    def _cleanup(self, workspace: Workspace, artifact_source: Path) -> Optional[CleanupReport]:
        """Clean exactly once: only a job that is terminal right now gets cleaned."""
        if not workspace.status.is_terminal:
            return None
        report = None
        try:
            report = self.cleaner.clean(workspace, artifact_source)
        except Exception as e:
            # Cleanup problems never change the job's outcome
            console.print(f"[yellow]Cleanup of job {workspace.job_id} failed: {escape(str(e))}[/yellow]")
        workspace.transition(JobStatus.CLEANED_UP)
        return report
