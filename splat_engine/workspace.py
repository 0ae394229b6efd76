"""
Per-job workspace management.

Each job owns one directory tree under the workspace root:

    <root>/<job_id>/
    ├── input/          uploaded video or images
    ├── intermediate/   scene directory handed to the SfM tool
    │   └── input/      frames (extracted or uploaded images)
    ├── output/         trainer model directory
    ├── result/         canonical artifact location
    └── logs/           per-stage output and the job record
"""

import os
import re
import shutil
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple

from rich.console import Console

from .errors import EngineError

console = Console()

JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")

SUBDIRECTORIES = ("input", "intermediate", "output", "result", "logs")


class WorkspaceError(EngineError):
    """The workspace directory tree could not be created."""
    pass


class InvalidTransition(EngineError):
    """A status change that would move a job backwards or skip a state."""
    pass


class JobStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CLEANED_UP = "cleaned_up"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)


TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.CREATED: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED}),
    JobStatus.SUCCEEDED: frozenset({JobStatus.CLEANED_UP}),
    JobStatus.FAILED: frozenset({JobStatus.CLEANED_UP}),
    JobStatus.CLEANED_UP: frozenset(),
}


def new_job_id() -> str:
    """Generate an opaque, unique job identifier."""
    return uuid.uuid4().hex


def validate_job_id(job_id: str) -> str:
    if not isinstance(job_id, str) or not JOB_ID_PATTERN.match(job_id):
        raise ValueError(f"Invalid job id: {job_id!r}")
    return job_id


class Workspace:
    """Handle to one job's directory tree and lifecycle state."""

    def __init__(
        self,
        job_id: str,
        root: Path,
        status: JobStatus = JobStatus.CREATED,
        created_at: Optional[datetime] = None,
    ):
        self.job_id = job_id
        self.root = root
        self.created_at = created_at or datetime.now(timezone.utc)
        self._status = status
        self._outcome: Optional[JobStatus] = status if status.is_terminal else None
        self._history: List[Tuple[JobStatus, datetime]] = [(status, self.created_at)]
        self._lock = threading.Lock()

    def __repr__(self):
        return f"Workspace(job_id={self.job_id!r}, status={self.status.value})"

    # Directory accessors

    @property
    def input_dir(self) -> Path:
        return self.root / "input"

    @property
    def intermediate_dir(self) -> Path:
        return self.root / "intermediate"

    @property
    def output_dir(self) -> Path:
        return self.root / "output"

    @property
    def result_dir(self) -> Path:
        return self.root / "result"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def scene_dir(self) -> Path:
        """Source directory for the SfM tool and trainer."""
        return self.intermediate_dir

    @property
    def frames_dir(self) -> Path:
        """Image folder the SfM tool reads (``<scene>/input``)."""
        return self.intermediate_dir / "input"

    @property
    def model_dir(self) -> Path:
        return self.output_dir

    def relative(self, path: Path) -> str:
        """Path relative to the workspace root, with forward slashes."""
        return Path(path).relative_to(self.root).as_posix()

    # Lifecycle

    @property
    def status(self) -> JobStatus:
        with self._lock:
            return self._status

    @property
    def outcome(self) -> Optional[JobStatus]:
        """SUCCEEDED or FAILED once the pipeline finished, kept after cleanup."""
        with self._lock:
            return self._outcome

    @property
    def history(self) -> List[Tuple[JobStatus, datetime]]:
        with self._lock:
            return list(self._history)

    def transition(self, new_status: JobStatus) -> None:
        with self._lock:
            allowed = TRANSITIONS[self._status]
            if new_status not in allowed:
                raise InvalidTransition(
                    f"Job {self.job_id}: cannot move from {self._status.value} "
                    f"to {new_status.value}"
                )
            self._status = new_status
            if new_status.is_terminal:
                self._outcome = new_status
            self._history.append((new_status, datetime.now(timezone.utc)))


class WorkspaceManager:
    """Creates and locates job workspaces under a single root."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, job_id: str) -> Path:
        return self.root / validate_job_id(job_id)

    def create(self, job_id: str) -> Workspace:
        """
        Create the full directory tree for a job.

        The tree is built in a hidden staging directory and renamed into
        place, so a workspace is either complete or absent.

        Raises:
            WorkspaceError: invalid id, id collision, or any OS failure
        """
        try:
            validate_job_id(job_id)
        except ValueError as e:
            raise WorkspaceError(str(e))

        final = self.root / job_id
        staging = self.root / f".{job_id}.partial"

        try:
            self.root.mkdir(parents=True, exist_ok=True)
            if final.exists():
                raise WorkspaceError(f"Workspace already exists for job {job_id}")
            staging.mkdir()
            for name in SUBDIRECTORIES:
                (staging / name).mkdir()
            (staging / "intermediate" / "input").mkdir()
            os.rename(staging, final)
        except WorkspaceError:
            raise
        except FileExistsError as e:
            raise WorkspaceError(f"Workspace collision for job {job_id}: {e}")
        except OSError as e:
            if staging.exists() and not final.exists():
                shutil.rmtree(staging, ignore_errors=True)
            raise WorkspaceError(f"Could not create workspace for job {job_id}: {e.strerror or e}")

        console.print(f"[dim]Created workspace for job {job_id}[/dim]")
        return Workspace(job_id, final)

    def open(self, job_id: str, status: JobStatus = JobStatus.CLEANED_UP) -> Workspace:
        """
        Return a handle to an existing workspace, e.g. for operator commands.

        Raises:
            WorkspaceError: the workspace does not exist
        """
        try:
            path = self.path_for(job_id)
        except ValueError as e:
            raise WorkspaceError(str(e))
        if not path.is_dir():
            raise WorkspaceError(f"No workspace for job {job_id}")
        created = datetime.fromtimestamp(path.stat().st_ctime, tz=timezone.utc)
        return Workspace(job_id, path, status=status, created_at=created)
