"""
External stage execution.

Runs one external program per call with an explicit argument vector,
streams its merged stdout/stderr to a log file, and enforces a
wall-clock timeout by killing the whole process group.
"""

import os
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from rich.console import Console
from rich.markup import escape

from .config import ProcessPlatform
from .errors import EngineError

console = Console()

# Granularity for checking the cancel flag while a stage runs
POLL_INTERVAL = 0.2

# How long to wait for the output reader once the process is gone
READER_JOIN_TIMEOUT = 5.0


class StageError(EngineError):
    """Base class for failures of a single stage invocation."""

    kind = "stage_error"

    def __init__(self, message: str, stage: str = "", output: str = "", exit_code: Optional[int] = None):
        super().__init__(message)
        self.stage = stage
        self.output = output
        self.exit_code = exit_code


class StageFailed(StageError):
    """The stage exited with a nonzero code (or could not be started)."""
    kind = "stage_failed"


class StageTimeout(StageError):
    """The stage exceeded its wall-clock timeout and was killed."""
    kind = "stage_timeout"


class StageCancelled(StageError):
    """The stage was killed because its job was cancelled."""
    kind = "stage_cancelled"


@dataclass
class StageResult:
    """Outcome of a stage that exited with code 0."""
    exit_code: int
    output: str
    elapsed_seconds: float
    log_path: Optional[Path] = None


def build_environment(
    overlay: Optional[Mapping[str, str]] = None,
    path_prepend: Sequence[str] = (),
    base: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Merge an environment overlay onto the current environment.

    ``path_prepend`` entries go in front of ``PATH`` so the intended
    toolchain wins over anything else installed on the host.
    """
    env = dict(os.environ if base is None else base)
    if overlay:
        env.update({str(k): str(v) for k, v in overlay.items()})
    if path_prepend:
        current = env.get("PATH", "")
        parts = [str(p) for p in path_prepend] + ([current] if current else [])
        env["PATH"] = os.pathsep.join(parts)
    env.setdefault("PYTHONUNBUFFERED", "1")
    env.setdefault("PYTHONIOENCODING", "utf-8")
    return env


def activation_prefix(conda_executable: str, env_name: Optional[str]) -> List[str]:
    """Arguments that activate a conda environment before the tool runs."""
    if not env_name:
        return []
    return [conda_executable, "run", "--no-capture-output", "-n", env_name]


class StageRunner:
    """
    Executes external commands for pipeline stages.

    Exactly one attempt per call; retries are the caller's business.
    """

    def __init__(
        self,
        platform: ProcessPlatform,
        tail_lines: int = 200,
        echo: bool = False,
    ):
        self.platform = platform
        self.tail_lines = tail_lines
        self.echo = echo

    def execute(
        self,
        argv: Sequence[str],
        cwd: Path,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        *,
        stage: str = "",
        log_path: Optional[Path] = None,
        cancel: Optional[threading.Event] = None,
    ) -> StageResult:
        """
        Run ``argv`` in ``cwd`` and wait for it to finish.

        Args:
            argv: Program and arguments; passed to the OS as-is, no shell
            cwd: Working directory for the process
            env: Full environment for the process (see ``build_environment``)
            timeout: Wall-clock limit in seconds, None for no limit
            stage: Stage name used in messages and errors
            log_path: File that receives the merged output stream
            cancel: When set, the process tree is killed immediately

        Returns:
            StageResult for a zero exit code

        Raises:
            StageTimeout: the timeout expired; the process group was killed
            StageCancelled: ``cancel`` was set; the process group was killed
            StageFailed: nonzero exit code or the program could not start
        """
        argv = [str(a) for a in argv]
        if not argv:
            raise StageFailed("Empty command", stage=stage)

        label = stage or Path(argv[0]).name
        console.print(f"[blue]Running stage {escape(label)}...[/blue]")

        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = open(log_path, "w", encoding="utf-8") if log_path is not None else None

        tail: deque = deque(maxlen=self.tail_lines)
        output_lock = threading.Lock()
        finished = threading.Event()
        start = time.monotonic()
        try:
            try:
                process = subprocess.Popen(
                    argv,
                    cwd=str(cwd),
                    env=dict(env) if env is not None else None,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    **self._group_kwargs(),
                )
            except OSError as e:
                raise StageFailed(
                    f"Stage {label} could not start {argv[0]}: {e.strerror or e}",
                    stage=stage,
                )

            reader = threading.Thread(
                target=self._pump,
                args=(process, tail, log_file, label, output_lock, finished),
                name=f"stage-output-{label}",
                daemon=True,
            )
            reader.start()

            outcome = self._wait(process, timeout, cancel, start)

            # Anything the tool left behind in its group goes too
            self.kill_tree(process.pid)
            # A descendant in another session can keep the pipe open past this
            reader.join(timeout=READER_JOIN_TIMEOUT)
            elapsed = time.monotonic() - start
        finally:
            with output_lock:
                finished.set()
                output = "".join(tail)
                if log_file is not None:
                    log_file.close()

        if outcome == "timeout":
            console.print(f"[red]Stage {escape(label)} timed out after {timeout:.0f}s[/red]")
            raise StageTimeout(
                f"Stage {label} exceeded its timeout of {timeout:.0f}s",
                stage=stage, output=output, exit_code=process.returncode,
            )
        if outcome == "cancelled":
            console.print(f"[yellow]Stage {escape(label)} cancelled[/yellow]")
            raise StageCancelled(
                f"Stage {label} was cancelled",
                stage=stage, output=output, exit_code=process.returncode,
            )
        if process.returncode != 0:
            console.print(f"[red]Stage {escape(label)} failed with exit code {process.returncode}[/red]")
            raise StageFailed(
                f"Stage {label} failed with exit code {process.returncode}",
                stage=stage, output=output, exit_code=process.returncode,
            )

        console.print(f"[green]Stage {escape(label)} finished in {elapsed:.1f}s[/green]")
        return StageResult(
            exit_code=0,
            output=output,
            elapsed_seconds=elapsed,
            log_path=log_path,
        )

    def _wait(
        self,
        process: subprocess.Popen,
        timeout: Optional[float],
        cancel: Optional[threading.Event],
        start: float,
    ) -> str:
        deadline = start + timeout if timeout is not None else None
        while True:
            if cancel is not None and cancel.is_set():
                self.kill_tree(process.pid)
                process.wait()
                return "cancelled"

            step = POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self.kill_tree(process.pid)
                    process.wait()
                    return "timeout"
                step = min(step, remaining)

            try:
                process.wait(timeout=step)
                return "exited"
            except subprocess.TimeoutExpired:
                continue

    def _pump(
        self,
        process: subprocess.Popen,
        tail: deque,
        log_file,
        label: str,
        lock: threading.Lock,
        finished: threading.Event,
    ) -> None:
        """Copy the merged output stream to the log, the tail and the console."""
        for raw in iter(process.stdout.readline, b""):
            line = raw.decode("utf-8", errors="replace")
            with lock:
                # Output arriving after the stage ended is drained and dropped
                if finished.is_set():
                    continue
                tail.append(line)
                if log_file is not None:
                    log_file.write(line)
                    log_file.flush()
            if self.echo:
                console.print(f"[dim]{escape(label)}: {escape(line.rstrip())}[/dim]")
        process.stdout.close()

    def _group_kwargs(self) -> Dict:
        if self.platform == ProcessPlatform.WINDOWS:
            return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}
        return {"start_new_session": True}

    def kill_tree(self, pid: int) -> None:
        """Kill a process and every process in its group."""
        if self.platform == ProcessPlatform.WINDOWS:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(pid)],
                capture_output=True,
            )
            return
        try:
            # The child leads its own session, so its pid is the group id
            os.killpg(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
