"""
Engine configuration.

Resolved once at startup (defaults, then ``SPLAT_*`` environment
variables, then CLI options) and passed down to every component.
"""

import os
import sys
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple


class ProcessPlatform(str, Enum):
    """How child processes are grouped and how a process tree is killed."""
    POSIX = "posix"
    WINDOWS = "windows"

    @classmethod
    def detect(cls) -> "ProcessPlatform":
        return cls.WINDOWS if sys.platform == "win32" else cls.POSIX


# Argument templates for the external tools. Each element is formatted
# on its own, so substituted values never get split or re-interpreted.
DEFAULT_COMMANDS: Dict[str, List[str]] = {
    "extract_frames": [
        "{ffmpeg}", "-y", "-i", "{video}",
        "-qscale:v", "1", "-qmin", "1",
        "-vf", "fps={fps}",
        "{frames_dir}/%04d.jpg",
    ],
    "convert": [
        "{python}", "{repo}/convert.py",
        "-s", "{scene_dir}",
    ],
    "train": [
        "{python}", "{repo}/train.py",
        "-s", "{scene_dir}",
        "-m", "{model_dir}",
        "--iterations", "{iterations}",
        "--save_iterations", "{iterations}",
    ],
}

DEFAULT_TIMEOUTS: Dict[str, float] = {
    "extract_frames": 30 * 60,
    "convert": 60 * 60,
    "train": 3 * 60 * 60,
}


@dataclass
class EngineConfig:
    """Configuration for the reconstruction engine."""
    # Workspaces
    workspace_root: Path = Path("./workspaces")

    # Pipeline
    iterations: int = 3000
    frame_fps: float = 2.0
    artifact_name: str = "point_cloud.ply"
    commands: Dict[str, List[str]] = field(default_factory=lambda: {
        name: list(argv) for name, argv in DEFAULT_COMMANDS.items()
    })

    # Toolchain
    python_executable: str = "python"
    ffmpeg_executable: str = "ffmpeg"
    splatting_repo: Path = Path("./gaussian-splatting")
    conda_executable: str = "conda"
    conda_env: Optional[str] = None  # activation step for convert/train
    path_prepend: List[str] = field(default_factory=list)
    extra_env: Dict[str, str] = field(default_factory=dict)

    # Execution
    timeouts: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_TIMEOUTS))
    default_timeout: float = 60 * 60
    max_concurrent_jobs: int = 2
    max_heavy_stages: int = 1  # GPU-bound stages across all jobs
    output_tail_lines: int = 200
    echo_output: bool = False
    platform: ProcessPlatform = field(default_factory=ProcessPlatform.detect)

    # Retention
    retain_names: Tuple[str, ...] = ("point_cloud.ply", "cameras.json", "cfg_args")
    retain_prefixes: Tuple[str, ...] = ("result/", "logs/")

    # Artifact addressing
    server_base: str = "http://localhost:8080"
    route_prefix: str = "files"
    public_prefixes: Tuple[str, ...] = ("result/",)

    def __post_init__(self):
        self.workspace_root = Path(self.workspace_root)
        self.splatting_repo = Path(self.splatting_repo)
        if self.iterations <= 0:
            raise ValueError(f"iterations must be positive, got {self.iterations}")
        if self.frame_fps <= 0:
            raise ValueError(f"frame_fps must be positive, got {self.frame_fps}")
        if self.max_concurrent_jobs < 1 or self.max_heavy_stages < 1:
            raise ValueError("max_concurrent_jobs and max_heavy_stages must be at least 1")
        for name in ("extract_frames", "convert", "train"):
            if not self.commands.get(name):
                raise ValueError(f"No command configured for stage '{name}'")

    def timeout_for(self, stage: str) -> float:
        return float(self.timeouts.get(stage, self.default_timeout))

    def with_overrides(self, **overrides) -> "EngineConfig":
        """Return a copy with the non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "EngineConfig":
        """
        Build a config from ``SPLAT_*`` environment variables.

        Unset variables keep their defaults. Stage timeouts are read from
        ``SPLAT_TIMEOUT_<STAGE>`` (seconds).
        """
        env = os.environ if environ is None else environ
        config = cls()
        values = {}

        def get(name):
            value = env.get(f"SPLAT_{name}")
            return value if value not in (None, "") else None

        if get("WORKSPACE_ROOT"):
            values["workspace_root"] = Path(get("WORKSPACE_ROOT"))
        if get("ITERATIONS"):
            values["iterations"] = int(get("ITERATIONS"))
        if get("FRAME_FPS"):
            values["frame_fps"] = float(get("FRAME_FPS"))
        if get("PYTHON"):
            values["python_executable"] = get("PYTHON")
        if get("FFMPEG"):
            values["ffmpeg_executable"] = get("FFMPEG")
        if get("GS_REPO"):
            values["splatting_repo"] = Path(get("GS_REPO"))
        if get("CONDA"):
            values["conda_executable"] = get("CONDA")
        if get("CONDA_ENV"):
            values["conda_env"] = get("CONDA_ENV")
        if get("PATH_PREPEND"):
            values["path_prepend"] = [p for p in get("PATH_PREPEND").split(os.pathsep) if p]
        if get("MAX_JOBS"):
            values["max_concurrent_jobs"] = int(get("MAX_JOBS"))
        if get("MAX_HEAVY_STAGES"):
            values["max_heavy_stages"] = int(get("MAX_HEAVY_STAGES"))
        if get("SERVER_BASE"):
            values["server_base"] = get("SERVER_BASE")
        if get("ROUTE_PREFIX"):
            values["route_prefix"] = get("ROUTE_PREFIX")
        if get("ECHO_OUTPUT"):
            values["echo_output"] = get("ECHO_OUTPUT").lower() in ("1", "true", "yes")

        timeouts = dict(config.timeouts)
        for stage in list(DEFAULT_TIMEOUTS):
            raw = get(f"TIMEOUT_{stage.upper()}")
            if raw:
                timeouts[stage] = float(raw)
        values["timeouts"] = timeouts

        return replace(config, **values)
