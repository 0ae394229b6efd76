"""
Pipeline variant table.

One ordered list of stage descriptors per input modality. The configured
iteration count decides where the trainer writes its point cloud.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .config import EngineConfig
from .workspace import Workspace


class Modality(str, Enum):
    VIDEO = "video"
    IMAGES = "images"


@dataclass
class StageDescriptor:
    """One external command invocation in a pipeline."""
    name: str
    argv: List[str]
    cwd: Path
    timeout: float
    env: Dict[str, str] = field(default_factory=dict)
    requires: Tuple[Path, ...] = ()  # must exist before the stage starts
    produces: Optional[Path] = None  # must exist after the stage exits 0
    heavy: bool = False              # GPU/compute bound, admission-limited
    conda_env: Optional[str] = None


# (stage name, description, modalities, heavy, needs activation)
STAGE_TABLE = [
    ("extract_frames", "Extract video frames with ffmpeg", (Modality.VIDEO,), False, False),
    ("convert", "Structure-from-motion preprocessing (COLMAP)", (Modality.VIDEO, Modality.IMAGES), True, True),
    ("train", "Train Gaussian Splat model", (Modality.VIDEO, Modality.IMAGES), True, True),
]


def trained_artifact_path(workspace: Workspace, config: EngineConfig) -> Path:
    """Where the trainer writes the point cloud for the configured iteration count."""
    return (
        workspace.model_dir
        / "point_cloud"
        / f"iteration_{config.iterations}"
        / config.artifact_name
    )


def find_video(workspace: Workspace) -> Path:
    videos = sorted(p for p in workspace.input_dir.iterdir() if p.is_file())
    if not videos:
        return workspace.input_dir / "video"
    return videos[0]


def _placeholders(workspace: Workspace, config: EngineConfig, modality: Modality) -> Dict[str, str]:
    values = {
        "python": config.python_executable,
        "ffmpeg": config.ffmpeg_executable,
        "repo": str(config.splatting_repo),
        "scene_dir": str(workspace.scene_dir),
        "frames_dir": str(workspace.frames_dir),
        "model_dir": str(workspace.model_dir),
        "iterations": str(config.iterations),
        "fps": f"{config.frame_fps:g}",
        "job_id": workspace.job_id,
    }
    if modality == Modality.VIDEO:
        values["video"] = str(find_video(workspace))
    return values


def render_argv(template: List[str], values: Dict[str, str]) -> List[str]:
    """Fill placeholders element by element; values are never re-split."""
    try:
        return [part.format(**values) for part in template]
    except KeyError as e:
        raise ValueError(f"Unknown placeholder {e} in command template {template}")


def build_stages(
    workspace: Workspace,
    modality: Modality,
    config: EngineConfig,
) -> List[StageDescriptor]:
    """
    Select and fill in the stage list for a job.

    Args:
        workspace: The job's workspace
        modality: VIDEO prepends frame extraction; IMAGES starts at convert
        config: Engine configuration (commands, timeouts, iterations)

    Returns:
        Ordered stage descriptors
    """
    values = _placeholders(workspace, config, modality)
    repo_cwd = config.splatting_repo if config.splatting_repo.is_dir() else workspace.root
    env = dict(config.extra_env)

    stages = []
    for name, _description, modalities, heavy, activate in STAGE_TABLE:
        if modality not in modalities:
            continue

        if name == "extract_frames":
            requires = (Path(values["video"]),)
            produces = workspace.frames_dir
            cwd = workspace.root
        elif name == "convert":
            requires = (workspace.frames_dir,)
            produces = workspace.scene_dir / "sparse"
            cwd = repo_cwd
        else:
            requires = (workspace.scene_dir / "sparse",)
            produces = trained_artifact_path(workspace, config)
            cwd = repo_cwd

        stages.append(StageDescriptor(
            name=name,
            argv=render_argv(config.commands[name], values),
            cwd=cwd,
            timeout=config.timeout_for(name),
            env=env,
            requires=requires,
            produces=produces,
            heavy=heavy,
            conda_env=config.conda_env if activate else None,
        ))

    return stages


def describe_variants(config: EngineConfig) -> Dict[Modality, List[Tuple[str, str, float, bool]]]:
    """Stage names, descriptions, timeouts and heavy flags per modality."""
    table = {}
    for modality in Modality:
        table[modality] = [
            (name, description, config.timeout_for(name), heavy)
            for name, description, modalities, heavy, _ in STAGE_TABLE
            if modality in modalities
        ]
    return table
