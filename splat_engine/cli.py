"""
Command line interface for the reconstruction engine.
"""

import shutil
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .artifacts import ArtifactLocator, ArtifactNotFound, PathTraversalError
from .config import EngineConfig
from .errors import EngineError
from .intake import UploadItem
from .jobs import JobService, build_orchestrator, load_record
from .stages import Modality, describe_variants, trained_artifact_path
from .workspace import JobStatus, WorkspaceError, WorkspaceManager

console = Console()
app = typer.Typer(help="Gaussian Splat reconstruction engine")


def load_config(
    workspace_root: Optional[Path] = None,
    iterations: Optional[int] = None,
    **overrides,
) -> EngineConfig:
    return EngineConfig.from_env().with_overrides(
        workspace_root=workspace_root,
        iterations=iterations,
        **overrides,
    )


@app.command()
def run(
    inputs: List[Path] = typer.Argument(..., help="A video file or one or more images"),
    workspace_root: Optional[Path] = typer.Option(None, help="Directory holding job workspaces"),
    iterations: Optional[int] = typer.Option(None, help="Training iterations"),
    frame_fps: Optional[float] = typer.Option(None, help="Frames per second to extract from video"),
    gs_repo: Optional[Path] = typer.Option(None, help="Path to the gaussian-splatting checkout"),
    conda_env: Optional[str] = typer.Option(None, help="Conda environment for convert/train"),
    echo: bool = typer.Option(False, "--echo", help="Echo tool output to the console"),
):
    """
    Run the complete pipeline on local files and wait for the result.
    """
    config = load_config(
        workspace_root, iterations,
        frame_fps=frame_fps,
        splatting_repo=gs_repo,
        conda_env=conda_env,
        echo_output=echo or None,
    )

    missing = [str(p) for p in inputs if not p.is_file()]
    if missing:
        console.print(f"[bold red]Input not found:[/bold red] {', '.join(missing)}")
        raise typer.Exit(1)

    console.print(Panel.fit(
        "[bold blue]Splat Engine[/bold blue]\n"
        f"Inputs: {len(inputs)} file(s)\n"
        f"Workspaces: {config.workspace_root}\n"
        f"Iterations: {config.iterations}",
        border_style="blue"
    ))

    with JobService(config) as service:
        try:
            handle = service.submit([UploadItem.from_path(p) for p in inputs])
        except EngineError as e:
            console.print(f"[bold red]Job rejected:[/bold red] {e}")
            raise typer.Exit(1)

        snapshot = service.wait(handle.job_id)

    if snapshot.outcome == JobStatus.SUCCEEDED and snapshot.artifact_url:
        console.print(Panel.fit(
            f"[bold green]Pipeline Complete![/bold green]\n\n"
            f"Job ID: {snapshot.job_id}\n"
            f"Download: {snapshot.artifact_url}\n"
            f"SHA-256: {snapshot.artifact_sha256}",
            border_style="green"
        ))
        return

    console.print(Panel.fit(
        f"[bold red]Pipeline Failed[/bold red]\n\n"
        f"Job ID: {snapshot.job_id}\n"
        f"Error: {snapshot.error_kind}\n"
        f"{snapshot.error_message or ''}",
        border_style="red"
    ))
    raise typer.Exit(1)


@app.command("stages")
def list_stages(
    modality: Optional[Modality] = typer.Option(None, help="Only show one input modality"),
    iterations: Optional[int] = typer.Option(None, help="Training iterations"),
):
    """List pipeline stages per input modality."""
    config = load_config(iterations=iterations)
    for variant, stages in describe_variants(config).items():
        if modality is not None and variant != modality:
            continue
        table = Table(title=f"{variant.value} pipeline")
        table.add_column("#", justify="right")
        table.add_column("Stage", style="blue")
        table.add_column("Description")
        table.add_column("Timeout", justify="right")
        table.add_column("GPU", justify="center")
        for index, (name, description, timeout, heavy) in enumerate(stages, 1):
            table.add_row(str(index), name, description, f"{timeout / 60:.0f} min", "yes" if heavy else "")
        console.print(table)

    console.print(f"[dim]Final artifact: output/point_cloud/iteration_{config.iterations}/"
                  f"{config.artifact_name} → result/{config.artifact_name}[/dim]")


@app.command()
def show(
    job_id: str = typer.Argument(..., help="Job ID"),
    workspace_root: Optional[Path] = typer.Option(None, help="Directory holding job workspaces"),
):
    """Show the recorded state of a job."""
    config = load_config(workspace_root)
    try:
        record = load_record(WorkspaceManager(config.workspace_root), job_id)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[bold red]No record for job {job_id}:[/bold red] {e}")
        raise typer.Exit(1)
    console.print_json(record.model_dump_json())


@app.command()
def fetch(
    job_id: str = typer.Argument(..., help="Job ID"),
    path: str = typer.Argument("result/point_cloud.ply", help="Path inside the job workspace"),
    out: Path = typer.Option(Path("."), help="Destination file or directory"),
    workspace_root: Optional[Path] = typer.Option(None, help="Directory holding job workspaces"),
):
    """Copy an artifact out of a job workspace."""
    config = load_config(workspace_root)
    locator = ArtifactLocator(
        WorkspaceManager(config.workspace_root), config.server_base, config.route_prefix,
        public_prefixes=None,
    )

    try:
        download = locator.open(job_id, path)
    except PathTraversalError as e:
        console.print(f"[bold red]Rejected:[/bold red] {e}")
        raise typer.Exit(2)
    except ArtifactNotFound as e:
        console.print(f"[bold red]Not found:[/bold red] {e}")
        raise typer.Exit(1)

    target = out / download.filename if out.is_dir() else out
    shutil.copyfile(download.path, target)
    console.print(f"[green]Saved {download.filename} ({download.size} bytes) to {target}[/green]")


@app.command()
def clean(
    job_id: str = typer.Argument(..., help="Job ID"),
    workspace_root: Optional[Path] = typer.Option(None, help="Directory holding job workspaces"),
    iterations: Optional[int] = typer.Option(None, help="Iteration count the job was trained with"),
):
    """Re-run workspace cleanup for a finished job."""
    config = load_config(workspace_root, iterations)
    try:
        workspace = WorkspaceManager(config.workspace_root).open(job_id)
    except WorkspaceError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    cleaner = build_orchestrator(config).cleaner
    report = cleaner.clean(workspace, trained_artifact_path(workspace, config))
    if not report.ok:
        for error in report.errors:
            console.print(f"  [yellow]• {error}[/yellow]")
        raise typer.Exit(1)


def main():
    app()


if __name__ == "__main__":
    main()
