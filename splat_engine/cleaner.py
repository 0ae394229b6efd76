"""
Post-run workspace pruning.

After a job reaches a terminal state the workspace is reduced to the
retention whitelist, the point cloud is moved from the trainer's
iteration-specific folder to ``result/<artifact>``, and empty
directories are removed.
"""

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import FrozenSet, List, Optional, Set

from rich.console import Console
from rich.markup import escape

from .errors import CleanupError
from .workspace import Workspace

console = Console()


@dataclass(frozen=True)
class RetentionPolicy:
    """
    What survives cleanup.

    A path is kept when its file name is in ``names``, when its relative
    path (forward slashes) starts with one of ``prefixes``, or when it is
    a directory above a kept path.
    """
    names: FrozenSet[str] = frozenset()
    prefixes: tuple = ()
    keep_empty: FrozenSet[str] = frozenset({"input", "result"})

    def retains(self, relative: str) -> bool:
        name = PurePosixPath(relative).name
        if name in self.names:
            return True
        for prefix in self.prefixes:
            if relative == prefix.rstrip("/") or relative.startswith(prefix):
                return True
        return False


@dataclass
class CleanupReport:
    deleted: List[str] = field(default_factory=list)
    retained: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    artifact: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return not self.errors


class Cleaner:
    """Best-effort pruning of a finished workspace. Safe to run repeatedly."""

    def __init__(self, policy: RetentionPolicy, artifact_name: str):
        self.policy = policy
        self.artifact_name = artifact_name

    def canonical_path(self, workspace: Workspace) -> Path:
        return workspace.result_dir / self.artifact_name

    def clean(self, workspace: Workspace, artifact_source: Optional[Path] = None) -> CleanupReport:
        """
        Prune, relocate the artifact, and drop empty directories.

        Args:
            workspace: Workspace to clean
            artifact_source: Where the trainer wrote the artifact, if anywhere

        Returns:
            CleanupReport; individual failures are recorded, never raised
        """
        report = CleanupReport()
        root = workspace.root
        if not root.is_dir():
            console.print(f"[yellow]Workspace for job {workspace.job_id} is gone, nothing to clean[/yellow]")
            return report

        keep = self._retained_paths(root)
        report.retained = sorted(keep)

        self._prune(root, keep, report)
        report.artifact = self._relocate(workspace, artifact_source, report)
        self._remove_empty_dirs(root, report)

        if report.errors:
            console.print(f"[yellow]Cleanup of job {workspace.job_id} finished with "
                          f"{len(report.errors)} error(s)[/yellow]")
        else:
            console.print(f"[green]Cleaned workspace for job {workspace.job_id} "
                          f"({len(report.deleted)} paths removed)[/green]")
        return report

    def _retained_paths(self, root: Path) -> Set[str]:
        """Relative paths of whitelisted entries plus all their ancestors."""
        keep: Set[str] = set()
        for dirpath, dirnames, filenames in os.walk(root):
            for name in dirnames + filenames:
                relative = Path(dirpath, name).relative_to(root).as_posix()
                if self.policy.retains(relative):
                    keep.add(relative)
                    parent = PurePosixPath(relative).parent
                    while str(parent) != ".":
                        keep.add(str(parent))
                        parent = parent.parent
        keep.update(self.policy.keep_empty)
        return keep

    def _prune(self, root: Path, keep: Set[str], report: CleanupReport) -> None:
        # Bottom-up: files first, then the directories that held them
        for dirpath, dirnames, filenames in os.walk(root, topdown=False):
            for name in filenames:
                path = Path(dirpath, name)
                relative = path.relative_to(root).as_posix()
                if relative not in keep:
                    self._delete(path, relative, report, directory=False)
            for name in dirnames:
                path = Path(dirpath, name)
                relative = path.relative_to(root).as_posix()
                if relative in keep:
                    continue
                self._delete(path, relative, report, directory=not path.is_symlink())

    def _delete(self, path: Path, relative: str, report: CleanupReport, directory: bool) -> None:
        try:
            if directory:
                path.rmdir()
            else:
                path.unlink()
            report.deleted.append(relative)
        except FileNotFoundError:
            pass
        except OSError as e:
            error = CleanupError(f"Could not delete {relative}: {e.strerror or e}")
            report.errors.append(str(error))
            console.print(f"[yellow]{escape(str(error))}[/yellow]")

    def _relocate(
        self,
        workspace: Workspace,
        source: Optional[Path],
        report: CleanupReport,
    ) -> Optional[Path]:
        target = self.canonical_path(workspace)
        if source is not None and source.is_file() and source != target:
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(source), str(target))
                console.print(f"[green]Moved {self.artifact_name} to "
                              f"{workspace.relative(target)}[/green]")
            except OSError as e:
                error = CleanupError(f"Could not move artifact: {e.strerror or e}")
                report.errors.append(str(error))
                console.print(f"[yellow]{escape(str(error))}[/yellow]")
        return target if target.is_file() else None

    def _remove_empty_dirs(self, root: Path, report: CleanupReport) -> None:
        for dirpath, dirnames, filenames in os.walk(root, topdown=False):
            path = Path(dirpath)
            if path == root:
                continue
            relative = path.relative_to(root).as_posix()
            if relative in self.policy.keep_empty or path.is_symlink():
                continue
            try:
                if not any(path.iterdir()):
                    path.rmdir()
                    report.deleted.append(relative)
            except OSError as e:
                error = CleanupError(f"Could not remove directory {relative}: {e.strerror or e}")
                report.errors.append(str(error))
                console.print(f"[yellow]{escape(str(error))}[/yellow]")
