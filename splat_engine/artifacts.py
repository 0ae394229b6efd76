"""
Artifact addressing.

Maps a job's canonical artifact to a public URL and resolves download
requests back to a file that is guaranteed to live inside that job's
workspace.
"""

from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import BinaryIO, Dict, Optional, Sequence
from urllib.parse import quote

from .errors import EngineError
from .workspace import WorkspaceManager, validate_job_id


class PathTraversalError(EngineError):
    """A retrieval path would leave the job's workspace."""
    pass


class ArtifactNotFound(EngineError):
    """The requested path is inside the workspace but is not a file."""
    pass


@dataclass
class ArtifactDownload:
    """A resolved file plus the response metadata for serving it."""
    path: Path
    filename: str
    size: int
    content_type: str = "application/octet-stream"

    @property
    def headers(self) -> Dict[str, str]:
        safe_name = self.filename.replace('"', "").replace("\\", "")
        return {
            "Content-Type": self.content_type,
            "Content-Disposition": f'attachment; filename="{safe_name}"',
            "Content-Length": str(self.size),
        }

    def open(self) -> BinaryIO:
        return open(self.path, "rb")

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


def split_relative(relative: str) -> PurePosixPath:
    """
    Validate a caller-supplied relative path without touching the disk.

    Rejects empty paths, absolute paths, drive letters, backslashes,
    NUL bytes and any ``..`` segment.
    """
    if not relative or "\x00" in relative or "\\" in relative:
        raise PathTraversalError("Invalid artifact path")
    posix = PurePosixPath(relative)
    if posix.is_absolute() or PureWindowsPath(relative).drive:
        raise PathTraversalError("Absolute artifact paths are not allowed")
    if any(part == ".." for part in posix.parts):
        raise PathTraversalError("Parent directory segments are not allowed")
    parts = [part for part in posix.parts if part != "."]
    if not parts:
        raise PathTraversalError("Invalid artifact path")
    return PurePosixPath(*parts)


class ArtifactLocator:
    """
    Builds download URLs and resolves download requests.

    Only paths under ``public_prefixes`` can be retrieved; stage logs and
    other workspace files stay private. Pass ``None`` for operator access
    to the whole workspace.
    """

    def __init__(
        self,
        workspaces: WorkspaceManager,
        server_base: str,
        route_prefix: str = "files",
        public_prefixes: Optional[Sequence[str]] = ("result/",),
    ):
        self.workspaces = workspaces
        self.server_base = server_base.rstrip("/")
        self.route_prefix = route_prefix.strip("/")
        self.public_prefixes = None if public_prefixes is None else tuple(public_prefixes)

    def url_for(self, job_id: str, relative: str) -> str:
        """``<serverBase>/<routePrefix>/<jobId>/<relative>`` with each segment quoted."""
        validate_job_id(job_id)
        segments = [quote(part, safe="") for part in split_relative(relative).parts]
        return "/".join([self.server_base, self.route_prefix, job_id, *segments])

    def is_public(self, relative: PurePosixPath) -> bool:
        if self.public_prefixes is None:
            return True
        return any(relative.as_posix().startswith(prefix) for prefix in self.public_prefixes)

    def resolve(self, job_id: str, relative: str) -> Path:
        """
        Resolve a retrieval request to a real file inside the job workspace.

        Raises:
            PathTraversalError: bad job id, ``..``, absolute path, or a
                symlink that points outside the workspace
            ArtifactNotFound: contained, but no such file or not public
        """
        try:
            validate_job_id(job_id)
        except ValueError:
            raise PathTraversalError("Invalid job id")
        clean = split_relative(relative)
        if not self.is_public(clean):
            raise ArtifactNotFound(f"No artifact {clean} for job {job_id}")

        root = self.workspaces.path_for(job_id)
        if not root.is_dir():
            raise ArtifactNotFound(f"No artifact {clean} for job {job_id}")

        real_root = root.resolve()
        candidate = (real_root / Path(*clean.parts)).resolve()
        if candidate != real_root and real_root not in candidate.parents:
            raise PathTraversalError("Artifact path leaves the job workspace")
        if not self.is_public(PurePosixPath(candidate.relative_to(real_root).as_posix())):
            raise ArtifactNotFound(f"No artifact {clean} for job {job_id}")
        if not candidate.is_file():
            raise ArtifactNotFound(f"No artifact {clean} for job {job_id}")
        return candidate

    def open(self, job_id: str, relative: str) -> ArtifactDownload:
        path = self.resolve(job_id, relative)
        return ArtifactDownload(path=path, filename=path.name, size=path.stat().st_size)
