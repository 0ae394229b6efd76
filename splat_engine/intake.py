"""
Upload intake.

Checks what the HTTP layer hands over (one video, or a set of images)
before any workspace exists, then writes it into a fresh workspace.
"""

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Union

from rich.console import Console

from utils.validation import guess_content_type, is_image, sanitize_filename

from .errors import EngineError
from .stages import Modality
from .workspace import Workspace

console = Console()


class ValidationError(EngineError):
    """The upload was empty or not the right kind of media."""
    pass


@dataclass
class UploadItem:
    """One uploaded file as received from the HTTP layer."""
    filename: str
    content_type: str
    data: bytes

    @classmethod
    def from_path(cls, path: Union[str, Path], content_type: str = "") -> "UploadItem":
        path = Path(path)
        return cls(
            filename=path.name,
            content_type=content_type or guess_content_type(path),
            data=path.read_bytes(),
        )


def validate_upload(items: Sequence[UploadItem]) -> Modality:
    """
    Decide the input modality, rejecting anything the pipeline cannot use.

    Returns:
        Modality.VIDEO for exactly one video item, Modality.IMAGES for
        one or more image items

    Raises:
        ValidationError: empty upload, empty item, mixed or unknown types,
            more than one video, or an "image" that is not an image
    """
    if not items:
        raise ValidationError("No files were uploaded")

    for item in items:
        if not item.data:
            raise ValidationError(f"Uploaded file {sanitize_filename(item.filename)} is empty")

    types = [(item.content_type or "").split(";")[0].strip().lower() for item in items]

    if any(t.startswith("video/") for t in types):
        if len(items) != 1:
            raise ValidationError("Upload either a single video or a set of images")
        return Modality.VIDEO

    for item, content_type in zip(items, types):
        name = sanitize_filename(item.filename)
        if not content_type.startswith("image/"):
            raise ValidationError(f"File {name} is not an image ({content_type or 'unknown type'})")
        if not is_image(item.data):
            raise ValidationError(f"File {name} could not be read as an image")
    return Modality.IMAGES


def materialize(workspace: Workspace, items: Sequence[UploadItem], modality: Modality) -> List[Path]:
    """
    Write validated uploads into the workspace.

    The video lands in ``input/``. Images land in ``input/`` and are
    copied into the SfM tool's image folder.
    """
    written = []
    used = set()
    for index, item in enumerate(items):
        base = sanitize_filename(item.filename, fallback=f"upload_{index:04d}")
        stem, dot, suffix = base.rpartition(".")
        name = base
        counter = index
        while name in used:
            name = f"{stem}_{counter:04d}.{suffix}" if dot else f"{base}_{counter:04d}"
            counter += 1
        used.add(name)

        target = workspace.input_dir / name
        target.write_bytes(item.data)
        written.append(target)

    if modality == Modality.IMAGES:
        for path in written:
            shutil.copy2(path, workspace.frames_dir / path.name)

    console.print(f"[dim]Stored {len(written)} {modality.value} file(s) for job {workspace.job_id}[/dim]")
    return written
