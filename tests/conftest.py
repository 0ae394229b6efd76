"""Shared fixtures: a fake toolchain wired into the engine config."""

import io
import os
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from PIL import Image

from splat_engine.config import EngineConfig
from splat_engine.intake import UploadItem

ROOT = Path(__file__).resolve().parent.parent
FAKE_TOOLCHAIN = ROOT / "scripts" / "fake_toolchain.py"

TEST_ITERATIONS = 30


def fake_commands(stage_args: Optional[Dict[str, List[str]]] = None) -> Dict[str, List[str]]:
    """Commands for the fake toolchain, with optional extra flags per stage."""
    commands = {
        "extract_frames": [sys.executable, str(FAKE_TOOLCHAIN), "frames",
                           "--video", "{video}", "--out", "{frames_dir}"],
        "convert": [sys.executable, str(FAKE_TOOLCHAIN), "convert", "-s", "{scene_dir}"],
        "train": [sys.executable, str(FAKE_TOOLCHAIN), "train",
                  "-s", "{scene_dir}", "-m", "{model_dir}", "--iterations", "{iterations}"],
    }
    for stage, extra in (stage_args or {}).items():
        commands[stage] = commands[stage] + list(extra)
    return commands


def make_image(seed: int, fmt: str = "PNG") -> bytes:
    """A tiny image whose pixels depend on ``seed``."""
    color = (seed % 256, (seed * 7) % 256, (seed * 13) % 256)
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color=color).save(buffer, format=fmt)
    return buffer.getvalue()


def image_items(count: int = 3, seed: int = 0) -> List[UploadItem]:
    return [
        UploadItem(f"view_{i:02d}.png", "image/png", make_image(seed * 100 + i))
        for i in range(count)
    ]


def video_item() -> UploadItem:
    return UploadItem("walkthrough.mp4", "video/mp4", b"\x00\x00\x00\x18ftypmp42" + os.urandom(256))


def process_alive(pid: int) -> bool:
    """True if ``pid`` is a running (non-zombie) process."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    stat = Path(f"/proc/{pid}/stat")
    if stat.exists():
        try:
            state = stat.read_text().rsplit(")", 1)[1].split()[0]
        except (OSError, IndexError):
            return False
        return state not in ("Z", "X")
    return True


def wait_until_dead(pid: int, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not process_alive(pid):
            return True
        time.sleep(0.05)
    return not process_alive(pid)


@pytest.fixture
def make_config(tmp_path):
    """Factory for an EngineConfig that drives the fake toolchain."""
    def factory(stage_args: Optional[Dict[str, List[str]]] = None, **overrides) -> EngineConfig:
        values = dict(
            workspace_root=tmp_path / "workspaces",
            iterations=TEST_ITERATIONS,
            commands=fake_commands(stage_args),
            splatting_repo=tmp_path / "gaussian-splatting",
            timeouts={"extract_frames": 30, "convert": 30, "train": 30},
            max_concurrent_jobs=2,
            max_heavy_stages=2,
            server_base="http://files.test",
        )
        values.update(overrides)
        return EngineConfig(**values)
    return factory
