#!/usr/bin/env python3
"""
Stand-in for the external reconstruction tools.

Mimics the files ffmpeg, convert.py and train.py leave behind so the
engine can be exercised without COLMAP or a GPU. Used by the test suite
and for local dry runs.

Usage:
    python scripts/fake_toolchain.py frames --video in.mp4 --out scene/input
    python scripts/fake_toolchain.py convert -s scene
    python scripts/fake_toolchain.py train -s scene -m model --iterations 3000

Every subcommand also accepts:
    --sleep SECONDS     sleep before doing anything
    --exit-code N       exit with N after doing the work
    --skip-output       exit without writing the promised output
    --spawn-child FILE  start a long-lived child process, write its pid to FILE
"""

import argparse
import hashlib
import json
import subprocess
import sys
import time
from pathlib import Path


def scene_digest(scene_dir: Path) -> str:
    """sha256 over the scene's input images, sorted by name."""
    digest = hashlib.sha256()
    for path in sorted((scene_dir / "input").iterdir()):
        if path.is_file():
            digest.update(path.read_bytes())
    return digest.hexdigest()


def do_frames(args) -> None:
    out = Path(args.out)
    out.mkdir(parents=True, exist_ok=True)
    video = Path(args.video).read_bytes()
    for i in range(args.count):
        (out / f"{i + 1:04d}.jpg").write_bytes(video[:64] + bytes([i % 256]))
    print(f"frame= {args.count} fps=0.0 q=1.0 Lsize=N/A")


def do_convert(args) -> None:
    scene = Path(args.source)
    images = sorted((scene / "input").iterdir())
    if not images:
        print("ERROR: no input images", file=sys.stderr)
        sys.exit(1)
    (scene / "distorted" / "sparse" / "0").mkdir(parents=True, exist_ok=True)
    (scene / "distorted" / "database.db").write_bytes(b"sqlite")
    (scene / "sparse" / "0").mkdir(parents=True, exist_ok=True)
    for name in ("cameras.bin", "images.bin", "points3D.bin"):
        (scene / "sparse" / "0" / name).write_bytes(b"\x00" * 16)
    (scene / "images").mkdir(exist_ok=True)
    for image in images:
        (scene / "images" / image.name).write_bytes(image.read_bytes())
    print(f"Done. Undistorted {len(images)} images.")


def do_train(args) -> None:
    scene = Path(args.source)
    model = Path(args.model)
    model.mkdir(parents=True, exist_ok=True)
    (model / "cfg_args").write_text(f"Namespace(source_path='{scene}', iterations={args.iterations})")
    (model / "cameras.json").write_text(json.dumps([{"id": 0, "img_name": "0001"}]))
    (model / "input.ply").write_bytes(b"ply\n")
    (model / f"chkpnt{args.iterations}.pth").write_bytes(b"\x00" * 32)
    for it in range(0, args.iterations + 1, max(1, args.iterations // 3)):
        print(f"Training progress: iteration {it}/{args.iterations}")

    target = model / "point_cloud" / f"iteration_{args.iterations}" / "point_cloud.ply"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(
        "ply\n"
        "format ascii 1.0\n"
        f"comment source {scene_digest(scene)}\n"
        "element vertex 1\n"
        "property float x\nproperty float y\nproperty float z\n"
        "end_header\n"
        "0 0 0\n"
    )
    print(f"[ITER {args.iterations}] Saving Gaussians")


COMMANDS = {"frames": do_frames, "convert": do_convert, "train": do_train}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Fake reconstruction toolchain")
    sub = parser.add_subparsers(dest="command", required=True)

    frames = sub.add_parser("frames")
    frames.add_argument("--video", required=True)
    frames.add_argument("--out", required=True)
    frames.add_argument("--count", type=int, default=5)

    convert = sub.add_parser("convert")
    convert.add_argument("-s", "--source", required=True)

    train = sub.add_parser("train")
    train.add_argument("-s", "--source", required=True)
    train.add_argument("-m", "--model", required=True)
    train.add_argument("--iterations", type=int, default=3000)

    for p in (frames, convert, train):
        p.add_argument("--sleep", type=float, default=0.0)
        p.add_argument("--exit-code", type=int, default=0)
        p.add_argument("--skip-output", action="store_true")
        p.add_argument("--spawn-child")

    args = parser.parse_args(argv)

    if args.spawn_child:
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(120)"])
        Path(args.spawn_child).write_text(str(child.pid))

    if args.sleep:
        print(f"sleeping {args.sleep}s", flush=True)
        time.sleep(args.sleep)

    if not args.skip_output:
        COMMANDS[args.command](args)

    if args.exit_code:
        print(f"failing with exit code {args.exit_code}", file=sys.stderr)
    return args.exit_code


if __name__ == "__main__":
    sys.exit(main())
