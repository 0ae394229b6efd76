"""Tests for the pipeline variant table and configuration."""

import pytest

from splat_engine.config import DEFAULT_COMMANDS, EngineConfig, ProcessPlatform
from splat_engine.stages import (
    Modality,
    build_stages,
    describe_variants,
    render_argv,
    trained_artifact_path,
)
from splat_engine.workspace import WorkspaceManager


@pytest.fixture
def workspace(tmp_path):
    workspace = WorkspaceManager(tmp_path / "ws").create("job1")
    (workspace.input_dir / "clip.mp4").write_bytes(b"video")
    return workspace


class TestBuildStages:
    """Tests for stage selection by modality."""

    def test_video_prepends_frame_extraction(self, workspace):
        stages = build_stages(workspace, Modality.VIDEO, EngineConfig())
        assert [s.name for s in stages] == ["extract_frames", "convert", "train"]

    def test_images_start_at_convert(self, workspace):
        stages = build_stages(workspace, Modality.IMAGES, EngineConfig())
        assert [s.name for s in stages] == ["convert", "train"]

    def test_default_argv(self, workspace, tmp_path):
        config = EngineConfig(iterations=3000, splatting_repo=tmp_path / "gs", python_executable="python3")
        extract, convert, train = build_stages(workspace, Modality.VIDEO, config)

        assert extract.argv[0] == "ffmpeg"
        assert str(workspace.input_dir / "clip.mp4") in extract.argv
        assert extract.argv[-1] == f"{workspace.frames_dir}/%04d.jpg"
        assert "fps=2" in extract.argv

        assert convert.argv == ["python3", f"{tmp_path / 'gs'}/convert.py", "-s", str(workspace.scene_dir)]
        assert train.argv[-4:] == ["--iterations", "3000", "--save_iterations", "3000"]

    def test_each_stage_requires_its_predecessor_output(self, workspace):
        extract, convert, train = build_stages(workspace, Modality.VIDEO, EngineConfig())

        assert convert.requires == (extract.produces,)
        assert train.requires == (convert.produces,)

    def test_iteration_count_sets_artifact_location(self, workspace):
        config = EngineConfig(iterations=1000)
        train = build_stages(workspace, Modality.IMAGES, config)[-1]

        expected = workspace.output_dir / "point_cloud" / "iteration_1000" / "point_cloud.ply"
        assert train.produces == expected
        assert trained_artifact_path(workspace, config) == expected

    def test_heavy_and_activation_flags(self, workspace):
        config = EngineConfig(conda_env="gaussian_splatting")
        extract, convert, train = build_stages(workspace, Modality.VIDEO, config)

        assert not extract.heavy and extract.conda_env is None
        assert convert.heavy and convert.conda_env == "gaussian_splatting"
        assert train.heavy and train.conda_env == "gaussian_splatting"

    def test_timeouts_per_stage(self, workspace):
        config = EngineConfig(timeouts={"convert": 12.0}, default_timeout=99.0)
        stages = {s.name: s for s in build_stages(workspace, Modality.VIDEO, config)}

        assert stages["convert"].timeout == 12.0
        assert stages["train"].timeout == 99.0

    def test_hostile_values_stay_single_arguments(self, tmp_path):
        workspace = WorkspaceManager(tmp_path / "ws").create("job2")
        (workspace.input_dir / "a b;c.mp4").write_bytes(b"video")

        extract = build_stages(workspace, Modality.VIDEO, EngineConfig())[0]

        assert str(workspace.input_dir / "a b;c.mp4") in extract.argv


class TestTemplates:
    def test_unknown_placeholder(self):
        with pytest.raises(ValueError, match="placeholder"):
            render_argv(["{nope}"], {})

    def test_describe_variants(self):
        table = describe_variants(EngineConfig())
        assert [row[0] for row in table[Modality.VIDEO]] == ["extract_frames", "convert", "train"]
        assert [row[0] for row in table[Modality.IMAGES]] == ["convert", "train"]


class TestConfig:
    """Tests for EngineConfig."""

    def test_defaults(self):
        config = EngineConfig()

        assert config.iterations == 3000
        assert config.artifact_name == "point_cloud.ply"
        assert config.commands == DEFAULT_COMMANDS
        assert config.platform == ProcessPlatform.detect()

    def test_from_env(self, tmp_path):
        config = EngineConfig.from_env({
            "SPLAT_WORKSPACE_ROOT": str(tmp_path),
            "SPLAT_ITERATIONS": "1000",
            "SPLAT_MAX_JOBS": "4",
            "SPLAT_TIMEOUT_TRAIN": "60",
            "SPLAT_PATH_PREPEND": "/opt/a",
            "SPLAT_CONDA_ENV": "gs",
            "SPLAT_ECHO_OUTPUT": "true",
        })

        assert config.workspace_root == tmp_path
        assert config.iterations == 1000
        assert config.max_concurrent_jobs == 4
        assert config.timeout_for("train") == 60.0
        assert config.path_prepend == ["/opt/a"]
        assert config.conda_env == "gs"
        assert config.echo_output is True

    def test_overrides_skip_none(self):
        config = EngineConfig().with_overrides(iterations=None, frame_fps=5.0)

        assert config.iterations == 3000
        assert config.frame_fps == 5.0

    @pytest.mark.parametrize("bad", [{"iterations": 0}, {"frame_fps": 0}, {"max_heavy_stages": 0}])
    def test_invalid_values(self, bad):
        with pytest.raises(ValueError):
            EngineConfig(**bad)

    def test_defaults_are_not_shared(self):
        a = EngineConfig()
        b = EngineConfig()
        a.commands["train"].append("--extra")

        assert "--extra" not in b.commands["train"]
        assert "--extra" not in DEFAULT_COMMANDS["train"]
