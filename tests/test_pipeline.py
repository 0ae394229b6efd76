"""Integration tests for the pipeline orchestrator using the fake toolchain."""

import sys
import time

import pytest

from splat_engine.cleaner import Cleaner
from splat_engine.intake import materialize
from splat_engine.jobs import build_orchestrator
from splat_engine.orchestrator import redact
from splat_engine.runner import StageRunner
from splat_engine.stages import Modality, trained_artifact_path
from splat_engine.workspace import InvalidTransition, JobStatus, WorkspaceManager

from conftest import image_items, video_item, wait_until_dead


class CountingCleaner(Cleaner):
    """Cleaner that records how often it ran."""

    def __init__(self, inner: Cleaner, fail: bool = False):
        super().__init__(inner.policy, inner.artifact_name)
        self.calls = 0
        self.fail = fail

    def clean(self, workspace, artifact_source=None):
        self.calls += 1
        if self.fail:
            raise RuntimeError("disk on fire")
        return super().clean(workspace, artifact_source)


class RecordingRunner(StageRunner):
    """Runner that snapshots the trained artifact right after training."""

    def __init__(self, inner: StageRunner, artifact_path):
        super().__init__(inner.platform, inner.tail_lines, inner.echo)
        self.artifact_path = artifact_path
        self.stages = []
        self.trained_bytes = None

    def execute(self, argv, cwd, env=None, timeout=None, **kwargs):
        self.stages.append(kwargs.get("stage"))
        result = super().execute(argv, cwd, env, timeout, **kwargs)
        if kwargs.get("stage") == "train" and self.artifact_path.exists():
            self.trained_bytes = self.artifact_path.read_bytes()
        return result


def prepare(config, items, modality, job_id="job1"):
    workspace = WorkspaceManager(config.workspace_root).create(job_id)
    materialize(workspace, items, modality)
    orchestrator = build_orchestrator(config)
    orchestrator.cleaner = CountingCleaner(orchestrator.cleaner)
    orchestrator.runner = RecordingRunner(orchestrator.runner, trained_artifact_path(workspace, config))
    return workspace, orchestrator


class TestSuccessfulRuns:
    """Tests for pipelines that complete."""

    def test_image_pipeline(self, make_config):
        config = make_config()
        workspace, orchestrator = prepare(config, image_items(3), Modality.IMAGES)

        outcome = orchestrator.run(workspace, Modality.IMAGES)

        assert outcome.succeeded
        assert outcome.error_kind is None
        assert workspace.status == JobStatus.CLEANED_UP
        assert workspace.outcome == JobStatus.SUCCEEDED
        assert orchestrator.runner.stages == ["convert", "train"]
        assert outcome.artifact == workspace.result_dir / "point_cloud.ply"

    def test_artifact_bytes_survive_relocation(self, make_config):
        """The served file is byte-identical to what the trainer wrote."""
        config = make_config()
        workspace, orchestrator = prepare(config, image_items(3), Modality.IMAGES)

        outcome = orchestrator.run(workspace, Modality.IMAGES)

        assert orchestrator.runner.trained_bytes is not None
        assert outcome.artifact.read_bytes() == orchestrator.runner.trained_bytes

    def test_video_pipeline(self, make_config):
        config = make_config()
        workspace, orchestrator = prepare(config, [video_item()], Modality.VIDEO)

        outcome = orchestrator.run(workspace, Modality.VIDEO)

        assert outcome.succeeded
        assert orchestrator.runner.stages == ["extract_frames", "convert", "train"]
        assert set(outcome.stats.stages) == {"extract_frames", "convert", "train"}
        assert outcome.stats.total_duration > 0

    def test_stats_record(self, make_config):
        workspace, orchestrator = prepare(make_config(), image_items(2), Modality.IMAGES)

        outcome = orchestrator.run(workspace, Modality.IMAGES)
        record = outcome.stats.to_dict()

        assert set(record["stages"]) == {"convert", "train"}
        assert record["stages"]["train"]["heavy"] is True
        assert record["total_duration_seconds"] >= record["stages"]["train"]["duration_seconds"]

    def test_workspace_is_pruned(self, make_config):
        config = make_config()
        workspace, orchestrator = prepare(config, image_items(2), Modality.IMAGES)

        orchestrator.run(workspace, Modality.IMAGES)

        assert not workspace.intermediate_dir.exists()
        assert not (workspace.output_dir / "point_cloud").exists()
        assert not (workspace.output_dir / "input.ply").exists()
        assert (workspace.output_dir / "cameras.json").exists()
        assert workspace.input_dir.is_dir()
        assert list(workspace.input_dir.iterdir()) == []
        assert (workspace.logs_dir / "train.log").exists()

    def test_iteration_count_changes_nothing_for_retrieval(self, make_config):
        config = make_config(iterations=7)
        workspace, orchestrator = prepare(config, image_items(2), Modality.IMAGES)

        outcome = orchestrator.run(workspace, Modality.IMAGES)

        assert outcome.artifact == workspace.result_dir / "point_cloud.ply"


class TestFailures:
    """Tests for fail-fast behavior."""

    def test_stage_failure_stops_pipeline(self, make_config):
        config = make_config({"convert": ["--exit-code", "3"]})
        workspace, orchestrator = prepare(config, image_items(2), Modality.IMAGES)

        outcome = orchestrator.run(workspace, Modality.IMAGES)

        assert outcome.status == JobStatus.FAILED
        assert outcome.error_kind == "stage_failed"
        assert outcome.failed_stage == "convert"
        assert "failing with exit code 3" in outcome.diagnostics
        assert orchestrator.runner.stages == ["convert"]
        assert workspace.status == JobStatus.CLEANED_UP
        assert orchestrator.cleaner.calls == 1

    def test_timeout(self, make_config):
        config = make_config({"train": ["--sleep", "60"]},
                             timeouts={"extract_frames": 30, "convert": 30, "train": 1.0})
        workspace, orchestrator = prepare(config, image_items(2), Modality.IMAGES)

        start = time.monotonic()
        outcome = orchestrator.run(workspace, Modality.IMAGES)

        assert time.monotonic() - start < 15
        assert outcome.status == JobStatus.FAILED
        assert outcome.error_kind == "stage_timeout"
        assert outcome.failed_stage == "train"

    @pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX")
    def test_timeout_leaves_no_children(self, make_config, tmp_path):
        pid_file = tmp_path / "trainer-child.pid"
        config = make_config({"train": ["--sleep", "60", "--spawn-child", str(pid_file)]},
                             timeouts={"extract_frames": 30, "convert": 30, "train": 1.5})
        workspace, orchestrator = prepare(config, image_items(2), Modality.IMAGES)

        outcome = orchestrator.run(workspace, Modality.IMAGES)

        assert outcome.error_kind == "stage_timeout"
        assert wait_until_dead(int(pid_file.read_text()))

    def test_clean_exit_without_artifact(self, make_config):
        """Exit code 0 is not enough; the promised file must exist."""
        config = make_config({"train": ["--skip-output"]})
        workspace, orchestrator = prepare(config, image_items(2), Modality.IMAGES)

        outcome = orchestrator.run(workspace, Modality.IMAGES)

        assert outcome.status == JobStatus.FAILED
        assert outcome.error_kind == "artifact_missing"
        assert outcome.failed_stage == "train"
        assert outcome.artifact is None
        assert list(workspace.result_dir.iterdir()) == []

    def test_intermediate_output_missing(self, make_config):
        config = make_config({"convert": ["--skip-output"]})
        workspace, orchestrator = prepare(config, image_items(2), Modality.IMAGES)

        outcome = orchestrator.run(workspace, Modality.IMAGES)

        assert outcome.error_kind == "artifact_missing"
        assert outcome.failed_stage == "convert"
        assert orchestrator.runner.stages == ["convert"]

    def test_missing_required_input_blocks_stage(self, make_config):
        """Without images the SfM stage is never started."""
        config = make_config()
        workspace, orchestrator = prepare(config, [], Modality.IMAGES)

        outcome = orchestrator.run(workspace, Modality.IMAGES)

        assert outcome.error_kind == "artifact_missing"
        assert outcome.failed_stage == "convert"
        assert orchestrator.runner.stages == []

    def test_error_messages_hide_workspace_paths(self, make_config):
        config = make_config({"train": ["--skip-output"]})
        workspace, orchestrator = prepare(config, image_items(2), Modality.IMAGES)

        outcome = orchestrator.run(workspace, Modality.IMAGES)

        assert str(workspace.root) not in outcome.error_message
        assert str(config.workspace_root) not in outcome.error_message

    def test_redact(self, tmp_path):
        workspace = WorkspaceManager(tmp_path).create("job1")
        text = f"cannot open {workspace.root}/output/x.ply"

        assert redact(text, workspace) == "cannot open <workspace>/output/x.ply"


class TestCleanupGuarantee:
    """Cleanup runs exactly once on every exit path."""

    def test_once_on_success(self, make_config):
        workspace, orchestrator = prepare(make_config(), image_items(2), Modality.IMAGES)
        orchestrator.run(workspace, Modality.IMAGES)
        assert orchestrator.cleaner.calls == 1

    @pytest.mark.parametrize("stage_args", [
        {"convert": ["--exit-code", "1"]},
        {"train": ["--exit-code", "1"]},
        {"train": ["--skip-output"]},
    ])
    def test_once_on_failure(self, make_config, stage_args):
        workspace, orchestrator = prepare(make_config(stage_args), image_items(2), Modality.IMAGES)
        orchestrator.run(workspace, Modality.IMAGES)
        assert orchestrator.cleaner.calls == 1

    def test_once_on_unexpected_error(self, make_config, monkeypatch):
        workspace, orchestrator = prepare(make_config(), image_items(2), Modality.IMAGES)

        def explode(*args, **kwargs):
            raise RuntimeError("unexpected")

        monkeypatch.setattr("splat_engine.orchestrator.build_stages", explode)
        with pytest.raises(RuntimeError):
            orchestrator.run(workspace, Modality.IMAGES)

        assert orchestrator.cleaner.calls == 1
        assert workspace.status == JobStatus.CLEANED_UP
        assert workspace.outcome == JobStatus.FAILED

    def test_cleanup_failure_does_not_fail_job(self, make_config):
        workspace, orchestrator = prepare(make_config(), image_items(2), Modality.IMAGES)
        orchestrator.cleaner.fail = True

        outcome = orchestrator.run(workspace, Modality.IMAGES)

        assert outcome.status == JobStatus.SUCCEEDED
        assert workspace.status == JobStatus.CLEANED_UP

    def test_job_runs_only_once(self, make_config):
        workspace, orchestrator = prepare(make_config(), image_items(2), Modality.IMAGES)
        orchestrator.run(workspace, Modality.IMAGES)

        with pytest.raises(InvalidTransition):
            orchestrator.run(workspace, Modality.IMAGES)
        assert orchestrator.cleaner.calls == 1
