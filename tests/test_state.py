"""Tests for deployment state."""

from __future__ import annotations

import pytest

from velosetup.deploy.state import (
    DeploymentOutcome,
    DeploymentState,
    Stage,
    StageRecord,
    StageStatus,
)


class TestStageRecord:
    """Tests for StageRecord."""

    def test_to_dict(self):
        """Test converting a record to dictionary."""
        record = StageRecord(index=3, stage=Stage.CERTIFICATES, status=StageStatus.SUCCEEDED)
        record.log_lines.append("done")
        d = record.to_dict()

        assert d["index"] == 3
        assert d["name"] == "certificates"
        assert d["status"] == "succeeded"
        assert d["logLines"] == ["done"]
        assert d["errorKind"] is None


class TestDeploymentState:
    """Tests for DeploymentState."""

    def test_eight_contiguous_stages(self):
        state = DeploymentState()
        assert [r.index for r in state.stages] == list(range(1, 9))
        assert [r.name for r in state.stages] == [
            "binary", "config", "certificates", "auth",
            "storage", "service", "gui", "client",
        ]
        assert all(r.status == StageStatus.PENDING for r in state.stages)
        assert state.outcome == DeploymentOutcome.PENDING

    def test_begin_and_succeed(self):
        state = DeploymentState()
        event = state.begin(Stage.BINARY, "Resolving")

        assert event.stage_index == 1
        assert event.status == StageStatus.RUNNING
        assert state.outcome == DeploymentOutcome.RUNNING

        event = state.succeed(Stage.BINARY, "ok")
        assert event.status == StageStatus.SUCCEEDED
        assert state.record(Stage.BINARY).duration is not None

    def test_stage_cannot_skip_ahead(self):
        """A stage only starts once the previous one succeeded."""
        state = DeploymentState()
        with pytest.raises(RuntimeError):
            state.begin(Stage.CONFIG, "too early")

    def test_fail_aborts(self):
        state = DeploymentState()
        state.begin(Stage.BINARY, "Resolving")
        event = state.fail(Stage.BINARY, "missing", "not_found")

        assert event.error_kind == "not_found"
        assert state.outcome == DeploymentOutcome.ABORTED
        assert state.failed_stage is state.record(Stage.BINARY)
        assert "[not_found] missing" in state.record(Stage.BINARY).log_lines

        with pytest.raises(RuntimeError):
            state.begin(Stage.CONFIG, "after failure")

    def test_last_stage_success_completes(self):
        state = DeploymentState()
        for stage in Stage:
            state.begin(stage, "go")
            state.succeed(stage, "ok")
        assert state.outcome == DeploymentOutcome.SUCCEEDED

    def test_snapshot_is_independent(self):
        """Snapshots never see later mutations."""
        state = DeploymentState()
        state.begin(Stage.BINARY, "Resolving")
        snapshot = state.snapshot()

        state.succeed(Stage.BINARY, "ok")
        state.log(Stage.BINARY, "extra")

        assert snapshot.status_of(Stage.BINARY) == StageStatus.RUNNING
        assert "extra" not in snapshot.record(Stage.BINARY).log_lines

    def test_progress_event_to_dict(self):
        state = DeploymentState()
        d = state.begin(Stage.BINARY, "Resolving").to_dict()
        assert d == {
            "stageIndex": 1,
            "stageName": "binary",
            "status": "running",
            "message": "Resolving",
            "errorKind": None,
        }
