"""End-to-end deployment tests against the fake server binary."""

import asyncio
import json
import socket
from dataclasses import replace

import pytest

from conftest import write_fake_binary
from velosetup.deploy.binary import BinaryProvider
from velosetup.deploy.config import ToolConfigEntry, load_config
from velosetup.deploy.orchestrator import DeploymentOrchestrator
from velosetup.deploy.plan import BinarySource
from velosetup.deploy.state import DeploymentOutcome, Stage, StageStatus
from velosetup.deploy.supervisor import ProcessStatus
from velosetup.errors import ConfigError, TransientError


class FlakyProvider(BinaryProvider):
    """Download stand-in that fails a fixed number of times first."""

    def __init__(self, install_path, failures=0):
        super().__init__(install_path, min_size=1)
        self.failures = failures
        self.calls = 0

    async def download(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientError("connection reset by peer")
        return write_fake_binary(self.target_path)


async def shutdown(orchestrator: DeploymentOrchestrator):
    if orchestrator.handle is not None and orchestrator.supervisor is not None:
        await orchestrator.supervisor.stop(orchestrator.handle)


def statuses(state):
    return [record.status for record in state.stages]


def all_log_text(state) -> str:
    return "\n".join(line for record in state.stages for line in record.log_lines)


class TestSuccessfulDeployment:
    """Tests for the full eight-stage run."""

    @pytest.mark.asyncio
    async def test_standalone_deployment(self, test_settings, make_plan, tmp_path, monkeypatch):
        call_log = tmp_path / "calls.jsonl"
        monkeypatch.setenv("FAKE_VELO_CALL_LOG", str(call_log))
        plan = make_plan()
        orchestrator = DeploymentOrchestrator(
            settings=test_settings,
            tool_source=lambda: {"yara": ToolConfigEntry(enabled=True, path="/opt/tools/yara")},
        )
        events = []

        result = await orchestrator.run(plan, on_progress=events.append)
        try:
            assert result.succeeded
            assert result.outcome == DeploymentOutcome.SUCCEEDED
            assert statuses(result.state) == [StageStatus.SUCCEEDED] * 8

            # One running and one succeeded event per stage, in order
            assert len(events) == 16
            assert [e.stage_index for e in events] == [i for i in range(1, 9) for _ in (0, 1)]
            assert [e.status for e in events[:2]] == [StageStatus.RUNNING, StageStatus.SUCCEEDED]

            assert result.handle.status == ProcessStatus.RUNNING
            assert result.endpoint == f"http://127.0.0.1:{plan.bind_port}/"

            config = load_config(plan.config_path)
            assert config.gui_bind_port == plan.bind_port
            assert config.tools["yara"].path == "/opt/tools/yara"
            assert not plan.client_config_path.exists()
            assert plan.effective_datastore.is_dir()
        finally:
            await shutdown(orchestrator)

        calls = [json.loads(line) for line in call_log.read_text().splitlines()]
        user_add = next(c for c in calls if "user" in c)
        assert user_add[-2:] == ["--role", "administrator"]
        assert user_add[user_add.index("add") + 1] == "admin"

    @pytest.mark.asyncio
    async def test_secret_never_in_stage_logs(self, test_settings, make_plan):
        orchestrator = DeploymentOrchestrator(settings=test_settings)
        result = await orchestrator.run(make_plan())
        try:
            assert result.succeeded
            assert result.credential.generated_secret not in all_log_text(result.state)
            assert result.credential.generated_secret not in json.dumps(result.to_dict())
        finally:
            await shutdown(orchestrator)

    @pytest.mark.asyncio
    async def test_server_mode_writes_client_config(self, test_settings, make_plan):
        plan = make_plan(mode="server")
        orchestrator = DeploymentOrchestrator(settings=test_settings)
        result = await orchestrator.run(plan)
        try:
            assert result.succeeded
            assert plan.client_config_path.exists()
            assert "server_urls" in plan.client_config_path.read_text()
            assert load_config(plan.config_path).bind_address == "0.0.0.0"
        finally:
            await shutdown(orchestrator)

    @pytest.mark.asyncio
    async def test_orchestrator_runs_once(self, test_settings, make_plan):
        orchestrator = DeploymentOrchestrator(settings=test_settings)
        plan = make_plan()
        await orchestrator.run(plan)
        try:
            with pytest.raises(RuntimeError):
                await orchestrator.run(plan)
        finally:
            await shutdown(orchestrator)

    @pytest.mark.asyncio
    async def test_credential_reused_across_runs(self, test_settings, make_plan, free_port):
        plan = make_plan()
        first = DeploymentOrchestrator(settings=test_settings)
        first_result = await first.run(plan)
        await shutdown(first)

        second = DeploymentOrchestrator(settings=test_settings)
        second_plan = plan.with_changes(bind_port=free_port(), frontend_port=free_port())
        second_result = await second.run(second_plan)
        try:
            assert first_result.succeeded and second_result.succeeded
            assert second_result.credential.generated_secret == first_result.credential.generated_secret
        finally:
            await shutdown(second)

    @pytest.mark.asyncio
    async def test_crash_after_deployment_is_observable(self, test_settings, make_plan, monkeypatch):
        monkeypatch.setenv("FAKE_VELO_CRASH_AFTER", "2")
        orchestrator = DeploymentOrchestrator(settings=test_settings)
        result = await orchestrator.run(make_plan())
        assert result.succeeded

        status = await asyncio.wait_for(orchestrator.supervisor.wait_exit(result.handle), timeout=15)

        assert status == ProcessStatus.CRASHED
        assert result.handle.exit_code == 3
        client_log = orchestrator.state.record(Stage.CLIENT).log_lines
        assert any("exited unexpectedly" in line for line in client_log)


class TestBinaryStage:
    """Tests for binary acquisition and retry."""

    @pytest.mark.asyncio
    async def test_download_retries_transient_failures(self, test_settings, make_plan):
        settings = replace(test_settings, retry_delay=5.0)
        plan = make_plan(binary_source=BinarySource.DOWNLOAD, binary_path=None)
        provider = FlakyProvider(plan.install_path, failures=2)
        sleeps = []

        async def fake_sleep(delay):
            sleeps.append(delay)

        orchestrator = DeploymentOrchestrator(settings=settings, binary_provider=provider, sleep=fake_sleep)
        result = await orchestrator.run(plan)
        try:
            assert result.succeeded
            assert provider.calls == 3
            assert sleeps == [5.0, 5.0]
            assert result.binary.path == provider.target_path
        finally:
            await shutdown(orchestrator)

    @pytest.mark.asyncio
    async def test_download_gives_up(self, test_settings, make_plan):
        plan = make_plan(binary_source=BinarySource.DOWNLOAD, binary_path=None)
        provider = FlakyProvider(plan.install_path, failures=3)

        orchestrator = DeploymentOrchestrator(settings=test_settings, binary_provider=provider)
        result = await orchestrator.run(plan)

        assert result.outcome == DeploymentOutcome.ABORTED
        assert provider.calls == 3
        binary = result.state.record(Stage.BINARY)
        assert binary.status == StageStatus.FAILED
        assert binary.error_kind == "transient"
        assert "Attempt 3/3 failed: connection reset by peer" in binary.log_lines
        assert statuses(result.state)[1:] == [StageStatus.PENDING] * 7

    @pytest.mark.asyncio
    async def test_missing_binary(self, test_settings, make_plan, tmp_path):
        plan = make_plan(binary_path=tmp_path / "missing" / "velociraptor")
        result = await DeploymentOrchestrator(settings=test_settings).run(plan)

        assert result.state.failed_stage.stage == Stage.BINARY
        assert result.state.failed_stage.error_kind == "not_found"


class TestFailures:
    """Tests for aborting on stage failure."""

    @pytest.mark.asyncio
    async def test_invalid_plan_rejected_before_any_stage(self, test_settings, make_plan):
        orchestrator = DeploymentOrchestrator(settings=test_settings)
        with pytest.raises(ConfigError):
            await orchestrator.run(make_plan(mode="cluster"))

        assert statuses(orchestrator.state) == [StageStatus.PENDING] * 8
        assert orchestrator.outcome == DeploymentOutcome.PENDING

    @pytest.mark.asyncio
    async def test_port_conflict(self, test_settings, make_plan):
        plan = make_plan()
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", plan.bind_port))
        sock.listen(1)
        try:
            orchestrator = DeploymentOrchestrator(settings=test_settings)
            events = []
            result = await orchestrator.run(plan, on_progress=events.append)
        finally:
            sock.close()

        assert result.outcome == DeploymentOutcome.ABORTED
        assert statuses(result.state) == (
            [StageStatus.SUCCEEDED] * 5 + [StageStatus.FAILED] + [StageStatus.PENDING] * 2
        )
        service = result.state.record(Stage.SERVICE)
        assert service.error_kind == "port_conflict"
        assert any(line.startswith("Hint: ") for line in service.log_lines)
        assert events[-1].error_kind == "port_conflict"
        assert result.handle is None

    @pytest.mark.asyncio
    async def test_command_failure_attaches_stderr(self, test_settings, make_plan, monkeypatch):
        monkeypatch.setenv("FAKE_VELO_FAIL", "user")
        result = await DeploymentOrchestrator(settings=test_settings).run(make_plan())

        auth = result.state.record(Stage.AUTH)
        assert auth.status == StageStatus.FAILED
        assert auth.error_kind == "command_failed"
        assert "[stderr] datastore locked" in auth.log_lines
        assert result.credential.generated_secret not in all_log_text(result.state)
        assert result.state.status_of(Stage.STORAGE) == StageStatus.PENDING

    @pytest.mark.asyncio
    async def test_certificate_generation_failure(self, test_settings, make_plan, monkeypatch):
        monkeypatch.setenv("FAKE_VELO_FAIL", "generate")
        result = await DeploymentOrchestrator(settings=test_settings).run(make_plan())

        certificates = result.state.record(Stage.CERTIFICATES)
        assert certificates.error_kind == "command_failed"
        assert "[stderr] failed to generate keys" in certificates.log_lines

    @pytest.mark.asyncio
    async def test_server_exits_during_startup(self, test_settings, make_plan, monkeypatch):
        monkeypatch.setenv("FAKE_VELO_FAIL", "frontend")
        orchestrator = DeploymentOrchestrator(settings=test_settings)
        result = await orchestrator.run(make_plan())

        service = result.state.record(Stage.SERVICE)
        assert service.error_kind == "process_exited"
        assert any("cannot open datastore" in line for line in service.log_lines)
        assert orchestrator.handle.status == ProcessStatus.CRASHED

    @pytest.mark.asyncio
    async def test_readiness_timeout_leaves_handle_stoppable(self, test_settings, make_plan, monkeypatch):
        monkeypatch.setenv("FAKE_VELO_START_DELAY", "10")
        settings = replace(test_settings, readiness_timeout=1.0)
        orchestrator = DeploymentOrchestrator(settings=settings)
        result = await orchestrator.run(make_plan())

        assert result.state.record(Stage.SERVICE).error_kind == "timed_out"
        assert orchestrator.handle.is_running

        await orchestrator.supervisor.stop(orchestrator.handle)
        assert orchestrator.handle.status == ProcessStatus.STOPPED

    @pytest.mark.asyncio
    async def test_overall_deployment_timeout(self, test_settings, make_plan, monkeypatch):
        monkeypatch.setenv("FAKE_VELO_START_DELAY", "60")
        settings = replace(test_settings, readiness_timeout=120.0)
        orchestrator = DeploymentOrchestrator(settings=settings, deployment_timeout=6.0)
        result = await orchestrator.run(make_plan())
        try:
            assert result.outcome == DeploymentOutcome.ABORTED
            failed = result.state.failed_stage
            assert failed.error_kind == "timed_out"
            assert "Deployment timed out" in failed.message
            assert failed.stage == Stage.SERVICE

            # The timeout leaves the started server alone for the caller to stop
            handle = orchestrator.handle
            assert handle.is_running
            assert not handle._monitor.done()

            await orchestrator.supervisor.stop(handle)
            assert handle.status == ProcessStatus.STOPPED
        finally:
            await shutdown(orchestrator)


class TestRollback:
    """Tests for explicit rollback."""

    @pytest.mark.asyncio
    async def test_rollback_after_success(self, test_settings, make_plan):
        plan = make_plan()
        orchestrator = DeploymentOrchestrator(settings=test_settings)
        result = await orchestrator.run(plan)
        assert result.succeeded

        removed = await orchestrator.rollback()

        assert plan.install_path in removed
        assert not plan.install_path.exists()
        assert result.handle.status == ProcessStatus.STOPPED

    @pytest.mark.asyncio
    async def test_failure_does_not_roll_back(self, test_settings, make_plan, monkeypatch):
        """A failed deployment leaves its files until rollback is asked for."""
        monkeypatch.setenv("FAKE_VELO_FAIL", "user")
        plan = make_plan()
        orchestrator = DeploymentOrchestrator(settings=test_settings)
        await orchestrator.run(plan)

        assert plan.config_path.exists()
        await orchestrator.rollback()
        assert not plan.install_path.exists()

    @pytest.mark.asyncio
    async def test_rollback_keeps_preexisting_files(self, test_settings, make_plan):
        plan = make_plan()
        plan.install_path.mkdir(parents=True)
        keep = plan.install_path / "notes.txt"
        keep.write_text("keep me")

        orchestrator = DeploymentOrchestrator(settings=test_settings)
        await orchestrator.run(plan)
        await orchestrator.rollback()

        assert keep.exists()
        assert not plan.config_path.exists()

    @pytest.mark.asyncio
    async def test_rollback_removes_downloaded_binary(self, test_settings, make_plan):
        plan = make_plan(binary_source=BinarySource.DOWNLOAD, binary_path=None)
        provider = FlakyProvider(plan.install_path)
        orchestrator = DeploymentOrchestrator(settings=test_settings, binary_provider=provider)
        result = await orchestrator.run(plan)
        assert result.succeeded

        removed = await orchestrator.rollback()

        assert plan.install_path in removed
        assert not plan.install_path.exists()

    @pytest.mark.asyncio
    async def test_rollback_into_existing_dir_removes_download_and_secrets(self, test_settings, make_plan):
        plan = make_plan(binary_source=BinarySource.DOWNLOAD, binary_path=None)
        plan.install_path.mkdir(parents=True)
        keep = plan.install_path / "notes.txt"
        keep.write_text("keep me")
        provider = FlakyProvider(plan.install_path)
        orchestrator = DeploymentOrchestrator(settings=test_settings, binary_provider=provider)
        result = await orchestrator.run(plan)
        assert result.succeeded

        await orchestrator.rollback()

        assert keep.exists()
        assert sorted(p.name for p in plan.install_path.iterdir()) == ["notes.txt"]

    @pytest.mark.asyncio
    async def test_rollback_keeps_reused_binary(self, test_settings, make_plan):
        plan = make_plan(binary_source=BinarySource.DOWNLOAD, binary_path=None)
        provider = FlakyProvider(plan.install_path)
        write_fake_binary(provider.target_path)
        orchestrator = DeploymentOrchestrator(settings=test_settings, binary_provider=provider)
        result = await orchestrator.run(plan)
        assert result.succeeded
        assert provider.calls == 0

        await orchestrator.rollback()

        assert provider.target_path.exists()
        assert not plan.config_path.exists()
        assert not (plan.install_path / "secrets").exists()
