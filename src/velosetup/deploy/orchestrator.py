"""
Deployment orchestrator - the 8-stage deployment state machine.

Stages run strictly in order on the caller's task:

    binary -> config -> certificates -> auth -> storage -> service -> gui -> client

Each transition yields a :class:`ProgressEvent`. A failed stage aborts the
deployment; nothing is rolled back unless :meth:`rollback` is called.
"""

import asyncio
import logging
import os
import shutil
import tempfile
import webbrowser
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

from velosetup.deploy.binary import BinaryProvider, BinaryRef
from velosetup.deploy.commands import BinaryCommands
from velosetup.deploy.config import (
    ServerConfig,
    ToolConfigEntry,
    generate_config,
    load_config,
    merge_generated,
    write_config,
)
from velosetup.deploy.credentials import (
    AdminCredential,
    CredentialGenerator,
    CredentialStore,
    SecretPolicy,
)
from velosetup.deploy.plan import BinarySource, DeploymentMode, DeploymentPlan
from velosetup.deploy.prober import Readiness, ReadinessProber, gui_endpoint
from velosetup.deploy.state import (
    DeploymentOutcome,
    DeploymentState,
    ProgressEvent,
    Stage,
    STAGE_ORDER,
)
from velosetup.deploy.supervisor import ProcessStatus, ProcessSupervisor, ServerProcessHandle
from velosetup.errors import (
    CommandError,
    ConfigError,
    DeploymentError,
    ProcessExitedError,
    TimedOutError,
    TransientError,
)
from velosetup.settings import Settings

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]
ToolSource = Callable[[], dict[str, ToolConfigEntry]]

STAGE_DESCRIPTIONS = {
    Stage.BINARY: "Resolving server binary",
    Stage.CONFIG: "Generating server configuration",
    Stage.CERTIFICATES: "Generating certificates",
    Stage.AUTH: "Creating administrator account",
    Stage.STORAGE: "Preparing datastore",
    Stage.SERVICE: "Starting server",
    Stage.GUI: "Verifying web interface",
    Stage.CLIENT: "Preparing client configuration",
}


@dataclass
class DeploymentResult:
    """Terminal result of a deployment run."""
    outcome: DeploymentOutcome
    state: DeploymentState
    handle: Optional[ServerProcessHandle] = None
    credential: Optional[AdminCredential] = None
    endpoint: Optional[str] = None
    binary: Optional[BinaryRef] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == DeploymentOutcome.SUCCEEDED

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "state": self.state.to_dict(),
            "process": self.handle.to_dict() if self.handle else None,
            "credential": self.credential.masked() if self.credential else None,
            "endpoint": self.endpoint,
            "binary": self.binary.to_dict() if self.binary else None,
        }


class DeploymentOrchestrator:
    """
    Drives one deployment through its stages.

    One orchestrator owns exactly one :class:`DeploymentState`. Read it from
    outside through ``orchestrator.state.snapshot()``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        binary_provider: Optional[BinaryProvider] = None,
        prober: Optional[ReadinessProber] = None,
        tool_source: Optional[ToolSource] = None,
        deployment_timeout: Optional[float] = None,
        regenerate_credential: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or Settings()
        self.state = DeploymentState()
        self.deployment_timeout = deployment_timeout
        self.regenerate_credential = regenerate_credential

        self._binary_provider = binary_provider
        self._prober = prober or ReadinessProber(interval=self.settings.probe_interval)
        self._tool_source = tool_source
        self._sleep = sleep

        self.binary: Optional[BinaryRef] = None
        self.commands: Optional[BinaryCommands] = None
        self.supervisor: Optional[ProcessSupervisor] = None
        self.handle: Optional[ServerProcessHandle] = None
        self.credential: Optional[AdminCredential] = None
        self.endpoint: Optional[str] = None

        self._config: Optional[ServerConfig] = None
        self._current: Optional[Stage] = None
        self._created: list[Path] = []
        self._started = False

    @property
    def outcome(self) -> DeploymentOutcome:
        return self.state.outcome

    async def events(self, plan: DeploymentPlan) -> AsyncIterator[ProgressEvent]:
        """
        Run the deployment, yielding a progress event per transition.

        Raises:
            ConfigError: The plan is invalid; raised before any stage runs.
            RuntimeError: This orchestrator already ran a deployment.
        """
        if self._started:
            raise RuntimeError("An orchestrator runs a single deployment; create a new one")
        plan.validate()
        self._started = True

        loop = asyncio.get_running_loop()
        deadline = None if self.deployment_timeout is None else loop.time() + self.deployment_timeout

        logger.info(f"==== Deployment started: {plan.mode.value} on port {plan.bind_port} ====")

        for stage in STAGE_ORDER:
            self._current = stage
            yield self.state.begin(stage, STAGE_DESCRIPTIONS[stage])

            try:
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    raise TimedOutError(f"Deployment timed out before {stage.value} started")
                try:
                    message = await asyncio.wait_for(self._run_stage(stage, plan), timeout=remaining)
                except asyncio.TimeoutError as e:
                    raise TimedOutError(
                        f"Deployment timed out after {self.deployment_timeout}s during {stage.value}"
                    ) from e
            except DeploymentError as e:
                yield self._fail(stage, e)
                return
            except asyncio.CancelledError:
                self.state.fail(stage, "Deployment cancelled", "cancelled")
                raise
            except Exception as e:
                logger.exception(f"[{stage.value}] Unexpected failure")
                yield self._fail(stage, DeploymentError(f"Unexpected error: {e}"))
                return

            yield self.state.succeed(stage, message)
            logger.info(f"[{stage.value}] {message}")

        self._current = None
        logger.info("==== Deployment complete ====")

    async def run(
        self,
        plan: DeploymentPlan,
        on_progress: Optional[ProgressCallback] = None,
    ) -> DeploymentResult:
        """Run the deployment to completion and return the terminal result."""
        async for event in self.events(plan):
            if on_progress:
                on_progress(event)
        return DeploymentResult(
            outcome=self.state.outcome,
            state=self.state.snapshot(),
            handle=self.handle,
            credential=self.credential,
            endpoint=self.endpoint,
            binary=self.binary,
        )

    async def rollback(self) -> list[Path]:
        """
        Undo a deployment explicitly.

        Stops the supervised server and removes files and directories this
        run created. Returns the removed paths.
        """
        if self.handle and self.supervisor and self.handle.is_running:
            await self.supervisor.stop(self.handle)

        removed = []
        for path in reversed(self._created):
            if path.is_dir():
                shutil.rmtree(path, ignore_errors=False)
            elif path.exists():
                path.unlink()
            else:
                continue
            removed.append(path)
            logger.info(f"Rolled back: {path}")
        self._created.clear()
        return removed

    def _fail(self, stage: Stage, error: DeploymentError) -> ProgressEvent:
        if isinstance(error, CommandError) and error.stderr:
            for line in error.stderr.splitlines():
                self.state.log(stage, f"[stderr] {line}")
        if error.hint:
            self.state.log(stage, f"Hint: {error.hint}")
        logger.error(f"[{stage.value}] Failed ({error.kind}): {error.message}")
        return self.state.fail(stage, error.message, error.kind)

    def _track(self, path: Path):
        """Remember a path this run created, for explicit rollback."""
        if path not in self._created:
            self._created.append(path)

    def _track_new_dir(self, path: Path):
        """Create a directory, tracking the topmost one that did not exist."""
        missing = None
        for candidate in [path, *path.parents]:
            if candidate.exists():
                break
            missing = candidate
        path.mkdir(parents=True, exist_ok=True)
        if missing is not None:
            self._track(missing)

    async def _run_stage(self, stage: Stage, plan: DeploymentPlan) -> str:
        handler = {
            Stage.BINARY: self._stage_binary,
            Stage.CONFIG: self._stage_config,
            Stage.CERTIFICATES: self._stage_certificates,
            Stage.AUTH: self._stage_auth,
            Stage.STORAGE: self._stage_storage,
            Stage.SERVICE: self._stage_service,
            Stage.GUI: self._stage_gui,
            Stage.CLIENT: self._stage_client,
        }[stage]
        return await handler(plan)

    async def _stage_binary(self, plan: DeploymentPlan) -> str:
        provider = self._binary_provider or BinaryProvider(
            install_path=plan.install_path,
            repo=self.settings.github_repo,
            min_size=self.settings.min_binary_size,
        )
        self._track_new_dir(plan.install_path)
        had_binary = provider.target_path.exists()
        attempts = max(1, self.settings.download_attempts)

        for attempt in range(1, attempts + 1):
            try:
                self.binary = await provider.resolve(plan.binary_source, plan.binary_path)
                break
            except TransientError as e:
                self.state.log(Stage.BINARY, f"Attempt {attempt}/{attempts} failed: {e.message}")
                if attempt == attempts:
                    raise TransientError(
                        f"Failed to obtain binary after {attempts} attempts: {e.message}"
                    ) from e
                logger.warning(f"Download attempt {attempt} failed, retrying in {self.settings.retry_delay}s")
                await self._sleep(self.settings.retry_delay)

        if plan.binary_source == BinarySource.DOWNLOAD and not had_binary:
            self._track(self.binary.path)

        self.commands = BinaryCommands(self.binary.path)
        self.supervisor = ProcessSupervisor(self.commands)
        self.supervisor.on_exit(self._on_server_exit)

        version = await self.commands.version()
        if version:
            self.state.log(Stage.BINARY, f"Version: {version}")
        return f"Using {self.binary.path} ({self.binary.size} bytes, sha256 {self.binary.sha256[:12]})"

    async def _stage_config(self, plan: DeploymentPlan) -> str:
        tools = self._tool_source() if self._tool_source else {}
        self._config = generate_config(plan, tools)

        self._track_new_dir(plan.install_path)
        if not plan.config_path.exists():
            self._track(plan.config_path)
        write_config(self._config, plan.config_path)
        return f"Configuration written to {plan.config_path}"

    async def _stage_certificates(self, plan: DeploymentPlan) -> str:
        generated = await self.commands.generate_config()
        merged = merge_generated(generated, self._config)
        write_config(merged, plan.config_path)
        # Fail closed if the merge produced something the supervisor cannot read
        load_config(plan.config_path)
        return "Certificates generated and merged into configuration"

    async def _stage_auth(self, plan: DeploymentPlan) -> str:
        store = CredentialStore(
            plan.install_path / "secrets",
            CredentialGenerator(
                SecretPolicy(
                    min_length=self.settings.secret_min_length,
                    min_classes=self.settings.secret_min_classes,
                )
            ),
        )
        self._track_new_dir(store.directory)
        if not store.credential_file.exists():
            self._track(store.credential_file)
        self.credential = store.get_or_create(
            plan.admin_username,
            regenerate=self.regenerate_credential,
        )
        await self.commands.add_user(
            plan.config_path,
            self.credential.username,
            self.credential.generated_secret,
        )
        return f"Administrator account ready: {self.credential.masked()}"

    async def _stage_storage(self, plan: DeploymentPlan) -> str:
        for directory in (plan.effective_datastore, plan.log_directory):
            try:
                self._track_new_dir(directory)
            except OSError as e:
                raise ConfigError(f"Cannot create directory {directory}: {e}") from e
            if not os.access(directory, os.W_OK):
                raise ConfigError(f"Directory is not writable: {directory}")
            # Prove writability with a real file
            try:
                with tempfile.NamedTemporaryFile(dir=directory):
                    pass
            except OSError as e:
                raise ConfigError(f"Directory is not writable: {directory}: {e}") from e
            self.state.log(Stage.STORAGE, f"Directory ready: {directory}")
        return f"Datastore ready at {plan.effective_datastore}"

    async def _stage_service(self, plan: DeploymentPlan) -> str:
        self.handle = await self.supervisor.start(plan.config_path)
        self.state.log(Stage.SERVICE, f"Server started with PID {self.handle.pid}")

        self.endpoint = gui_endpoint(
            self._config.gui_bind_address,
            self._config.gui_bind_port,
            scheme=self.settings.probe_scheme,
        )
        probe = asyncio.create_task(
            self._prober.wait_until_ready(self.endpoint, self.settings.readiness_timeout)
        )
        exited = asyncio.create_task(self.supervisor.wait_exit(self.handle))
        try:
            done, _ = await asyncio.wait({probe, exited}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            # Cancels the in-flight probe on timeout or outer cancellation;
            # the handle itself stays supervised
            for task in (probe, exited):
                if not task.done():
                    task.cancel()

        if probe in done and probe.result() == Readiness.READY:
            return f"Server is ready at {self.endpoint}"

        if exited in done:
            for line in self.handle.recent_logs:
                self.state.log(Stage.SERVICE, line)
            raise ProcessExitedError(
                f"Server exited with code {self.handle.exit_code} before becoming ready"
            )

        raise TimedOutError(
            f"Server did not answer at {self.endpoint} within {self.settings.readiness_timeout}s"
        )

    async def _stage_gui(self, plan: DeploymentPlan) -> str:
        if self.handle.status != ProcessStatus.RUNNING:
            raise ProcessExitedError(
                f"Server is {self.handle.status.value} (exit code {self.handle.exit_code})"
            )
        self.state.log(Stage.GUI, f"Login: {self.credential.masked()}")
        if plan.open_browser:
            logger.info(f"Opening {self.endpoint} in the default browser")
            if not webbrowser.open(self.endpoint):
                self.state.log(Stage.GUI, "No browser available; open the URL manually")
        return f"Web interface available at {self.endpoint}"

    async def _stage_client(self, plan: DeploymentPlan) -> str:
        if plan.mode == DeploymentMode.STANDALONE:
            return "No client configuration needed in standalone mode"

        client_yaml = await self.commands.client_config(plan.config_path)
        if not plan.client_config_path.exists():
            self._track(plan.client_config_path)
        plan.client_config_path.write_text(client_yaml, encoding="utf-8")
        return f"Client configuration written to {plan.client_config_path}"

    def _on_server_exit(self, handle: ServerProcessHandle):
        """Record a crash in whichever stage is running when it happens."""
        if handle.status != ProcessStatus.CRASHED:
            return
        line = f"Server process {handle.pid} exited unexpectedly with code {handle.exit_code}"
        stage = self._current or Stage.CLIENT
        self.state.log(stage, line)
