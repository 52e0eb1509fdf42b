"""Tests for deployment plan validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from velosetup.deploy.plan import BinarySource, DeploymentMode, DeploymentPlan
from velosetup.errors import ConfigError


class TestDeploymentPlan:
    """Tests for DeploymentPlan."""

    def test_defaults(self):
        """Standalone binds loopback on the GUI port 8889."""
        plan = DeploymentPlan()
        assert plan.mode == DeploymentMode.STANDALONE
        assert plan.effective_bind_address == "127.0.0.1"
        assert plan.bind_port == 8889
        assert plan.frontend_port == 8000
        plan.validate()

    def test_server_mode_binds_all_interfaces(self):
        plan = DeploymentPlan(mode="server")
        assert plan.mode == DeploymentMode.SERVER
        assert plan.effective_bind_address == "0.0.0.0"

    def test_plan_is_immutable(self):
        plan = DeploymentPlan()
        with pytest.raises(AttributeError):
            plan.bind_port = 9999  # type: ignore[misc]

    def test_with_changes_returns_new_plan(self):
        plan = DeploymentPlan()
        changed = plan.with_changes(bind_port=9000)
        assert changed.bind_port == 9000
        assert plan.bind_port == 8889

    @pytest.mark.parametrize("mode", ["cluster", "cloud", "container"])
    def test_unimplemented_modes_rejected(self, mode):
        with pytest.raises(ConfigError, match="not implemented"):
            DeploymentPlan(mode=mode).validate()

    def test_build_from_source_rejected(self):
        with pytest.raises(ConfigError):
            DeploymentPlan(binary_source=BinarySource.BUILD_FROM_SOURCE).validate()

    def test_download_while_offline_rejected(self):
        with pytest.raises(ConfigError, match="outbound"):
            DeploymentPlan(binary_source=BinarySource.DOWNLOAD, offline=True).validate()

    def test_offline_with_existing_binary_ok(self):
        DeploymentPlan(
            binary_source=BinarySource.EXISTING,
            binary_path=Path("/opt/velociraptor"),
            offline=True,
        ).validate()

    def test_existing_requires_path(self):
        with pytest.raises(ConfigError, match="requires a binary path"):
            DeploymentPlan(binary_source=BinarySource.CUSTOM_PATH).validate()

    def test_invalid_bind_address(self):
        with pytest.raises(ConfigError, match="bind address"):
            DeploymentPlan(bind_address="not-an-ip").validate()

    @pytest.mark.parametrize("port", [0, 70000, -1])
    def test_invalid_port(self, port):
        with pytest.raises(ConfigError):
            DeploymentPlan(bind_port=port).validate()

    def test_gui_and_frontend_ports_must_differ(self):
        with pytest.raises(ConfigError, match="must differ"):
            DeploymentPlan(bind_port=8000, frontend_port=8000).validate()

    def test_to_dict(self):
        d = DeploymentPlan(install_path=Path("/srv/velo")).to_dict()
        assert d["mode"] == "standalone"
        assert d["bindPort"] == 8889
        assert d["datastorePath"] == str(Path("/srv/velo") / "datastore")
