"""
Deployment engine for the Velociraptor server.

This module provides:
- Binary resolution (download, existing path)
- Config and admin credential generation
- Process supervision with background crash detection
- Readiness probing of the web interface
- The 8-stage deployment orchestrator
"""

from .binary import BinaryProvider, BinaryRef
from .config import ServerConfig, generate_config, load_config, write_config
from .credentials import AdminCredential, CredentialGenerator, CredentialStore, SecretPolicy
from .orchestrator import DeploymentOrchestrator, DeploymentResult
from .plan import BinarySource, DeploymentMode, DeploymentPlan
from .prober import Readiness, ReadinessProber
from .state import DeploymentOutcome, DeploymentState, ProgressEvent, Stage, StageStatus
from .supervisor import ProcessStatus, ProcessSupervisor, ServerProcessHandle

__all__ = [
    # Binary
    "BinaryProvider",
    "BinaryRef",
    # Config
    "ServerConfig",
    "generate_config",
    "load_config",
    "write_config",
    # Credentials
    "AdminCredential",
    "CredentialGenerator",
    "CredentialStore",
    "SecretPolicy",
    # Orchestrator
    "DeploymentOrchestrator",
    "DeploymentResult",
    # Plan and state
    "BinarySource",
    "DeploymentMode",
    "DeploymentPlan",
    "DeploymentOutcome",
    "DeploymentState",
    "ProgressEvent",
    "Stage",
    "StageStatus",
    # Readiness
    "Readiness",
    "ReadinessProber",
    # Supervisor
    "ProcessStatus",
    "ProcessSupervisor",
    "ServerProcessHandle",
]
