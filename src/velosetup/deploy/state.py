"""Deployment state: the ordered stage record of a single deployment.

The orchestrator is the only writer. Everyone else reads through
:meth:`DeploymentState.snapshot`, which returns an independent copy.
"""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Stage(str, Enum):
    """The eight deployment stages, in execution order."""

    BINARY = "binary"
    CONFIG = "config"
    CERTIFICATES = "certificates"
    AUTH = "auth"
    STORAGE = "storage"
    SERVICE = "service"
    GUI = "gui"
    CLIENT = "client"


STAGE_ORDER: List[Stage] = list(Stage)


class StageStatus(str, Enum):
    """Status of one stage."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class DeploymentOutcome(str, Enum):
    """Overall status of a deployment."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    ABORTED = "aborted"


@dataclass
class StageRecord:
    """Status, timing and log of one stage."""

    index: int
    stage: Stage
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    log_lines: List[str] = field(default_factory=list)
    error_kind: Optional[str] = None
    message: Optional[str] = None

    @property
    def name(self) -> str:
        return self.stage.value

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "index": self.index,
            "name": self.name,
            "status": self.status.value,
            "startedAt": int(self.started_at * 1000) if self.started_at else None,
            "finishedAt": int(self.finished_at * 1000) if self.finished_at else None,
            "logLines": list(self.log_lines),
            "errorKind": self.error_kind,
            "message": self.message,
        }


@dataclass(frozen=True)
class ProgressEvent:
    """Emitted on every stage transition."""

    stage_index: int
    stage_name: str
    status: StageStatus
    message: str = ""
    error_kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stageIndex": self.stage_index,
            "stageName": self.stage_name,
            "status": self.status.value,
            "message": self.message,
            "errorKind": self.error_kind,
        }


@dataclass
class DeploymentState:
    """All eight stage records of one deployment, plus the overall outcome."""

    stages: List[StageRecord] = field(
        default_factory=lambda: [
            StageRecord(index=i, stage=stage) for i, stage in enumerate(STAGE_ORDER, start=1)
        ]
    )
    outcome: DeploymentOutcome = DeploymentOutcome.PENDING

    def record(self, stage: Stage) -> StageRecord:
        return self.stages[STAGE_ORDER.index(stage)]

    def status_of(self, stage: Stage) -> StageStatus:
        return self.record(stage).status

    def begin(self, stage: Stage, message: str) -> ProgressEvent:
        """Mark a stage running. The previous stage must have succeeded."""
        record = self.record(stage)
        if record.index > 1:
            previous = self.stages[record.index - 2]
            if previous.status != StageStatus.SUCCEEDED:
                raise RuntimeError(
                    f"Stage {stage.value} cannot start: {previous.name} is {previous.status.value}"
                )
        if record.status != StageStatus.PENDING:
            raise RuntimeError(f"Stage {stage.value} already {record.status.value}")

        self.outcome = DeploymentOutcome.RUNNING
        record.status = StageStatus.RUNNING
        record.started_at = time.time()
        record.log_lines.append(message)
        return ProgressEvent(record.index, record.name, record.status, message)

    def log(self, stage: Stage, line: str) -> None:
        self.record(stage).log_lines.append(line)

    def succeed(self, stage: Stage, message: str) -> ProgressEvent:
        record = self.record(stage)
        record.status = StageStatus.SUCCEEDED
        record.finished_at = time.time()
        record.message = message
        record.log_lines.append(message)
        if record.index == len(self.stages):
            self.outcome = DeploymentOutcome.SUCCEEDED
        return ProgressEvent(record.index, record.name, record.status, message)

    def fail(self, stage: Stage, message: str, error_kind: str) -> ProgressEvent:
        """Mark a stage failed and abort the deployment."""
        record = self.record(stage)
        record.status = StageStatus.FAILED
        record.finished_at = time.time()
        record.message = message
        record.error_kind = error_kind
        record.log_lines.append(f"[{error_kind}] {message}")
        self.outcome = DeploymentOutcome.ABORTED
        return ProgressEvent(record.index, record.name, record.status, message, error_kind)

    @property
    def failed_stage(self) -> Optional[StageRecord]:
        for record in self.stages:
            if record.status == StageStatus.FAILED:
                return record
        return None

    def snapshot(self) -> "DeploymentState":
        """Return a deep copy safe to read while a deployment is running."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "stages": [record.to_dict() for record in self.stages],
        }
