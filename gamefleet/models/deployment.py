"""Deployment status data models."""

import math
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class StepStatus(str, Enum):
    """Status of a deployment, or of a single step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class DeploymentStep(BaseModel):
    """One step of a deployment."""

    id: str
    name: str
    status: StepStatus = StepStatus.PENDING
    progress: int = 0
    message: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class DeploymentStatus(BaseModel):
    """Tracked state of one workload deployment."""

    server_id: str
    status: StepStatus = StepStatus.PENDING
    progress: int = 0
    current_step: str = "Initializing deployment..."
    steps: list[DeploymentStep] = Field(default_factory=list)
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
    details: list[str] = Field(default_factory=list)

    running_weight: float = Field(default=0.5, exclude=True)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.FAILED)

    def get_step(self, step_id: str) -> DeploymentStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def compute_progress(self) -> int:
        """Overall progress as a function of step statuses.

        Completed steps count fully; a running step counts as
        ``running_weight`` of one step. Only reaches 100 when every step
        is completed.
        """
        total = len(self.steps)
        if total == 0:
            return 0
        completed = sum(1 for s in self.steps if s.status == StepStatus.COMPLETED)
        if completed == total:
            return 100
        has_running = any(s.status == StepStatus.RUNNING for s in self.steps)
        raw = 100 * (completed + self.running_weight * has_running) / total
        return min(int(math.floor(raw + 0.5)), 99)

    def update_step(
        self,
        step_id: str,
        status: StepStatus,
        progress: int,
        message: str | None = None,
        error: str | None = None,
    ) -> DeploymentStep:
        """Transition one step and recompute the overall progress."""
        now = datetime.utcnow()
        step = self.get_step(step_id)
        step.status = status
        step.progress = progress
        if message:
            step.message = message
        if error:
            step.error = error

        if status == StepStatus.RUNNING and step.started_at is None:
            step.started_at = now
        elif status in (StepStatus.COMPLETED, StepStatus.FAILED):
            step.completed_at = now

        # A failed step drops its running credit; progress never goes back
        self.progress = max(self.progress, self.compute_progress())

        running = next((s for s in self.steps if s.status == StepStatus.RUNNING), None)
        if running:
            self.current_step = message or running.name
        elif all(s.status == StepStatus.COMPLETED for s in self.steps):
            self.current_step = "Deployment completed successfully"

        self.updated_at = now
        return step


class DeploymentRequest(BaseModel):
    """Request to deploy a server."""

    server_id: str = Field(..., min_length=1)
    preferred_port: int | None = Field(default=None, ge=1, le=65535)


class DeploymentAccepted(BaseModel):
    """Response for an accepted deployment request."""

    accepted: bool = True
    server_id: str
    message: str = "Deployment started"
