# keyfleet/schemas/deploy.py
"""
Compilation, planning and deployment schemas
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from datetime import datetime
from enum import Enum

from keyfleet.database.models import ArtifactKind


class CompiledArtifact(BaseModel):
    """Exact text of one file for one host"""
    host_id: int
    kind: ArtifactKind
    content: str
    fingerprint: str = Field(..., examples=["sha256:9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08"])
    line_count: int = 0

    model_config = ConfigDict(frozen=True)


class PlanAction(str, Enum):
    NOOP = "noop"
    REPLACE = "replace"


class Plan(BaseModel):
    """
    Convergence plan for one artifact on one host
    Replace always carries the full file content
    """
    host_id: int
    kind: ArtifactKind
    action: PlanAction
    fingerprint: str
    previous_fingerprint: Optional[str] = None
    content: Optional[str] = None
    line_count: int = 0
    manual_review_required: bool = False
    review_reason: Optional[str] = None
    rollback: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def is_applicable(self) -> bool:
        """True when the driver may write this plan to the host"""
        return self.action == PlanAction.REPLACE and not self.manual_review_required


class DeployState(str, Enum):
    """Per-artifact deployment state machine"""
    PENDING = "pending"
    STAGED = "staged"
    VERIFIED = "verified"
    COMMITTED = "committed"
    FAILED = "failed"
    SKIPPED = "skipped"  # plan was not applicable, host untouched


class HostAddress(BaseModel):
    """Everything the transport needs to reach a host"""
    host_id: int
    name: str
    hostname: str
    port: int = 22
    username: str
    known_hosts: str = Field(default="", description="Compiled known_hosts fragment trusted for this host")

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        return f"{self.username}@{self.hostname}:{self.port}"


class DeployResult(BaseModel):
    """Outcome of applying one plan"""
    host_id: int
    kind: ArtifactKind
    state: DeployState = DeployState.PENDING
    fingerprint: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    history: List[DeployState] = Field(default_factory=lambda: [DeployState.PENDING])
    finished_at: Optional[datetime] = None
    replaced_at: Optional[datetime] = Field(None, description="When the live file was swapped for the staged one")

    def advance(self, state: DeployState) -> "DeployResult":
        self.state = state
        self.history.append(state)
        return self

    def fail(self, reason: str, message: str) -> "DeployResult":
        self.reason = reason
        self.message = message
        return self.advance(DeployState.FAILED)

    @property
    def committed(self) -> bool:
        return self.state == DeployState.COMMITTED
