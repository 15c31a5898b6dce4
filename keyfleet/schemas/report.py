# keyfleet/schemas/report.py
"""
Run report schemas
Serializable summary consumed by the API, dashboards and log sinks
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import datetime
from enum import Enum

from keyfleet.database.models import ArtifactKind
from .deploy import PlanAction, DeployState
from .keys import RejectedKey


class HostOutcome(str, Enum):
    """Terminal state of one host in a run"""
    NOOP = "noop"
    COMMITTED = "committed"
    FAILED = "failed"
    MANUAL_REVIEW_REQUIRED = "manual_review_required"


class ArtifactReport(BaseModel):
    """Per-artifact detail inside a host entry"""
    kind: ArtifactKind
    action: Optional[PlanAction] = None
    state: Optional[DeployState] = None
    fingerprint: Optional[str] = None
    reason: Optional[str] = None


class HostReport(BaseModel):
    """One host's terminal state"""
    host_id: int
    host_name: Optional[str] = None
    outcome: HostOutcome
    fingerprint: Optional[str] = Field(None, description="Fingerprint of the compiled authorized_keys")
    reason: Optional[str] = None
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    artifacts: List[ArtifactReport] = Field(default_factory=list)
    rejected_keys: List[RejectedKey] = Field(default_factory=list)

    model_config = {
        "json_schema_extra": {
            "example": {
                "host_id": 3,
                "host_name": "db-01",
                "outcome": "committed",
                "fingerprint": "sha256:5e8848...",
                "reason": None,
                "timestamp": "2026-01-12T10:00:00Z",
            }
        }
    }


class RunReport(BaseModel):
    """Aggregated result of one fleet run, one entry per requested host"""
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    error: Optional[str] = Field(None, description="Run-level failure before any host started")
    hosts: List[HostReport] = Field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        totals = {outcome.value: 0 for outcome in HostOutcome}
        for entry in self.hosts:
            totals[entry.outcome.value] += 1
        return totals

    def for_host(self, host_id: int) -> Optional[HostReport]:
        for entry in self.hosts:
            if entry.host_id == host_id:
                return entry
        return None

    @property
    def ok(self) -> bool:
        return all(h.outcome != HostOutcome.FAILED for h in self.hosts)


class RunRequest(BaseModel):
    """Body of POST /runs"""
    host_ids: Optional[List[int]] = Field(None, description="Hosts to converge, all hosts when omitted")
    approved_host_ids: List[int] = Field(
        default_factory=list,
        description="Hosts whose manual-review plans an operator approved for this run"
    )


class DriftReport(BaseModel):
    """Live authorized_keys compared with the compiled desired state"""
    host_id: int
    host_name: str
    in_sync: bool
    desired_fingerprint: str
    live_fingerprint: Optional[str] = None
    missing: List[str] = Field(default_factory=list, description="Desired key fingerprints absent from the host")
    unexpected: List[str] = Field(default_factory=list, description="Live key lines not in the desired state")
    unparseable_lines: int = 0
    error: Optional[str] = None
    checked_at: datetime = Field(default_factory=datetime.utcnow)
