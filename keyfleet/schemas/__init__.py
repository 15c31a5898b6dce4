# keyfleet/schemas/__init__.py
"""
Pydantic Schemas for keyfleet
Organized by domain: keys, grants, deployment, reports
"""

from .base import ErrorResponse, HealthResponse
from .keys import KeyAlgorithm, CanonicalKey, RejectedKey
from .grants import ResolvedGrant, ResolvedGrantSet
from .deploy import (
    CompiledArtifact,
    PlanAction,
    Plan,
    DeployState,
    DeployResult,
    HostAddress,
)
from .report import (
    HostOutcome,
    ArtifactReport,
    HostReport,
    RunReport,
    RunRequest,
    DriftReport,
)

__all__ = [
    # Base
    "ErrorResponse",
    "HealthResponse",
    # Keys
    "KeyAlgorithm",
    "CanonicalKey",
    "RejectedKey",
    # Grants
    "ResolvedGrant",
    "ResolvedGrantSet",
    # Deployment
    "CompiledArtifact",
    "PlanAction",
    "Plan",
    "DeployState",
    "DeployResult",
    "HostAddress",
    # Reports
    "HostOutcome",
    "ArtifactReport",
    "HostReport",
    "RunReport",
    "RunRequest",
    "DriftReport",
]
