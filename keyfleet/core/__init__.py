# keyfleet/core/__init__.py
"""
Core engine modules
"""

from .errors import (
    KeyfleetError,
    KeyMaterialError,
    KeyErrorReason,
    ResolveError,
    ResolveErrorReason,
    DeployError,
    DeployErrorReason,
    TransportError,
)
from .key_validator import KeyValidator, key_validator, split_options
from .store import DesiredStateStore
from .grant_resolver import GrantResolver
from .artifact_compiler import ArtifactCompiler, content_fingerprint
from .deployment_state import DeploymentRecord, DeploymentStateRepository
from .planner import ConvergencePlanner
from .transport import RemoteTransport, SSHTransport
from .deployer import DeploymentDriver
from .orchestrator import FleetOrchestrator, HostPipeline
from .drift import DriftInspector

__all__ = [
    # Errors
    "KeyfleetError",
    "KeyMaterialError",
    "KeyErrorReason",
    "ResolveError",
    "ResolveErrorReason",
    "DeployError",
    "DeployErrorReason",
    "TransportError",
    # Key Material
    "KeyValidator",
    "key_validator",
    "split_options",
    # Resolution & Compilation
    "DesiredStateStore",
    "GrantResolver",
    "ArtifactCompiler",
    "content_fingerprint",
    # Planning & Deployment
    "DeploymentRecord",
    "DeploymentStateRepository",
    "ConvergencePlanner",
    "RemoteTransport",
    "SSHTransport",
    "DeploymentDriver",
    # Fleet
    "FleetOrchestrator",
    "HostPipeline",
    "DriftInspector",
]
