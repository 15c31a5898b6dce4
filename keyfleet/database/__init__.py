# keyfleet/database/__init__.py
"""
Database modules
"""

from .session import init_db, build_engine, check_connection, SessionLocal, engine
from .models import (
    Base,
    ArtifactKind,
    Host,
    User,
    Grant,
    Group,
    GroupGrant,
    UserKey,
    HostKey,
    DeployedArtifact,
    DeploymentLease,
)

__all__ = [
    # Session
    "init_db",
    "build_engine",
    "check_connection",
    "SessionLocal",
    "engine",
    # Models
    "Base",
    "ArtifactKind",
    "Host",
    "User",
    "Grant",
    "Group",
    "GroupGrant",
    "UserKey",
    "HostKey",
    "DeployedArtifact",
    "DeploymentLease",
]
