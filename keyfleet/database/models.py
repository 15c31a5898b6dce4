# keyfleet/database/models.py
"""
SQLAlchemy Database Models for keyfleet

Desired-state tables (hosts, users, grants, groups, keys) are owned by the
administrators' store and only read by the engine. The deployed_artifacts and
deployment_leases tables are owned by the engine.
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, SmallInteger,
    ForeignKey, Index
)
from sqlalchemy.orm import declarative_base
from datetime import datetime
import enum

Base = declarative_base()


class ArtifactKind(str, enum.Enum):
    """Files the engine compiles and deploys per host"""
    AUTHORIZED_KEYS = "authorized_keys"
    KNOWN_HOSTS = "known_hosts"


class Host(Base):
    """
    Host table - managed machines that receive authorized_keys
    """
    __tablename__ = "hosts"

    id = Column(Integer, primary_key=True)
    name = Column(Text, nullable=False,
                  comment="Display name, also used as known_hosts alias")
    username = Column(Text, nullable=False,
                      comment="Login user whose authorized_keys is managed")
    hostname = Column(Text, nullable=False)
    port = Column(SmallInteger, nullable=False, default=22)

    __table_args__ = (
        Index('ix_hosts_hostname_port', 'hostname', 'port', unique=True),
    )

    def __repr__(self):
        return f"<Host(id={self.id}, name={self.name}, addr={self.hostname}:{self.port})>"

    @property
    def address(self) -> str:
        return f"{self.hostname}:{self.port}"


class User(Base):
    """
    User table - humans who may log into hosts
    A disabled user resolves to zero keys everywhere
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(Text, unique=True, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<User(id={self.id}, username={self.username}, enabled={self.enabled})>"


class Grant(Base):
    """
    Grant table - authorizes one user on one host
    options is written verbatim in front of each of the user's keys
    """
    __tablename__ = "user_in_host"

    id = Column(Integer, primary_key=True)
    host_id = Column(Integer, ForeignKey("hosts.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    options = Column(Text, nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False,
                      comment="Administrator grant, protected by the lockout guard")


class Group(Base):
    """Group table - named collection, membership source not defined yet"""
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True)
    name = Column(Text, nullable=False)


class GroupGrant(Base):
    """
    Group grant table - a group referenced from a host's policy
    Resolution refuses hosts that carry any of these
    """
    __tablename__ = "group_in_host"

    id = Column(Integer, primary_key=True)
    host_id = Column(Integer, ForeignKey("hosts.id"), nullable=False, index=True)
    group_id = Column(Integer, ForeignKey("groups.id"), nullable=False)
    options = Column(Text, nullable=True)


class UserKey(Base):
    """User public keys, key material unique across all users"""
    __tablename__ = "user_keys"

    id = Column(Integer, primary_key=True)
    key_type = Column(Text, nullable=False)
    key_base64 = Column(Text, unique=True, nullable=False)
    comment = Column(Text, nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)


class HostKey(Base):
    """Trusted host public keys, several algorithms per host allowed"""
    __tablename__ = "host_keys"

    id = Column(Integer, primary_key=True)
    key_type = Column(Text, nullable=False)
    key_base64 = Column(Text, nullable=False)
    comment = Column(Text, nullable=True)
    host_id = Column(Integer, ForeignKey("hosts.id"), nullable=False, index=True)


class DeployedArtifact(Base):
    """
    Deployed artifact table - last committed content per host and kind
    Keeps the previous deployment for rollback
    """
    __tablename__ = "deployed_artifacts"

    host_id = Column(Integer, primary_key=True)
    kind = Column(String(32), primary_key=True)

    fingerprint = Column(String(80), nullable=False)
    content = Column(Text, nullable=False)
    line_count = Column(Integer, nullable=False, default=0)

    previous_fingerprint = Column(String(80), nullable=True)
    previous_content = Column(Text, nullable=True)
    previous_line_count = Column(Integer, nullable=True)

    deployed_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<DeployedArtifact(host_id={self.host_id}, kind={self.kind}, fingerprint={self.fingerprint})>"


class DeploymentLease(Base):
    """
    Deployment lease table - exclusive per-host deployment lock
    Expired leases can be taken over by any holder
    """
    __tablename__ = "deployment_leases"

    host_id = Column(Integer, primary_key=True)
    holder = Column(String(200), nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
