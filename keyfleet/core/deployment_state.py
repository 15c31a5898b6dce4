# keyfleet/core/deployment_state.py
"""
Engine-owned deployment state
Last deployed artifact per (host, kind) and per-host deployment leases
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging

from keyfleet.config import Settings, settings as default_settings
from keyfleet.database.models import ArtifactKind, DeployedArtifact, DeploymentLease
from keyfleet.schemas.deploy import CompiledArtifact

logger = logging.getLogger(__name__)


class DeploymentRecord:
    """Detached snapshot of a deployed_artifacts row"""

    def __init__(
        self,
        host_id: int,
        kind: ArtifactKind,
        fingerprint: str,
        content: str,
        line_count: int,
        deployed_at: datetime,
        previous_fingerprint: Optional[str] = None,
        previous_content: Optional[str] = None,
        previous_line_count: Optional[int] = None
    ):
        self.host_id = host_id
        self.kind = kind
        self.fingerprint = fingerprint
        self.content = content
        self.line_count = line_count
        self.deployed_at = deployed_at
        self.previous_fingerprint = previous_fingerprint
        self.previous_content = previous_content
        self.previous_line_count = previous_line_count

    @classmethod
    def from_row(cls, row: DeployedArtifact) -> "DeploymentRecord":
        return cls(
            host_id=row.host_id,
            kind=ArtifactKind(row.kind),
            fingerprint=row.fingerprint,
            content=row.content,
            line_count=row.line_count,
            deployed_at=row.deployed_at,
            previous_fingerprint=row.previous_fingerprint,
            previous_content=row.previous_content,
            previous_line_count=row.previous_line_count,
        )

    @property
    def has_previous(self) -> bool:
        return self.previous_content is not None


class DeploymentStateRepository:
    """
    Persistence for deployment records and leases

    Every method opens its own short session so it can run from worker
    threads without sharing connections.
    """

    def __init__(self, session_factory: Callable[[], Session], settings: Optional[Settings] = None):
        self.session_factory = session_factory
        self.settings = settings or default_settings

    # === Deployment records ===

    def get_record(self, host_id: int, kind: ArtifactKind) -> Optional[DeploymentRecord]:
        with self.session_factory() as db:
            row = db.get(DeployedArtifact, (host_id, kind.value))
            return DeploymentRecord.from_row(row) if row else None

    def list_records(self, kind: Optional[ArtifactKind] = None) -> List[DeploymentRecord]:
        with self.session_factory() as db:
            query = db.query(DeployedArtifact)
            if kind is not None:
                query = query.filter(DeployedArtifact.kind == kind.value)
            return [DeploymentRecord.from_row(row) for row in query.order_by(DeployedArtifact.host_id).all()]

    def record_deployment(self, artifact: CompiledArtifact) -> DeploymentRecord:
        """
        Store a committed artifact as the host's current deployment
        The replaced deployment becomes the rollback target
        """
        with self.session_factory() as db:
            row = db.get(DeployedArtifact, (artifact.host_id, artifact.kind.value))
            now = datetime.utcnow()
            if row is None:
                row = DeployedArtifact(
                    host_id=artifact.host_id,
                    kind=artifact.kind.value,
                    fingerprint=artifact.fingerprint,
                    content=artifact.content,
                    line_count=artifact.line_count,
                    deployed_at=now,
                )
                db.add(row)
            elif row.fingerprint != artifact.fingerprint:
                row.previous_fingerprint = row.fingerprint
                row.previous_content = row.content
                row.previous_line_count = row.line_count
                row.fingerprint = artifact.fingerprint
                row.content = artifact.content
                row.line_count = artifact.line_count
                row.deployed_at = now
            else:
                row.deployed_at = now
            db.commit()
            db.refresh(row)
            logger.debug(f"Recorded {artifact.kind.value} {artifact.fingerprint} for host {artifact.host_id}")
            return DeploymentRecord.from_row(row)

    # === Leases ===

    def acquire_lease(self, host_id: int, holder: str, ttl_seconds: Optional[int] = None) -> bool:
        """
        Take the exclusive deployment lease for a host

        Returns:
            True if the lease is now held by holder, False on contention
        """
        ttl = ttl_seconds if ttl_seconds is not None else self.settings.LEASE_TTL_SECONDS
        now = datetime.utcnow()
        expires = now + timedelta(seconds=ttl)

        with self.session_factory() as db:
            # Take over an expired lease or re-acquire our own
            result = db.execute(
                update(DeploymentLease)
                .where(DeploymentLease.host_id == host_id)
                .where((DeploymentLease.expires_at <= now) | (DeploymentLease.holder == holder))
                .values(holder=holder, acquired_at=now, expires_at=expires)
            )
            if result.rowcount == 1:
                db.commit()
                return True

            if db.get(DeploymentLease, host_id) is not None:
                db.rollback()
                return False

            db.add(DeploymentLease(host_id=host_id, holder=holder, acquired_at=now, expires_at=expires))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.debug(f"Lost lease race for host {host_id}")
                return False
            return True

    def release_lease(self, host_id: int, holder: str) -> bool:
        """Release the lease if holder still owns it"""
        with self.session_factory() as db:
            lease = db.get(DeploymentLease, host_id)
            if lease is None or lease.holder != holder:
                return False
            db.delete(lease)
            db.commit()
            return True

    def get_lease(self, host_id: int) -> Optional[dict]:
        with self.session_factory() as db:
            lease = db.get(DeploymentLease, host_id)
            if lease is None:
                return None
            return {
                "host_id": lease.host_id,
                "holder": lease.holder,
                "acquired_at": lease.acquired_at,
                "expires_at": lease.expires_at,
            }
