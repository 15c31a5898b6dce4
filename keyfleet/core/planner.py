# keyfleet/core/planner.py
"""
Convergence Planner
Diffs a compiled artifact against the last deployment of that host
"""

from typing import Optional
import logging

from keyfleet.config import Settings, settings as default_settings
from keyfleet.database.models import ArtifactKind
from keyfleet.schemas.deploy import CompiledArtifact, Plan, PlanAction
from .deployment_state import DeploymentRecord

logger = logging.getLogger(__name__)


def count_key_lines(text: str) -> int:
    """Non-blank, non-comment lines of an authorized_keys file"""
    return sum(1 for line in text.splitlines() if line.strip() and not line.lstrip().startswith("#"))


class ConvergencePlanner:
    """
    Convergence Planner

    Produces NoOp when the fingerprint matches the last deployment and a
    whole-file Replace otherwise. A Replace that would shrink an
    authorized_keys file below MANUAL_REVIEW_MIN_LINES is held for manual
    review when the host has admin grants or currently holds more lines.
    Without a deployment record the live file stands in for the deployed
    one; when it cannot be read the Replace is held as well.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    def plan(
        self,
        host_id: int,
        artifact: CompiledArtifact,
        last: Optional[DeploymentRecord] = None,
        admin_grant_count: int = 0,
        approved: bool = False,
        live_line_count: Optional[int] = None,
        live_unreadable: bool = False
    ) -> Plan:
        """
        live_line_count and live_unreadable describe the host's current file
        and only matter when there is no deployment record
        """
        last_fingerprint = last.fingerprint if last else None

        if last_fingerprint == artifact.fingerprint:
            return Plan(
                host_id=host_id,
                kind=artifact.kind,
                action=PlanAction.NOOP,
                fingerprint=artifact.fingerprint,
                previous_fingerprint=last_fingerprint,
                line_count=artifact.line_count,
            )

        review_reason = None
        if artifact.kind == ArtifactKind.AUTHORIZED_KEYS:
            review_reason = self.lockout_reason(
                artifact.line_count,
                last.line_count if last else live_line_count,
                admin_grant_count,
                deployed_unknown=last is None and live_unreadable,
            )

        if review_reason and approved:
            logger.warning(f"Host {host_id}: lockout guard bypassed by operator approval ({review_reason})")
            review_reason = None
        elif review_reason:
            logger.warning(f"Host {host_id}: {artifact.kind.value} replacement needs manual review: {review_reason}")

        return Plan(
            host_id=host_id,
            kind=artifact.kind,
            action=PlanAction.REPLACE,
            fingerprint=artifact.fingerprint,
            previous_fingerprint=last_fingerprint,
            content=artifact.content,
            line_count=artifact.line_count,
            manual_review_required=review_reason is not None,
            review_reason=review_reason,
        )

    def needs_live_count(
        self,
        artifact: CompiledArtifact,
        last: Optional[DeploymentRecord],
        admin_grant_count: int = 0
    ) -> bool:
        """Whether the lockout decision depends on a file we have no record of"""
        return (
            artifact.kind == ArtifactKind.AUTHORIZED_KEYS
            and last is None
            and admin_grant_count == 0
            and artifact.line_count < self.settings.MANUAL_REVIEW_MIN_LINES
        )

    def plan_rollback(
        self,
        record: DeploymentRecord,
        admin_grant_count: int = 0,
        approved: bool = False
    ) -> Plan:
        """
        Replace plan restoring the deployment before the current one

        Raises:
            ValueError: if the record has no previous deployment
        """
        if not record.has_previous:
            raise ValueError(f"Host {record.host_id} has no previous {record.kind.value} deployment")

        line_count = record.previous_line_count or 0
        review_reason = None
        if record.kind == ArtifactKind.AUTHORIZED_KEYS and not approved:
            review_reason = self.lockout_reason(line_count, record.line_count, admin_grant_count)

        return Plan(
            host_id=record.host_id,
            kind=record.kind,
            action=PlanAction.REPLACE,
            fingerprint=record.previous_fingerprint,
            previous_fingerprint=record.fingerprint,
            content=record.previous_content,
            line_count=line_count,
            manual_review_required=review_reason is not None,
            review_reason=review_reason,
            rollback=True,
        )

    def lockout_reason(
        self,
        new_line_count: int,
        deployed_line_count: Optional[int],
        admin_grant_count: int,
        deployed_unknown: bool = False
    ) -> Optional[str]:
        """Why a replacement could lock administrators out, or None"""
        threshold = self.settings.MANUAL_REVIEW_MIN_LINES
        if new_line_count >= threshold:
            return None
        if admin_grant_count > 0:
            return (f"result has {new_line_count} line(s) but the host has "
                    f"{admin_grant_count} administrator grant(s)")
        if deployed_unknown:
            return f"result has {new_line_count} line(s) and the live file could not be read"
        if deployed_line_count is not None and deployed_line_count > new_line_count:
            return f"result shrinks the deployed file from {deployed_line_count} to {new_line_count} line(s)"
        return None
