# keyfleet/core/drift.py
"""
Drift Inspector
Compares a host's live authorized_keys with its compiled desired state
"""

import asyncio
import logging

from keyfleet.schemas.report import DriftReport
from .artifact_compiler import content_fingerprint
from .errors import TransportError
from .orchestrator import FleetOrchestrator

logger = logging.getLogger(__name__)


class DriftInspector:
    """
    Read-only check of live files

    Uses the orchestrator's compilation and transport; never writes to the
    host and never touches deployment records.
    """

    def __init__(self, orchestrator: FleetOrchestrator):
        self.orchestrator = orchestrator
        self.settings = orchestrator.settings
        self.validator = orchestrator.validator

    async def inspect(self, host_id: int) -> DriftReport:
        """
        Raises:
            ResolveError: if the host's desired state cannot be resolved
        """
        pipeline = await asyncio.wait_for(
            asyncio.to_thread(self.orchestrator.compile_host, host_id),
            self.settings.OPERATION_TIMEOUT
        )
        desired = pipeline.authorized_keys
        report = DriftReport(
            host_id=host_id,
            host_name=pipeline.address.name,
            in_sync=False,
            desired_fingerprint=desired.fingerprint,
        )

        timeout = self.settings.OPERATION_TIMEOUT
        try:
            live = await asyncio.wait_for(
                self.orchestrator.transport.read(pipeline.address, self.settings.AUTHORIZED_KEYS_PATH, timeout=timeout),
                timeout
            )
        except (TransportError, asyncio.TimeoutError) as e:
            logger.warning(f"Host {pipeline.address.name}: cannot read live authorized_keys: {e}")
            report.error = str(e) or "timed out"
            return report

        live_text = live.decode("utf-8", "replace")
        report.live_fingerprint = content_fingerprint(live_text)
        report.in_sync = live_text == desired.content

        parsed, report.unparseable_lines = self.validator.parse_lines(live_text)
        live_fingerprints = {key.fingerprint for _, key in parsed}
        desired_fingerprints = {grant.key.fingerprint for grant in pipeline.resolved.grants}

        report.missing = sorted(desired_fingerprints - live_fingerprints)
        report.unexpected = sorted({
            key.to_line() for _, key in parsed if key.fingerprint not in desired_fingerprints
        })
        return report
