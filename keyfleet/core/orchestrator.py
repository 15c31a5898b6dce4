# keyfleet/core/orchestrator.py
"""
Fleet Orchestrator
Runs resolve -> compile -> plan -> apply for every host, in parallel
"""

import asyncio
import uuid
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar
from sqlalchemy.orm import Session
import logging

from keyfleet.config import Settings, settings as default_settings
from keyfleet.database.models import ArtifactKind
from keyfleet.schemas.deploy import CompiledArtifact, DeployResult, DeployState, HostAddress, Plan
from keyfleet.schemas.grants import ResolvedGrantSet
from keyfleet.schemas.report import ArtifactReport, HostOutcome, HostReport, RunReport
from .artifact_compiler import ArtifactCompiler
from .deployer import DeploymentDriver
from .deployment_state import DeploymentRecord, DeploymentStateRepository
from .errors import DeployErrorReason, ResolveError, ResolveErrorReason, TransportError
from .grant_resolver import GrantResolver
from .key_validator import KeyValidator, key_validator
from .planner import ConvergencePlanner, count_key_lines
from .store import DesiredStateStore
from .transport import RemoteTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")

Progress = List[Tuple[Plan, ArtifactReport, Optional[DeployResult]]]


class HostPipeline:
    """Compiled desired state of one host, ready to plan"""

    def __init__(
        self,
        address: HostAddress,
        resolved: ResolvedGrantSet,
        authorized_keys: CompiledArtifact,
        known_hosts: CompiledArtifact
    ):
        self.address = address
        self.resolved = resolved
        self.authorized_keys = authorized_keys
        self.known_hosts = known_hosts
        self.records: Dict[ArtifactKind, Optional[DeploymentRecord]] = {}
        self.plans: List[Plan] = []


class FleetOrchestrator:
    """
    Fleet Orchestrator

    Each host runs as an independent task bounded by MAX_CONCURRENCY; tasks
    share nothing and only hand back their HostReport. A run always returns
    a report with one entry per requested host.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        transport: RemoteTransport,
        settings: Optional[Settings] = None,
        validator: Optional[KeyValidator] = None
    ):
        self.session_factory = session_factory
        self.transport = transport
        self.settings = settings or default_settings
        self.validator = validator or key_validator
        self.state = DeploymentStateRepository(session_factory, self.settings)
        self.planner = ConvergencePlanner(self.settings)
        self.driver = DeploymentDriver(transport, self.state, self.settings)

    # === Desired state ===

    def list_host_ids(self) -> List[int]:
        with self.session_factory() as db:
            return DesiredStateStore(db).list_host_ids()

    def compile_host(self, host_id: int) -> HostPipeline:
        """
        Resolve and compile one host (blocking)

        Raises:
            ResolveError: if the host cannot be resolved
        """
        with self.session_factory() as db:
            store = DesiredStateStore(db)
            resolved = GrantResolver(store, self.validator).resolve(host_id)
            compiler = ArtifactCompiler(store, self.validator)
            authorized_keys = compiler.compile_authorized_keys(resolved)
            known_hosts = compiler.compile_known_hosts(host_id)
            address = self._address(store, host_id, known_hosts)
        return HostPipeline(address, resolved, authorized_keys, known_hosts)

    def prepare_host(self, host_id: int) -> HostPipeline:
        """Compile one host and load the last deployment of each artifact (blocking)"""
        pipeline = self.compile_host(host_id)
        kinds = [ArtifactKind.AUTHORIZED_KEYS]
        if self.settings.KNOWN_HOSTS_REMOTE_PATH:
            kinds.append(ArtifactKind.KNOWN_HOSTS)
        for kind in kinds:
            pipeline.records[kind] = self.state.get_record(host_id, kind)
        return pipeline

    def plan_host(
        self,
        pipeline: HostPipeline,
        approved: bool = False,
        live_line_count: Optional[int] = None,
        live_unreadable: bool = False
    ) -> List[Plan]:
        host_id = pipeline.address.host_id
        pipeline.plans = [self.planner.plan(
            host_id,
            pipeline.authorized_keys,
            pipeline.records.get(ArtifactKind.AUTHORIZED_KEYS),
            admin_grant_count=pipeline.resolved.admin_grant_count,
            approved=approved,
            live_line_count=live_line_count,
            live_unreadable=live_unreadable,
        )]
        if ArtifactKind.KNOWN_HOSTS in pipeline.records:
            pipeline.plans.append(self.planner.plan(
                host_id,
                pipeline.known_hosts,
                pipeline.records[ArtifactKind.KNOWN_HOSTS],
            ))
        return pipeline.plans

    def _address(self, store: DesiredStateStore, host_id: int, known_hosts: CompiledArtifact) -> HostAddress:
        host = store.get_host(host_id)
        if host is None:
            raise ResolveError(ResolveErrorReason.UNKNOWN_HOST, f"Host {host_id} does not exist", host_id)
        return HostAddress(
            host_id=host.id,
            name=host.name,
            hostname=host.hostname,
            port=host.port or 22,
            username=host.username,
            known_hosts=known_hosts.content,
        )

    # === Runs ===

    async def run_once(
        self,
        host_ids: Optional[Iterable[int]] = None,
        approved_host_ids: Iterable[int] = (),
        cancel_event: Optional[asyncio.Event] = None
    ) -> RunReport:
        """
        Converge the given hosts, or every host when host_ids is None

        Setting cancel_event aborts in-flight hosts at their next suspension
        point; they are reported as Failed(cancelled), or as Committed when
        the live file had already been replaced.
        """
        report = RunReport(run_id=uuid.uuid4().hex, started_at=datetime.utcnow())

        if host_ids is None:
            try:
                host_ids = await self._store_call(self.list_host_ids)
            except Exception as e:
                logger.exception("Cannot list hosts")
                report.error = f"Cannot list hosts: {e}"
                report.finished_at = datetime.utcnow()
                return report

        ordered = list(dict.fromkeys(host_ids))
        approved = set(approved_host_ids)
        semaphore = asyncio.Semaphore(max(1, self.settings.MAX_CONCURRENCY))
        logger.info(f"Run {report.run_id}: converging {len(ordered)} host(s)")

        tasks: Dict[int, asyncio.Task] = {
            host_id: asyncio.create_task(self._guarded(host_id, semaphore, host_id in approved))
            for host_id in ordered
        }
        pending = set(tasks.values())
        cancel_waiter = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None

        while pending:
            waitables = set(pending)
            if cancel_waiter is not None:
                waitables.add(cancel_waiter)
            done, _ = await asyncio.wait(waitables, return_when=asyncio.FIRST_COMPLETED)
            pending -= done
            if cancel_waiter is not None and cancel_waiter in done:
                logger.warning(f"Run {report.run_id}: cancelled with {len(pending)} host(s) in flight")
                report.cancelled = True
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                pending = set()
                cancel_waiter = None

        if cancel_waiter is not None:
            cancel_waiter.cancel()

        for host_id, task in tasks.items():
            if task.cancelled():
                report.hosts.append(self._failed(host_id, DeployErrorReason.CANCELLED.value, "Run cancelled"))
            else:
                report.hosts.append(task.result())

        report.finished_at = datetime.utcnow()
        logger.info(f"Run {report.run_id} finished: {report.counts()}")
        return report

    async def rollback(self, host_id: int, approved: bool = False) -> HostReport:
        """Redeploy the authorized_keys that preceded the current deployment"""
        try:
            address, record, admin_count = await self._store_call(self._rollback_context, host_id)
        except ResolveError as e:
            return self._failed(host_id, e.code, e.message)
        except asyncio.TimeoutError:
            return self._failed(host_id, DeployErrorReason.TIMEOUT.value, "Desired-state read timed out")

        if record is None or not record.has_previous:
            return self._failed(host_id, "no_previous_deployment", "Nothing to roll back to", address.name)

        plan = self.planner.plan_rollback(record, admin_grant_count=admin_count, approved=approved)
        if plan.manual_review_required:
            return HostReport(
                host_id=host_id,
                host_name=address.name,
                outcome=HostOutcome.MANUAL_REVIEW_REQUIRED,
                fingerprint=plan.fingerprint,
                reason="manual_review_required",
                message=plan.review_reason,
                artifacts=[ArtifactReport(kind=plan.kind, action=plan.action, fingerprint=plan.fingerprint)],
            )

        result = await self.driver.apply(address, plan)
        return HostReport(
            host_id=host_id,
            host_name=address.name,
            outcome=HostOutcome.COMMITTED if result.committed else HostOutcome.FAILED,
            fingerprint=plan.fingerprint,
            reason=result.reason,
            message=result.message,
            artifacts=[ArtifactReport(
                kind=plan.kind, action=plan.action, state=result.state,
                fingerprint=plan.fingerprint, reason=result.reason,
            )],
        )

    def _rollback_context(self, host_id: int):
        with self.session_factory() as db:
            store = DesiredStateStore(db)
            known_hosts = ArtifactCompiler(store, self.validator).compile_known_hosts(host_id)
            address = self._address(store, host_id, known_hosts)
            admin_count = sum(1 for g in store.list_grants(host_id) if g.is_admin)
        return address, self.state.get_record(host_id, ArtifactKind.AUTHORIZED_KEYS), admin_count

    async def _guarded(self, host_id: int, semaphore: asyncio.Semaphore, approved: bool) -> HostReport:
        async with semaphore:
            try:
                return await self._run_host(host_id, approved)
            except Exception as e:
                logger.exception(f"Host {host_id}: unexpected error")
                return self._failed(host_id, "internal_error", str(e))

    async def _run_host(self, host_id: int, approved: bool) -> HostReport:
        try:
            pipeline = await self._store_call(self.prepare_host, host_id)
        except ResolveError as e:
            logger.warning(f"Host {host_id}: resolution failed: {e}")
            return self._failed(host_id, e.code, e.message)
        except asyncio.TimeoutError:
            return self._failed(host_id, DeployErrorReason.TIMEOUT.value, "Desired-state read timed out")

        live_line_count = None
        check_live = not approved and self.planner.needs_live_count(
            pipeline.authorized_keys,
            pipeline.records.get(ArtifactKind.AUTHORIZED_KEYS),
            pipeline.resolved.admin_grant_count,
        )
        if check_live:
            live_line_count = await self._live_line_count(pipeline.address)
        self.plan_host(pipeline, approved, live_line_count, live_unreadable=check_live and live_line_count is None)

        progress: Progress = [
            (
                plan,
                ArtifactReport(kind=plan.kind, action=plan.action, fingerprint=plan.fingerprint),
                DeployResult(host_id=host_id, kind=plan.kind, fingerprint=plan.fingerprint)
                if plan.is_applicable else None,
            )
            for plan in pipeline.plans
        ]
        try:
            for plan, _, result in progress:
                if result is not None:
                    await self.driver.apply(pipeline.address, plan, result)
        except asyncio.CancelledError:
            if not any(result is not None and result.replaced_at is not None for _, _, result in progress):
                raise
            logger.warning(f"Host {pipeline.address.name}: run cancelled after the live file was replaced")
            return self._host_report(pipeline, progress, cancelled=True)
        return self._host_report(pipeline, progress)

    async def _live_line_count(self, address: HostAddress) -> Optional[int]:
        """Key lines in the host's current authorized_keys, None when it cannot be read"""
        timeout = self.settings.OPERATION_TIMEOUT
        try:
            live = await asyncio.wait_for(
                self.transport.read(address, self.settings.AUTHORIZED_KEYS_PATH, timeout=timeout),
                timeout
            )
        except (TransportError, asyncio.TimeoutError) as e:
            logger.warning(f"Host {address.name}: no deployment record and live authorized_keys unreadable: {e}")
            return None
        return count_key_lines(live.decode("utf-8", "replace"))

    def _host_report(self, pipeline: HostPipeline, progress: Progress, cancelled: bool = False) -> HostReport:
        failed: Optional[ArtifactReport] = None
        failed_message: Optional[str] = None
        review: Optional[Plan] = None
        committed: List[ArtifactKind] = []

        for plan, entry, result in progress:
            if plan.manual_review_required:
                entry.reason = HostOutcome.MANUAL_REVIEW_REQUIRED.value
                review = review or plan
                continue
            if result is None:
                continue
            if cancelled and result.state not in (DeployState.COMMITTED, DeployState.FAILED):
                if result.replaced_at is not None:
                    result.advance(DeployState.COMMITTED)
                    result.message = "Run cancelled before the live file was read back"
                else:
                    result.fail(DeployErrorReason.CANCELLED.value, "Run cancelled")
            entry.state = result.state
            entry.reason = result.reason
            if result.state == DeployState.FAILED:
                if failed is None:
                    failed, failed_message = entry, result.message
            elif result.committed:
                committed.append(plan.kind)

        report = HostReport(
            host_id=pipeline.address.host_id,
            host_name=pipeline.address.name,
            outcome=HostOutcome.NOOP,
            fingerprint=pipeline.authorized_keys.fingerprint,
            artifacts=[entry for _, entry, _ in progress],
            rejected_keys=pipeline.resolved.rejected,
        )
        if failed is not None:
            report.outcome = HostOutcome.FAILED
            report.reason = failed.reason
            report.message = failed_message
            if cancelled and committed:
                report.message = f"Run cancelled after committing {', '.join(k.value for k in committed)}"
        elif review is not None:
            report.outcome = HostOutcome.MANUAL_REVIEW_REQUIRED
            report.reason = HostOutcome.MANUAL_REVIEW_REQUIRED.value
            report.message = review.review_reason
        elif committed:
            report.outcome = HostOutcome.COMMITTED
            if cancelled:
                report.message = "Run cancelled after commit"
        return report

    def _failed(self, host_id: int, reason: str, message: str, host_name: Optional[str] = None) -> HostReport:
        return HostReport(
            host_id=host_id,
            host_name=host_name,
            outcome=HostOutcome.FAILED,
            reason=reason,
            message=message,
        )

    async def _store_call(self, func: Callable[..., T], *args) -> T:
        """Blocking desired-state work off the event loop, under the operation timeout"""
        return await asyncio.wait_for(asyncio.to_thread(func, *args), self.settings.OPERATION_TIMEOUT)
