# keyfleet/core/deployer.py
"""
Deployment Driver
Applies a plan to one host: Pending -> Staged -> Verified -> Committed
"""

import asyncio
import threading
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar
import logging

from keyfleet.config import Settings, settings as default_settings
from keyfleet.database.models import ArtifactKind
from keyfleet.schemas.deploy import CompiledArtifact, DeployResult, DeployState, HostAddress, Plan
from .deployment_state import DeploymentStateRepository
from .errors import DeployError, DeployErrorReason, TransportError
from .transport import RemoteTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DeploymentDriver:
    """
    Deployment Driver

    Responsibilities:
    1. Hold the host's deployment lease from staging to commit
    2. Write the new content next to the live file and read it back
    3. Atomically rename it over the live file, then verify the live file
    4. Record the committed artifact as the host's last deployment

    Staging and verification retry transport failures with exponential
    backoff. The commit is attempted once.
    """

    def __init__(
        self,
        transport: RemoteTransport,
        state: DeploymentStateRepository,
        settings: Optional[Settings] = None
    ):
        self.transport = transport
        self.state = state
        self.settings = settings or default_settings

    def remote_path(self, kind: ArtifactKind) -> str:
        if kind == ArtifactKind.AUTHORIZED_KEYS:
            return self.settings.AUTHORIZED_KEYS_PATH
        if not self.settings.KNOWN_HOSTS_REMOTE_PATH:
            raise ValueError("KNOWN_HOSTS_REMOTE_PATH is not configured")
        return self.settings.KNOWN_HOSTS_REMOTE_PATH

    async def apply(self, address: HostAddress, plan: Plan, result: Optional[DeployResult] = None) -> DeployResult:
        """
        Apply one plan

        NoOp and manual-review plans are skipped without contacting the
        host. Errors end in a Failed result; cancellation propagates.
        A caller that passes its own result can still inspect it after a
        cancellation, e.g. to see whether the live file was already replaced.
        """
        if result is None:
            result = DeployResult(host_id=address.host_id, kind=plan.kind, fingerprint=plan.fingerprint)

        if not plan.is_applicable:
            return result.advance(DeployState.SKIPPED)

        if not address.known_hosts.strip() and not self.settings.ALLOW_EMPTY_KNOWN_HOSTS:
            return result.fail(
                DeployErrorReason.UNTRUSTED_HOST.value,
                f"Host {address.name} has no trusted host keys"
            )

        holder = f"{self.settings.ENGINE_ID}:{uuid.uuid4().hex}"
        try:
            acquired = await self._acquire_lease(address.host_id, holder)
        except asyncio.TimeoutError:
            logger.warning(f"Host {address.name}: timed out waiting for the deployment lease")
            return result.fail(
                DeployErrorReason.TIMEOUT.value,
                f"Lease acquisition for host {address.name} timed out"
            )
        if not acquired:
            logger.warning(f"Host {address.name}: deployment lease held by another run")
            return result.fail(
                DeployErrorReason.LEASE_CONTENTION.value,
                f"Deployment lease for host {address.name} is held by another run"
            )

        try:
            await self._deploy(address, plan, result)
        except DeployError as e:
            result.fail(e.code, e.message)
        finally:
            try:
                await self._store_call(self.state.release_lease, address.host_id, holder)
            except Exception:
                logger.exception(f"Host {address.name}: failed to release deployment lease")

        result.finished_at = datetime.utcnow()
        if result.state == DeployState.FAILED:
            logger.warning(f"Host {address.name}: {plan.kind.value} deployment failed: {result.reason}: {result.message}")
        return result

    async def _deploy(self, address: HostAddress, plan: Plan, result: DeployResult) -> None:
        final_path = self.remote_path(plan.kind)
        tmp_path = f"{final_path}.keyfleet-{uuid.uuid4().hex[:12]}.tmp"
        data = (plan.content or "").encode("utf-8")
        timeout = self.settings.OPERATION_TIMEOUT

        # Staged
        await self._with_retries(
            "stage", address,
            lambda: self.transport.write(address, tmp_path, data, timeout=timeout)
        )
        result.advance(DeployState.STAGED)

        # Verified
        try:
            staged = await self._with_retries(
                "verify", address,
                lambda: self.transport.read(address, tmp_path, timeout=timeout)
            )
        except DeployError:
            await self._discard(address, tmp_path)
            raise
        if staged != data:
            await self._discard(address, tmp_path)
            raise DeployError(
                DeployErrorReason.VERIFICATION_MISMATCH,
                f"Staged {plan.kind.value} read back {len(staged)} bytes, expected {len(data)}",
                address.host_id
            )
        result.advance(DeployState.VERIFIED)

        # Committed
        try:
            await self._call(lambda: self.transport.atomic_replace(address, tmp_path, final_path, timeout=timeout))
        except TransportError as e:
            raise DeployError(DeployErrorReason.COMMIT_FAILED, str(e), address.host_id)
        result.replaced_at = datetime.utcnow()

        try:
            live = await self._call(lambda: self.transport.read(address, final_path, timeout=timeout))
        except TransportError as e:
            raise DeployError(
                DeployErrorReason.POST_CONDITION_FAILED,
                f"Cannot read back live file: {e}",
                address.host_id
            )
        if live != data:
            raise DeployError(
                DeployErrorReason.POST_CONDITION_FAILED,
                f"Live {plan.kind.value} does not match the committed content",
                address.host_id
            )
        result.advance(DeployState.COMMITTED)
        logger.info(f"Host {address.name}: committed {plan.kind.value} {plan.fingerprint} ({plan.line_count} lines)")

        artifact = CompiledArtifact(
            host_id=address.host_id,
            kind=plan.kind,
            content=plan.content or "",
            fingerprint=plan.fingerprint,
            line_count=plan.line_count,
        )
        try:
            await self._store_call(self.state.record_deployment, artifact)
        except Exception as e:
            # Live file is correct; the next run re-plans and re-records it
            logger.exception(f"Host {address.name}: failed to record deployment")
            result.message = f"Committed but not recorded: {e}"

    async def _acquire_lease(self, host_id: int, holder: str) -> bool:
        """
        Take the host lease under the operation timeout

        The worker thread cannot be interrupted, so a lease it obtains after
        the caller gave up (timeout or cancellation) is released again
        instead of blocking later runs until it expires.
        """
        lock = threading.Lock()
        status = {"abandoned": False, "acquired": False}

        def acquire() -> bool:
            acquired = self.state.acquire_lease(host_id, holder)
            with lock:
                status["acquired"] = acquired
                abandoned = status["abandoned"]
            if acquired and abandoned:
                logger.info(f"Host {host_id}: releasing lease obtained after its caller gave up")
                self.state.release_lease(host_id, holder)
            return acquired

        try:
            return await asyncio.wait_for(asyncio.to_thread(acquire), self.settings.OPERATION_TIMEOUT)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            with lock:
                status["abandoned"] = True
                acquired = status["acquired"]
            if acquired:
                # The thread finished just as we gave up; nobody else will release it
                try:
                    await asyncio.shield(self._store_call(self.state.release_lease, host_id, holder))
                except Exception:
                    logger.exception(f"Host {host_id}: failed to release abandoned deployment lease")
            raise

    async def _call(self, factory: Callable[[], Awaitable[T]]) -> T:
        """Run one transport call under the per-operation timeout"""
        try:
            return await asyncio.wait_for(factory(), self.settings.OPERATION_TIMEOUT)
        except asyncio.TimeoutError:
            raise TransportError(f"operation timed out after {self.settings.OPERATION_TIMEOUT}s", timed_out=True)

    async def _with_retries(self, step: str, address: HostAddress, factory: Callable[[], Awaitable[T]]) -> T:
        attempts = max(1, self.settings.RETRY_ATTEMPTS)
        last_error: Optional[TransportError] = None
        for attempt in range(1, attempts + 1):
            try:
                return await self._call(factory)
            except TransportError as e:
                last_error = e
                if attempt == attempts:
                    break
                delay = min(
                    self.settings.RETRY_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                    self.settings.RETRY_BACKOFF_MAX_SECONDS
                )
                logger.warning(f"Host {address.name}: {step} attempt {attempt}/{attempts} failed: {e}; retrying in {delay}s")
                await asyncio.sleep(delay)

        reason = DeployErrorReason.TIMEOUT if last_error.timed_out else DeployErrorReason.TRANSPORT_FAILURE
        raise DeployError(reason, f"{step} failed after {attempts} attempts: {last_error}", address.host_id)

    async def _discard(self, address: HostAddress, path: str) -> None:
        """Best-effort removal of a staged file"""
        try:
            await self._call(lambda: self.transport.remove(address, path, timeout=self.settings.OPERATION_TIMEOUT))
        except TransportError as e:
            logger.warning(f"Host {address.name}: could not remove staged file {path}: {e}")

    async def _store_call(self, func: Callable[..., T], *args) -> T:
        """Run a blocking state-store call off the event loop"""
        return await asyncio.wait_for(asyncio.to_thread(func, *args), self.settings.OPERATION_TIMEOUT)
