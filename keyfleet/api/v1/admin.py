# keyfleet/api/v1/admin.py
"""
Admin API Endpoints
Preview compiled artifacts, inspect drift and trigger fleet runs
"""

from fastapi import APIRouter, Depends, HTTPException, Header, status
from fastapi.responses import PlainTextResponse
from functools import lru_cache
from typing import List
import asyncio
import logging

from keyfleet.config import settings
from keyfleet.core.drift import DriftInspector
from keyfleet.core.errors import ResolveError, ResolveErrorReason
from keyfleet.core.orchestrator import FleetOrchestrator
from keyfleet.core.store import DesiredStateStore
from keyfleet.core.transport import SSHTransport
from keyfleet.database.models import ArtifactKind
from keyfleet.database.session import SessionLocal
from keyfleet.schemas.base import ErrorResponse
from keyfleet.schemas.report import DriftReport, HostReport, RunReport, RunRequest

logger = logging.getLogger(__name__)

router = APIRouter()


@lru_cache()
def get_orchestrator() -> FleetOrchestrator:
    """Process-wide orchestrator over the configured database and SSH"""
    return FleetOrchestrator(SessionLocal, SSHTransport(settings), settings)


# === Authentication Dependency ===

async def verify_admin_token(x_admin_token: str = Header(..., alias="X-Admin-Token")):
    """
    Verify admin authentication token

    In production, replace with proper JWT/OAuth2 authentication
    """
    if x_admin_token != settings.ADMIN_SECRET:
        logger.warning("Invalid admin token attempt")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "Invalid or missing admin token",
                "error_code": "UNAUTHORIZED"
            },
            headers={"WWW-Authenticate": "Bearer"}
        )
    return True


def resolve_error_to_http(e: ResolveError) -> HTTPException:
    code = status.HTTP_404_NOT_FOUND if e.reason == ResolveErrorReason.UNKNOWN_HOST else status.HTTP_409_CONFLICT
    return HTTPException(
        status_code=code,
        detail={
            "error": e.message,
            "error_code": e.code,
            "host_id": e.host_id
        }
    )


async def compile_or_raise(orchestrator: FleetOrchestrator, host_id: int):
    try:
        return await asyncio.to_thread(orchestrator.compile_host, host_id)
    except ResolveError as e:
        raise resolve_error_to_http(e)


# === Host Endpoints ===

@router.get(
    "/hosts",
    summary="List hosts",
    description="All managed hosts with their last deployed authorized_keys fingerprint"
)
async def list_hosts(
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token)
) -> List[dict]:
    def load():
        with orchestrator.session_factory() as db:
            hosts = DesiredStateStore(db).list_hosts()
            rows = [
                {"id": h.id, "name": h.name, "hostname": h.hostname, "port": h.port, "username": h.username}
                for h in hosts
            ]
        records = {r.host_id: r for r in orchestrator.state.list_records(ArtifactKind.AUTHORIZED_KEYS)}
        for row in rows:
            record = records.get(row["id"])
            row["deployed_fingerprint"] = record.fingerprint if record else None
            row["deployed_at"] = record.deployed_at.isoformat() if record else None
        return rows

    return await asyncio.to_thread(load)


@router.get(
    "/hosts/{host_id}/authorized_keys",
    response_class=PlainTextResponse,
    responses={
        404: {"description": "Host not found", "model": ErrorResponse},
        409: {"description": "Host cannot be resolved", "model": ErrorResponse},
    },
    summary="Preview authorized_keys"
)
async def preview_authorized_keys(
    host_id: int,
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token)
):
    pipeline = await compile_or_raise(orchestrator, host_id)
    return PlainTextResponse(
        pipeline.authorized_keys.content,
        headers={"X-Artifact-Fingerprint": pipeline.authorized_keys.fingerprint}
    )


@router.get(
    "/hosts/{host_id}/known_hosts",
    response_class=PlainTextResponse,
    responses={
        404: {"description": "Host not found", "model": ErrorResponse},
        409: {"description": "Host cannot be resolved", "model": ErrorResponse},
    },
    summary="Preview known_hosts fragment"
)
async def preview_known_hosts(
    host_id: int,
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token)
):
    pipeline = await compile_or_raise(orchestrator, host_id)
    return PlainTextResponse(
        pipeline.known_hosts.content,
        headers={"X-Artifact-Fingerprint": pipeline.known_hosts.fingerprint}
    )


@router.get(
    "/hosts/{host_id}/drift",
    response_model=DriftReport,
    responses={
        404: {"description": "Host not found", "model": ErrorResponse},
        409: {"description": "Host cannot be resolved", "model": ErrorResponse},
    },
    summary="Compare live authorized_keys with the desired state"
)
async def host_drift(
    host_id: int,
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token)
):
    try:
        return await DriftInspector(orchestrator).inspect(host_id)
    except ResolveError as e:
        raise resolve_error_to_http(e)


@router.post(
    "/hosts/{host_id}/rollback",
    response_model=HostReport,
    summary="Restore the previous authorized_keys",
    description="""
    Redeploy the authorized_keys that was live before the last commit.
    Pass `approve=true` to bypass the lockout guard.
    """
)
async def rollback_host(
    host_id: int,
    approve: bool = False,
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token)
):
    logger.info(f"Rollback requested for host {host_id} (approve={approve})")
    return await orchestrator.rollback(host_id, approved=approve)


# === Run Endpoints ===

@router.post(
    "/runs",
    response_model=RunReport,
    summary="Run a convergence pass",
    description="""
    Resolve, compile, plan and apply for the requested hosts (all hosts when
    `host_ids` is omitted). Always answers with a report; failed hosts are
    listed in it rather than failing the request.
    """
)
async def trigger_run(
    run_in: RunRequest,
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token)
):
    return await orchestrator.run_once(run_in.host_ids, approved_host_ids=run_in.approved_host_ids)
