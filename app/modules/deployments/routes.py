import json
import queue
import logging
from fastapi import APIRouter, Depends, HTTPException, BackgroundTasks, Query
from fastapi.responses import StreamingResponse
from app.database.supabase_client import get_supabase
from app.modules.deployments.schemas import (
    DeploymentCreate,
    DeploymentResponse,
    DeploymentLogsResponse,
    DeploymentStatus,
    DeploymentStatusResponse,
    OperationResult,
    ProcessLogsResponse,
    Role,
)
from app.modules.deployments.errors import (
    ConnectivityError,
    DeploymentError,
    PortExhausted,
    QuotaExceeded,
    SubdomainExhausted,
)
from app.modules.deployments.orchestrator import DeploymentOrchestrator, get_orchestrator
from app.modules.deployments.deployment_worker import run_deployment_async, retry_role_async
from app.modules.deployments import log_stream
from app.core.dependencies import get_current_user_id, check_deployment_access
from supabase import Client
from typing import List, Dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deployments", tags=["deployments"])

_STREAM_KEEPALIVE_SEC = 15


def get_deployment_orchestrator() -> DeploymentOrchestrator:
    return get_orchestrator()


def to_http_exception(error: DeploymentError) -> HTTPException:
    if isinstance(error, QuotaExceeded):
        return HTTPException(
            status_code=403,
            detail={"message": str(error), "role": error.role, "limits": error.limits},
        )
    if isinstance(error, (PortExhausted, SubdomainExhausted)):
        return HTTPException(status_code=503, detail=str(error))
    if isinstance(error, ConnectivityError):
        return HTTPException(status_code=502, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


@router.post("", response_model=DeploymentResponse, status_code=201)
def create_deployment(
    deployment_data: DeploymentCreate,
    background_tasks: BackgroundTasks,
    user_data: Dict = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_deployment_orchestrator),
):
    """
    Start a deployment.
    Quota, subdomain and ports are settled before returning; the build runs in the background.
    Follow progress via /logs or /stream.
    """
    try:
        deployment = orchestrator.prepare(user_data["id"], deployment_data)
    except DeploymentError as e:
        raise to_http_exception(e)
    background_tasks.add_task(run_deployment_async, deployment.id)
    return deployment


@router.get("", response_model=List[DeploymentResponse])
async def list_deployments(
    user_data: Dict = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_deployment_orchestrator),
):
    """List the caller's deployments"""
    return orchestrator.deployments.list_deployments_by_user(user_data["id"])


@router.get("/{deployment_id}", response_model=DeploymentStatusResponse)
def get_deployment(
    deployment_id: str,
    user_data: Dict = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_deployment_orchestrator),
    supabase: Client = Depends(get_supabase)
):
    """Deployment record plus live process status of each role"""
    check_deployment_access(deployment_id, user_data, supabase)
    return orchestrator.get_status(deployment_id)


@router.get("/{deployment_id}/logs", response_model=DeploymentLogsResponse)
async def get_deployment_logs(
    deployment_id: str,
    after: int = Query(0, ge=0),
    limit: int = Query(500, ge=1, le=5000),
    user_data: Dict = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_deployment_orchestrator),
    supabase: Client = Depends(get_supabase)
):
    """
    Poll for deployment logs.
    Returns entries after the given sequence number and the deployment status.
    """
    check_deployment_access(deployment_id, user_data, supabase)
    deployment = orchestrator.deployments.get_deployment_by_id(deployment_id)
    logs = orchestrator.logs.list_logs(deployment_id, after_sequence=after, limit=limit)
    return DeploymentLogsResponse(
        deployment_id=deployment.id,
        logs=logs,
        status=deployment.status,
        has_more=deployment.status == DeploymentStatus.DEPLOYING or len(logs) == limit
    )


def _sse(event: str, data: dict, event_id=None) -> str:
    head = f"id: {event_id}\n" if event_id is not None else ""
    return f"{head}event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


@router.get("/{deployment_id}/stream")
def stream_deployment_logs(
    deployment_id: str,
    user_data: Dict = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_deployment_orchestrator),
    supabase: Client = Depends(get_supabase)
):
    """Server-Sent Events: persisted entries first, then live ones until the deployment finishes."""
    check_deployment_access(deployment_id, user_data, supabase)
    # Subscribe before replaying so nothing falls between the two
    subscription = log_stream.subscribe(deployment_id)

    def events():
        last_sequence = 0
        try:
            for entry in orchestrator.logs.list_logs(deployment_id):
                last_sequence = entry.sequence
                yield _sse("log", entry.model_dump(mode="json"), entry.sequence)
            deployment = orchestrator.deployments.get_deployment_by_id(deployment_id)
            while deployment.status == DeploymentStatus.DEPLOYING:
                try:
                    item = subscription.get(timeout=_STREAM_KEEPALIVE_SEC)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    deployment = orchestrator.deployments.get_deployment_by_id(deployment_id)
                    continue
                if item is log_stream.CLOSED:
                    break
                if item["sequence"] <= last_sequence:
                    continue
                last_sequence = item["sequence"]
                yield _sse("log", item, item["sequence"])
            deployment = orchestrator.deployments.get_deployment_by_id(deployment_id)
            yield _sse("end", {"status": deployment.status.value})
        except HTTPException as e:
            yield _sse("end", {"status": "unknown", "error": e.detail})
        finally:
            log_stream.unsubscribe(deployment_id, subscription)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/{deployment_id}/process-logs", response_model=ProcessLogsResponse)
def get_process_logs(
    deployment_id: str,
    role: Role,
    lines: int = Query(100, ge=1, le=1000),
    user_data: Dict = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_deployment_orchestrator),
    supabase: Client = Depends(get_supabase)
):
    """Recent stdout/stderr of one role's process"""
    check_deployment_access(deployment_id, user_data, supabase)
    try:
        return orchestrator.get_process_logs(deployment_id, role, lines)
    except DeploymentError as e:
        raise to_http_exception(e)


@router.post("/{deployment_id}/stop", response_model=OperationResult)
def stop_deployment(
    deployment_id: str,
    user_data: Dict = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_deployment_orchestrator),
    supabase: Client = Depends(get_supabase)
):
    check_deployment_access(deployment_id, user_data, supabase)
    try:
        return orchestrator.stop(deployment_id)
    except DeploymentError as e:
        raise to_http_exception(e)


@router.post("/{deployment_id}/restart", response_model=OperationResult)
def restart_deployment(
    deployment_id: str,
    user_data: Dict = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_deployment_orchestrator),
    supabase: Client = Depends(get_supabase)
):
    check_deployment_access(deployment_id, user_data, supabase)
    try:
        return orchestrator.restart(deployment_id)
    except DeploymentError as e:
        raise to_http_exception(e)


@router.delete("/{deployment_id}", response_model=OperationResult)
def delete_deployment(
    deployment_id: str,
    user_data: Dict = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_deployment_orchestrator),
    supabase: Client = Depends(get_supabase)
):
    """Delete processes, working directories, proxy configs, logs and the record"""
    check_deployment_access(deployment_id, user_data, supabase)
    try:
        return orchestrator.delete(deployment_id)
    except DeploymentError as e:
        raise to_http_exception(e)


@router.post("/{deployment_id}/roles/{role}/retry", response_model=DeploymentResponse, status_code=202)
def retry_role(
    deployment_id: str,
    role: Role,
    background_tasks: BackgroundTasks,
    user_data: Dict = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_deployment_orchestrator),
    supabase: Client = Depends(get_supabase)
):
    """Re-run one failed role without touching the role that already succeeded"""
    check_deployment_access(deployment_id, user_data, supabase)
    try:
        deployment = orchestrator.prepare_retry(deployment_id, role)
    except DeploymentError as e:
        raise to_http_exception(e)
    background_tasks.add_task(retry_role_async, deployment_id, role)
    return deployment
