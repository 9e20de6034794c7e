import logging

from app.modules.deployments.schemas import DeploymentStatus, Role
from app.modules.deployments.service import DeploymentService

logger = logging.getLogger(__name__)


def _mark_failed(orchestrator, deployment_id: str, error: str):
    """Last resort so a crashed worker never leaves a deployment stuck in deploying."""
    service: DeploymentService = orchestrator.deployments
    try:
        deployment = service.get_deployment_by_id(deployment_id)
        if deployment.status == DeploymentStatus.DEPLOYING:
            service.update_deployment_status(deployment_id, DeploymentStatus.FAILED, error_message=error)
    except Exception as status_err:
        logger.error(f"Failed to set deployment {deployment_id} status to failed: {status_err}")


def run_deployment_async(deployment_id: str):
    """
    Background worker for a prepared deployment.
    Runs in a worker thread (FastAPI BackgroundTasks) and uses the service-role
    Supabase client so status updates are not blocked by RLS.
    """
    from app.modules.deployments.orchestrator import get_orchestrator
    orchestrator = get_orchestrator()
    try:
        outcome = orchestrator.run(deployment_id)
        if outcome.success:
            logger.info(f"Deployment {deployment_id} completed successfully")
        else:
            logger.warning(f"Deployment {deployment_id} finished with failed roles")
    except Exception as e:
        logger.exception(f"Deployment worker error for {deployment_id}")
        _mark_failed(orchestrator, deployment_id, str(e))


def retry_role_async(deployment_id: str, role: Role):
    """Background worker re-running one role of a failed deployment (already moved to deploying)."""
    from app.modules.deployments.orchestrator import get_orchestrator
    orchestrator = get_orchestrator()
    try:
        outcome = orchestrator.run(deployment_id, roles=[role])
        logger.info(f"Retry of {role.value} for deployment {deployment_id} finished (success={outcome.success})")
    except Exception as e:
        logger.exception(f"Retry worker error for {deployment_id}")
        _mark_failed(orchestrator, deployment_id, str(e))
