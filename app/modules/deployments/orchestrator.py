"""Deployment orchestration: quota, naming, ports, build, verification and proxying.

A deploy is split in two. prepare() runs in the request: it checks quota,
picks the subdomain, allocates ports and persists the record, all before any
build call. run() does the slow remote work and is meant for a worker thread.
"""
import logging
import threading
import time
from typing import Callable, Iterable, List, Optional

from fastapi import HTTPException
from supabase import Client

from app.config import settings
from app.modules.deployments.build_client import BuildClient, BuildFailure, BuildRequest, RemoteScriptBuildClient
from app.modules.deployments.errors import (
    BuildRpcFailure,
    DeploymentError,
    PortExhausted,
    SubdomainExhausted,
    SubdomainTaken,
    VerificationInconclusive,
)
from app.modules.deployments.log_service import DeploymentLogger, DeploymentLogService
from app.modules.deployments.nginx_provisioner import NginxProvisioner
from app.modules.deployments.pm2_supervisor import PM2Supervisor
from app.modules.deployments.port_manager import PortManager
from app.modules.deployments.schemas import (
    DeploymentCreate,
    DeploymentResponse,
    DeploymentStatus,
    DeploymentStatusResponse,
    DeployOutcome,
    OperationResult,
    ProcessLogsResponse,
    Role,
    RoleResult,
    RoleRuntimeStatus,
    RoleState,
    StepResult,
)
from app.modules.deployments.service import DeploymentService
from app.modules.deployments.ssh_channel import SSHChannel, get_channel
from app.modules.deployments.subdomain_generator import SubdomainGenerator, get_subdomain_generator
from app.modules.deployments import log_stream
from app.modules.subscriptions.service import SubscriptionService

logger = logging.getLogger(__name__)

_SUPERVISOR_TAIL_LINES = 30
_INSERT_ATTEMPTS = 3


def process_name_for(user_id: str, subdomain: str, role: Role) -> str:
    return f"user{user_id}_{subdomain}_{role.value}"


def default_name(request: DeploymentCreate) -> str:
    repo = request.frontend_repo or request.backend_repo or ""
    name = repo.rstrip("/").rsplit("/", 1)[-1]
    if name.endswith(".git"):
        name = name[:-4]
    return name[:100] or "deployment"


class DeploymentOrchestrator:
    def __init__(
        self,
        supabase: Client,
        channel: SSHChannel,
        supervisor: Optional[PM2Supervisor] = None,
        ports: Optional[PortManager] = None,
        proxy: Optional[NginxProvisioner] = None,
        build_client: Optional[BuildClient] = None,
        subdomains: Optional[SubdomainGenerator] = None,
        settle_delay: Optional[float] = None,
    ):
        self.channel = channel
        self.supervisor = supervisor or PM2Supervisor(channel)
        self.ports = ports or PortManager(channel, self.supervisor)
        self.proxy = proxy or NginxProvisioner(channel)
        self.build_client = build_client or RemoteScriptBuildClient(channel)
        self.subdomains = subdomains or get_subdomain_generator()
        self.settle_delay = settings.settle_delay_seconds if settle_delay is None else settle_delay
        self.deployments = DeploymentService(supabase)
        self.logs = DeploymentLogService(supabase)
        self.subscriptions = SubscriptionService(supabase)

    # ------------------------------------------------------------------ deploy

    def prepare(self, user_id: str, request: DeploymentCreate) -> DeploymentResponse:
        """Quota check, subdomain, ports and the persisted record. No remote side effects before the quota check."""
        roles = request.requested_roles()
        self.subscriptions.check_quota(user_id, roles)

        allocated = {}
        errors = {}
        for role in roles:
            try:
                allocated[role] = self.ports.find_free_port()
            except PortExhausted as e:
                logger.error(f"Port allocation failed for {role.value} of user {user_id}: {e}")
                errors[role] = str(e)

        try:
            for _ in range(_INSERT_ATTEMPTS):
                subdomain = self.subdomains.generate_unique(self.deployments.subdomain_exists)
                states = {}
                for role in roles:
                    states[role] = RoleState(
                        repo=request.repo_for(role),
                        description=request.description_for(role),
                        process_name=process_name_for(user_id, subdomain, role),
                        domain=self.proxy.domain_for(subdomain, role),
                        allocated_port=allocated.get(role),
                        status="failed" if role in errors else "pending",
                        error=errors.get(role),
                    )
                try:
                    deployment = self.deployments.create_deployment(
                        user_id=user_id,
                        name=request.name or default_name(request),
                        subdomain=subdomain,
                        roles=states,
                        env_vars=request.env_vars,
                    )
                except SubdomainTaken:
                    logger.warning(f"Subdomain {subdomain} was taken at insert time, regenerating")
                    continue
                finally:
                    self.subdomains.release(subdomain)
                logger.info(f"Prepared deployment {deployment.id} ({subdomain}) for user {user_id}")
                return deployment
        except Exception:
            for port in allocated.values():
                self.ports.release(port)
            raise
        for port in allocated.values():
            self.ports.release(port)
        raise SubdomainExhausted("Could not persist a deployment with a unique subdomain")

    def deploy(self, user_id: str, request: DeploymentCreate) -> DeployOutcome:
        deployment = self.prepare(user_id, request)
        return self.run(deployment.id)

    def run(self, deployment_id: str, roles: Optional[Iterable[Role]] = None) -> DeployOutcome:
        """Deploy each role of a prepared deployment. With `roles`, only those are (re)run."""
        deployment = self.deployments.get_deployment_by_id(deployment_id)
        selected = set(roles) if roles is not None else None
        log = DeploymentLogger(self.logs, deployment_id)
        try:
            if selected is None:
                log.info(f"Starting deployment {deployment.name} on {deployment.subdomain}")
            results: List[RoleResult] = []
            for role in deployment.roles():
                state = deployment.role(role)
                if selected is not None and role not in selected:
                    results.append(RoleResult(role=role, success=state.status == "deployed", error=state.error))
                    continue
                if state.status == "failed":
                    log.error(f"[{role.value}] {state.error or 'Role could not be prepared'}")
                    results.append(RoleResult(role=role, success=False, error=state.error))
                    continue
                results.append(self._deploy_role(deployment, role, log))
            return self._finish(deployment_id, results, log)
        finally:
            log.close()

    def _save_role(self, deployment_id: str, role: Role, state: RoleState):
        try:
            self.deployments.update_role(deployment_id, role, state)
        except HTTPException as e:
            logger.error(f"Could not persist {role.value} state of deployment {deployment_id}: {e.detail}")

    def _deploy_role(self, deployment: DeploymentResponse, role: Role, log: DeploymentLogger) -> RoleResult:
        state = deployment.role(role).model_copy()
        warnings: List[str] = []
        tag = f"[{role.value}]"
        started = False
        try:
            if state.allocated_port is None:
                state.allocated_port = self.ports.find_free_port()
                self._save_role(deployment.id, role, state)

            log.info(f"{tag} Building {state.repo} on port {state.allocated_port}")
            outcome = self.build_client.build_and_start(BuildRequest(
                repo_url=state.repo,
                port=state.allocated_port,
                domain=state.domain,
                process_name=state.process_name,
                env_vars=deployment.env_vars,
            ))
            if isinstance(outcome, BuildFailure):
                raise BuildRpcFailure(outcome.error)
            started = True
            log.info(f"{tag} Build tool finished: {outcome.message}")

            if self.settle_delay:
                time.sleep(self.settle_delay)

            process = self.supervisor.get(state.process_name)
            if process is None or not process.online:
                reported = process.status if process else "missing"
                tail = self.supervisor.tail_logs(state.process_name, _SUPERVISOR_TAIL_LINES)
                raise DeploymentError(
                    f"Process {state.process_name} is {reported} after build"
                    + (f"\n{tail.strip()}" if tail.strip() else "")
                )
            log.info(f"{tag} Process {state.process_name} is online (pid {process.pid})")

            detection = self.ports.detect_actual_port(state.process_name, state.allocated_port)
            if not detection.confirmed:
                message = f"{tag} Port not confirmed, assuming allocated port {state.allocated_port}"
                warnings.append(message)
                log.warning(message)
            elif detection.changed:
                message = (
                    f"{tag} Port mismatch: allocated {state.allocated_port}, "
                    f"application listens on {detection.port} (via {detection.method})"
                )
                warnings.append(message)
                log.warning(message)
                self.ports.release(state.allocated_port)
            state.actual_port = detection.port
            state.port_confirmed = detection.confirmed
            self._save_role(deployment.id, role, state)

            if not self.ports.verify(detection.port):
                message = str(VerificationInconclusive(
                    f"{tag} Nothing answered on port {detection.port} yet; continuing"
                ))
                warnings.append(message)
                log.warning(message)

            proxy = self.proxy.create_subdomain_config(deployment.subdomain, detection.port, role)
            if self.proxy.enable_ssl and not proxy.https:
                message = f"{tag} TLS certificate unavailable, serving {proxy.domain} over HTTP"
                warnings.append(message)
                log.warning(message)
            state.domain = proxy.domain
            state.url = proxy.url
            state.https = proxy.https
            state.proxy_configured = True
            state.status = "deployed"
            state.error = None
            self._save_role(deployment.id, role, state)
            log.success(f"{tag} Live at {proxy.url}")
            return RoleResult(role=role, success=True, warnings=warnings)
        except DeploymentError as e:
            error = str(e)
        except Exception as e:
            logger.exception(f"Unexpected error deploying {role.value} of {deployment.id}")
            error = str(e) or e.__class__.__name__
        if not started and state.allocated_port is not None:
            # Nothing was launched; a retry allocates a fresh port
            self.ports.release(state.allocated_port)
            state.allocated_port = None
        state.status = "failed"
        state.error = error
        self._save_role(deployment.id, role, state)
        log.error(f"{tag} {error}")
        return RoleResult(role=role, success=False, error=error, warnings=warnings)

    def _finish(self, deployment_id: str, results: List[RoleResult], log: DeploymentLogger) -> DeployOutcome:
        success = bool(results) and all(r.success for r in results)
        failures = "; ".join(f"{r.role.value}: {r.error}" for r in results if not r.success)
        status = DeploymentStatus.DEPLOYED if success else DeploymentStatus.FAILED
        deployment = self.deployments.update_deployment_status(
            deployment_id, status, error_message=failures or None
        )
        if success:
            urls = ", ".join(s.url for s in (deployment.role(r) for r in deployment.roles()) if s and s.url)
            log.success(f"Deployment complete: {urls}")
        else:
            log.error(f"Deployment failed: {failures or 'no roles requested'}")
        return DeployOutcome(success=success, deployment=deployment, roles=results)

    def prepare_retry(self, deployment_id: str, role: Role) -> DeploymentResponse:
        """Validate and reset one failed role, moving the deployment back to deploying."""
        deployment = self.deployments.get_deployment_by_id(deployment_id)
        state = deployment.role(role)
        if state is None:
            raise HTTPException(status_code=404, detail=f"Deployment has no {role.value} role")
        if deployment.status != DeploymentStatus.FAILED:
            raise HTTPException(status_code=400, detail="Only failed deployments can be retried")
        if state.status == "deployed":
            raise HTTPException(status_code=400, detail=f"The {role.value} role is already deployed")
        if deployment.suspended:
            raise HTTPException(status_code=403, detail="Deployment is suspended")
        # A failed deployment holds no quota; going back to deploying claims all of its roles again
        self.subscriptions.check_quota(deployment.user_id, deployment.roles())
        state = state.model_copy(update={"status": "pending", "error": None})
        self.deployments.update_role(deployment_id, role, state)
        return self.deployments.update_deployment_status(deployment_id, DeploymentStatus.DEPLOYING)

    def retry_role(self, deployment_id: str, role: Role) -> DeployOutcome:
        self.prepare_retry(deployment_id, role)
        return self.run(deployment_id, roles=[role])

    # --------------------------------------------------------------- lifecycle

    def _per_role(
        self,
        deployment: DeploymentResponse,
        action: Callable[[str], bool],
        verb: str,
    ) -> List[StepResult]:
        results = []
        for role in deployment.roles():
            name = deployment.role(role).process_name
            if not name:
                results.append(StepResult(target=role.value, success=False, error="Process was never created"))
                continue
            try:
                ok = action(name)
                error = None if ok else f"Failed to {verb} {name}"
            except DeploymentError as e:
                ok, error = False, str(e)
            results.append(StepResult(target=role.value, success=ok, error=error))
        return results

    def stop(self, deployment_id: str) -> OperationResult:
        """Stop every role. Status becomes stopped only if every role stopped."""
        deployment = self.deployments.get_deployment_by_id(deployment_id)
        if deployment.status not in (DeploymentStatus.DEPLOYED, DeploymentStatus.STOPPED):
            raise HTTPException(status_code=400, detail=f"Cannot stop a deployment that is {deployment.status.value}")
        results = self._per_role(deployment, self.supervisor.stop, "stop")
        success = bool(results) and all(r.success for r in results)
        if success:
            self.deployments.update_deployment_status(deployment_id, DeploymentStatus.STOPPED)
            logger.info(f"Deployment {deployment_id} stopped")
        else:
            logger.warning(f"Deployment {deployment_id} not fully stopped, status left as {deployment.status.value}")
        return OperationResult(deployment_id=deployment_id, success=success, results=results)

    def restart(self, deployment_id: str) -> OperationResult:
        """Restart every role. Status becomes deployed only if every role restarted."""
        deployment = self.deployments.get_deployment_by_id(deployment_id)
        if deployment.suspended:
            raise HTTPException(status_code=403, detail="Deployment is suspended. Renew your subscription to restart it.")
        if deployment.status not in (DeploymentStatus.DEPLOYED, DeploymentStatus.STOPPED):
            raise HTTPException(status_code=400, detail=f"Cannot restart a deployment that is {deployment.status.value}")
        results = self._per_role(deployment, self.supervisor.restart, "restart")
        success = bool(results) and all(r.success for r in results)
        if success:
            self.deployments.update_deployment_status(deployment_id, DeploymentStatus.DEPLOYED)
            logger.info(f"Deployment {deployment_id} restarted")
        else:
            logger.warning(f"Deployment {deployment_id} not fully restarted, status left as {deployment.status.value}")
        return OperationResult(deployment_id=deployment_id, success=success, results=results)

    def _attempt(self, target: str, action: Callable[[], bool]) -> StepResult:
        try:
            ok = bool(action())
            return StepResult(target=target, success=ok, error=None if ok else f"{target} cleanup failed")
        except Exception as e:
            logger.error(f"Cleanup step {target} raised: {e}")
            return StepResult(target=target, success=False, error=str(e))

    def delete(self, deployment_id: str) -> OperationResult:
        """Remove processes, directories, proxy configs, logs and the record. Every step is attempted."""
        deployment = self.deployments.get_deployment_by_id(deployment_id)
        if deployment.status == DeploymentStatus.DEPLOYING:
            raise HTTPException(
                status_code=409,
                detail="Deployment is still in progress. Delete it once it has finished.",
            )
        results: List[StepResult] = []
        for role in deployment.roles():
            state = deployment.role(role)
            if state.process_name:
                results.append(self._attempt(
                    f"{role.value}:process", lambda name=state.process_name: self.supervisor.delete(name)
                ))
            if state.proxy_configured:
                results.append(self._attempt(
                    f"{role.value}:proxy",
                    lambda r=role: self.proxy.delete_subdomain_config(deployment.subdomain, r),
                ))
            self.ports.release(state.allocated_port)
            self.ports.release(state.actual_port)
        results.append(self._attempt("logs", lambda: self.logs.delete_by_deployment(deployment_id)))
        results.append(self._attempt("record", lambda: self.deployments.delete_deployment(deployment_id)))
        log_stream.close(deployment_id)

        success = all(r.success for r in results)
        if success:
            logger.info(f"Deployment {deployment_id} ({deployment.subdomain}) deleted")
        else:
            failed = ", ".join(r.target for r in results if not r.success)
            logger.error(f"Deployment {deployment_id} deleted with partial failures: {failed}")
        return OperationResult(deployment_id=deployment_id, success=success, results=results)

    # ------------------------------------------------------------------- query

    def get_status(self, deployment_id: str) -> DeploymentStatusResponse:
        deployment = self.deployments.get_deployment_by_id(deployment_id)
        roles = {}
        for role in deployment.roles():
            state = deployment.role(role)
            runtime = RoleRuntimeStatus(
                process_name=state.process_name,
                port=state.actual_port or state.allocated_port,
                url=state.url,
            )
            if state.process_name:
                try:
                    process = self.supervisor.get(state.process_name)
                except DeploymentError as e:
                    runtime.status = "unknown"
                    runtime.error = str(e)
                    process = None
                if process is not None:
                    runtime.running = process.online
                    runtime.status = process.status
                    runtime.pid = process.pid
                    runtime.uptime = process.uptime
                    runtime.restarts = process.restarts
                    runtime.memory = process.memory
                    runtime.cpu = process.cpu
            roles[role.value] = runtime
        return DeploymentStatusResponse(deployment=deployment, roles=roles)

    def get_process_logs(self, deployment_id: str, role: Role, lines: int = 100) -> ProcessLogsResponse:
        deployment = self.deployments.get_deployment_by_id(deployment_id)
        state = deployment.role(role)
        if state is None or not state.process_name:
            raise HTTPException(status_code=404, detail=f"Deployment has no {role.value} process")
        return ProcessLogsResponse(
            deployment_id=deployment_id,
            role=role,
            logs=self.supervisor.tail_logs(state.process_name, lines),
        )

    def rebuild_port_leases(self) -> int:
        """Re-seed the lease index from persisted deployments, e.g. after a restart."""
        ports = set()
        for deployment in self.deployments.list_all_deployments():
            for role in deployment.roles():
                state = deployment.role(role)
                ports.add(state.actual_port or state.allocated_port)
        ports.discard(None)
        self.ports.rebuild_leases(ports)
        return len(ports)


_components = {}
_components_lock = threading.Lock()


def get_orchestrator(supabase: Optional[Client] = None) -> DeploymentOrchestrator:
    """Orchestrator on the service-role client, sharing one channel and one lease index per process."""
    from app.database.supabase_client import SupabaseClient

    with _components_lock:
        if not _components:
            channel = get_channel()
            supervisor = PM2Supervisor(channel)
            _components["channel"] = channel
            _components["supervisor"] = supervisor
            _components["ports"] = PortManager(channel, supervisor)
            _components["proxy"] = NginxProvisioner(channel)
    return DeploymentOrchestrator(
        supabase or SupabaseClient.get_service_client(),
        channel=_components["channel"],
        supervisor=_components["supervisor"],
        ports=_components["ports"],
        proxy=_components["proxy"],
    )
