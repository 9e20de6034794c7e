import pytest
from fastapi import HTTPException

from app.modules.deployments import log_stream
from app.modules.deployments.errors import QuotaExceeded
from app.modules.deployments.schemas import DeploymentCreate, DeploymentStatus, LogSeverity, Role
from tests.conftest import add_grant

USER = "user-1"


def _frontend_only(**kwargs):
    return DeploymentCreate(frontend_repo="https://github.com/acme/shop", **kwargs)


def _full_stack():
    return DeploymentCreate(
        name="shop",
        frontend_repo="https://github.com/acme/shop-web",
        backend_repo="https://github.com/acme/shop-api",
        env_vars={"NODE_ENV": "production"},
    )


def _logs(orchestrator, deployment_id):
    return orchestrator.logs.list_logs(deployment_id)


def test_quota_exceeded_is_rejected_before_any_port_allocation(orchestrator, supabase, channel):
    add_grant(supabase, USER, max_frontend=1, max_backend=1)
    orchestrator.deploy(USER, _frontend_only())
    commands_before = len(channel.commands)
    leases_before = orchestrator.ports.leased_ports()

    with pytest.raises(QuotaExceeded) as exc:
        orchestrator.prepare(USER, _frontend_only())

    assert exc.value.role == "frontend"
    assert exc.value.limits == {"max_frontend": 1, "max_backend": 1}
    assert len(channel.commands) == commands_before
    assert orchestrator.ports.leased_ports() == leases_before
    assert len(supabase.rows("deployments")) == 1


def test_user_without_grant_cannot_deploy(orchestrator, channel):
    with pytest.raises(QuotaExceeded):
        orchestrator.prepare(USER, _frontend_only())

    assert channel.commands == []


def test_identifiers_are_persisted_before_the_build_call(orchestrator, supabase, build_client):
    add_grant(supabase, USER)

    deployment = orchestrator.prepare(USER, _full_stack())

    assert build_client.requests == []
    stored = supabase.row("deployments", deployment.id)
    assert stored["status"] == "deploying"
    assert stored["billing_status"] == "active"
    assert stored["frontend"]["process_name"] == f"user{USER}_{deployment.subdomain}_frontend"
    assert stored["backend"]["domain"] == f"{deployment.subdomain}-api.example.test"
    assert stored["frontend"]["allocated_port"] != stored["backend"]["allocated_port"]


def test_port_mismatch_is_followed_and_logged(orchestrator, supabase, channel, build_client):
    add_grant(supabase, USER)
    build_client.listen_on["frontend"] = 5173

    outcome = orchestrator.deploy(USER, _frontend_only())

    assert outcome.success
    frontend = outcome.deployment.frontend
    assert frontend.allocated_port == 4000
    assert frontend.actual_port == 5173
    assert frontend.port_confirmed
    assert frontend.url == f"http://{outcome.deployment.subdomain}.example.test"
    assert outcome.deployment.status == DeploymentStatus.DEPLOYED
    config = channel.written_files()[f"/etc/nginx/sites-available/{outcome.deployment.subdomain}.example.test"]
    assert "proxy_pass http://127.0.0.1:5173;" in config
    warnings = [e for e in _logs(orchestrator, outcome.deployment.id) if e.severity == LogSeverity.WARNING]
    assert any("allocated 4000" in e.message and "5173" in e.message for e in warnings)


def test_unconfirmed_port_still_succeeds_with_a_note(orchestrator, supabase, host, build_client):
    add_grant(supabase, USER)
    build_client.listen_on["frontend"] = None  # process is online but never binds a visible socket

    outcome = orchestrator.deploy(USER, _frontend_only())

    assert outcome.success
    assert outcome.deployment.frontend.port_confirmed is False
    assert outcome.deployment.frontend.actual_port == 4000
    role_result = outcome.roles[0]
    assert any("not confirmed" in w for w in role_result.warnings)


def test_full_stack_success_logs_in_order(orchestrator, supabase):
    add_grant(supabase, USER)

    outcome = orchestrator.deploy(USER, _full_stack())

    assert outcome.success
    assert [r.role for r in outcome.roles] == [Role.FRONTEND, Role.BACKEND]
    entries = _logs(orchestrator, outcome.deployment.id)
    assert [e.sequence for e in entries] == list(range(1, len(entries) + 1))
    assert entries[-1].severity == LogSeverity.SUCCESS
    assert entries[-1].message.startswith("Deployment complete")
    assert outcome.deployment.backend.url == f"http://{outcome.deployment.subdomain}-api.example.test"


def test_build_failure_fails_only_that_role(orchestrator, supabase, build_client):
    add_grant(supabase, USER)
    build_client.failures["backend"] = "npm ERR! missing script: start"

    outcome = orchestrator.deploy(USER, _full_stack())

    assert not outcome.success
    assert outcome.deployment.status == DeploymentStatus.FAILED
    assert outcome.deployment.frontend.status == "deployed"
    assert outcome.deployment.frontend.proxy_configured
    assert outcome.deployment.backend.status == "failed"
    assert "missing script" in outcome.deployment.backend.error
    assert "backend" in outcome.deployment.error_message
    assert _logs(orchestrator, outcome.deployment.id)[-1].severity == LogSeverity.ERROR


def test_offline_process_fails_with_supervisor_output(orchestrator, supabase, host, build_client):
    add_grant(supabase, USER)
    build_client.start_status = "errored"

    deployment = orchestrator.prepare(USER, _frontend_only())
    host.process_logs[deployment.frontend.process_name] = "Error: Cannot find module 'express'"
    outcome = orchestrator.run(deployment.id)

    assert not outcome.success
    assert "errored" in outcome.deployment.frontend.error
    assert "Cannot find module" in outcome.deployment.frontend.error


def test_proxy_failure_fails_the_role(orchestrator, supabase, channel):
    add_grant(supabase, USER)
    channel.on(r"^nginx -t$", code=1, stderr="duplicate listen options")

    outcome = orchestrator.deploy(USER, _frontend_only())

    assert not outcome.success
    assert outcome.deployment.frontend.proxy_configured is False
    assert "nginx configuration test failed" in outcome.deployment.frontend.error


def test_retry_reruns_only_the_failed_role(orchestrator, supabase, build_client):
    add_grant(supabase, USER)
    build_client.failures["backend"] = "transient clone failure"
    first = orchestrator.deploy(USER, _full_stack())
    assert not first.success
    build_client.failures.clear()
    build_client.requests.clear()

    outcome = orchestrator.retry_role(first.deployment.id, Role.BACKEND)

    assert outcome.success
    assert [r.process_name for r in build_client.requests] == [first.deployment.backend.process_name]
    assert outcome.deployment.status == DeploymentStatus.DEPLOYED
    assert outcome.deployment.backend.status == "deployed"


def test_retry_requires_a_failed_deployment(orchestrator, supabase):
    add_grant(supabase, USER)
    outcome = orchestrator.deploy(USER, _frontend_only())

    with pytest.raises(HTTPException) as exc:
        orchestrator.retry_role(outcome.deployment.id, Role.FRONTEND)

    assert exc.value.status_code == 400


def test_stop_is_all_or_nothing(orchestrator, supabase, channel):
    add_grant(supabase, USER)
    deployment = orchestrator.deploy(USER, _full_stack()).deployment
    channel.on(rf"^pm2 stop {deployment.backend.process_name}$", code=1, stderr="boom")

    result = orchestrator.stop(deployment.id)

    assert not result.success
    assert {r.target: r.success for r in result.results} == {"frontend": True, "backend": False}
    assert orchestrator.deployments.get_deployment_by_id(deployment.id).status == DeploymentStatus.DEPLOYED


def test_stop_then_restart_round_trip(orchestrator, supabase):
    add_grant(supabase, USER)
    deployment = orchestrator.deploy(USER, _full_stack()).deployment

    assert orchestrator.stop(deployment.id).success
    assert orchestrator.deployments.get_deployment_by_id(deployment.id).status == DeploymentStatus.STOPPED

    assert orchestrator.restart(deployment.id).success
    assert orchestrator.deployments.get_deployment_by_id(deployment.id).status == DeploymentStatus.DEPLOYED


def test_restart_failure_leaves_status_unchanged(orchestrator, supabase, channel):
    add_grant(supabase, USER)
    deployment = orchestrator.deploy(USER, _frontend_only()).deployment
    orchestrator.stop(deployment.id)
    channel.on(r"^pm2 restart ", code=1, stderr="process not found")

    result = orchestrator.restart(deployment.id)

    assert not result.success
    assert orchestrator.deployments.get_deployment_by_id(deployment.id).status == DeploymentStatus.STOPPED


def test_delete_attempts_every_step_and_reports_partial_failure(orchestrator, supabase, channel):
    add_grant(supabase, USER)
    deployment = orchestrator.deploy(USER, _full_stack()).deployment
    channel.on(rf"^pm2 delete {deployment.frontend.process_name}$", code=1, stderr="pm2 daemon busy")

    result = orchestrator.delete(deployment.id)

    assert not result.success
    steps = {r.target: r.success for r in result.results}
    assert steps == {
        "frontend:process": False,
        "frontend:proxy": True,
        "backend:process": True,
        "backend:proxy": True,
        "logs": True,
        "record": True,
    }
    assert supabase.rows("deployments") == []
    assert supabase.rows("deployment_logs") == []
    assert orchestrator.ports.leased_ports() == set()


def test_get_status_merges_runtime_state(orchestrator, supabase, host):
    add_grant(supabase, USER)
    deployment = orchestrator.deploy(USER, _frontend_only()).deployment

    status = orchestrator.get_status(deployment.id)

    runtime = status.roles["frontend"]
    assert runtime.running
    assert runtime.status == "online"
    assert runtime.port == 4000
    assert runtime.url == deployment.frontend.url


def test_process_logs_come_from_the_supervisor(orchestrator, supabase, host):
    add_grant(supabase, USER)
    deployment = orchestrator.deploy(USER, _frontend_only()).deployment
    host.process_logs[deployment.frontend.process_name] = "GET / 200"

    logs = orchestrator.get_process_logs(deployment.id, Role.FRONTEND, 20)

    assert logs.logs == "GET / 200"
    with pytest.raises(HTTPException):
        orchestrator.get_process_logs(deployment.id, Role.BACKEND, 20)


def test_live_subscribers_receive_entries_and_close(orchestrator, supabase):
    add_grant(supabase, USER)
    deployment = orchestrator.prepare(USER, _frontend_only())
    subscription = log_stream.subscribe(deployment.id)

    orchestrator.run(deployment.id)

    received = []
    while True:
        item = subscription.get_nowait()
        if item is log_stream.CLOSED:
            break
        received.append(item)
    assert [i["sequence"] for i in received] == list(range(1, len(received) + 1))
    assert received[-1]["message"].startswith("Deployment complete")
    assert log_stream.subscriber_count(deployment.id) == 0


def test_rebuild_port_leases_from_records(orchestrator, supabase, build_client):
    add_grant(supabase, USER)
    build_client.listen_on["frontend"] = 5173
    orchestrator.deploy(USER, _full_stack())
    orchestrator.ports.rebuild_leases([])

    assert orchestrator.rebuild_port_leases() == 2
    assert 5173 in orchestrator.ports.leased_ports()


def test_retry_is_rejected_when_the_plan_is_full(orchestrator, supabase, build_client):
    add_grant(supabase, USER, max_frontend=1, max_backend=1)
    build_client.failures["frontend"] = "registry timeout"
    failed = orchestrator.deploy(USER, _frontend_only()).deployment
    build_client.failures.clear()
    assert orchestrator.deploy(USER, _frontend_only()).success
    build_client.requests.clear()

    with pytest.raises(QuotaExceeded) as exc:
        orchestrator.retry_role(failed.id, Role.FRONTEND)

    assert exc.value.role == "frontend"
    assert build_client.requests == []
    stored = orchestrator.deployments.get_deployment_by_id(failed.id)
    assert stored.status == DeploymentStatus.FAILED
    assert stored.frontend.status == "failed"


def test_delete_is_refused_while_deploying(orchestrator, supabase):
    add_grant(supabase, USER)
    deployment = orchestrator.prepare(USER, _frontend_only())

    with pytest.raises(HTTPException) as exc:
        orchestrator.delete(deployment.id)

    assert exc.value.status_code == 409
    assert supabase.row("deployments", deployment.id)["status"] == "deploying"
    assert deployment.frontend.allocated_port in orchestrator.ports.leased_ports()


def test_build_failure_releases_the_unused_port_lease(orchestrator, supabase, build_client):
    add_grant(supabase, USER)
    build_client.failures["backend"] = "git clone failed"

    outcome = orchestrator.deploy(USER, _full_stack())

    assert not outcome.success
    assert outcome.deployment.backend.allocated_port is None
    assert orchestrator.ports.leased_ports() == {outcome.deployment.frontend.actual_port}
