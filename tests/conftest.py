import base64
import copy
import json
import re
import shlex
import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from app.config import settings
from app.modules.deployments import log_service as log_service_module
from app.modules.deployments.build_client import BuildClient, BuildFailure, BuildSuccess
from app.modules.deployments.nginx_provisioner import NginxProvisioner
from app.modules.deployments.orchestrator import DeploymentOrchestrator
from app.modules.deployments.pm2_supervisor import PM2Supervisor
from app.modules.deployments.port_manager import PortManager
from app.modules.deployments.ssh_channel import CommandResult, SSHChannel
from app.modules.deployments.subdomain_generator import SubdomainGenerator


# --------------------------------------------------------------------------- Supabase


class FakeAPIError(Exception):
    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


class FakeResponse:
    def __init__(self, data):
        self.data = data


def _sort_key(value):
    return (value is None, value if value is not None else 0)


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self.op = "select"
        self.payload = None
        self.filters = []
        self.orders = []
        self._limit = None
        self._offset = 0
        self._single = False
        self._maybe_single = False

    def select(self, *_columns):
        self.op = "select"
        return self

    def insert(self, payload):
        self.op = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.op = "update"
        self.payload = payload
        return self

    def delete(self):
        self.op = "delete"
        return self

    def _filter(self, fn):
        self.filters.append(fn)
        return self

    def eq(self, column, value):
        return self._filter(lambda row: row.get(column) == value)

    def neq(self, column, value):
        return self._filter(lambda row: row.get(column) != value)

    def gt(self, column, value):
        return self._filter(lambda row: row.get(column) is not None and row.get(column) > value)

    def gte(self, column, value):
        return self._filter(lambda row: row.get(column) is not None and row.get(column) >= value)

    def lt(self, column, value):
        return self._filter(lambda row: row.get(column) is not None and row.get(column) < value)

    def lte(self, column, value):
        return self._filter(lambda row: row.get(column) is not None and row.get(column) <= value)

    def in_(self, column, values):
        values = list(values)
        return self._filter(lambda row: row.get(column) in values)

    def is_(self, column, value):
        expected = None if value in (None, "null") else value
        return self._filter(lambda row: row.get(column) is expected)

    def order(self, column, desc=False):
        self.orders.append((column, desc))
        return self

    def limit(self, count):
        self._limit = count
        return self

    def offset(self, count):
        self._offset = count
        return self

    def single(self):
        self._single = True
        return self

    def maybe_single(self):
        self._maybe_single = True
        return self

    def _matching(self, rows):
        return [row for row in rows if all(f(row) for f in self.filters)]

    def execute(self):
        with self.db.lock:
            rows = self.db.tables.setdefault(self.table_name, [])
            if self.op == "insert":
                return FakeResponse(self.db.insert(self.table_name, self.payload))
            if self.op == "update":
                updated = []
                for row in self._matching(rows):
                    row.update(copy.deepcopy(self.payload))
                    updated.append(copy.deepcopy(row))
                return FakeResponse(updated)
            if self.op == "delete":
                doomed = self._matching(rows)
                self.db.tables[self.table_name] = [r for r in rows if r not in doomed]
                return FakeResponse(copy.deepcopy(doomed))

            result = self._matching(rows)
            for column, desc in reversed(self.orders):
                result = sorted(result, key=lambda r: _sort_key(r.get(column)), reverse=desc)
            result = result[self._offset:]
            if self._limit is not None:
                result = result[:self._limit]
            result = copy.deepcopy(result)
            if self._single:
                if len(result) != 1:
                    raise FakeAPIError("JSON object requested, multiple (or no) rows returned", "PGRST116")
                return FakeResponse(result[0])
            if self._maybe_single:
                return FakeResponse(result[0] if result else None)
            return FakeResponse(result)


class FakeAuth:
    def __init__(self):
        self.users = {}

    def get_user(self, jwt=None):
        user = self.users.get(jwt)
        if user is None:
            raise FakeAPIError("invalid JWT", "401")
        return type("UserResponse", (), {"user": user})()


class FakeSupabase:
    """In-memory stand-in for the supabase Client query builder."""

    UNIQUE = {"deployments": ("subdomain",), "deployment_logs": ("deployment_id", "sequence")}

    def __init__(self):
        self.tables = {}
        self.lock = threading.RLock()
        self.auth = FakeAuth()
        self._clock = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def _next_timestamp(self) -> str:
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def insert(self, table: str, payload):
        rows = payload if isinstance(payload, list) else [payload]
        existing = self.tables.setdefault(table, [])
        inserted = []
        for row in rows:
            row = copy.deepcopy(row)
            row.setdefault("id", str(uuid.uuid4()))
            row.setdefault("created_at", self._next_timestamp())
            unique = self.UNIQUE.get(table)
            if unique and any(all(r.get(c) == row.get(c) for c in unique) for r in existing):
                raise FakeAPIError(
                    f'duplicate key value violates unique constraint "{table}_{"_".join(unique)}_key"',
                    "23505",
                )
            existing.append(row)
            inserted.append(copy.deepcopy(row))
        return inserted

    def rows(self, table: str):
        with self.lock:
            return copy.deepcopy(self.tables.get(table, []))

    def row(self, table: str, row_id: str):
        for row in self.rows(table):
            if row["id"] == row_id:
                return row
        return None


@pytest.fixture()
def supabase():
    return FakeSupabase()


@pytest.fixture(autouse=True)
def reset_log_sequences():
    with log_service_module._sequence_lock:
        log_service_module._sequences.clear()
    yield
    with log_service_module._sequence_lock:
        log_service_module._sequences.clear()


# --------------------------------------------------------------------------- remote host


class FakeChannel(SSHChannel):
    """Scripted remote host. The most recently registered matching handler answers."""

    def __init__(self):
        super().__init__(host="test-host")
        self.commands = []
        self.handlers = []

    def on(self, pattern: str, stdout: str = "", code: int = 0, stderr: str = ""):
        return self.on_call(pattern, lambda _cmd: CommandResult(command=_cmd, code=code, stdout=stdout, stderr=stderr))

    def on_call(self, pattern: str, fn):
        self.handlers.append((re.compile(pattern), fn))
        return self

    def connect(self) -> bool:
        return True

    def disconnect(self):
        pass

    def execute(self, command: str, cwd=None) -> CommandResult:
        self.commands.append(command)
        for pattern, fn in reversed(self.handlers):
            if pattern.search(command):
                result = fn(command)
                if isinstance(result, CommandResult):
                    return result
                code, stdout, stderr = result
                return CommandResult(command=command, code=code, stdout=stdout, stderr=stderr)
        return CommandResult(command=command, code=0)

    def ran(self, pattern: str):
        regex = re.compile(pattern)
        return [c for c in self.commands if regex.search(c)]

    def written_files(self):
        files = {}
        for command in self.commands:
            if not command.startswith("printf %s "):
                continue
            parts = shlex.split(command)
            # printf %s <b64> | base64 -d > <path>
            files[parts[-1]] = base64.b64decode(parts[2]).decode("utf-8")
        return files


def pm2_process(name, status="online", pid=4242, port=None, cwd=None):
    env = {"PORT": str(port)} if port is not None else {}
    return {
        "name": name,
        "pid": pid if status == "online" else 0,
        "monit": {"memory": 52428800, "cpu": 1.5},
        "pm2_env": {
            "status": status,
            "pm_uptime": 1760000000000,
            "restart_time": 0,
            "pm_cwd": cwd or f"/root/apps/{name}",
            "env": env,
        },
    }


class FakeHost:
    """pm2 state plus listening sockets, wired into a FakeChannel."""

    def __init__(self, channel: FakeChannel):
        self.channel = channel
        self.processes = {}
        self.listening = {}  # port -> pid
        self.process_logs = {}
        channel.on_call(r"^pm2 jlist$", lambda cmd: (0, json.dumps(list(self.processes.values())), ""))
        channel.on_call(r"^ss -ltnH$", self._ss_all)
        channel.on_call(r"^ss -ltnH '\( sport = :\d+ \)'$", self._ss_port)
        channel.on_call(r"^ss -ltnpH$", self._ss_with_pids)
        channel.on_call(r"^lsof -Pan -p \d+ -i$", self._lsof)
        channel.on_call(r"^pm2 logs ", self._pm2_logs)

    def start(self, name, port=None, status="online", pid=None, env_port=None):
        pid = pid or 1000 + len(self.processes)
        self.processes[name] = pm2_process(name, status=status, pid=pid, port=env_port)
        if port is not None and status == "online":
            self.listening[port] = pid
        return pid

    def _ss_all(self, _cmd):
        lines = [f"LISTEN 0 511 0.0.0.0:{port} 0.0.0.0:*" for port in sorted(self.listening)]
        return 0, "\n".join(lines), ""

    def _ss_port(self, cmd):
        port = int(re.search(r":(\d+) \)", cmd).group(1))
        if port in self.listening:
            return 0, f"LISTEN 0 511 0.0.0.0:{port} 0.0.0.0:*", ""
        return 0, "", ""

    def _ss_with_pids(self, _cmd):
        lines = [
            f'LISTEN 0 511 0.0.0.0:{port} 0.0.0.0:* users:(("node",pid={pid},fd=20))'
            for port, pid in sorted(self.listening.items())
        ]
        return 0, "\n".join(lines), ""

    def _lsof(self, cmd):
        pid = int(re.search(r"-p (\d+)", cmd).group(1))
        lines = [
            f"node {pid} root 20u IPv4 123 0t0 TCP *:{port} (LISTEN)"
            for port, owner in sorted(self.listening.items()) if owner == pid
        ]
        return (0, "\n".join(lines), "") if lines else (1, "", "")

    def _pm2_logs(self, cmd):
        name = shlex.split(cmd)[2]
        return 0, self.process_logs.get(name, ""), ""


@pytest.fixture()
def channel():
    return FakeChannel()


@pytest.fixture()
def host(channel):
    return FakeHost(channel)


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr("app.modules.deployments.port_manager.time.sleep", lambda _s: None)
    monkeypatch.setattr("app.modules.deployments.orchestrator.time.sleep", lambda _s: None)


@pytest.fixture()
def test_settings(monkeypatch):
    monkeypatch.setattr(settings, "port_range_min", 4000)
    monkeypatch.setattr(settings, "port_range_max", 4010)
    monkeypatch.setattr(settings, "base_domain", "example.test")
    monkeypatch.setattr(settings, "enable_ssl", False)
    return settings


# --------------------------------------------------------------------------- build tool


class FakeBuildClient(BuildClient):
    """Starts the requested process on the FakeHost, optionally on a different port than asked."""

    def __init__(self, host: FakeHost):
        self.host = host
        self.requests = []
        self.listen_on = {}  # process suffix (role) -> port the app really binds
        self.failures = {}  # process suffix (role) -> error
        self.start_status = "online"

    def build_and_start(self, request):
        self.requests.append(request)
        role = request.process_name.rsplit("_", 1)[-1]
        if role in self.failures:
            return BuildFailure(error=self.failures[role])
        port = self.listen_on.get(role, request.port)
        self.host.start(request.process_name, port=port, status=self.start_status)
        return BuildSuccess(message=f"Started {request.process_name}", port_hint=request.port)


@pytest.fixture()
def build_client(host):
    return FakeBuildClient(host)


@pytest.fixture()
def orchestrator(supabase, channel, host, build_client, test_settings):
    supervisor = PM2Supervisor(channel)
    return DeploymentOrchestrator(
        supabase,
        channel=channel,
        supervisor=supervisor,
        ports=PortManager(channel, supervisor),
        proxy=NginxProvisioner(channel, base_domain="example.test", enable_ssl=False),
        build_client=build_client,
        subdomains=SubdomainGenerator(),
        settle_delay=0,
    )


def add_grant(supabase, user_id, max_frontend=1, max_backend=1, status="active", ends_in_days=30, now=None, **extra):
    now = now or datetime.now(timezone.utc)
    row = {
        "user_id": user_id,
        "plan_id": extra.pop("plan_id", "plan_basic"),
        "plan_name": extra.pop("plan_name", "Basic"),
        "status": status,
        "current_start": (now - timedelta(days=1)).isoformat(),
        "current_end": (now + timedelta(days=ends_in_days)).isoformat(),
        "limits": {"max_frontend": max_frontend, "max_backend": max_backend, "features": []},
    }
    row.update(extra)
    return supabase.insert("subscriptions", row)[0]


def add_profile(supabase, user_id, subscription_status="active", current_plan="Basic"):
    return supabase.insert("user_profiles", {
        "id": user_id,
        "email": f"{user_id}@example.test",
        "subscription_status": subscription_status,
        "current_plan": current_plan,
    })[0]
