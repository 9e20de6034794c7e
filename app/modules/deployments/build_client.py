"""Client for the opaque build/start tool that lives on the managed host.

The tool inspects a repository, builds it and starts it under pm2. We only
know its calling convention, so the boundary is a small typed interface and
the remote invocation is one implementation of it.
"""
import base64
import json
import logging
from abc import ABC, abstractmethod
from typing import Annotated, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from app.config import settings
from app.modules.deployments.ssh_channel import SSHChannel

logger = logging.getLogger(__name__)

RESULT_MARKER = "__BUILD_RESULT__"


class BuildRequest(BaseModel):
    repo_url: str
    port: int
    domain: str
    process_name: str
    env_vars: Dict[str, str] = Field(default_factory=dict)


class BuildSuccess(BaseModel):
    outcome: Literal["success"] = "success"
    message: str = "Deployment completed"
    port_hint: Optional[int] = None  # what the tool claims; never authoritative


class BuildFailure(BaseModel):
    outcome: Literal["failure"] = "failure"
    error: str = "Deployment failed"


BuildResult = Annotated[Union[BuildSuccess, BuildFailure], Field(discriminator="outcome")]
_result_adapter = TypeAdapter(BuildResult)


class BuildClient(ABC):
    @abstractmethod
    def build_and_start(self, request: BuildRequest) -> Union[BuildSuccess, BuildFailure]:
        """Build the repository and start it under the supervisor on the requested port."""


_REMOTE_SCRIPT = """
import base64, inspect, json, sys
sys.path.insert(0, {path})
request = json.loads(base64.b64decode({payload}).decode("utf-8"))
try:
    from {module} import {function} as deploy
    kwargs = dict(
        repo_url=request["repo_url"],
        port=request["port"],
        domain=request["domain"],
        app_name=request["process_name"],
    )
    if request.get("env_vars") and "env_vars" in inspect.signature(deploy).parameters:
        kwargs["env_vars"] = request["env_vars"]
    result = deploy(**kwargs)
    if not isinstance(result, dict):
        result = {{"success": True, "message": "Deployment completed"}}
except Exception as exc:
    result = {{"success": False, "error": str(exc)}}
if result.get("success"):
    out = {{"outcome": "success", "message": result.get("message") or "Deployment completed", "port_hint": result.get("port")}}
else:
    out = {{"outcome": "failure", "error": result.get("error") or "Deployment failed"}}
print({marker} + json.dumps(out, default=str))
"""


class RemoteScriptBuildClient(BuildClient):
    """Runs the host's deployer function through a python3 heredoc on the shared channel."""

    def __init__(
        self,
        channel: SSHChannel,
        deployer_path: Optional[str] = None,
        module: Optional[str] = None,
        function: Optional[str] = None,
    ):
        self.channel = channel
        self.deployer_path = deployer_path or settings.deployer_path
        self.module = module or settings.deployer_module
        self.function = function or settings.deployer_function

    def render_command(self, request: BuildRequest) -> str:
        payload = base64.b64encode(request.model_dump_json().encode("utf-8")).decode("ascii")
        script = _REMOTE_SCRIPT.format(
            path=json.dumps(self.deployer_path),
            payload=json.dumps(payload),
            module=self.module,
            function=self.function,
            marker=json.dumps(RESULT_MARKER),
        )
        return f"python3 - <<'PYTHON_EOF'\n{script}\nPYTHON_EOF"

    def build_and_start(self, request: BuildRequest) -> Union[BuildSuccess, BuildFailure]:
        if not self.channel.directory_exists(self.deployer_path):
            logger.error(f"Build tool directory {self.deployer_path} is missing on the host")
            return BuildFailure(error=f"Build tool not found at {self.deployer_path}")
        logger.info(f"Invoking build tool for {request.process_name} ({request.repo_url}) on port {request.port}")
        result = self.channel.execute(self.render_command(request), cwd=self.deployer_path)
        if result.stderr:
            logger.warning(f"Build tool stderr for {request.process_name}: {result.stderr[-2000:]}")
        return parse_build_output(result.stdout, result.stderr)


def parse_build_output(stdout: str, stderr: str = "") -> Union[BuildSuccess, BuildFailure]:
    for line in reversed((stdout or "").splitlines()):
        line = line.strip()
        if not line.startswith(RESULT_MARKER):
            continue
        try:
            return _result_adapter.validate_json(line[len(RESULT_MARKER):])
        except ValidationError as e:
            logger.error(f"Build tool returned a malformed result: {e}")
            return BuildFailure(error="Build tool returned a malformed result")
    detail = (stderr or stdout or "").strip()[-500:]
    return BuildFailure(error=detail or "Build tool produced no result")
