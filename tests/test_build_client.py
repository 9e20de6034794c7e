import base64
import json
import re

import pytest

from app.modules.deployments.build_client import (
    RESULT_MARKER,
    BuildClient,
    BuildFailure,
    BuildRequest,
    BuildSuccess,
    RemoteScriptBuildClient,
    parse_build_output,
)


def _request():
    return BuildRequest(
        repo_url="https://github.com/acme/shop",
        port=4000,
        domain="k3x9qa.example.test",
        process_name="userabc_k3x9qa_frontend",
        env_vars={"API_URL": "https://k3x9qa-api.example.test"},
    )


def test_success_variant_is_parsed_from_marker_line():
    stdout = "\n".join([
        "Cloning into 'shop'...",
        "npm run build",
        RESULT_MARKER + json.dumps({"outcome": "success", "message": "Started", "port_hint": 4000}),
    ])

    result = parse_build_output(stdout)

    assert isinstance(result, BuildSuccess)
    assert result.message == "Started"
    assert result.port_hint == 4000


def test_failure_variant_is_parsed_from_marker_line():
    result = parse_build_output(RESULT_MARKER + json.dumps({"outcome": "failure", "error": "npm ERR! missing script"}))

    assert isinstance(result, BuildFailure)
    assert result.error == "npm ERR! missing script"


def test_missing_marker_is_a_failure_carrying_stderr():
    result = parse_build_output("some output", "Traceback: ModuleNotFoundError: ai_deployer")

    assert isinstance(result, BuildFailure)
    assert "ModuleNotFoundError" in result.error


def test_malformed_marker_is_a_failure():
    result = parse_build_output(RESULT_MARKER + '{"outcome": "maybe"}')

    assert isinstance(result, BuildFailure)


def test_remote_invocation_embeds_request_as_base64_json(channel):
    channel.on(r"^python3 - <<'PYTHON_EOF'", RESULT_MARKER + '{"outcome": "success", "message": "ok"}')
    client = RemoteScriptBuildClient(channel, deployer_path="/opt/deployer", module="ai_deployer", function="deploy")

    result = client.build_and_start(_request())

    assert isinstance(result, BuildSuccess)
    command = channel.ran(r"^python3 - ")[0]
    assert "from ai_deployer import deploy as deploy" in command
    assert 'sys.path.insert(0, "/opt/deployer")' in command
    payload = re.search(r'base64.b64decode\("([^"]+)"\)', command).group(1)
    decoded = json.loads(base64.b64decode(payload))
    assert decoded["repo_url"] == "https://github.com/acme/shop"
    assert decoded["process_name"] == "userabc_k3x9qa_frontend"
    assert decoded["env_vars"] == {"API_URL": "https://k3x9qa-api.example.test"}
    assert command.rstrip().endswith("PYTHON_EOF")


def test_missing_build_tool_directory_fails_without_invoking_it(channel):
    channel.on(r"^test -d ", code=1)
    client = RemoteScriptBuildClient(channel, deployer_path="/opt/deployer", module="ai_deployer", function="deploy")

    result = client.build_and_start(_request())

    assert isinstance(result, BuildFailure)
    assert "/opt/deployer" in result.error
    assert channel.ran(r"^python3 - ") == []


def test_build_client_cannot_be_used_without_an_implementation():
    with pytest.raises(TypeError):
        BuildClient()
