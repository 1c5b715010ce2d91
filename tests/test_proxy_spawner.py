import json
import os

import pytest

from seomcp.services.proxy_spawner import (
    AUTH_ERROR,
    CRASH,
    INIT_FAILED,
    PERMISSION_ERROR,
    SPAWN_ERROR,
    TIMEOUT,
    TOOL_ERROR,
    VALIDATION_ERROR,
    ToolInvocationSpawner,
    classify_tool_error,
)
from seomcp.services.worker_config import CredentialBundle


@pytest.fixture
def temp_dir(tmp_path):
    d = tmp_path / "shm"
    d.mkdir()
    return d


@pytest.fixture
def spawner(worker_command, temp_dir):
    return ToolInvocationSpawner(worker_command, temp_dir=str(temp_dir), worker_log_level="debug", kill_grace=0.5)


@pytest.fixture
def bundle(service_account):
    return CredentialBundle(
        service_account=service_account,
        gsc_property="example.com",
        ga4_property="123456789:example.com",
    )


def _assert_reaped(pid_file):
    pid = int(pid_file.read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@pytest.mark.asyncio
async def test_successful_call_passes_config_and_cleans_up(spawner, bundle, temp_dir, tmp_path):
    pid_file = tmp_path / "pid"
    result = await spawner.invoke("echo", {"site_url": "example.com", "pid_file": str(pid_file)}, bundle, 10)

    assert result.ok
    assert result.status == 200
    payload = json.loads(result.content[0]["text"])
    assert payload["service_account"]["client_email"] == bundle.service_account["client_email"]
    assert payload["rust_log"] == "debug"
    assert payload["arguments"]["site_url"] == "example.com"
    assert '[[sites]]' in payload["config"]
    assert 'gsc_property = "sc-domain:example.com"' in payload["config"]
    assert 'ga4_property_id = "properties/123456789"' in payload["config"]
    assert os.path.dirname(payload["config_path"]) == str(temp_dir)

    assert os.listdir(temp_dir) == []
    _assert_reaped(pid_file)


@pytest.mark.asyncio
async def test_log_noise_and_unrelated_messages_are_skipped(spawner, bundle):
    result = await spawner.invoke("noisy", {}, bundle, 10)
    assert result.ok
    assert result.content == [{"type": "text", "text": "done"}]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "tool, code, status",
    [
        ("forbidden", PERMISSION_ERROR, 403),
        ("expired", AUTH_ERROR, 401),
        ("bad_input", VALIDATION_ERROR, 422),
        ("boom", TOOL_ERROR, 500),
    ],
)
async def test_tool_errors_are_classified(spawner, bundle, temp_dir, tmp_path, tool, code, status):
    pid_file = tmp_path / "pid"
    result = await spawner.invoke(tool, {"pid_file": str(pid_file)}, bundle, 10)

    assert not result.ok
    assert result.code == code
    assert result.status == status
    assert os.listdir(temp_dir) == []
    _assert_reaped(pid_file)


@pytest.mark.asyncio
async def test_timeout_terminates_worker(spawner, bundle, temp_dir, tmp_path):
    pid_file = tmp_path / "pid"
    result = await spawner.invoke("sleep", {"pid_file": str(pid_file)}, bundle, 1)

    assert not result.ok
    assert result.code == TIMEOUT
    assert result.status == 500
    assert os.listdir(temp_dir) == []
    _assert_reaped(pid_file)


@pytest.mark.asyncio
async def test_worker_ignoring_sigterm_is_killed(spawner, bundle, temp_dir, tmp_path):
    pid_file = tmp_path / "pid"
    result = await spawner.invoke("stubborn", {"pid_file": str(pid_file)}, bundle, 1)

    assert result.code == TIMEOUT
    assert os.listdir(temp_dir) == []
    _assert_reaped(pid_file)


@pytest.mark.asyncio
async def test_crash_is_reported(spawner, bundle, temp_dir, tmp_path):
    pid_file = tmp_path / "pid"
    result = await spawner.invoke("crash", {"pid_file": str(pid_file)}, bundle, 10)

    assert not result.ok
    assert result.code == CRASH
    assert result.error == "Worker crashed during execution"
    assert os.listdir(temp_dir) == []
    _assert_reaped(pid_file)


@pytest.mark.asyncio
async def test_init_failure(worker_command, bundle, temp_dir):
    spawner = ToolInvocationSpawner(worker_command, temp_dir=str(temp_dir), worker_log_level="init-fail")
    result = await spawner.invoke("echo", {}, bundle, 10)

    assert not result.ok
    assert result.code == INIT_FAILED
    assert "bad config" in result.error
    assert os.listdir(temp_dir) == []


@pytest.mark.asyncio
async def test_missing_binary_is_a_spawn_error(bundle, temp_dir):
    spawner = ToolInvocationSpawner([str(temp_dir / "no-such-worker")], temp_dir=str(temp_dir))
    result = await spawner.invoke("echo", {}, bundle, 5)

    assert not result.ok
    assert result.code == SPAWN_ERROR
    assert result.status == 500
    assert os.listdir(temp_dir) == []


@pytest.mark.asyncio
async def test_call_with_config_returns_raw_response(spawner, tmp_path):
    config = tmp_path / "config.toml"
    sa = tmp_path / "sa.json"
    sa.write_text(json.dumps({"type": "authorized_user"}))
    config.write_text(f'[credentials]\ngoogle_service_account = "{sa}"\n')

    request = {"jsonrpc": "2.0", "id": "sched-1", "method": "tools/call", "params": {"name": "report", "arguments": {}}}
    response = await spawner.call_with_config(str(config), request, 10)

    assert response["id"] == "sched-1"
    assert "Health Score: 87" in response["result"]["content"][0]["text"]


def test_classify_tool_error_precedence():
    assert classify_tool_error("permission denied for 401 user").code == PERMISSION_ERROR
    assert classify_tool_error("Unauthorized").code == AUTH_ERROR
    assert classify_tool_error("Bad Request: missing field").code == VALIDATION_ERROR
    assert classify_tool_error("upstream", "HTTP 400").code == VALIDATION_ERROR
    assert classify_tool_error("quota exhausted").code == TOOL_ERROR


def test_empty_command_rejected():
    with pytest.raises(ValueError):
        ToolInvocationSpawner([])
