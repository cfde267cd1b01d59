"""JSON-RPC tool surface and response envelopes."""

import io
import json

import pytest

from sshpanel.batch import BatchScriptExecutor
from sshpanel.completion import CompletionEngine
from sshpanel.executor import CommandExecutor
from sshpanel.inventory import Inventory
from sshpanel.models import ExecOutput
from sshpanel.runlog import JsonlRunLog
from sshpanel.security import SecurityPolicy
from sshpanel.main import serve
from sshpanel.server import PanelContext, handle_request
from sshpanel.session import ShellSessionManager
from helpers import FakeProvider, ScriptedChannel


def remote(command):
    if "uptime" in command:
        return ExecOutput(stdout="up 3 days\n")
    if "compgen -c" in command:
        return ExecOutput(stdout="uptime\nupdatedb\n")
    return None


@pytest.fixture
def ctx(tmp_path, panel_config, cache_dirs):
    inventory = Inventory(
        users=[
            {"id": 1, "role": "admin", "token": "root-token"},
            {"id": 42, "token": "user-token"},
            {"id": 7, "token": "other-token"},
        ],
        hosts=[{"id": n, "host": f"10.0.0.{n}", "username": "deploy", "password": "pw", "owner_id": 42} for n in (1, 2, 3)],
    )
    policy = SecurityPolicy()
    manager = ShellSessionManager(
        provider=FakeProvider(lambda host_id: ScriptedChannel(remote), fail_hosts={2}),
        access=inventory,
        executor=CommandExecutor(grace=0.5),
        policy=policy,
        config=panel_config,
        cache_dirs=cache_dirs,
    )
    run_log = JsonlRunLog(str(tmp_path / "runs.jsonl"))
    context = PanelContext(
        manager=manager,
        completer=CompletionEngine(manager, panel_config),
        batch=BatchScriptExecutor(manager, inventory, policy, run_log, panel_config),
        access=inventory,
        run_log=run_log,
        config=panel_config,
    )
    yield context
    manager.close_all()


def call(ctx, tool, **arguments):
    response = handle_request(
        {"jsonrpc": "2.0", "id": 5, "method": "tools/call", "params": {"name": tool, "arguments": arguments}},
        ctx,
    )
    assert response["id"] == 5
    result = response["result"]
    payload = json.loads(result["content"][0]["text"])
    assert result.get("isError", False) is (not payload["success"])
    return payload


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

def test_initialize(ctx):
    response = handle_request({"jsonrpc": "2.0", "id": 1, "method": "initialize"}, ctx)
    assert response["result"]["serverInfo"]["name"] == "sshpanel"


def test_tools_list(ctx):
    response = handle_request({"jsonrpc": "2.0", "id": 2, "method": "tools/list"}, ctx)
    names = {tool["name"] for tool in response["result"]["tools"]}
    assert names == {
        "session_create", "run", "completions", "session_status", "session_close",
        "session_list", "history", "run_script", "script_logs",
    }
    assert response["id"] == 2


def test_initialized_notification_has_no_response(ctx):
    assert handle_request({"jsonrpc": "2.0", "method": "notifications/initialized"}, ctx) is None


def test_unknown_tool_and_method(ctx):
    response = handle_request({"id": 3, "method": "tools/call", "params": {"name": "nope"}}, ctx)
    assert response["error"]["code"] == -32601
    response = handle_request({"id": 4, "method": "bogus"}, ctx)
    assert response["error"]["code"] == -32601


def test_token_required(ctx):
    payload = call(ctx, "session_list", token="wrong")
    assert payload == {"success": False, "error": "invalid or missing token", "code": "unauthorized"}


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

def test_session_flow(ctx):
    created = call(ctx, "session_create", token="user-token", host_id=1, name="web")
    assert created["success"]
    sid = created["data"]["sessionId"]

    ran = call(ctx, "run", token="user-token", session_id=sid, command="uptime")
    assert ran["data"]["stdout"] == "up 3 days\n"
    assert ran["data"]["exitCode"] == 0
    assert ran["data"]["currentDir"] == "/home/demo"

    status = call(ctx, "session_status", token="user-token", session_id=sid)
    assert status["data"]["historySize"] == 1

    history = call(ctx, "history", token="user-token", session_id=sid)
    assert [entry["command"] for entry in history["data"]] == ["uptime"]

    completions = call(ctx, "completions", token="user-token", session_id=sid, partial="up")
    assert completions["data"] == ["uptime", "updatedb"]

    listed = call(ctx, "session_list", token="user-token")
    assert listed["total"] == 1
    assert listed["totalPages"] == 1
    assert listed["data"][0]["sessionId"] == sid

    closed = call(ctx, "session_close", token="user-token", session_id=sid)
    assert closed["success"]
    missing = call(ctx, "session_status", token="user-token", session_id=sid)
    assert missing["code"] == "session_not_found"


def test_errors_become_envelopes(ctx):
    denied = call(ctx, "session_create", token="other-token", host_id=1)
    assert denied["code"] == "access_denied"

    refused = call(ctx, "session_create", token="user-token", host_id=2)
    assert refused["code"] == "connection_error"

    invalid = call(ctx, "session_create", token="user-token", host_id="abc")
    assert invalid["code"] == "validation_error"

    sid = call(ctx, "session_create", token="user-token", host_id=1)["data"]["sessionId"]
    blocked = call(ctx, "run", token="user-token", session_id=sid, command="rm -rf /")
    assert blocked["code"] == "security_violation"
    assert blocked["verdict"]["reason"] == "blocked_pattern"

    confirm = call(ctx, "run", token="user-token", session_id=sid, command="reboot")
    assert confirm["verdict"]["reason"] == "requires_confirmation"

    foreign = call(ctx, "run", token="other-token", session_id=sid, command="ls")
    assert foreign["code"] == "access_denied"


# ---------------------------------------------------------------------------
# Batch scripts
# ---------------------------------------------------------------------------

def test_run_script_and_logs(ctx):
    payload = call(ctx, "run_script", token="user-token", script_name="cleanup", command="uptime", host_ids=[1, 2, 3])
    assert payload["success"]
    data = payload["data"]
    assert (data["totalHosts"], data["successCount"], data["failedCount"]) == (3, 2, 1)
    assert data["results"][1]["reason"] == "connection_error"
    assert payload["total"] == 3
    assert payload["page"] == 1

    paged = call(ctx, "run_script", token="user-token", script_name="cleanup", command="uptime",
                 host_ids=[1, 2, 3], page=2, limit=2)
    assert len(paged["data"]["results"]) == 1
    assert paged["totalPages"] == 2

    logs = call(ctx, "script_logs", token="user-token", status="failed")
    assert logs["total"] == 2
    assert all(row["hostId"] == 2 for row in logs["data"])

    others = call(ctx, "script_logs", token="other-token")
    assert others["total"] == 0

    everything = call(ctx, "script_logs", token="root-token", limit=4)
    assert everything["total"] == 6
    assert everything["totalPages"] == 2


def test_run_script_validation(ctx):
    payload = call(ctx, "run_script", token="user-token", script_name="x", command="uptime", host_ids="1,2")
    assert payload["code"] == "validation_error"


# ---------------------------------------------------------------------------
# Line loop
# ---------------------------------------------------------------------------

def test_serve_answers_each_line(ctx):
    requests = "\n".join([
        json.dumps({"jsonrpc": "2.0", "id": 1, "method": "initialize"}),
        "{broken json",
        "",
        json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}),
        json.dumps({"jsonrpc": "2.0", "id": 2, "method": "tools/list"}),
    ]) + "\n"
    out = io.StringIO()
    serve(ctx, io.StringIO(requests), out)
    responses = [json.loads(line) for line in out.getvalue().splitlines()]
    assert [response["id"] for response in responses] == [1, 2]
