import json
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sshpanel.batch import BatchScriptExecutor
from sshpanel.completion import CompletionEngine
from sshpanel.config import PanelConfig
from sshpanel.errors import PanelError, ValidationError
from sshpanel.inventory import AccessPolicy
from sshpanel.models import Caller, RunOptions
from sshpanel.runlog import RunLog
from sshpanel.session import ShellSessionManager
from sshpanel.utils import clamp_int, log_error, to_bool

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass
class PanelContext:
    manager: ShellSessionManager
    completer: CompletionEngine
    batch: BatchScriptExecutor
    access: AccessPolicy
    run_log: RunLog
    config: PanelConfig


# ========= Envelopes =========
def ok(data: Any = None, message: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    envelope: Dict[str, Any] = {"success": True, "data": data}
    if message:
        envelope["message"] = message
    envelope.update(extra)
    return envelope


def fail(error: str, code: str = "error") -> Dict[str, Any]:
    return {"success": False, "error": error, "code": code}


def paginate(items: List[Any], page: int, limit: int, total: Optional[int] = None) -> Dict[str, Any]:
    total = len(items) if total is None else total
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": max(1, math.ceil(total / limit)) if limit else 1,
    }


def _page_args(args: Dict[str, Any]):
    page = clamp_int(args.get("page"), 1, 1, 10**6)
    limit = clamp_int(args.get("limit"), DEFAULT_PAGE_SIZE, 1, MAX_PAGE_SIZE)
    return page, limit


def _require(args: Dict[str, Any], key: str) -> Any:
    value = args.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{key} is required")
    return value


def _int_arg(args: Dict[str, Any], key: str, required: bool = True) -> Optional[int]:
    value = args.get(key)
    if value is None:
        if required:
            raise ValidationError(f"{key} is required")
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number")


def format_tool_result(result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    text = json.dumps(result, ensure_ascii=False, separators=(",", ":"))
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}


def make_response(req_id: Any, result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result, is_error)}


# ========= Tool schemas =========
def tools_list() -> Dict[str, Any]:
    token_param = {"type": "string", "description": "Caller access token."}
    session_param = {"type": "string", "description": "Session id returned by session_create."}
    page_params = {
        "page": {"type": "number", "description": "Optional. Page number, starting at 1."},
        "limit": {"type": "number", "description": f"Optional. Page size (default {DEFAULT_PAGE_SIZE})."},
    }
    tools = [
        {
            "name": "session_create",
            "description": (
                "Open a shell session on a host. The session keeps its working directory "
                "and exported variables between commands."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "token": token_param,
                    "host_id": {"type": "number", "description": "Host id from the inventory."},
                    "name": {"type": "string", "description": "Optional. Session label."},
                    "reuse": {"type": "boolean", "description": "Optional. Return an existing live session with the same label."},
                },
                "required": ["token", "host_id"],
            },
        },
        {
            "name": "run",
            "description": (
                "Run a command in a session. Dangerous commands are rejected; commands that need "
                "confirmation (sudo, reboot, rm -rf ...) must be sent again with confirmed=true."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "token": token_param,
                    "session_id": session_param,
                    "command": {"type": "string", "description": "Shell command."},
                    "timeout": {"type": "number", "description": "Optional. Seconds before the command is stopped."},
                    "cwd": {"type": "string", "description": "Optional. Absolute directory for this command only."},
                    "confirmed": {"type": "boolean", "description": "Optional. Confirm a risky command."},
                },
                "required": ["token", "session_id", "command"],
            },
        },
        {
            "name": "completions",
            "description": "Tab-completion candidates for a partial command or file name.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "token": token_param,
                    "session_id": session_param,
                    "partial": {"type": "string", "description": "Text to complete."},
                    "cwd": {"type": "string", "description": "Optional. Directory to complete in (default: session directory)."},
                },
                "required": ["token", "session_id", "partial"],
            },
        },
        {
            "name": "session_status",
            "description": "Session state: directory, activity, busy flag.",
            "inputSchema": {
                "type": "object",
                "properties": {"token": token_param, "session_id": session_param},
                "required": ["token", "session_id"],
            },
        },
        {
            "name": "session_close",
            "description": "Close a session and its connection.",
            "inputSchema": {
                "type": "object",
                "properties": {"token": token_param, "session_id": session_param},
                "required": ["token", "session_id"],
            },
        },
        {
            "name": "session_list",
            "description": "List the caller's sessions (all sessions for admins).",
            "inputSchema": {
                "type": "object",
                "properties": {"token": token_param, **page_params},
                "required": ["token"],
            },
        },
        {
            "name": "history",
            "description": "Commands previously run in a session, oldest first.",
            "inputSchema": {
                "type": "object",
                "properties": {"token": token_param, "session_id": session_param},
                "required": ["token", "session_id"],
            },
        },
        {
            "name": "run_script",
            "description": "Run one command on several hosts in parallel and report per-host results.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "token": token_param,
                    "script_name": {"type": "string", "description": "Label stored in the run log."},
                    "command": {"type": "string", "description": "Shell command."},
                    "host_ids": {"type": "array", "items": {"type": "number"}, "description": "Target host ids."},
                    "confirmed": {"type": "boolean", "description": "Optional. Confirm a risky command."},
                    **page_params,
                },
                "required": ["token", "script_name", "command", "host_ids"],
            },
        },
        {
            "name": "script_logs",
            "description": "Search the run log of run_script executions, newest first.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "token": token_param,
                    "host_id": {"type": "number", "description": "Optional. Filter by host."},
                    "status": {"type": "string", "description": "Optional. success or failed."},
                    "start": {"type": "string", "description": "Optional. ISO date lower bound."},
                    "end": {"type": "string", "description": "Optional. ISO date upper bound."},
                    "search": {"type": "string", "description": "Optional. Text in script name or command."},
                    **page_params,
                },
                "required": ["token"],
            },
        },
    ]
    return {"jsonrpc": "2.0", "result": {"tools": tools}}


# ========= Dispatch =========
def session_create_dispatch(args: Dict[str, Any], ctx: PanelContext, caller: Caller) -> Dict[str, Any]:
    host_id = _int_arg(args, "host_id")
    session_id = ctx.manager.create_session(
        caller, host_id, name=str(args.get("name") or ""), reuse=to_bool(args.get("reuse"), False)
    )
    return ok(ctx.manager.status(caller, session_id), message=f"Session {session_id} ready")


def run_dispatch(args: Dict[str, Any], ctx: PanelContext, caller: Caller) -> Dict[str, Any]:
    session_id = str(_require(args, "session_id"))
    command = args.get("command")
    if command is None:
        raise ValidationError("command is required")
    options = RunOptions(
        timeout=args.get("timeout"),
        cwd=args.get("cwd") or None,
        confirmed=to_bool(args.get("confirmed"), False),
    )
    result = ctx.manager.run(caller, session_id, str(command), options)
    return ok(result.to_dict())


def completions_dispatch(args: Dict[str, Any], ctx: PanelContext, caller: Caller) -> Dict[str, Any]:
    session_id = str(_require(args, "session_id"))
    cwd = args.get("cwd")
    if not cwd:
        cwd = ctx.manager.check_access(caller, session_id).cwd
    candidates = ctx.completer.complete(caller, session_id, str(args.get("partial") or ""), str(cwd))
    return ok(candidates)


def session_status_dispatch(args: Dict[str, Any], ctx: PanelContext, caller: Caller) -> Dict[str, Any]:
    return ok(ctx.manager.status(caller, str(_require(args, "session_id"))))


def session_close_dispatch(args: Dict[str, Any], ctx: PanelContext, caller: Caller) -> Dict[str, Any]:
    session_id = str(_require(args, "session_id"))
    ctx.manager.close_session(caller, session_id)
    return ok({"sessionId": session_id}, message=f"Session {session_id} closed")


def session_list_dispatch(args: Dict[str, Any], ctx: PanelContext, caller: Caller) -> Dict[str, Any]:
    page, limit = _page_args(args)
    rows = ctx.manager.list_sessions(caller)
    offset = (page - 1) * limit
    return ok(rows[offset:offset + limit], **paginate(rows, page, limit))


def history_dispatch(args: Dict[str, Any], ctx: PanelContext, caller: Caller) -> Dict[str, Any]:
    return ok(ctx.manager.history(caller, str(_require(args, "session_id"))))


def run_script_dispatch(args: Dict[str, Any], ctx: PanelContext, caller: Caller) -> Dict[str, Any]:
    host_ids = args.get("host_ids")
    if not isinstance(host_ids, list):
        raise ValidationError("host_ids must be a list")
    run = ctx.batch.run_on_hosts(
        caller,
        str(args.get("script_name") or ""),
        str(args.get("command") or ""),
        host_ids,
        confirmed=to_bool(args.get("confirmed"), False),
    )
    page, limit = _page_args(args)
    data = run.to_dict()
    offset = (page - 1) * limit
    data["results"] = data["results"][offset:offset + limit]
    return ok(
        data,
        message=f"{run.success_count}/{run.total_hosts} hosts succeeded",
        **paginate(run.results, page, limit),
    )


def script_logs_dispatch(args: Dict[str, Any], ctx: PanelContext, caller: Caller) -> Dict[str, Any]:
    page, limit = _page_args(args)
    records, total = ctx.run_log.query(
        user_id=None if caller.is_admin else caller.user_id,
        host_id=_int_arg(args, "host_id", required=False),
        status=args.get("status") or None,
        start=args.get("start"),
        end=args.get("end"),
        search=args.get("search"),
        page=page,
        limit=limit,
    )
    return ok([record.to_dict() for record in records], **paginate(records, page, limit, total=total))


TOOL_DISPATCH = {
    "session_create": session_create_dispatch,
    "run": run_dispatch,
    "completions": completions_dispatch,
    "session_status": session_status_dispatch,
    "session_close": session_close_dispatch,
    "session_list": session_list_dispatch,
    "history": history_dispatch,
    "run_script": run_script_dispatch,
    "script_logs": script_logs_dispatch,
}


def call_tool(tool_name: str, args: Dict[str, Any], ctx: PanelContext) -> Dict[str, Any]:
    handler = TOOL_DISPATCH.get(tool_name)
    if handler is None:
        return fail(f"unknown tool: {tool_name}", "unknown_tool")
    caller = ctx.access.resolve_caller(str(args.get("token") or ""))
    if caller is None:
        return fail("invalid or missing token", "unauthorized")
    try:
        return handler(args, ctx, caller)
    except PanelError as exc:
        envelope = fail(exc.message, exc.code)
        verdict = getattr(exc, "verdict", None)
        if verdict is not None:
            envelope["verdict"] = verdict.to_dict()
        result = getattr(exc, "result", None)
        if result is not None:
            envelope["data"] = result.to_dict()
        return envelope
    except Exception as exc:
        log_error(f"tool execution error ({tool_name}): {exc}")
        return fail(f"internal error: {exc}", "internal_error")


def handle_request(request: Dict[str, Any], ctx: PanelContext) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id", 1)

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "sshpanel", "version": "1.0.0"},
            },
        }

    if method == "notifications/initialized":
        return None
    if method == "tools/list":
        response = tools_list()
        response["id"] = req_id
        return response

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}
        if tool_name not in TOOL_DISPATCH:
            return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown tool: {tool_name}"}}
        result = call_tool(str(tool_name), args, ctx)
        return make_response(req_id, result, is_error=not result.get("success", False))

    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown method: {method}"}}
