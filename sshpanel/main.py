import sys
import io
import os
import json
import argparse
from typing import Optional, TextIO

from sshpanel.batch import BatchScriptExecutor
from sshpanel.channel import ParamikoConnectionProvider
from sshpanel.completion import CompletionEngine
from sshpanel.config import config
from sshpanel.executor import CommandExecutor
from sshpanel.inventory import Inventory
from sshpanel.runlog import JsonlRunLog
from sshpanel.security import load_policy
from sshpanel.server import PanelContext, handle_request
from sshpanel.session import ShellSessionManager
from sshpanel.utils import log_error, make_cache_dirs, resolve_cache_root


def _write_response(out: TextIO, response: dict) -> None:
    try:
        out.write(json.dumps(response, ensure_ascii=False) + "\n")
        out.flush()
    except Exception as exc:
        log_error(f"response write error: {exc}")
        # Fallback: escape all non-ASCII to guarantee safe output
        try:
            out.write(json.dumps(response, ensure_ascii=True) + "\n")
            out.flush()
        except Exception as exc2:
            log_error(f"response write fallback error: {exc2}")


def build_context() -> PanelContext:
    inventory = Inventory.load_inventory(config.INVENTORY_PATH)
    policy = load_policy(config.POLICY_PATH)
    provider = ParamikoConnectionProvider(inventory, config)
    manager = ShellSessionManager(
        provider=provider,
        access=inventory,
        executor=CommandExecutor(),
        policy=policy,
        config=config,
        cache_dirs=config.CACHE_DIRS,
    )
    run_log = JsonlRunLog(os.path.join(config.CACHE_DIRS["runs_dir"], "script_runs.jsonl"))
    return PanelContext(
        manager=manager,
        completer=CompletionEngine(manager, config),
        batch=BatchScriptExecutor(manager, inventory, policy, run_log, config),
        access=inventory,
        run_log=run_log,
        config=config,
    )


def serve(ctx: PanelContext, stdin: TextIO, stdout: TextIO) -> None:
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            response = handle_request(json.loads(line), ctx)
            if response is not None:
                _write_response(stdout, response)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
        except Exception as exc:
            log_error(f"unexpected error: {exc}")
            req_id = None
            try:
                req_id = json.loads(line).get("id")
            except Exception:
                pass
            _write_response(stdout, {
                "jsonrpc": "2.0",
                "id": req_id,
                "error": {"code": -32603, "message": f"Internal error: {exc}"},
            })


def main(argv: Optional[list] = None) -> None:
    # Pre-load from environment
    config.load_from_env()

    parser = argparse.ArgumentParser(
        description="SSH panel server (multi-host shell sessions, command policy, batch scripts)"
    )
    parser.add_argument("--inventory", help="Users/hosts JSON file (overrides SSH_PANEL_INVENTORY env)")
    parser.add_argument("--policy", help="Security policy JSON file (overrides SSH_PANEL_POLICY env)")
    parser.add_argument("--cache-dir", help="Directory for session logs and the run log")
    parser.add_argument("--idle-timeout", type=float, help="Seconds before an idle session is closed")
    parser.add_argument("--command-timeout", type=float, help="Default per-command timeout in seconds")
    parser.add_argument("--batch-workers", type=int, help="Parallel hosts in run_script")
    parser.add_argument("--max-hosts", type=int, help="Maximum hosts per run_script call")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")

    args = parser.parse_args(argv)

    # Apply args over env vars
    if args.inventory: config.INVENTORY_PATH = args.inventory
    if args.policy: config.POLICY_PATH = args.policy
    if args.cache_dir: config.CACHE_DIR = args.cache_dir
    if args.idle_timeout: config.IDLE_TIMEOUT = args.idle_timeout
    if args.command_timeout: config.COMMAND_TIMEOUT = args.command_timeout
    if args.batch_workers: config.BATCH_WORKERS = args.batch_workers
    if args.max_hosts: config.BATCH_MAX_HOSTS = args.max_hosts
    if args.no_verify_host:
        config.VERIFY_HOST_KEY = False

    if not config.INVENTORY_PATH:
        parser.error("inventory file is required (via --inventory or SSH_PANEL_INVENTORY env)")

    config.CACHE_DIRS = make_cache_dirs(resolve_cache_root(config.CACHE_DIR))
    ctx = build_context()
    ctx.manager.start_sweeper()

    log_error(
        f"SSH panel started. inventory={config.INVENTORY_PATH} cache={config.CACHE_DIRS['cache_root']} "
        f"verify_host={config.VERIFY_HOST_KEY} idle_timeout={config.IDLE_TIMEOUT:g}s"
    )

    # Force UTF-8 I/O to avoid charmap encoding errors on Windows
    stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)
    try:
        serve(ctx, stdin, stdout)
    finally:
        log_error("shutting down...")
        ctx.manager.close_all()


if __name__ == "__main__":
    main()
