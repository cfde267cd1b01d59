import os
import shlex
import threading
import time
import uuid
from collections import deque
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Tuple

from sshpanel.channel import Channel, ConnectionProvider
from sshpanel.config import CLEAR_SCREEN, DEFAULT_ENV, HISTORY_LIMIT, PanelConfig, config as default_config
from sshpanel.errors import (
    AccessDenied, CommandTimeout, ConnectionFailed, SecurityPolicyViolation,
    SessionInactive, SessionNotFound, ValidationError
)
from sshpanel.executor import CommandExecutor
from sshpanel.inventory import AccessPolicy
from sshpanel.models import Caller, CommandResult, RunOptions
from sshpanel.security import SecurityPolicy, evaluate
from sshpanel.sentinel import env_delta, new_marker, normalize_path, unwrap_output, wrap_command
from sshpanel.utils import clamp_float, iso_now, json_line, log_error, postprocess_output, safe_name

BOOTSTRAP_TIMEOUT = 10.0


class _FifoLock:
    """Mutex that hands itself out in arrival order."""

    def __init__(self):
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._serving = 0

    def acquire(self) -> None:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._serving:
                self._cond.wait()

    def try_acquire(self) -> bool:
        with self._cond:
            if self._next_ticket != self._serving:
                return False
            self._next_ticket += 1
            return True

    def release(self) -> None:
        with self._cond:
            self._serving += 1
            self._cond.notify_all()

    @property
    def pending(self) -> int:
        with self._cond:
            return self._next_ticket - self._serving

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()


class ShellSession:
    def __init__(
        self,
        user_id: int,
        host_id: int,
        name: str,
        channel: Channel,
        cwd: str,
        baseline_env: Dict[str, str],
        sessions_dir: Optional[str] = None,
    ):
        self.id = uuid.uuid4().hex
        self.user_id = user_id
        self.host_id = host_id
        self.name = name
        self.channel = channel
        self.home = cwd
        self.cwd = cwd
        self.baseline_env = baseline_env
        self.env: Dict[str, str] = dict(DEFAULT_ENV)

        self.created_at = datetime.now()
        self.last_activity = time.time()
        self.active = True
        self.busy = False
        self.history: Deque[Dict[str, Any]] = deque(maxlen=HISTORY_LIMIT)
        self.lock = _FifoLock()

        self.session_log_path = self._build_session_log_path(sessions_dir)
        self._log_session("SYS", {
            "event": "session_created",
            "user_id": user_id,
            "host_id": host_id,
            "name": name,
            "cwd": cwd,
        })

    def _build_session_log_path(self, sessions_dir: Optional[str]) -> Optional[str]:
        if not sessions_dir:
            return None
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = f"u{self.user_id}__h{self.host_id}__{safe_name(self.name or 'shell')}__{self.id[:8]}__{stamp}.log"
        return os.path.join(sessions_dir, filename)

    def _log_session(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.session_log_path:
            return
        data = {"ts": iso_now(), "dir": direction, "session_id": self.id}
        data.update(payload)
        json_line(self.session_log_path, data)

    def idle_seconds(self, now: Optional[float] = None) -> float:
        return (now or time.time()) - self.last_activity

    def touch(self) -> None:
        self.last_activity = time.time()

    def info(self) -> Dict[str, Any]:
        return {
            "sessionId": self.id,
            "userId": self.user_id,
            "hostId": self.host_id,
            "name": self.name,
            "currentDir": self.cwd,
            "active": self.active,
            "busy": self.busy,
            "queued": max(0, self.lock.pending - (1 if self.busy else 0)),
            "createdAt": self.created_at.isoformat(),
            "lastActivity": datetime.fromtimestamp(self.last_activity).isoformat(),
            "idleSeconds": round(self.idle_seconds(), 1),
            "historySize": len(self.history),
        }


class ShellSessionManager:
    """Registry of shell sessions for one process.

    Sessions are keyed by an opaque id and owned by the user that created
    them. Commands on one session run strictly one after another in arrival
    order; different sessions run in parallel.
    """

    def __init__(
        self,
        provider: ConnectionProvider,
        access: AccessPolicy,
        executor: Optional[CommandExecutor] = None,
        policy: Optional[SecurityPolicy] = None,
        config: Optional[PanelConfig] = None,
        cache_dirs: Optional[Dict[str, str]] = None,
    ):
        self.provider = provider
        self.access = access
        self.executor = executor or CommandExecutor()
        self.policy = policy or SecurityPolicy()
        self.config = config or default_config
        self.cache_dirs = cache_dirs or {}

        self.sessions: Dict[str, ShellSession] = {}
        self.lock = threading.Lock()
        # (user, host) -> [lock, creators waiting or holding it]
        self.create_locks: Dict[Tuple[int, int], List[Any]] = {}

        self.sweeper_stop = threading.Event()
        self.sweeper_thread: Optional[threading.Thread] = None

    # ========= Lookup =========
    def get_session(self, session_id: str) -> Optional[ShellSession]:
        with self.lock:
            return self.sessions.get(session_id)

    def _owned_session(self, caller: Caller, session_id: str) -> ShellSession:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"session {session_id} not found")
        if session.user_id != caller.user_id and not caller.is_admin:
            raise AccessDenied(f"session {session_id} belongs to another user")
        return session

    def check_access(self, caller: Caller, session_id: str) -> ShellSession:
        return self._owned_session(caller, session_id)

    @contextmanager
    def _create_lock(self, user_id: int, host_id: int):
        key = (user_id, host_id)
        with self.lock:
            entry = self.create_locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self.lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self.create_locks[key]

    # ========= Lifecycle =========
    def create_session(self, caller: Caller, host_id: int, name: str = "", reuse: bool = False) -> str:
        if not caller.is_admin and not self.access.can_access_host(caller.user_id, host_id):
            raise AccessDenied(f"user {caller.user_id} has no access to host {host_id}")

        with self._create_lock(caller.user_id, host_id):
            if reuse:
                existing = self._find_reusable(caller.user_id, host_id, name)
                if existing is not None:
                    return existing.id

            channel = self.provider.open_channel(host_id, caller.user_id)
            try:
                home, baseline = self._bootstrap(channel)
            except ConnectionFailed:
                channel.close()
                raise

            session = ShellSession(
                user_id=caller.user_id,
                host_id=host_id,
                name=name or "",
                channel=channel,
                cwd=home,
                baseline_env=baseline,
                sessions_dir=self.cache_dirs.get("sessions_dir"),
            )
            with self.lock:
                self.sessions[session.id] = session
            return session.id

    def _bootstrap(self, channel: Channel) -> Tuple[str, Dict[str, str]]:
        """Login directory and environment of a fresh channel."""
        marker = new_marker()
        command = f"printf '\\n%s\\n' {shlex.quote(marker)}; pwd; env"
        result = self.executor.execute(channel, command, BOOTSTRAP_TIMEOUT, postprocess=False)
        if result.status == "connection_error":
            raise ConnectionFailed(result.error or "connection lost while opening session")
        parsed = unwrap_output(result.stdout, marker)
        if not parsed.found:
            log_error(f"could not resolve home directory ({result.status}), using /")
            return "/", {}
        return parsed.cwd, parsed.env or {}

    def _find_reusable(self, user_id: int, host_id: int, name: str) -> Optional[ShellSession]:
        with self.lock:
            candidates = [
                session for session in self.sessions.values()
                if session.user_id == user_id
                and session.host_id == host_id
                and session.name == (name or "")
                and session.active
            ]
        for session in candidates:
            if session.busy or self.executor.is_busy(session.channel):
                return session
            with session.lock:
                alive = session.active and self.executor.probe(session.channel)
                if alive:
                    session.touch()
                    return session
                self._mark_inactive(session, "probe failed")
        return None

    def _mark_inactive(self, session: ShellSession, reason: str) -> None:
        if not session.active:
            return
        session.active = False
        try:
            session.channel.close()
        except Exception as exc:
            log_error(f"channel close failed ({session.id}): {exc}")
        session._log_session("SYS", {"event": "session_inactive", "reason": reason})

    def destroy_session(self, session_id: str) -> bool:
        with self.lock:
            session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        with session.lock:
            if session.active:
                session.active = False
                try:
                    session.channel.close()
                except Exception as exc:
                    log_error(f"channel close failed ({session_id}): {exc}")
        session._log_session("SYS", {"event": "session_closed"})
        return True

    def close_session(self, caller: Caller, session_id: str) -> bool:
        self._owned_session(caller, session_id)
        return self.destroy_session(session_id)

    # ========= Execution =========
    def _resolve_timeout(self, timeout: Optional[float]) -> float:
        return clamp_float(timeout, self.config.COMMAND_TIMEOUT, 0.1, self.config.MAX_COMMAND_TIMEOUT)

    def _expand_alias(self, command: str) -> str:
        head, _, rest = command.partition(" ")
        expansion = self.config.ALIASES.get(head)
        if expansion is None:
            return command
        return f"{expansion} {rest}".strip() if rest else expansion

    def run(self, caller: Caller, session_id: str, command: str, options: Optional[RunOptions] = None) -> CommandResult:
        options = options or RunOptions()
        session = self._owned_session(caller, session_id)

        verdict = evaluate(command or "", self.policy, confirmed=options.confirmed)
        if not verdict.allowed:
            session._log_session("SYS", {
                "event": "command_rejected",
                "command": command,
                "reason": verdict.reason.value,
                "detail": verdict.detail,
            })
            raise SecurityPolicyViolation(f"command rejected: {verdict.detail}", verdict)

        override_cwd = None
        if options.cwd:
            override_cwd = normalize_path(options.cwd)
            if override_cwd is None:
                raise ValidationError("cwd must be an absolute path")
        timeout = self._resolve_timeout(options.timeout)

        with session.lock:
            if not session.active:
                raise SessionInactive(f"session {session_id} is no longer active")
            session.busy = True
            try:
                result = self._run_locked(session, command or "", timeout, override_cwd)
            finally:
                session.busy = False
                session.touch()

        if verdict.warning:
            result.error = result.error or verdict.warning
        if result.status == "connection_error":
            raise ConnectionFailed(result.error or f"connection to host {session.host_id} lost")
        if result.timed_out:
            raise CommandTimeout(result.error or "command timed out", result)
        return result

    def _run_locked(self, session: ShellSession, command: str, timeout: float, override_cwd: Optional[str]) -> CommandResult:
        text = self._expand_alias(command.strip())
        if not text:
            return CommandResult(exit_code=0, cwd=session.cwd)
        if text == "clear":
            return CommandResult(stdout=CLEAR_SCREEN, exit_code=0, cwd=session.cwd)

        marker = new_marker()
        wrapped = wrap_command(text, override_cwd or session.cwd, session.env, marker)
        result = self.executor.execute(session.channel, wrapped, timeout, postprocess=False)

        parsed = unwrap_output(result.stdout, marker)
        result.stdout = postprocess_output(parsed.output)
        result.stderr = postprocess_output(result.stderr)
        if parsed.found and override_cwd is None:
            session.cwd = parsed.cwd
            env = dict(DEFAULT_ENV)
            env.update(env_delta(session.baseline_env, parsed.env or {}))
            session.env = env
        result.cwd = session.cwd

        entry = {
            "ts": iso_now(),
            "command": command,
            "exitCode": result.exit_code,
            "status": result.status,
            "cwd": session.cwd,
            "duration": round(result.duration, 3),
        }
        session.history.append(entry)
        if self.policy.logging_enabled:
            session._log_session("IN", {"event": "command", "command": command})
            session._log_session("OUT", {"event": "result", **{k: v for k, v in entry.items() if k != "ts"}})

        if result.status == "connection_error":
            self._mark_inactive(session, result.error or "connection lost")
        return result

    def exec_quiet(self, caller: Caller, session_id: str, command: str, timeout: float) -> CommandResult:
        """Run a helper command without touching cwd, env or history."""
        session = self._owned_session(caller, session_id)
        with session.lock:
            if not session.active:
                raise SessionInactive(f"session {session_id} is no longer active")
            session.busy = True
            try:
                result = self.executor.execute(session.channel, command, timeout)
            finally:
                session.busy = False
                session.touch()
            if result.status == "connection_error":
                self._mark_inactive(session, result.error or "connection lost")
        result.cwd = session.cwd
        return result

    # ========= Queries =========
    def status(self, caller: Caller, session_id: str) -> Dict[str, Any]:
        return self._owned_session(caller, session_id).info()

    def list_sessions(self, caller: Caller) -> List[Dict[str, Any]]:
        with self.lock:
            sessions = list(self.sessions.values())
        rows = [
            session.info() for session in sessions
            if caller.is_admin or session.user_id == caller.user_id
        ]
        rows.sort(key=lambda row: row["createdAt"])
        return rows

    def history(self, caller: Caller, session_id: str) -> List[Dict[str, Any]]:
        return list(self._owned_session(caller, session_id).history)

    # ========= Expiry =========
    def sweep_expired(self, max_idle: Optional[float] = None) -> int:
        threshold = self.config.IDLE_TIMEOUT if max_idle is None else max_idle
        with self.lock:
            sessions = list(self.sessions.values())

        removed = 0
        for session in sessions:
            if session.busy or session.idle_seconds() <= threshold:
                continue
            if not session.lock.try_acquire():
                continue
            try:
                # a queued command may have run since the snapshot
                if session.idle_seconds() <= threshold:
                    continue
                with self.lock:
                    if self.sessions.get(session.id) is not session:
                        continue
                    del self.sessions[session.id]
                session.active = False
                try:
                    session.channel.close()
                except Exception as exc:
                    log_error(f"channel close failed ({session.id}): {exc}")
                session._log_session("SYS", {"event": "session_expired", "idle_seconds": round(session.idle_seconds(), 1)})
                removed += 1
            finally:
                session.lock.release()
        return removed

    def _sweep_loop(self) -> None:
        while not self.sweeper_stop.wait(self.config.SWEEP_INTERVAL):
            try:
                removed = self.sweep_expired()
                if removed:
                    log_error(f"expired {removed} idle session(s)")
            except Exception as exc:
                log_error(f"sweep loop error: {exc}")

    def start_sweeper(self) -> None:
        if self.sweeper_thread is not None and self.sweeper_thread.is_alive():
            return
        self.sweeper_stop.clear()
        self.sweeper_thread = threading.Thread(target=self._sweep_loop, daemon=True)
        self.sweeper_thread.start()

    def close_all(self) -> None:
        self.sweeper_stop.set()
        with self.lock:
            session_ids = list(self.sessions.keys())
        for session_id in session_ids:
            self.destroy_session(session_id)
