import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Dict, List, Optional

from sshpanel.config import FAILURE_EXIT_CODE, TIMEOUT_EXIT_CODE, PanelConfig, config as default_config
from sshpanel.errors import (
    AccessDenied, CommandTimeout, ConnectionFailed, PanelError,
    SecurityPolicyViolation, ValidationError
)
from sshpanel.inventory import AccessPolicy
from sshpanel.models import BatchRun, Caller, HostOutcome, RunOptions, RunRecord
from sshpanel.runlog import RunLog
from sshpanel.security import SecurityPolicy, evaluate
from sshpanel.utils import log_error

BATCH_SESSION_NAME = "batch"


class BatchScriptExecutor:
    def __init__(
        self,
        manager,
        access: AccessPolicy,
        policy: Optional[SecurityPolicy] = None,
        run_log: Optional[RunLog] = None,
        config: Optional[PanelConfig] = None,
    ):
        self.manager = manager
        self.access = access
        self.policy = policy or SecurityPolicy()
        self.run_log = run_log
        self.config = config or default_config

    def _validate(self, script_name: str, command: str, host_ids: List[int]) -> List[int]:
        if not script_name or not str(script_name).strip():
            raise ValidationError("scriptName is required")
        if not command or not str(command).strip():
            raise ValidationError("command is required")
        if not host_ids:
            raise ValidationError("at least one host id is required")
        try:
            unique = list(dict.fromkeys(int(host_id) for host_id in host_ids))
        except (TypeError, ValueError):
            raise ValidationError("host ids must be integers")
        if len(unique) > self.config.BATCH_MAX_HOSTS:
            raise ValidationError(f"too many hosts: {len(unique)} > {self.config.BATCH_MAX_HOSTS}")
        return unique

    def run_on_hosts(
        self,
        caller: Caller,
        script_name: str,
        command: str,
        host_ids: List[int],
        confirmed: bool = False,
    ) -> BatchRun:
        hosts = self._validate(script_name, command, host_ids)

        verdict = evaluate(command, self.policy, confirmed=confirmed)
        if not verdict.allowed:
            raise SecurityPolicyViolation(f"command rejected: {verdict.detail}", verdict)

        if not caller.is_admin:
            denied = [host_id for host_id in hosts if not self.access.can_access_host(caller.user_id, host_id)]
            if denied:
                raise AccessDenied(f"no access to hosts: {', '.join(str(h) for h in denied)}")

        run = BatchRun(
            run_id=uuid.uuid4().hex,
            user_id=caller.user_id,
            script_name=script_name.strip(),
            command=command,
            host_ids=hosts,
        )

        outcomes: Dict[int, HostOutcome] = {}
        workers = max(1, min(len(hosts), self.config.BATCH_WORKERS))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self._run_host, caller, host_id, command): host_id for host_id in hosts}
            for future in as_completed(futures):
                host_id = futures[future]
                try:
                    outcomes[host_id] = future.result()
                except Exception as exc:
                    log_error(f"batch {run.run_id} host {host_id} crashed: {exc}")
                    outcomes[host_id] = HostOutcome(
                        host_id=host_id, success=False, exit_code=FAILURE_EXIT_CODE,
                        reason="error", error=str(exc),
                    )

        run.results = [outcomes[host_id] for host_id in hosts]
        run.finished_at = datetime.now()
        self._persist(run)
        return run

    def _run_host(self, caller: Caller, host_id: int, command: str) -> HostOutcome:
        started = time.time()
        session_id = None
        try:
            session_id = self.manager.create_session(caller, host_id, name=BATCH_SESSION_NAME, reuse=True)
            session = self.manager.check_access(caller, session_id)
            # every run starts from the login directory; confirmation was settled for the whole batch
            result = self.manager.run(
                caller, session_id, command,
                RunOptions(timeout=self.config.BATCH_TIMEOUT, cwd=session.home, confirmed=True),
            )
        except ConnectionFailed as exc:
            return HostOutcome(
                host_id=host_id, success=False, exit_code=FAILURE_EXIT_CODE,
                duration=time.time() - started, reason="connection_error",
                error=exc.message, session_id=session_id,
            )
        except CommandTimeout as exc:
            partial = exc.result
            return HostOutcome(
                host_id=host_id, success=False, exit_code=TIMEOUT_EXIT_CODE,
                stdout=partial.stdout if partial else "",
                stderr=partial.stderr if partial else "",
                duration=time.time() - started, reason="timeout",
                error=exc.message, session_id=session_id,
            )
        except PanelError as exc:
            return HostOutcome(
                host_id=host_id, success=False, exit_code=FAILURE_EXIT_CODE,
                duration=time.time() - started, reason="error",
                error=exc.message, session_id=session_id,
            )

        if result.status != "completed":
            reason = "error"
        elif result.exit_code != 0:
            reason = "non_zero_exit"
        else:
            reason = "none"
        return HostOutcome(
            host_id=host_id,
            success=reason == "none",
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            duration=time.time() - started,
            reason=reason,
            error=result.error if reason == "error" else "",
            session_id=session_id,
        )

    def _persist(self, run: BatchRun) -> None:
        if self.run_log is None:
            return
        start_time = run.started_at.isoformat()
        end_time = (run.finished_at or datetime.now()).isoformat()
        for outcome in run.results:
            record = RunRecord(
                run_id=run.run_id,
                script_name=run.script_name,
                command=run.command,
                status="success" if outcome.success else "failed",
                user_id=run.user_id,
                host_id=outcome.host_id,
                start_time=start_time,
                end_time=end_time,
                duration_seconds=round(outcome.duration, 3),
                output=outcome.stdout,
                error=outcome.error or outcome.stderr,
                exit_code=outcome.exit_code,
            )
            try:
                self.run_log.append(record)
            except Exception as exc:
                log_error(f"failed to persist run {run.run_id} host {outcome.host_id}: {exc}")
