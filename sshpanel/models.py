from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sshpanel.config import FAILURE_EXIT_CODE


@dataclass
class Caller:
    user_id: int
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == "admin"


@dataclass
class HostRecord:
    host_id: int
    host: str
    username: str
    port: int = 22
    password: Optional[str] = None
    key_path: Optional[str] = None
    owner_id: Optional[int] = None
    name: str = ""


@dataclass
class ExecOutput:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


@dataclass
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = FAILURE_EXIT_CODE
    duration: float = 0.0
    cwd: str = "/"
    status: str = "completed"
    error: str = ""

    @property
    def timed_out(self) -> bool:
        return self.status == "timeout"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exitCode": self.exit_code,
            "duration": round(self.duration, 3),
            "currentDir": self.cwd,
            "status": self.status,
            "error": self.error,
        }


@dataclass
class RunOptions:
    timeout: Optional[float] = None
    cwd: Optional[str] = None
    confirmed: bool = False


@dataclass
class HostOutcome:
    host_id: int
    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    reason: str = "none"
    error: str = ""
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hostId": self.host_id,
            "success": self.success,
            "exitCode": self.exit_code,
            "output": self.stdout,
            "error": self.error or self.stderr,
            "reason": self.reason,
            "duration": round(self.duration, 3),
            "sessionId": self.session_id,
        }


@dataclass
class BatchRun:
    run_id: str
    user_id: int
    script_name: str
    command: str
    host_ids: List[int]
    results: List[HostOutcome] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def total_hosts(self) -> int:
        return len(self.host_ids)

    @property
    def success_count(self) -> int:
        return sum(1 for outcome in self.results if outcome.success)

    @property
    def failed_count(self) -> int:
        return self.total_hosts - self.success_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executionId": self.run_id,
            "scriptName": self.script_name,
            "command": self.command,
            "totalHosts": self.total_hosts,
            "successCount": self.success_count,
            "failedCount": self.failed_count,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "results": [outcome.to_dict() for outcome in self.results],
        }


@dataclass
class RunRecord:
    script_name: str
    command: str
    status: str
    user_id: int
    host_id: int
    start_time: str
    end_time: str
    duration_seconds: float
    output: str = ""
    error: str = ""
    exit_code: int = FAILURE_EXIT_CODE
    run_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "scriptName": self.script_name,
            "command": self.command,
            "status": self.status,
            "output": self.output,
            "error": self.error,
            "exitCode": self.exit_code,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "durationSeconds": self.duration_seconds,
            "userId": self.user_id,
            "hostId": self.host_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunRecord":
        return cls(
            script_name=str(data.get("scriptName", "")),
            command=str(data.get("command", "")),
            status=str(data.get("status", "")),
            user_id=int(data.get("userId", 0)),
            host_id=int(data.get("hostId", 0)),
            start_time=str(data.get("startTime", "")),
            end_time=str(data.get("endTime", "")),
            duration_seconds=float(data.get("durationSeconds", 0.0)),
            output=str(data.get("output", "") or ""),
            error=str(data.get("error", "") or ""),
            exit_code=int(data.get("exitCode", FAILURE_EXIT_CODE)),
            run_id=str(data.get("runId", "")),
        )
