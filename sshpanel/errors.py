from typing import Any, Optional


class PanelError(Exception):
    code = "error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(PanelError):
    code = "validation_error"


class AccessDenied(PanelError):
    code = "access_denied"


class SecurityPolicyViolation(PanelError):
    code = "security_violation"

    def __init__(self, message: str, verdict: Any = None):
        super().__init__(message)
        self.verdict = verdict


class SessionNotFound(PanelError):
    code = "session_not_found"


class SessionInactive(PanelError):
    code = "session_inactive"


class ConnectionFailed(PanelError):
    code = "connection_error"


class CommandTimeout(PanelError):
    code = "timeout"

    def __init__(self, message: str, result: Any = None):
        super().__init__(message)
        self.result = result


class ChannelTimeout(Exception):
    """Raised by a channel whose command outlived its timeout."""

    def __init__(self, stdout: str = "", stderr: str = "", message: Optional[str] = None):
        super().__init__(message or "command timed out")
        self.stdout = stdout
        self.stderr = stderr
