"""Command security policy.

The policy is plain data so a deployment can swap it with a JSON file;
``evaluate`` is a pure function from (command, policy) to a verdict and
never touches a remote host.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

DEFAULT_BLOCKED_PATTERNS = [
    "rm -rf /",
    "rm -rf /*",
    "rm -rf .*",
    "rm -rf *",
    "mkfs",
    "dd if=/dev/zero of=/dev/",
    "dd if=/dev/random of=/dev/",
    "dd if=/dev/urandom of=/dev/",
    "> /dev/sda",
    "fdisk",
    "parted",
    ":(){ :|:& };:",
    "chmod 777 /",
    "chown root:root /",
    "passwd root",
]

DEFAULT_CONFIRMATION_PATTERNS = [
    "rm -rf",
    "shutdown",
    "reboot",
    "init 0",
    "init 6",
    "halt",
    "poweroff",
]

INTERACTIVE_COMMANDS = {
    "vi", "vim", "nano", "emacs",
    "less", "more", "man",
    "top", "htop", "iotop",
    "mysql", "psql", "mongo",
    "python", "node", "irb",
    "ssh", "telnet", "ftp",
}

LONG_RUNNING_PREFIXES = [
    "tail -f",
    "watch",
    "ping",
    "traceroute",
    "nc -l",
    "netcat -l",
    "sleep",
]

DEFAULT_MAX_LENGTH = 1000

SUDO_SEGMENT = re.compile(r"(^|[;&|(]\s*)sudo\b")


class VerdictReason(str, Enum):
    NONE = "none"
    BLOCKED_PATTERN = "blocked_pattern"
    LENGTH_EXCEEDED = "length_exceeded"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    NOT_ALLOWED = "not_allowed"


@dataclass
class SecurityPolicy:
    blocked_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_BLOCKED_PATTERNS))
    max_length: int = DEFAULT_MAX_LENGTH
    require_confirmation_for_sudo: bool = True
    logging_enabled: bool = True
    confirmation_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_CONFIRMATION_PATTERNS))
    allowed_commands: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityPolicy":
        policy = cls()
        if "blockedPatterns" in data:
            policy.blocked_patterns = [str(item) for item in data["blockedPatterns"] or []]
        if "maxLength" in data:
            policy.max_length = int(data["maxLength"])
        if "requireConfirmationForSudo" in data:
            policy.require_confirmation_for_sudo = bool(data["requireConfirmationForSudo"])
        if "loggingEnabled" in data:
            policy.logging_enabled = bool(data["loggingEnabled"])
        if "confirmationPatterns" in data:
            policy.confirmation_patterns = [str(item) for item in data["confirmationPatterns"] or []]
        if "allowedCommands" in data:
            policy.allowed_commands = [str(item) for item in data["allowedCommands"] or []]
        return policy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "blockedPatterns": list(self.blocked_patterns),
            "maxLength": self.max_length,
            "requireConfirmationForSudo": self.require_confirmation_for_sudo,
            "loggingEnabled": self.logging_enabled,
            "confirmationPatterns": list(self.confirmation_patterns),
            "allowedCommands": list(self.allowed_commands),
        }


@dataclass
class SecurityVerdict:
    allowed: bool
    reason: VerdictReason = VerdictReason.NONE
    detail: str = ""
    warning: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value,
            "detail": self.detail,
            "warning": self.warning,
        }


def load_policy(path: Optional[str]) -> SecurityPolicy:
    if not path:
        return SecurityPolicy()
    with open(path, "r", encoding="utf-8") as handle:
        return SecurityPolicy.from_dict(json.load(handle))


def base_command(command: str) -> str:
    parts = command.strip().split()
    return parts[0] if parts else ""


def _match_pattern(lower_command: str, patterns: List[str]) -> Optional[str]:
    for pattern in patterns:
        if pattern and pattern.lower() in lower_command:
            return pattern
    return None


def evaluate(command: str, policy: SecurityPolicy, confirmed: bool = False) -> SecurityVerdict:
    text = (command or "").strip()
    lower = text.lower()

    if len(text) > policy.max_length:
        return SecurityVerdict(
            allowed=False,
            reason=VerdictReason.LENGTH_EXCEEDED,
            detail=f"command length {len(text)} exceeds {policy.max_length}",
        )

    blocked = _match_pattern(lower, policy.blocked_patterns)
    if blocked is not None:
        return SecurityVerdict(
            allowed=False,
            reason=VerdictReason.BLOCKED_PATTERN,
            detail=f"matches blocked pattern '{blocked}'",
        )

    base = base_command(text)
    if policy.allowed_commands and base and base not in policy.allowed_commands:
        return SecurityVerdict(
            allowed=False,
            reason=VerdictReason.NOT_ALLOWED,
            detail=f"command '{base}' is not in the allowed commands list",
        )

    if not confirmed:
        risky = _match_pattern(lower, policy.confirmation_patterns)
        if risky is not None:
            return SecurityVerdict(
                allowed=False,
                reason=VerdictReason.REQUIRES_CONFIRMATION,
                detail=f"potentially dangerous: '{risky}'",
            )
        if policy.require_confirmation_for_sudo and SUDO_SEGMENT.search(lower):
            return SecurityVerdict(
                allowed=False,
                reason=VerdictReason.REQUIRES_CONFIRMATION,
                detail="command requires administrator privileges",
            )

    warning = ""
    if base.lower() in INTERACTIVE_COMMANDS:
        warning = "interactive command; it has no terminal and may wait for input until it times out"
    elif any(lower.startswith(prefix) for prefix in LONG_RUNNING_PREFIXES):
        warning = "command may run for a long time and will be stopped at the timeout"
    return SecurityVerdict(allowed=True, warning=warning)
