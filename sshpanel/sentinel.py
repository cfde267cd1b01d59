"""Working-directory persistence on top of one-shot remote execution.

Every session command is sent as one shell transaction: export the session
environment, change into the recorded directory, run the command, then print
a unique marker line followed by ``pwd`` and an ``env`` dump. The tail after
the last marker is parsed back into session state and cut from the output.
"""

import posixpath
import re
import shlex
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

VOLATILE_ENV = {"PWD", "OLDPWD", "SHLVL", "_"}
ENV_LINE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)=(.*)$")
ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MARKER_REMNANT = re.compile(r"\n?__SSHPANEL_[0-9a-f]*_{0,2}$")


@dataclass
class SentinelParse:
    output: str
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None

    @property
    def found(self) -> bool:
        return self.cwd is not None


def new_marker() -> str:
    return f"__SSHPANEL_{uuid.uuid4().hex}__"


def normalize_path(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    path = path.strip()
    if not path.startswith("/"):
        return None
    normalized = posixpath.normpath(path)
    # POSIX keeps a leading "//" as implementation defined
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    return normalized


def export_prefix(env: Dict[str, str]) -> str:
    return "".join(
        f"export {key}={shlex.quote(str(value))}; "
        for key, value in env.items()
        if ENV_NAME.match(key)
    )


def wrap_command(command: str, cwd: str, env: Dict[str, str], marker: str) -> str:
    return (
        f"{export_prefix(env)}cd -- {shlex.quote(cwd)} && {{\n{command}\n}}; "
        f"__sp_rc=$?; printf '\\n%s\\n' {shlex.quote(marker)}; pwd; env; exit $__sp_rc"
    )


def parse_env(text: str) -> Dict[str, str]:
    env: Dict[str, str] = {}
    last_key: Optional[str] = None
    for line in (text or "").split("\n"):
        match = ENV_LINE.match(line)
        if match:
            last_key = match.group(1)
            env[last_key] = match.group(2)
        elif last_key is not None and line:
            # multi-line value
            env[last_key] += "\n" + line
    return env


def env_delta(baseline: Dict[str, str], current: Dict[str, str]) -> Dict[str, str]:
    return {
        key: value
        for key, value in current.items()
        if key not in VOLATILE_ENV and baseline.get(key) != value
    }


def unwrap_output(stdout: str, marker: str) -> SentinelParse:
    text = stdout or ""
    pos = text.rfind(marker)
    if pos < 0:
        # output cut short, possibly inside the marker line
        return SentinelParse(output=MARKER_REMNANT.sub("", text))

    output = text[:pos]
    if output.endswith("\n"):
        output = output[:-1]

    tail = text[pos + len(marker):]
    if not tail.startswith("\n"):
        return SentinelParse(output=output)
    lines = tail[1:].split("\n", 1)
    if len(lines) < 2:
        # pwd line cut off before its newline
        return SentinelParse(output=output)

    cwd = normalize_path(lines[0])
    if cwd is None:
        return SentinelParse(output=output)
    return SentinelParse(output=output, cwd=cwd, env=parse_env(lines[1]))
