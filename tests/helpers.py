"""Fake collaborators shared by the test modules.

Import these in test files: from helpers import ScriptedChannel, FakeProvider, ...
Fixtures are in conftest.py and are auto-injected by pytest.
"""

import json
import os
import re
import subprocess
import threading
import time

from sshpanel.channel import Channel, ConnectionProvider
from sshpanel.errors import ChannelTimeout, ConnectionFailed
from sshpanel.inventory import AccessPolicy
from sshpanel.models import Caller, ExecOutput

MARKER = re.compile(r"__SSHPANEL_[0-9a-f]{32}__")


def _text(value):
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

class LocalShellChannel(Channel):
    """Runs every command through a local ``sh``, starting in ``home``.

    Behaves like an SSH exec channel: a fresh shell per command, login
    directory as the starting point.
    """

    def __init__(self, home):
        self.home = str(home)
        self.commands = []
        self.dead = False
        self.closed = False

    def exec(self, command, timeout):
        if self.dead or self.closed:
            raise ConnectionFailed("connection reset by peer")
        self.commands.append(command)
        env = {"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "HOME": self.home}
        try:
            proc = subprocess.run(
                ["sh", "-c", command],
                cwd=self.home,
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise ChannelTimeout(_text(exc.stdout), _text(exc.stderr))
        return ExecOutput(stdout=proc.stdout, stderr=proc.stderr, exit_code=proc.returncode)

    def close(self):
        self.closed = True

    def is_alive(self):
        return not (self.dead or self.closed)


class ScriptedChannel(Channel):
    """Channel whose replies come from ``handler(command)``.

    A handler may return an ExecOutput, return None for an empty success, or
    raise. When the command carries a session marker the reply gets a
    sentinel tail pointing at ``home``.
    """

    def __init__(self, handler=None, home="/home/demo", delay=0.0):
        self.handler = handler
        self.home = home
        self.delay = delay
        self.commands = []
        self.alive = True
        self.closed = False
        self.cancelled = False
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def exec(self, command, timeout):
        with self._lock:
            self.commands.append(command)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if not self.alive or self.closed:
                raise ConnectionFailed("connection reset by peer")
            if self.delay:
                time.sleep(self.delay)
            output = self.handler(command) if self.handler else None
            if output is None:
                output = ExecOutput()
            match = MARKER.search(command)
            if match:
                tail = f"\n{match.group(0)}\n{self.home}\nHOME={self.home}\nUSER=demo\n"
                output = ExecOutput(
                    stdout=output.stdout + tail,
                    stderr=output.stderr,
                    exit_code=output.exit_code,
                )
            return output
        finally:
            with self._lock:
                self.in_flight -= 1

    def user_commands(self):
        """Commands other than the session bootstrap."""
        return [command for command in self.commands if "cd -- " in command]

    def cancel(self):
        self.cancelled = True

    def close(self):
        self.closed = True

    def is_alive(self):
        return self.alive and not self.closed


class BlockingChannel(Channel):
    """Ignores its own timeout and blocks until released or cancelled."""

    def __init__(self, honour_cancel=True):
        self.honour_cancel = honour_cancel
        self.release = threading.Event()
        self.cancelled = False
        self.calls = 0

    def exec(self, command, timeout):
        self.calls += 1
        self.release.wait(10)
        return ExecOutput(stdout="late\n", exit_code=0)

    def cancel(self):
        self.cancelled = True
        if self.honour_cancel:
            self.release.set()

    def close(self):
        self.release.set()


def sentinel_reply(command, stdout="", home="/home/demo", exit_code=0):
    marker = MARKER.search(command).group(0)
    return ExecOutput(stdout=f"{stdout}\n{marker}\n{home}\nHOME={home}\n", exit_code=exit_code)


# ---------------------------------------------------------------------------
# Provider and access
# ---------------------------------------------------------------------------

class FakeProvider(ConnectionProvider):
    def __init__(self, factory=None, fail_hosts=()):
        self.factory = factory or (lambda host_id: ScriptedChannel())
        self.fail_hosts = set(fail_hosts)
        self.opened = []
        self.channels = {}
        self._lock = threading.Lock()

    def open_channel(self, host_id, user_id):
        with self._lock:
            self.opened.append(host_id)
        if host_id in self.fail_hosts:
            raise ConnectionFailed(f"failed to connect to host {host_id}: connection refused")
        channel = self.factory(host_id)
        with self._lock:
            self.channels.setdefault(host_id, []).append(channel)
        return channel


class FakeAccess(AccessPolicy):
    def __init__(self, grants=None, tokens=None):
        self.grants = {user_id: set(hosts) for user_id, hosts in (grants or {}).items()}
        self.tokens = tokens or {}

    def resolve_caller(self, credential):
        return self.tokens.get(credential)

    def can_access_host(self, user_id, host_id):
        return host_id in self.grants.get(user_id, set())


class FailingRunLog:
    def __init__(self):
        self.attempts = 0

    def append(self, record):
        self.attempts += 1
        raise OSError("disk full")

    def query(self, **filters):
        return [], 0


def read_jsonl(path):
    with open(path, "r", encoding="utf-8") as handle:
        return [json.loads(line) for line in handle if line.strip()]


def caller(user_id, role="user"):
    return Caller(user_id=user_id, role=role)
