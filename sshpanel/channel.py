import socket
import threading
import time
from typing import Optional

import paramiko

from sshpanel.config import (
    CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, BUFFER_SIZE, EXEC_POLL_INTERVAL, PanelConfig
)
from sshpanel.errors import ChannelTimeout, ConnectionFailed
from sshpanel.inventory import HostDirectory
from sshpanel.models import ExecOutput
from sshpanel.utils import log_error


class Channel:
    """An open, authenticated conduit that runs one remote command at a time."""

    def exec(self, command: str, timeout: float) -> ExecOutput:
        raise NotImplementedError

    def cancel(self) -> None:
        """Abort the in-flight command, best effort."""

    def close(self) -> None:
        raise NotImplementedError

    def is_alive(self) -> bool:
        return True


class ConnectionProvider:
    def open_channel(self, host_id: int, user_id: int) -> Channel:
        raise NotImplementedError


def _decode(chunks) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


class ParamikoChannel(Channel):
    def __init__(self, client: paramiko.SSHClient, label: str = ""):
        self.client: Optional[paramiko.SSHClient] = client
        self.label = label
        self._current: Optional[paramiko.Channel] = None
        self._cancelled = False
        self._lock = threading.Lock()

    def is_alive(self) -> bool:
        if not self.client:
            return False
        try:
            transport = self.client.get_transport()
            return bool(transport and transport.is_active())
        except Exception:
            return False

    def exec(self, command: str, timeout: float) -> ExecOutput:
        if not self.is_alive():
            raise ConnectionFailed(f"connection to {self.label or 'host'} is closed")

        try:
            transport = self.client.get_transport()
            channel = transport.open_session(timeout=CONNECT_TIMEOUT)
            channel.settimeout(1.0)
            channel.exec_command(command)
        except (paramiko.SSHException, socket.error, EOFError) as exc:
            raise ConnectionFailed(f"failed to start command: {exc}") from exc

        with self._lock:
            self._current = channel
            self._cancelled = False

        stdout_chunks = []
        stderr_chunks = []
        deadline = time.time() + timeout
        try:
            while True:
                has_progress = False
                if channel.recv_ready():
                    data = channel.recv(BUFFER_SIZE)
                    if data:
                        stdout_chunks.append(data)
                        has_progress = True
                if channel.recv_stderr_ready():
                    data = channel.recv_stderr(BUFFER_SIZE)
                    if data:
                        stderr_chunks.append(data)
                        has_progress = True

                # a local close also sets the exit status, so check this first
                if self._cancelled:
                    if not self.is_alive():
                        raise ConnectionFailed(f"connection to {self.label or 'host'} lost during command")
                    raise ChannelTimeout(_decode(stdout_chunks), _decode(stderr_chunks), "command cancelled")

                if (
                    channel.exit_status_ready()
                    and not channel.recv_ready()
                    and not channel.recv_stderr_ready()
                ):
                    exit_code = channel.recv_exit_status()
                    return ExecOutput(
                        stdout=_decode(stdout_chunks),
                        stderr=_decode(stderr_chunks),
                        exit_code=exit_code,
                    )

                if channel.closed and not has_progress and not self.is_alive():
                    raise ConnectionFailed(f"connection to {self.label or 'host'} lost during command")

                if time.time() >= deadline:
                    raise ChannelTimeout(_decode(stdout_chunks), _decode(stderr_chunks))

                if not has_progress:
                    time.sleep(EXEC_POLL_INTERVAL)
        except (paramiko.SSHException, socket.error, EOFError) as exc:
            raise ConnectionFailed(f"connection error during command: {exc}") from exc
        finally:
            with self._lock:
                self._current = None
            try:
                channel.close()
            except Exception:
                pass

    def cancel(self) -> None:
        with self._lock:
            current = self._current
            if current is not None:
                self._cancelled = True
        if current is None:
            return
        try:
            current.close()
        except Exception as exc:
            log_error(f"cancel failed ({self.label}): {exc}")

    def close(self) -> None:
        self.cancel()
        try:
            if self.client:
                self.client.close()
        except Exception:
            pass
        self.client = None


class ParamikoConnectionProvider(ConnectionProvider):
    def __init__(self, hosts: HostDirectory, config: PanelConfig):
        self.hosts = hosts
        self.config = config

    def open_channel(self, host_id: int, user_id: int) -> Channel:
        record = self.hosts.get_host(host_id)
        if record is None:
            raise ConnectionFailed(f"host {host_id} is not registered")
        if not record.password and not record.key_path:
            raise ConnectionFailed(f"host {host_id} credentials are incomplete")

        client = paramiko.SSHClient()
        if self.config.VERIFY_HOST_KEY:
            client.load_system_host_keys()
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs = {
            "hostname": record.host,
            "port": record.port,
            "username": record.username,
            "timeout": CONNECT_TIMEOUT,
            "banner_timeout": CONNECT_TIMEOUT,
            "auth_timeout": CONNECT_TIMEOUT,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if record.password:
            connect_kwargs["password"] = record.password
        if record.key_path:
            connect_kwargs["key_filename"] = record.key_path

        try:
            client.connect(**connect_kwargs)
        except Exception as exc:
            try:
                client.close()
            except Exception:
                pass
            log_error(f"connect failed host={host_id} user={user_id}: {exc}")
            raise ConnectionFailed(f"failed to connect to host {host_id}: {exc}") from exc

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)
        return ParamikoChannel(client, label=f"{record.username}@{record.host}:{record.port}")

