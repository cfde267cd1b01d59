import threading
import time
import weakref
from typing import Any, Dict

from sshpanel.channel import Channel
from sshpanel.config import TIMEOUT_GRACE, TIMEOUT_EXIT_CODE, FAILURE_EXIT_CODE
from sshpanel.errors import ChannelTimeout, ConnectionFailed
from sshpanel.models import CommandResult
from sshpanel.utils import log_error, postprocess_output

PROBE_COMMAND = "echo ok"
PROBE_TIMEOUT = 5.0


class CommandExecutor:
    """Runs one command on a channel with a hard upper bound on the wait.

    The remote call happens on a worker thread. The caller waits at most
    ``timeout + grace`` seconds; past that the channel is cancelled and a
    timeout result is returned even if the worker is still stuck. The worker
    keeps the per-channel lock until the remote call really returns, so an
    abandoned call still blocks the next command on that channel.
    """

    def __init__(self, grace: float = TIMEOUT_GRACE):
        self.grace = grace
        self._locks: "weakref.WeakKeyDictionary[Channel, threading.Lock]" = weakref.WeakKeyDictionary()
        self._locks_guard = threading.Lock()

    def _channel_lock(self, channel: Channel) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(channel)
            if lock is None:
                lock = threading.Lock()
                self._locks[channel] = lock
            return lock

    def is_busy(self, channel: Channel) -> bool:
        return self._channel_lock(channel).locked()

    def execute(self, channel: Channel, command: str, timeout: float, postprocess: bool = True) -> CommandResult:
        started = time.time()
        lock = self._channel_lock(channel)
        if not lock.acquire(timeout=max(0.0, timeout)):
            return CommandResult(
                exit_code=FAILURE_EXIT_CODE,
                duration=time.time() - started,
                status="failed",
                error="channel busy: a previous command is still running",
            )

        box: Dict[str, Any] = {}
        done = threading.Event()

        def worker():
            try:
                box["output"] = channel.exec(command, timeout)
            except Exception as exc:
                box["error"] = exc
            finally:
                lock.release()
                done.set()

        thread = threading.Thread(target=worker, daemon=True)
        thread.start()

        if not done.wait(timeout + self.grace):
            try:
                channel.cancel()
            except Exception as exc:
                log_error(f"cancel after timeout failed: {exc}")
            return CommandResult(
                exit_code=TIMEOUT_EXIT_CODE,
                duration=time.time() - started,
                status="timeout",
                error=f"command timed out after {timeout:g}s",
            )

        duration = time.time() - started
        error = box.get("error")
        if isinstance(error, ChannelTimeout):
            return CommandResult(
                stdout=self._finish(error.stdout, postprocess),
                stderr=self._finish(error.stderr, postprocess),
                exit_code=TIMEOUT_EXIT_CODE,
                duration=duration,
                status="timeout",
                error=f"command timed out after {timeout:g}s",
            )
        if isinstance(error, ConnectionFailed):
            return CommandResult(
                exit_code=FAILURE_EXIT_CODE,
                duration=duration,
                status="connection_error",
                error=error.message,
            )
        if error is not None:
            log_error(f"command execution failed: {error}")
            return CommandResult(
                exit_code=FAILURE_EXIT_CODE,
                duration=duration,
                status="failed",
                error=str(error) or error.__class__.__name__,
            )

        output = box["output"]
        return CommandResult(
            stdout=self._finish(output.stdout, postprocess),
            stderr=self._finish(output.stderr, postprocess),
            exit_code=int(output.exit_code),
            duration=duration,
        )

    def probe(self, channel: Channel, timeout: float = PROBE_TIMEOUT) -> bool:
        if not channel.is_alive():
            return False
        result = self.execute(channel, PROBE_COMMAND, timeout)
        return result.status == "completed" and result.exit_code == 0

    @staticmethod
    def _finish(text: str, postprocess: bool) -> str:
        return postprocess_output(text) if postprocess else (text or "")
