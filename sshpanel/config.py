import os
import re
from typing import Optional, Dict

# ========= Static config =========
CONNECT_TIMEOUT = 15
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
EXEC_POLL_INTERVAL = 0.05

# Extra wait on top of a command timeout before the executor stops waiting.
TIMEOUT_GRACE = 1.0
TIMEOUT_EXIT_CODE = 124
FAILURE_EXIT_CODE = -1

MAX_OUTPUT_CHARS = 50000
HISTORY_LIMIT = 500

# Exported into every session command.
DEFAULT_ENV: Dict[str, str] = {
    "TERM": "xterm-256color",
    "COLORTERM": "truecolor",
    "LANG": "en_US.UTF-8",
    "LC_ALL": "en_US.UTF-8",
    "DEBIAN_FRONTEND": "noninteractive",
    "COLUMNS": "120",
    "LINES": "30",
}

DEFAULT_ALIASES: Dict[str, str] = {
    "ll": "ls -la",
    "la": "ls -la",
    "l": "ls -CF",
    "..": "cd ..",
    "...": "cd ../..",
    "disk": "df -h",
    "mem": "free -h",
    "ports": "netstat -tulpn",
}

CLEAR_SCREEN = "\x1b[2J\x1b[H"

# ========= Output cleanup =========
ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
APT_CLI_WARNING = re.compile(
    r"WARNING: apt does not have a stable CLI interface\. Use with caution in scripts\.\n?"
)


# ========= Runtime Configuration =========
class PanelConfig:
    def __init__(self):
        self.COMMAND_TIMEOUT: float = 30.0
        self.MAX_COMMAND_TIMEOUT: float = 3600.0
        self.COMPLETION_TIMEOUT: float = 5.0
        self.IDLE_TIMEOUT: float = 1800.0
        self.SWEEP_INTERVAL: float = 60.0

        self.BATCH_MAX_HOSTS: int = 50
        self.BATCH_TIMEOUT: float = 300.0
        self.BATCH_WORKERS: int = 10

        self.COMPLETION_LIMIT: int = 15
        self.COMPLETION_FALLBACK_LIMIT: int = 10

        self.VERIFY_HOST_KEY: bool = True
        self.INVENTORY_PATH: Optional[str] = None
        self.POLICY_PATH: Optional[str] = None
        self.CACHE_DIR: Optional[str] = None
        self.CACHE_DIRS: Dict[str, str] = {}
        self.ALIASES: Dict[str, str] = dict(DEFAULT_ALIASES)

    def load_from_env(self):
        self.COMMAND_TIMEOUT = float(os.environ.get("SSH_PANEL_COMMAND_TIMEOUT", self.COMMAND_TIMEOUT))
        self.COMPLETION_TIMEOUT = float(os.environ.get("SSH_PANEL_COMPLETION_TIMEOUT", self.COMPLETION_TIMEOUT))
        self.IDLE_TIMEOUT = float(os.environ.get("SSH_PANEL_IDLE_TIMEOUT", self.IDLE_TIMEOUT))
        self.SWEEP_INTERVAL = float(os.environ.get("SSH_PANEL_SWEEP_INTERVAL", self.SWEEP_INTERVAL))
        self.BATCH_MAX_HOSTS = int(os.environ.get("SSH_PANEL_BATCH_MAX_HOSTS", self.BATCH_MAX_HOSTS))
        self.BATCH_TIMEOUT = float(os.environ.get("SSH_PANEL_BATCH_TIMEOUT", self.BATCH_TIMEOUT))
        self.BATCH_WORKERS = int(os.environ.get("SSH_PANEL_BATCH_WORKERS", self.BATCH_WORKERS))
        self.COMPLETION_LIMIT = int(os.environ.get("SSH_PANEL_COMPLETION_LIMIT", self.COMPLETION_LIMIT))
        self.COMPLETION_FALLBACK_LIMIT = int(
            os.environ.get("SSH_PANEL_COMPLETION_FALLBACK_LIMIT", self.COMPLETION_FALLBACK_LIMIT)
        )
        self.INVENTORY_PATH = os.environ.get("SSH_PANEL_INVENTORY", self.INVENTORY_PATH)
        self.POLICY_PATH = os.environ.get("SSH_PANEL_POLICY", self.POLICY_PATH)
        self.CACHE_DIR = os.environ.get("SSH_PANEL_CACHE_DIR", self.CACHE_DIR)

        verify_host_env = os.environ.get("SSH_PANEL_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")


# Global instance
config = PanelConfig()
