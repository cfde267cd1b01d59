"""Shared fixtures for sshpanel tests.

Fixtures are auto-injected by pytest. Fake collaborators are in helpers.py.
"""

import os
import sys
from pathlib import Path

import pytest

# Add repository root and tests directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from sshpanel.config import PanelConfig
from sshpanel.executor import CommandExecutor
from sshpanel.security import SecurityPolicy
from sshpanel.session import ShellSessionManager
from sshpanel.utils import make_cache_dirs
from helpers import FakeAccess, FakeProvider, LocalShellChannel, caller


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def cache_dirs(tmp_path):
    return make_cache_dirs(str(tmp_path / "cache"))


@pytest.fixture
def panel_config():
    cfg = PanelConfig()
    cfg.COMMAND_TIMEOUT = 5.0
    cfg.COMPLETION_TIMEOUT = 2.0
    cfg.BATCH_TIMEOUT = 5.0
    cfg.IDLE_TIMEOUT = 60.0
    cfg.SWEEP_INTERVAL = 0.05
    return cfg


@pytest.fixture
def user():
    return caller(42)


@pytest.fixture
def other_user():
    return caller(7)


@pytest.fixture
def admin():
    return caller(1, role="admin")


@pytest.fixture
def access():
    return FakeAccess(grants={42: {1, 2, 3, 4, 5}, 7: {9}})


@pytest.fixture
def home(tmp_path):
    path = tmp_path / "home"
    (path / "a" / "b").mkdir(parents=True)
    return os.path.realpath(str(path))


@pytest.fixture
def make_manager(access, panel_config, cache_dirs):
    """Factory fixture building a ShellSessionManager around a provider."""
    managers = []

    def _make(provider=None, policy=None, grace=0.5):
        manager = ShellSessionManager(
            provider=provider or FakeProvider(),
            access=access,
            executor=CommandExecutor(grace=grace),
            policy=policy or SecurityPolicy(),
            config=panel_config,
            cache_dirs=cache_dirs,
        )
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        manager.close_all()


@pytest.fixture
def local_provider(home):
    """Provider handing out local sh channels rooted at ``home``."""
    return FakeProvider(factory=lambda host_id: LocalShellChannel(home))


@pytest.fixture
def local_manager(make_manager, local_provider):
    return make_manager(provider=local_provider)
