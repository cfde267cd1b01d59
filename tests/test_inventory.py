"""Inventory file: callers and host access."""

import json

import pytest

from sshpanel.inventory import Inventory


@pytest.fixture
def inventory(tmp_path):
    path = tmp_path / "inventory.json"
    path.write_text(json.dumps({
        "users": [
            {"id": 1, "role": "admin", "token": "root-token"},
            {"id": 42, "token": "user-token"},
            {"id": 7, "role": "user"},
        ],
        "hosts": [
            {"id": 1, "host": "10.0.0.1", "username": "deploy", "password": "pw", "owner_id": 42, "name": "web"},
            {"id": 2, "host": "10.0.0.2", "port": 2222, "key_path": "/keys/id_ed25519", "owner_id": 7},
        ],
    }))
    return Inventory.load_inventory(str(path))


def test_resolve_caller(inventory):
    assert inventory.resolve_caller("root-token").is_admin
    user = inventory.resolve_caller("user-token")
    assert user.user_id == 42
    assert not user.is_admin
    assert inventory.resolve_caller("bogus") is None
    assert inventory.resolve_caller("") is None


def test_host_records(inventory):
    web = inventory.get_host(1)
    assert web.host == "10.0.0.1"
    assert web.port == 22
    assert web.username == "deploy"
    assert web.name == "web"

    db = inventory.get_host(2)
    assert db.port == 2222
    assert db.password is None
    assert db.key_path == "/keys/id_ed25519"
    assert inventory.get_host(3) is None


def test_access(inventory):
    assert inventory.can_access_host(42, 1)
    assert not inventory.can_access_host(42, 2)
    assert inventory.can_access_host(7, 2)
    assert inventory.can_access_host(1, 1)
    assert inventory.can_access_host(1, 2)
    assert not inventory.can_access_host(1, 99)
    assert not inventory.can_access_host(999, 1)


def test_empty_inventory_without_path():
    inventory = Inventory.load_inventory(None)
    assert inventory.resolve_caller("x") is None
    assert inventory.get_host(1) is None
