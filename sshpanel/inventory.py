import json
import threading
from typing import Any, Dict, List, Optional

from sshpanel.models import Caller, HostRecord


class AccessPolicy:
    def resolve_caller(self, credential: str) -> Optional[Caller]:
        raise NotImplementedError

    def can_access_host(self, user_id: int, host_id: int) -> bool:
        raise NotImplementedError


class HostDirectory:
    def get_host(self, host_id: int) -> Optional[HostRecord]:
        raise NotImplementedError


class Inventory(AccessPolicy, HostDirectory):
    """Users and hosts read from a JSON file.

    Layout::

        {"users": [{"id": 1, "role": "admin", "token": "..."}],
         "hosts": [{"id": 1, "host": "10.0.0.5", "port": 22, "username": "root",
                    "password": "...", "key_path": null, "owner_id": 1, "name": "web"}]}
    """

    def __init__(self, users: Optional[List[Dict[str, Any]]] = None, hosts: Optional[List[Dict[str, Any]]] = None):
        self.lock = threading.Lock()
        self.callers: Dict[int, Caller] = {}
        self.tokens: Dict[str, int] = {}
        self.hosts: Dict[int, HostRecord] = {}
        for row in users or []:
            self.add_user(row)
        for row in hosts or []:
            self.add_host(row)

    @classmethod
    def load_inventory(cls, path: Optional[str]) -> "Inventory":
        if not path:
            return cls()
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        return cls(users=data.get("users", []), hosts=data.get("hosts", []))

    def add_user(self, row: Dict[str, Any]) -> Caller:
        caller = Caller(user_id=int(row["id"]), role=str(row.get("role") or "user"))
        with self.lock:
            self.callers[caller.user_id] = caller
            token = row.get("token")
            if token:
                self.tokens[str(token)] = caller.user_id
        return caller

    def add_host(self, row: Dict[str, Any]) -> HostRecord:
        owner = row.get("owner_id")
        record = HostRecord(
            host_id=int(row["id"]),
            host=str(row["host"]),
            username=str(row.get("username") or "root"),
            port=int(row.get("port") or 22),
            password=row.get("password") or None,
            key_path=row.get("key_path") or None,
            owner_id=int(owner) if owner is not None else None,
            name=str(row.get("name") or ""),
        )
        with self.lock:
            self.hosts[record.host_id] = record
        return record

    def resolve_caller(self, credential: str) -> Optional[Caller]:
        if not credential:
            return None
        with self.lock:
            user_id = self.tokens.get(str(credential))
            return self.callers.get(user_id) if user_id is not None else None

    def can_access_host(self, user_id: int, host_id: int) -> bool:
        with self.lock:
            caller = self.callers.get(user_id)
            record = self.hosts.get(host_id)
        if caller is None or record is None:
            return False
        if caller.is_admin:
            return True
        return record.owner_id == user_id

    def get_host(self, host_id: int) -> Optional[HostRecord]:
        with self.lock:
            return self.hosts.get(host_id)
