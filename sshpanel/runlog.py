import json
import os
import threading
from datetime import datetime
from typing import Any, List, Optional, Tuple

from sshpanel.models import RunRecord
from sshpanel.utils import log_error, parse_iso


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.replace(tzinfo=None)
    return value


class RunLog:
    def append(self, record: RunRecord) -> None:
        raise NotImplementedError

    def query(self, **filters: Any) -> Tuple[List[RunRecord], int]:
        raise NotImplementedError


class JsonlRunLog(RunLog):
    """Script run history kept as one JSON object per line."""

    def __init__(self, path: str):
        self.path = path
        self.lock = threading.Lock()
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)

    def append(self, record: RunRecord) -> None:
        line = json.dumps(record.to_dict(), ensure_ascii=False)
        with self.lock:
            with open(self.path, "a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def _load(self) -> List[RunRecord]:
        if not os.path.exists(self.path):
            return []
        records: List[RunRecord] = []
        with self.lock:
            with open(self.path, "r", encoding="utf-8") as handle:
                lines = handle.readlines()
        for number, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(RunRecord.from_dict(json.loads(line)))
            except (ValueError, TypeError) as exc:
                log_error(f"skipping malformed run log line {number}: {exc}")
        return records

    def query(
        self,
        user_id: Optional[int] = None,
        host_id: Optional[int] = None,
        status: Optional[str] = None,
        start: Any = None,
        end: Any = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[RunRecord], int]:
        start_dt = _naive(parse_iso(start))
        end_dt = _naive(parse_iso(end))
        needle = (search or "").strip().lower()

        matched = []
        for record in self._load():
            if user_id is not None and record.user_id != user_id:
                continue
            if host_id is not None and record.host_id != host_id:
                continue
            if status and record.status != status:
                continue
            if start_dt or end_dt:
                started = _naive(parse_iso(record.start_time))
                if started is None:
                    continue
                if start_dt and started < start_dt:
                    continue
                if end_dt and started > end_dt:
                    continue
            if needle and needle not in record.script_name.lower() and needle not in record.command.lower():
                continue
            matched.append(record)

        # newest first; file order breaks ties
        matched.reverse()
        matched.sort(key=lambda item: item.start_time, reverse=True)

        page = max(1, int(page))
        limit = max(1, int(limit))
        offset = (page - 1) * limit
        return matched[offset:offset + limit], len(matched)
