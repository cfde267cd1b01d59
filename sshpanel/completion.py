import shlex
from typing import List, Optional

from sshpanel.config import PanelConfig, config as default_config
from sshpanel.errors import PanelError
from sshpanel.models import Caller
from sshpanel.utils import clean_output, log_error

# compgen exits 1 when nothing matches, anything else means it is unusable
COMPGEN_OK_CODES = (0, 1)


class CompletionEngine:
    """Tab completion for a partial token, tried in three tiers.

    1. commands known to the remote shell (``compgen -c``)
    2. file names, only when tier 1 found nothing (``compgen -f``)
    3. a plain directory listing, when compgen itself is unavailable
    """

    def __init__(self, manager, config: Optional[PanelConfig] = None):
        self.manager = manager
        self.config = config or default_config

    def complete(self, caller: Caller, session_id: str, partial: str, cwd: str) -> List[str]:
        if not partial or not partial.strip() or not cwd:
            return []
        # unknown session or foreign owner still surfaces as an error
        self.manager.check_access(caller, session_id)

        limit = self.config.COMPLETION_LIMIT
        commands = self._compgen(caller, session_id, "-c", partial, cwd)
        if commands is None:
            return self._listing(caller, session_id, partial, cwd)
        if commands:
            return self._filter(commands, partial, limit)

        files = self._compgen(caller, session_id, "-f", partial, cwd)
        if files is None:
            return self._listing(caller, session_id, partial, cwd)
        return self._filter(files, partial, limit)

    def _quiet(self, caller: Caller, session_id: str, command: str):
        try:
            return self.manager.exec_quiet(caller, session_id, command, self.config.COMPLETION_TIMEOUT)
        except PanelError as exc:
            log_error(f"completion command failed ({session_id}): {exc.message}")
            return None

    def _compgen(self, caller: Caller, session_id: str, flag: str, partial: str, cwd: str) -> Optional[List[str]]:
        script = f'compgen {flag} -- "$1"'
        command = (
            f"cd -- {shlex.quote(cwd)} && "
            f"bash -c {shlex.quote(script)} _ {shlex.quote(partial)} 2>/dev/null"
        )
        result = self._quiet(caller, session_id, command)
        if result is None or result.status != "completed" or result.exit_code not in COMPGEN_OK_CODES:
            return None
        return [line for line in clean_output(result.stdout).split("\n") if line.strip()]

    def _listing(self, caller: Caller, session_id: str, partial: str, cwd: str) -> List[str]:
        command = f"cd -- {shlex.quote(cwd)} && ls -1A 2>/dev/null"
        result = self._quiet(caller, session_id, command)
        if result is None or result.status != "completed" or result.exit_code != 0:
            return []
        names = clean_output(result.stdout).split("\n")
        return self._filter(names, partial, self.config.COMPLETION_FALLBACK_LIMIT)

    @staticmethod
    def _filter(candidates: List[str], partial: str, limit: int) -> List[str]:
        matches: List[str] = []
        seen = set()
        for item in candidates:
            item = item.strip()
            if not item or not item.startswith(partial) or item in seen:
                continue
            seen.add(item)
            matches.append(item)
            if len(matches) >= limit:
                break
        return matches
