"""
External program runner

Programs are configured by id in config.yml:

    programs:
      allow_list: [/usr/local/bin/, /opt/scripts/notify.sh]
      definitions:
        notify:
          path: /opt/scripts/notify.sh
          args: ["{hash}", "{name}"]
          timeout: 30

Each invocation runs detached on a daemon thread with a timeout; the outcome
is reported through a callback once the process exits.
"""

import os
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from qbt_automate.errors import ProgramNotAllowedError
from qbt_automate.logging import get_logger
from qbt_automate.models import TorrentSnapshot
from qbt_automate.templates import render_args

logger = get_logger(__name__)


DEFAULT_PROGRAM_TIMEOUT = 60.0

# callback(success, detail)
CompletionCallback = Callable[[bool, str], None]


@dataclass(frozen=True)
class ProgramDefinition:
    id: str
    path: str
    args: tuple = ()
    timeout: float = DEFAULT_PROGRAM_TIMEOUT


def is_path_allowed(path: str, allow_list: Sequence[str], allow_all: bool = False) -> bool:
    """
    Check an executable against the allow-list

    Entries are exact files or directories (prefix match). Paths are
    resolved before comparing, so '..' and symlinks cannot escape a
    directory entry. An empty list allows nothing unless allow_all is set.
    """
    if allow_all:
        return True
    if not path:
        return False
    resolved = os.path.realpath(path)
    for entry in allow_list:
        if not entry:
            continue
        allowed = os.path.realpath(entry)
        if resolved == allowed:
            return True
        if os.path.isdir(allowed) or entry.endswith(('/', os.sep)):
            prefix = allowed.rstrip(os.sep) + os.sep
            if resolved.startswith(prefix):
                return True
    return False


class ProgramRunner:
    """
    Launches configured external programs for torrents

    Args:
        definitions: Program definitions by id
        allow_list: Allowed executables / directories
        allow_all: Skip the allow-list check entirely
        dry_run: Log instead of executing
    """

    def __init__(self, definitions: Optional[Dict[str, ProgramDefinition]] = None,
                 allow_list: Sequence[str] = (), allow_all: bool = False, dry_run: bool = False):
        self.definitions = definitions or {}
        self.allow_list = list(allow_list)
        self.allow_all = allow_all
        self.dry_run = dry_run
        self._threads: List[threading.Thread] = []

    @classmethod
    def from_config(cls, config, dry_run: bool = False) -> 'ProgramRunner':
        """Build a runner from the 'programs' section of config.yml"""
        definitions = {}
        for program_id, raw in (config.get('programs.definitions', {}) or {}).items():
            if isinstance(raw, str):
                raw = {'path': raw}
            definitions[program_id] = ProgramDefinition(
                id=program_id,
                path=str(raw.get('path', '')),
                args=tuple(str(arg) for arg in raw.get('args', []) or []),
                timeout=float(raw.get('timeout', DEFAULT_PROGRAM_TIMEOUT)),
            )
        return cls(
            definitions=definitions,
            allow_list=config.get('programs.allow_list', []) or [],
            allow_all=bool(config.get('programs.allow_all', False)),
            dry_run=dry_run,
        )

    def build_command(self, program_id: str, torrent: TorrentSnapshot,
                      args: Optional[Sequence[str]] = None) -> List[str]:
        """
        Resolve a program id to a command line for a torrent

        Args:
            program_id: Configured program id
            torrent: Torrent the program runs for
            args: Argument templates overriding the program's defaults

        Returns:
            Command as a list (executable first)

        Raises:
            ProgramNotAllowedError: Unknown program or path not on the allow-list
            TemplateError: Invalid argument template
        """
        definition = self.definitions.get(program_id)
        if definition is None:
            raise ProgramNotAllowedError(program_id, '(not configured)')
        if not is_path_allowed(definition.path, self.allow_list, self.allow_all):
            raise ProgramNotAllowedError(program_id, definition.path)

        templates = definition.args if args is None else args
        return [definition.path] + render_args(templates, torrent)

    def run(self, program_id: str, torrent: TorrentSnapshot, args: Optional[Sequence[str]] = None,
            callback: Optional[CompletionCallback] = None, timeout: Optional[float] = None) -> bool:
        """
        Start a program for a torrent without waiting for it

        Returns:
            True if the program was started (or would be, in dry-run)

        Raises:
            ProgramNotAllowedError: Unknown program or path not on the allow-list
            TemplateError: Invalid argument template
        """
        command = self.build_command(program_id, torrent, args)
        definition = self.definitions[program_id]
        timeout = timeout or definition.timeout or DEFAULT_PROGRAM_TIMEOUT

        if self.dry_run:
            logger.info(f"[DRY-RUN] Would run: {' '.join(command)}")
            return True

        thread = threading.Thread(
            target=self._execute,
            args=(program_id, command, timeout, callback),
            name=f"program-{program_id}-{torrent.hash[:8]}",
            daemon=True,
        )
        thread.start()
        self._threads = [t for t in self._threads if t.is_alive()] + [thread]
        return True

    def _execute(self, program_id: str, command: List[str], timeout: float,
                 callback: Optional[CompletionCallback]):
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            self._complete(callback, False, f"{program_id} timed out after {timeout:g}s")
            return
        except OSError as e:
            self._complete(callback, False, f"{program_id} could not start: {e}")
            return

        if result.returncode == 0:
            self._complete(callback, True, f"{program_id} exited 0")
        else:
            stderr = (result.stderr or '').strip()[:200]
            self._complete(callback, False, f"{program_id} exited {result.returncode}" + (f": {stderr}" if stderr else ''))

    def _complete(self, callback: Optional[CompletionCallback], success: bool, detail: str):
        if success:
            logger.debug(detail)
        else:
            logger.warning(detail)
        if callback is not None:
            try:
                callback(success, detail)
            except Exception as e:
                logger.error(f"Program completion callback failed: {e}")

    def wait(self, timeout: Optional[float] = None):
        """Wait for running programs (used by --once and tests)"""
        for thread in list(self._threads):
            thread.join(timeout)
