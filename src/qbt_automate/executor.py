"""
Action execution

Takes the per-torrent desired state produced by the engine, drops everything
that already matches the torrent's current values, groups the rest by the
value to apply and dispatches it to qBittorrent in batches.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from qbt_automate.activity import ActivityRecorder, Outcome
from qbt_automate.errors import ProgramNotAllowedError, TemplateError
from qbt_automate.grouping import GroupIndex
from qbt_automate.logging import get_logger
from qbt_automate.models import (
    ActionKind, CategoryAction, DeleteMode, ExternalProgramAction, Rule, TorrentSnapshot,
)
from qbt_automate.programs import ProgramRunner
from qbt_automate.templates import render_move_path
from qbt_automate.utils import chunked, normalize_path

logger = get_logger(__name__)


DEFAULT_BATCH_SIZE = 50


@dataclass
class Intent:
    """A value to apply plus the rules that asked for it (last one wins)"""
    value: Any
    rule: Rule
    rule_ids: List[str] = field(default_factory=list)


@dataclass
class DesiredState:
    """Everything the rules of one cycle want for one torrent"""
    torrent: TorrentSnapshot
    intents: Dict[ActionKind, Intent] = field(default_factory=dict)
    tags_add: Dict[str, Rule] = field(default_factory=dict)
    tags_remove: Dict[str, Rule] = field(default_factory=dict)

    def set(self, kind: ActionKind, value: Any, rule: Rule):
        """Record an intent; later rules replace earlier ones"""
        previous = self.intents.get(kind)
        rule_ids = (previous.rule_ids if previous else []) + [rule.id]
        self.intents[kind] = Intent(value=value, rule=rule, rule_ids=rule_ids)

    def clear(self):
        self.intents.clear()
        self.tags_add.clear()
        self.tags_remove.clear()

    @property
    def is_empty(self) -> bool:
        return not (self.intents or self.tags_add or self.tags_remove)


@dataclass
class ExecutionResult:
    """Counters and successful (torrent hash, rule id) pairs of one dispatch"""
    executed: int = 0
    skipped: int = 0
    failed: int = 0
    dry_run: int = 0
    acted: Set[Tuple[str, str]] = field(default_factory=set)


# (torrent, rule that asked for it, detail for the activity log)
_Item = Tuple[TorrentSnapshot, Rule, str]


class ActionExecutor:
    """
    Dispatches desired state to qBittorrent

    Args:
        api: QBittorrentAPI (or compatible)
        recorder: Activity recorder
        instance_id: Instance the torrents belong to
        dry_run: Record what would happen without calling the API
        batch_size: Maximum hashes per API call
        program_runner: Runner for external_program actions
        tracker_aliases: Tracker domain -> display name, for {tracker} in move paths
    """

    def __init__(self, api, recorder: Optional[ActivityRecorder] = None, instance_id: str = 'default',
                 dry_run: bool = False, batch_size: int = DEFAULT_BATCH_SIZE,
                 program_runner: Optional[ProgramRunner] = None,
                 tracker_aliases: Optional[Dict[str, str]] = None):
        self.api = api
        self.recorder = recorder or ActivityRecorder()
        self.instance_id = instance_id
        self.dry_run = dry_run
        self.batch_size = batch_size
        self.program_runner = program_runner
        self.tracker_aliases = tracker_aliases or {}

    # ------------------------------------------------------------------
    # No-op detection
    # ------------------------------------------------------------------

    def _should_skip_idempotent(self, torrent: TorrentSnapshot, kind: ActionKind, value: Any = None) -> bool:
        """
        Check whether an action would not change anything

        Args:
            torrent: Current snapshot
            kind: Action kind
            value: Desired value (bytes/s for limits, (ratio, minutes) for share
                   limits, category name, destination path, tag name)

        Returns:
            True if the torrent already has the desired value
        """
        if kind == ActionKind.PAUSE:
            return torrent.is_paused
        if kind == ActionKind.RESUME:
            return not torrent.is_paused
        if kind == ActionKind.CATEGORY:
            return torrent.category == value
        if kind == ActionKind.MOVE:
            return normalize_path(torrent.save_path) == normalize_path(value)
        if kind == ActionKind.SHARE_LIMITS:
            ratio, minutes = value
            return abs(torrent.ratio_limit - ratio) < 0.005 and torrent.seeding_time_limit == minutes
        return False

    @staticmethod
    def _limit_matches(current: int, desired: int) -> bool:
        """Both unlimited (<= 0) or equal bytes/s"""
        if desired <= 0:
            return current <= 0
        return current == desired

    # ------------------------------------------------------------------
    # Dispatch helpers
    # ------------------------------------------------------------------

    def _record(self, torrent: TorrentSnapshot, rule: Rule, action: str, outcome: str, detail: str = ''):
        self.recorder.record(
            instance_id=self.instance_id,
            rule_id=rule.id,
            rule_name=rule.name,
            torrent_hash=torrent.hash,
            torrent_name=torrent.name,
            action=action,
            outcome=outcome,
            detail=detail,
        )

    def category_blocked(self, torrent: TorrentSnapshot, rule: Rule, action: CategoryAction,
                         others: Iterable[TorrentSnapshot]) -> bool:
        """
        Check a category action against block_if_cross_seed_in_categories

        A blocked rule is recorded as skipped and contributes nothing, so a
        category set by an earlier rule still applies.

        Args:
            torrent: Torrent the rule matched
            rule: Rule asking for the category
            action: Its category action
            others: Other members of the torrent's cross-seed content+save path group
        """
        blocking = {c.casefold() for c in action.block_if_cross_seed_in_categories}
        if not blocking:
            return False
        for other in others:
            if other.category and other.category.casefold() in blocking:
                logger.info(f"Rule '{rule.name}': category change of {torrent.name} blocked, "
                            f"cross-seed {other.name} is in '{other.category}'")
                self._record(torrent, rule, ActionKind.CATEGORY.value, Outcome.SKIPPED,
                             f"cross-seed {other.name} is in category '{other.category}'")
                return True
        return False

    def _dispatch(self, action: str, items: List[_Item], call: Callable[[List[str]], Any],
                  result: ExecutionResult, description: str):
        """Send items in batches; a failing batch is recorded and does not stop the others"""
        for batch in chunked(items, self.batch_size):
            hashes = [torrent.hash for torrent, _, _ in batch]

            if self.dry_run:
                logger.info(f"[DRY-RUN] Would {description} for {len(hashes)} torrent(s)")
                for torrent, rule, detail in batch:
                    self._record(torrent, rule, action, Outcome.DRY_RUN, detail)
                result.dry_run += len(batch)
                continue

            try:
                call(hashes)
            except Exception as e:
                logger.error(f"Failed to {description} for {len(hashes)} torrent(s): {e}")
                for torrent, rule, detail in batch:
                    self._record(torrent, rule, action, Outcome.FAILED, str(e)[:200])
                result.failed += len(batch)
                continue

            logger.info(f"{description} for {len(hashes)} torrent(s)")
            for torrent, rule, detail in batch:
                self._record(torrent, rule, action, Outcome.SUCCESS, detail)
                result.acted.add((torrent.hash, rule.id))
            result.executed += len(batch)

    def _dispatch_grouped(self, action: str, groups: Dict[Any, List[_Item]],
                          make_call: Callable[[Any], Callable[[List[str]], Any]],
                          describe: Callable[[Any], str], result: ExecutionResult):
        for value in sorted(groups, key=repr):
            self._dispatch(action, groups[value], make_call(value), result, describe(value))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, states: Iterable[DesiredState],
                content_index: Optional[GroupIndex] = None,
                content_save_index: Optional[GroupIndex] = None,
                torrents_by_hash: Optional[Dict[str, TorrentSnapshot]] = None) -> ExecutionResult:
        """
        Apply desired state

        Args:
            states: Desired state per torrent
            content_index: cross_seed_content_path group (preserve-cross-seeds deletes)
            content_save_index: cross_seed_content_save_path group (category expansion)
            torrents_by_hash: All current snapshots, for expanded cross-seeds

        Returns:
            ExecutionResult
        """
        states = [s for s in states if not s.is_empty]
        torrents_by_hash = torrents_by_hash or {s.torrent.hash: s.torrent for s in states}
        result = ExecutionResult()

        deleting = [s for s in states if ActionKind.DELETE in s.intents]
        self._execute_deletes(deleting, content_index, result)

        remaining = [s for s in states if ActionKind.DELETE not in s.intents]
        self._execute_limits(remaining, result)
        self._execute_share_limits(remaining, result)
        self._execute_pause_resume(remaining, result)
        self._execute_categories(remaining, content_save_index, torrents_by_hash, result)
        self._execute_tags(remaining, result)
        self._execute_moves(remaining, result)
        self._execute_programs(remaining, result)

        return result

    def _execute_deletes(self, states: List[DesiredState], content_index: Optional[GroupIndex],
                         result: ExecutionResult):
        groups: Dict[bool, List[_Item]] = defaultdict(list)
        for state in states:
            intent = state.intents[ActionKind.DELETE]
            mode: DeleteMode = intent.value
            delete_files = mode != DeleteMode.KEEP_FILES
            detail = mode.value
            if mode == DeleteMode.PRESERVE_CROSS_SEEDS and content_index is not None:
                others = content_index.others_for(state.torrent.hash)
                if others:
                    delete_files = False
                    detail = f"{mode.value}: kept files shared with {len(others)} cross-seed(s)"
            groups[delete_files].append((state.torrent, intent.rule, detail))

        self._dispatch_grouped(
            ActionKind.DELETE.value, groups,
            lambda delete_files: lambda hashes: self.api.delete_torrents(hashes, delete_files=delete_files),
            lambda delete_files: 'delete torrents' + (' and files' if delete_files else ' (keeping files)'),
            result,
        )

    def _execute_limits(self, states: List[DesiredState], result: ExecutionResult):
        upload: Dict[int, List[_Item]] = defaultdict(list)
        download: Dict[int, List[_Item]] = defaultdict(list)

        for state in states:
            intent = state.intents.get(ActionKind.SPEED_LIMITS)
            if intent is None:
                continue
            upload_kib, download_kib = intent.value
            torrent = state.torrent
            if upload_kib is not None:
                desired = upload_kib * 1024 if upload_kib > 0 else -1
                if self._limit_matches(torrent.up_limit, desired):
                    result.skipped += 1
                else:
                    upload[desired].append((torrent, intent.rule, f"upload {upload_kib} KiB/s"))
            if download_kib is not None:
                desired = download_kib * 1024 if download_kib > 0 else -1
                if self._limit_matches(torrent.dl_limit, desired):
                    result.skipped += 1
                else:
                    download[desired].append((torrent, intent.rule, f"download {download_kib} KiB/s"))

        self._dispatch_grouped(
            'upload_limit', upload,
            lambda limit: lambda hashes: self.api.set_upload_limit(hashes, limit),
            lambda limit: f"set upload limit {limit} B/s",
            result,
        )
        self._dispatch_grouped(
            'download_limit', download,
            lambda limit: lambda hashes: self.api.set_download_limit(hashes, limit),
            lambda limit: f"set download limit {limit} B/s",
            result,
        )

    def _execute_share_limits(self, states: List[DesiredState], result: ExecutionResult):
        groups: Dict[Tuple[float, int], List[_Item]] = defaultdict(list)
        for state in states:
            intent = state.intents.get(ActionKind.SHARE_LIMITS)
            if intent is None:
                continue
            torrent = state.torrent
            ratio, minutes = intent.value
            desired = (
                torrent.ratio_limit if ratio is None else ratio,
                torrent.seeding_time_limit if minutes is None else minutes,
            )
            if self._should_skip_idempotent(torrent, ActionKind.SHARE_LIMITS, desired):
                result.skipped += 1
                continue
            groups[desired].append((torrent, intent.rule, f"ratio {desired[0]:g}, seeding {desired[1]} min"))

        self._dispatch_grouped(
            ActionKind.SHARE_LIMITS.value, groups,
            lambda limits: lambda hashes: self.api.set_share_limits(hashes, ratio_limit=limits[0],
                                                                    seeding_time_limit=limits[1]),
            lambda limits: f"set share limits ratio={limits[0]:g} seeding_time={limits[1]}",
            result,
        )

    def _execute_pause_resume(self, states: List[DesiredState], result: ExecutionResult):
        pause: List[_Item] = []
        resume: List[_Item] = []
        for state in states:
            for kind, items in ((ActionKind.PAUSE, pause), (ActionKind.RESUME, resume)):
                intent = state.intents.get(kind)
                if intent is None:
                    continue
                if self._should_skip_idempotent(state.torrent, kind):
                    result.skipped += 1
                else:
                    items.append((state.torrent, intent.rule, ''))

        self._dispatch(ActionKind.PAUSE.value, pause, self.api.stop_torrents, result, 'pause torrents')
        self._dispatch(ActionKind.RESUME.value, resume, self.api.start_torrents, result, 'resume torrents')

    def _execute_categories(self, states: List[DesiredState], content_save_index: Optional[GroupIndex],
                            torrents_by_hash: Dict[str, TorrentSnapshot], result: ExecutionResult):
        groups: Dict[str, List[_Item]] = defaultdict(list)
        own = {s.torrent.hash for s in states if ActionKind.CATEGORY in s.intents}
        claimed: Set[str] = set()

        for state in states:
            intent = state.intents.get(ActionKind.CATEGORY)
            if intent is None:
                continue
            action: CategoryAction = intent.value
            torrent = state.torrent

            others = []
            if content_save_index is not None:
                others = [torrents_by_hash[h] for h in content_save_index.others_for(torrent.hash)
                          if h in torrents_by_hash]

            targets = [(torrent, '')]
            if action.include_cross_seeds:
                # A cross-seed with its own category intent keeps it
                targets += [(o, f"cross-seed of {torrent.name}") for o in others if o.hash not in own]

            for target, detail in targets:
                if target.hash in claimed:
                    continue
                claimed.add(target.hash)
                if self._should_skip_idempotent(target, ActionKind.CATEGORY, action.category):
                    result.skipped += 1
                    continue
                groups[action.category].append((target, intent.rule, detail or action.category))

        self._dispatch_grouped(
            ActionKind.CATEGORY.value, groups,
            lambda category: lambda hashes: self.api.set_category(hashes, category),
            lambda category: f"set category '{category}'",
            result,
        )

    def _execute_tags(self, states: List[DesiredState], result: ExecutionResult):
        adds: Dict[str, List[_Item]] = defaultdict(list)
        removes: Dict[str, List[_Item]] = defaultdict(list)
        for state in states:
            current = {tag.lower() for tag in state.torrent.tags}
            for tag, rule in state.tags_add.items():
                if tag.lower() in current:
                    result.skipped += 1
                else:
                    adds[tag].append((state.torrent, rule, f"+{tag}"))
            for tag, rule in state.tags_remove.items():
                if tag.lower() not in current:
                    result.skipped += 1
                else:
                    removes[tag].append((state.torrent, rule, f"-{tag}"))

        # Adds before removes
        self._dispatch_grouped(
            'add_tags', adds,
            lambda tag: lambda hashes: self.api.add_tags(hashes, [tag]),
            lambda tag: f"add tag '{tag}'",
            result,
        )
        self._dispatch_grouped(
            'remove_tags', removes,
            lambda tag: lambda hashes: self.api.remove_tags(hashes, [tag]),
            lambda tag: f"remove tag '{tag}'",
            result,
        )

    def _execute_moves(self, states: List[DesiredState], result: ExecutionResult):
        groups: Dict[str, List[_Item]] = defaultdict(list)
        for state in states:
            intent = state.intents.get(ActionKind.MOVE)
            if intent is None:
                continue
            torrent = state.torrent
            try:
                destination = render_move_path(intent.value, torrent, self.tracker_aliases)
            except TemplateError as e:
                self._record(torrent, intent.rule, ActionKind.MOVE.value, Outcome.FAILED, e.format_error())
                result.failed += 1
                continue
            if self._should_skip_idempotent(torrent, ActionKind.MOVE, destination):
                result.skipped += 1
                continue
            groups[destination].append((torrent, intent.rule, destination))

        self._dispatch_grouped(
            ActionKind.MOVE.value, groups,
            lambda location: lambda hashes: self.api.set_location(hashes, location),
            lambda location: f"move to {location}",
            result,
        )

    def _execute_programs(self, states: List[DesiredState], result: ExecutionResult):
        action_name = ActionKind.EXTERNAL_PROGRAM.value
        for state in states:
            intent = state.intents.get(ActionKind.EXTERNAL_PROGRAM)
            if intent is None:
                continue
            torrent = state.torrent
            rule = intent.rule
            action: ExternalProgramAction = intent.value

            if self.program_runner is None:
                self._record(torrent, rule, action_name, Outcome.FAILED, 'no program runner configured')
                result.failed += 1
                continue

            if self.dry_run:
                try:
                    command = self.program_runner.build_command(action.program, torrent, action.args)
                except (ProgramNotAllowedError, TemplateError) as e:
                    self._record(torrent, rule, action_name, Outcome.FAILED, e.format_error())
                    result.failed += 1
                    continue
                logger.info(f"[DRY-RUN] Would run: {' '.join(command)}")
                self._record(torrent, rule, action_name, Outcome.DRY_RUN, action.program)
                result.dry_run += 1
                continue

            callback = self._program_callback(torrent, rule)
            try:
                self.program_runner.run(action.program, torrent, action.args, callback=callback,
                                        timeout=action.timeout)
            except (ProgramNotAllowedError, TemplateError) as e:
                logger.warning(str(e))
                self._record(torrent, rule, action_name, Outcome.FAILED, e.format_error())
                result.failed += 1
                continue
            result.executed += 1
            result.acted.add((torrent.hash, rule.id))

    def _program_callback(self, torrent: TorrentSnapshot, rule: Rule):
        def on_complete(success: bool, detail: str):
            outcome = Outcome.SUCCESS if success else Outcome.FAILED
            self._record(torrent, rule, ActionKind.EXTERNAL_PROGRAM.value, outcome, detail)
        return on_complete
