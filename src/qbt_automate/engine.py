"""
Rules engine - one evaluation cycle for one qBittorrent instance

A cycle fetches the torrent list once, builds the per-cycle context (free
space, hardlink index, group indexes, category index), walks the rules in
sort order folding every match into a desired state per torrent, and hands
the result to the ActionExecutor.

Conflict resolution while folding:
- the first matching delete rule wins; the torrent drops out of every later
  rule and intents from earlier rules are discarded
- pause is an OR; a resume is ignored once something asked for a pause
- tags fold per tag against the current tags plus earlier pending changes
- for every other action kind the last matching rule wins
- a category rule blocked by a cross-seed's category contributes nothing
- a rule reading the tracker health fields is skipped while that data is unavailable
"""

import fnmatch
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from qbt_automate.activity import ActivityRecorder
from qbt_automate.evaluator import ConditionEvaluator, EvalContext
from qbt_automate.executor import ActionExecutor, DesiredState, ExecutionResult
from qbt_automate.free_space import FreeSpaceProjector, Projection, stat_free_space
from qbt_automate.grouping import (
    GROUP_CROSS_SEED_CONTENT_PATH, GROUP_CROSS_SEED_CONTENT_SAVE_PATH, BUILTIN_GROUPS,
    CategoryIndex, GroupIndex, build_group_index, content_path_counts, find_definition,
)
from qbt_automate.hardlinks import HardlinkIndex, build_hardlink_index
from qbt_automate.health import DEFAULT_UNREGISTERED_MESSAGES, TrackerHealth, build_tracker_health
from qbt_automate.logging import get_logger
from qbt_automate.models import (
    ActionKind, ConditionField, DeleteMode, GroupDefinition, Rule, TagMode,
    TRACKER_HEALTH_FIELDS, TorrentFile, TorrentSnapshot, iter_leaves,
)
from qbt_automate.programs import ProgramRunner
from qbt_automate.rules import free_space_leaf
from qbt_automate.utils import extract_domain, format_bytes

logger = get_logger(__name__)


_PATTERN_SEPARATORS = re.compile(r'[,;|]')


def tracker_matches(pattern: str, tracker_url: str, aliases: Optional[Dict[str, str]] = None) -> bool:
    """
    Check a rule's tracker pattern against a torrent's tracker

    '*' (or empty) matches everything. Otherwise the pattern is a list of
    comma, semicolon or pipe separated entries; each entry is a glob matched
    against the tracker domain and its display name, and an entry starting
    with '.' matches the domain and every subdomain.
    """
    pattern = (pattern or '').strip()
    if not pattern or pattern == '*':
        return True

    domain = extract_domain(tracker_url)
    candidates = [domain] if domain else []
    alias = (aliases or {}).get(domain) if domain else None
    if alias:
        candidates.append(alias.lower())
    if not candidates:
        return False

    for entry in _PATTERN_SEPARATORS.split(pattern):
        entry = entry.strip().lower()
        if not entry:
            continue
        if entry == '*':
            return True
        if entry.startswith('.'):
            if domain == entry[1:] or domain.endswith(entry):
                return True
            continue
        if any(fnmatch.fnmatchcase(candidate, entry) for candidate in candidates):
            return True
    return False


def uses_tracker_health(rule: Rule) -> bool:
    return any(leaf.field in TRACKER_HEALTH_FIELDS for leaf in iter_leaves(rule.condition))


class RuleStats:
    """Statistics of one cycle"""

    def __init__(self):
        self.total_torrents = 0
        self.processed = 0
        self.rules_evaluated = 0
        self.rules_matched = 0
        self.actions_executed = 0
        self.actions_skipped = 0
        self.actions_failed = 0
        self.actions_dry_run = 0
        self.debounced = 0
        self.errors = 0
        self.acted: Set[Tuple[str, str]] = set()

    def add_execution(self, result: ExecutionResult):
        self.actions_executed += result.executed
        self.actions_skipped += result.skipped
        self.actions_failed += result.failed
        self.actions_dry_run += result.dry_run
        self.acted |= result.acted

    def to_dict(self) -> Dict[str, int]:
        return {
            'total_torrents': self.total_torrents,
            'torrents_processed': self.processed,
            'rules_evaluated': self.rules_evaluated,
            'rules_matched': self.rules_matched,
            'actions_executed': self.actions_executed,
            'actions_skipped': self.actions_skipped,
            'actions_failed': self.actions_failed,
            'actions_dry_run': self.actions_dry_run,
            'debounced': self.debounced,
            'errors': self.errors,
        }


@dataclass
class DeletePreview:
    """What a delete rule would remove right now"""
    rule_id: str
    rule_name: str
    mode: str
    total: int = 0
    examples: List[Dict[str, Any]] = field(default_factory=list)
    free_space: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _example(torrent: TorrentSnapshot) -> Dict[str, Any]:
    return {
        'hash': torrent.hash,
        'name': torrent.name,
        'size': torrent.size,
        'category': torrent.category,
        'tracker': extract_domain(torrent.tracker),
        'added_on': torrent.added_on,
    }


class _CycleData:
    """Lazily built, cycle-scoped lookups shared by every rule"""

    def __init__(self, engine: 'RulesEngine', torrents: List[TorrentSnapshot]):
        self.engine = engine
        self.torrents = torrents
        self.by_hash = {t.hash: t for t in torrents}
        self._files: Dict[str, Optional[Tuple[TorrentFile, ...]]] = {}
        self._groups: Dict[GroupDefinition, GroupIndex] = {}
        self._hardlinks: Optional[HardlinkIndex] = None
        self._hardlinks_built = False
        self._health: Optional[TrackerHealth] = None
        self._health_built = False
        self.category_index = CategoryIndex(torrents)
        self.content_counts = content_path_counts(torrents)

    def load_files(self, torrent_hash: str) -> Optional[Tuple[TorrentFile, ...]]:
        if torrent_hash not in self._files:
            try:
                self._files[torrent_hash] = tuple(self.engine.api.get_files(torrent_hash))
            except Exception as e:
                logger.debug(f"Cannot fetch files for {torrent_hash}: {e}")
                self._files[torrent_hash] = None
        return self._files[torrent_hash]

    def prefetch_files(self, hashes: Sequence[str]):
        missing = [h for h in hashes if h not in self._files]
        if not missing:
            return
        with ThreadPoolExecutor(max_workers=self.engine.max_workers) as pool:
            list(pool.map(self.load_files, missing))

    def hardlinks(self) -> Optional[HardlinkIndex]:
        """Hardlink index, only for instances with local filesystem access"""
        if not self.engine.local_access:
            return None
        if not self._hardlinks_built:
            self._hardlinks_built = True
            self.prefetch_files([t.hash for t in self.torrents])
            files_by_hash = {h: files for h, files in self._files.items() if files is not None}
            self._hardlinks = build_hardlink_index(self.torrents, files_by_hash,
                                                   max_workers=self.engine.max_workers)
        return self._hardlinks

    def tracker_health(self) -> Optional[TrackerHealth]:
        """Unregistered set from tracker messages, None when no tracker list could be read"""
        if not self._health_built:
            self._health_built = True
            self._health = build_tracker_health(
                self.torrents, self.engine.api.get_trackers,
                phrases=self.engine.unregistered_messages, max_workers=self.engine.max_workers,
            )
        return self._health

    def group_index(self, definition: GroupDefinition) -> GroupIndex:
        if definition not in self._groups:
            hardlinks = self.hardlinks() if 'hardlink_signature' in definition.keys else None
            self._groups[definition] = build_group_index(
                definition, self.torrents, hardlinks=hardlinks,
                file_loader=self.load_files, max_workers=self.engine.max_workers,
            )
        return self._groups[definition]

    def builtin(self, group_id: str) -> GroupIndex:
        return self.group_index(BUILTIN_GROUPS[group_id])


class RulesEngine:
    """
    Evaluates rules against one instance's torrents and applies the result

    Args:
        api: QBittorrentAPI (or compatible)
        config: Config instance
        dry_run: Record outcomes without changing anything
        instance_id: Instance the API points at
        recorder: Activity recorder shared with the scheduler / server
        program_runner: Runner for external_program actions
    """

    def __init__(self, api, config, dry_run: bool = False, instance_id: str = 'default',
                 recorder: Optional[ActivityRecorder] = None,
                 program_runner: Optional[ProgramRunner] = None):
        self.api = api
        self.config = config
        self.dry_run = dry_run
        self.instance_id = instance_id
        self.instance = config.get_instance(instance_id)
        self.local_access = bool(self.instance.get('local_filesystem_access', False))
        self.max_workers = int(config.get('engine.max_workers', 8) or 8)
        self.tracker_aliases = config.get_tracker_aliases()
        self.unregistered_messages = tuple(
            config.get('trackers.unregistered_messages') or DEFAULT_UNREGISTERED_MESSAGES)

        self.evaluator = ConditionEvaluator()
        self.executor = ActionExecutor(
            api,
            recorder=recorder,
            instance_id=instance_id,
            dry_run=dry_run,
            batch_size=int(config.get('engine.batch_size', 50) or 50),
            program_runner=program_runner,
            tracker_aliases=self.tracker_aliases,
        )
        self.stats = RuleStats()

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def _instance_rules(self, rules: Optional[Iterable[Rule]]) -> List[Rule]:
        if rules is None:
            rules = self.config.get_rules()
        selected = [r for r in rules if r.enabled and r.instance == self.instance_id]
        return sorted(selected, key=lambda r: (r.sort_order, r.id))

    def _free_space(self) -> Optional[int]:
        """Free bytes from the configured source; None when unavailable"""
        source = str(self.instance.get('free_space_source', 'client')).lower()
        try:
            if source == 'path':
                path = self.instance.get('free_space_path')
                if not path:
                    logger.warning(f"[{self.instance_id}] free_space_source is 'path' but free_space_path is not set")
                    return None
                return stat_free_space(path)
            return self.api.get_free_space()
        except Exception as e:
            logger.warning(f"[{self.instance_id}] Cannot determine free space: {e}")
            return None

    def _context(self, data: _CycleData, rule: Rule, now: Optional[float],
                 free_space: Optional[int], space_to_clear: int) -> EvalContext:
        """Evaluation context for one rule"""
        leaves = list(iter_leaves(rule.condition))
        grouping = rule.grouping
        custom = grouping.groups if grouping else ()
        default_group_id = grouping.default_group_id if grouping else None

        group_indexes: Dict[str, GroupIndex] = {}
        for leaf in leaves:
            if leaf.field not in (ConditionField.GROUP_SIZE, ConditionField.IS_GROUPED):
                continue
            group_id = leaf.group_id or default_group_id or GROUP_CROSS_SEED_CONTENT_SAVE_PATH
            definition = find_definition(group_id, custom)
            if definition is not None:
                group_indexes[group_id.strip().lower()] = data.group_index(definition)

        needs_hardlinks = any(leaf.field == ConditionField.HARDLINK_SCOPE for leaf in leaves)

        context = EvalContext(
            free_space=free_space,
            space_to_clear=space_to_clear,
            local_access=self.local_access,
            hardlinks=data.hardlinks() if needs_hardlinks else None,
            group_indexes=group_indexes,
            default_group_id=default_group_id,
            category_index=data.category_index,
            content_counts=data.content_counts,
            tracker_aliases=self.tracker_aliases,
            tracker_health=data.tracker_health() if uses_tracker_health(rule) else None,
        )
        if now is not None:
            context.now = now
        return context

    # ------------------------------------------------------------------
    # Folding
    # ------------------------------------------------------------------

    @staticmethod
    def _fold_tags(state: DesiredState, pending: Dict[str, str], rule: Rule, matched: bool):
        """Apply a rule's tag action to the pending tag set of one torrent"""
        action = rule.action(ActionKind.TAG)
        if action is None:
            return

        add = matched and action.mode in (TagMode.FULL, TagMode.ADD)
        remove = not matched and action.mode in (TagMode.FULL, TagMode.REMOVE)

        for tag in action.tags:
            key = tag.lower()
            if add and key not in pending:
                pending[key] = tag
                state.tags_remove.pop(tag, None)
                state.tags_add[tag] = rule
            elif remove and key in pending:
                del pending[key]
                state.tags_add.pop(tag, None)
                state.tags_remove[tag] = rule

    def _fold_actions(self, state: DesiredState, rule: Rule, data: _CycleData):
        """Merge a matching non-delete rule's actions into the desired state"""
        for action in rule.actions:
            kind = action.kind
            if kind == ActionKind.SPEED_LIMITS:
                previous = state.intents.get(kind)
                upload, download = previous.value if previous else (None, None)
                value = (
                    action.upload_kib if action.upload_kib is not None else upload,
                    action.download_kib if action.download_kib is not None else download,
                )
                state.set(kind, value, rule)
            elif kind == ActionKind.SHARE_LIMITS:
                previous = state.intents.get(kind)
                ratio, minutes = previous.value if previous else (None, None)
                value = (
                    action.ratio_limit if action.ratio_limit is not None else ratio,
                    action.seeding_time_minutes if action.seeding_time_minutes is not None else minutes,
                )
                state.set(kind, value, rule)
            elif kind == ActionKind.PAUSE:
                state.intents.pop(ActionKind.RESUME, None)
                state.set(kind, True, rule)
            elif kind == ActionKind.RESUME:
                if ActionKind.PAUSE not in state.intents:
                    state.set(kind, True, rule)
            elif kind == ActionKind.CATEGORY:
                if action.block_if_cross_seed_in_categories:
                    index = data.builtin(GROUP_CROSS_SEED_CONTENT_SAVE_PATH)
                    others = [data.by_hash[h] for h in index.others_for(state.torrent.hash) if h in data.by_hash]
                    if self.executor.category_blocked(state.torrent, rule, action, others):
                        continue
                state.set(kind, action, rule)
            elif kind == ActionKind.MOVE:
                state.set(kind, action.path_template, rule)
            elif kind == ActionKind.EXTERNAL_PROGRAM:
                state.set(kind, action, rule)
            # Tags are folded separately, for matches and non-matches alike

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run(self, rules: Optional[Iterable[Rule]] = None,
            debounced: Optional[Set[Tuple[str, str]]] = None,
            now: Optional[float] = None) -> RuleStats:
        """
        Run one cycle

        Args:
            rules: Rules to evaluate (default: every enabled rule of this instance)
            debounced: (torrent hash, rule id) pairs that must not be evaluated
            now: Unix time for age conditions (default: current time)

        Returns:
            RuleStats, including the (hash, rule id) pairs acted on

        Raises:
            ConnectionError / AuthenticationError / APIError: If torrents cannot be listed
        """
        self.stats = RuleStats()
        debounced = debounced or set()
        rules = self._instance_rules(rules)

        torrents = sorted(self.api.get_torrents(), key=lambda t: t.hash)
        self.stats.total_torrents = len(torrents)
        logger.info(f"[{self.instance_id}] Evaluating {len(rules)} rule(s) against {len(torrents)} torrent(s)")

        if not rules or not torrents:
            return self.stats

        data = _CycleData(self, torrents)
        needs_free_space = any(free_space_leaf(rule.condition) is not None for rule in rules)
        free_space = self._free_space() if needs_free_space else None
        space_to_clear = 0

        states: Dict[str, DesiredState] = {t.hash: DesiredState(torrent=t) for t in torrents}
        pending_tags: Dict[str, Dict[str, str]] = {t.hash: {tag.lower(): tag for tag in t.tags} for t in torrents}
        deleted: Set[str] = set()
        touched: Set[str] = set()

        for rule in rules:
            self.stats.rules_evaluated += 1
            context = self._context(data, rule, now, free_space, space_to_clear)
            if context.tracker_health is None and uses_tracker_health(rule):
                logger.warning(f"[{self.instance_id}] Skipping rule '{rule.name}': tracker health is unavailable")
                continue
            eligible = []
            for torrent in torrents:
                if torrent.hash in deleted:
                    continue
                if not tracker_matches(rule.tracker_pattern, torrent.tracker, self.tracker_aliases):
                    continue
                if (torrent.hash, rule.id) in debounced:
                    self.stats.debounced += 1
                    continue
                eligible.append(torrent)

            fs_leaf = free_space_leaf(rule.condition) if rule.is_delete else None
            if fs_leaf is not None:
                projection = self._project(rule, eligible, context, data, fs_leaf)
                if projection is not None:
                    space_to_clear += projection.space_to_clear
                    for torrent in projection.accepted:
                        self._mark_delete(states[torrent.hash], rule, deleted)
                        touched.add(torrent.hash)
                continue

            for torrent in eligible:
                state = states[torrent.hash]
                try:
                    matched = self.evaluator.evaluate(rule.condition, torrent, context)
                except Exception as e:
                    logger.error(f"[{self.instance_id}] Rule '{rule.name}' failed on {torrent.name}: {e}")
                    self.stats.errors += 1
                    continue

                if rule.is_delete:
                    if not matched:
                        continue
                    if not torrent.is_complete:
                        logger.debug(f"Rule '{rule.name}': not deleting incomplete torrent {torrent.name}")
                        continue
                    self.stats.rules_matched += 1
                    self._mark_delete(state, rule, deleted)
                    touched.add(torrent.hash)
                    continue

                self._fold_tags(state, pending_tags[torrent.hash], rule, matched)
                if matched:
                    self.stats.rules_matched += 1
                    self._fold_actions(state, rule, data)
                if not state.is_empty:
                    touched.add(torrent.hash)

        self.stats.processed = len(touched)

        result = self.executor.execute(
            [states[h] for h in sorted(touched)],
            content_index=data.builtin(GROUP_CROSS_SEED_CONTENT_PATH),
            content_save_index=data.builtin(GROUP_CROSS_SEED_CONTENT_SAVE_PATH),
            torrents_by_hash=data.by_hash,
        )
        self.stats.add_execution(result)

        logger.info(
            f"[{self.instance_id}] Cycle complete: {self.stats.rules_matched} match(es), "
            f"{result.executed} executed, {result.skipped} unchanged, {result.failed} failed"
            + (f", {result.dry_run} dry-run" if result.dry_run else '')
        )
        return self.stats

    def _mark_delete(self, state: DesiredState, rule: Rule, deleted: Set[str]):
        """A delete supersedes everything earlier rules asked for"""
        state.clear()
        state.set(ActionKind.DELETE, rule.delete_action.mode, rule)
        deleted.add(state.torrent.hash)

    def _project(self, rule: Rule, eligible: List[TorrentSnapshot], context: EvalContext,
                 data: _CycleData, fs_leaf) -> Optional[Projection]:
        """Select the oldest candidates needed to get free space back above the threshold"""
        if context.free_space is None:
            logger.warning(f"[{self.instance_id}] Rule '{rule.name}' skipped: free space unknown")
            return None

        start = context.free_space + context.space_to_clear
        projector = FreeSpaceProjector(
            fs_leaf,
            rule.delete_action.mode,
            content_index=data.builtin(GROUP_CROSS_SEED_CONTENT_PATH),
            hardlinks=data.hardlinks(),
        )
        if not projector.satisfies(start):
            return Projection(start_free=start, projected_free=start)

        candidate_context = replace(context, ignore_free_space=True)
        candidates = [
            t for t in eligible
            if t.is_complete and self.evaluator.evaluate(rule.condition, t, candidate_context)
        ]
        projection = projector.project(candidates, start)
        self.stats.rules_matched += len(projection.accepted)

        logger.info(
            f"[{self.instance_id}] Rule '{rule.name}': {len(projection.accepted)} of {len(candidates)} "
            f"candidate(s) needed, free space {format_bytes(start)} -> {format_bytes(projection.projected_free)}"
        )
        return projection

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def preview_delete(self, rule: Rule, limit: int = 25, offset: int = 0,
                       now: Optional[float] = None) -> DeletePreview:
        """
        Show what a delete rule would remove, without acting

        Args:
            rule: A delete rule
            limit: Page size of examples
            offset: Page offset

        Returns:
            DeletePreview; for free_space rules `free_space` holds the
            accepted and eligible views of the projection

        Raises:
            ValueError: If the rule is not a delete rule
        """
        if not rule.is_delete:
            raise ValueError(f"Rule '{rule.name}' is not a delete rule")

        mode: DeleteMode = rule.delete_action.mode
        preview = DeletePreview(rule_id=rule.id, rule_name=rule.name, mode=mode.value)

        torrents = sorted(self.api.get_torrents(), key=lambda t: t.hash)
        data = _CycleData(self, torrents)
        eligible = [t for t in torrents if tracker_matches(rule.tracker_pattern, t.tracker, self.tracker_aliases)]
        fs_leaf = free_space_leaf(rule.condition)
        free_space = self._free_space() if fs_leaf is not None else None
        context = self._context(data, rule, now, free_space, 0)

        if fs_leaf is None:
            matches = [t for t in eligible if t.is_complete and self.evaluator.evaluate(rule.condition, t, context)]
            matches.sort(key=lambda t: (t.added_on, t.hash))
            preview.total = len(matches)
            preview.examples = [_example(t) for t in matches[offset:offset + limit]]
            return preview

        if free_space is None:
            preview.free_space = {'error': 'free space unknown'}
            return preview

        candidate_context = replace(context, ignore_free_space=True)
        candidates = [t for t in eligible if t.is_complete and self.evaluator.evaluate(rule.condition, t, candidate_context)]
        projector = FreeSpaceProjector(
            fs_leaf, mode,
            content_index=data.builtin(GROUP_CROSS_SEED_CONTENT_PATH),
            hardlinks=data.hardlinks(),
        )
        projection = projector.project(candidates, free_space)

        preview.total = len(projection.accepted)
        preview.examples = [_example(t) for t in projection.accepted[offset:offset + limit]]
        preview.free_space = {
            'threshold': fs_leaf.value,
            'current': projection.start_free,
            'projected': projection.projected_free,
            'space_to_clear': projection.space_to_clear,
            'accepted_total': len(projection.accepted),
            'eligible_total': len(projection.eligible),
            'eligible': [_example(t) for t in projection.eligible[offset:offset + limit]],
        }
        return preview
