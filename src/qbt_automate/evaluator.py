"""
Condition evaluation

ConditionEvaluator.evaluate() is a pure function of (condition tree, torrent
snapshot, context). Everything that needs I/O (hardlink scopes, group
membership, category index, free space) is computed by the engine beforehand
and passed in through EvalContext.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from qbt_automate.grouping import GROUP_CROSS_SEED_CONTENT_SAVE_PATH, CategoryIndex, GroupIndex
from qbt_automate.hardlinks import HardlinkIndex
from qbt_automate.health import TrackerHealth
from qbt_automate.logging import get_logger
from qbt_automate.models import (
    NEGATED_OPERATORS, PAUSED_STATES, ConditionField, ConditionGroup,
    ConditionLeaf, ConditionNode, ConditionOperator, TRACKER_HEALTH_FIELDS, TorrentSnapshot,
)
from qbt_automate.utils import extract_domain, normalize_path

logger = get_logger(__name__)


DOWNLOADING_STATES = frozenset({'downloading', 'stalledDL', 'metaDL', 'queuedDL', 'allocating', 'checkingDL', 'forcedDL'})
UPLOADING_STATES = frozenset({'uploading', 'stalledUP', 'queuedUP', 'checkingUP', 'forcedUP'})
ACTIVE_STATES = frozenset({'downloading', 'uploading', 'forcedDL', 'forcedUP'})
CHECKING_STATES = frozenset({'checkingDL', 'checkingUP', 'checkingResumeData'})

# Status buckets matched by state 'equal' / 'not_equal'
STATE_BUCKETS: Dict[str, Callable[[TorrentSnapshot], bool]] = {
    'completed': lambda t: t.progress >= 1.0,
    'downloading': lambda t: t.state in DOWNLOADING_STATES,
    'uploading': lambda t: t.state in UPLOADING_STATES,
    'seeding': lambda t: t.state in UPLOADING_STATES,
    'paused': lambda t: t.state in PAUSED_STATES,
    'stopped': lambda t: t.state in PAUSED_STATES,
    'running': lambda t: t.state not in PAUSED_STATES,
    'resumed': lambda t: t.state not in PAUSED_STATES,
    'active': lambda t: t.state in ACTIVE_STATES,
    'inactive': lambda t: t.state not in ACTIVE_STATES,
    'stalled': lambda t: t.state in ('stalledDL', 'stalledUP'),
    'stalled_uploading': lambda t: t.state == 'stalledUP',
    'stalled_seeding': lambda t: t.state == 'stalledUP',
    'stalled_downloading': lambda t: t.state == 'stalledDL',
    'checking': lambda t: t.state in CHECKING_STATES,
    'moving': lambda t: t.state == 'moving',
    'errored': lambda t: t.state in ('error', 'missingFiles'),
    'error': lambda t: t.state in ('error', 'missingFiles'),
    'missingfiles': lambda t: t.state == 'missingFiles',
}


@dataclass
class EvalContext:
    """
    Per-cycle data the evaluator reads

    Attributes:
        now: Current unix time, used by the *_age fields
        free_space: Free bytes on the target filesystem (None = unknown)
        space_to_clear: Bytes already projected to be freed this cycle
        ignore_free_space: Treat every free_space leaf as true (projector candidate pass)
        local_access: The instance's files are visible to this process
        hardlinks: Hardlink index (None when not built)
        group_indexes: Group indexes for the active rule, keyed by lowercased group id
        default_group_id: Group used by group_size/is_grouped leaves without group_id
        category_index: Names per category for exists_in / contains_in
        content_counts: Torrents per normalized content path
        tracker_aliases: Tracker domain -> display name
        tracker_health: Unregistered set for the is_unregistered and *_same_content_count
            health fields (None = unavailable, those leaves evaluate false)
    """
    now: float = field(default_factory=time.time)
    free_space: Optional[int] = None
    space_to_clear: int = 0
    ignore_free_space: bool = False
    local_access: bool = False
    hardlinks: Optional[HardlinkIndex] = None
    group_indexes: Dict[str, GroupIndex] = field(default_factory=dict)
    default_group_id: Optional[str] = None
    category_index: Optional[CategoryIndex] = None
    content_counts: Dict[str, int] = field(default_factory=dict)
    tracker_aliases: Dict[str, str] = field(default_factory=dict)
    tracker_health: Optional[TrackerHealth] = None

    def group_index(self, group_id: Optional[str]) -> Optional[GroupIndex]:
        wanted = (group_id or self.default_group_id or GROUP_CROSS_SEED_CONTENT_SAVE_PATH).strip().lower()
        return self.group_indexes.get(wanted)


class ConditionEvaluator:
    """Evaluates condition trees against torrent snapshots"""

    def evaluate(self, node: Optional[ConditionNode], torrent: TorrentSnapshot,
                 context: Optional[EvalContext] = None) -> bool:
        """
        Evaluate a condition tree

        Args:
            node: Root condition (None matches every torrent)
            torrent: Torrent snapshot
            context: Per-cycle context (defaults to an empty one)

        Returns:
            True if the torrent matches
        """
        if node is None:
            return True
        return self._evaluate(node, torrent, context or EvalContext())

    def _evaluate(self, node: ConditionNode, torrent: TorrentSnapshot, context: EvalContext) -> bool:
        if isinstance(node, ConditionGroup):
            if node.operator == ConditionOperator.AND:
                return all(self._evaluate(child, torrent, context) for child in node.children)
            if node.operator == ConditionOperator.OR:
                return any(self._evaluate(child, torrent, context) for child in node.children)
            if node.operator == ConditionOperator.NOT:
                return not self._evaluate(node.children[0], torrent, context)
            return False

        return self._evaluate_leaf(node, torrent, context)

    # ------------------------------------------------------------------
    # Leaves
    # ------------------------------------------------------------------

    def _evaluate_leaf(self, leaf: ConditionLeaf, torrent: TorrentSnapshot, context: EvalContext) -> bool:
        f = leaf.field

        if f == ConditionField.NAME:
            if leaf.operator == ConditionOperator.EXISTS_IN:
                return context.category_index is not None and context.category_index.exists_in(torrent, leaf.value)
            if leaf.operator == ConditionOperator.CONTAINS_IN:
                return context.category_index is not None and context.category_index.contains_in(torrent, leaf.value)
            return compare_string(torrent.name, leaf)
        if f == ConditionField.TAGS:
            return compare_tags(torrent, leaf)
        if f == ConditionField.TRACKER:
            return compare_tracker(torrent.tracker, leaf, context.tracker_aliases)
        if f == ConditionField.STATE:
            return compare_state(torrent, leaf)
        if f in (ConditionField.HASH, ConditionField.CATEGORY, ConditionField.SAVE_PATH,
                 ConditionField.CONTENT_PATH, ConditionField.COMMENT):
            return compare_string(getattr(torrent, f.value), leaf)

        if f == ConditionField.FREE_SPACE:
            if context.ignore_free_space:
                return True
            if context.free_space is None:
                return False
            return compare_number(context.free_space + context.space_to_clear, leaf)

        if f == ConditionField.ADDED_ON_AGE:
            return compare_age(torrent.added_on, leaf, context.now)
        if f == ConditionField.COMPLETION_ON_AGE:
            return torrent.completion_on > 0 and compare_age(torrent.completion_on, leaf, context.now)
        if f == ConditionField.LAST_ACTIVITY_AGE:
            return torrent.last_activity > 0 and compare_age(torrent.last_activity, leaf, context.now)

        if f == ConditionField.SAME_CONTENT_COUNT:
            key = normalize_path(torrent.content_path)
            return compare_number(context.content_counts.get(key, 1), leaf)
        if f in (ConditionField.GROUP_SIZE, ConditionField.IS_GROUPED):
            index = context.group_index(leaf.group_id)
            size = index.size_for(torrent.hash) if index else 0
            if f == ConditionField.GROUP_SIZE:
                return compare_number(size, leaf)
            return compare_bool(size > 1, leaf)

        if f in TRACKER_HEALTH_FIELDS:
            health = context.tracker_health
            if health is None:
                return False
            if f == ConditionField.IS_UNREGISTERED:
                return compare_bool(health.is_unregistered(torrent.hash), leaf)
            if f == ConditionField.REGISTERED_SAME_CONTENT_COUNT:
                return compare_number(health.registered_same_content(torrent.hash), leaf)
            return compare_number(health.unregistered_same_content(torrent.hash), leaf)

        if f == ConditionField.PRIVATE:
            return compare_bool(torrent.private, leaf)
        if f == ConditionField.HARDLINK_SCOPE:
            if not context.local_access or context.hardlinks is None:
                return False
            scope = context.hardlinks.scope_for(torrent.hash)
            if scope is None:
                return False
            if leaf.operator == ConditionOperator.EQUAL:
                return scope.value == leaf.value
            return scope.value != leaf.value

        return compare_number(getattr(torrent, f.value), leaf)


# ----------------------------------------------------------------------
# Comparison helpers
# ----------------------------------------------------------------------

def _regex_result(value: str, leaf: ConditionLeaf) -> bool:
    matched = leaf.pattern is not None and leaf.pattern.search(value or '') is not None
    return not matched if leaf.operator in NEGATED_OPERATORS else matched


def _positive_string_match(value: str, leaf: ConditionLeaf) -> bool:
    """Non-negated form of a string operator, case-insensitive"""
    value = (value or '').lower()
    wanted = str(leaf.value or '').lower()
    op = leaf.operator
    if op in (ConditionOperator.EQUAL, ConditionOperator.NOT_EQUAL):
        return value == wanted
    if op in (ConditionOperator.CONTAINS, ConditionOperator.NOT_CONTAINS):
        return wanted in value
    if op == ConditionOperator.STARTS_WITH:
        return value.startswith(wanted)
    if op == ConditionOperator.ENDS_WITH:
        return value.endswith(wanted)
    return False


def compare_string(value: str, leaf: ConditionLeaf) -> bool:
    """
    Compare a string field

    With the regex toggle (or 'matches') the operator collapses to a match
    test; only not_equal / not_contains invert it.
    """
    if leaf.uses_regex:
        return _regex_result(value, leaf)
    matched = _positive_string_match(value, leaf)
    return not matched if leaf.operator in NEGATED_OPERATORS else matched


def compare_tags(torrent: TorrentSnapshot, leaf: ConditionLeaf) -> bool:
    """Per-tag comparison; regex runs on the raw ', '-joined string"""
    if leaf.uses_regex:
        return _regex_result(torrent.tags_raw, leaf)
    wanted = str(leaf.value or '').strip()
    single = ConditionLeaf(field=leaf.field, operator=leaf.operator, value=wanted)
    matched = any(_positive_string_match(tag, single) for tag in torrent.tags)
    return not matched if leaf.operator in NEGATED_OPERATORS else matched


def tracker_candidates(url: str, aliases: Dict[str, str]) -> List[str]:
    """Raw URL, extracted domain and configured display name"""
    candidates = []
    if url:
        candidates.append(url)
    domain = extract_domain(url)
    if domain:
        candidates.append(domain)
        alias = aliases.get(domain)
        if alias:
            candidates.append(alias)
    return candidates


def compare_tracker(url: str, leaf: ConditionLeaf, aliases: Dict[str, str]) -> bool:
    """
    Compare the tracker field

    Positive operators match if any candidate matches; negated operators are
    true only when no candidate matches.
    """
    candidates = tracker_candidates(url, aliases) or ['']
    if leaf.uses_regex:
        matched = leaf.pattern is not None and any(leaf.pattern.search(c) for c in candidates)
    else:
        matched = any(_positive_string_match(c, leaf) for c in candidates)
    return not matched if leaf.operator in NEGATED_OPERATORS else matched


def compare_state(torrent: TorrentSnapshot, leaf: ConditionLeaf) -> bool:
    """Status buckets for equal / not_equal, raw state string otherwise"""
    if leaf.uses_regex or leaf.operator not in (ConditionOperator.EQUAL, ConditionOperator.NOT_EQUAL):
        return compare_string(torrent.state, leaf)

    wanted = str(leaf.value or '').strip()
    if not wanted:
        matched = False
    else:
        bucket = STATE_BUCKETS.get(wanted.lower())
        matched = bucket(torrent) if bucket else torrent.state.lower() == wanted.lower()
    return matched if leaf.operator == ConditionOperator.EQUAL else not matched


def compare_number(value: float, leaf: ConditionLeaf) -> bool:
    op = leaf.operator
    if op == ConditionOperator.BETWEEN:
        return leaf.min_value <= value <= leaf.max_value
    target = leaf.value
    if op == ConditionOperator.EQUAL:
        return value == target
    if op == ConditionOperator.NOT_EQUAL:
        return value != target
    if op == ConditionOperator.GREATER_THAN:
        return value > target
    if op == ConditionOperator.GREATER_THAN_OR_EQUAL:
        return value >= target
    if op == ConditionOperator.LESS_THAN:
        return value < target
    if op == ConditionOperator.LESS_THAN_OR_EQUAL:
        return value <= target
    return False


def compare_bool(value: bool, leaf: ConditionLeaf) -> bool:
    if leaf.operator == ConditionOperator.EQUAL:
        return value == bool(leaf.value)
    if leaf.operator == ConditionOperator.NOT_EQUAL:
        return value != bool(leaf.value)
    return False


def compare_age(timestamp: int, leaf: ConditionLeaf, now: float) -> bool:
    """Age in seconds (clamped at 0) compared against the leaf"""
    age = max(int(now) - int(timestamp), 0)
    return compare_number(age, leaf)
