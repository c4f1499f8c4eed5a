"""Data models for qbt-automate: torrent snapshots, condition trees, rules and actions."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern, Tuple, Union

from qbt_automate.utils import parse_tags


# ============================================================================
# Torrent snapshot
# ============================================================================

PAUSED_STATES = frozenset({'pausedDL', 'pausedUP', 'stoppedDL', 'stoppedUP'})


@dataclass(frozen=True)
class TorrentFile:
    """One file inside a torrent, path relative to the save path."""
    path: str
    size: int


@dataclass(frozen=True)
class TrackerEntry:
    """One tracker of a torrent with the status and message the client last saw"""
    url: str
    status: int = 0
    message: str = ''

    @property
    def is_real(self) -> bool:
        """False for the DHT / PeX / LSD pseudo-trackers and disabled entries"""
        return self.status != 0 and not self.url.startswith('** [')


@dataclass(frozen=True)
class TorrentSnapshot:
    """Immutable per-cycle view of a torrent as reported by the client."""
    hash: str
    name: str
    category: str = ''
    tags: Tuple[str, ...] = ()
    state: str = ''
    save_path: str = ''
    content_path: str = ''
    size: int = 0
    total_size: int = 0
    progress: float = 0.0
    downloaded: int = 0
    uploaded: int = 0
    amount_left: int = 0
    ratio: float = 0.0
    availability: float = 0.0
    dl_speed: int = 0
    up_speed: int = 0
    dl_limit: int = -1   # bytes/s, <= 0 means unlimited
    up_limit: int = -1
    ratio_limit: float = -2.0   # -2 global, -1 unlimited
    seeding_time_limit: int = -2   # minutes
    seeding_time: int = 0
    time_active: int = 0
    added_on: int = 0
    completion_on: int = 0
    last_activity: int = 0
    tracker: str = ''
    num_seeds: int = 0
    num_leechs: int = 0
    num_complete: int = 0
    num_incomplete: int = 0
    trackers_count: int = 0
    private: bool = False
    comment: str = ''
    files: Optional[Tuple[TorrentFile, ...]] = None

    @property
    def tags_raw(self) -> str:
        """Tags joined the way qBittorrent reports them"""
        return ', '.join(self.tags)

    @property
    def is_complete(self) -> bool:
        return self.progress >= 1.0

    @property
    def is_paused(self) -> bool:
        return self.state in PAUSED_STATES

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'TorrentSnapshot':
        """
        Build a snapshot from a qBittorrent torrent info dictionary

        Args:
            data: Torrent dict as returned by torrents/info

        Returns:
            TorrentSnapshot
        """
        def num(key: str, default: Any = 0) -> Any:
            value = data.get(key)
            return default if value is None else value

        private = data.get('private')
        if private is None:
            private = data.get('is_private', False)

        return cls(
            hash=str(data.get('hash', '')).lower(),
            name=data.get('name', '') or '',
            category=data.get('category', '') or '',
            tags=tuple(parse_tags(data.get('tags', ''))),
            state=data.get('state', '') or '',
            save_path=data.get('save_path', '') or '',
            content_path=data.get('content_path', '') or '',
            size=int(num('size')),
            total_size=int(num('total_size', num('size'))),
            progress=float(num('progress', 0.0)),
            downloaded=int(num('downloaded')),
            uploaded=int(num('uploaded')),
            amount_left=int(num('amount_left')),
            ratio=float(num('ratio', 0.0)),
            availability=float(num('availability', 0.0)),
            dl_speed=int(num('dlspeed')),
            up_speed=int(num('upspeed')),
            dl_limit=int(num('dl_limit', -1)),
            up_limit=int(num('up_limit', -1)),
            ratio_limit=float(num('ratio_limit', -2.0)),
            seeding_time_limit=int(num('seeding_time_limit', -2)),
            seeding_time=int(num('seeding_time')),
            time_active=int(num('time_active')),
            added_on=int(num('added_on')),
            completion_on=int(num('completion_on')),
            last_activity=int(num('last_activity')),
            tracker=data.get('tracker', '') or '',
            num_seeds=int(num('num_seeds')),
            num_leechs=int(num('num_leechs')),
            num_complete=int(num('num_complete')),
            num_incomplete=int(num('num_incomplete')),
            trackers_count=int(num('trackers_count')),
            private=bool(private),
            comment=data.get('comment', '') or '',
        )


# ============================================================================
# Conditions
# ============================================================================

class FieldKind(Enum):
    """Value type a condition field compares on"""
    STRING = 'string'
    TAGS = 'tags'
    TRACKER = 'tracker'
    STATE = 'state'
    INT = 'int'
    FLOAT = 'float'
    AGE = 'age'
    BOOL = 'bool'
    SCOPE = 'scope'


class ConditionField(str, Enum):
    NAME = 'name'
    HASH = 'hash'
    CATEGORY = 'category'
    TAGS = 'tags'
    SAVE_PATH = 'save_path'
    CONTENT_PATH = 'content_path'
    STATE = 'state'
    TRACKER = 'tracker'
    COMMENT = 'comment'
    SIZE = 'size'
    TOTAL_SIZE = 'total_size'
    DOWNLOADED = 'downloaded'
    UPLOADED = 'uploaded'
    AMOUNT_LEFT = 'amount_left'
    FREE_SPACE = 'free_space'
    ADDED_ON = 'added_on'
    COMPLETION_ON = 'completion_on'
    LAST_ACTIVITY = 'last_activity'
    SEEDING_TIME = 'seeding_time'
    TIME_ACTIVE = 'time_active'
    ADDED_ON_AGE = 'added_on_age'
    COMPLETION_ON_AGE = 'completion_on_age'
    LAST_ACTIVITY_AGE = 'last_activity_age'
    RATIO = 'ratio'
    PROGRESS = 'progress'
    AVAILABILITY = 'availability'
    DL_SPEED = 'dl_speed'
    UP_SPEED = 'up_speed'
    NUM_SEEDS = 'num_seeds'
    NUM_LEECHS = 'num_leechs'
    NUM_COMPLETE = 'num_complete'
    NUM_INCOMPLETE = 'num_incomplete'
    TRACKERS_COUNT = 'trackers_count'
    SAME_CONTENT_COUNT = 'same_content_count'
    GROUP_SIZE = 'group_size'
    IS_GROUPED = 'is_grouped'
    PRIVATE = 'private'
    HARDLINK_SCOPE = 'hardlink_scope'
    IS_UNREGISTERED = 'is_unregistered'
    REGISTERED_SAME_CONTENT_COUNT = 'registered_same_content_count'
    UNREGISTERED_SAME_CONTENT_COUNT = 'unregistered_same_content_count'

    @property
    def kind(self) -> FieldKind:
        return FIELD_KINDS[self]


FIELD_KINDS = {
    ConditionField.NAME: FieldKind.STRING,
    ConditionField.HASH: FieldKind.STRING,
    ConditionField.CATEGORY: FieldKind.STRING,
    ConditionField.TAGS: FieldKind.TAGS,
    ConditionField.SAVE_PATH: FieldKind.STRING,
    ConditionField.CONTENT_PATH: FieldKind.STRING,
    ConditionField.STATE: FieldKind.STATE,
    ConditionField.TRACKER: FieldKind.TRACKER,
    ConditionField.COMMENT: FieldKind.STRING,
    ConditionField.SIZE: FieldKind.INT,
    ConditionField.TOTAL_SIZE: FieldKind.INT,
    ConditionField.DOWNLOADED: FieldKind.INT,
    ConditionField.UPLOADED: FieldKind.INT,
    ConditionField.AMOUNT_LEFT: FieldKind.INT,
    ConditionField.FREE_SPACE: FieldKind.INT,
    ConditionField.ADDED_ON: FieldKind.INT,
    ConditionField.COMPLETION_ON: FieldKind.INT,
    ConditionField.LAST_ACTIVITY: FieldKind.INT,
    ConditionField.SEEDING_TIME: FieldKind.INT,
    ConditionField.TIME_ACTIVE: FieldKind.INT,
    ConditionField.ADDED_ON_AGE: FieldKind.AGE,
    ConditionField.COMPLETION_ON_AGE: FieldKind.AGE,
    ConditionField.LAST_ACTIVITY_AGE: FieldKind.AGE,
    ConditionField.RATIO: FieldKind.FLOAT,
    ConditionField.PROGRESS: FieldKind.FLOAT,
    ConditionField.AVAILABILITY: FieldKind.FLOAT,
    ConditionField.DL_SPEED: FieldKind.INT,
    ConditionField.UP_SPEED: FieldKind.INT,
    ConditionField.NUM_SEEDS: FieldKind.INT,
    ConditionField.NUM_LEECHS: FieldKind.INT,
    ConditionField.NUM_COMPLETE: FieldKind.INT,
    ConditionField.NUM_INCOMPLETE: FieldKind.INT,
    ConditionField.TRACKERS_COUNT: FieldKind.INT,
    ConditionField.SAME_CONTENT_COUNT: FieldKind.INT,
    ConditionField.GROUP_SIZE: FieldKind.INT,
    ConditionField.IS_GROUPED: FieldKind.BOOL,
    ConditionField.PRIVATE: FieldKind.BOOL,
    ConditionField.HARDLINK_SCOPE: FieldKind.SCOPE,
    ConditionField.IS_UNREGISTERED: FieldKind.BOOL,
    ConditionField.REGISTERED_SAME_CONTENT_COUNT: FieldKind.INT,
    ConditionField.UNREGISTERED_SAME_CONTENT_COUNT: FieldKind.INT,
}

# Fields that need tracker messages; rules using them do nothing without that data
TRACKER_HEALTH_FIELDS = frozenset({
    ConditionField.IS_UNREGISTERED,
    ConditionField.REGISTERED_SAME_CONTENT_COUNT,
    ConditionField.UNREGISTERED_SAME_CONTENT_COUNT,
})

# Fields whose numeric value is a byte count (accept "500 GB")
SIZE_FIELDS = frozenset({
    ConditionField.SIZE, ConditionField.TOTAL_SIZE, ConditionField.DOWNLOADED,
    ConditionField.UPLOADED, ConditionField.AMOUNT_LEFT, ConditionField.FREE_SPACE,
    ConditionField.DL_SPEED, ConditionField.UP_SPEED,
})

# Fields whose numeric value is a duration in seconds (accept "30 days")
DURATION_FIELDS = frozenset({
    ConditionField.SEEDING_TIME, ConditionField.TIME_ACTIVE,
    ConditionField.ADDED_ON_AGE, ConditionField.COMPLETION_ON_AGE,
    ConditionField.LAST_ACTIVITY_AGE,
})


class ConditionOperator(str, Enum):
    AND = 'and'
    OR = 'or'
    NOT = 'not'
    EQUAL = 'equal'
    NOT_EQUAL = 'not_equal'
    CONTAINS = 'contains'
    NOT_CONTAINS = 'not_contains'
    STARTS_WITH = 'starts_with'
    ENDS_WITH = 'ends_with'
    MATCHES = 'matches'
    GREATER_THAN = 'greater_than'
    GREATER_THAN_OR_EQUAL = 'greater_than_or_equal'
    LESS_THAN = 'less_than'
    LESS_THAN_OR_EQUAL = 'less_than_or_equal'
    BETWEEN = 'between'
    EXISTS_IN = 'exists_in'
    CONTAINS_IN = 'contains_in'


GROUP_OPERATORS = frozenset({ConditionOperator.AND, ConditionOperator.OR, ConditionOperator.NOT})

STRING_OPERATORS = frozenset({
    ConditionOperator.EQUAL, ConditionOperator.NOT_EQUAL,
    ConditionOperator.CONTAINS, ConditionOperator.NOT_CONTAINS,
    ConditionOperator.STARTS_WITH, ConditionOperator.ENDS_WITH,
    ConditionOperator.MATCHES,
})

NUMERIC_OPERATORS = frozenset({
    ConditionOperator.EQUAL, ConditionOperator.NOT_EQUAL,
    ConditionOperator.GREATER_THAN, ConditionOperator.GREATER_THAN_OR_EQUAL,
    ConditionOperator.LESS_THAN, ConditionOperator.LESS_THAN_OR_EQUAL,
    ConditionOperator.BETWEEN,
})

# Operators whose regex form is inverted
NEGATED_OPERATORS = frozenset({ConditionOperator.NOT_EQUAL, ConditionOperator.NOT_CONTAINS})

MAX_CONDITION_DEPTH = 20


@dataclass(frozen=True)
class ConditionLeaf:
    """A single field comparison"""
    field: ConditionField
    operator: ConditionOperator
    value: Any = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    regex: bool = False
    group_id: Optional[str] = None
    pattern: Optional[Pattern] = field(default=None, compare=False, repr=False)

    @property
    def uses_regex(self) -> bool:
        return self.regex or self.operator == ConditionOperator.MATCHES


@dataclass(frozen=True)
class ConditionGroup:
    """AND / OR over children, or NOT over exactly one child"""
    operator: ConditionOperator
    children: Tuple['ConditionNode', ...]


ConditionNode = Union[ConditionGroup, ConditionLeaf]


def iter_leaves(node: Optional[ConditionNode]):
    """Yield every leaf of a condition tree, depth first"""
    if node is None:
        return
    if isinstance(node, ConditionLeaf):
        yield node
        return
    for child in node.children:
        yield from iter_leaves(child)


def condition_depth(node: Optional[ConditionNode]) -> int:
    """Group levels above the deepest leaf; wrapper NOT nodes count like any other group"""
    if node is None or isinstance(node, ConditionLeaf):
        return 0
    return 1 + max(condition_depth(child) for child in node.children)


def compile_pattern(value: str) -> Pattern:
    """Compile a condition regex: case-insensitive, unanchored"""
    return re.compile(value, re.IGNORECASE)


# ============================================================================
# Actions
# ============================================================================

class ActionKind(str, Enum):
    SPEED_LIMITS = 'speed_limits'
    SHARE_LIMITS = 'share_limits'
    PAUSE = 'pause'
    RESUME = 'resume'
    TAG = 'tag'
    CATEGORY = 'category'
    MOVE = 'move'
    EXTERNAL_PROGRAM = 'external_program'
    DELETE = 'delete'


class DeleteMode(str, Enum):
    KEEP_FILES = 'delete'
    WITH_FILES = 'delete_with_files'
    PRESERVE_CROSS_SEEDS = 'delete_with_files_preserve_cross_seeds'


class TagMode(str, Enum):
    FULL = 'full'
    ADD = 'add'
    REMOVE = 'remove'


@dataclass(frozen=True)
class SpeedLimitAction:
    upload_kib: Optional[int] = None
    download_kib: Optional[int] = None
    kind = ActionKind.SPEED_LIMITS


@dataclass(frozen=True)
class ShareLimitAction:
    ratio_limit: Optional[float] = None
    seeding_time_minutes: Optional[int] = None
    kind = ActionKind.SHARE_LIMITS


@dataclass(frozen=True)
class PauseAction:
    kind = ActionKind.PAUSE


@dataclass(frozen=True)
class ResumeAction:
    kind = ActionKind.RESUME


@dataclass(frozen=True)
class TagAction:
    tags: Tuple[str, ...]
    mode: TagMode = TagMode.FULL
    kind = ActionKind.TAG


@dataclass(frozen=True)
class CategoryAction:
    category: str
    include_cross_seeds: bool = False
    block_if_cross_seed_in_categories: Tuple[str, ...] = ()
    kind = ActionKind.CATEGORY


@dataclass(frozen=True)
class MoveAction:
    path_template: str
    kind = ActionKind.MOVE


@dataclass(frozen=True)
class ExternalProgramAction:
    program: str
    args: Optional[Tuple[str, ...]] = None
    timeout: Optional[float] = None
    kind = ActionKind.EXTERNAL_PROGRAM


@dataclass(frozen=True)
class DeleteAction:
    mode: DeleteMode = DeleteMode.KEEP_FILES
    kind = ActionKind.DELETE


Action = Union[SpeedLimitAction, ShareLimitAction, PauseAction, ResumeAction, TagAction,
               CategoryAction, MoveAction, ExternalProgramAction, DeleteAction]


# ============================================================================
# Grouping and rules
# ============================================================================

class AmbiguousPolicy(str, Enum):
    VERIFY_OVERLAP = 'verify_overlap'
    SKIP = 'skip'


@dataclass(frozen=True)
class GroupDefinition:
    """How torrents are clustered: an ordered list of key fields"""
    id: str
    keys: Tuple[str, ...]
    ambiguous_policy: AmbiguousPolicy = AmbiguousPolicy.VERIFY_OVERLAP
    min_file_overlap_percent: int = 90


@dataclass(frozen=True)
class GroupingConfig:
    default_group_id: Optional[str] = None
    groups: Tuple[GroupDefinition, ...] = ()

    def find(self, group_id: str) -> Optional[GroupDefinition]:
        wanted = group_id.strip().lower()
        for definition in self.groups:
            if definition.id.strip().lower() == wanted:
                return definition
        return None


DEFAULT_RULE_INTERVAL = 900
MIN_RULE_INTERVAL = 60


@dataclass(frozen=True)
class Rule:
    """A parsed, validated automation rule"""
    id: str
    name: str
    instance: str = 'default'
    sort_order: int = 0
    interval: int = DEFAULT_RULE_INTERVAL
    enabled: bool = True
    tracker_pattern: str = '*'
    condition: Optional[ConditionNode] = None
    actions: Tuple[Action, ...] = ()
    grouping: Optional[GroupingConfig] = None

    def action(self, kind: ActionKind) -> Optional[Action]:
        for action in self.actions:
            if action.kind == kind:
                return action
        return None

    @property
    def delete_action(self) -> Optional[DeleteAction]:
        return self.action(ActionKind.DELETE)

    @property
    def is_delete(self) -> bool:
        return self.delete_action is not None

    @property
    def action_kinds(self) -> List[str]:
        return [action.kind.value for action in self.actions]
