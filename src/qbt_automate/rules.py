"""
Rule parser and validator

Turns rule dictionaries from rules.yml into immutable Rule objects. Everything
that can be wrong with a rule is detected here, at load time, so evaluation
never has to deal with bad input:

- unknown fields/operators, operators that do not fit the field type
- invalid regular expressions
- condition trees deeper than MAX_CONDITION_DEPTH
- a delete action combined with any other action
- keep-files delete combined with a free_space condition
- free_space conditions of delete rules placed under OR/NOT
- malformed grouping definitions
"""

import re
from typing import Any, Dict, List, Optional, Tuple

from qbt_automate.errors import FieldError, OperatorError, RuleValidationError
from qbt_automate.grouping import BUILTIN_GROUPS, GROUP_KEY_FIELDS
from qbt_automate.hardlinks import HardlinkScope
from qbt_automate.logging import get_logger
from qbt_automate.models import (
    DEFAULT_RULE_INTERVAL, DURATION_FIELDS, GROUP_OPERATORS, MAX_CONDITION_DEPTH,
    MIN_RULE_INTERVAL, NUMERIC_OPERATORS, SIZE_FIELDS, STRING_OPERATORS,
    AmbiguousPolicy, CategoryAction, ConditionField, ConditionGroup, ConditionLeaf,
    ConditionNode, ConditionOperator, DeleteAction, DeleteMode, ExternalProgramAction,
    FieldKind, GroupDefinition, GroupingConfig, MoveAction, PauseAction, ResumeAction,
    Rule, ShareLimitAction, SpeedLimitAction, TagAction, TagMode, compile_pattern, condition_depth,
    iter_leaves,
)
from qbt_automate.templates import validate_template
from qbt_automate.utils import parse_duration, parse_size, parse_tags

logger = get_logger(__name__)


OPERATOR_ALIASES = {
    '==': ConditionOperator.EQUAL,
    '=': ConditionOperator.EQUAL,
    'eq': ConditionOperator.EQUAL,
    'equals': ConditionOperator.EQUAL,
    '!=': ConditionOperator.NOT_EQUAL,
    'ne': ConditionOperator.NOT_EQUAL,
    'not_equals': ConditionOperator.NOT_EQUAL,
    '>': ConditionOperator.GREATER_THAN,
    'gt': ConditionOperator.GREATER_THAN,
    '>=': ConditionOperator.GREATER_THAN_OR_EQUAL,
    'gte': ConditionOperator.GREATER_THAN_OR_EQUAL,
    '<': ConditionOperator.LESS_THAN,
    'lt': ConditionOperator.LESS_THAN,
    '<=': ConditionOperator.LESS_THAN_OR_EQUAL,
    'lte': ConditionOperator.LESS_THAN_OR_EQUAL,
    '~': ConditionOperator.MATCHES,
    'regex': ConditionOperator.MATCHES,
    'startswith': ConditionOperator.STARTS_WITH,
    'endswith': ConditionOperator.ENDS_WITH,
}

GROUP_KEYWORDS = {
    'all': ConditionOperator.AND,
    'and': ConditionOperator.AND,
    'any': ConditionOperator.OR,
    'or': ConditionOperator.OR,
    'not': ConditionOperator.NOT,
    'none': ConditionOperator.OR,
}

STRING_KINDS = frozenset({FieldKind.STRING, FieldKind.TAGS, FieldKind.TRACKER, FieldKind.STATE})
NUMERIC_KINDS = frozenset({FieldKind.INT, FieldKind.FLOAT, FieldKind.AGE})
EQUALITY_OPERATORS = frozenset({ConditionOperator.EQUAL, ConditionOperator.NOT_EQUAL})
CROSS_CATEGORY_OPERATORS = frozenset({ConditionOperator.EXISTS_IN, ConditionOperator.CONTAINS_IN})


def slugify(name: str) -> str:
    """Derive a rule id from its name"""
    slug = re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')
    return slug or 'rule'


def parse_operator(raw: Any, rule_name: str, field_name: str) -> ConditionOperator:
    text = str(raw or '').strip().lower()
    if text in OPERATOR_ALIASES:
        return OPERATOR_ALIASES[text]
    try:
        return ConditionOperator(text)
    except ValueError:
        raise OperatorError(rule_name, str(raw), field_name)


def parse_field(raw: Any, rule_name: str) -> ConditionField:
    try:
        return ConditionField(str(raw or '').strip().lower())
    except ValueError:
        raise FieldError(rule_name, str(raw))


def _parse_number(field: ConditionField, value: Any, rule_name: str) -> float:
    try:
        if field in SIZE_FIELDS:
            return parse_size(value)
        if field in DURATION_FIELDS:
            return parse_duration(value)
        if field.kind == FieldKind.FLOAT:
            return float(value)
        if isinstance(value, str) and not re.fullmatch(r'-?\d+', value.strip()):
            raise ValueError(value)
        return int(value)
    except (TypeError, ValueError):
        raise RuleValidationError(rule_name, f"Value {value!r} is not a valid number for field '{field.value}'")


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', '1', 'yes', 'on')


def parse_leaf(data: Dict[str, Any], rule_name: str) -> ConditionLeaf:
    """
    Parse a leaf condition

    Args:
        data: Leaf dictionary ({field, operator, value, min, max, regex, group_id})
        rule_name: Rule name for error messages

    Returns:
        ConditionLeaf with values coerced to the field's natural type

    Raises:
        RuleValidationError: If the leaf is malformed
    """
    field = parse_field(data.get('field'), rule_name)
    operator = parse_operator(data.get('operator', 'equal'), rule_name, field.value)
    regex = _parse_bool(data.get('regex', False))
    kind = field.kind

    if operator in GROUP_OPERATORS:
        raise OperatorError(rule_name, operator.value, field.value)

    value = data.get('value')
    min_value = max_value = None
    pattern = None

    if operator in CROSS_CATEGORY_OPERATORS:
        if field != ConditionField.NAME:
            raise OperatorError(rule_name, operator.value, field.value)
        # Target category; '' means uncategorized
        value = '' if value is None else str(value)
        return ConditionLeaf(field=field, operator=operator, value=value)

    if kind in STRING_KINDS:
        if operator not in STRING_OPERATORS:
            raise OperatorError(rule_name, operator.value, field.value)
        value = '' if value is None else str(value)
        if regex or operator == ConditionOperator.MATCHES:
            try:
                pattern = compile_pattern(value)
            except re.error as e:
                raise RuleValidationError(rule_name, f"Invalid regular expression {value!r}: {e}")

    elif kind in NUMERIC_KINDS:
        if operator not in NUMERIC_OPERATORS:
            raise OperatorError(rule_name, operator.value, field.value)
        if regex:
            raise RuleValidationError(rule_name, f"Regex is not supported for numeric field '{field.value}'")
        if operator == ConditionOperator.BETWEEN:
            low, high = data.get('min'), data.get('max')
            if isinstance(value, (list, tuple)) and len(value) == 2 and low is None and high is None:
                low, high = value
            if low is None or high is None:
                raise RuleValidationError(rule_name, f"'between' on '{field.value}' needs both min and max")
            min_value = _parse_number(field, low, rule_name)
            max_value = _parse_number(field, high, rule_name)
            if min_value > max_value:
                raise RuleValidationError(rule_name, f"'between' on '{field.value}' has min greater than max")
            value = None
        else:
            if value is None:
                raise RuleValidationError(rule_name, f"Condition on '{field.value}' needs a value")
            value = _parse_number(field, value, rule_name)

    elif kind == FieldKind.BOOL:
        if operator not in EQUALITY_OPERATORS or regex:
            raise OperatorError(rule_name, operator.value, field.value)
        value = _parse_bool(True if value is None else value)

    elif kind == FieldKind.SCOPE:
        if operator not in EQUALITY_OPERATORS or regex:
            raise OperatorError(rule_name, operator.value, field.value)
        try:
            value = HardlinkScope(str(value).strip().lower()).value
        except ValueError:
            choices = ', '.join(scope.value for scope in HardlinkScope)
            raise RuleValidationError(rule_name, f"Hardlink scope must be one of: {choices}")

    group_id = data.get('group_id')
    if group_id is not None:
        if field not in (ConditionField.GROUP_SIZE, ConditionField.IS_GROUPED):
            raise RuleValidationError(rule_name, f"group_id is only valid on group_size/is_grouped, not '{field.value}'")
        group_id = str(group_id).strip()

    return ConditionLeaf(
        field=field,
        operator=operator,
        value=value,
        min_value=min_value,
        max_value=max_value,
        regex=regex,
        group_id=group_id or None,
        pattern=pattern,
    )


def parse_condition(data: Any, rule_name: str, depth: int = 0) -> ConditionNode:
    """
    Parse a condition tree

    Groups are written as {all: [...]}, {any: [...]}, {none: [...]} or
    {not: {...}}; a bare list is shorthand for 'all'. Any node may carry 'negate: true'.

    Raises:
        RuleValidationError: If the tree is malformed
    """
    if depth > MAX_CONDITION_DEPTH:
        raise RuleValidationError(rule_name, f"Conditions are nested deeper than {MAX_CONDITION_DEPTH} levels")

    if isinstance(data, list):
        data = {'all': data}

    if not isinstance(data, dict):
        raise RuleValidationError(rule_name, f"Condition must be a mapping, got {type(data).__name__}")

    negate = _parse_bool(data.get('negate', False))
    keywords = [key for key in data if key in GROUP_KEYWORDS]

    if keywords:
        if len(keywords) > 1 or 'field' in data:
            raise RuleValidationError(rule_name, "A condition node must be exactly one of all/any/none/not or a field comparison")
        keyword = keywords[0]
        operator = GROUP_KEYWORDS[keyword]
        raw_children = data[keyword]

        if operator == ConditionOperator.NOT:
            if isinstance(raw_children, list):
                if len(raw_children) != 1:
                    raise RuleValidationError(rule_name, "'not' takes exactly one condition")
                raw_children = raw_children[0]
            children: Tuple[ConditionNode, ...] = (parse_condition(raw_children, rule_name, depth + 1),)
        else:
            if not isinstance(raw_children, list) or not raw_children:
                raise RuleValidationError(rule_name, f"'{keyword}' needs a non-empty list of conditions")
            children = tuple(parse_condition(child, rule_name, depth + 1) for child in raw_children)

        node: ConditionNode = ConditionGroup(operator=operator, children=children)
        if keyword == 'none':
            node = ConditionGroup(operator=ConditionOperator.NOT, children=(node,))
    elif 'field' in data:
        node = parse_leaf(data, rule_name)
    else:
        raise RuleValidationError(rule_name, "Condition needs 'field' or one of all/any/none/not")

    if negate:
        node = ConditionGroup(operator=ConditionOperator.NOT, children=(node,))

    if depth == 0 and condition_depth(node) > MAX_CONDITION_DEPTH:
        raise RuleValidationError(rule_name, f"Conditions are nested deeper than {MAX_CONDITION_DEPTH} levels")
    return node


def _settings(value: Any) -> Optional[Dict[str, Any]]:
    """Normalize an action entry; None when disabled"""
    if value is None or value is False:
        return None
    if value is True:
        return {}
    if isinstance(value, dict):
        if not _parse_bool(value.get('enabled', True)):
            return None
        return value
    return {'value': value}


def parse_actions(data: Any, rule_name: str) -> tuple:
    """
    Parse the actions mapping of a rule

    Raises:
        RuleValidationError: On unknown actions or invalid settings
    """
    if not isinstance(data, dict) or not data:
        raise RuleValidationError(rule_name, "'actions' must be a non-empty mapping")

    actions = []
    for name, raw in data.items():
        settings = _settings(raw)
        if settings is None:
            continue

        if name == 'speed_limits':
            upload = settings.get('upload_kib')
            download = settings.get('download_kib')
            if upload is None and download is None:
                raise RuleValidationError(rule_name, "speed_limits needs upload_kib and/or download_kib")
            for label, limit in (('upload_kib', upload), ('download_kib', download)):
                if limit is not None and (not isinstance(limit, int) or limit < 0):
                    raise RuleValidationError(rule_name, f"speed_limits.{label} must be a non-negative integer (0 = unlimited)")
            actions.append(SpeedLimitAction(upload_kib=upload, download_kib=download))

        elif name == 'share_limits':
            ratio = settings.get('ratio_limit')
            minutes = settings.get('seeding_time_minutes')
            if ratio is None and minutes is None:
                raise RuleValidationError(rule_name, "share_limits needs ratio_limit and/or seeding_time_minutes")
            try:
                ratio = None if ratio is None else float(ratio)
                minutes = None if minutes is None else int(minutes)
            except (TypeError, ValueError):
                raise RuleValidationError(rule_name, "share_limits values must be numbers")
            if (ratio is not None and ratio < -2) or (minutes is not None and minutes < -2):
                raise RuleValidationError(rule_name, "share_limits values must be >= -2 (-2 global, -1 unlimited)")
            actions.append(ShareLimitAction(ratio_limit=ratio, seeding_time_minutes=minutes))

        elif name == 'pause':
            actions.append(PauseAction())

        elif name == 'resume':
            actions.append(ResumeAction())

        elif name == 'tag':
            tags = parse_tags(settings.get('tags', settings.get('value')))
            if not tags:
                raise RuleValidationError(rule_name, "tag action needs at least one tag")
            try:
                mode = TagMode(str(settings.get('mode', 'full')).lower())
            except ValueError:
                raise RuleValidationError(rule_name, "tag.mode must be one of: full, add, remove")
            actions.append(TagAction(tags=tuple(tags), mode=mode))

        elif name == 'category':
            category = settings.get('category', settings.get('value'))
            if not category or not str(category).strip():
                raise RuleValidationError(rule_name, "category action needs a category name")
            actions.append(CategoryAction(
                category=str(category).strip(),
                include_cross_seeds=_parse_bool(settings.get('include_cross_seeds', False)),
                block_if_cross_seed_in_categories=tuple(
                    parse_tags(settings.get('block_if_cross_seed_in_categories', []))
                ),
            ))

        elif name == 'move':
            template = settings.get('path', settings.get('value'))
            if not template or not str(template).strip():
                raise RuleValidationError(rule_name, "move action needs a path template")
            problem = validate_template(str(template))
            if problem:
                raise RuleValidationError(rule_name, f"move.path: {problem}")
            actions.append(MoveAction(path_template=str(template)))

        elif name == 'external_program':
            program = settings.get('program', settings.get('value'))
            if not program:
                raise RuleValidationError(rule_name, "external_program needs a program id")
            args = settings.get('args')
            if args is not None and not isinstance(args, list):
                raise RuleValidationError(rule_name, "external_program.args must be a list")
            timeout = settings.get('timeout')
            if timeout is not None:
                try:
                    timeout = float(parse_duration(timeout))
                except (TypeError, ValueError) as e:
                    raise RuleValidationError(rule_name, f"external_program.timeout: {e}")
                if timeout <= 0:
                    raise RuleValidationError(rule_name, "external_program.timeout must be positive")
            actions.append(ExternalProgramAction(
                program=str(program),
                args=tuple(str(arg) for arg in args) if args is not None else None,
                timeout=timeout,
            ))

        elif name == 'delete':
            raw_mode = settings.get('mode', settings.get('value', DeleteMode.KEEP_FILES.value))
            try:
                mode = DeleteMode(str(raw_mode).lower())
            except ValueError:
                choices = ', '.join(m.value for m in DeleteMode)
                raise RuleValidationError(rule_name, f"delete.mode must be one of: {choices}")
            actions.append(DeleteAction(mode=mode))

        else:
            raise RuleValidationError(rule_name, f"Unknown action '{name}'")

    if not actions:
        raise RuleValidationError(rule_name, "Rule has no enabled actions")

    if any(isinstance(a, DeleteAction) for a in actions) and len(actions) > 1:
        raise RuleValidationError(rule_name, "A delete action cannot be combined with other actions")

    return tuple(actions)


def parse_grouping(data: Any, rule_name: str) -> Optional[GroupingConfig]:
    """Parse a rule's grouping block"""
    if data is None:
        return None
    if not isinstance(data, dict):
        raise RuleValidationError(rule_name, "'grouping' must be a mapping")

    groups = []
    for raw in data.get('groups', []) or []:
        if not isinstance(raw, dict) or not raw.get('id'):
            raise RuleValidationError(rule_name, "Each grouping.groups entry needs an 'id'")
        keys = raw.get('keys') or []
        if not isinstance(keys, list) or not keys:
            raise RuleValidationError(rule_name, f"Group '{raw['id']}' needs a non-empty 'keys' list")
        unknown = [k for k in keys if k not in GROUP_KEY_FIELDS]
        if unknown:
            raise RuleValidationError(
                rule_name,
                f"Group '{raw['id']}' has unknown key fields: {', '.join(map(str, unknown))} "
                f"(valid: {', '.join(GROUP_KEY_FIELDS)})"
            )
        try:
            policy = AmbiguousPolicy(raw.get('ambiguous_policy', AmbiguousPolicy.VERIFY_OVERLAP.value))
        except ValueError:
            raise RuleValidationError(rule_name, f"Group '{raw['id']}' ambiguous_policy must be verify_overlap or skip")
        overlap = raw.get('min_file_overlap_percent', 90)
        if not isinstance(overlap, int) or not 1 <= overlap <= 100:
            raise RuleValidationError(rule_name, f"Group '{raw['id']}' min_file_overlap_percent must be 1-100")
        groups.append(GroupDefinition(
            id=str(raw['id']).strip(),
            keys=tuple(keys),
            ambiguous_policy=policy,
            min_file_overlap_percent=overlap,
        ))

    default_group_id = data.get('default_group_id')
    config = GroupingConfig(
        default_group_id=str(default_group_id).strip() if default_group_id else None,
        groups=tuple(groups),
    )
    if config.default_group_id and not _group_exists(config, config.default_group_id):
        raise RuleValidationError(rule_name, f"Unknown default_group_id '{config.default_group_id}'")
    return config


def _group_exists(grouping: Optional[GroupingConfig], group_id: str) -> bool:
    if group_id in BUILTIN_GROUPS:
        return True
    return grouping is not None and grouping.find(group_id) is not None


def free_space_leaf(node: Optional[ConditionNode]) -> Optional[ConditionLeaf]:
    """Return the first free_space leaf of a tree, if any"""
    for leaf in iter_leaves(node):
        if leaf.field == ConditionField.FREE_SPACE:
            return leaf
    return None


def _free_space_only_under_and(node: Optional[ConditionNode]) -> bool:
    if node is None or isinstance(node, ConditionLeaf):
        return True
    if node.operator != ConditionOperator.AND:
        return free_space_leaf(node) is None
    return all(_free_space_only_under_and(child) for child in node.children)


def validate_rule(rule: Rule):
    """
    Cross-field validation of a parsed rule

    Raises:
        RuleValidationError: If the rule is inconsistent
    """
    if rule.interval < MIN_RULE_INTERVAL:
        raise RuleValidationError(rule.name, f"interval must be at least {MIN_RULE_INTERVAL} seconds")

    for leaf in iter_leaves(rule.condition):
        if leaf.group_id and not _group_exists(rule.grouping, leaf.group_id):
            raise RuleValidationError(rule.name, f"Unknown group_id '{leaf.group_id}'")

    delete = rule.delete_action
    fs_leaf = free_space_leaf(rule.condition)
    if delete is None or fs_leaf is None:
        return

    if delete.mode == DeleteMode.KEEP_FILES:
        raise RuleValidationError(
            rule.name,
            "A free_space condition cannot be combined with delete mode 'delete' (keep files): it never frees space"
        )
    if sum(1 for leaf in iter_leaves(rule.condition) if leaf.field == ConditionField.FREE_SPACE) > 1:
        raise RuleValidationError(rule.name, "Delete rules support a single free_space condition")
    if fs_leaf.operator not in (ConditionOperator.LESS_THAN, ConditionOperator.LESS_THAN_OR_EQUAL):
        raise RuleValidationError(rule.name, "free_space in a delete rule must use '<' or '<='")
    if not _free_space_only_under_and(rule.condition):
        raise RuleValidationError(rule.name, "free_space in a delete rule must not be inside 'any' or 'not'")


def parse_rule(data: Dict[str, Any], position: int = 0) -> Rule:
    """
    Parse and validate one rule dictionary

    Args:
        data: Rule dictionary from rules.yml
        position: Index in the file, used as default sort order

    Returns:
        Rule

    Raises:
        RuleValidationError: If the rule is invalid
    """
    if not isinstance(data, dict):
        raise RuleValidationError(f"#{position + 1}", "Rule must be a mapping")

    name = data.get('name')
    if not name:
        raise RuleValidationError(f"#{position + 1}", "Rule is missing required field 'name'")
    name = str(name)

    try:
        interval = parse_duration(data.get('interval', DEFAULT_RULE_INTERVAL))
        sort_order = int(data.get('sort_order', position))
    except (TypeError, ValueError) as e:
        raise RuleValidationError(name, str(e))

    raw_conditions = data.get('conditions')
    condition = parse_condition(raw_conditions, name) if raw_conditions else None

    rule = Rule(
        id=str(data.get('id') or slugify(name)),
        name=name,
        instance=str(data.get('instance', 'default')),
        sort_order=sort_order,
        interval=interval,
        enabled=_parse_bool(data.get('enabled', True)),
        tracker_pattern=str(data.get('tracker', '*') or '*'),
        condition=condition,
        actions=parse_actions(data.get('actions'), name),
        grouping=parse_grouping(data.get('grouping'), name),
    )
    validate_rule(rule)
    return rule


def parse_rules(rules_data: List[Dict[str, Any]]) -> List[Rule]:
    """
    Parse a list of rule dictionaries

    Returns:
        Rules in file order

    Raises:
        RuleValidationError: On the first invalid rule or a duplicate id
    """
    rules = []
    seen = {}
    for position, data in enumerate(rules_data or []):
        rule = parse_rule(data, position)
        key = (rule.instance, rule.id)
        if key in seen:
            raise RuleValidationError(rule.name, f"Duplicate rule id '{rule.id}' (also used by '{seen[key]}')")
        seen[key] = rule.name
        rules.append(rule)
    logger.debug(f"Parsed {len(rules)} rules")
    return rules
