"""
Path and argument templates

Move paths and external program arguments use str.format style placeholders:

    /data/sorted/{category}/{isolation_folder}
    --hash {hash} --name {name}
"""

import re
from string import Formatter
from typing import Dict, List, Mapping, Optional, Sequence

from qbt_automate.errors import TemplateError
from qbt_automate.models import TorrentSnapshot
from qbt_automate.utils import extract_domain


MOVE_PLACEHOLDERS = frozenset({'name', 'hash', 'category', 'tracker', 'isolation_folder', 'save_path'})

ARG_PLACEHOLDERS = frozenset({
    'hash', 'name', 'save_path', 'content_path', 'category', 'tags', 'state',
    'size', 'progress', 'tracker', 'comment',
})

WINDOWS_RESERVED_NAMES = frozenset(
    {'CON', 'PRN', 'AUX', 'NUL'}
    | {f'COM{i}' for i in range(1, 10)}
    | {f'LPT{i}' for i in range(1, 10)}
)

_INVALID_SEGMENT_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')

_formatter = Formatter()


def sanitize_path_segment(value: str) -> str:
    """
    Make a string safe to use as a single path segment

    Strips characters invalid on common filesystems and control characters,
    trims trailing dots and spaces, prefixes Windows reserved device names
    with '_' and turns an empty result into '_'.

    Examples:
        >>> sanitize_path_segment('Movie: Part 1?')
        'Movie Part 1'
        >>> sanitize_path_segment('CON')
        '_CON'
    """
    cleaned = _INVALID_SEGMENT_CHARS.sub('', value or '').strip().rstrip('. ')
    if not cleaned:
        return '_'
    if cleaned.split('.')[0].upper() in WINDOWS_RESERVED_NAMES:
        cleaned = '_' + cleaned
    return cleaned


def isolation_folder(torrent: TorrentSnapshot) -> str:
    """Per-torrent folder name: first 8 hash characters + '_' + sanitized name"""
    return f"{torrent.hash[:8]}_{sanitize_path_segment(torrent.name)}"


def placeholders(template: str) -> List[str]:
    """
    Placeholder names used by a template

    Raises:
        ValueError: If the template has unbalanced braces
    """
    names = []
    for _, field_name, format_spec, conversion in _formatter.parse(template):
        if field_name is None:
            continue
        if format_spec or conversion:
            raise ValueError(f"format specs are not supported in {{{field_name}}}")
        names.append(field_name)
    return names


def validate_template(template: str, allowed: frozenset = MOVE_PLACEHOLDERS) -> Optional[str]:
    """Return a description of what is wrong with a template, or None"""
    try:
        names = placeholders(template)
    except ValueError as e:
        return str(e)
    unknown = sorted({name for name in names if name not in allowed})
    if unknown:
        return f"unknown placeholder(s): {', '.join('{' + n + '}' for n in unknown)}"
    return None


def _render(template: str, values: Mapping[str, str], allowed: frozenset) -> str:
    problem = validate_template(template, allowed)
    if problem:
        raise TemplateError(template, problem)
    return template.format_map(values)


def render_move_path(template: str, torrent: TorrentSnapshot, tracker_aliases: Optional[Dict[str, str]] = None) -> str:
    """
    Render a move destination for a torrent

    Args:
        template: Path template
        torrent: Torrent being moved
        tracker_aliases: Tracker domain -> display name

    Returns:
        Rendered path

    Raises:
        TemplateError: On unknown placeholders, or when a used placeholder is empty
    """
    domain = extract_domain(torrent.tracker)
    tracker = (tracker_aliases or {}).get(domain, domain)
    values = {
        'name': sanitize_path_segment(torrent.name),
        'hash': torrent.hash,
        'category': torrent.category,
        'tracker': sanitize_path_segment(tracker) if tracker else '',
        'isolation_folder': isolation_folder(torrent),
        'save_path': torrent.save_path,
    }

    try:
        used = placeholders(template)
    except ValueError as e:
        raise TemplateError(template, str(e))
    empty = [name for name in used if name in values and not values[name]]
    if empty:
        raise TemplateError(template, f"{{{empty[0]}}} is empty for torrent '{torrent.name}'")

    path = _render(template, values, MOVE_PLACEHOLDERS).strip()
    if not path:
        raise TemplateError(template, "rendered path is empty")
    return path


def render_args(args: Sequence[str], torrent: TorrentSnapshot) -> List[str]:
    """
    Render external program arguments for a torrent

    Raises:
        TemplateError: On unknown placeholders
    """
    values = {
        'hash': torrent.hash,
        'name': torrent.name,
        'save_path': torrent.save_path,
        'content_path': torrent.content_path,
        'category': torrent.category,
        'tags': torrent.tags_raw,
        'state': torrent.state,
        'size': str(torrent.size),
        'progress': f"{torrent.progress:.4f}".rstrip('0').rstrip('.') if torrent.progress else '0',
        'tracker': torrent.tracker,
        'comment': torrent.comment,
    }
    return [_render(arg, values, ARG_PLACEHOLDERS) for arg in args]
