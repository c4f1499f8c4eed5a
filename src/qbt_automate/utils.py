"""
Shared utility functions for qbt-automate
"""

import re
from typing import Iterable, Iterator, List, Sequence, Union
from urllib.parse import urlsplit


DURATION_MULTIPLIERS = {
    's': 1, 'sec': 1, 'second': 1,
    'm': 60, 'min': 60, 'minute': 60,
    'h': 3600, 'hr': 3600, 'hour': 3600,
    'd': 86400, 'day': 86400,
    'w': 604800, 'week': 604800,
    'month': 2592000,  # 30 days
    'y': 31536000, 'year': 31536000,  # 365 days
}

SIZE_MULTIPLIERS = {
    'b': 1,
    'kb': 1000, 'mb': 1000 ** 2, 'gb': 1000 ** 3, 'tb': 1000 ** 4, 'pb': 1000 ** 5,
    'kib': 1024, 'mib': 1024 ** 2, 'gib': 1024 ** 3, 'tib': 1024 ** 4, 'pib': 1024 ** 5,
}

_DURATION_RE = re.compile(r'^(\d+(?:\.\d+)?)\s*([a-z]+?)s?$')
_SIZE_RE = re.compile(r'^(\d+(?:\.\d+)?)\s*([a-z]*)$')
_NAME_SEPARATORS = re.compile(r'[._\-]')
_WHITESPACE = re.compile(r'\s+')


def parse_tags(raw: Union[str, Iterable[str], None]) -> List[str]:
    """
    Parse tags from qBittorrent's comma-separated string into a list

    Args:
        raw: Tag string like "hd, new" or an iterable of tags

    Returns:
        List of stripped, non-empty tag strings
    """
    if not raw:
        return []
    parts = raw.split(',') if isinstance(raw, str) else raw
    return [tag.strip() for tag in parts if tag and tag.strip()]


def parse_duration(duration: Union[str, int, float]) -> int:
    """
    Parse human-readable duration to seconds

    Args:
        duration: Seconds as a number, or a string like "30 days", "12h", "5 minutes"

    Returns:
        Duration in seconds

    Raises:
        ValueError: If the string cannot be parsed

    Examples:
        >>> parse_duration("30 days")
        2592000
        >>> parse_duration("12h")
        43200
        >>> parse_duration(300)
        300
    """
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")
    if isinstance(duration, (int, float)):
        return int(duration)

    text = str(duration).strip().lower()
    if re.fullmatch(r'\d+', text):
        return int(text)

    match = _DURATION_RE.match(text)
    if not match or match.group(2) not in DURATION_MULTIPLIERS:
        raise ValueError(f"Invalid duration format: {duration!r}")

    return int(float(match.group(1)) * DURATION_MULTIPLIERS[match.group(2)])


def parse_size(size: Union[str, int, float]) -> int:
    """
    Parse human-readable size to bytes

    Decimal units (KB, MB, GB, TB) use powers of 1000, binary units
    (KiB, MiB, GiB, TiB) powers of 1024.

    Args:
        size: Bytes as a number, or a string like "500 GB", "1.5TiB"

    Returns:
        Size in bytes

    Raises:
        ValueError: If the string cannot be parsed
    """
    if isinstance(size, bool):
        raise ValueError(f"Invalid size: {size!r}")
    if isinstance(size, (int, float)):
        return int(size)

    text = str(size).strip().lower().replace(' ', '')
    match = _SIZE_RE.match(text)
    if not match:
        raise ValueError(f"Invalid size format: {size!r}")

    unit = match.group(2) or 'b'
    if unit not in SIZE_MULTIPLIERS:
        raise ValueError(f"Unknown size unit in {size!r}")

    return int(float(match.group(1)) * SIZE_MULTIPLIERS[unit])


def format_bytes(bytes_count: int) -> str:
    """
    Format bytes into human-readable string

    Args:
        bytes_count: Number of bytes

    Returns:
        Formatted string like "1.50 GB"
    """
    value = float(bytes_count)
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if abs(value) < 1024.0:
            return f"{value:.2f} {unit}"
        value /= 1024.0
    return f"{value:.2f} PB"


def format_duration(seconds: int) -> str:
    """
    Format seconds into human-readable duration

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string like "2d 5h 30m"
    """
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"

    parts = []

    days = seconds // 86400
    if days > 0:
        parts.append(f"{days}d")
        seconds %= 86400

    hours = seconds // 3600
    if hours > 0:
        parts.append(f"{hours}h")
        seconds %= 3600

    minutes = seconds // 60
    if minutes > 0:
        parts.append(f"{minutes}m")

    return " ".join(parts)


def normalize_path(path: str) -> str:
    """
    Normalize a path for identity comparison

    Lowercases, converts backslashes to forward slashes and strips the
    trailing slash.

    Args:
        path: File system path as reported by qBittorrent

    Returns:
        Normalized path, or '' for empty input
    """
    if not path:
        return ''
    return path.lower().replace('\\', '/').rstrip('/')


def normalize_name(name: str) -> str:
    """
    Normalize a torrent name for fuzzy comparison

    Lowercase, '.', '_' and '-' become spaces, whitespace is collapsed.
    """
    name = _NAME_SEPARATORS.sub(' ', (name or '').lower())
    return _WHITESPACE.sub(' ', name).strip()


def extract_domain(url: str) -> str:
    """
    Extract the host name from a tracker URL

    Args:
        url: Tracker URL (e.g. 'https://tracker.example.org:443/announce')
             or a bare host

    Returns:
        Lowercased host name, or '' if none can be found
    """
    url = (url or '').strip()
    if not url:
        return ''

    if '://' not in url:
        host = url.split('/')[0].split(':')[0]
        return re.sub(r'[^a-zA-Z0-9.\-]', '', host).lower()

    try:
        host = urlsplit(url).hostname or ''
    except ValueError:
        return ''
    return host.lower()


def chunked(items: Sequence[str], size: int) -> Iterator[List[str]]:
    """
    Split a sequence into lists of at most `size` items

    Args:
        items: Items to split (usually torrent hashes)
        size: Maximum chunk size (<= 0 means one chunk)

    Yields:
        Lists of items, preserving order
    """
    items = list(items)
    if size <= 0 or len(items) <= size:
        if items:
            yield items
        return
    for start in range(0, len(items), size):
        yield items[start:start + size]
