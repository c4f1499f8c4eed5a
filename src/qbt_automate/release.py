"""
Release name parsing

A small regex parser for scene/P2P style release names such as
'Show.Name.S01E02.1080p.WEB-DL.DDP5.1.H.264-GROUP'. Used to build the
release-based grouping keys (effective name, content type and rls_* fields).
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


VIDEO_EXTENSIONS = ('.mkv', '.mp4', '.avi', '.m2ts', '.ts', '.wmv', '.mov', '.m4v')

_EPISODE_RE = re.compile(r'\bS(\d{1,3})[ ._-]?E(\d{1,4})\b', re.IGNORECASE)
_ALT_EPISODE_RE = re.compile(r'\b(\d{1,2})x(\d{2,3})\b', re.IGNORECASE)
_SEASON_RE = re.compile(r'\b(?:S(\d{1,3})|Season[ ._-]?(\d{1,3}))\b', re.IGNORECASE)
_YEAR_RE = re.compile(r'\b(19\d{2}|20\d{2})\b')
_RESOLUTION_RE = re.compile(r'\b(2160p|1080p|1080i|720p|576p|480p|4k|uhd)\b', re.IGNORECASE)
_GROUP_RE = re.compile(r'-([A-Za-z0-9]+)(?:\[[^\]]*\])?$')
_CHANNELS_RE = re.compile(r'(?<=[A-Za-z+])([1-9][. ][0-2])(?!\d)')

# (pattern, canonical value), first match wins
_SOURCES = [
    (re.compile(r'\bremux\b', re.IGNORECASE), 'remux'),
    (re.compile(r'\bweb[ ._-]?dl\b', re.IGNORECASE), 'web-dl'),
    (re.compile(r'\bweb[ ._-]?rip\b', re.IGNORECASE), 'webrip'),
    (re.compile(r'\b(?:blu[ ._-]?ray|bdrip|brrip|bdmv)\b', re.IGNORECASE), 'bluray'),
    (re.compile(r'\bhdtv\b', re.IGNORECASE), 'hdtv'),
    (re.compile(r'\bdvd[ ._-]?rip\b', re.IGNORECASE), 'dvdrip'),
    (re.compile(r'\bdvd(?:r|9|5)?\b', re.IGNORECASE), 'dvd'),
    (re.compile(r'\bweb\b', re.IGNORECASE), 'web'),
]

_CODECS = [
    (re.compile(r'\b(?:x265|h[ .]?265|hevc)\b', re.IGNORECASE), 'h265'),
    (re.compile(r'\b(?:x264|h[ .]?264|avc)\b', re.IGNORECASE), 'h264'),
    (re.compile(r'\bav1\b', re.IGNORECASE), 'av1'),
    (re.compile(r'\bxvid\b', re.IGNORECASE), 'xvid'),
    (re.compile(r'\bmpeg[ ._-]?2\b', re.IGNORECASE), 'mpeg2'),
]

_DOLBY_VISION_RE = re.compile(r'\b(?:dv|dovi|dolby[ ._-]?vision)\b', re.IGNORECASE)

_HDR = [
    (re.compile(r'\bhdr10(?:\+|plus)', re.IGNORECASE), 'hdr10+'),
    (re.compile(r'\bhdr10\b', re.IGNORECASE), 'hdr10'),
    (re.compile(r'\bhdr\b', re.IGNORECASE), 'hdr'),
]

_AUDIO = [
    (re.compile(r'\batmos\b', re.IGNORECASE), 'atmos'),
    (re.compile(r'\btruehd\b', re.IGNORECASE), 'truehd'),
    (re.compile(r'\bdts[ ._-]?(?:hd[ ._-]?)?ma\b', re.IGNORECASE), 'dts-hd ma'),
    (re.compile(r'\bdts[ ._-]?x\b', re.IGNORECASE), 'dts-x'),
    (re.compile(r'\bdts\b', re.IGNORECASE), 'dts'),
    (re.compile(r'\b(?:ddp|dd\+|e[ ._-]?ac[ ._-]?3)', re.IGNORECASE), 'ddp'),
    (re.compile(r'\b(?:dd|ac3)(?=[0-9 ._-]|$)', re.IGNORECASE), 'dd'),
    (re.compile(r'\baac', re.IGNORECASE), 'aac'),
    (re.compile(r'\bflac\b', re.IGNORECASE), 'flac'),
    (re.compile(r'\bopus\b', re.IGNORECASE), 'opus'),
    (re.compile(r'\bmp3\b', re.IGNORECASE), 'mp3'),
]


@dataclass(frozen=True)
class ReleaseInfo:
    """Attributes parsed from a release name; '' when not present"""
    title: str = ''
    year: Optional[int] = None
    season: Optional[int] = None
    episode: Optional[int] = None
    content_type: str = ''
    source: str = ''
    resolution: str = ''
    codec: str = ''
    hdr: str = ''
    audio: str = ''
    channels: str = ''
    group: str = ''

    @property
    def effective_name(self) -> str:
        """Title plus the identifying part: year for movies, SxxEyy for episodes"""
        if not self.title:
            return ''
        if self.content_type == 'episode':
            return f"{self.title} s{self.season:02d}e{self.episode:02d}"
        if self.content_type == 'season':
            return f"{self.title} s{self.season:02d}"
        if self.year:
            return f"{self.title} {self.year}"
        return self.title


def _first(patterns, text: str) -> str:
    for pattern, canonical in patterns:
        if pattern.search(text):
            return canonical
    return ''


def _strip_extension(name: str) -> str:
    lower = name.lower()
    for extension in VIDEO_EXTENSIONS:
        if lower.endswith(extension):
            return name[:-len(extension)]
    return name


def _clean_title(text: str) -> str:
    text = re.sub(r'[._]', ' ', text)
    text = re.sub(r'[\[\(\{].*?[\]\)\}]', ' ', text)
    text = re.sub(r'\s+', ' ', text).strip(' -')
    return text.lower()


@lru_cache(maxsize=4096)
def parse_release(name: str) -> ReleaseInfo:
    """
    Parse a release name into its attributes

    Args:
        name: Torrent name

    Returns:
        ReleaseInfo (fields are '' / None when not found)
    """
    # '_' is a word character, so it would defeat every \b below
    name = _strip_extension((name or '').strip()).replace('_', '.')
    if not name:
        return ReleaseInfo()

    # Everything before the first structural marker is the title
    markers = [m for m in (
        _EPISODE_RE.search(name),
        _ALT_EPISODE_RE.search(name),
        _SEASON_RE.search(name),
        _YEAR_RE.search(name),
        _RESOLUTION_RE.search(name),
    ) if m and m.start() > 0]
    cut = min((m.start() for m in markers), default=len(name))
    title = _clean_title(name[:cut])

    season = episode = None
    content_type = 'movie'
    episode_match = _EPISODE_RE.search(name) or _ALT_EPISODE_RE.search(name)
    season_match = _SEASON_RE.search(name)
    if episode_match:
        season, episode = int(episode_match.group(1)), int(episode_match.group(2))
        content_type = 'episode'
    elif season_match:
        season = int(season_match.group(1) or season_match.group(2))
        content_type = 'season'

    year_match = _YEAR_RE.search(name[cut:]) if cut < len(name) else None
    year = int(year_match.group(1)) if year_match else None

    resolution_match = _RESOLUTION_RE.search(name)
    resolution = resolution_match.group(1).lower() if resolution_match else ''
    if resolution in ('4k', 'uhd'):
        resolution = '2160p'

    group_match = _GROUP_RE.search(name)
    channels_match = _CHANNELS_RE.search(name)

    return ReleaseInfo(
        title=title,
        year=year,
        season=season,
        episode=episode,
        content_type=content_type if title else '',
        source=_first(_SOURCES, name),
        resolution=resolution,
        codec=_first(_CODECS, name),
        hdr=' '.join(filter(None, ['dv' if _DOLBY_VISION_RE.search(name) else '', _first(_HDR, name)])),
        audio=_first(_AUDIO, name),
        channels=channels_match.group(1).replace(' ', '.') if channels_match else '',
        group=group_match.group(1).lower() if group_match else '',
    )
