"""
Tracker health index

Fetches every torrent's tracker list once per cycle and records which
torrents a tracker reports as unregistered. A torrent counts as unregistered
when the message of any real tracker (not DHT / PeX / LSD, not disabled)
contains one of the configured phrases, compared case-insensitively.

Torrents whose trackers could not be fetched are treated as registered. When
no fetch succeeds at all the builder returns None and rules that read the
health fields are skipped for the cycle.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from qbt_automate.logging import get_logger
from qbt_automate.models import TorrentSnapshot, TrackerEntry
from qbt_automate.utils import normalize_path

logger = get_logger(__name__)


DEFAULT_UNREGISTERED_MESSAGES = (
    'unregistered',
    'not registered',
    'torrent not found',
    'not found on tracker',
    'torrent has been deleted',
    'torrent has been nuked',
    'infohash not found',
    'trumped',
)


def is_unregistered_message(message: str, phrases: Iterable[str] = DEFAULT_UNREGISTERED_MESSAGES) -> bool:
    text = (message or '').casefold()
    return bool(text) and any(p.casefold() in text for p in phrases if p)


@dataclass
class TrackerHealth:
    """Unregistered torrents and content path membership for one cycle"""
    unregistered: Set[str] = field(default_factory=set)
    unknown: Set[str] = field(default_factory=set)
    members_by_path: Dict[str, List[str]] = field(default_factory=dict)
    path_by_hash: Dict[str, str] = field(default_factory=dict)

    def is_unregistered(self, torrent_hash: str) -> bool:
        return torrent_hash in self.unregistered

    def _others(self, torrent_hash: str) -> List[str]:
        key = self.path_by_hash.get(torrent_hash)
        if not key:
            return []
        return [h for h in self.members_by_path.get(key, []) if h != torrent_hash]

    def unregistered_same_content(self, torrent_hash: str) -> int:
        """Other torrents on the same content path that are unregistered"""
        return sum(1 for h in self._others(torrent_hash) if h in self.unregistered)

    def registered_same_content(self, torrent_hash: str) -> int:
        """Other torrents on the same content path that are not unregistered"""
        return sum(1 for h in self._others(torrent_hash) if h not in self.unregistered)


def _classify(trackers: Sequence[TrackerEntry], phrases: FrozenSet[str]) -> bool:
    return any(t.is_real and is_unregistered_message(t.message, phrases) for t in trackers)


def build_tracker_health(
    torrents: Sequence[TorrentSnapshot],
    tracker_loader: Callable[[str], Sequence[TrackerEntry]],
    phrases: Iterable[str] = DEFAULT_UNREGISTERED_MESSAGES,
    max_workers: int = 8,
) -> Optional[TrackerHealth]:
    """
    Build the tracker health index for a batch of torrents

    Args:
        torrents: Current torrent snapshots
        tracker_loader: Returns the tracker list of one torrent hash
        phrases: Message fragments that mark a torrent unregistered
        max_workers: Size of the fetch thread pool

    Returns:
        TrackerHealth, or None when no tracker list could be fetched
    """
    health = TrackerHealth()
    if not torrents:
        return health

    wanted = frozenset(p.casefold() for p in phrases if p)

    def fetch(torrent: TorrentSnapshot) -> Tuple[str, Optional[Sequence[TrackerEntry]]]:
        try:
            return torrent.hash, tracker_loader(torrent.hash)
        except Exception as e:
            logger.debug(f"Cannot fetch trackers for {torrent.hash}: {e}")
            return torrent.hash, None

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        results = list(pool.map(fetch, torrents))

    for torrent_hash, trackers in results:
        if trackers is None:
            health.unknown.add(torrent_hash)
        elif _classify(trackers, wanted):
            health.unregistered.add(torrent_hash)

    if len(health.unknown) == len(torrents):
        logger.warning(f"Tracker health unavailable: no tracker list could be fetched for {len(torrents)} torrents")
        return None

    for torrent in torrents:
        if not torrent.content_path:
            continue
        key = normalize_path(torrent.content_path)
        health.path_by_hash[torrent.hash] = key
        health.members_by_path.setdefault(key, []).append(torrent.hash)

    logger.debug(
        f"Tracker health: {len(health.unregistered)} unregistered, "
        f"{len(health.unknown)} unknown of {len(torrents)}"
    )
    return health
