"""
Free-space projection for delete rules

A delete rule with 'free_space < X' should not delete everything that matches
the rest of its conditions, only as many torrents as needed to get back above
X. The projector walks the candidates oldest first and keeps accepting them
while the projected free space (current free space plus what the accepted
deletions would release) still satisfies the condition.

Files shared between torrents (cross-seeds with the same content path, or
hardlinked duplicates) are only counted once.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Set

from qbt_automate.grouping import GroupIndex
from qbt_automate.hardlinks import HardlinkIndex
from qbt_automate.logging import get_logger
from qbt_automate.models import ConditionLeaf, ConditionOperator, DeleteMode, TorrentSnapshot
from qbt_automate.utils import format_bytes

logger = get_logger(__name__)


def stat_free_space(path: str) -> int:
    """
    Free bytes available to unprivileged users on the filesystem holding path

    Raises:
        OSError: If the path cannot be stat'd
    """
    stats = os.statvfs(path)
    return stats.f_bavail * stats.f_frsize


@dataclass
class Projection:
    """Result of one projection run"""
    accepted: List[TorrentSnapshot] = field(default_factory=list)
    eligible: List[TorrentSnapshot] = field(default_factory=list)
    start_free: int = 0
    projected_free: int = 0

    @property
    def space_to_clear(self) -> int:
        return self.projected_free - self.start_free

    @property
    def accepted_hashes(self) -> Set[str]:
        return {t.hash for t in self.accepted}


class FreeSpaceProjector:
    """
    Greedy oldest-first selection of deletion candidates

    Args:
        leaf: The rule's free_space condition ('<' or '<=')
        mode: Delete mode of the rule
        content_index: cross_seed_content_path group index
        hardlinks: Hardlink index (signatures are counted once per run)
    """

    def __init__(self, leaf: ConditionLeaf, mode: DeleteMode,
                 content_index: Optional[GroupIndex] = None,
                 hardlinks: Optional[HardlinkIndex] = None):
        self.leaf = leaf
        self.mode = mode
        self.content_index = content_index
        self.hardlinks = hardlinks

    def satisfies(self, free_bytes: int) -> bool:
        """True while the projected free space still triggers the condition"""
        if self.leaf.operator == ConditionOperator.LESS_THAN_OR_EQUAL:
            return free_bytes <= self.leaf.value
        return free_bytes < self.leaf.value

    def _keys(self, torrent: TorrentSnapshot) -> List[str]:
        keys = []
        if self.content_index is not None:
            content_key = self.content_index.key_for(torrent.hash)
            if content_key:
                keys.append('content:' + content_key)
        if self.hardlinks is not None:
            signature = self.hardlinks.signature_for(torrent.hash)
            if signature:
                keys.append('hardlink:' + signature)
        return keys

    def freed_bytes(self, torrent: TorrentSnapshot, counted: Set[str]) -> int:
        """
        Bytes deleting this torrent would release, given keys already counted

        Updates `counted` with the torrent's group keys.
        """
        if self.mode == DeleteMode.KEEP_FILES:
            return 0
        if (self.mode == DeleteMode.PRESERVE_CROSS_SEEDS and self.content_index is not None
                and self.content_index.size_for(torrent.hash) > 1):
            return 0

        keys = self._keys(torrent)
        if any(key in counted for key in keys):
            return 0
        counted.update(keys)
        return torrent.size

    def project(self, candidates: Sequence[TorrentSnapshot], free_space: int) -> Projection:
        """
        Run the projection

        Args:
            candidates: Torrents matching the rule's other conditions
            free_space: Current free bytes

        Returns:
            Projection with the accepted prefix, every eligible candidate and
            the projected free space
        """
        ordered = sorted(candidates, key=lambda t: (t.added_on, t.hash))
        projection = Projection(eligible=list(ordered), start_free=free_space, projected_free=free_space)

        counted: Set[str] = set()
        for torrent in ordered:
            if not self.satisfies(projection.projected_free):
                break
            projection.accepted.append(torrent)
            projection.projected_free += self.freed_bytes(torrent, counted)

        logger.debug(
            f"Free space projection: {len(projection.accepted)}/{len(ordered)} accepted, "
            f"{format_bytes(free_space)} -> {format_bytes(projection.projected_free)}"
        )
        return projection
