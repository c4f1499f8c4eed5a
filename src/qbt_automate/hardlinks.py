"""
Hardlink index

Stats every file of every managed torrent once per cycle and derives, per
torrent, whether its files are hardlinked and where the other links live:

- none:                no file has more than one link
- torrents_only:       every extra link is another path inside the managed set
- outside_qbittorrent: some file has more links than paths seen in the set

Torrents whose files cannot all be stat'd get no entry at all, so scope
conditions evaluate false for them. Torrents that share the exact same set of
hardlinked files also get a common signature used by the 'hardlink_signature'
grouping key.
"""

import hashlib
import os
import stat
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from qbt_automate.logging import get_logger
from qbt_automate.models import TorrentFile, TorrentSnapshot

logger = get_logger(__name__)


class HardlinkScope(str, Enum):
    NONE = 'none'
    TORRENTS_ONLY = 'torrents_only'
    OUTSIDE_QBITTORRENT = 'outside_qbittorrent'


FileId = Tuple[int, int]  # (st_dev, st_ino)


@dataclass
class HardlinkIndex:
    """Per-torrent hardlink scope and duplicate signatures"""
    scope_by_hash: Dict[str, HardlinkScope] = field(default_factory=dict)
    signature_by_hash: Dict[str, str] = field(default_factory=dict)
    group_by_signature: Dict[str, List[str]] = field(default_factory=dict)

    def scope_for(self, torrent_hash: str) -> Optional[HardlinkScope]:
        return self.scope_by_hash.get(torrent_hash)

    def signature_for(self, torrent_hash: str) -> str:
        return self.signature_by_hash.get(torrent_hash, '')


@dataclass
class _TorrentFileInfo:
    file_ids: List[FileId] = field(default_factory=list)
    accessible: bool = True
    has_hardlinks: bool = False


def is_path_inside(base_path: str, full_path: str) -> bool:
    """True when full_path resolves to base_path or somewhere below it"""
    base = os.path.normpath(base_path)
    full = os.path.normpath(full_path)
    try:
        relative = os.path.relpath(full, base)
    except ValueError:
        return False
    return relative != '..' and not relative.startswith('..' + os.sep)


def compute_signature(file_ids: Sequence[FileId]) -> str:
    """sha256 over the sorted (device, inode) pairs"""
    digest = hashlib.sha256()
    for device, inode in sorted(file_ids):
        digest.update(f"{device}:{inode};".encode())
    return digest.hexdigest()


def _safe_lstat(path: str, lstat: Callable) -> Optional[os.stat_result]:
    try:
        return lstat(path)
    except OSError as e:
        logger.debug(f"Cannot stat {path}: {e}")
        return None


def build_hardlink_index(
    torrents: Sequence[TorrentSnapshot],
    files_by_hash: Mapping[str, Sequence[TorrentFile]],
    max_workers: int = 8,
    lstat: Callable = os.lstat,
) -> HardlinkIndex:
    """
    Build the hardlink index for a batch of torrents

    Args:
        torrents: Current torrent snapshots
        files_by_hash: File lists per torrent hash (torrents missing here get no entry)
        max_workers: Size of the stat thread pool
        lstat: Stat function (injectable for tests)

    Returns:
        HardlinkIndex
    """
    index = HardlinkIndex()
    if not torrents:
        return index

    # Resolve full paths first; anything escaping the save path is inaccessible
    infos: Dict[str, _TorrentFileInfo] = {}
    jobs: List[Tuple[str, str]] = []
    for torrent in torrents:
        files = files_by_hash.get(torrent.hash)
        if files is None:
            continue
        info = _TorrentFileInfo()
        infos[torrent.hash] = info
        for torrent_file in files:
            full_path = os.path.join(torrent.save_path, torrent_file.path)
            if not is_path_inside(torrent.save_path, full_path):
                info.accessible = False
                continue
            jobs.append((torrent.hash, full_path))

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        results = list(pool.map(lambda job: _safe_lstat(job[1], lstat), jobs))

    nlink_by_id: Dict[FileId, int] = {}
    paths_by_id: Dict[FileId, Set[str]] = {}

    for (torrent_hash, full_path), st in zip(jobs, results):
        info = infos[torrent_hash]
        if st is None:
            info.accessible = False
            continue
        if not stat.S_ISREG(st.st_mode):
            continue

        file_id = (st.st_dev, st.st_ino)
        info.file_ids.append(file_id)
        if st.st_nlink > 1:
            info.has_hardlinks = True
            nlink_by_id[file_id] = st.st_nlink
            paths_by_id.setdefault(file_id, set()).add(full_path)

    inaccessible = 0
    for torrent_hash, info in infos.items():
        if not info.accessible or not info.file_ids:
            inaccessible += 1
            continue

        scope = HardlinkScope.NONE
        for file_id in info.file_ids:
            nlink = nlink_by_id.get(file_id, 1)
            if nlink <= 1:
                continue
            if nlink > len(paths_by_id[file_id]):
                scope = HardlinkScope.OUTSIDE_QBITTORRENT
                break
            scope = HardlinkScope.TORRENTS_ONLY

        index.scope_by_hash[torrent_hash] = scope

        if not info.has_hardlinks or scope == HardlinkScope.OUTSIDE_QBITTORRENT:
            continue

        signature = compute_signature(info.file_ids)
        index.signature_by_hash[torrent_hash] = signature
        index.group_by_signature.setdefault(signature, []).append(torrent_hash)

    # A signature only one torrent carries is not a duplicate
    for signature, hashes in list(index.group_by_signature.items()):
        if len(hashes) < 2:
            del index.group_by_signature[signature]
            del index.signature_by_hash[hashes[0]]
        else:
            hashes.sort()

    logger.debug(
        f"Hardlink index: {len(index.scope_by_hash)} scoped, "
        f"{len(index.group_by_signature)} duplicate groups, {inaccessible} inaccessible"
    )
    return index
