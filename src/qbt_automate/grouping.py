"""
Cross-seed and custom grouping

A group definition is an ordered list of key fields. Each torrent's key is the
normalized value of every field joined with '|'; torrents with equal keys form
a group. Any empty part means the torrent has no key for that group.

Content-path based groups are ambiguous for torrents whose content path equals
their save path (single-file torrents saved straight into a shared directory),
because unrelated torrents then collide on the directory. Such groups are
either verified by comparing file lists or the ambiguous torrents are skipped.
"""

from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from qbt_automate.hardlinks import HardlinkIndex
from qbt_automate.logging import get_logger
from qbt_automate.models import AmbiguousPolicy, GroupDefinition, TorrentFile, TorrentSnapshot
from qbt_automate.release import parse_release
from qbt_automate.utils import extract_domain, normalize_name, normalize_path

logger = get_logger(__name__)


GROUP_CROSS_SEED_CONTENT_PATH = 'cross_seed_content_path'
GROUP_CROSS_SEED_CONTENT_SAVE_PATH = 'cross_seed_content_save_path'
GROUP_RELEASE_ITEM = 'release_item'
GROUP_TRACKER_RELEASE_ITEM = 'tracker_release_item'
GROUP_HARDLINK_SIGNATURE = 'hardlink_signature'

GROUP_KEY_FIELDS = (
    'content_path', 'save_path', 'effective_name', 'content_type', 'tracker',
    'rls_source', 'rls_resolution', 'rls_codec', 'rls_hdr', 'rls_audio',
    'rls_channels', 'rls_group', 'hardlink_signature',
)

BUILTIN_GROUPS = {
    GROUP_CROSS_SEED_CONTENT_PATH: GroupDefinition(
        id=GROUP_CROSS_SEED_CONTENT_PATH,
        keys=('content_path',),
    ),
    GROUP_CROSS_SEED_CONTENT_SAVE_PATH: GroupDefinition(
        id=GROUP_CROSS_SEED_CONTENT_SAVE_PATH,
        keys=('content_path', 'save_path'),
    ),
    GROUP_RELEASE_ITEM: GroupDefinition(
        id=GROUP_RELEASE_ITEM,
        keys=('content_type', 'effective_name'),
    ),
    GROUP_TRACKER_RELEASE_ITEM: GroupDefinition(
        id=GROUP_TRACKER_RELEASE_ITEM,
        keys=('tracker', 'content_type', 'effective_name'),
    ),
    GROUP_HARDLINK_SIGNATURE: GroupDefinition(
        id=GROUP_HARDLINK_SIGNATURE,
        keys=('hardlink_signature',),
    ),
}

# Loads a torrent's file list; returns None when it cannot be fetched
FileLoader = Callable[[str], Optional[Sequence[TorrentFile]]]


@dataclass
class GroupIndex:
    """Group membership for one group definition over one torrent batch"""
    group_id: str
    key_by_hash: Dict[str, str] = field(default_factory=dict)
    hashes_by_key: Dict[str, List[str]] = field(default_factory=dict)
    ambiguous_keys: Set[str] = field(default_factory=set)

    def key_for(self, torrent_hash: str) -> str:
        return self.key_by_hash.get(torrent_hash, '')

    def members_for(self, torrent_hash: str) -> List[str]:
        key = self.key_for(torrent_hash)
        if not key:
            return []
        return self.hashes_by_key.get(key, [])

    def size_for(self, torrent_hash: str) -> int:
        return len(self.members_for(torrent_hash))

    def others_for(self, torrent_hash: str) -> List[str]:
        """Group members other than the torrent itself"""
        return [h for h in self.members_for(torrent_hash) if h != torrent_hash]

    def is_ambiguous(self, torrent_hash: str) -> bool:
        key = self.key_for(torrent_hash)
        return bool(key) and key in self.ambiguous_keys

    def remove(self, torrent_hash: str):
        key = self.key_by_hash.pop(torrent_hash, '')
        if not key:
            return
        members = [h for h in self.hashes_by_key.get(key, []) if h != torrent_hash]
        if members:
            self.hashes_by_key[key] = members
        else:
            self.hashes_by_key.pop(key, None)
            self.ambiguous_keys.discard(key)


def find_definition(group_id: str, custom: Sequence[GroupDefinition] = ()) -> Optional[GroupDefinition]:
    """Custom definitions take precedence over built-ins; ids compare case-insensitively"""
    wanted = (group_id or '').strip().lower()
    if not wanted:
        return None
    for definition in custom:
        if definition.id.strip().lower() == wanted:
            return definition
    return BUILTIN_GROUPS.get(wanted)


def key_part(key_field: str, torrent: TorrentSnapshot, hardlinks: Optional[HardlinkIndex] = None) -> str:
    """Normalized value of one key field; '' when unavailable"""
    if key_field == 'content_path':
        return normalize_path(torrent.content_path)
    if key_field == 'save_path':
        return normalize_path(torrent.save_path)
    if key_field == 'tracker':
        return extract_domain(torrent.tracker)
    if key_field == 'hardlink_signature':
        return hardlinks.signature_for(torrent.hash) if hardlinks else ''

    release = parse_release(torrent.name)
    if key_field == 'effective_name':
        return release.effective_name.strip().lower()
    if key_field == 'content_type':
        return release.content_type
    if key_field.startswith('rls_'):
        return str(getattr(release, key_field[4:], '') or '').strip().lower()
    return ''


def group_key(keys: Sequence[str], torrent: TorrentSnapshot, hardlinks: Optional[HardlinkIndex] = None) -> str:
    """Composite key for a torrent, or '' when any part is empty"""
    parts = []
    for key_field in keys:
        part = key_part(key_field, torrent, hardlinks)
        if not part:
            return ''
        parts.append(part)
    return '|'.join(parts)


def _file_signature(files: Sequence[TorrentFile]) -> Counter:
    return Counter(
        (normalize_name(torrent_file.path.replace('\\', '/').rsplit('/', 1)[-1]), torrent_file.size)
        for torrent_file in files
    )


def file_overlap_percent(reference: Sequence[TorrentFile], candidate: Sequence[TorrentFile]) -> float:
    """
    Percentage of files shared by two file lists

    Files match on normalized base name plus size. The percentage is taken
    against the larger of the two lists.
    """
    if not reference or not candidate:
        return 0.0
    shared = sum((_file_signature(reference) & _file_signature(candidate)).values())
    return 100.0 * shared / max(len(reference), len(candidate))


def _verify_overlap(index: GroupIndex, definition: GroupDefinition, file_loader: Optional[FileLoader],
                    max_workers: int):
    """Drop members of ambiguous groups whose files do not match the reference member"""
    groups = [(key, list(index.hashes_by_key[key])) for key in index.ambiguous_keys
              if len(index.hashes_by_key.get(key, [])) > 1]
    if not groups:
        return

    if file_loader is None:
        for _, members in groups:
            for torrent_hash in members:
                index.remove(torrent_hash)
        return

    needed = sorted({h for _, members in groups for h in members})
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        loaded = dict(zip(needed, pool.map(_load_quietly(file_loader), needed)))

    for key, members in groups:
        reference_hash = members[0]
        reference_files = loaded.get(reference_hash)
        if not reference_files:
            for torrent_hash in members:
                index.remove(torrent_hash)
            continue
        for torrent_hash in members[1:]:
            files = loaded.get(torrent_hash)
            overlap = file_overlap_percent(reference_files, files) if files else 0.0
            if overlap < definition.min_file_overlap_percent:
                logger.debug(
                    f"Group '{index.group_id}': dropping {torrent_hash} "
                    f"({overlap:.0f}% file overlap with {reference_hash})"
                )
                index.remove(torrent_hash)


def _load_quietly(file_loader: FileLoader):
    def load(torrent_hash: str):
        try:
            return file_loader(torrent_hash)
        except Exception as e:
            logger.debug(f"Cannot load files for {torrent_hash}: {e}")
            return None
    return load


def build_group_index(
    definition: GroupDefinition,
    torrents: Sequence[TorrentSnapshot],
    hardlinks: Optional[HardlinkIndex] = None,
    file_loader: Optional[FileLoader] = None,
    max_workers: int = 8,
) -> GroupIndex:
    """
    Build group membership for one definition

    Args:
        definition: Group definition (key fields and ambiguity policy)
        torrents: Current torrent snapshots
        hardlinks: Hardlink index, needed for the hardlink_signature key
        file_loader: Callable returning a torrent's files, used by verify_overlap
        max_workers: Thread pool size for file list fetches

    Returns:
        GroupIndex with members sorted by hash
    """
    index = GroupIndex(group_id=definition.id)
    uses_content_path = 'content_path' in definition.keys
    skip_ambiguous = definition.ambiguous_policy == AmbiguousPolicy.SKIP

    for torrent in torrents:
        key = group_key(definition.keys, torrent, hardlinks)
        if not key:
            continue
        ambiguous = uses_content_path and normalize_path(torrent.content_path) == normalize_path(torrent.save_path)
        if ambiguous and skip_ambiguous:
            continue
        index.key_by_hash[torrent.hash] = key
        index.hashes_by_key.setdefault(key, []).append(torrent.hash)
        if ambiguous:
            index.ambiguous_keys.add(key)

    for members in index.hashes_by_key.values():
        members.sort()

    if uses_content_path and not skip_ambiguous:
        _verify_overlap(index, definition, file_loader, max_workers)

    return index


class CategoryIndex:
    """
    Torrent names per category, for the exists_in / contains_in operators

    Categories and names compare case-insensitively; '' is the uncategorized
    bucket.
    """

    MIN_CONTAINS_LENGTH = 10

    def __init__(self, torrents: Sequence[TorrentSnapshot]):
        self._names: Dict[str, Dict[str, Set[str]]] = {}
        self._normalized: Dict[str, List[Tuple[str, str]]] = {}
        for torrent in torrents:
            category = torrent.category.lower()
            self._names.setdefault(category, {}).setdefault(torrent.name.lower(), set()).add(torrent.hash)
            self._normalized.setdefault(category, []).append((normalize_name(torrent.name), torrent.hash))

    def exists_in(self, torrent: TorrentSnapshot, category: str) -> bool:
        """Another torrent in the category has the same name"""
        hashes = self._names.get(category.lower(), {}).get(torrent.name.lower(), set())
        return any(h != torrent.hash for h in hashes)

    def contains_in(self, torrent: TorrentSnapshot, category: str) -> bool:
        """Another torrent in the category has a name containing, or contained in, this one"""
        name = normalize_name(torrent.name)
        if len(name) < self.MIN_CONTAINS_LENGTH:
            return False
        for other, other_hash in self._normalized.get(category.lower(), []):
            if other_hash == torrent.hash or len(other) < self.MIN_CONTAINS_LENGTH:
                continue
            if name in other or other in name:
                return True
        return False


def content_path_counts(torrents: Sequence[TorrentSnapshot]) -> Dict[str, int]:
    """Number of torrents per normalized content path"""
    return dict(Counter(normalize_path(t.content_path) for t in torrents if t.content_path))
