"""Tests for free_space.py - oldest-first deletion projection"""

from types import SimpleNamespace

import pytest

from qbt_automate.free_space import FreeSpaceProjector, stat_free_space
from qbt_automate.grouping import BUILTIN_GROUPS, GROUP_CROSS_SEED_CONTENT_PATH, build_group_index
from qbt_automate.hardlinks import HardlinkIndex
from qbt_automate.models import DeleteMode
from qbt_automate.rules import parse_condition


def free_space_leaf(operator='<', value=500):
    return parse_condition({'field': 'free_space', 'operator': operator, 'value': value}, 'test')


@pytest.fixture
def candidates(make_torrent):
    # t1 and t2 are cross-seeds of the same content
    return [
        make_torrent('t3', size=90, added_on=3, content_path='/data/Y'),
        make_torrent('t1', size=80, added_on=1, content_path='/data/X'),
        make_torrent('t4', size=20, added_on=4, content_path='/data/Z'),
        make_torrent('t2', size=30, added_on=2, content_path='/data/X'),
    ]


@pytest.fixture
def content_index(candidates):
    return build_group_index(BUILTIN_GROUPS[GROUP_CROSS_SEED_CONTENT_PATH], candidates)


class TestSatisfies:
    """Test threshold comparison"""

    def test_less_than(self):
        projector = FreeSpaceProjector(free_space_leaf('<'), DeleteMode.WITH_FILES)
        assert projector.satisfies(499)
        assert not projector.satisfies(500)

    def test_less_than_or_equal(self):
        projector = FreeSpaceProjector(free_space_leaf('<='), DeleteMode.WITH_FILES)
        assert projector.satisfies(500)
        assert not projector.satisfies(501)


class TestProject:
    """Test candidate selection"""

    def test_oldest_first_until_threshold(self, candidates, content_index):
        projector = FreeSpaceProjector(free_space_leaf(), DeleteMode.WITH_FILES, content_index)
        projection = projector.project(candidates, 400)

        # 400 -> 480 (t1) -> 480 (t2 shares t1's files) -> 570 (t3), then satisfied
        assert [t.hash for t in projection.accepted] == ['t1', 't2', 't3']
        assert [t.hash for t in projection.eligible] == ['t1', 't2', 't3', 't4']
        assert projection.projected_free == 570
        assert projection.space_to_clear == 170
        assert projection.accepted_hashes == {'t1', 't2', 't3'}

    def test_preserve_cross_seeds_frees_nothing_for_grouped(self, candidates, content_index):
        projector = FreeSpaceProjector(free_space_leaf(), DeleteMode.PRESERVE_CROSS_SEEDS, content_index)
        projection = projector.project(candidates, 400)

        # t1, t2 are kept on disk by each other; 400 -> 400 -> 400 -> 490 -> 510
        assert [t.hash for t in projection.accepted] == ['t1', 't2', 't3', 't4']
        assert projection.projected_free == 510

    def test_keep_files_frees_nothing(self, candidates, content_index):
        projector = FreeSpaceProjector(free_space_leaf(), DeleteMode.KEEP_FILES, content_index)
        projection = projector.project(candidates, 400)

        assert len(projection.accepted) == 4
        assert projection.space_to_clear == 0

    def test_already_above_threshold(self, candidates, content_index):
        projector = FreeSpaceProjector(free_space_leaf(), DeleteMode.WITH_FILES, content_index)
        projection = projector.project(candidates, 600)

        assert projection.accepted == []
        assert projection.projected_free == 600

    def test_hardlinked_duplicates_counted_once(self, candidates):
        hardlinks = HardlinkIndex(signature_by_hash={'t3': 'sig', 't4': 'sig'})
        projector = FreeSpaceProjector(free_space_leaf(value=1000), DeleteMode.WITH_FILES, hardlinks=hardlinks)
        projection = projector.project(candidates, 0)

        # no content index: t1 and t2 both count; t4 shares t3's inodes
        assert projection.projected_free == 80 + 30 + 90

    def test_ties_broken_by_hash(self, make_torrent):
        torrents = [make_torrent('b', size=10, added_on=1), make_torrent('a', size=10, added_on=1)]
        projector = FreeSpaceProjector(free_space_leaf(), DeleteMode.WITH_FILES)

        assert [t.hash for t in projector.project(torrents, 0).accepted] == ['a', 'b']


class TestStatFreeSpace:
    """Test filesystem free space lookup"""

    def test_uses_available_blocks(self, mocker):
        statvfs = mocker.patch('qbt_automate.free_space.os.statvfs',
                               return_value=SimpleNamespace(f_bavail=10, f_frsize=4096))

        assert stat_free_space('/data') == 40960
        statvfs.assert_called_once_with('/data')
