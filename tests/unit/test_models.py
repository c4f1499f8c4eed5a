"""Tests for models.py - snapshots, condition trees and rules"""

from qbt_automate.models import (
    ActionKind, ConditionField, ConditionGroup, ConditionLeaf, ConditionOperator,
    DeleteAction, DeleteMode, GroupDefinition, GroupingConfig, PauseAction, Rule,
    TagAction, TorrentSnapshot, iter_leaves,
)


class TestTorrentSnapshotFromApi:
    """Test conversion of torrents/info dictionaries"""

    def test_maps_api_fields(self):
        snapshot = TorrentSnapshot.from_api({
            'hash': 'ABCDEF',
            'name': 'Movie.2020.1080p',
            'category': 'movies',
            'tags': 'hd, new',
            'state': 'stalledUP',
            'save_path': '/data',
            'content_path': '/data/Movie.2020.1080p',
            'size': 1000,
            'progress': 1,
            'ratio': 1.25,
            'dlspeed': 10,
            'upspeed': 20,
            'up_limit': 1024,
            'ratio_limit': -2,
            'seeding_time': 3600,
            'added_on': 1700000000,
            'tracker': 'https://tracker.example.org/announce',
            'private': True,
        })

        assert snapshot.hash == 'abcdef'
        assert snapshot.tags == ('hd', 'new')
        assert snapshot.total_size == 1000
        assert snapshot.progress == 1.0
        assert snapshot.dl_speed == 10
        assert snapshot.up_speed == 20
        assert snapshot.up_limit == 1024
        assert snapshot.dl_limit == -1
        assert snapshot.private is True
        assert snapshot.is_complete

    def test_missing_and_null_fields_use_defaults(self):
        snapshot = TorrentSnapshot.from_api({'hash': 'a', 'name': None, 'size': None, 'tags': ''})

        assert snapshot.name == ''
        assert snapshot.size == 0
        assert snapshot.tags == ()
        assert snapshot.ratio_limit == -2.0
        assert snapshot.seeding_time_limit == -2

    def test_is_private_fallback(self):
        """Older clients report is_private instead of private"""
        assert TorrentSnapshot.from_api({'hash': 'a', 'is_private': True}).private is True


class TestTorrentSnapshotProperties:
    """Test derived snapshot properties"""

    def test_tags_raw(self, make_torrent):
        assert make_torrent('a', tags=['x', 'y']).tags_raw == 'x, y'

    def test_paused_states(self, make_torrent):
        assert make_torrent('a', state='pausedUP').is_paused
        assert make_torrent('a', state='stoppedDL').is_paused
        assert not make_torrent('a', state='uploading').is_paused

    def test_incomplete(self, make_torrent):
        assert not make_torrent('a', progress=0.5).is_complete


class TestConditionTree:
    """Test condition tree helpers"""

    def test_iter_leaves_depth_first(self):
        first = ConditionLeaf(ConditionField.NAME, ConditionOperator.CONTAINS, 'a')
        second = ConditionLeaf(ConditionField.RATIO, ConditionOperator.GREATER_THAN, 1.0)
        third = ConditionLeaf(ConditionField.SIZE, ConditionOperator.LESS_THAN, 10)
        tree = ConditionGroup(ConditionOperator.AND, (
            first,
            ConditionGroup(ConditionOperator.NOT, (ConditionGroup(ConditionOperator.OR, (second, third)),)),
        ))

        assert list(iter_leaves(tree)) == [first, second, third]

    def test_iter_leaves_of_nothing(self):
        assert list(iter_leaves(None)) == []

    def test_field_kinds(self):
        assert ConditionField.TAGS.kind.value == 'tags'
        assert ConditionField.SEEDING_TIME.kind.value == 'int'
        assert ConditionField.ADDED_ON_AGE.kind.value == 'age'
        assert ConditionField.PRIVATE.kind.value == 'bool'


class TestRule:
    """Test rule helpers"""

    def test_action_lookup(self):
        rule = Rule(id='r', name='R', actions=(PauseAction(), TagAction(tags=('x',))))

        assert rule.action(ActionKind.PAUSE) == PauseAction()
        assert rule.action(ActionKind.MOVE) is None
        assert rule.action_kinds == ['pause', 'tag']
        assert not rule.is_delete

    def test_delete_action(self):
        rule = Rule(id='r', name='R', actions=(DeleteAction(DeleteMode.WITH_FILES),))

        assert rule.is_delete
        assert rule.delete_action.mode == DeleteMode.WITH_FILES

    def test_grouping_find_is_case_insensitive(self):
        definition = GroupDefinition(id='Release', keys=('effective_name',))
        grouping = GroupingConfig(groups=(definition,))

        assert grouping.find(' release ') is definition
        assert grouping.find('other') is None
