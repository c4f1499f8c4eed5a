"""Integration tests for complete rule execution scenarios."""

import pytest

from qbt_automate.activity import Outcome
from qbt_automate.scheduler import RuleScheduler


GB = 1000 ** 3
DAY = 86400


@pytest.fixture
def scheduler_for(make_config, api_factory, recorder, now):
    """Scheduler over one mock instance, clock fixed 40 days after the torrents completed"""
    def _make(torrents, rules, free_space=None, dry_run=False, settings=None):
        api = api_factory(list(torrents), free_space=free_space)
        config = make_config(rules=rules, settings=settings or {})
        scheduler = RuleScheduler(config, recorder=recorder, dry_run=dry_run,
                                  api_factory=lambda instance: api, clock=lambda: now + 10 * DAY)
        return scheduler, api
    return _make


def events_for(recorder, torrent_hash):
    return [(e.rule_id, e.action, e.outcome) for e in recorder.list_events(limit=500)
            if e.torrent_hash == torrent_hash]


# ============================================================================
# Delete precedence
# ============================================================================

class TestDeletePrecedence:
    """A delete rule wins over every other rule for the same torrent."""

    def test_deleted_torrent_never_reaches_later_rules(self, scheduler_for, make_torrent, make_rule, recorder):
        """Rule A (sort 0) deletes X, rule B (sort 1) would tag it."""
        rules = [
            make_rule('Old seeds', id='old-seeds', sort_order=0,
                      conditions={'all': [
                          {'field': 'completion_on_age', 'operator': '>', 'value': '30 days'},
                          {'field': 'state', 'value': 'completed'},
                      ]},
                      actions={'delete': {'mode': 'delete_with_files'}}),
            make_rule('Tag everything', id='tag-everything', sort_order=1,
                      actions={'tag': {'tags': ['seen'], 'mode': 'add'}}),
        ]
        scheduler, api = scheduler_for([make_torrent('x')], rules)

        stats = scheduler.run_cycle('default', force=True)

        assert api.calls['delete'] == [{'hashes': ['x'], 'delete_files': True}]
        assert api.calls['add_tags'] == []
        assert events_for(recorder, 'x') == [('old-seeds', 'delete', Outcome.SUCCESS)]
        assert stats.acted == {('x', 'old-seeds')}

    def test_young_torrent_is_tagged_instead(self, scheduler_for, make_torrent, make_rule, now):
        rules = [
            make_rule('Old seeds', sort_order=0,
                      conditions=[{'field': 'completion_on_age', 'operator': '>', 'value': '30 days'}],
                      actions={'delete': {'mode': 'delete'}}),
            make_rule('Tag everything', sort_order=1, actions={'tag': {'tags': ['seen'], 'mode': 'add'}}),
        ]
        young = make_torrent('y', completion_on=int(now))
        scheduler, api = scheduler_for([young], rules)

        scheduler.run_cycle('default', force=True)

        assert api.calls['delete'] == []
        assert api.calls['add_tags'] == [{'hashes': ['y'], 'tags': ['seen']}]


# ============================================================================
# Free-space projection
# ============================================================================

class TestFreeSpaceProjection:
    """Free-space deletes remove the oldest candidates until the target is met."""

    @pytest.fixture
    def torrents(self, make_torrent):
        return [
            make_torrent('t1', size=80 * GB, added_on=100, content_path='/data/Movie.A'),
            make_torrent('t2', size=30 * GB, added_on=200, content_path='/data/Movie.A'),
            make_torrent('t3', size=90 * GB, added_on=300, content_path='/data/Movie.B'),
            make_torrent('t4', size=20 * GB, added_on=400, content_path='/data/Movie.C'),
        ]

    @pytest.fixture
    def rule(self, make_rule):
        return make_rule(
            'Make room', id='make-room',
            conditions={'all': [
                {'field': 'free_space', 'operator': '<=', 'value': '500GB'},
                {'field': 'state', 'value': 'completed'},
            ]},
            actions={'delete': {'mode': 'delete_with_files'}},
        )

    def test_deletes_minimal_prefix(self, scheduler_for, torrents, rule):
        scheduler, api = scheduler_for(torrents, [rule], free_space=400 * GB)

        scheduler.run_cycle('default', force=True)

        assert api.calls['delete'] == [{'hashes': ['t1', 't2', 't3'], 'delete_files': True}]
        assert sorted(api.torrents_data) == ['t4']

    def test_preview_shows_accepted_and_eligible(self, scheduler_for, torrents, rule):
        scheduler, api = scheduler_for(torrents, [rule], free_space=400 * GB)

        preview = scheduler.preview_delete('default', 'make-room')

        assert preview.total == 3
        assert [e['hash'] for e in preview.examples] == ['t1', 't2', 't3']
        assert preview.free_space['projected'] == 570 * GB
        assert preview.free_space['eligible_total'] == 4
        assert api.mutation_count == 0

    def test_second_cycle_has_nothing_left_to_do(self, scheduler_for, torrents, rule):
        scheduler, api = scheduler_for(torrents, [rule], free_space=400 * GB)
        scheduler.run_cycle('default', force=True)

        api.free_space = 570 * GB
        scheduler.run_cycle('default', force=True, now=scheduler.clock() + 3600)

        assert len(api.calls['delete']) == 1


# ============================================================================
# Tag modes across cycles
# ============================================================================

class TestTagRemoveMode:
    """mode=remove strips the tag from torrents the rule no longer matches."""

    def test_tag_removed_when_condition_false(self, scheduler_for, make_torrent, make_rule):
        rule = make_rule(
            'Stalled marker', id='stalled',
            conditions=[{'field': 'state', 'value': 'stalled'}],
            actions={'tag': {'tags': ['stalled'], 'mode': 'remove'}},
        )
        torrents = [
            make_torrent('y', state='uploading', tags=['stalled', 'keep']),
            make_torrent('z', state='stalledUP', tags=['stalled']),
        ]
        scheduler, api = scheduler_for(torrents, [rule])

        scheduler.run_cycle('default', force=True)

        assert api.calls['remove_tags'] == [{'hashes': ['y'], 'tags': ['stalled']}]
        assert api.torrents_data['y'].tags == ('keep',)
        assert api.torrents_data['z'].tags == ('stalled',)


# ============================================================================
# Repeated cycles
# ============================================================================

class TestIdempotency:
    """A second cycle over an unchanged library changes nothing."""

    def test_second_cycle_is_a_no_op(self, scheduler_for, make_torrent, make_rule):
        rules = [
            make_rule('Limit', sort_order=0, actions={'speed_limits': {'upload_kib': 512}}),
            make_rule('Category', sort_order=1, actions={'category': {'category': 'seeding'}}),
            make_rule('Tag', sort_order=2, actions={'tag': {'tags': ['managed'], 'mode': 'full'}}),
        ]
        scheduler, api = scheduler_for([make_torrent('a'), make_torrent('b')], rules)

        first = scheduler.run_cycle('default', force=True)
        mutations = api.mutation_count
        second = scheduler.run_cycle('default', force=True, now=scheduler.clock() + 3600)

        assert first.actions_executed == 6
        assert api.mutation_count == mutations
        assert second.actions_executed == 0
        # tags already present are never re-queued, so only limits and categories count
        assert second.actions_skipped == 4

    def test_dry_run_changes_nothing_and_records_intent(self, scheduler_for, make_torrent, make_rule, recorder):
        rules = [make_rule('Pause', id='pause', actions={'pause': True})]
        scheduler, api = scheduler_for([make_torrent('a', state='uploading')], rules, dry_run=True)

        stats = scheduler.run_cycle('default', force=True)

        assert api.mutation_count == 0
        assert stats.actions_dry_run == 1
        assert events_for(recorder, 'a') == [('pause', 'pause', Outcome.DRY_RUN)]
        assert scheduler.debounced_pairs('default', scheduler.clock()) == set()
