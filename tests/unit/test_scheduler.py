"""Tests for scheduler.py - due rules, debounce, triggers and status"""

from dataclasses import replace

import pytest

from qbt_automate.errors import UnknownInstanceError
from qbt_automate.scheduler import RuleScheduler, RuleState


T0 = 1_800_000_000.0


@pytest.fixture
def setup(make_config, api_factory, make_torrent, make_rule, recorder):
    """Scheduler over one instance with a single pause rule"""
    def _make(rules=None, torrents=None, dry_run=False, instances=None, settings=None):
        api = api_factory(torrents if torrents is not None else [make_torrent('a', state='uploading')])
        rules = rules if rules is not None else [make_rule('Pause all', id='pause-all', actions={'pause': True})]
        config = make_config(
            rules=rules,
            instances=instances,
            settings=settings or {'engine': {'tick_interval': 20, 'debounce_window': 120},
                                  'activity': {'retention_days': 3}},
        )
        scheduler = RuleScheduler(config, recorder=recorder, dry_run=dry_run,
                                  api_factory=lambda instance: api, clock=lambda: T0)
        return scheduler, api
    return _make


def resume_externally(api, torrent_hash):
    api.torrents_data[torrent_hash] = replace(api.torrents_data[torrent_hash], state='uploading')


class TestInit:
    """Test configuration handling"""

    def test_settings(self, setup):
        scheduler, _ = setup()

        assert scheduler.tick_interval == 20
        assert scheduler.debounce_window == 120
        assert scheduler.retention_days == 3
        assert list(scheduler.instances) == ['default']

    def test_disabled_instances_are_not_scheduled(self, setup):
        scheduler, _ = setup(instances={
            'default': {'id': 'default'},
            'old': {'id': 'old', 'enabled': False},
        })

        assert list(scheduler.instances) == ['default']
        with pytest.raises(UnknownInstanceError):
            scheduler.trigger('old')


class TestDueRules:
    """Test per-rule intervals"""

    def test_rules_run_on_their_interval(self, setup, make_rule):
        rules = [
            make_rule('Fast', id='fast', interval=60, actions={'tag': {'tags': ['x']}}),
            make_rule('Slow', id='slow', interval=3600, actions={'tag': {'tags': ['y']}}),
        ]
        scheduler, api = setup(rules=rules)

        scheduler.tick(T0)
        assert api.calls['get_torrents'] == 1
        assert [r.id for r in scheduler.due_rules('default', T0 + 30)] == []
        assert [r.id for r in scheduler.due_rules('default', T0 + 60)] == ['fast']
        assert [r.id for r in scheduler.due_rules('default', T0 + 3600)] == ['fast', 'slow']

    def test_tick_skips_when_nothing_due(self, setup):
        scheduler, api = setup()

        scheduler.tick(T0)
        scheduler.tick(T0 + 20)

        assert api.calls['get_torrents'] == 1

    def test_forced_cycle_runs_every_rule(self, setup):
        scheduler, api = setup()

        scheduler.run_cycle('default', now=T0)
        stats = scheduler.run_cycle('default', force=True, now=T0 + 1)

        assert stats is not None
        assert api.calls['get_torrents'] == 2


class TestDebounce:
    """Test (torrent, rule) debounce"""

    def test_recently_acted_pairs_are_skipped(self, setup):
        scheduler, api = setup()

        scheduler.run_cycle('default', force=True, now=T0)
        assert api.calls['stop'] == [['a']]

        resume_externally(api, 'a')
        stats = scheduler.run_cycle('default', force=True, now=T0 + 60)
        assert stats.debounced == 1
        assert api.calls['stop'] == [['a']]

        scheduler.run_cycle('default', force=True, now=T0 + 120)
        assert api.calls['stop'] == [['a'], ['a']]

    def test_no_ops_are_not_debounced(self, setup, make_torrent):
        scheduler, api = setup(torrents=[make_torrent('a', state='pausedUP')])

        scheduler.run_cycle('default', force=True, now=T0)

        assert scheduler.debounced_pairs('default', T0) == set()

    def test_dry_run_does_not_debounce(self, setup):
        scheduler, api = setup(dry_run=True)

        scheduler.run_cycle('default', force=True, now=T0)

        assert scheduler.debounced_pairs('default', T0) == set()
        assert api.mutation_count == 0

    def test_sweep(self, setup):
        scheduler, _ = setup()
        scheduler.run_cycle('default', force=True, now=T0)

        assert scheduler.sweep(T0 + 60) == 0
        assert scheduler.sweep(T0 + 120) == 1
        assert scheduler.debounced_pairs('default', T0) == set()


class TestTriggers:
    """Test manual triggers"""

    def test_trigger_forces_cycle_on_next_tick(self, setup):
        scheduler, api = setup()
        scheduler.tick(T0)

        scheduler.trigger('default')
        scheduler.tick(T0 + 5)

        assert api.calls['get_torrents'] == 2

    def test_trigger_unknown_instance(self, setup):
        scheduler, _ = setup()
        with pytest.raises(UnknownInstanceError):
            scheduler.trigger('missing')

    def test_busy_instance_is_skipped_by_ticks(self, setup):
        scheduler, api = setup()
        scheduler._locks['default'].acquire()
        try:
            assert scheduler.run_cycle('default', now=T0, wait=False) is None
        finally:
            scheduler._locks['default'].release()

        assert api.calls['get_torrents'] == 0

    def test_run_all(self, setup):
        scheduler, _ = setup()
        results = scheduler.run_all()

        assert list(results) == ['default']
        assert results['default'].actions_executed == 1


class TestFailures:
    """Test cycle failures"""

    def test_failed_cycle(self, setup):
        scheduler, api = setup()
        api.fail_on.add('get_torrents')

        assert scheduler.run_cycle('default', force=True, now=T0) is None

        status = scheduler.get_status()['instances']['default']
        assert 'get_torrents failed' in status['last_error']
        assert status['rules'] == {'pause-all': RuleState.FAILED}
        assert status['running'] is False

    def test_failed_rules_wait_for_next_interval(self, setup):
        scheduler, api = setup()
        api.fail_on.add('get_torrents')
        scheduler.run_cycle('default', now=T0)

        assert scheduler.due_rules('default', T0 + 10) == []


class TestStatus:
    """Test status reporting"""

    def test_status_after_cycle(self, setup):
        scheduler, _ = setup()
        scheduler.run_cycle('default', force=True, now=T0)

        status = scheduler.get_status()
        instance = status['instances']['default']

        assert status['running'] is False
        assert status['dry_run'] is False
        assert instance['last_error'] is None
        assert instance['last_result']['actions_executed'] == 1
        assert instance['rules'] == {'pause-all': RuleState.APPLIED}
        assert instance['last_cycle_at'] is not None

    def test_rule_states(self, setup, make_torrent):
        scheduler, _ = setup(torrents=[make_torrent('a', state='pausedUP')])
        rule = scheduler.rules[0]

        assert scheduler.rule_state('default', rule, T0) == RuleState.DUE
        scheduler.run_cycle('default', now=T0)
        assert scheduler.rule_state('default', rule, T0 + 1) == RuleState.NO_MATCH
        assert scheduler.rule_state('default', rule, T0 + rule.interval) == RuleState.DUE


class TestPreviewDelete:
    """Test preview routing"""

    def test_unknown_rule(self, setup):
        scheduler, _ = setup()
        with pytest.raises(KeyError):
            scheduler.preview_delete('default', 'missing')

    def test_not_a_delete_rule(self, setup):
        scheduler, _ = setup()
        with pytest.raises(ValueError):
            scheduler.preview_delete('default', 'pause-all')

    def test_preview(self, setup, make_rule):
        rule = make_rule('Cleanup', id='cleanup', actions={'delete': {'mode': 'delete_with_files'}})
        scheduler, api = setup(rules=[rule])

        preview = scheduler.preview_delete('default', 'cleanup')

        assert preview.total == 1
        assert api.mutation_count == 0


class TestHousekeeping:
    """Test pruning and the background thread"""

    def test_prune_uses_retention(self, setup, mocker):
        scheduler, _ = setup()
        prune = mocker.patch.object(scheduler.recorder, 'prune', return_value=5)

        assert scheduler.prune(T0) == 5
        prune.assert_called_once_with(3)

    def test_start_and_stop(self, setup):
        scheduler, api = setup()

        scheduler.start()
        assert scheduler.is_alive()
        scheduler.stop(timeout=5)

        assert not scheduler.is_alive()
        assert api.calls['get_torrents'] >= 1
