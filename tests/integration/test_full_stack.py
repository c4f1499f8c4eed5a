"""
End-to-end tests: config directory -> scheduler -> HTTP API

Uses real Config, RuleScheduler and Flask app with one mock qBittorrent
API per instance.
"""

import pytest

from qbt_automate.activity import ActivityRecorder, Outcome, create_activity_store
from qbt_automate.config import Config
from qbt_automate.scheduler import RuleScheduler
from qbt_automate.server import create_app


API_KEY = 'integration-key'
HEADERS = {'X-API-Key': API_KEY}
NOW = 1_800_000_000
DAY = 86400


@pytest.fixture
def apis(api_factory, make_torrent):
    """Mock APIs keyed by instance id"""
    return {
        'default': api_factory([
            make_torrent('d1', ratio=2.0),
            make_torrent('d2', ratio=0.5),
            make_torrent('d3', ratio=3.0, tracker='https://other.net/announce'),
        ]),
        'seedbox': api_factory([
            make_torrent('s1', seeding_time=40 * DAY),
            make_torrent('s2', seeding_time=5 * DAY),
        ]),
    }


@pytest.fixture
def stack(tmp_config_dir, apis):
    """Config, scheduler and Flask test client"""
    with open(tmp_config_dir / 'config.yml', 'a') as f:
        f.write("\nactivity:\n  backend: sqlite\n  retention_days: 3\n")

    config = Config(tmp_config_dir)
    recorder = ActivityRecorder(create_activity_store(config))
    scheduler = RuleScheduler(
        config,
        recorder=recorder,
        api_factory=lambda instance: apis[instance['id']],
        clock=lambda: NOW,
    )
    app = create_app(scheduler, recorder, API_KEY)
    app.config['TESTING'] = True

    yield config, scheduler, app.test_client()

    recorder.store.close()


class TestScheduledCycles:
    """Rules from rules.yml run against their own instance."""

    def test_rules_are_scoped_to_instances(self, stack, apis):
        config, scheduler, _ = stack

        scheduler.tick(NOW)

        assert apis['default'].calls['add_tags'] == [{'hashes': ['d1'], 'tags': ['example']}]
        assert apis['default'].calls['delete'] == []
        assert apis['seedbox'].calls['delete'] == [{'hashes': ['s1'], 'delete_files': True}]
        assert apis['seedbox'].calls['add_tags'] == []

    def test_settings_from_config(self, stack):
        config, scheduler, _ = stack

        assert scheduler.tick_interval == 10
        assert scheduler.debounce_window == 60
        assert scheduler.retention_days == 3

    def test_one_instance_failing_does_not_stop_the_other(self, stack, apis):
        _, scheduler, _ = stack
        apis['seedbox'].fail_on.add('get_torrents')

        scheduler.tick(NOW)

        status = scheduler.get_status()['instances']
        assert status['seedbox']['last_error'] == 'get_torrents failed'
        assert status['default']['last_error'] is None
        assert len(apis['default'].calls['add_tags']) == 1


class TestHttpApi:
    """Manual triggers and reporting through the Flask app."""

    def test_apply_then_activity(self, stack, apis, make_torrent):
        _, scheduler, client = stack
        scheduler.tick(NOW)

        response = client.post('/api/instances/default/apply', headers=HEADERS)
        assert response.status_code == 202

        # A second torrent starts matching before the manual cycle
        apis['default'].add(make_torrent('d4', name='Fresh', ratio=1.5))
        scheduler.tick(NOW + 1)

        assert apis['default'].calls['add_tags'][-1] == {'hashes': ['d4'], 'tags': ['example']}

        data = client.get('/api/activity?instance=default', headers=HEADERS).get_json()
        assert data['total'] == 2
        assert [e['torrent_hash'] for e in data['events']] == ['d4', 'd1']
        assert all(e['outcome'] == Outcome.SUCCESS for e in data['events'])

    def test_apply_unknown_instance(self, stack):
        _, _, client = stack

        response = client.post('/api/instances/nas/apply', headers=HEADERS)

        assert response.status_code == 404

    def test_status_after_cycle(self, stack):
        _, scheduler, client = stack
        scheduler.tick(NOW)

        data = client.get('/api/status', headers=HEADERS).get_json()

        assert data['instances']['default']['rules'] == {'tag-example': 'applied'}
        assert data['instances']['seedbox']['rules'] == {'seedbox-cleanup': 'applied'}
        assert data['instances']['seedbox']['last_result']['actions_executed'] == 1

    def test_preview_endpoint(self, stack, apis):
        _, _, client = stack

        response = client.get('/api/instances/seedbox/rules/seedbox-cleanup/preview', headers=HEADERS)

        assert response.status_code == 200
        data = response.get_json()
        assert data['total'] == 1
        assert data['examples'][0]['hash'] == 's1'
        assert apis['seedbox'].mutation_count == 0

    def test_preview_rule_of_other_instance(self, stack):
        _, _, client = stack

        response = client.get('/api/instances/default/rules/seedbox-cleanup/preview', headers=HEADERS)

        assert response.status_code == 404

    def test_health_reflects_scheduler_thread(self, stack):
        _, _, client = stack

        assert client.get('/api/health').status_code == 503
