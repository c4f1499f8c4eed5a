"""Pytest configuration and shared fixtures for the qbt-automate test suite."""

import os
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from qbt_automate.activity import ActivityRecorder, MemoryActivityStore
from qbt_automate.config import get_nested_config
from qbt_automate.errors import UnknownInstanceError
from qbt_automate.models import TorrentFile, TorrentSnapshot, TrackerEntry
from qbt_automate.rules import parse_rule


ENV_VARS = (
    'DRY_RUN', 'LOG_LEVEL', 'TRACE_MODE', 'LOG_FILE', 'CONFIG_DIR',
    'QBT_AUTOMATE_SERVER_API_KEY', 'QBT_AUTOMATE_CLIENT_API_KEY',
    'QBT_AUTOMATE_QBITTORRENT_HOST', 'QBT_AUTOMATE_QBITTORRENT_USERNAME',
    'QBT_AUTOMATE_QBITTORRENT_PASSWORD', 'QBT_AUTOMATE_DRY_RUN',
    'QBT_AUTOMATE_RULES_FILE', 'QBT_AUTOMATE_CONFIG_DIR',
)

BASE_TIME = 1_700_000_000
GIB = 1024 ** 3


@pytest.fixture(autouse=True)
def clean_environment_variables():
    """Clean up environment variables before and after each test."""
    original = {name: os.environ.get(name) for name in ENV_VARS}

    for name in ENV_VARS:
        os.environ.pop(name, None)

    yield

    for name in ENV_VARS:
        os.environ.pop(name, None)
        if original[name] is not None:
            os.environ[name] = original[name]


# ============================================================================
# Mock QBittorrent API
# ============================================================================

class MockQBittorrentAPI:
    """
    Mock QBittorrentAPI for testing without a real qBittorrent instance.

    Holds torrent snapshots, applies every mutating call to them (so a second
    cycle sees the new state) and records the calls for verification.
    """

    def __init__(self, torrents: Optional[List[TorrentSnapshot]] = None,
                 files: Optional[Dict[str, List[TorrentFile]]] = None,
                 free_space: Optional[int] = None,
                 trackers: Optional[Dict[str, List[TrackerEntry]]] = None):
        self.torrents_data: Dict[str, TorrentSnapshot] = {t.hash: t for t in torrents or []}
        self.files_data = files or {}
        self.free_space = free_space
        self.trackers_data = trackers or {}
        self.fail_on = set()

        # Track API calls for verification
        self.calls = {
            'get_torrents': 0,
            'get_files': [],
            'get_trackers': [],
            'stop': [],
            'start': [],
            'delete': [],
            'set_location': [],
            'set_category': [],
            'add_tags': [],
            'remove_tags': [],
            'set_upload_limit': [],
            'set_download_limit': [],
            'set_share_limits': [],
        }

    def _check(self, name: str):
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    def _update(self, hashes: List[str], **changes):
        for torrent_hash in hashes:
            if torrent_hash in self.torrents_data:
                self.torrents_data[torrent_hash] = replace(self.torrents_data[torrent_hash], **changes)

    def add(self, torrent: TorrentSnapshot):
        self.torrents_data[torrent.hash] = torrent

    @property
    def mutation_count(self) -> int:
        return sum(len(v) for k, v in self.calls.items() if k not in ('get_torrents', 'get_files', 'get_trackers'))

    # Reads

    def get_torrents(self) -> List[TorrentSnapshot]:
        self._check('get_torrents')
        self.calls['get_torrents'] += 1
        return list(self.torrents_data.values())

    def get_files(self, torrent_hash: str) -> List[TorrentFile]:
        self._check('get_files')
        self.calls['get_files'].append(torrent_hash)
        return list(self.files_data.get(torrent_hash, []))

    def get_trackers(self, torrent_hash: str) -> List[TrackerEntry]:
        self._check('get_trackers')
        self.calls['get_trackers'].append(torrent_hash)
        return list(self.trackers_data.get(torrent_hash, []))

    def get_free_space(self) -> Optional[int]:
        self._check('get_free_space')
        return self.free_space

    # Actions

    def stop_torrents(self, hashes):
        self._check('stop_torrents')
        self.calls['stop'].append(list(hashes))
        self._update(hashes, state='stoppedUP')
        return True

    def start_torrents(self, hashes):
        self._check('start_torrents')
        self.calls['start'].append(list(hashes))
        self._update(hashes, state='stalledUP')
        return True

    def delete_torrents(self, hashes, delete_files=False):
        self._check('delete_torrents')
        self.calls['delete'].append({'hashes': list(hashes), 'delete_files': delete_files})
        for torrent_hash in hashes:
            self.torrents_data.pop(torrent_hash, None)
        return True

    def set_location(self, hashes, location):
        self._check('set_location')
        self.calls['set_location'].append({'hashes': list(hashes), 'location': location})
        self._update(hashes, save_path=location)
        return True

    def set_category(self, hashes, category):
        self._check('set_category')
        self.calls['set_category'].append({'hashes': list(hashes), 'category': category})
        self._update(hashes, category=category)
        return True

    def add_tags(self, hashes, tags):
        self._check('add_tags')
        self.calls['add_tags'].append({'hashes': list(hashes), 'tags': list(tags)})
        for torrent_hash in hashes:
            torrent = self.torrents_data.get(torrent_hash)
            if torrent is not None:
                merged = list(torrent.tags) + [t for t in tags if t not in torrent.tags]
                self.torrents_data[torrent_hash] = replace(torrent, tags=tuple(merged))
        return True

    def remove_tags(self, hashes, tags):
        self._check('remove_tags')
        self.calls['remove_tags'].append({'hashes': list(hashes), 'tags': list(tags)})
        for torrent_hash in hashes:
            torrent = self.torrents_data.get(torrent_hash)
            if torrent is not None:
                kept = tuple(t for t in torrent.tags if t not in tags)
                self.torrents_data[torrent_hash] = replace(torrent, tags=kept)
        return True

    def set_upload_limit(self, hashes, limit):
        self._check('set_upload_limit')
        self.calls['set_upload_limit'].append({'hashes': list(hashes), 'limit': limit})
        self._update(hashes, up_limit=limit)
        return True

    def set_download_limit(self, hashes, limit):
        self._check('set_download_limit')
        self.calls['set_download_limit'].append({'hashes': list(hashes), 'limit': limit})
        self._update(hashes, dl_limit=limit)
        return True

    def set_share_limits(self, hashes, ratio_limit=-2, seeding_time_limit=-2):
        self._check('set_share_limits')
        self.calls['set_share_limits'].append({
            'hashes': list(hashes),
            'ratio_limit': ratio_limit,
            'seeding_time_limit': seeding_time_limit,
        })
        self._update(hashes, ratio_limit=ratio_limit, seeding_time_limit=seeding_time_limit)
        return True


class FakeConfig:
    """In-memory stand-in for Config with the accessors the engine uses."""

    def __init__(self, rules=None, instances: Optional[Dict[str, Dict[str, Any]]] = None,
                 settings: Optional[Dict[str, Any]] = None, aliases: Optional[Dict[str, str]] = None,
                 config_dir: Path = Path('/config')):
        self.rules = list(rules or [])
        self.config = settings or {}
        self.config_dir = config_dir
        self._aliases = aliases or {}
        self._instances = instances or {'default': {'id': 'default', 'host': 'http://localhost:8080'}}

    def get(self, key: str, default: Any = None) -> Any:
        value = get_nested_config(self.config, key)
        return default if value is None else value

    def get_instances(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._instances)

    def get_instance(self, instance_id: str) -> Dict[str, Any]:
        if instance_id not in self._instances:
            raise UnknownInstanceError(instance_id, sorted(self._instances))
        return self._instances[instance_id]

    def get_tracker_aliases(self) -> Dict[str, str]:
        return dict(self._aliases)

    def get_rules(self):
        return list(self.rules)

    def is_dry_run(self) -> bool:
        return False

    def get_trace_mode(self) -> bool:
        return False


# ============================================================================
# Factories
# ============================================================================

@pytest.fixture
def make_torrent():
    """
    Factory for torrent snapshots.

    Defaults describe a completed, seeding torrent in its own folder under /data.
    """
    def _make(torrent_hash: str, name: Optional[str] = None, **fields) -> TorrentSnapshot:
        name = name or f"Torrent.{torrent_hash}"
        data = {
            'hash': torrent_hash,
            'name': name,
            'state': 'stalledUP',
            'progress': 1.0,
            'save_path': '/data',
            'content_path': f'/data/{name}',
            'size': GIB,
            'total_size': GIB,
            'added_on': BASE_TIME,
            'completion_on': BASE_TIME + 3600,
            'tracker': 'https://tracker.example.org/announce',
        }
        data.update(fields)
        if 'tags' in data and isinstance(data['tags'], (list, str)):
            tags = data['tags']
            data['tags'] = tuple(t.strip() for t in (tags.split(',') if isinstance(tags, str) else tags) if t.strip())
        return TorrentSnapshot(**data)
    return _make


@pytest.fixture
def make_rule():
    """Factory building validated rules from rules.yml style dictionaries."""
    def _make(name: str = 'Test rule', position: int = 0, **data):
        data.setdefault('actions', {'tag': {'tags': ['matched'], 'mode': 'add'}})
        return parse_rule(dict(name=name, **data), position)
    return _make


@pytest.fixture
def make_config():
    """Factory for FakeConfig instances."""
    def _make(**kwargs) -> FakeConfig:
        return FakeConfig(**kwargs)
    return _make


@pytest.fixture
def mock_api():
    """Empty mock qBittorrent API."""
    return MockQBittorrentAPI()


@pytest.fixture
def api_factory():
    """Factory for mock qBittorrent APIs."""
    def _make(torrents=None, files=None, free_space=None, trackers=None) -> MockQBittorrentAPI:
        return MockQBittorrentAPI(torrents=torrents, files=files, free_space=free_space, trackers=trackers)
    return _make


@pytest.fixture
def recorder():
    """Activity recorder backed by an in-memory store."""
    return ActivityRecorder(MemoryActivityStore())


@pytest.fixture
def now():
    """Fixed evaluation time, 30 days after the default torrent timestamps."""
    return float(BASE_TIME + 30 * 86400)


@pytest.fixture
def tmp_config_dir(tmp_path):
    """Temporary config directory with a minimal config.yml and rules.yml."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()

    (config_dir / "config.yml").write_text("""
instances:
  default:
    host: http://localhost:8080
    username: admin
    password: adminpass
  seedbox:
    host: https://seedbox.example.net
    username: seeder
    password: secret
    local_filesystem_access: true
    free_space_source: path
    free_space_path: /srv/torrents

engine:
  tick_interval: 10
  debounce_window: 60

trackers:
  aliases:
    tracker.example.org: Example

logging:
  level: INFO
  file: logs/test.log
""")

    (config_dir / "rules.yml").write_text("""
rules:
  - id: tag-example
    name: Tag example tracker
    tracker: example.org, .example.org
    conditions:
      - field: ratio
        operator: ">="
        value: 1.0
    actions:
      tag:
        tags: [example]
        mode: add

  - id: seedbox-cleanup
    name: Seedbox cleanup
    instance: seedbox
    sort_order: 10
    conditions:
      all:
        - field: seeding_time
          operator: ">"
          value: 30 days
    actions:
      delete:
        mode: delete_with_files
""")

    return config_dir
