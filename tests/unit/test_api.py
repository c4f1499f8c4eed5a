"""
Tests for QBittorrentAPI class.
"""

import pytest
import qbittorrentapi
from unittest.mock import Mock, patch

from qbt_automate.api import QBittorrentAPI
from qbt_automate.errors import APIError, AuthenticationError, ConnectionError
from qbt_automate.models import TorrentFile, TorrentSnapshot, TrackerEntry


def connected_client(mock_client_class):
    mock_client = Mock()
    mock_client.app_version = Mock(return_value='v5.0.0')
    mock_client.app_web_api_version = Mock(return_value='2.11.0')
    mock_client_class.return_value = mock_client
    return mock_client


class TestQBittorrentAPIInit:
    """Test QBittorrentAPI initialization."""

    @patch('qbt_automate.api.qbittorrentapi.Client')
    def test_init_creates_client(self, mock_client_class):
        """Should create qbittorrent-api Client without connecting"""
        api = QBittorrentAPI('http://localhost:8080/', 'admin', 'password', connect_now=False)

        assert api.host == 'http://localhost:8080'
        assert api._connected is False
        mock_client_class.assert_called_once_with(
            host='http://localhost:8080',
            username='admin',
            password='password',
            VERIFY_WEBUI_CERTIFICATE=True,
        )

    @patch('qbt_automate.api.qbittorrentapi.Client')
    def test_connect_now(self, mock_client_class):
        """Should log in immediately when connect_now=True"""
        mock_client = connected_client(mock_client_class)

        api = QBittorrentAPI('http://localhost:8080', 'admin', 'password')

        assert api._connected is True
        mock_client.auth_log_in.assert_called_once()

    @patch('qbt_automate.api.qbittorrentapi.Client')
    def test_login_failed_raises_auth_error(self, mock_client_class):
        """Should raise AuthenticationError when login fails"""
        mock_client = connected_client(mock_client_class)
        mock_client.auth_log_in.side_effect = qbittorrentapi.LoginFailed("Unauthorized")

        with pytest.raises(AuthenticationError):
            QBittorrentAPI('http://localhost:8080', 'admin', 'wrong')

    @patch('qbt_automate.api.qbittorrentapi.Client')
    def test_connection_error_raises(self, mock_client_class):
        """Should raise ConnectionError when the server is unreachable"""
        mock_client = connected_client(mock_client_class)
        mock_client.auth_log_in.side_effect = qbittorrentapi.APIConnectionError("Connection refused")

        with pytest.raises(ConnectionError):
            QBittorrentAPI('http://localhost:9999', 'admin', 'password')

    @patch('qbt_automate.api.qbittorrentapi.Client')
    def test_from_instance(self, mock_client_class):
        """Should build a lazy client from an instance definition"""
        api = QBittorrentAPI.from_instance({
            'id': 'seedbox', 'host': 'https://seedbox.example.net', 'username': 'u',
            'password': 'p', 'verify_ssl': False,
        })

        assert api._connected is False
        assert mock_client_class.call_args[1]['VERIFY_WEBUI_CERTIFICATE'] is False

    @patch('qbt_automate.api.qbittorrentapi.Client')
    def test_lazy_connect_on_first_call(self, mock_client_class):
        """Should log in once, on the first request"""
        mock_client = connected_client(mock_client_class)
        mock_client.torrents_info.return_value = []
        api = QBittorrentAPI('http://localhost:8080', 'admin', 'password', connect_now=False)

        api.get_torrents()
        api.get_torrents()

        mock_client.auth_log_in.assert_called_once()


class TestQBittorrentAPIReads:
    """Test torrent information methods."""

    @patch('qbt_automate.api.qbittorrentapi.Client')
    def test_get_torrents(self, mock_client_class):
        """Should convert torrents/info entries to snapshots"""
        mock_client = connected_client(mock_client_class)
        mock_client.torrents_info.return_value = [
            {'hash': 'ABC123', 'name': 'Movie', 'tags': 'a, b', 'size': 10, 'progress': 1},
        ]
        api = QBittorrentAPI('http://localhost:8080', 'admin', 'password')

        torrents = api.get_torrents()

        assert torrents == [TorrentSnapshot.from_api({
            'hash': 'ABC123', 'name': 'Movie', 'tags': 'a, b', 'size': 10, 'progress': 1,
        })]
        assert torrents[0].hash == 'abc123'

    @patch('qbt_automate.api.qbittorrentapi.Client')
    def test_get_torrents_api_error(self, mock_client_class):
        """Should wrap qbittorrent-api errors"""
        mock_client = connected_client(mock_client_class)
        mock_client.torrents_info.side_effect = qbittorrentapi.APIError("boom")
        api = QBittorrentAPI('http://localhost:8080', 'admin', 'password')

        with pytest.raises(APIError):
            api.get_torrents()

    @patch('qbt_automate.api.qbittorrentapi.Client')
    def test_get_torrents_connection_lost(self, mock_client_class):
        """Should raise ConnectionError when the connection drops mid-session"""
        mock_client = connected_client(mock_client_class)
        mock_client.torrents_info.side_effect = qbittorrentapi.APIConnectionError("reset")
        api = QBittorrentAPI('http://localhost:8080', 'admin', 'password')

        with pytest.raises(ConnectionError):
            api.get_torrents()

    @patch('qbt_automate.api.qbittorrentapi.Client')
    def test_get_files(self, mock_client_class):
        """Should return relative file paths and sizes"""
        mock_client = connected_client(mock_client_class)
        mock_client.torrents_files.return_value = [{'name': 'Movie/movie.mkv', 'size': 123}]
        api = QBittorrentAPI('http://localhost:8080', 'admin', 'password')

        assert api.get_files('abc') == [TorrentFile('Movie/movie.mkv', 123)]
        mock_client.torrents_files.assert_called_once_with(torrent_hash='abc')

    @patch('qbt_automate.api.qbittorrentapi.Client')
    def test_get_trackers(self, mock_client_class):
        """Should return tracker url, status and message"""
        mock_client = connected_client(mock_client_class)
        mock_client.torrents_trackers.return_value = [
            {'url': '** [DHT] **', 'status': 2, 'msg': ''},
            {'url': 'https://tracker.example.org/announce', 'status': 4, 'msg': 'Unregistered torrent'},
        ]
        api = QBittorrentAPI('http://localhost:8080', 'admin', 'password')

        trackers = api.get_trackers('abc')

        assert trackers[1] == TrackerEntry('https://tracker.example.org/announce', 4, 'Unregistered torrent')
        assert not trackers[0].is_real
        mock_client.torrents_trackers.assert_called_once_with(torrent_hash='abc')

    @patch('qbt_automate.api.qbittorrentapi.Client')
    def test_get_free_space(self, mock_client_class):
        """Should read free_space_on_disk from the sync state"""
        mock_client = connected_client(mock_client_class)
        mock_client.sync_maindata.return_value = {'server_state': {'free_space_on_disk': 5000}}
        api = QBittorrentAPI('http://localhost:8080', 'admin', 'password')

        assert api.get_free_space() == 5000

    @patch('qbt_automate.api.qbittorrentapi.Client')
    def test_get_free_space_unreported(self, mock_client_class):
        """Should return None when the server omits free space"""
        mock_client = connected_client(mock_client_class)
        mock_client.sync_maindata.return_value = {}
        api = QBittorrentAPI('http://localhost:8080', 'admin', 'password')

        assert api.get_free_space() is None


class TestQBittorrentAPIActions:
    """Test mutating methods."""

    @pytest.fixture
    def api_and_client(self):
        with patch('qbt_automate.api.qbittorrentapi.Client') as mock_client_class:
            mock_client = connected_client(mock_client_class)
            yield QBittorrentAPI('http://localhost:8080', 'admin', 'password'), mock_client

    def test_stop_and_start(self, api_and_client):
        api, client = api_and_client

        assert api.stop_torrents(['a']) is True
        assert api.start_torrents(['a']) is True
        client.torrents_pause.assert_called_once_with(torrent_hashes=['a'])
        client.torrents_resume.assert_called_once_with(torrent_hashes=['a'])

    def test_delete(self, api_and_client):
        api, client = api_and_client

        api.delete_torrents(['a', 'b'], delete_files=True)
        client.torrents_delete.assert_called_once_with(delete_files=True, torrent_hashes=['a', 'b'])

    def test_set_location_and_category(self, api_and_client):
        api, client = api_and_client

        api.set_location(['a'], '/data/movies')
        api.set_category(['a'], 'movies')
        client.torrents_set_location.assert_called_once_with(location='/data/movies', torrent_hashes=['a'])
        client.torrents_set_category.assert_called_once_with(category='movies', torrent_hashes=['a'])

    def test_tags(self, api_and_client):
        api, client = api_and_client

        api.add_tags(['a'], ['x'])
        api.remove_tags(['a'], ['y'])
        client.torrents_add_tags.assert_called_once_with(tags=['x'], torrent_hashes=['a'])
        client.torrents_remove_tags.assert_called_once_with(tags=['y'], torrent_hashes=['a'])

    def test_limits(self, api_and_client):
        api, client = api_and_client

        api.set_upload_limit(['a'], 1024)
        api.set_download_limit(['a'], -1)
        api.set_share_limits(['a'], ratio_limit=2.0, seeding_time_limit=60)

        client.torrents_set_upload_limit.assert_called_once_with(limit=1024, torrent_hashes=['a'])
        client.torrents_set_download_limit.assert_called_once_with(limit=-1, torrent_hashes=['a'])
        client.torrents_set_share_limits.assert_called_once_with(
            ratio_limit=2.0, seeding_time_limit=60, inactive_seeding_time_limit=-2, torrent_hashes=['a'],
        )

    def test_action_errors_are_wrapped(self, api_and_client):
        api, client = api_and_client
        client.torrents_add_tags.side_effect = qbittorrentapi.APIError("conflict")

        with pytest.raises(APIError):
            api.add_tags(['a'], ['x'])

    @patch('qbt_automate.api.qbittorrentapi.Client')
    def test_action_logs_in_first(self, mock_client_class):
        """Should log in lazily before the first mutating call"""
        mock_client = connected_client(mock_client_class)
        api = QBittorrentAPI('http://localhost:8080', 'admin', 'password', connect_now=False)

        api.stop_torrents(['a'])

        mock_client.auth_log_in.assert_called_once()
        mock_client.torrents_pause.assert_called_once_with(torrent_hashes=['a'])
