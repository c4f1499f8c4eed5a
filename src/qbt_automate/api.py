"""
qBittorrent Web API access through qbittorrent-api

One QBittorrentAPI per configured instance. Reads return immutable
TorrentSnapshot / TorrentFile values; every mutating call takes a batch of
hashes. Login is deferred to the first request unless connect_now is set.
"""

import qbittorrentapi
from typing import Any, Dict, List, Optional

from qbt_automate.errors import AuthenticationError, ConnectionError, APIError
from qbt_automate.logging import get_logger
from qbt_automate.models import TorrentFile, TorrentSnapshot, TrackerEntry

logger = get_logger(__name__)


class QBittorrentAPI:
    """
    Client for one qBittorrent instance

    qbittorrent-api handles version differences (v4.1 through v5.x), so
    stop/start map to pause/resume on older servers.

    Args:
        host: Web UI URL, e.g. 'http://localhost:8080'
        username: Web UI user
        password: Web UI password
        connect_now: Log in immediately instead of on the first request
        verify_ssl: Verify the Web UI's TLS certificate

    Raises:
        AuthenticationError: Bad credentials (only when connect_now=True)
        ConnectionError: Server unreachable (only when connect_now=True)
    """

    def __init__(self, host: str, username: str, password: str, connect_now: bool = True,
                 verify_ssl: bool = True):
        self.host = host.rstrip('/')
        self.username = username
        self.password = password
        self._connected = False

        # No request is made until auth_log_in
        self.client = qbittorrentapi.Client(
            host=self.host,
            username=self.username,
            password=self.password,
            VERIFY_WEBUI_CERTIFICATE=verify_ssl,
        )

        if connect_now:
            self._ensure_connected()

    @classmethod
    def from_instance(cls, instance: Dict, connect_now: bool = False) -> 'QBittorrentAPI':
        """Build a lazily connecting client from a normalized instance dict"""
        return cls(
            host=instance.get('host', 'http://localhost:8080'),
            username=instance.get('username', 'admin'),
            password=instance.get('password', ''),
            connect_now=connect_now,
            verify_ssl=bool(instance.get('verify_ssl', True)),
        )

    def _ensure_connected(self):
        if self._connected:
            return

        try:
            self.client.auth_log_in()
        except qbittorrentapi.LoginFailed as e:
            raise AuthenticationError(self.host, str(e))
        except Exception as e:
            raise ConnectionError(self.host, str(e))

        self._connected = True
        logger.info(f"Logged in to qBittorrent at {self.host}")
        logger.debug(f"[{self.host}] qBittorrent {self.client.app_version()}, "
                     f"Web API {self.client.app_web_api_version()}")

    def _call(self, endpoint: str, method: str, **kwargs) -> Any:
        """
        Invoke a qbittorrent-api client method

        Raises:
            ConnectionError: Connection lost or refused
            APIError: The server rejected the request
        """
        self._ensure_connected()
        try:
            return getattr(self.client, method)(**kwargs)
        except qbittorrentapi.APIConnectionError as e:
            raise ConnectionError(self.host, str(e))
        except qbittorrentapi.APIError as e:
            raise APIError(endpoint, str(e))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_torrents(self) -> List[TorrentSnapshot]:
        """All torrents of the instance (file lists are fetched separately)"""
        torrents = self._call('torrents/info', 'torrents_info')
        return [TorrentSnapshot.from_api(dict(t)) for t in torrents]

    def get_files(self, torrent_hash: str) -> List[TorrentFile]:
        """Files of one torrent, paths relative to its save path"""
        files = self._call('torrents/files', 'torrents_files', torrent_hash=torrent_hash)
        return [TorrentFile(path=f['name'], size=int(f.get('size', 0))) for f in files]

    def get_trackers(self, torrent_hash: str) -> List[TrackerEntry]:
        """Trackers of one torrent with their last status and message"""
        trackers = self._call('torrents/trackers', 'torrents_trackers', torrent_hash=torrent_hash)
        return [TrackerEntry(url=str(t.get('url', '')), status=int(t.get('status', 0) or 0),
                             message=str(t.get('msg', '') or ''))
                for t in trackers]

    def get_free_space(self) -> Optional[int]:
        """
        Free bytes on the default save path as qBittorrent reports it

        Returns:
            Bytes, or None when server_state carries no free_space_on_disk
        """
        maindata = self._call('sync/maindata', 'sync_maindata')
        server_state = maindata.get('server_state', {}) or {}
        free_space = server_state.get('free_space_on_disk')
        return int(free_space) if free_space is not None else None

    # ------------------------------------------------------------------
    # Batched actions
    # ------------------------------------------------------------------

    def stop_torrents(self, hashes: List[str]) -> bool:
        self._call('torrents/stop', 'torrents_pause', torrent_hashes=hashes)
        return True

    def start_torrents(self, hashes: List[str]) -> bool:
        self._call('torrents/start', 'torrents_resume', torrent_hashes=hashes)
        return True

    def delete_torrents(self, hashes: List[str], delete_files: bool) -> bool:
        self._call('torrents/delete', 'torrents_delete', delete_files=delete_files, torrent_hashes=hashes)
        return True

    def set_location(self, hashes: List[str], location: str) -> bool:
        self._call('torrents/setLocation', 'torrents_set_location', location=location, torrent_hashes=hashes)
        return True

    def set_category(self, hashes: List[str], category: str) -> bool:
        self._call('torrents/setCategory', 'torrents_set_category', category=category, torrent_hashes=hashes)
        return True

    def add_tags(self, hashes: List[str], tags: List[str]) -> bool:
        self._call('torrents/addTags', 'torrents_add_tags', tags=tags, torrent_hashes=hashes)
        return True

    def remove_tags(self, hashes: List[str], tags: List[str]) -> bool:
        self._call('torrents/removeTags', 'torrents_remove_tags', tags=tags, torrent_hashes=hashes)
        return True

    def set_upload_limit(self, hashes: List[str], limit: int) -> bool:
        """limit in bytes/s, -1 for unlimited"""
        self._call('torrents/setUploadLimit', 'torrents_set_upload_limit', limit=limit, torrent_hashes=hashes)
        return True

    def set_download_limit(self, hashes: List[str], limit: int) -> bool:
        """limit in bytes/s, -1 for unlimited"""
        self._call('torrents/setDownloadLimit', 'torrents_set_download_limit', limit=limit, torrent_hashes=hashes)
        return True

    def set_share_limits(self, hashes: List[str], ratio_limit: float = -2,
                         seeding_time_limit: int = -2) -> bool:
        """
        Ratio and seeding time limits (-2 = global setting, -1 = unlimited)

        The inactive seeding time limit is left at the global setting.
        """
        self._call(
            'torrents/setShareLimits', 'torrents_set_share_limits',
            ratio_limit=ratio_limit,
            seeding_time_limit=seeding_time_limit,
            inactive_seeding_time_limit=-2,
            torrent_hashes=hashes,
        )
        return True
