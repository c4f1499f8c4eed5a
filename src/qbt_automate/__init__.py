"""qbt-automate - rule-driven torrent automation for qBittorrent"""

from qbt_automate.__version__ import __version__, __description__

__all__ = ['__version__', '__description__']
