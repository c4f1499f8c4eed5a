"""Version information for qbt-automate"""

__version__ = '1.0.0'
__description__ = 'Rule engine for qBittorrent: conditions, cross-seed aware cleanup and scheduled actions'
