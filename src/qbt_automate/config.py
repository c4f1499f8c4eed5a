"""
Configuration loader with environment variable expansion and universal _FILE support

Resolution order (highest to lowest priority):
1. CLI arguments
2. Environment variable _FILE variant (reads from file)
3. Environment variable (direct value)
4. Config file
5. Default value
"""

import os
import re
import sys
import shutil
import yaml
from pathlib import Path
from typing import Dict, Any, List, Optional

from qbt_automate.errors import ConfigurationError, UnknownInstanceError
from qbt_automate.logging import get_logger
from qbt_automate.models import Rule
from qbt_automate.rules import parse_rules

logger = get_logger(__name__)


# Environment variable mapping
# Maps config keys to environment variable names
ENV_VAR_MAP = {
    # Server configuration
    'server.host': 'QBT_AUTOMATE_SERVER_HOST',
    'server.port': 'QBT_AUTOMATE_SERVER_PORT',
    'server.api_key': 'QBT_AUTOMATE_SERVER_API_KEY',

    # Client configuration
    'client.server_url': 'QBT_AUTOMATE_CLIENT_SERVER_URL',
    'client.api_key': 'QBT_AUTOMATE_CLIENT_API_KEY',

    # qBittorrent configuration (instance 'default')
    'qbittorrent.host': 'QBT_AUTOMATE_QBITTORRENT_HOST',
    'qbittorrent.username': 'QBT_AUTOMATE_QBITTORRENT_USERNAME',
    'qbittorrent.password': 'QBT_AUTOMATE_QBITTORRENT_PASSWORD',

    # Activity store
    'activity.backend': 'QBT_AUTOMATE_ACTIVITY_BACKEND',
    'activity.sqlite_path': 'QBT_AUTOMATE_ACTIVITY_SQLITE_PATH',
    'activity.retention_days': 'QBT_AUTOMATE_ACTIVITY_RETENTION_DAYS',

    # Engine, rules & logging
    'engine.dry_run': 'QBT_AUTOMATE_DRY_RUN',
    'engine.tick_interval': 'QBT_AUTOMATE_TICK_INTERVAL',
    'rules.file': 'QBT_AUTOMATE_RULES_FILE',
    'config.dir': 'QBT_AUTOMATE_CONFIG_DIR',
    'logging.level': 'QBT_AUTOMATE_LOG_LEVEL',
    'logging.file': 'QBT_AUTOMATE_LOG_FILE',
    'logging.trace_mode': 'QBT_AUTOMATE_LOG_TRACE_MODE',
}

# Default config location (Linux FHS standard)
DEFAULT_CONFIG_SHARE_PATH = Path('/usr/share/qbt-automate')

DEFAULT_INSTANCE_ID = 'default'
FREE_SPACE_SOURCES = ('client', 'path')


def copy_default_if_missing(target_path: Path, default_filename: str) -> bool:
    """
    Copy default config from /usr/share if target doesn't exist.

    Args:
        target_path: Target file path (e.g., /config/config.yml)
        default_filename: Default filename (e.g., 'config.default.yml')

    Returns:
        True if file was copied, False otherwise
    """
    if target_path.exists():
        return False

    default_path = DEFAULT_CONFIG_SHARE_PATH / default_filename
    if not default_path.exists():
        return False

    try:
        target_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(default_path, target_path)
        print(f"INFO: Created {target_path} from {default_path}", file=sys.stderr)
        return True
    except OSError as e:
        print(f"WARNING: Failed to copy default config: {e}", file=sys.stderr)
        return False


def get_nested_config(config: Dict[str, Any], key: str) -> Optional[Any]:
    """
    Get nested configuration value using dot notation

    Examples:
        >>> get_nested_config({'server': {'port': 5000}}, 'server.port')
        5000
        >>> get_nested_config({'server': {}}, 'server.missing')
        None
    """
    value = config
    for k in key.split('.'):
        if isinstance(value, dict) and k in value:
            value = value[k]
        else:
            return None
    return value


def parse_bool(value: Any) -> bool:
    """
    Parse boolean from various formats

    Examples:
        >>> parse_bool('true')
        True
        >>> parse_bool(0)
        False
        >>> parse_bool(None)
        False
    """
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes', 'on')
    return bool(value)


def parse_int(value: Any, default: int = 0) -> int:
    """Parse integer from various formats, falling back to default"""
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def resolve_config(
    cli_value: Optional[Any],
    env_var: str,
    config: Dict[str, Any],
    config_key: str,
    default: Optional[Any] = None
) -> Any:
    """
    Universal configuration resolver with _FILE support

    Resolution order:
    1. CLI argument (if provided)
    2. Environment variable _FILE variant (reads file content)
    3. Environment variable (direct value)
    4. Config file value
    5. Default value

    Args:
        cli_value: Value from CLI argument (None if not provided)
        env_var: Environment variable name (without _FILE suffix)
        config: Loaded configuration dictionary
        config_key: Dot-notation key for config file (e.g., 'server.port')
        default: Default value if no source provides a value

    Returns:
        Resolved configuration value
    """
    if cli_value is not None:
        return cli_value

    file_var = f"{env_var}_FILE"
    if file_var in os.environ:
        file_path = os.environ[file_var]
        try:
            with open(file_path, 'r') as f:
                content = f.read().strip()
            logger.debug(f"Loaded config from file: {file_var}={file_path}")
            return content
        except FileNotFoundError:
            logger.warning(f"File not found for {file_var}: {file_path}")
        except PermissionError:
            logger.warning(f"Permission denied reading {file_var}: {file_path}")
        except OSError as e:
            logger.warning(f"Error reading {file_var} from {file_path}: {e}")

    if env_var in os.environ:
        logger.debug(f"Loaded config from env: {env_var}")
        return os.environ[env_var]

    if config:
        value = get_nested_config(config, config_key)
        if value is not None:
            return value

    return default


_ENV_PATTERN = re.compile(r'\$\{([^}:]+)(?::-([^}]*))?\}')


def expand_env_vars(value: Any) -> Any:
    """
    Recursively expand ${VAR_NAME:-default} in configuration values

    Examples:
        >>> os.environ['TEST_VAR'] = 'hello'
        >>> expand_env_vars('${TEST_VAR:-default}')
        'hello'
        >>> expand_env_vars('${MISSING_VAR:-default}')
        'default'
    """
    if isinstance(value, str):
        def replacer(match):
            default_value = match.group(2) if match.group(2) is not None else ''
            return os.environ.get(match.group(1), default_value)
        return _ENV_PATTERN.sub(replacer, value)
    if isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file with error handling

    Raises:
        ConfigurationError: If file cannot be loaded
    """
    if not file_path.exists():
        raise ConfigurationError(str(file_path), "File does not exist")

    try:
        with open(file_path, 'r') as f:
            content = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(str(file_path), f"Invalid YAML syntax: {str(e)}")
    except PermissionError:
        raise ConfigurationError(str(file_path), "Permission denied - cannot read file")
    except OSError as e:
        raise ConfigurationError(str(file_path), f"Cannot read file: {str(e)}")

    if content is None:
        raise ConfigurationError(str(file_path), "File is empty")
    if not isinstance(content, dict):
        raise ConfigurationError(str(file_path), "Top level must be a mapping")

    return content


def default_config_dir() -> Path:
    """CONFIG_DIR, else ./config when present, else /config"""
    env_dir = os.environ.get('CONFIG_DIR') or os.environ.get(ENV_VAR_MAP['config.dir'])
    if env_dir:
        return Path(env_dir)
    local = Path('config')
    if local.is_dir():
        return local
    return Path('/config')


class Config:
    """Configuration manager"""

    def __init__(self, config_dir: Optional[Path] = None):
        """
        Initialize configuration

        Args:
            config_dir: Directory containing config.yml and rules.yml
                       Defaults to CONFIG_DIR, ./config or /config
        """
        if config_dir is None:
            config_dir = default_config_dir()

        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / 'config.yml'

        copy_default_if_missing(self.config_file, 'config.default.yml')
        self._load_config()

        rules_file = resolve_config(None, ENV_VAR_MAP['rules.file'], self.config, 'rules.file', 'rules.yml')
        self.rules_file = Path(rules_file)
        if not self.rules_file.is_absolute():
            self.rules_file = self.config_dir / self.rules_file

        copy_default_if_missing(self.rules_file, 'rules.default.yml')
        self._load_rules()
        self._instances = self._load_instances()

    def _load_config(self):
        """Load config.yml with environment variable expansion"""
        logger.debug(f"Loading config from {self.config_file}")
        self.config = expand_env_vars(load_yaml_file(self.config_file))

    def _load_rules(self):
        """Load and validate rules.yml"""
        logger.debug(f"Loading rules from {self.rules_file}")

        raw_rules = load_yaml_file(self.rules_file).get('rules', [])
        if raw_rules is None:
            raw_rules = []
        if not isinstance(raw_rules, list):
            raise ConfigurationError(str(self.rules_file), "'rules' must be a list")

        self.raw_rules = raw_rules
        self.rules = parse_rules(raw_rules)

        unknown = sorted({rule.instance for rule in self.rules} - set(self._instance_ids()))
        if unknown:
            raise ConfigurationError(
                str(self.rules_file),
                f"Rules reference unknown instance(s): {', '.join(unknown)}"
            )

        logger.debug(f"Loaded {len(self.rules)} rules")

    def _instance_ids(self) -> List[str]:
        instances = self.get('instances')
        if isinstance(instances, dict) and instances:
            return [str(i) for i in instances]
        return [DEFAULT_INSTANCE_ID]

    def _load_instances(self) -> Dict[str, Dict[str, Any]]:
        """Normalize 'instances' (or the legacy 'qbittorrent' section)"""
        raw_instances = self.get('instances')
        if not isinstance(raw_instances, dict) or not raw_instances:
            raw_instances = {DEFAULT_INSTANCE_ID: self.get('qbittorrent', {}) or {}}

        instances = {}
        for instance_id, raw in raw_instances.items():
            instance_id = str(instance_id)
            if not isinstance(raw, dict):
                raise ConfigurationError(str(self.config_file), f"Instance '{instance_id}' must be a mapping")
            instances[instance_id] = self._normalize_instance(instance_id, raw)
        return instances

    def _normalize_instance(self, instance_id: str, raw: Dict[str, Any]) -> Dict[str, Any]:
        section = {'qbittorrent': raw}
        is_default = instance_id == DEFAULT_INSTANCE_ID

        def setting(key: str, default: Any = None) -> Any:
            if is_default:
                return resolve_config(None, ENV_VAR_MAP[f'qbittorrent.{key}'], section, f'qbittorrent.{key}', default)
            value = raw.get(key)
            return default if value is None else value

        free_space_source = str(raw.get('free_space_source', 'client')).lower()
        if free_space_source not in FREE_SPACE_SOURCES:
            raise ConfigurationError(
                str(self.config_file),
                f"Instance '{instance_id}': free_space_source must be one of {', '.join(FREE_SPACE_SOURCES)}"
            )

        return {
            'id': instance_id,
            'host': setting('host', 'http://localhost:8080'),
            'username': setting('username', raw.get('user', 'admin')),
            'password': setting('password', raw.get('pass', '')),
            'verify_ssl': parse_bool(raw.get('verify_ssl', True)),
            'enabled': parse_bool(raw.get('enabled', True)),
            'local_filesystem_access': parse_bool(raw.get('local_filesystem_access', False)),
            'free_space_source': free_space_source,
            'free_space_path': raw.get('free_space_path'),
        }

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation key

        Args:
            key: Configuration key (e.g., 'engine.tick_interval')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value = get_nested_config(self.config, key)
        return default if value is None else value

    def get_instances(self) -> Dict[str, Dict[str, Any]]:
        """All configured instances by id"""
        return dict(self._instances)

    def get_instance(self, instance_id: str) -> Dict[str, Any]:
        """
        One instance's settings

        Raises:
            UnknownInstanceError: If the instance is not configured
        """
        if instance_id not in self._instances:
            raise UnknownInstanceError(instance_id, sorted(self._instances))
        return self._instances[instance_id]

    def get_tracker_aliases(self) -> Dict[str, str]:
        """Tracker domain -> display name, domains lowercased"""
        aliases = self.get('trackers.aliases', {}) or {}
        return {str(domain).strip().lower(): str(name) for domain, name in aliases.items()}

    def is_dry_run(self) -> bool:
        """Check if dry-run mode is enabled"""
        env_dry_run = os.environ.get('DRY_RUN', '').lower()
        if env_dry_run in ('true', '1', 'yes', 'on'):
            return True
        elif env_dry_run in ('false', '0', 'no', 'off'):
            return False

        return parse_bool(resolve_config(None, ENV_VAR_MAP['engine.dry_run'], self.config, 'engine.dry_run', False))

    def get_log_level(self) -> str:
        """Get logging level"""
        level = os.environ.get('LOG_LEVEL') or resolve_config(
            None, ENV_VAR_MAP['logging.level'], self.config, 'logging.level', 'INFO')
        return str(level).upper()

    def get_log_file(self) -> Path:
        """
        Get log file path

        If path is relative, make it relative to the config directory.
        """
        log_file_str = os.environ.get('LOG_FILE') or resolve_config(
            None, ENV_VAR_MAP['logging.file'], self.config, 'logging.file', 'logs/qbt-automate.log')
        log_path = Path(log_file_str)

        if not log_path.is_absolute():
            log_path = self.config_dir / log_path

        return log_path

    def get_trace_mode(self) -> bool:
        """Check if trace mode is enabled (detailed logging with module/function/line)"""
        env_trace = os.environ.get('TRACE_MODE', '').lower()
        if env_trace in ('true', '1', 'yes', 'on'):
            return True
        elif env_trace in ('false', '0', 'no', 'off'):
            return False

        return parse_bool(resolve_config(
            None, ENV_VAR_MAP['logging.trace_mode'], self.config, 'logging.trace_mode', False))

    def get_rules(self) -> List[Rule]:
        """Parsed rules in file order"""
        return list(self.rules)

    def find_rule(self, rule_id: str, instance_id: Optional[str] = None) -> Optional[Rule]:
        for rule in self.rules:
            if rule.id == rule_id and (instance_id is None or rule.instance == instance_id):
                return rule
        return None


def load_config(config_dir: Optional[Path] = None) -> Config:
    """
    Load configuration from directory

    Args:
        config_dir: Directory containing config.yml and rules.yml

    Returns:
        Config object
    """
    return Config(config_dir)
