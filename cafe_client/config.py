"""
Configuration Management for the Cafe POS client.

Settings come from four layers, highest priority first: explicit overrides
(command line), ``CAFE_POS_*`` environment variables, the INI configuration
file, and built-in defaults. INI values are JSON-decoded where possible so
lists, numbers and ``null`` survive a save/load cycle.
"""

import os
import copy
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any, List
from configparser import ConfigParser

from cafe_shared.exceptions import ConfigurationError, ErrorCode

logger = logging.getLogger(__name__)


DEFAULT_EXEMPT_PATHS = [
    '/auth/login',
    '/auth/register',
    '/auth/refresh',
    '/auth/forgot-password',
    '/auth/reset-password',
]

DEFAULTS: Dict[str, Dict[str, Any]] = {
    'server': {
        'url': 'http://localhost:3000',
        'socket_url': None,
        'timeout': 60.0,
        'retry_attempts': 2,
        'retry_delay': 1.0,
    },
    'auth': {
        # The server does not report token lifetime; renewal timing relies on this
        'access_token_lifetime_minutes': 15,
        'renewal_margin_minutes': 5,
        'service_name': 'cafe-pos-client',
        'exempt_paths': DEFAULT_EXEMPT_PATHS,
    },
    'payments': {
        'poll_interval': 3.0,
        'namespace': '/payment',
        'reconnection_attempts': 10,
        'reconnection_delay': 2.0,
        'reconnection_delay_max': 30.0,
        'connect_timeout': 20.0,
        'max_poll_failures': None,
    },
    'logging': {
        'level': 'INFO',
        'file': None,
        'format': 'standard',
        'max_size': 10 * 1024 * 1024,
        'backup_count': 3,
    },
}

ENVIRONMENT_KEYS = {
    'CAFE_POS_SERVER_URL': 'server.url',
    'CAFE_POS_SOCKET_URL': 'server.socket_url',
    'CAFE_POS_TIMEOUT': 'server.timeout',
    'CAFE_POS_TOKEN_LIFETIME': 'auth.access_token_lifetime_minutes',
    'CAFE_POS_RENEWAL_MARGIN': 'auth.renewal_margin_minutes',
    'CAFE_POS_POLL_INTERVAL': 'payments.poll_interval',
    'CAFE_POS_MAX_POLL_FAILURES': 'payments.max_poll_failures',
    'CAFE_POS_LOG_LEVEL': 'logging.level',
    'CAFE_POS_LOG_FILE': 'logging.file',
}


def decode_value(raw: str) -> Any:
    """Decode a raw string setting: JSON if it parses, the plain string otherwise."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class ClientConfiguration:
    """
    Configuration manager for the Cafe POS client.

    Keys are addressed as ``'section.key'``. No file is written unless
    ``save_configuration`` is called.
    """

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or self._get_default_config_path()
        self._config_data: Dict[str, Dict[str, Any]] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    @staticmethod
    def _get_default_config_path() -> str:
        """``$CAFE_POS_CONFIG`` or ``~/.cafe-pos/client.conf``."""
        return os.environ.get('CAFE_POS_CONFIG') or str(Path.home() / '.cafe-pos' / 'client.conf')

    def _load_configuration(self) -> None:
        self._config_data = copy.deepcopy(DEFAULTS)

        if os.path.exists(self._config_file):
            try:
                self._merge_file()
                logger.info(f"Configuration loaded from: {self._config_file}")
            except Exception as e:
                logger.warning(f"Ignoring unreadable configuration file {self._config_file}: {e}")
        else:
            logger.debug(f"No configuration file at {self._config_file}, using defaults")

        self._merge_environment()

    def _merge_file(self) -> None:
        parser = ConfigParser()
        parser.read(self._config_file)

        for section_name in parser.sections():
            section = self._config_data.setdefault(section_name, {})
            for key, raw in parser.items(section_name):
                section[key] = decode_value(raw)

    def _merge_environment(self) -> None:
        for env_var, key in ENVIRONMENT_KEYS.items():
            raw = os.environ.get(env_var)
            if raw is None:
                continue
            logger.debug(f"{key} taken from {env_var}")
            self.set_config(key, decode_value(raw))

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get a setting.

        Args:
            key: ``'section.key'`` (or a bare section name for the whole section)
            default: Returned when the setting is missing or null

        Returns:
            The override if one is set, else the loaded value, else ``default``
        """
        if key in self._overrides:
            return self._overrides[key]

        section, _, name = key.partition('.')
        if not name:
            return self._config_data.get(section, default)

        value = self._config_data.get(section, {}).get(name)
        return default if value is None else value

    def set_config(self, key: str, value: Any) -> None:
        """Set a setting (persisted by ``save_configuration``)."""
        section, _, name = key.partition('.')
        if not name:
            raise ConfigurationError(
                f"Configuration key must be 'section.key', got {key!r}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                config_key=key
            )
        self._config_data.setdefault(section, {})[name] = value

    def set_override(self, key: str, value: Any) -> None:
        """Override a setting for this process only (not saved)."""
        self._overrides[key] = value

    def save_configuration(self) -> None:
        """Write the file and environment layers back to the configuration file."""
        parser = ConfigParser()
        for section_name, section in self._config_data.items():
            parser[section_name] = {
                key: value if isinstance(value, str) else json.dumps(value)
                for key, value in section.items()
            }

        path = Path(self._config_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w') as f:
                parser.write(f)
        except OSError as e:
            logger.error(f"Failed to save configuration: {e}")
            raise ConfigurationError(
                f"Cannot write configuration file {path}: {e}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                cause=e
            )
        logger.info(f"Configuration saved to: {path}")

    def get_config_file_path(self) -> str:
        return self._config_file

    def reload_configuration(self) -> None:
        """Re-read file and environment; overrides are kept."""
        self._load_configuration()
        logger.info("Configuration reloaded")

    # Convenience accessors

    def get_server_url(self) -> str:
        """Get backend URL."""
        return str(self.get_config('server.url')).rstrip('/')

    def get_socket_url(self) -> str:
        """Get push channel URL (defaults to the backend URL)."""
        return str(self.get_config('server.socket_url') or self.get_server_url()).rstrip('/')

    def get_server_timeout(self) -> float:
        """Get server request timeout."""
        return self._positive_float('server.timeout')

    def get_retry_attempts(self) -> int:
        """Get number of transport retry attempts."""
        return int(self.get_config('server.retry_attempts', 2))

    def get_retry_delay(self) -> float:
        """Get base transport retry delay."""
        return float(self.get_config('server.retry_delay', 1.0))

    def get_access_token_lifetime_minutes(self) -> float:
        """Get the assumed access token lifetime."""
        return self._positive_float('auth.access_token_lifetime_minutes')

    def get_renewal_margin_minutes(self) -> float:
        """Get how long before expiry proactive renewal fires."""
        margin = float(self.get_config('auth.renewal_margin_minutes', 5))
        if margin < 0:
            raise ConfigurationError(
                "Renewal margin cannot be negative",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key='auth.renewal_margin_minutes'
            )
        return margin

    def get_credential_service_name(self) -> str:
        """Get keyring service name for the credential store."""
        return self.get_config('auth.service_name', 'cafe-pos-client')

    def get_exempt_paths(self) -> List[str]:
        """Get authentication endpoints that never trigger renewal."""
        paths = self.get_config('auth.exempt_paths', DEFAULT_EXEMPT_PATHS)
        if isinstance(paths, str):
            paths = [p.strip() for p in paths.split(',') if p.strip()]
        return list(paths)

    def get_poll_interval(self) -> float:
        """Get payment status poll interval in seconds."""
        return self._positive_float('payments.poll_interval')

    def get_payment_namespace(self) -> str:
        """Get the push channel namespace for payment events."""
        return self.get_config('payments.namespace', '/payment')

    def get_reconnection_attempts(self) -> int:
        return int(self.get_config('payments.reconnection_attempts', 10))

    def get_reconnection_delay(self) -> float:
        return float(self.get_config('payments.reconnection_delay', 2.0))

    def get_reconnection_delay_max(self) -> float:
        """Get the upper bound of the push channel reconnect backoff."""
        return self._positive_float('payments.reconnection_delay_max')

    def get_connect_timeout(self) -> float:
        return float(self.get_config('payments.connect_timeout', 20.0))

    def get_max_poll_failures(self) -> Optional[int]:
        """Get the consecutive poll failure cap (None means unbounded)."""
        value = self.get_config('payments.max_poll_failures')
        if value in (None, '', 'none', 'None'):
            return None
        return int(value)

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.get_config('logging.level', 'INFO')).upper()

    def get_log_file(self) -> Optional[str]:
        """Get log file path."""
        return self.get_config('logging.file')

    def get_log_format(self) -> str:
        """Get log format (standard, detailed or json)."""
        return str(self.get_config('logging.format', 'standard')).lower()

    def _positive_float(self, key: str) -> float:
        value = self.get_config(key)
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Invalid numeric value for {key}: {value!r}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                config_key=key
            )
        if number <= 0:
            raise ConfigurationError(
                f"{key} must be positive, got {number}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key=key
            )
        return number
