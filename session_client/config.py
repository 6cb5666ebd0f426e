"""
Configuration Management for the Profile Session client.

Settings come from (highest priority first) explicit overrides, environment
variables, an INI configuration file and built-in defaults.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser

from session_shared.exceptions import ConfigurationError, ErrorCode

logger = logging.getLogger(__name__)


DEFAULTS: Dict[str, Dict[str, Any]] = {
    'gateway': {
        'profile_url': 'https://localhost:8443/api/profile',
        'refresh_url': 'https://localhost:8443/api/auth/refresh',
        'provider_type': 'Google',
        'timeout': 30.0,
    },
    'identity': {
        'revoke_url': 'https://oauth2.googleapis.com/revoke',
        'userinfo_url': 'https://www.googleapis.com/oauth2/v3/userinfo',
    },
    'refresh': {
        'check_interval': 600.0,   # 10 minutes
        'safety_margin': 600.0,    # 10 minutes
        'cooldown': 5.0,
    },
    'profile': {
        'fetch_cooldown': 5.0,
    },
    'storage': {
        'backend': 'file',
        'path': None,
        'service_name': 'profile-session',
        'watch_interval': 2.0,
    },
    'logging': {
        'level': 'INFO',
        'format': 'standard',
        'file': None,
        'audit_file': None,
    },
}

ENV_MAPPINGS = {
    'PROFILE_SESSION_PROFILE_URL': ('gateway', 'profile_url'),
    'PROFILE_SESSION_REFRESH_URL': ('gateway', 'refresh_url'),
    'PROFILE_SESSION_PROVIDER_TYPE': ('gateway', 'provider_type'),
    'PROFILE_SESSION_TIMEOUT': ('gateway', 'timeout'),
    'PROFILE_SESSION_REVOKE_URL': ('identity', 'revoke_url'),
    'PROFILE_SESSION_USERINFO_URL': ('identity', 'userinfo_url'),
    'PROFILE_SESSION_REFRESH_INTERVAL': ('refresh', 'check_interval'),
    'PROFILE_SESSION_REFRESH_MARGIN': ('refresh', 'safety_margin'),
    'PROFILE_SESSION_REFRESH_COOLDOWN': ('refresh', 'cooldown'),
    'PROFILE_SESSION_STORAGE_BACKEND': ('storage', 'backend'),
    'PROFILE_SESSION_STORAGE_PATH': ('storage', 'path'),
    'PROFILE_SESSION_LOG_LEVEL': ('logging', 'level'),
    'PROFILE_SESSION_LOG_FORMAT': ('logging', 'format'),
    'PROFILE_SESSION_LOG_FILE': ('logging', 'file'),
}


class ClientConfiguration:
    """
    Configuration for the Profile Session client.

    Supports configuration from:
    1. Overrides (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    def __init__(self, config_file: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        self._config_file = config_file or self._get_default_config_path()
        self._environ = environ if environ is not None else os.environ
        self._config_data: Dict[str, Any] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _get_default_config_path(self) -> str:
        xdg_config = os.environ.get('XDG_CONFIG_HOME')
        config_dir = Path(xdg_config) if xdg_config else Path.home() / '.config'
        return str(config_dir / 'profile-session' / 'client.conf')

    def _load_configuration(self) -> None:
        if os.path.exists(self._config_file):
            self._load_from_file()
            logger.info(f"Configuration loaded from: {self._config_file}")
        else:
            logger.debug(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        try:
            config.read(self._config_file)
        except Exception as e:
            raise ConfigurationError(
                f"Failed to parse configuration file {self._config_file}: {e}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                cause=e
            )

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value
            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        for env_var, (section, key) in ENV_MAPPINGS.items():
            value = self._environ.get(env_var)
            if value is None:
                continue
            section_data = self._config_data.setdefault(section, {})
            if value.lower() in ('true', 'false'):
                section_data[key] = value.lower() == 'true'
            else:
                try:
                    section_data[key] = float(value) if '.' in value else int(value)
                except ValueError:
                    section_data[key] = value

    def _set_defaults(self) -> None:
        for section, section_defaults in DEFAULTS.items():
            section_data = self._config_data.setdefault(section, {})
            for key, default_value in section_defaults.items():
                if key not in section_data:
                    section_data[key] = default_value

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]
        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        return self._config_data.get(section, {}).get(config_key, default)

    def set_config(self, key: str, value: Any) -> None:
        """Set configuration value using 'section.key' notation."""
        if '.' not in key:
            raise ConfigurationError(
                f"Configuration key must be 'section.key': {key}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key=key
            )
        section, config_key = key.split('.', 1)
        self._config_data.setdefault(section, {})[config_key] = value

    def set_override(self, key: str, value: Any) -> None:
        """Set configuration override (highest priority)."""
        self._overrides[key] = value

    def _get_number(self, key: str) -> float:
        value = self.get_config(key)
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Configuration value {key} must be a number, got {value!r}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key=key
            )
        if number < 0:
            raise ConfigurationError(
                f"Configuration value {key} cannot be negative",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key=key
            )
        return number

    def save_configuration(self) -> None:
        """Save current configuration to file."""
        config = ConfigParser()
        for section_name, section_data in self._config_data.items():
            config.add_section(section_name)
            for key, value in section_data.items():
                if value is None:
                    continue
                if isinstance(value, (dict, list)):
                    config.set(section_name, key, json.dumps(value))
                else:
                    config.set(section_name, key, str(value))

        config_path = Path(self._config_file)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            config.write(f)

        logger.info(f"Configuration saved to: {self._config_file}")

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    def get_all_config(self) -> Dict[str, Any]:
        return {section: dict(data) for section, data in self._config_data.items()}

    def get_config_file_path(self) -> str:
        return self._config_file

    # Convenience accessors

    def get_profile_url(self) -> str:
        return self.get_config('gateway.profile_url')

    def get_refresh_url(self) -> str:
        return self.get_config('gateway.refresh_url')

    def get_provider_type(self) -> str:
        return self.get_config('gateway.provider_type')

    def get_request_timeout(self) -> float:
        return self._get_number('gateway.timeout')

    def get_revoke_url(self) -> Optional[str]:
        return self.get_config('identity.revoke_url')

    def get_userinfo_url(self) -> Optional[str]:
        return self.get_config('identity.userinfo_url')

    def get_refresh_check_interval(self) -> float:
        return self._get_number('refresh.check_interval')

    def get_refresh_safety_margin(self) -> float:
        return self._get_number('refresh.safety_margin')

    def get_refresh_cooldown(self) -> float:
        return self._get_number('refresh.cooldown')

    def get_profile_fetch_cooldown(self) -> float:
        return self._get_number('profile.fetch_cooldown')

    def get_storage_backend(self) -> str:
        backend = str(self.get_config('storage.backend')).lower()
        if backend not in ('file', 'memory'):
            raise ConfigurationError(
                f"Unknown storage backend: {backend}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key='storage.backend'
            )
        return backend

    def get_storage_path(self) -> Optional[str]:
        return self.get_config('storage.path')

    def get_storage_service_name(self) -> str:
        return self.get_config('storage.service_name')

    def get_storage_watch_interval(self) -> float:
        return self._get_number('storage.watch_interval')

    def get_log_level(self) -> str:
        return str(self.get_config('logging.level', 'INFO')).upper()

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format', 'standard')).lower()

    def get_log_file(self) -> Optional[str]:
        return self.get_config('logging.file')

    def get_audit_file(self) -> Optional[str]:
        return self.get_config('logging.audit_file')
