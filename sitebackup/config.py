"""
Configuration loaded from environment variables.

An optional .env file is read first with python-dotenv; variables already
set in the process environment always take precedence. The resulting
Settings object is passed to the backup engine as plain values, nothing
below this module reads the environment.
"""

import os
import tempfile
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from dotenv import dotenv_values

from sitebackup.backup.compression import DEFAULT_EXCLUDE_DIRS
from sitebackup.backup.remote import HOST_KEY_POLICIES, RemoteConfig
from sitebackup.backup.retention import DEFAULT_MAX_DB_BACKUPS, DEFAULT_MAX_FILE_BACKUPS, RetentionPolicy
from sitebackup.models import BackupMode


DEFAULT_APACHE_CONFIG_PATHS = (
    '/etc/apache2/conf/httpd.conf',
    '/etc/apache2/sites-enabled/*',
    '/etc/httpd/conf.d/*.conf',
)

DEFAULT_REMOTE_APACHE_CONFIG_PATHS = (
    '/etc/apache2/apache2.conf',
    '/etc/apache2/sites-enabled/*',
    '/etc/httpd/conf/httpd.conf',
    '/etc/httpd/conf.d/*.conf',
)

_TRUE_VALUES = ('1', 'true', 'yes', 'on')
_FALSE_VALUES = ('0', 'false', 'no', 'off', '')


class ConfigError(Exception):
    """Raised when configuration values are missing or invalid."""
    pass


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for one process."""

    # Local backups
    apache_config_paths: Tuple[str, ...] = DEFAULT_APACHE_CONFIG_PATHS
    local_backup_dir: str = '/var/backups/sites'
    local_max_file_backups: int = DEFAULT_MAX_FILE_BACKUPS
    local_max_db_backups: int = DEFAULT_MAX_DB_BACKUPS
    local_max_workers: int = 4
    exclude_dirs: Tuple[str, ...] = DEFAULT_EXCLUDE_DIRS
    temp_dir: Optional[str] = None
    dump_timeout: int = 3600

    # Remote backups
    remote_enabled: bool = False
    remote_backup_dir: str = '/var/backups/sites-remote'
    remote_max_file_backups: int = DEFAULT_MAX_FILE_BACKUPS
    remote_max_db_backups: int = DEFAULT_MAX_DB_BACKUPS
    remote_apache_config_paths: Tuple[str, ...] = DEFAULT_REMOTE_APACHE_CONFIG_PATHS
    remote_temp_dir: str = '~/.sitebackup-tmp'
    remote_transfer: str = 'stream'
    remote_skip_if_backed_up_today: bool = True
    remote: Optional[RemoteConfig] = None

    # Logging
    log_level: str = 'INFO'
    log_dir: Optional[str] = None

    def retention_for(self, mode: BackupMode) -> RetentionPolicy:
        """Retention policy for local or remote artifacts."""
        if mode is BackupMode.REMOTE:
            return RetentionPolicy(self.remote_max_file_backups, self.remote_max_db_backups)
        return RetentionPolicy(self.local_max_file_backups, self.local_max_db_backups)


class _Reader:
    """Typed access to a mapping of raw string values."""

    def __init__(self, values: Mapping[str, str]):
        self.values = values

    def get_str(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self.values.get(name)
        if value is None or value.strip() == '':
            return default
        return value.strip()

    def get_int(self, name: str, default: int, minimum: int = 1) -> int:
        raw = self.get_str(name)
        if raw is None:
            return default
        try:
            value = int(raw)
        except ValueError:
            raise ConfigError(f"{name} must be an integer, got {raw!r}")
        if value < minimum:
            raise ConfigError(f"{name} must be at least {minimum}, got {value}")
        return value

    def get_bool(self, name: str, default: bool) -> bool:
        raw = self.values.get(name)
        if raw is None:
            return default
        value = raw.strip().lower()
        if value in _TRUE_VALUES:
            return True
        if value in _FALSE_VALUES:
            return False
        raise ConfigError(f"{name} must be a boolean, got {raw!r}")

    def get_list(self, name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
        raw = self.get_str(name)
        if raw is None:
            return default
        return tuple(item.strip() for item in raw.split(',') if item.strip())


def _load_remote_config(env: _Reader) -> RemoteConfig:
    host = env.get_str('SSH_HOST')
    username = env.get_str('SSH_USER')
    private_key = env.get_str('SSH_KEY_PATH')
    password = env.get_str('SSH_PASSWORD')

    missing = [name for name, value in (('SSH_HOST', host), ('SSH_USER', username)) if not value]
    if missing:
        raise ConfigError(f"Remote backup enabled but {', '.join(missing)} not set")

    if not private_key and not password:
        raise ConfigError("Remote backup enabled but neither SSH_KEY_PATH nor SSH_PASSWORD is set")

    policy = env.get_str('SSH_HOST_KEY_POLICY', 'reject').lower()
    if policy not in HOST_KEY_POLICIES:
        raise ConfigError(
            f"Invalid SSH_HOST_KEY_POLICY: {policy}. Valid options: {list(HOST_KEY_POLICIES)}"
        )

    return RemoteConfig(
        host=host,
        username=username,
        port=env.get_int('SSH_PORT', 22),
        password=password,
        private_key=private_key,
        host_key_policy=policy,
        known_hosts=env.get_str('SSH_KNOWN_HOSTS'),
        connect_timeout=env.get_int('SSH_CONNECT_TIMEOUT', 30),
        command_timeout=env.get_int('REMOTE_COMMAND_TIMEOUT', 3600),
        max_sessions=env.get_int('SSH_MAX_SESSIONS', 20)
    )


def load_settings(env_file: Optional[str] = None, environ: Optional[Mapping[str, str]] = None,
                  remote_enabled: Optional[bool] = None) -> Settings:
    """
    Build Settings from the environment.

    Args:
        env_file: Optional dotenv file; its values never override the environment
        environ: Environment mapping (defaults to os.environ)
        remote_enabled: Overrides REMOTE_BACKUP_ENABLED when not None

    Returns:
        Settings instance

    Raises:
        ConfigError: If a value is invalid or the remote configuration is incomplete
    """
    values = {}

    if env_file:
        if not os.path.isfile(env_file):
            raise ConfigError(f"Environment file not found: {env_file}")
        values.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})

    values.update(os.environ if environ is None else environ)
    env = _Reader(values)

    if remote_enabled is None:
        remote_enabled = env.get_bool('REMOTE_BACKUP_ENABLED', False)

    remote_transfer = env.get_str('REMOTE_TRANSFER', 'stream').lower()
    if remote_transfer not in ('stream', 'scp'):
        raise ConfigError(f"Invalid REMOTE_TRANSFER: {remote_transfer}. Valid options: ['stream', 'scp']")

    log_level = env.get_str('LOG_LEVEL', 'INFO').upper()
    if log_level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
        raise ConfigError(f"Invalid LOG_LEVEL: {log_level}")

    return Settings(
        apache_config_paths=env.get_list('APACHE_CONFIG_PATHS', DEFAULT_APACHE_CONFIG_PATHS),
        local_backup_dir=env.get_str('LOCAL_BACKUP_DIR', '/var/backups/sites'),
        local_max_file_backups=env.get_int('LOCAL_MAX_FILE_BACKUPS', DEFAULT_MAX_FILE_BACKUPS),
        local_max_db_backups=env.get_int('LOCAL_MAX_DB_BACKUPS', DEFAULT_MAX_DB_BACKUPS),
        local_max_workers=env.get_int('LOCAL_MAX_WORKERS', 4),
        exclude_dirs=env.get_list('BACKUP_EXCLUDE_DIRS', DEFAULT_EXCLUDE_DIRS),
        temp_dir=env.get_str('TEMP_DIR') or tempfile.gettempdir(),
        dump_timeout=env.get_int('DUMP_TIMEOUT', 3600),
        remote_enabled=remote_enabled,
        remote_backup_dir=env.get_str('REMOTE_BACKUP_DIR', '/var/backups/sites-remote'),
        remote_max_file_backups=env.get_int('REMOTE_MAX_FILE_BACKUPS', DEFAULT_MAX_FILE_BACKUPS),
        remote_max_db_backups=env.get_int('REMOTE_MAX_DB_BACKUPS', DEFAULT_MAX_DB_BACKUPS),
        remote_apache_config_paths=env.get_list('REMOTE_APACHE_CONFIG_PATHS', DEFAULT_REMOTE_APACHE_CONFIG_PATHS),
        remote_temp_dir=env.get_str('REMOTE_TEMP_DIR', '~/.sitebackup-tmp'),
        remote_transfer=remote_transfer,
        remote_skip_if_backed_up_today=env.get_bool('REMOTE_SKIP_IF_BACKED_UP_TODAY', True),
        remote=_load_remote_config(env) if remote_enabled else None,
        log_level=log_level,
        log_dir=env.get_str('LOG_DIR')
    )
