"""
Site discovery from Apache virtual host configuration.

Supports:
- SiteDirectory: reads configuration and .env files from the local filesystem
- RemoteSiteDirectory: reads the same files through a RemoteSession

Both share the same parsers, so a site found remotely is described exactly
like a site found locally.
"""

import glob
import logging
import os
import posixpath
import re
import shlex
from typing import Iterable, List, Optional, Tuple

from sitebackup.models import DatabaseConfig, Site
from .remote import RemoteCommandError


logger = logging.getLogger(__name__)


# Checked in order, relative to the document root
ENV_FILE_CANDIDATES = (
    '.env',
    '../.env',
    '../../.env',
    '../../../.env',
    'public/.env',
    'public_html/.env',
    'html/.env',
    'app/.env',
    'laravel/.env',
)

# .env key -> DatabaseConfig field
ENV_KEYS = {
    'DB_HOST': 'host',
    'DB_DATABASE': 'name',
    'DB_USERNAME': 'user',
    'DB_PASSWORD': 'password',
}

_SERVER_NAME = re.compile(r'^ServerName\s+(\S+)', re.IGNORECASE)
_DOCUMENT_ROOT = re.compile(r'^DocumentRoot\s+(.+)$', re.IGNORECASE)
_VHOST_BOUNDARY = re.compile(r'^</?VirtualHost\b', re.IGNORECASE)
_SAFE_REMOTE_GLOB = re.compile(r'^[A-Za-z0-9_./*?\[\]-]+$')

# Exit codes of the remote .env lookup command
_REMOTE_ENV_NOT_FOUND = 3
_REMOTE_ENV_UNREADABLE = 4


class DiscoveryError(Exception):
    """Raised when site information cannot be gathered."""
    pass


class EnvFileNotFound(DiscoveryError):
    """No .env candidate exists for a document root."""
    pass


class EnvFileUnreadable(DiscoveryError):
    """A .env candidate exists but none could be read."""
    pass


def strip_quotes(value: str) -> str:
    """Remove one layer of matching single or double quotes."""
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        return value[1:-1]
    return value


def parse_vhost_config(lines: Iterable[str]) -> List[Tuple[str, str]]:
    """
    Extract (ServerName, DocumentRoot) pairs from one configuration fragment.

    A DocumentRoot only pairs with a ServerName seen earlier in the same
    <VirtualHost> block. The pending name is forgotten after pairing and at
    every block boundary, so a stray DocumentRoot never attaches to another
    site's name.

    Args:
        lines: Lines of the configuration fragment

    Returns:
        List of (server name, document root) pairs in file order
    """
    pairs = []
    current_name = None

    for raw_line in lines:
        line = raw_line.strip()

        if not line or line.startswith('#'):
            continue

        if _VHOST_BOUNDARY.match(line):
            current_name = None
            continue

        match = _SERVER_NAME.match(line)
        if match:
            current_name = strip_quotes(match.group(1))
            continue

        match = _DOCUMENT_ROOT.match(line)
        if match and current_name:
            document_root = strip_quotes(match.group(1).strip())
            if document_root:
                pairs.append((current_name, document_root))
            current_name = None

    return pairs


def parse_env(content: str) -> Optional[DatabaseConfig]:
    """
    Extract database credentials from .env file content.

    Only DB_HOST, DB_DATABASE, DB_USERNAME and DB_PASSWORD are read; the first
    occurrence of a key wins. Comments, unknown keys and lines without '='
    are ignored.

    Returns:
        DatabaseConfig, or None if none of the keys is present
    """
    values = {}

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith('#'):
            continue

        key, separator, value = line.partition('=')
        if not separator:
            continue

        field_name = ENV_KEYS.get(key.strip())
        if field_name is None:
            continue

        values.setdefault(field_name, strip_quotes(value.strip()))

    if not values:
        return None

    return DatabaseConfig(**values)


def find_env_file(document_root: str, candidates: Iterable[str] = ENV_FILE_CANDIDATES) -> str:
    """
    Locate the .env file for a document root.

    Returns:
        Path of the first candidate that exists and is readable

    Raises:
        EnvFileNotFound: If no candidate exists
        EnvFileUnreadable: If candidates exist but none is readable
    """
    unreadable = []

    for candidate in candidates:
        path = os.path.normpath(os.path.join(document_root, candidate))
        if not os.path.isfile(path):
            continue
        if os.access(path, os.R_OK):
            return path
        unreadable.append(path)

    if unreadable:
        raise EnvFileUnreadable(f"Found but cannot read: {', '.join(unreadable)}")

    raise EnvFileNotFound(f"No .env file found for {document_root}")


class SiteDirectory:
    """
    Discovers sites from local Apache configuration.

    Configuration paths may contain glob patterns; every matching file is
    parsed as an independent fragment.
    """

    def __init__(self, config_paths: Iterable[str], env_candidates: Iterable[str] = ENV_FILE_CANDIDATES):
        """
        Initialize site directory.

        Args:
            config_paths: Configuration files or glob patterns
            env_candidates: .env locations relative to the document root
        """
        self.config_paths = list(config_paths)
        self.env_candidates = tuple(env_candidates)

    def discover(self) -> List[Site]:
        """
        Discover all sites with their database configuration.

        Unreadable fragments and sites with an unusable document root are
        logged and skipped. Duplicate (name, root) pairs collapse into one.

        Returns:
            Sites in first-seen order
        """
        pairs = {}

        for config_file in self._config_files():
            try:
                content = self._read_config(config_file)
            except Exception as e:
                logger.warning(f"Failed to read config {config_file}: {e}")
                continue

            for server_name, document_root in parse_vhost_config(content.splitlines()):
                if not posixpath.isabs(document_root):
                    logger.warning(
                        f"Skipping {server_name}: DocumentRoot is not absolute ({document_root})"
                    )
                    continue
                pairs.setdefault((server_name, document_root), None)

        sites = []
        for server_name, document_root in pairs:
            database = self._load_database_config(server_name, document_root)
            sites.append(Site(server_name=server_name, document_root=document_root, database=database))
            logger.info(f"Found site: {server_name} at {document_root}")

        logger.info(f"Found {len(sites)} unique sites")
        return sites

    def _config_files(self) -> List[str]:
        """Expand configured paths into a de-duplicated list of files."""
        files = []

        for pattern in self.config_paths:
            matches = sorted(glob.glob(pattern)) if glob.has_magic(pattern) else [pattern]
            for path in matches:
                if path not in files and os.path.isfile(path):
                    files.append(path)

        return files

    def _read_config(self, config_file: str) -> str:
        with open(config_file, 'r', encoding='utf-8', errors='replace') as f:
            return f.read()

    def read_env_file(self, document_root: str) -> str:
        """
        Read the .env content for a document root.

        Raises:
            EnvFileNotFound: If no candidate exists
            EnvFileUnreadable: If the file exists but cannot be read
        """
        path = find_env_file(document_root, self.env_candidates)
        try:
            with open(path, 'r', encoding='utf-8', errors='replace') as f:
                return f.read()
        except OSError as e:
            raise EnvFileUnreadable(f"Cannot read {path}: {e}")

    def _load_database_config(self, server_name: str, document_root: str) -> Optional[DatabaseConfig]:
        """A missing or unreadable .env means a file-only backup, never an error."""
        try:
            content = self.read_env_file(document_root)
        except EnvFileNotFound:
            logger.info(f"No .env file for {server_name}, backing up files only")
            return None
        except EnvFileUnreadable as e:
            logger.warning(f"Unreadable .env for {server_name}, backing up files only: {e}")
            return None

        database = parse_env(content)
        if database is None or not database.is_complete:
            logger.info(f"No complete database configuration for {server_name}")
        return database


class RemoteSiteDirectory(SiteDirectory):
    """
    Discovers sites on a remote host through a RemoteSession.

    Configuration fragments are listed with a shell glob loop and read with
    cat; the .env lookup walks the same candidate list as the local variant
    in a single remote command.
    """

    def __init__(self, session, config_paths: Iterable[str],
                 env_candidates: Iterable[str] = ENV_FILE_CANDIDATES,
                 timeout: Optional[float] = None):
        """
        Initialize remote site directory.

        Args:
            session: Connected RemoteSession
            config_paths: Remote configuration files or glob patterns
            env_candidates: .env locations relative to the document root
            timeout: Per-command timeout in seconds

        Raises:
            DiscoveryError: If a configuration path contains shell metacharacters
        """
        super().__init__(config_paths, env_candidates)
        self.session = session
        self.timeout = timeout

        for pattern in self.config_paths:
            if not _SAFE_REMOTE_GLOB.match(pattern):
                raise DiscoveryError(f"Unsupported characters in remote config path: {pattern!r}")

    def _config_files(self) -> List[str]:
        # Patterns are validated in __init__ and left unquoted so the remote shell expands them
        command = (
            'for f in ' + ' '.join(self.config_paths) + '; do '
            '[ -f "$f" ] && printf \'%s\\n\' "$f"; '
            'done; true'
        )

        try:
            output = self.session.run(command, timeout=self.timeout)
        except RemoteCommandError as e:
            logger.warning(f"Failed to list remote Apache configs: {e}")
            return []

        files = []
        for line in output.splitlines():
            path = line.strip()
            if path and path not in files:
                files.append(path)

        logger.info(f"Found remote config files: {files}")
        return files

    def _read_config(self, config_file: str) -> str:
        return self.session.run(f'cat -- {shlex.quote(config_file)}', timeout=self.timeout)

    def read_env_file(self, document_root: str) -> str:
        candidates = ' '.join(
            shlex.quote(posixpath.normpath(posixpath.join(document_root, candidate)))
            for candidate in self.env_candidates
        )
        command = (
            f'seen=0; for f in {candidates}; do '
            'if [ -f "$f" ]; then seen=1; '
            'if [ -r "$f" ]; then cat -- "$f"; exit 0; fi; fi; '
            'done; '
            f'if [ "$seen" = 1 ]; then exit {_REMOTE_ENV_UNREADABLE}; fi; '
            f'exit {_REMOTE_ENV_NOT_FOUND}'
        )

        try:
            return self.session.run(command, timeout=self.timeout)
        except RemoteCommandError as e:
            if e.exit_status == _REMOTE_ENV_NOT_FOUND:
                raise EnvFileNotFound(f"No .env file found for {document_root}")
            raise EnvFileUnreadable(f"Cannot read .env for {document_root}: {e}")
