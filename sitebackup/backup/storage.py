"""
Backup directory layout and artifact naming.

Artifacts are stored per site, the same way for local and remote runs:

    {base_path}/{site}/files_{YYYY-MM-DD_HHMMSS}.tar.gz
    {base_path}/{site}/database/db_{YYYY-MM-DD_HHMMSS}.sql.gz

Every artifact is written through atomic_output() so that a crash never
leaves a partial file under a valid artifact name.
"""

import os
import re
import tempfile
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional, Tuple

from sitebackup.models import ArtifactKind


TIMESTAMP_FORMAT = '%Y-%m-%d_%H%M%S'

# kind -> (filename prefix, filename suffix)
ARTIFACT_NAMING = {
    ArtifactKind.FILES: ('files_', '.tar.gz'),
    ArtifactKind.DATABASE: ('db_', '.sql.gz'),
}

DATABASE_SUBDIR = 'database'

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._-]')


class StorageError(Exception):
    """Raised when the backup layout cannot be used."""
    pass


def sanitize_site_name(server_name: str) -> str:
    """
    Turn a server name into a safe single path component.

    Args:
        server_name: ServerName value from the web server configuration

    Returns:
        Name with unsafe characters replaced by underscores

    Raises:
        StorageError: If nothing usable is left
    """
    safe_name = _UNSAFE_CHARS.sub('_', (server_name or '').strip()).lstrip('.')

    if safe_name in ('', '.', '..'):
        raise StorageError(f"Invalid site name for backup directory: {server_name!r}")

    return safe_name


def generate_timestamp(now: Optional[datetime] = None) -> str:
    """Timestamp embedded in artifact names; lexical order is chronological."""
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


def artifact_filename(kind: ArtifactKind, timestamp: str) -> str:
    prefix, suffix = ARTIFACT_NAMING[kind]
    return f"{prefix}{timestamp}{suffix}"


def parse_artifact_timestamp(filename: str, kind: ArtifactKind) -> Optional[datetime]:
    """
    Extract the creation timestamp from an artifact filename.

    Returns:
        Parsed datetime, or None if the name is not an artifact of this kind
    """
    prefix, suffix = ARTIFACT_NAMING[kind]
    if not (filename.startswith(prefix) and filename.endswith(suffix)):
        return None

    try:
        return datetime.strptime(filename[len(prefix):-len(suffix)], TIMESTAMP_FORMAT)
    except ValueError:
        return None


@contextmanager
def atomic_output(dest_path):
    """
    Yield a temporary path next to dest_path and move it into place on success.

    The temporary file is hidden and never matches an artifact pattern. It is
    removed if the block raises.
    """
    dest = Path(dest_path)

    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix=f'.{dest.name}.partial-', dir=str(dest.parent))
        os.close(fd)
    except OSError as e:
        raise StorageError(f"Failed to prepare {dest}: {e}")

    try:
        yield temp_path
        os.replace(temp_path, dest)
    except BaseException:
        try:
            os.remove(temp_path)
        except FileNotFoundError:
            pass
        raise


class BackupLayout:
    """
    Directory layout for one backup root.

    Each site owns its own sub-directory, so concurrent workers for
    different sites never write to the same path.
    """

    def __init__(self, base_path: str):
        """
        Initialize the layout, creating the base directory if needed.

        Args:
            base_path: Root directory for all site backups
        """
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Failed to create backup directory {self.base_path}: {e}")

    def site_dir(self, server_name: str) -> Path:
        return self.base_path / sanitize_site_name(server_name)

    def artifact_dir(self, server_name: str, kind: ArtifactKind) -> Path:
        site_dir = self.site_dir(server_name)
        if kind is ArtifactKind.DATABASE:
            return site_dir / DATABASE_SUBDIR
        return site_dir

    def new_artifact_path(self, server_name: str, kind: ArtifactKind,
                          timestamp: Optional[str] = None) -> Path:
        """Path for a new artifact; the directory is created on write."""
        filename = artifact_filename(kind, timestamp or generate_timestamp())
        return self.artifact_dir(server_name, kind) / filename

    def list_artifacts(self, server_name: str, kind: ArtifactKind) -> List[Path]:
        """
        List existing artifacts of one kind for a site.

        Returns:
            Paths matching the kind's name pattern, sorted by name

        Raises:
            StorageError: If the directory cannot be read
        """
        directory = self.artifact_dir(server_name, kind)
        prefix, suffix = ARTIFACT_NAMING[kind]

        if not directory.exists():
            return []

        try:
            return sorted(
                path for path in directory.glob(f'{prefix}*{suffix}')
                if path.is_file()
            )
        except OSError as e:
            raise StorageError(f"Failed to list backups in {directory}: {e}")

    def latest_artifact(self, server_name: str,
                        kind: ArtifactKind) -> Optional[Tuple[Path, datetime]]:
        """
        Find the newest artifact by its embedded timestamp.

        Names without a parseable timestamp are ignored.
        """
        latest = None

        for path in self.list_artifacts(server_name, kind):
            created = parse_artifact_timestamp(path.name, kind)
            if created is None:
                continue
            if latest is None or created > latest[1]:
                latest = (path, created)

        return latest

    def has_artifact_for_day(self, server_name: str, kind: ArtifactKind,
                             day: Optional[date] = None) -> bool:
        """Check whether an artifact of this kind was created on the given day."""
        day = day or date.today()

        for path in self.list_artifacts(server_name, kind):
            created = parse_artifact_timestamp(path.name, kind)
            if created is not None and created.date() == day:
                return True

        return False
