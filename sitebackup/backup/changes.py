"""
Change detection between a site's file tree and its last archive.

Two policies:
- ChangeDetector: extracts the newest files archive and compares the tree
  against it entry by entry. Used for local sites.
- RecentChangeDetector: counts files modified during the last 24 hours on
  the remote host. Much cheaper over SSH but coarser: a change older than
  24 hours that was never backed up is not seen, and a touched but
  identical file is.
"""

import logging
import os
import shlex
import shutil
import stat
import tempfile
from typing import Iterable, Optional

from sitebackup.models import ArtifactKind
from .compression import DEFAULT_EXCLUDE_DIRS, CompressionError, extract_archive, walk_tree
from .remote import RemoteCommandError
from .storage import BackupLayout


logger = logging.getLogger(__name__)


class ChangeDetectionError(Exception):
    """Raised when the comparison itself cannot be carried out."""
    pass


class ChangeDetector:
    """
    Decides whether a site's files changed since its last files archive.
    """

    def __init__(self, layout: BackupLayout, exclude_dirs: Iterable[str] = DEFAULT_EXCLUDE_DIRS,
                 temp_dir: Optional[str] = None):
        """
        Initialize change detector.

        Args:
            layout: Backup layout holding previous archives
            exclude_dirs: Directory names skipped when archiving
            temp_dir: Parent directory for the scratch extraction
        """
        self.layout = layout
        self.exclude_dirs = tuple(exclude_dirs)
        self.temp_dir = temp_dir

    def has_changed(self, server_name: str, source_dir: str) -> bool:
        """
        Compare a tree against the newest archive of the site.

        Returns:
            True if there is no previous archive or anything differs

        Raises:
            ChangeDetectionError: If the archive or the tree cannot be read
        """
        latest = self.layout.latest_artifact(server_name, ArtifactKind.FILES)
        if latest is None:
            logger.info(f"No previous backup for {server_name}")
            return True

        archive_path, created = latest

        if not os.path.isdir(source_dir):
            raise ChangeDetectionError(f"Source directory does not exist: {source_dir}")

        # Files modified after the archive was started count as changed,
        # including writes that raced with tar
        reference_time = created.timestamp()

        try:
            scratch_dir = tempfile.mkdtemp(prefix='sitebackup_compare_', dir=self.temp_dir)
        except OSError as e:
            raise ChangeDetectionError(f"Failed to prepare comparison: {e}")

        try:
            extract_archive(str(archive_path), scratch_dir)
            return self._compare(source_dir, scratch_dir, reference_time)
        except CompressionError as e:
            raise ChangeDetectionError(f"Failed to extract latest backup: {e}")
        except OSError as e:
            raise ChangeDetectionError(f"Failed to compare directories: {e}")
        finally:
            shutil.rmtree(scratch_dir, ignore_errors=True)

    def _compare(self, source_dir: str, snapshot_dir: str, reference_time: float) -> bool:
        seen = set()

        for full_path, relative_path, is_dir in walk_tree(source_dir, self.exclude_dirs):
            seen.add(relative_path)

            try:
                snapshot_stat = os.lstat(os.path.join(snapshot_dir, relative_path))
            except FileNotFoundError:
                logger.debug(f"New path since last backup: {relative_path}")
                return True

            if is_dir != stat.S_ISDIR(snapshot_stat.st_mode):
                logger.debug(f"Type changed since last backup: {relative_path}")
                return True

            if is_dir:
                continue

            current_stat = os.stat(full_path)
            if current_stat.st_size != snapshot_stat.st_size or current_stat.st_mtime > reference_time:
                logger.debug(f"Modified since last backup: {relative_path}")
                return True

        for _, relative_path, _ in walk_tree(snapshot_dir, ()):
            if relative_path not in seen:
                logger.debug(f"Removed since last backup: {relative_path}")
                return True

        return False


class RecentChangeDetector:
    """
    Remote policy: a tree changed if any file was modified in the last 24 hours.

    Hidden paths and excluded directories are not counted.
    """

    def __init__(self, session, exclude_dirs: Iterable[str] = DEFAULT_EXCLUDE_DIRS,
                 timeout: Optional[float] = None):
        self.session = session
        self.exclude_dirs = tuple(exclude_dirs)
        self.timeout = timeout

    def build_command(self, document_root: str) -> str:
        root = shlex.quote(document_root)
        filters = ["-not -path '*/.*'"] + [
            f"-not -path {shlex.quote(f'*/{name}/*')}" for name in self.exclude_dirs
        ]
        # test -d keeps a missing root from reading as "0 changes"
        return f"test -d {root} && find {root} -type f -mtime -1 {' '.join(filters)} | wc -l"

    def count_recent_changes(self, document_root: str) -> int:
        """
        Raises:
            ChangeDetectionError: If the remote command fails or prints garbage
        """
        try:
            output = self.session.run(self.build_command(document_root), timeout=self.timeout)
        except RemoteCommandError as e:
            raise ChangeDetectionError(f"Failed to check for changes in {document_root}: {e}")

        try:
            return int(output.strip())
        except ValueError:
            raise ChangeDetectionError(f"Unexpected changed files count: {output.strip()!r}")

    def has_changed(self, server_name: str, document_root: str) -> bool:
        changed_files = self.count_recent_changes(document_root)
        logger.info(f"Found {changed_files} recently changed files in {server_name}")
        return changed_files > 0
