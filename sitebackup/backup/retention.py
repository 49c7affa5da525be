"""
Retention policy enforcement for backups.

Keeps at most N artifacts of each kind per site: everything beyond the N
most recently modified artifacts is deleted. Deletion is best-effort: every
candidate is attempted, and failures are raised together afterwards.
"""

import logging
import os
from dataclasses import dataclass
from typing import List

from sitebackup.models import ArtifactKind
from .storage import BackupLayout


logger = logging.getLogger(__name__)


DEFAULT_MAX_FILE_BACKUPS = 5
DEFAULT_MAX_DB_BACKUPS = 20


class RetentionError(Exception):
    """Raised when one or more old backups could not be removed."""

    def __init__(self, message: str, failures: List[str] = None):
        super().__init__(message)
        self.failures = failures or []


@dataclass(frozen=True)
class RetentionPolicy:
    """Maximum number of artifacts kept per site, by kind."""
    max_file_backups: int = DEFAULT_MAX_FILE_BACKUPS
    max_db_backups: int = DEFAULT_MAX_DB_BACKUPS

    def __post_init__(self):
        for name in ('max_file_backups', 'max_db_backups'):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")

    def max_for(self, kind: ArtifactKind) -> int:
        if kind is ArtifactKind.DATABASE:
            return self.max_db_backups
        return self.max_file_backups


class RetentionManager:
    """
    Rotates artifacts under one backup layout.

    The policy is passed in explicitly; local and remote runs each build
    their own manager with their own policy.
    """

    def __init__(self, layout: BackupLayout, policy: RetentionPolicy):
        self.layout = layout
        self.policy = policy

    def rotate(self, server_name: str, kind: ArtifactKind) -> List[str]:
        """
        Delete the oldest artifacts of one kind beyond the configured maximum.

        Args:
            server_name: Site whose artifacts are rotated
            kind: Artifact kind to rotate

        Returns:
            Paths of deleted artifacts

        Raises:
            RetentionError: If any deletion failed (after attempting all)
        """
        max_kept = self.policy.max_for(kind)
        artifacts = self.layout.list_artifacts(server_name, kind)

        if len(artifacts) <= max_kept:
            return []

        # (mtime, name) descending: newest first, ties broken by name
        stamped = []
        for path in artifacts:
            try:
                stamped.append((path.stat().st_mtime, path.name, path))
            except FileNotFoundError:
                continue
        stamped.sort(key=lambda item: (item[0], item[1]), reverse=True)

        deleted = []
        failures = []

        for _, _, path in stamped[max_kept:]:
            try:
                os.remove(path)
                deleted.append(str(path))
                logger.info(f"Deleted old {kind.value} backup: {path}")
            except FileNotFoundError:
                continue
            except OSError as e:
                failures.append(f"{path}: {e}")
                logger.warning(f"Failed to delete old backup {path}: {e}")

        if failures:
            raise RetentionError(
                f"Failed to remove {len(failures)} old {kind.value} backup(s) "
                f"for {server_name}: " + '; '.join(failures),
                failures
            )

        return deleted
