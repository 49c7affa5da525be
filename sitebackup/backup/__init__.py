"""
Backup module for sitebackup.

This module handles the core backup functionality including:
- Site discovery (local and over SSH)
- Change detection
- Archives and database dumps
- Retention policy enforcement
- Execution orchestration
"""

from .executor import LocalBackupExecutor, RemoteBackupExecutor, summarize_results
from .discovery import SiteDirectory, RemoteSiteDirectory
from .changes import ChangeDetector, RecentChangeDetector
from .compression import create_archive, extract_archive
from .database import DatabaseDumper
from .remote import RemoteSession, SessionPool
from .retention import RetentionManager, RetentionPolicy
from .storage import BackupLayout

__all__ = [
    'LocalBackupExecutor',
    'RemoteBackupExecutor',
    'summarize_results',
    'SiteDirectory',
    'RemoteSiteDirectory',
    'ChangeDetector',
    'RecentChangeDetector',
    'create_archive',
    'extract_archive',
    'DatabaseDumper',
    'RemoteSession',
    'SessionPool',
    'RetentionManager',
    'RetentionPolicy',
    'BackupLayout'
]
