"""
Backup executors - orchestrate the per-site backup workflow.

Every site yields one unit of work per artifact kind: a files unit, plus a
database unit when the site has a complete database configuration. Each
unit produces exactly one BackupResult; a failing unit never stops the
others.

Files unit:
1. Check for changes since the last archive (skip if unchanged)
2. Create the archive
3. Rotate old file archives

Database unit:
1. Dump the database
2. Rotate old dumps

Local runs execute all units concurrently on a thread pool. Remote runs
process sites one after another against the shared SSH session, which keeps
the load on the remote host bounded and predictable.
"""

import logging
import posixpath
import shlex
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from sitebackup.models import ArtifactKind, BackupMode, BackupResult, Site
from .changes import ChangeDetector, RecentChangeDetector
from .compression import DEFAULT_EXCLUDE_DIRS, create_archive, get_archive_size
from .database import DatabaseDumper, build_remote_dump_command
from .discovery import ENV_FILE_CANDIDATES, RemoteSiteDirectory, SiteDirectory
from .remote import RemoteCommandError, RemoteSession
from .retention import RetentionError, RetentionManager
from .storage import BackupLayout, StorageError, generate_timestamp, sanitize_site_name


logger = logging.getLogger(__name__)


STAGE_SETUP = 'setup'
STAGE_CHANGE_CHECK = 'change_check'
STAGE_ARCHIVE = 'archive'
STAGE_TRANSFER = 'transfer'
STAGE_DUMP = 'dump'

TRANSFER_MODES = ('stream', 'scp')


class _BaseExecutor:
    """Shared bookkeeping: run log, retention and storage name claims."""

    def __init__(self, layout: BackupLayout, retention: RetentionManager):
        self.layout = layout
        self.retention = retention
        self.logs = []
        self._logs_lock = threading.Lock()

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        with self._logs_lock:
            self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)

    def _claim_storage(self, site: Site, claimed: Dict[str, Site]) -> Optional[BackupResult]:
        """
        Reserve the site's backup directory name.

        Returns:
            A failed result if the name is invalid or already used by another site
        """
        try:
            storage_name = sanitize_site_name(site.server_name)
        except StorageError as e:
            return self._failed(BackupResult(site.server_name, ArtifactKind.FILES, False), STAGE_SETUP, e)

        owner = claimed.get(storage_name)
        if owner is not None:
            error = (
                f"Backup directory {storage_name!r} is already used by "
                f"{owner.server_name} ({owner.document_root})"
            )
            return self._failed(BackupResult(site.server_name, ArtifactKind.FILES, False), STAGE_SETUP, error)

        claimed[storage_name] = site
        return None

    def _failed(self, result: BackupResult, stage: str, error) -> BackupResult:
        result.success = False
        result.stage = stage
        result.error = str(error)
        self._log(f"{result.kind.value} backup of {result.site} failed during {stage}: {error}", logging.ERROR)
        return result

    def _apply_retention(self, result: BackupResult):
        """Rotate the unit's own kind. Failures only add warnings."""
        try:
            deleted = self.retention.rotate(result.site, result.kind)
        except (RetentionError, StorageError) as e:
            result.warnings.append(f"Retention: {e}")
            self._log(f"Warning: {e}", logging.WARNING)
            return

        if deleted:
            self._log(f"Removed {len(deleted)} old {result.kind.value} backup(s) for {result.site}")


class LocalBackupExecutor(_BaseExecutor):
    """
    Backs up sites hosted on this machine.

    Units for all sites run concurrently. Each site writes only below its
    own backup directory, so workers share nothing but the result list.
    """

    def __init__(self, layout: BackupLayout, retention: RetentionManager,
                 detector: ChangeDetector, dumper: DatabaseDumper,
                 exclude_dirs: Iterable[str] = DEFAULT_EXCLUDE_DIRS, max_workers: int = 4):
        """
        Initialize local backup executor.

        Args:
            layout: Backup layout for local artifacts
            retention: Retention manager with the local policy
            detector: Change detector deciding whether to archive
            dumper: Database dumper
            exclude_dirs: Directory names left out of archives
            max_workers: Number of concurrent units
        """
        super().__init__(layout, retention)
        self.detector = detector
        self.dumper = dumper
        self.exclude_dirs = tuple(exclude_dirs)
        self.max_workers = max_workers

    def run(self, sites: Iterable[Site]) -> List[BackupResult]:
        """
        Back up all sites.

        Returns:
            One result per unit, in completion order
        """
        results = []
        claimed = {}
        futures = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='sitebackup') as pool:
            for site in sites:
                conflict = self._claim_storage(site, claimed)
                if conflict is not None:
                    results.append(conflict)
                    continue

                # Files first: the database unit never waits on it, but starts after it
                futures[pool.submit(self._backup_files, site)] = (site, ArtifactKind.FILES)
                if site.has_database:
                    futures[pool.submit(self._backup_database, site)] = (site, ArtifactKind.DATABASE)
                else:
                    self._log(f"No database configured for {site.server_name}, backing up files only")

            for future in as_completed(futures):
                site, kind = futures[future]
                try:
                    results.append(future.result())
                except Exception as e:
                    results.append(self._failed(BackupResult(site.server_name, kind, False), 'unknown', e))

        self._log(f"Local backup finished: {len(results)} unit(s)")
        return results

    def _backup_files(self, site: Site) -> BackupResult:
        result = BackupResult(site.server_name, ArtifactKind.FILES, True)
        stage = STAGE_CHANGE_CHECK

        try:
            if not self.detector.has_changed(site.server_name, site.document_root):
                self._log(f"No changes detected in {site.server_name}, skipping file backup")
                result.skipped = True
            else:
                stage = STAGE_ARCHIVE
                archive_path = self.layout.new_artifact_path(site.server_name, ArtifactKind.FILES)
                self._log(f"Creating file backup for {site.server_name}")
                create_archive(site.document_root, str(archive_path), self.exclude_dirs)
                result.artifact = str(archive_path)
                size = get_archive_size(str(archive_path))
                self._log(f"Archive created: {archive_path} ({size / 1024 / 1024:.2f} MB)")
        except Exception as e:
            return self._failed(result, stage, e)

        self._apply_retention(result)
        return result

    def _backup_database(self, site: Site) -> BackupResult:
        result = BackupResult(site.server_name, ArtifactKind.DATABASE, True)

        try:
            dump_path = self.layout.new_artifact_path(site.server_name, ArtifactKind.DATABASE)
            self._log(f"Dumping database {site.database.name} for {site.server_name}")
            self.dumper.dump(site.database, str(dump_path))
            result.artifact = str(dump_path)
        except Exception as e:
            return self._failed(result, STAGE_DUMP, e)

        self._apply_retention(result)
        return result


class RemoteBackupExecutor(_BaseExecutor):
    """
    Backs up sites hosted on the remote end of a RemoteSession.

    Sites are processed sequentially. Archives are streamed from the remote
    tar process straight into the local artifact (or, with transfer='scp',
    written to the remote temp directory and copied with scp). Database
    dumps always go through a remote temp file that is compressed while
    being streamed back and removed afterwards.
    """

    def __init__(self, session: RemoteSession, layout: BackupLayout, retention: RetentionManager,
                 config_paths: Iterable[str], exclude_dirs: Iterable[str] = DEFAULT_EXCLUDE_DIRS,
                 remote_temp_dir: str = '~/.sitebackup-tmp', transfer: str = 'stream',
                 skip_if_backed_up_today: bool = True, timeout: Optional[float] = None,
                 env_candidates: Iterable[str] = ENV_FILE_CANDIDATES):
        """
        Initialize remote backup executor.

        Args:
            session: Connected remote session
            layout: Backup layout for remote artifacts
            retention: Retention manager with the remote policy
            config_paths: Apache configuration paths on the remote host
            exclude_dirs: Directory names left out of archives
            remote_temp_dir: Scratch directory on the remote host
            transfer: 'stream' or 'scp'
            skip_if_backed_up_today: Skip a kind already backed up today
            timeout: Per-command timeout (defaults to the session's)
            env_candidates: .env locations relative to the document root
        """
        if transfer not in TRANSFER_MODES:
            raise ValueError(f"Invalid transfer mode: {transfer}. Valid options: {list(TRANSFER_MODES)}")

        super().__init__(layout, retention)
        self.session = session
        self.exclude_dirs = tuple(exclude_dirs)
        self.remote_temp_dir = remote_temp_dir
        self.transfer = transfer
        self.skip_if_backed_up_today = skip_if_backed_up_today
        self.timeout = timeout
        self.directory = RemoteSiteDirectory(session, config_paths, env_candidates, timeout)
        self.detector = RecentChangeDetector(session, self.exclude_dirs, timeout)
        self._temp_dir = None

    def run(self) -> List[BackupResult]:
        """
        Discover and back up all remote sites.

        Returns:
            One result per unit, in processing order

        Raises:
            RemoteCommandError: If the remote temp directory cannot be prepared
        """
        self._temp_dir = self._prepare_temp_dir()
        self._log(f"Remote temp directory: {self._temp_dir}")

        sites = self.directory.discover()
        results = []
        claimed = {}

        for site in sites:
            self._log(f"Starting backup check for {site.server_name}")

            conflict = self._claim_storage(site, claimed)
            if conflict is not None:
                results.append(conflict)
                continue

            results.append(self._backup_files(site))
            if site.has_database:
                results.append(self._backup_database(site))

        self._log(f"Remote backup finished: {len(results)} unit(s)")
        return results

    def _prepare_temp_dir(self) -> str:
        """Resolve a leading ~ against the remote $HOME and create the directory."""
        temp_dir = self.remote_temp_dir
        if temp_dir == '~' or temp_dir.startswith('~/'):
            home = self.session.run('printf %s "$HOME"', timeout=self.timeout).strip()
            if not home:
                raise RemoteCommandError("Could not determine the remote home directory")
            temp_dir = home + temp_dir[1:]

        self.session.run(f'mkdir -p -m 700 {shlex.quote(temp_dir)}', timeout=self.timeout)
        return temp_dir

    def _remote_temp_path(self, site: Site, kind: ArtifactKind, timestamp: str) -> str:
        suffix = 'files.tar.gz' if kind is ArtifactKind.FILES else 'db.sql'
        return posixpath.join(self._temp_dir, f"{sanitize_site_name(site.server_name)}_{timestamp}_{suffix}")

    def build_archive_command(self, document_root: str, output: str = '-') -> str:
        """
        Shell command archiving a remote tree with the local archive rules.

        find selects directories and regular files only, pruning excluded
        directory names, so symlinks and special files are left out; tar
        then packs exactly that list without recursing on its own.
        """
        selection = r'\( -type f -o -type d \) -print0'
        if self.exclude_dirs:
            names = ' -o '.join(f'-name {shlex.quote(name)}' for name in self.exclude_dirs)
            selection = rf'-type d \( {names} \) -prune -o ' + selection

        target = output if output == '-' else shlex.quote(output)
        return (
            f'cd {shlex.quote(document_root)} && '
            f'find . -mindepth 1 {selection} | '
            f'tar --null --no-recursion -T - -czf {target}'
        )

    def _already_backed_up_today(self, site: Site, kind: ArtifactKind) -> bool:
        if not self.skip_if_backed_up_today:
            return False
        if self.layout.has_artifact_for_day(site.server_name, kind):
            self._log(f"{kind.value} backup for {site.server_name} already exists today, skipping")
            return True
        return False

    def _remove_remote(self, remote_path: str, result: BackupResult):
        """Delete a remote temp file. Failure is only a warning."""
        try:
            self.session.run(f'rm -f -- {shlex.quote(remote_path)}', timeout=self.timeout)
        except RemoteCommandError as e:
            result.warnings.append(f"Cleanup of {remote_path}: {e}")
            self._log(f"Warning: failed to remove remote file {remote_path}: {e}", logging.WARNING)

    def _backup_files(self, site: Site) -> BackupResult:
        result = BackupResult(site.server_name, ArtifactKind.FILES, True)
        stage = STAGE_CHANGE_CHECK

        try:
            if self._already_backed_up_today(site, ArtifactKind.FILES):
                result.skipped = True
            elif not self.detector.has_changed(site.server_name, site.document_root):
                self._log(f"No changes detected in {site.server_name}, skipping file backup")
                result.skipped = True
            else:
                stage = STAGE_ARCHIVE
                timestamp = generate_timestamp()
                archive_path = self.layout.new_artifact_path(site.server_name, ArtifactKind.FILES, timestamp)
                self._log(f"Creating file backup for {site.server_name}")

                if self.transfer == 'stream':
                    self.session.stream_to_file(
                        self.build_archive_command(site.document_root), str(archive_path), self.timeout
                    )
                else:
                    remote_path = self._remote_temp_path(site, ArtifactKind.FILES, timestamp)
                    try:
                        self.session.run(
                            self.build_archive_command(site.document_root, remote_path), self.timeout
                        )
                        stage = STAGE_TRANSFER
                        self._log(f"Copying files backup for {site.server_name} to local machine")
                        self.session.transfer_out(remote_path, str(archive_path))
                    finally:
                        self._remove_remote(remote_path, result)

                result.artifact = str(archive_path)
                size = get_archive_size(str(archive_path))
                self._log(f"Archive created: {archive_path} ({size / 1024 / 1024:.2f} MB)")
        except Exception as e:
            return self._failed(result, stage, e)

        self._apply_retention(result)
        return result

    def _backup_database(self, site: Site) -> BackupResult:
        result = BackupResult(site.server_name, ArtifactKind.DATABASE, True)
        stage = STAGE_DUMP

        try:
            if self._already_backed_up_today(site, ArtifactKind.DATABASE):
                result.skipped = True
            else:
                timestamp = generate_timestamp()
                dump_path = self.layout.new_artifact_path(site.server_name, ArtifactKind.DATABASE, timestamp)
                remote_path = self._remote_temp_path(site, ArtifactKind.DATABASE, timestamp)
                self._log(f"Dumping database {site.database.name} for {site.server_name}")

                try:
                    self.session.run(build_remote_dump_command(site.database, remote_path), self.timeout)
                    stage = STAGE_TRANSFER
                    self.session.stream_to_file(
                        f'gzip -c -- {shlex.quote(remote_path)}', str(dump_path), self.timeout
                    )
                finally:
                    self._remove_remote(remote_path, result)

                result.artifact = str(dump_path)
        except Exception as e:
            return self._failed(result, stage, e)

        self._apply_retention(result)
        return result


def summarize_results(results: List[BackupResult]) -> str:
    """
    Render a human readable summary of a run.

    Every unit is listed; failures quote the underlying error verbatim.
    """
    succeeded = sum(1 for r in results if r.status == 'success')
    skipped = sum(1 for r in results if r.status == 'skipped')
    failed = sum(1 for r in results if r.status == 'failed')

    lines = [f"Backup summary: {succeeded} succeeded, {skipped} skipped, {failed} failed"]

    for result in sorted(results, key=lambda r: (r.site, r.kind.value)):
        line = f"  [{result.status.upper()}] {result.site} ({result.kind.value})"
        if result.artifact:
            line += f": {result.artifact}"
        if result.error:
            line += f" - {result.stage} failed: {result.error}"
        lines.append(line)

        for warning in result.warnings:
            lines.append(f"      warning: {warning}")

    return '\n'.join(lines)


def has_failures(results: List[BackupResult]) -> bool:
    return any(not r.success for r in results)


def run_local_backups(settings) -> List[BackupResult]:
    """
    Discover and back up local sites.

    Args:
        settings: Loaded Settings

    Returns:
        One result per unit
    """
    layout = BackupLayout(settings.local_backup_dir)
    retention = RetentionManager(layout, settings.retention_for(BackupMode.LOCAL))
    detector = ChangeDetector(layout, settings.exclude_dirs, settings.temp_dir)
    dumper = DatabaseDumper(timeout=settings.dump_timeout, temp_dir=settings.temp_dir)

    sites = SiteDirectory(settings.apache_config_paths).discover()

    executor = LocalBackupExecutor(
        layout,
        retention,
        detector,
        dumper,
        exclude_dirs=settings.exclude_dirs,
        max_workers=settings.local_max_workers
    )
    return executor.run(sites)


def run_remote_backups(settings) -> List[BackupResult]:
    """
    Connect to the remote host and back up its sites.

    Raises:
        RemoteConnectionError: If the connection cannot be established
    """
    layout = BackupLayout(settings.remote_backup_dir)
    retention = RetentionManager(layout, settings.retention_for(BackupMode.REMOTE))

    with RemoteSession.open(settings.remote) as session:
        executor = RemoteBackupExecutor(
            session,
            layout,
            retention,
            settings.remote_apache_config_paths,
            exclude_dirs=settings.exclude_dirs,
            remote_temp_dir=settings.remote_temp_dir,
            transfer=settings.remote_transfer,
            skip_if_backed_up_today=settings.remote_skip_if_backed_up_today,
            timeout=settings.remote.command_timeout
        )
        return executor.run()
