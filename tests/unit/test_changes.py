"""
Unit tests for change detection (sitebackup/backup/changes.py).

Tests ChangeDetector against real archives and RecentChangeDetector
against a scripted remote session.
"""

import os
from datetime import datetime, timedelta

import pytest

from sitebackup.backup.changes import ChangeDetectionError, ChangeDetector, RecentChangeDetector
from sitebackup.backup.compression import create_archive
from sitebackup.backup.remote import RemoteCommandError
from sitebackup.backup.storage import generate_timestamp
from sitebackup.models import ArtifactKind


SITE = 'app.example.com'


@pytest.fixture
def archived(site_tree, layout):
    """Archive the site tree as its latest files backup, named after now."""
    path = layout.new_artifact_path(SITE, ArtifactKind.FILES, generate_timestamp())
    create_archive(str(site_tree), str(path))
    return path


class TestChangeDetector:
    """Test snapshot comparison."""

    def test_no_previous_backup_means_changed(self, site_tree, layout):
        """Test a site without archives always needs one."""
        detector = ChangeDetector(layout)

        assert detector.has_changed(SITE, str(site_tree)) is True

    def test_unmodified_tree_unchanged(self, site_tree, layout, archived):
        """Test a tree compared to its own archive reports no change."""
        detector = ChangeDetector(layout)

        assert detector.has_changed(SITE, str(site_tree)) is False

    def test_size_change_detected(self, site_tree, layout, archived):
        """Test a file whose size differs is a change."""
        target = site_tree / 'index.php'
        stat = target.stat()
        target.write_text('<?php echo "hello world, longer";')
        os.utime(target, (stat.st_atime, stat.st_mtime))

        assert ChangeDetector(layout).has_changed(SITE, str(site_tree)) is True

    def test_newer_mtime_detected(self, site_tree, layout, archived):
        """Test a file modified after the archive was written is a change."""
        target = site_tree / 'index.php'
        future = archived.stat().st_mtime + 60
        os.utime(target, (future, future))

        assert ChangeDetector(layout).has_changed(SITE, str(site_tree)) is True

    def test_new_file_detected(self, site_tree, layout, archived):
        """Test a file missing from the snapshot is a change."""
        (site_tree / 'new.php').write_text('new')

        assert ChangeDetector(layout).has_changed(SITE, str(site_tree)) is True

    def test_deleted_file_detected(self, site_tree, layout, archived):
        """Test a file removed from the tree is a change."""
        (site_tree / 'config' / 'app.php').unlink()

        assert ChangeDetector(layout).has_changed(SITE, str(site_tree)) is True

    def test_type_change_detected(self, site_tree, layout, archived):
        """Test a file replaced by a directory is a change."""
        (site_tree / 'index.php').unlink()
        (site_tree / 'index.php').mkdir()

        assert ChangeDetector(layout).has_changed(SITE, str(site_tree)) is True

    def test_write_during_archiving_detected(self, site_tree, layout):
        """Test a same-size rewrite between archive start and finish is a change."""
        started = datetime.now().replace(microsecond=0) - timedelta(minutes=10)
        path = layout.new_artifact_path(SITE, ArtifactKind.FILES, generate_timestamp(started))
        create_archive(str(site_tree), str(path))
        finished = started.timestamp() + 60
        os.utime(path, (finished, finished))

        target = site_tree / 'config' / 'app.php'
        target.write_text('<?php return ();')
        written = started.timestamp() + 30
        os.utime(target, (written, written))

        assert ChangeDetector(layout).has_changed(SITE, str(site_tree)) is True

    def test_hard_links_unchanged(self, site_tree, layout):
        """Test a tree with hard links compares equal to its own archive."""
        os.link(site_tree / 'index.php', site_tree / 'index-copy.php')
        path = layout.new_artifact_path(SITE, ArtifactKind.FILES, generate_timestamp())
        create_archive(str(site_tree), str(path))

        assert ChangeDetector(layout).has_changed(SITE, str(site_tree)) is False

    def test_excluded_dirs_ignored(self, site_tree, layout, archived):
        """Test changes below excluded directories do not count."""
        (site_tree / 'node_modules' / 'new.js').write_text('ignored')

        assert ChangeDetector(layout).has_changed(SITE, str(site_tree)) is False

    def test_scratch_directory_removed(self, site_tree, layout, archived, tmp_path):
        """Test the extraction directory is removed afterwards."""
        scratch_parent = tmp_path / 'scratch'
        scratch_parent.mkdir()

        ChangeDetector(layout, temp_dir=str(scratch_parent)).has_changed(SITE, str(site_tree))

        assert os.listdir(scratch_parent) == []

    def test_corrupt_archive_raises(self, site_tree, layout):
        """Test an unreadable latest archive is an error, not a change."""
        path = layout.new_artifact_path(SITE, ArtifactKind.FILES, '2024-01-01_000000')
        path.parent.mkdir(parents=True)
        path.write_bytes(b'corrupt')

        with pytest.raises(ChangeDetectionError, match="extract"):
            ChangeDetector(layout).has_changed(SITE, str(site_tree))

    def test_missing_source_raises(self, layout, archived, tmp_path):
        """Test a vanished document root is an error."""
        with pytest.raises(ChangeDetectionError, match="does not exist"):
            ChangeDetector(layout).has_changed(SITE, str(tmp_path / 'gone'))


class TestRecentChangeDetector:
    """Test the remote 24 hour policy."""

    def test_command_shape(self, fake_session):
        """Test find filters hidden paths and excluded dirs."""
        command = RecentChangeDetector(fake_session).build_command('/srv/my app')

        assert command.startswith("test -d '/srv/my app' && find '/srv/my app' -type f -mtime -1")
        assert "-not -path '*/.*'" in command
        assert "-not -path '*/node_modules/*'" in command
        assert command.endswith('| wc -l')

    def test_changed_when_count_positive(self, fake_session):
        """Test a positive count means changed."""
        fake_session.on(r'find', '  3\n')

        assert RecentChangeDetector(fake_session).has_changed(SITE, '/srv/app') is True

    def test_unchanged_when_zero(self, fake_session):
        """Test zero recent files means unchanged."""
        fake_session.on(r'find', '0\n')

        assert RecentChangeDetector(fake_session).has_changed(SITE, '/srv/app') is False

    def test_command_failure_raises(self, fake_session):
        """Test a failing remote command is a detection error."""
        fake_session.on(r'find', RemoteCommandError("exit 1", exit_status=1))

        with pytest.raises(ChangeDetectionError):
            RecentChangeDetector(fake_session).has_changed(SITE, '/srv/missing')

    def test_garbage_output_raises(self, fake_session):
        """Test non-numeric output is a detection error."""
        fake_session.on(r'find', 'find: warning\n')

        with pytest.raises(ChangeDetectionError, match="Unexpected"):
            RecentChangeDetector(fake_session).count_recent_changes('/srv/app')
