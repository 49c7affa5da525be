"""
Shared pytest fixtures for sitebackup tests.

This module provides fixtures for:
- Site trees and Apache configuration on disk
- Backup layouts in temporary directories
- Fake executables standing in for mysqldump and gzip
- Mock fixtures for external services (SSH, scheduler)
- A scripted stand-in for RemoteSession
"""

import os
import re
import stat
import time
from unittest.mock import MagicMock, patch

import pytest

from sitebackup.backup.remote import RemoteCommandError
from sitebackup.backup.storage import BackupLayout


@pytest.fixture
def site_tree(tmp_path):
    """
    Create a small site document root.

    Creates:
    - index.php
    - config/app.php
    - storage/logs/app.log
    - node_modules/lib/index.js (excluded from archives)
    - link.php -> index.php (symlink, never archived)

    File mtimes are set one hour in the past, so an archive taken during
    the test sees them as older than itself.
    """
    root = tmp_path / 'srv' / 'app'
    (root / 'config').mkdir(parents=True)
    (root / 'storage' / 'logs').mkdir(parents=True)
    (root / 'node_modules' / 'lib').mkdir(parents=True)

    (root / 'index.php').write_text('<?php echo "hello";')
    (root / 'config' / 'app.php').write_text('<?php return [];')
    (root / 'storage' / 'logs' / 'app.log').write_text('log line\n')
    (root / 'node_modules' / 'lib' / 'index.js').write_text('module.exports = 1;')
    os.symlink(str(root / 'index.php'), str(root / 'link.php'))

    backdate_files(root)
    return root


def backdate_files(root, seconds=3600):
    """Move the mtime of every regular file below root into the past."""
    past = time.time() - seconds
    for dirpath, _, filenames in os.walk(root):
        for name in filenames:
            full_path = os.path.join(dirpath, name)
            if not os.path.islink(full_path):
                os.utime(full_path, (past, past))


@pytest.fixture
def layout(tmp_path):
    """Backup layout rooted in a temporary directory."""
    return BackupLayout(str(tmp_path / 'backups'))


@pytest.fixture
def apache_config(tmp_path):
    """Write Apache config fragments and return a glob matching them."""
    conf_dir = tmp_path / 'sites-enabled'
    conf_dir.mkdir()

    def write(name, content):
        (conf_dir / name).write_text(content)
        return conf_dir / name

    write.pattern = str(conf_dir / '*.conf')
    write.dir = conf_dir
    return write


@pytest.fixture
def make_executable(tmp_path):
    """
    Create small shell scripts standing in for external tools.

    Usage: make_executable('mysqldump', 'echo "-- dump"')
    """
    bin_dir = tmp_path / 'bin'
    bin_dir.mkdir()

    def make(name, body):
        path = bin_dir / name
        path.write_text('#!/bin/sh\n' + body + '\n')
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return make


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SSH testing.

    Returns the patched class; its return_value is the client instance.
    """
    with patch('sitebackup.backup.remote.SSHClient') as mock_ssh:
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    import sitebackup.scheduler as scheduler_module

    scheduler_module.scheduler = None

    with patch('sitebackup.scheduler.BlockingScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.get_jobs.return_value = []

        yield mock_sched

    scheduler_module.scheduler = None


class FakeSession:
    """
    Scripted stand-in for RemoteSession.

    Responses are registered as (regex, output) pairs; output may be a
    string, bytes for stream_to_file, or an exception to raise.
    """

    def __init__(self):
        self.responses = []
        self.commands = []
        self.transfers = []

    def on(self, pattern, output):
        self.responses.append((re.compile(pattern), output))
        return self

    def _respond(self, command):
        self.commands.append(command)
        for pattern, output in self.responses:
            if pattern.search(command):
                if isinstance(output, Exception):
                    raise output
                return output
        raise RemoteCommandError(f"Unexpected command: {command}", exit_status=127)

    def run(self, command, timeout=None):
        output = self._respond(command)
        return output.decode() if isinstance(output, bytes) else output

    def stream_to_file(self, command, local_path, timeout=None):
        output = self._respond(command)
        data = output if isinstance(output, bytes) else output.encode()
        os.makedirs(os.path.dirname(local_path), exist_ok=True)
        with open(local_path, 'wb') as f:
            f.write(data)
        return local_path

    def transfer_out(self, remote_path, local_path):
        self.transfers.append((remote_path, local_path))
        os.makedirs(os.path.dirname(local_path), exist_ok=True)
        with open(local_path, 'wb') as f:
            f.write(b'transferred')
        return local_path


@pytest.fixture
def fake_session():
    return FakeSession()
