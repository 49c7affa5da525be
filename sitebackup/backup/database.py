"""
Database dumps through an external dump | compress pipeline.

The password is handed to mysqldump through a private option file rather
than the command line. The compressed dump is written to a temporary file
and only renamed into place once both stages exited successfully.
"""

import os
import shlex
import subprocess
import tempfile
import time
from contextlib import contextmanager
from typing import List, Optional

from sitebackup.models import DatabaseConfig
from .storage import atomic_output


DUMP_OPTIONS = ('--quick', '--lock-tables=false')


class DumpError(Exception):
    """Raised when a database dump fails."""
    pass


def _escape_option_value(value: str) -> str:
    return value.replace('\\', '\\\\').replace('"', '\\"')


class DatabaseDumper:
    """
    Runs `mysqldump ... | gzip` for one database into one file.
    """

    def __init__(self, timeout: Optional[float] = 3600, dump_binary: str = 'mysqldump',
                 compress_binary: str = 'gzip', temp_dir: Optional[str] = None):
        """
        Initialize database dumper.

        Args:
            timeout: Seconds the whole pipeline may run (None for no limit)
            dump_binary: Dump utility to invoke
            compress_binary: Compression utility reading stdin, writing stdout
            temp_dir: Directory for the temporary option file
        """
        self.timeout = timeout
        self.dump_binary = dump_binary
        self.compress_binary = compress_binary
        self.temp_dir = temp_dir

    @contextmanager
    def _option_file(self, database: DatabaseConfig):
        """Write a [client] option file holding the password, readable only by us."""
        fd, path = tempfile.mkstemp(prefix='sitebackup-', suffix='.cnf', dir=self.temp_dir)
        try:
            with os.fdopen(fd, 'w') as f:
                f.write('[client]\n')
                f.write(f'password="{_escape_option_value(database.password)}"\n')
            yield path
        finally:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass

    def build_command(self, database: DatabaseConfig, option_file: str) -> List[str]:
        # --defaults-extra-file must be the first option
        return [
            self.dump_binary,
            f'--defaults-extra-file={option_file}',
            '-h', database.effective_host,
            '-u', database.user,
            *DUMP_OPTIONS,
            database.name,
        ]

    def dump(self, database: DatabaseConfig, output_path: str) -> str:
        """
        Dump a database into a compressed file.

        Args:
            database: Connection details
            output_path: Final path of the .sql.gz artifact

        Returns:
            output_path

        Raises:
            DumpError: If either stage fails or the timeout is exceeded; the
                dump utility's error output is quoted verbatim
        """
        if not database.is_complete:
            raise DumpError("Database name and user are required for a dump")

        with atomic_output(output_path) as temp_path:
            with self._option_file(database) as option_file:
                self._run_pipeline(self.build_command(database, option_file), temp_path)

        return output_path

    def _run_pipeline(self, dump_command: List[str], output_file: str):
        deadline = time.monotonic() + self.timeout if self.timeout else None

        def remaining():
            if deadline is None:
                return None
            return max(deadline - time.monotonic(), 0.1)

        # stderr goes to a file so a chatty dump can never block on a full pipe
        with open(output_file, 'wb') as out, tempfile.TemporaryFile(dir=self.temp_dir) as dump_stderr:
            try:
                dump = subprocess.Popen(dump_command, stdout=subprocess.PIPE, stderr=dump_stderr)
            except OSError as e:
                raise DumpError(f"Failed to start {self.dump_binary}: {e}")

            try:
                compress = subprocess.Popen(
                    [self.compress_binary, '-c'],
                    stdin=dump.stdout,
                    stdout=out,
                    stderr=subprocess.PIPE
                )
            except OSError as e:
                dump.kill()
                dump.wait()
                raise DumpError(f"Failed to start {self.compress_binary}: {e}")

            # Only the compressor holds the read end now
            dump.stdout.close()

            try:
                _, compress_errors = compress.communicate(timeout=remaining())
                dump_status = dump.wait(timeout=remaining())
            except subprocess.TimeoutExpired:
                for process in (dump, compress):
                    process.kill()
                    process.wait()
                raise DumpError(f"Database dump timed out after {self.timeout}s")

            dump_stderr.seek(0)
            dump_errors = dump_stderr.read().decode('utf-8', errors='replace').strip()

        if dump_status != 0:
            raise DumpError(
                f"{self.dump_binary} failed with exit status {dump_status}, "
                f"MySQL error: {dump_errors}"
            )

        if compress.returncode != 0:
            detail = (compress_errors or b'').decode('utf-8', errors='replace').strip()
            raise DumpError(
                f"{self.compress_binary} failed with exit status {compress.returncode}: {detail}"
            )


def build_remote_dump_command(database: DatabaseConfig, output_path: str,
                              dump_binary: str = 'mysqldump') -> str:
    """
    Shell command that dumps a database into output_path on a remote host.

    The password travels in the MYSQL_PWD environment variable of the remote
    command; every value is shell-quoted and the file is created with a
    private umask.
    """
    if not database.is_complete:
        raise DumpError("Database name and user are required for a dump")

    return (
        'umask 077 && '
        f'MYSQL_PWD={shlex.quote(database.password)} '
        f'{dump_binary} -h {shlex.quote(database.effective_host)} '
        f'-u {shlex.quote(database.user)} '
        f'{" ".join(DUMP_OPTIONS)} {shlex.quote(database.name)} '
        f'> {shlex.quote(output_path)}'
    )
