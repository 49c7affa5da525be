"""
Remote command execution and file transfer over SSH.

RemoteSession holds one authenticated paramiko connection and a SessionPool
of pre-opened session channels. A session channel executes exactly one
command, so pooled handles are use-once: a channel that ran a command is
closed, never returned. The pool is a cache of ready channels, not a
concurrency limiter; when it is empty a fresh channel is opened on demand.

Bulk transfers with transfer_out() use a separate scp process instead of
the pooled channels.
"""

import logging
import os
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple

import paramiko
from paramiko import AutoAddPolicy, RejectPolicy, SSHClient, WarningPolicy

from .storage import atomic_output


logger = logging.getLogger(__name__)


HOST_KEY_POLICIES = ('reject', 'warn', 'auto-add')

# OpenSSH StrictHostKeyChecking value matching each policy, for scp
_SCP_HOST_KEY_CHECKING = {
    'reject': 'yes',
    'warn': 'accept-new',
    'auto-add': 'no',
}

_CHUNK_SIZE = 32768
_POLL_INTERVAL = 0.01


class RemoteError(Exception):
    """Base class for remote execution failures."""
    pass


class RemoteConnectionError(RemoteError):
    """Connection or authentication failed. Fatal to the whole remote run."""
    pass


class RemoteCommandError(RemoteError):
    """A remote command failed, timed out or could not be started."""

    def __init__(self, message: str, exit_status: Optional[int] = None, output: str = ''):
        super().__init__(message)
        self.exit_status = exit_status
        self.output = output


class TransferError(RemoteError):
    """Copying a file from the remote host failed."""
    pass


@dataclass(frozen=True)
class RemoteConfig:
    """SSH connection settings for the remote host."""
    host: str
    username: str
    port: int = 22
    password: Optional[str] = None
    private_key: Optional[str] = None
    host_key_policy: str = 'reject'
    known_hosts: Optional[str] = None
    connect_timeout: float = 30
    command_timeout: Optional[float] = 3600
    max_sessions: int = 20

    def __post_init__(self):
        if self.host_key_policy not in HOST_KEY_POLICIES:
            raise ValueError(
                f"Invalid host key policy: {self.host_key_policy}. "
                f"Valid options: {list(HOST_KEY_POLICIES)}"
            )

    def __repr__(self):
        password = '***' if self.password else None
        return (
            f'RemoteConfig(host={self.host!r}, port={self.port}, username={self.username!r}, '
            f'private_key={self.private_key!r}, password={password!r}, '
            f'host_key_policy={self.host_key_policy!r})'
        )


class SessionPool:
    """
    Thread-safe cache of unused session channels.

    acquire() never blocks: it hands out a pooled channel if one is ready,
    otherwise it opens a new one. Each channel has exactly one owner at a
    time.
    """

    def __init__(self, opener: Callable[[], paramiko.Channel], max_size: int = 0):
        """
        Initialize session pool.

        Args:
            opener: Callable opening a new session channel
            max_size: Maximum number of idle channels kept
        """
        self._opener = opener
        self._idle = deque()
        self._lock = threading.Lock()
        self.max_size = max_size

    def probe(self, ceiling: int) -> int:
        """
        Discover how many concurrent channels the remote end accepts.

        Opens channels until the first refusal or until ceiling is reached.
        The channels opened become the pool and the count becomes max_size.

        Returns:
            Number of channels opened
        """
        opened = []

        for _ in range(ceiling):
            try:
                opened.append(self._opener())
            except (paramiko.SSHException, EOFError, OSError) as e:
                logger.debug(f"Session probe stopped after {len(opened)} channels: {e}")
                break

        with self._lock:
            self.max_size = len(opened)
            self._idle.extend(opened)

        return len(opened)

    def acquire(self) -> paramiko.Channel:
        """
        Take an idle channel, or open a new one if none is available.

        Raises:
            RemoteCommandError: If a new channel cannot be opened
        """
        with self._lock:
            while self._idle:
                channel = self._idle.popleft()
                if not channel.closed:
                    return channel

        try:
            return self._opener()
        except (paramiko.SSHException, EOFError, OSError) as e:
            raise RemoteCommandError(f"Failed to open SSH session: {e}")

    def release(self, channel: paramiko.Channel):
        """Return an unused channel to the pool, or close it if the pool is full."""
        if channel is None or channel.closed:
            return

        with self._lock:
            if len(self._idle) < self.max_size:
                self._idle.append(channel)
                return

        channel.close()

    def discard(self, channel: paramiko.Channel):
        """Close a channel that has been used. It is never returned."""
        if channel is not None:
            channel.close()

    def close_all(self):
        """Close every idle channel."""
        with self._lock:
            channels = list(self._idle)
            self._idle.clear()

        for channel in channels:
            try:
                channel.close()
            except Exception as e:
                logger.debug(f"Failed to close pooled session: {e}")

    def __len__(self):
        with self._lock:
            return len(self._idle)


class RemoteSession:
    """
    Authenticated SSH connection with a pool of command channels.

    Use RemoteSession.open() to connect; close() tears down the pool and the
    connection together.
    """

    def __init__(self, config: RemoteConfig):
        self.config = config
        self.client = None
        self.pool = None
        self._closed = False

    @classmethod
    def open(cls, config: RemoteConfig) -> 'RemoteSession':
        """
        Connect, authenticate and size the session pool.

        Raises:
            RemoteConnectionError: If the connection cannot be established
        """
        session = cls(config)
        try:
            session.connect()
            session.initialize_pool()
        except Exception:
            session.close()
            raise
        return session

    def _configure_host_keys(self, client: SSHClient):
        policy = self.config.host_key_policy

        if policy == 'auto-add':
            logger.warning(
                f"Host key verification disabled for {self.config.host} (policy: auto-add)"
            )
            client.set_missing_host_key_policy(AutoAddPolicy())
            return

        client.load_system_host_keys()
        if self.config.known_hosts:
            client.load_host_keys(str(Path(self.config.known_hosts).expanduser()))

        if policy == 'warn':
            client.set_missing_host_key_policy(WarningPolicy())
        else:
            client.set_missing_host_key_policy(RejectPolicy())

    def connect(self):
        """
        Establish the SSH connection.

        When both a private key and a password are configured, paramiko tries
        the key first and falls back to the password.

        Raises:
            RemoteConnectionError: If connection or authentication fails
        """
        connect_kwargs = {
            'hostname': self.config.host,
            'port': self.config.port,
            'username': self.config.username,
            'timeout': self.config.connect_timeout,
            'banner_timeout': self.config.connect_timeout,
            'auth_timeout': self.config.connect_timeout,
            'allow_agent': False,
            'look_for_keys': False,
        }

        if self.config.private_key:
            key_path = Path(self.config.private_key).expanduser()
            if not key_path.exists():
                raise RemoteConnectionError(f"Private key not found: {self.config.private_key}")
            connect_kwargs['key_filename'] = str(key_path)
            logger.info(f"Using SSH key: {key_path}")

        if self.config.password:
            connect_kwargs['password'] = self.config.password
            logger.info("Using password authentication")

        if 'key_filename' not in connect_kwargs and 'password' not in connect_kwargs:
            raise RemoteConnectionError("Either password or private_key must be provided")

        client = SSHClient()

        try:
            self._configure_host_keys(client)
            logger.info(f"Connecting to SSH server {self.config.host}:{self.config.port}...")
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            client.close()
            raise RemoteConnectionError(f"SSH authentication failed: {e}")
        except paramiko.BadHostKeyException as e:
            client.close()
            raise RemoteConnectionError(f"SSH host key verification failed: {e}")
        except paramiko.SSHException as e:
            client.close()
            raise RemoteConnectionError(f"SSH connection failed: {e}")
        except Exception as e:
            client.close()
            raise RemoteConnectionError(f"Failed to connect to {self.config.host}: {e}")

        self.client = client
        logger.info("Successfully connected to SSH server")

    def initialize_pool(self):
        """
        Probe channel capacity and fill the session pool.

        Raises:
            RemoteConnectionError: If not a single channel can be opened
        """
        transport = self.client.get_transport()

        def open_channel():
            return transport.open_session(timeout=self.config.connect_timeout)

        self.pool = SessionPool(open_channel)
        capacity = self.pool.probe(self.config.max_sessions)

        if capacity == 0:
            raise RemoteConnectionError(f"{self.config.host} refused to open any SSH session")

        logger.info(f"Maximum SSH sessions: {capacity}")

    def _execute(self, command: str, stdout_sink: Callable[[bytes], object],
                 timeout: Optional[float]) -> Tuple[int, bytes]:
        """
        Run one command on a pooled channel, feeding stdout to stdout_sink.

        Returns:
            (exit status, collected stderr)
        """
        if self.pool is None:
            raise RemoteCommandError("Remote session is not connected")

        if timeout is None:
            timeout = self.config.command_timeout

        channel = self.pool.acquire()
        try:
            channel.exec_command(command)
            stderr = self._drain(channel, stdout_sink, timeout)
            return channel.recv_exit_status(), stderr
        except RemoteCommandError:
            raise
        except Exception as e:
            raise RemoteCommandError(f"Remote command failed: {e}")
        finally:
            self.pool.discard(channel)

    def _drain(self, channel: paramiko.Channel, stdout_sink: Callable[[bytes], object],
               timeout: Optional[float]) -> bytes:
        """Read stdout and stderr until the command exits or the timeout passes."""
        deadline = time.monotonic() + timeout if timeout else None
        stderr_chunks = []

        while True:
            if deadline is not None and time.monotonic() > deadline:
                raise RemoteCommandError(f"Command timed out after {timeout}s")

            progressed = False

            if channel.recv_ready():
                stdout_sink(channel.recv(_CHUNK_SIZE))
                progressed = True

            if channel.recv_stderr_ready():
                stderr_chunks.append(channel.recv_stderr(_CHUNK_SIZE))
                progressed = True

            if progressed:
                continue

            if channel.exit_status_ready():
                # output sent before the exit status is already buffered
                while channel.recv_ready():
                    stdout_sink(channel.recv(_CHUNK_SIZE))
                while channel.recv_stderr_ready():
                    stderr_chunks.append(channel.recv_stderr(_CHUNK_SIZE))
                break

            time.sleep(_POLL_INTERVAL)

        return b''.join(stderr_chunks)

    def run(self, command: str, timeout: Optional[float] = None) -> str:
        """
        Run a command and return its standard output.

        Args:
            command: Shell command line for the remote host
            timeout: Seconds before the command counts as failed
                (defaults to config.command_timeout)

        Raises:
            RemoteCommandError: On non-zero exit status or timeout; the
                message quotes the command's error output verbatim
        """
        chunks = []
        exit_status, stderr = self._execute(command, chunks.append, timeout)
        output = b''.join(chunks).decode('utf-8', errors='replace')

        if exit_status != 0:
            detail = stderr.decode('utf-8', errors='replace').strip() or output.strip()
            raise RemoteCommandError(
                f"Command failed with exit status {exit_status}: {detail}",
                exit_status=exit_status,
                output=output
            )

        return output

    def stream_to_file(self, command: str, local_path: str, timeout: Optional[float] = None) -> str:
        """
        Run a command and write its standard output to a local file.

        The file only appears at local_path if the command succeeded.

        Raises:
            RemoteCommandError: On non-zero exit status or timeout
        """
        with atomic_output(local_path) as temp_path:
            with open(temp_path, 'wb') as f:
                exit_status, stderr = self._execute(command, f.write, timeout)

            if exit_status != 0:
                detail = stderr.decode('utf-8', errors='replace').strip()
                raise RemoteCommandError(
                    f"Command failed with exit status {exit_status}: {detail}",
                    exit_status=exit_status
                )

        return local_path

    def _scp_command(self, remote_path: str, local_path: str) -> Tuple[list, dict]:
        """Build the scp argument list and environment for a transfer."""
        env = dict(os.environ)
        args = [
            'scp',
            '-o', f'StrictHostKeyChecking={_SCP_HOST_KEY_CHECKING[self.config.host_key_policy]}',
            '-P', str(self.config.port),
        ]

        if self.config.known_hosts:
            args += ['-o', f'UserKnownHostsFile={Path(self.config.known_hosts).expanduser()}']

        if self.config.private_key:
            args += ['-o', 'BatchMode=yes', '-i', str(Path(self.config.private_key).expanduser())]
        elif self.config.password:
            # sshpass reads the password from SSHPASS, keeping it out of argv
            env['SSHPASS'] = self.config.password
            args = ['sshpass', '-e'] + args

        args += [f'{self.config.username}@{self.config.host}:{remote_path}', local_path]
        return args, env

    def transfer_out(self, remote_path: str, local_path: str) -> str:
        """
        Copy a remote file to local_path with scp.

        Raises:
            TransferError: If scp fails or times out
        """
        with atomic_output(local_path) as temp_path:
            args, env = self._scp_command(remote_path, temp_path)

            try:
                result = subprocess.run(
                    args,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    env=env,
                    timeout=self.config.command_timeout
                )
            except subprocess.TimeoutExpired:
                raise TransferError(f"scp of {remote_path} timed out")
            except OSError as e:
                raise TransferError(f"Failed to run scp: {e}")

            if result.returncode != 0:
                output = result.stdout.decode('utf-8', errors='replace').strip()
                raise TransferError(f"scp failed with exit status {result.returncode}: {output}")

        return local_path

    def close(self):
        """Close all pooled channels and the connection. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True

        if self.pool is not None:
            self.pool.close_all()

        if self.client is not None:
            try:
                self.client.close()
            except Exception as e:
                logger.warning(f"Failed to close SSH connection: {e}")
            self.client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
