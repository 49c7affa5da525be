"""
Plain data types shared by the backup engine.

Nothing in here touches the filesystem or the network: sites are produced by
discovery, results are produced by the executors, and both are read-only
afterwards.
"""

import enum
from dataclasses import dataclass, field
from typing import List, Optional


class ArtifactKind(enum.Enum):
    """The two artifact kinds produced for every site."""
    FILES = 'files'
    DATABASE = 'database'


class BackupMode(enum.Enum):
    """Where the backed-up sites live. Selects the retention policy."""
    LOCAL = 'local'
    REMOTE = 'remote'


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection details read from a site's .env file."""
    host: str = ''
    name: str = ''
    user: str = ''
    password: str = ''

    @property
    def is_complete(self) -> bool:
        """A dump needs at least a database name and a user."""
        return bool(self.name and self.user)

    @property
    def effective_host(self) -> str:
        return self.host or 'localhost'

    def __repr__(self):
        masked = '***' if self.password else ''
        return (
            f'DatabaseConfig(host={self.host!r}, name={self.name!r}, '
            f'user={self.user!r}, password={masked!r})'
        )


@dataclass(frozen=True)
class Site:
    """
    One discovered web application deployment.

    Two sites are the same backup target when both server name and
    document root match.
    """
    server_name: str
    document_root: str
    database: Optional[DatabaseConfig] = None

    @property
    def key(self):
        return (self.server_name, self.document_root)

    @property
    def has_database(self) -> bool:
        return self.database is not None and self.database.is_complete


@dataclass
class BackupResult:
    """Outcome of one (site, artifact kind) unit of work."""
    site: str
    kind: ArtifactKind
    success: bool
    error: Optional[str] = None
    stage: Optional[str] = None
    skipped: bool = False
    artifact: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if not self.success:
            return 'failed'
        return 'skipped' if self.skipped else 'success'
