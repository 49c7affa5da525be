"""
Command line entry point.

Commands:
  run        back up local sites, then remote ones when enabled
  discover   list the sites that would be backed up
  schedule   run backups on a cron schedule until interrupted

Exit status of `run`: 0 when every unit succeeded or was skipped, 1 when at
least one unit failed, 2 on a configuration error or when a whole run had
to be aborted (unusable backup directory, remote connection failure).
"""

import argparse
import logging
import sys
from typing import List, Optional

from sitebackup import __version__, configure_logging
from sitebackup.backup.discovery import DiscoveryError, RemoteSiteDirectory, SiteDirectory
from sitebackup.backup.executor import has_failures, run_local_backups, run_remote_backups, summarize_results
from sitebackup.backup.remote import RemoteError, RemoteSession
from sitebackup.backup.storage import StorageError
from sitebackup.config import ConfigError, Settings, load_settings
from sitebackup.models import Site


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_FATAL = 2


def run_backups(settings: Settings, local: bool = True, remote: Optional[bool] = None) -> int:
    """
    Run one backup cycle and print its summary.

    Args:
        settings: Loaded Settings
        local: Back up sites on this machine
        remote: Back up remote sites (defaults to settings.remote_enabled)

    Returns:
        Process exit status
    """
    if remote is None:
        remote = settings.remote_enabled

    results = []
    aborted = False

    if local:
        try:
            results.extend(run_local_backups(settings))
        except StorageError as e:
            logger.error(f"Local backup aborted: {e}")
            aborted = True

    if remote:
        if settings.remote is None:
            logger.error("Remote backup requested but SSH settings are not configured")
            aborted = True
        else:
            try:
                results.extend(run_remote_backups(settings))
            except (RemoteError, DiscoveryError, StorageError) as e:
                logger.error(f"Remote backup aborted: {e}")
                aborted = True

    print(summarize_results(results))

    if aborted:
        return EXIT_FATAL
    return EXIT_FAILURES if has_failures(results) else EXIT_OK


def _describe_site(site: Site) -> str:
    database = site.database
    if database is None:
        db_info = 'no database'
    elif not database.is_complete:
        db_info = 'incomplete database config'
    else:
        db_info = f"database {database.name}@{database.effective_host} (user {database.user})"
    return f"{site.server_name}\t{site.document_root}\t{db_info}"


def discover_sites(settings: Settings, remote: bool = False) -> List[Site]:
    """
    Discover local or remote sites.

    Raises:
        RemoteError: If the remote host cannot be reached
    """
    if not remote:
        return SiteDirectory(settings.apache_config_paths).discover()

    with RemoteSession.open(settings.remote) as session:
        directory = RemoteSiteDirectory(
            session,
            settings.remote_apache_config_paths,
            timeout=settings.remote.command_timeout
        )
        return directory.discover()


def _cmd_run(args, settings: Settings) -> int:
    return run_backups(settings, local=args.local, remote=args.remote)


def _cmd_discover(args, settings: Settings) -> int:
    try:
        sites = discover_sites(settings, remote=args.remote)
    except (RemoteError, DiscoveryError) as e:
        logger.error(f"Discovery failed: {e}")
        return EXIT_FATAL

    for site in sites:
        print(_describe_site(site))
    print(f"{len(sites)} site(s) found")
    return EXIT_OK


def _cmd_schedule(args, settings: Settings) -> int:
    # Imported lazily: only this command needs APScheduler
    from sitebackup.scheduler import init_scheduler, start_scheduler

    try:
        init_scheduler(args.cron, lambda: run_backups(settings), timezone=args.timezone)
    except ValueError as e:
        logger.error(f"Invalid cron expression {args.cron!r}: {e}")
        return EXIT_FATAL

    start_scheduler()
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='sitebackup',
        description="Back up Apache virtual host sites and their databases"
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    parser.add_argument(
        '--env-file',
        type=str,
        default=None,
        help='Read settings from this dotenv file (environment variables take precedence)'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    run_parser = subparsers.add_parser('run', help='Run one backup cycle')
    run_parser.add_argument(
        '--no-local',
        dest='local',
        action='store_false',
        help='Skip sites on this machine'
    )
    remote_group = run_parser.add_mutually_exclusive_group()
    remote_group.add_argument(
        '--remote',
        dest='remote',
        action='store_true',
        default=None,
        help='Back up remote sites even if REMOTE_BACKUP_ENABLED is false'
    )
    remote_group.add_argument(
        '--no-remote',
        dest='remote',
        action='store_false',
        help='Skip remote sites'
    )
    run_parser.set_defaults(handler=_cmd_run)

    discover_parser = subparsers.add_parser('discover', help='List discovered sites')
    discover_parser.add_argument(
        '--remote',
        action='store_true',
        help='Discover sites on the remote host'
    )
    discover_parser.set_defaults(handler=_cmd_discover)

    schedule_parser = subparsers.add_parser('schedule', help='Run backups on a cron schedule')
    schedule_parser.add_argument(
        '--cron',
        type=str,
        default='0 2 * * *',
        help='Crontab expression (default: daily at 02:00)'
    )
    schedule_parser.add_argument(
        '--timezone',
        type=str,
        default='UTC',
        help='Timezone for the cron expression'
    )
    schedule_parser.set_defaults(handler=_cmd_schedule)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for sitebackup."""
    args = build_parser().parse_args(argv)

    # --remote loads SSH settings even when remote backups are disabled;
    # --no-remote skips them even when enabled
    remote_override = getattr(args, 'remote', None)

    try:
        settings = load_settings(args.env_file, remote_enabled=remote_override)
    except (ConfigError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FATAL

    configure_logging(settings)
    return args.handler(args, settings)


if __name__ == '__main__':
    sys.exit(main())
