"""CLI entrypoint for backup, restore and maintenance runs.

Usage:
  python -m dockerbackup backup [--full | --volume NAME ...] [--priority NAME ...] [--skip-in-use]
  python -m dockerbackup restore (--full | --volume NAME) [--archive NAME] [--keep-relocated]
  python -m dockerbackup list [--full | --volume NAME]
  python -m dockerbackup verify [--archive NAME | --all | --repository-only]
  python -m dockerbackup cleanup [--task TASK ...]
  python -m dockerbackup download [--remote ALIAS] [--staging DIR]

Global flags: --force, --quiet, --dry-run, --repository PATH.
Settings not given on the command line come from DOCKER_BACKUP_* environment variables.
"""
import argparse
import dataclasses
import signal
import sys
import threading

from dockerbackup import utils
from dockerbackup.archives import VerifyExecutor, format_listing, list_archives
from dockerbackup.borg import BorgRepository
from dockerbackup.cleanup import ALL_TASKS, CleanupExecutor
from dockerbackup.config import Settings
from dockerbackup.downloads import DownloadExecutor
from dockerbackup.errors import PreconditionError
from dockerbackup.executor import BackupExecutor
from dockerbackup.restore import RestoreExecutor
from dockerbackup.utils import setup_logging, get_logger

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_BUSY = 3
EXIT_CANCELLED = 130


def parse_args(argv):
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--force', action='store_true', help='Skip confirmations and continue on low space')
    common.add_argument('--quiet', action='store_true', help='Only print errors to the console')
    common.add_argument('--dry-run', action='store_true', help='Log what would be done without changing anything')
    common.add_argument('--repository', type=str, help='borg repository path (DOCKER_BACKUP_REPOSITORY)')
    common.add_argument('--lock-path', type=str, help='Run lock path (DOCKER_BACKUP_LOCK_PATH)')

    parser = argparse.ArgumentParser(prog='dockerbackup', description='Docker backup and restore with borg')
    sub = parser.add_subparsers(dest='operation', required=True)

    backup = sub.add_parser('backup', parents=[common], help='Back up the data root or volumes')
    backup.add_argument('--full', action='store_true', help='Back up the whole data root (stops the service)')
    backup.add_argument('--volume', action='append', default=[], help='Volume to back up (repeatable)')
    backup.add_argument('--exclude', action='append', default=[], help='Volume to leave out (repeatable)')
    backup.add_argument('--priority', action='append', default=[],
                        help='Workload whose volumes are handled last (repeatable)')
    backup.add_argument('--skip-in-use', action='store_true', help='Skip volumes used by running containers')

    restore = sub.add_parser('restore', parents=[common], help='Restore the data root or one volume')
    target = restore.add_mutually_exclusive_group(required=True)
    target.add_argument('--full', action='store_true', help='Restore the whole data root')
    target.add_argument('--volume', type=str, help='Volume to restore')
    restore.add_argument('--archive', type=str, help='Archive name (defaults to the latest)')
    restore.add_argument('--keep-relocated', action='store_true', help='Keep the previous data after success')

    listing = sub.add_parser('list', parents=[common], help='List archives')
    listing.add_argument('--full', action='store_true', help='Only data-root archives')
    listing.add_argument('--volume', type=str, help='Only archives of this volume')
    listing.add_argument('--no-sizes', action='store_true', help='Skip per-archive size lookup')

    verify = sub.add_parser('verify', parents=[common], help='Check repository or archive consistency')
    verify.add_argument('--archive', type=str, help='Check a single archive')
    verify.add_argument('--all', action='store_true', help='Check every archive in turn')
    verify.add_argument('--repository-only', action='store_true', help='Only check repository structures')

    cleanup = sub.add_parser('cleanup', parents=[common], help='Remove unused Docker objects and restore leftovers')
    cleanup.add_argument('--task', action='append', choices=ALL_TASKS, help='Task to run (repeatable, default all)')

    download = sub.add_parser('download', parents=[common], help='Download the repository from the remote')
    download.add_argument('--remote', type=str, help='rclone remote (DOCKER_BACKUP_REMOTE)')
    download.add_argument('--staging', type=str, help='Local directory (defaults to the repository path)')

    return parser.parse_args(argv)


def build_settings(args, interactive=None):
    """Environment settings with command-line overrides applied."""
    settings = Settings.from_env()
    overrides = {
        'force': args.force,
        'quiet': args.quiet,
        'dry_run': args.dry_run,
        'interactive': utils.is_interactive() if interactive is None else interactive,
    }
    if args.repository:
        overrides['repository'] = args.repository
    if args.lock_path:
        overrides['lock_path'] = args.lock_path
    if getattr(args, 'priority', None):
        overrides['priority'] = tuple(args.priority)
    if getattr(args, 'skip_in_use', False):
        overrides['skip_in_use'] = True
    if getattr(args, 'keep_relocated', False):
        overrides['keep_relocated'] = True
    return dataclasses.replace(settings, **overrides)


def prompt_confirm(prompt):
    """Ask on the terminal; anything but y/yes declines."""
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ('y', 'yes')


def install_signal_handlers(cancel_event):
    """Turn SIGINT/SIGTERM into a cancellation request; returns the previous handlers."""
    def _handler(signum, frame):
        cancel_event.signum = signum
        cancel_event.set()
        logger.warning("Received signal %s, cancelling after the current step", signum)

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _handler)
    return previous


def restore_signal_handlers(previous):
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def build_executor(args, settings, cancel_event):
    confirm = prompt_confirm if settings.interactive else None
    kwargs = {'cancel_event': cancel_event, 'confirm': confirm}
    if args.operation == 'backup':
        return BackupExecutor(settings, full=args.full, volumes=args.volume, exclude=args.exclude, **kwargs)
    if args.operation == 'restore':
        return RestoreExecutor(settings, archive=args.archive, volume=args.volume, full=args.full, **kwargs)
    if args.operation == 'verify':
        return VerifyExecutor(settings, archive=args.archive, all_archives=args.all,
                              repository_only=args.repository_only, **kwargs)
    if args.operation == 'cleanup':
        return CleanupExecutor(settings, tasks=args.task, **kwargs)
    if args.operation == 'download':
        return DownloadExecutor(settings, remote=args.remote, staging=args.staging, **kwargs)
    raise ValueError(f"unknown operation {args.operation}")


def exit_code(executor):
    """Map a finished executor to the process exit code."""
    record = executor.record
    if record.succeeded:
        return EXIT_OK
    if executor.busy is not None:
        return EXIT_BUSY
    if record.cancelled:
        return EXIT_CANCELLED
    if isinstance(executor.failure, PreconditionError):
        return EXIT_USAGE
    return EXIT_FAILED


def run_list(args, settings):
    if args.volume == utils.PLATFORM_PREFIX:
        logger.error("Volume '%s' is named like the data-root archives; use --full", args.volume)
        return EXIT_USAGE
    repo = BorgRepository(settings.repository)
    if not repo.exists():
        logger.error("Repository %s does not exist", settings.repository)
        return EXIT_USAGE
    prefix = args.volume or (utils.PLATFORM_PREFIX if args.full else None)
    try:
        entries = list_archives(repo, prefix=prefix, with_sizes=not args.no_sizes)
    except RuntimeError as e:
        logger.error("Could not list archives: %s", e)
        return EXIT_FAILED
    for line in format_listing(entries):
        print(line)
    return EXIT_OK


def main(argv=None):
    args = parse_args(argv if argv is not None else sys.argv[1:])
    settings = build_settings(args)
    setup_logging(quiet=settings.quiet, interactive=settings.interactive)

    if args.operation == 'list':
        return run_list(args, settings)

    cancel_event = threading.Event()
    cancel_event.signum = None
    try:
        executor = build_executor(args, settings, cancel_event)
    except ValueError as e:
        logger.error("%s", e)
        return EXIT_USAGE

    previous = install_signal_handlers(cancel_event)
    try:
        executor.run()
    finally:
        restore_signal_handlers(previous)

    record = executor.record
    if not settings.quiet:
        archives = f" archives: {', '.join(record.archives)}" if record.archives else ''
        status = 'OK' if record.succeeded else f"FAILED ({record.error})"
        print(f"{args.operation}: {status}{archives}", file=sys.stderr)
    return exit_code(executor)


if __name__ == '__main__':
    sys.exit(main())
