"""
Utility functions shared by the backup and restore tooling.
"""
import os
import re
import sys
import socket
import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


LOG_FORMAT = '[%(levelname)s] %(asctime)s %(name)s: %(message)s'
LOG_FILE_NAME = 'docker-backup.log'
LOG_DIR = '/var/log/docker'

# Archive names carry a human-sortable timestamp so lexical order equals
# chronological order, e.g. docker-2025-01-31_03:00:00
ARCHIVE_TS_FORMAT = '%Y-%m-%d_%H:%M:%S'
ARCHIVE_TS_GLOB = '[0-9][0-9][0-9][0-9]-[0-9][0-9]-[0-9][0-9]_[0-9][0-9]:[0-9][0-9]:[0-9][0-9]'
ARCHIVE_NAME_RE = re.compile(r'^(?P<prefix>.+)-(?P<ts>\d{4}-\d{2}-\d{2}_\d{2}:\d{2}:\d{2})$')
PLATFORM_PREFIX = 'docker'


class ColorFormatter(logging.Formatter):
    """Formatter that colours the level name for interactive terminals."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[31m',
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname)
        if not color:
            return super().format(record)
        original = record.levelname
        record.levelname = f"{color}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def is_interactive():
    """Return True when stdin and stderr are attached to a terminal."""
    try:
        return sys.stdin.isatty() and sys.stderr.isatty()
    except (AttributeError, ValueError):
        return False


# Central logging helpers
def setup_logging(quiet=False, interactive=None):
    """Configure root logger from environment.

    - Uses LOG_LEVEL env var (e.g., DEBUG, INFO); defaults to INFO.
    - If no handlers exist, installs a StreamHandler and a TimedRotatingFileHandler
      writing daily log files into the log directory (DOCKER_BACKUP_LOG_DIR).
    - Quiet or unattended runs only show errors on the console; the file log
      always receives everything at the configured level.
    """
    level_name = os.environ.get('LOG_LEVEL', 'INFO').upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.INFO

    if interactive is None:
        interactive = is_interactive()

    root = logging.getLogger()

    # Only configure handlers if none are present so tests or other
    # environments can configure logging differently
    if not root.handlers:
        sh = logging.StreamHandler()
        sh.setLevel(logging.ERROR if (quiet or not interactive) else level)
        if interactive and not quiet:
            sh.setFormatter(ColorFormatter(LOG_FORMAT))
        else:
            sh.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(sh)

        log_dir = get_log_dir()
        try:
            os.makedirs(log_dir, exist_ok=True)
            from logging.handlers import TimedRotatingFileHandler
            fh = TimedRotatingFileHandler(
                filename=os.path.join(log_dir, LOG_FILE_NAME),
                when='midnight',
                backupCount=0,
                encoding='utf-8'
            )
            fh.setLevel(level)
            fh.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(fh)
        except OSError as e:
            # If file logging cannot be set up, log a warning to the stream handler
            root.warning("Failed to configure file logging (LOG_DIR=%s): %s", log_dir, e)

    root.setLevel(level)


def get_logger(name=None):
    """Return a logger for the given name (or the module logger if none)."""
    return logging.getLogger(name if name else __name__)


def get_log_dir():
    """Return the log directory, overridable through DOCKER_BACKUP_LOG_DIR."""
    return os.environ.get('DOCKER_BACKUP_LOG_DIR') or LOG_DIR


def now():
    """Get current datetime in UTC (timezone-aware)."""
    return datetime.now(timezone.utc)


def local_now():
    """Get current datetime in local timezone (for archive names, logs).

    Returns a timezone-aware datetime in the configured display timezone."""
    return datetime.now(timezone.utc).astimezone(get_display_timezone())


def get_display_timezone():
    """Get the configured display timezone."""
    tz_name = os.environ.get('TZ', 'UTC')
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo('UTC')


def hostname():
    return socket.gethostname()


def format_bytes(bytes_val):
    """Format bytes to human readable string."""
    if bytes_val is None:
        return 'N/A'

    bytes_val = float(bytes_val)

    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_val < 1024.0:
            return f"{bytes_val:.1f}{unit}"
        bytes_val /= 1024.0
    return f"{bytes_val:.1f}PB"


def format_duration(seconds):
    """Format duration in seconds to human readable string."""
    if seconds is None:
        return 'N/A'

    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"

    minutes = seconds // 60
    secs = seconds % 60

    if minutes < 60:
        return f"{minutes}m {secs}s"

    hours = minutes // 60
    mins = minutes % 60
    return f"{hours}h {mins}m"


def archive_timestamp(dt=None):
    """Return the archive-name timestamp (YYYY-mm-dd_HH:MM:SS) in local time."""
    if dt is None:
        dt = local_now()
    return dt.strftime(ARCHIVE_TS_FORMAT)


def relocation_timestamp(dt=None):
    """Return the compact timestamp used for relocated data roots (YYYYmmddHHMMSS)."""
    if dt is None:
        dt = local_now()
    return dt.strftime('%Y%m%d%H%M%S')


def archive_name(prefix, dt=None):
    """Build an archive name for ``prefix`` (``docker`` or a volume name)."""
    return f"{prefix}-{archive_timestamp(dt)}"


def archive_glob(prefix):
    """Return a borg glob matching exactly the archives created for ``prefix``.

    The timestamp part is spelled out so that ``app`` never matches ``app-db``.
    """
    return f"{prefix}-{ARCHIVE_TS_GLOB}"


def split_archive_name(name):
    """Split an archive name into ``(prefix, timestamp)``.

    Returns ``(None, None)`` when the name does not follow the naming pattern.
    """
    match = ARCHIVE_NAME_RE.match(name or '')
    if not match:
        return None, None
    return match.group('prefix'), match.group('ts')


def render_progress(step, total, label, width=30):
    """Return a single progress line such as ``[#####-----]  50% Snapshotting``."""
    total = max(total, 1)
    step = min(max(step, 0), total)
    filled = int(width * step / total)
    percent = int(100 * step / total)
    return f"[{'#' * filled}{'-' * (width - filled)}] {percent:3d}% {label}"
