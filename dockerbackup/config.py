"""
Runtime settings read from the environment.

Every setting is looked up as ``DOCKER_BACKUP_<KEY>``; CLI flags override
individual fields through ``dataclasses.replace``.
"""
import os
from dataclasses import dataclass, field
from typing import Tuple

from dockerbackup.utils import get_logger

logger = get_logger(__name__)

ENV_PREFIX = 'DOCKER_BACKUP_'
TRUE_VALUES = ('1', 'true', 'yes', 'on')


def get_setting(key: str, default: str = '') -> str:
    """Return a setting value from the environment (``DOCKER_BACKUP_<KEY>``)."""
    value = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
    if value is None:
        return default
    return value.strip()


def get_bool(key: str, default: bool = False) -> bool:
    value = get_setting(key, '')
    if not value:
        return default
    return value.lower() in TRUE_VALUES


def get_int(key: str, default: int) -> int:
    value = get_setting(key, '')
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid integer for %s%s=%r, using default %s", ENV_PREFIX, key.upper(), value, default)
        return default


def get_list(key: str) -> Tuple[str, ...]:
    """Return a comma/whitespace separated setting as a tuple of non-empty items."""
    raw = get_setting(key, '')
    return tuple(item for item in raw.replace(',', ' ').split() if item)


@dataclass(frozen=True)
class Settings:
    repository: str = '/backup/docker'
    data_root: str = '/var/lib/docker'
    lock_path: str = '/var/lock/docker-backup.lock'
    compression: str = 'lz4'
    encryption: str = 'none'
    keep_daily: int = 7
    keep_weekly: int = 4
    keep_monthly: int = 12
    keep_yearly: int = 0
    priority: Tuple[str, ...] = ()
    skip_in_use: bool = False
    space_overhead_pct: int = 10
    min_free_mb: int = 500
    keep_relocated: bool = False
    service_unit: str = 'docker.service'
    socket_unit: str = 'docker.socket'
    stop_timeout: int = 30
    start_timeout: int = 60
    start_attempts: int = 3
    remote: str = ''
    notify_success: bool = False
    notify_error: bool = True
    notify_email: str = ''
    apprise_urls: Tuple[str, ...] = field(default_factory=tuple)
    force: bool = False
    quiet: bool = False
    dry_run: bool = False
    interactive: bool = False

    @classmethod
    def from_env(cls):
        """Build settings from ``DOCKER_BACKUP_*`` environment variables."""
        defaults = cls()
        return cls(
            repository=get_setting('repository', defaults.repository),
            data_root=get_setting('data_root', defaults.data_root),
            lock_path=get_setting('lock_path', defaults.lock_path),
            compression=get_setting('compression', defaults.compression),
            encryption=get_setting('encryption', defaults.encryption),
            keep_daily=get_int('keep_daily', defaults.keep_daily),
            keep_weekly=get_int('keep_weekly', defaults.keep_weekly),
            keep_monthly=get_int('keep_monthly', defaults.keep_monthly),
            keep_yearly=get_int('keep_yearly', defaults.keep_yearly),
            priority=get_list('priority'),
            skip_in_use=get_bool('skip_in_use', defaults.skip_in_use),
            space_overhead_pct=get_int('space_overhead', defaults.space_overhead_pct),
            min_free_mb=get_int('min_free_mb', defaults.min_free_mb),
            keep_relocated=get_bool('keep_relocated', defaults.keep_relocated),
            service_unit=get_setting('service', defaults.service_unit),
            socket_unit=get_setting('socket', defaults.socket_unit),
            stop_timeout=get_int('stop_timeout', defaults.stop_timeout),
            start_timeout=get_int('start_timeout', defaults.start_timeout),
            start_attempts=get_int('start_attempts', defaults.start_attempts),
            remote=get_setting('remote', defaults.remote),
            notify_success=get_bool('notify_success', defaults.notify_success),
            notify_error=get_bool('notify_error', defaults.notify_error),
            notify_email=get_setting('notify_email', defaults.notify_email),
            apprise_urls=get_list('apprise_urls'),
        )

    @property
    def retention(self):
        """Keep counts by period, in the order borg expects them."""
        return {
            'daily': self.keep_daily,
            'weekly': self.keep_weekly,
            'monthly': self.keep_monthly,
            'yearly': self.keep_yearly,
        }
