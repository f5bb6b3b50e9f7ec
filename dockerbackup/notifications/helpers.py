"""Small helpers used by the notification subsystem.

Settings lookup goes through ``dockerbackup.config.get_setting`` so every
value can be provided as a ``DOCKER_BACKUP_*`` environment variable.
"""
from typing import List
from dockerbackup.config import get_setting


def get_recipients(settings=None) -> List[str]:
    """Return the report recipients, comma separated in ``notify_email``.

    Reads ``settings.notify_email`` when settings are given, otherwise
    DOCKER_BACKUP_NOTIFY_EMAIL.
    """
    raw = settings.notify_email if settings is not None else get_setting('notify_email', '')
    return [addr.strip() for addr in (raw or '').split(',') if addr.strip()]


def get_subject_with_tag(subject: str) -> str:
    """Prefix the notification subject with an optional tag from settings.

    E.g., if DOCKER_BACKUP_SUBJECT_TAG is "[nas]", then
    get_subject_with_tag('Hello') -> '[nas] Hello'
    """
    tag = get_setting('subject_tag', '').strip()
    if tag:
        return f"{tag} {subject}"
    return subject


def should_notify(succeeded: bool, settings) -> bool:
    """Return whether a report is wanted for this outcome."""
    if succeeded:
        return bool(settings.notify_success)
    return bool(settings.notify_error)
