"""Reporting sink: run summaries delivered by email and Apprise."""

from .handlers import send_run_notification
from .helpers import get_recipients, get_subject_with_tag, should_notify
from .sender import send_email, send_apprise

__all__ = [
    'send_run_notification',
    'get_recipients',
    'get_subject_with_tag',
    'should_notify',
    'send_email',
    'send_apprise',
]
