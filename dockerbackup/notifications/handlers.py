"""
Run report notification.
"""
from dockerbackup.notifications.formatters import build_subject, build_report_html, build_report_text
from dockerbackup.notifications.helpers import get_recipients, get_subject_with_tag, should_notify
from dockerbackup.notifications.sender import send_email, send_apprise
from dockerbackup.utils import get_logger, hostname

logger = get_logger(__name__)


def send_run_notification(record, settings):
    """Send the summary report for a finished run.

    Delivery problems are logged and never raised: a notification failure
    must not change the outcome of the run.

    Returns:
        List of AdapterResult for the channels that were attempted.
    """
    if not should_notify(bool(record.succeeded), settings):
        return []

    results = []
    try:
        host = hostname()
        title = get_subject_with_tag(build_subject(record, host))
        context = f"{record.kind}:{record.target or '-'}"

        res = send_email(title, build_report_html(record, settings, host),
                         recipients=get_recipients(settings), context=context)
        if res is not None:
            results.append(res)

        res = send_apprise(title, build_report_text(record, settings, host), list(settings.apprise_urls), context=context)
        if res is not None:
            results.append(res)
    except Exception as e:
        logger.warning("Failed to send run notification: %s", e)

    if not results:
        logger.debug("No notification channel configured")
    return results
