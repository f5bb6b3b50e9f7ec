"""
Delivery helpers: email through the SMTP adapter and Apprise URLs through the generic adapter.
"""
from dockerbackup.notifications.helpers import get_recipients
from dockerbackup.utils import get_logger

logger = get_logger(__name__)


def send_email(title, body, recipients=None, context=''):
    """
    Send an email via SMTP.

    Args:
        title: Email subject
        body: Email body (HTML)
        recipients: List of email addresses (optional, defaults to DOCKER_BACKUP_NOTIFY_EMAIL)
        context: Context string for logging

    Returns:
        AdapterResult or None when email is not configured
    """
    from dockerbackup.notifications.adapters import SMTPAdapter

    recipients = recipients or get_recipients()
    smtp_adapter = SMTPAdapter()
    if not smtp_adapter.configured or not recipients:
        logger.debug("SMTP not configured or no recipients; skipping email. context=%s", context)
        return None

    res = smtp_adapter.send(title, body, recipients=recipients, context=context)
    if res.success:
        logger.info("SMTP email sent successfully. context=%s", context)
    else:
        logger.warning("SMTP send failed: %s. context=%s", res.detail, context)
    return res


def send_apprise(title, body, urls, context=''):
    """Send ``body`` to every Apprise URL; returns AdapterResult or None when no URLs are configured."""
    from dockerbackup.notifications.adapters import GenericAdapter

    if not urls:
        return None
    res = GenericAdapter(urls).send(title, body, context=context)
    if res.success:
        logger.info("Apprise notification sent. context=%s", context)
    else:
        logger.warning("Apprise notification failed: %s. context=%s", res.detail, context)
    return res
