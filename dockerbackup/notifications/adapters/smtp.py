"""SMTP adapter for sending the run report by email using DOCKER_BACKUP_SMTP_* settings."""
from typing import Optional, List
import mimetypes
import smtplib
from email.message import EmailMessage
from dockerbackup.notifications.adapters.base import AdapterBase, AdapterResult
from dockerbackup.notifications.formatters import strip_html_tags
from dockerbackup.utils import get_logger

logger = get_logger(__name__)


class SMTPAdapter(AdapterBase):
    def __init__(self):
        from dockerbackup.config import get_setting
        self.server = get_setting('smtp_server', '') or None
        port = get_setting('smtp_port', '')
        try:
            self.port = int(port) if port else 587
        except ValueError:
            self.port = 587
        self.user = get_setting('smtp_user', '') or None
        self.password = get_setting('smtp_password', '') or None
        self.from_addr = get_setting('smtp_from', '') or None
        self.use_tls = get_setting('smtp_use_tls', 'true').lower() in ('1', 'true', 'yes')

    @property
    def configured(self):
        return bool(self.server and self.from_addr)

    def _get_recipients(self, recipients: Optional[List[str]] = None) -> List[str]:
        if recipients:
            return list(recipients)
        from dockerbackup.notifications.helpers import get_recipients
        return get_recipients()

    def send(self, title: str, body: str, body_format: object = None, attach: Optional[str] = None, recipients: Optional[List[str]] = None, context: str = '') -> AdapterResult:
        if not self.configured:
            return AdapterResult(channel='smtp', success=False, detail='SMTP server or from address not configured')

        to_addrs = self._get_recipients(recipients)
        if not to_addrs:
            return AdapterResult(channel='smtp', success=False, detail='no recipients')

        msg = EmailMessage()
        msg['Subject'] = title
        msg['From'] = self.from_addr
        msg['To'] = ', '.join(to_addrs)

        # HTML body with a plain-text alternative
        html_body = body or ''
        msg.set_content(strip_html_tags(html_body))
        msg.add_alternative(html_body, subtype='html')

        if attach:
            try:
                with open(attach, 'rb') as f:
                    data = f.read()
                ctype, _encoding = mimetypes.guess_type(attach)
                if ctype:
                    maintype, subtype = ctype.split('/', 1)
                else:
                    maintype, subtype = 'application', 'octet-stream'
                msg.add_attachment(data, maintype=maintype, subtype=subtype, filename=attach.split('/')[-1])
            except OSError as e:
                logger.exception('SMTPAdapter: failed to attach file: %s', e)
                return AdapterResult(channel='smtp', success=False, detail=f'attach error: {e}')

        try:
            smtp = smtplib.SMTP(self.server, self.port, timeout=10)
            try:
                if self.use_tls:
                    smtp.ehlo()
                    smtp.starttls()
                    smtp.ehlo()
                if self.user and self.password:
                    smtp.login(self.user, self.password)
                smtp.send_message(msg)
            finally:
                try:
                    smtp.quit()
                except (smtplib.SMTPException, OSError) as e:
                    logger.debug("SMTPAdapter: quit failed: %s", e)

            return AdapterResult(channel='smtp', success=True)
        except Exception as e:
            logger.exception('SMTPAdapter: failed to send email (%s): %s', context, e)
            return AdapterResult(channel='smtp', success=False, detail=str(e))
