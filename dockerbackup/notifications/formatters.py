"""Report formatting for run notifications."""
import html
import re
from typing import List

from dockerbackup.utils import format_duration, local_now


def strip_html_tags(html_text: str) -> str:
    """Convert HTML to plain text by removing tags and converting entities.

    Also removes <style> and <script> blocks to avoid leaving CSS/JS content behind.
    """
    if not html_text:
        return ''
    text = re.sub(r'<(script|style)[\s\S]*?>[\s\S]*?<\/\1>', '', html_text, flags=re.IGNORECASE)
    text = re.sub(r'<br\s*/?>', '\n', text, flags=re.IGNORECASE)
    text = re.sub(r'<[^>]+>', '', text)
    text = html.unescape(text)
    # Normalize whitespace and clean up multiple newlines
    text = re.sub(r'\r\n?', '\n', text)
    text = re.sub(r'\n\s*\n', '\n\n', text)
    text = re.sub(r'[ \t]+', ' ', text)
    return text.strip()


def status_label(record) -> str:
    return 'SUCCESS' if record.succeeded else 'ERROR'


def build_subject(record, host: str) -> str:
    return f"Docker Backup Report: {host} - {status_label(record)}"


def build_summary_lines(record, settings, host: str) -> List[str]:
    """Key/value summary shown above the log."""
    lines = [
        f"Status: {status_label(record)}",
        f"Host: {host}",
        f"Operation: {record.kind}",
        f"Date: {local_now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"Duration: {format_duration(record.duration)}",
        f"Repository: {settings.repository}",
    ]
    if record.target:
        lines.append(f"Target: {record.target}")
    if record.archives:
        lines.append(f"Archives: {', '.join(record.archives)}")
    if record.skipped:
        skipped = [f"{name} ({record.skip_reasons[name]})" if name in record.skip_reasons else name
                   for name in record.skipped]
        lines.append(f"Skipped: {', '.join(skipped)}")
    if not record.succeeded and record.error:
        where = ' / '.join(x for x in (record.failed_step, record.failed_target) if x)
        lines.append(f"Error: {record.error}" + (f" ({where})" if where else ''))
    if record.rolled_back:
        lines.append('Rollback: previous data restored')
    if record.manual_interventions:
        lines.append(f"Manual intervention required: {', '.join(record.manual_interventions)}")
    return lines


def build_report_text(record, settings, host: str) -> str:
    summary = '\n'.join(build_summary_lines(record, settings, host))
    log = '\n'.join(record.log_lines)
    return f"{summary}\n\nLog:\n{log}\n"


def build_report_html(record, settings, host: str) -> str:
    rows = ''.join(
        f"<tr><td><b>{html.escape(key)}</b></td><td>{html.escape(value.strip())}</td></tr>"
        for key, _sep, value in (line.partition(':') for line in build_summary_lines(record, settings, host))
    )
    log = html.escape('\n'.join(record.log_lines))
    return (
        f"<h2>{html.escape(build_subject(record, host))}</h2>"
        f"<table>{rows}</table>"
        f"<h3>Log</h3><pre>{log}</pre>"
    )
