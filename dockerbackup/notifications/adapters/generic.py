from typing import List, Optional, Tuple

import apprise

from .base import AdapterBase, AdapterResult


def _make_apobj(urls: Optional[List[str]] = None) -> Tuple[object, int]:
    apobj = apprise.Apprise()
    added = 0
    for u in (urls or []):
        if apobj.add(u):
            added += 1
    return apobj, added


def _notify_with_retry(apobj: object, title: str, body: str, body_format: object = None, attach: Optional[str] = None) -> Tuple[bool, Optional[str]]:
    try:
        res = apobj.notify(title=title, body=body, body_format=body_format, attach=attach)
        return bool(res), None
    except Exception as e:
        # One retry after a short pause
        import time
        first = str(e)
        try:
            time.sleep(0.5)
            res = apobj.notify(title=title, body=body, body_format=body_format, attach=attach)
            return bool(res), None
        except Exception as re:
            return False, f"first: {first} | retry: {re}"


class GenericAdapter(AdapterBase):
    """Send to configured Apprise URLs (mailto://, ntfy://, gotify://, ...)."""

    def __init__(self, urls: Optional[List[str]] = None):
        self.urls = list(urls or [])

    def send(self, title: str, body: str, body_format: object = None, attach: Optional[str] = None, context: str = '') -> AdapterResult:
        apobj, added = _make_apobj(self.urls)
        if added == 0:
            return AdapterResult(channel='generic', success=False, detail='no apprise URLs added')

        ok, detail = _notify_with_retry(apobj, title=title, body=body, body_format=body_format, attach=attach)
        if ok:
            return AdapterResult(channel='generic', success=True)
        return AdapterResult(channel='generic', success=False, detail=f'notify failed: {detail or "apprise returned False"}')
