"""Shared HTTP session with retries (no Pants dependencies)."""

from __future__ import annotations

import logging
from typing import Optional

from requests import Session
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

USER_AGENT = "pants-buf-plugins (github.com/bufbuild/plugins)"
DEFAULT_TIMEOUT = 30


def http_session(token: Optional[str] = None, timeout: int = DEFAULT_TIMEOUT) -> Session:
    """Return a session that retries transient failures with backoff.

    Args:
        token: Bearer token sent on every request. Only pass one for
            sessions that talk to the host the token belongs to.
        timeout: Default per-request timeout in seconds.
    """
    s = Session()
    retry = Retry(
        total=5,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry)
    s.mount("https://", adapter)
    s.mount("http://", adapter)
    s.headers["User-Agent"] = USER_AGENT
    if token:
        logger.info("creating authenticated HTTP session")
        s.headers["Authorization"] = f"Bearer {token}"
    orig = s.request

    def _request(method, url, **kwargs):
        if "timeout" not in kwargs:
            kwargs["timeout"] = timeout
        return orig(method, url, **kwargs)

    s.request = _request
    return s
