"""Shared HTTP session configuration with retry logic."""

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

USER_AGENT = "tcell-states/0.1 (GEO microarray analysis)"


def create_session(
    max_retries: int = 3,
    backoff_factor: float = 1.0,
    status_forcelist: tuple = (429, 500, 502, 503, 504),
    timeout: int = 120,
    user_agent: str = USER_AGENT,
) -> requests.Session:
    """
    Create a requests Session with retry logic and standard headers.

    Args:
        max_retries: Maximum retry attempts per request
        backoff_factor: Backoff multiplier between retries
        status_forcelist: HTTP status codes that trigger retries
        timeout: Default timeout in seconds applied to every request
        user_agent: User-Agent header value

    Returns:
        Configured requests.Session
    """
    session = requests.Session()
    retries = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=status_forcelist,
        allowed_methods=("GET", "HEAD"),
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retries)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": user_agent})
    session.request = _wrap_with_timeout(session.request, timeout=timeout)
    return session


def _wrap_with_timeout(request_method, timeout: int):
    def request_with_timeout(method, url, **kwargs):
        kwargs.setdefault("timeout", timeout)
        return request_method(method, url, **kwargs)

    return request_with_timeout
