"""Helper utilities.

HTTP session construction and the retry policy applied to page fetches.
Push deliveries do not go through this retry policy; the dispatcher counts
their attempts itself.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

import requests
from requests import Response
from tenacity import (after_log, retry, retry_if_exception_type,
                      stop_after_attempt, wait_exponential)

from . import config

logger = logging.getLogger(__name__)


def get_http_session(user_agent: str | None = None) -> requests.Session:
    """Return a new HTTP session carrying the configured User-Agent.

    Caller is responsible for closing the session.
    """
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": user_agent or config.USER_AGENT,
            "Accept": "text/html,application/json;q=0.9,*/*;q=0.8",
        }
    )
    return session


class HTTPError(Exception):
    """Raised when an HTTP request fails after retries."""


class _ServerError(HTTPError):
    """5xx response; retried."""


def retryable_request(method: Callable[..., Response]) -> Callable[..., Response]:
    """Apply the fetch retry policy to a ``(session, url, **kwargs)`` call.

    Network errors and 5xx responses are retried up to 3 attempts with
    exponential back-off between 1 and 10 seconds. Other non-2xx responses
    raise ``HTTPError`` immediately.
    """

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=(
            retry_if_exception_type(requests.ConnectionError)
            | retry_if_exception_type(requests.Timeout)
            | retry_if_exception_type(_ServerError)
        ),
        after=after_log(logger, logging.WARNING),
    )
    def wrapper(session: requests.Session, url: str, **kwargs: Any) -> Response:
        response = method(session, url, **kwargs)
        if response.status_code >= 500:
            raise _ServerError(f"{url} returned status {response.status_code}")
        if response.status_code != 200:
            raise HTTPError(f"{url} returned status {response.status_code}")
        return response

    return wrapper


__all__ = ["get_http_session", "retryable_request", "HTTPError"]
