"""Shared httpx call wrapper that maps transport errors onto distill errors."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..errors import ServiceError, ServiceTimeout, ServiceUnavailable, SoftParseFailure

logger = logging.getLogger(__name__)


def request_json(
    client: httpx.Client,
    service: str,
    method: str,
    url: str,
    *,
    json: Any = None,
    params: dict[str, Any] | None = None,
    timeout: float | httpx.Timeout | None = None,
) -> Any:
    """Send one request and return the decoded JSON body.

    Raises:
        ServiceUnavailable: The service could not be reached.
        ServiceTimeout: The request exceeded its timeout.
        ServiceError: The service answered with a non-2xx status.
        SoftParseFailure: The body was not JSON.
    """
    kwargs: dict[str, Any] = {}
    if json is not None:
        kwargs["json"] = json
    if params:
        kwargs["params"] = params
    if timeout is not None:
        kwargs["timeout"] = timeout

    try:
        response = client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise ServiceTimeout(service, str(e) or type(e).__name__) from e
    except httpx.TransportError as e:
        raise ServiceUnavailable(service, str(e) or type(e).__name__) from e

    if response.status_code >= 400:
        raise ServiceError(service, response.status_code, response.text[:200])

    try:
        return response.json()
    except ValueError as e:
        raise SoftParseFailure(f"{service} returned a non-JSON body") from e


def probe(client: httpx.Client, url: str, timeout: float) -> bool:
    """Return True if a GET on ``url`` answers 2xx within ``timeout``."""
    try:
        response = client.get(url, timeout=timeout)
    except httpx.HTTPError as e:
        logger.debug("Health probe %s failed: %s", url, e)
        return False
    return response.is_success
