"""httpx helpers for the upscaling, compression and hosting capabilities."""
import logging
import time as time_module

import httpx

from settings import Settings
from utils.errors import AuthError, TransientServiceError
from utils.polling import Deadline

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})
_AUTH_STATUS = frozenset({401, 403})


def build_client(settings: Settings, **kwargs) -> httpx.Client:
    """Return a client with the configured timeout. Extra kwargs go to httpx."""
    kwargs.setdefault("timeout", settings.http_timeout_s)
    kwargs.setdefault("follow_redirects", True)
    return httpx.Client(**kwargs)


def send_with_retry(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    settings: Settings,
    service: str,
    deadline: Deadline | None = None,
    credentialed: bool = True,
    **kwargs,
) -> httpx.Response:
    """Send a request, retrying 429/5xx and transport errors with backoff.

    Returns the response for any other status; callers check the status they
    expect. For `credentialed` requests 401/403 raise AuthError without
    retrying. Anonymous requests (image downloads) get those responses back
    like any other client error.
    """
    attempts = settings.retry_attempts
    for attempt in range(attempts):
        if deadline is not None:
            deadline.check(f"{service} request")
        try:
            response = client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            if attempt == attempts - 1:
                raise TransientServiceError(
                    f"{service} unreachable: {exc}", service=service
                ) from exc
            reason = type(exc).__name__
        else:
            if credentialed and response.status_code in _AUTH_STATUS:
                raise AuthError(
                    f"{service} rejected the credentials (HTTP {response.status_code})",
                    service=service,
                    http_status=response.status_code,
                )
            if response.status_code not in _RETRYABLE_STATUS:
                return response
            if attempt == attempts - 1:
                raise TransientServiceError(
                    f"{service} still failing after {attempts} attempts "
                    f"(HTTP {response.status_code})",
                    service=service,
                    http_status=response.status_code,
                )
            reason = f"HTTP {response.status_code}"

        delay = settings.retry_delay(attempt)
        logger.debug(
            "%s: %s; retrying in %.1fs (attempt %d/%d).",
            service, reason, delay, attempt + 1, attempts,
        )
        time_module.sleep(delay)

    raise RuntimeError("Unreachable")  # pragma: no cover
