"""Error taxonomy shared by the Consul client, DNS providers and the reconciler.

    TransientError  network or backend unavailable; retried by the next pass
    FatalError      auth/validation failure; no safe automatic remedy, aborts
    DataError       malformed tags or undecodable state; skipped and logged
"""

from __future__ import annotations

from typing import Optional

import requests


class ExternalDNSError(Exception):
    """Base class for all errors raised by consul-external-dns."""


class TransientError(ExternalDNSError):
    """The backend could not be reached or answered with a retryable status."""


class FatalError(ExternalDNSError):
    """The backend rejected the request in a way retrying will not fix."""


class DataError(ExternalDNSError):
    """Data read from a backend could not be decoded."""


RETRYABLE_STATUS = {408, 429}

INVALID_REQUEST_ERRORS = (
    requests.exceptions.InvalidURL,
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.InvalidHeader,
)


def error_for_response(response: requests.Response, context: str) -> Optional[ExternalDNSError]:
    """Map an HTTP response to the error taxonomy, or None for a successful one."""
    status = response.status_code
    if status < 400:
        return None
    detail = (response.text or "").strip()[:200]
    message = f"{context}: HTTP {status}" + (f" ({detail})" if detail else "")
    if status >= 500 or status in RETRYABLE_STATUS:
        return TransientError(message)
    return FatalError(message)


def error_for_exception(
    exc: requests.exceptions.RequestException, context: str
) -> ExternalDNSError:
    """Map a requests exception raised before (or instead of) a usable response."""
    if exc.response is not None:
        mapped = error_for_response(exc.response, context)
        if mapped is not None:
            return mapped
    if isinstance(exc, INVALID_REQUEST_ERRORS):
        return FatalError(f"{context}: {exc}")
    return TransientError(f"{context}: {exc}")
