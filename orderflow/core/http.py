"""
HTTP status classification shared by the outbound adapters.
"""

import httpx

# Statuses worth retrying: request timeout, throttling and transient server errors.
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Timeouts, refused connections and protocol failures.
TRANSPORT_ERRORS = (httpx.TransportError,)


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES


def error_body(response: httpx.Response):
    """Decoded JSON body of an error response, or its text when not JSON."""
    try:
        return response.json()
    except ValueError:
        return response.text[:500]
